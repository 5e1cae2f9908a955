# config.py
# Settings for the stock book. Loaded from YAML, env vars win.

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from yaml.loader import SafeLoader

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG = BASE_DIR / "stockbook.yaml"
DEFAULT_DB = BASE_DIR / "data" / "stockbook.sqlite"


# =============================
# LEDGER LAYOUTS
# =============================

@dataclass
class LedgerLayout:
    sheet: str
    fixed_headers: list
    id_prefix: str
    date_col: int = None          # lifecycle date column, None for Manual
    two_blocks: bool = False      # Sales: ordered block + dispatched block

    @property
    def material_offset(self) -> int:
        return len(self.fixed_headers)


def _purchases():
    return LedgerLayout(
        sheet="Purchases",
        fixed_headers=["PO ID", "Order Date", "Supplier", "Invoice No",
                       "Amount", "Document", "Despatch Date"],
        id_prefix="PO",
        date_col=6,
    )


def _sales():
    return LedgerLayout(
        sheet="Sales",
        fixed_headers=["SO ID", "Order Date", "Customer", "Amount",
                       "Document", "Appointment Date"],
        id_prefix="SO",
        date_col=5,
        two_blocks=True,
    )


def _manual():
    return LedgerLayout(
        sheet="Manual",
        fixed_headers=["Entry ID", "Recorded At", "Note"],
        id_prefix="MAN",
    )


# =============================
# SETTINGS
# =============================

@dataclass
class SmtpSettings:
    server: str = "smtp.gmail.com"
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class Settings:
    db_path: Path = DEFAULT_DB
    catalog_sheet: str = "Materials"
    summary_sheet: str = "Stock"
    summary_offset: int = 1
    purchases: LedgerLayout = field(default_factory=_purchases)
    sales: LedgerLayout = field(default_factory=_sales)
    manual: LedgerLayout = field(default_factory=_manual)
    report_recipients: list = field(default_factory=list)
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    def ledger(self, name: str) -> LedgerLayout:
        """Look up a ledger layout by key ("purchases", "sales", "manual") or sheet name."""
        key = (name or "").strip().lower()
        for layout in (self.purchases, self.sales, self.manual):
            if key in (layout.sheet.lower(), layout.id_prefix.lower()):
                return layout
        if key in ("purchases", "sales", "manual"):
            return getattr(self, key)
        raise KeyError(f"Unknown ledger: {name}")

    @property
    def ledgers(self):
        return [self.purchases, self.sales, self.manual]


def _apply_ledger(layout: LedgerLayout, raw: dict):
    if not raw:
        return
    layout.sheet = raw.get("sheet", layout.sheet)
    layout.id_prefix = raw.get("id_prefix", layout.id_prefix)
    if "fixed_headers" in raw:
        layout.fixed_headers = [str(h) for h in raw["fixed_headers"]]
    if "date_col" in raw:
        layout.date_col = raw["date_col"]


def load_settings(path=None) -> Settings:
    """
    Read settings from YAML. A missing file gives the defaults.
    STOCKBOOK_DB and SMTP_* env vars override the file.
    """
    path = Path(path or os.getenv("STOCKBOOK_CONFIG", DEFAULT_CONFIG))
    raw = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.load(f, Loader=SafeLoader) or {}

    settings = Settings()

    if raw.get("db_path"):
        settings.db_path = Path(raw["db_path"])
    settings.catalog_sheet = raw.get("catalog_sheet", settings.catalog_sheet)
    settings.summary_sheet = raw.get("summary_sheet", settings.summary_sheet)
    settings.summary_offset = int(raw.get("summary_offset", settings.summary_offset))
    settings.report_recipients = list(raw.get("report_recipients") or [])

    ledgers = raw.get("ledgers") or {}
    _apply_ledger(settings.purchases, ledgers.get("purchases"))
    _apply_ledger(settings.sales, ledgers.get("sales"))
    _apply_ledger(settings.manual, ledgers.get("manual"))

    smtp = raw.get("smtp") or {}
    settings.smtp = SmtpSettings(
        server=os.getenv("SMTP_SERVER", smtp.get("server", "smtp.gmail.com")),
        port=int(os.getenv("SMTP_PORT", smtp.get("port", 587))),
        username=os.getenv("SMTP_USERNAME", smtp.get("username", "")),
        password=os.getenv("SMTP_PASSWORD", smtp.get("password", "")),
        sender=os.getenv("SMTP_SENDER", smtp.get("sender", "")),
    )

    if os.getenv("STOCKBOOK_DB"):
        settings.db_path = Path(os.environ["STOCKBOOK_DB"])

    return settings
