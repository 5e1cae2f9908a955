# logic.py
# Stock engine for the stock book: catalog, ledger totals, summary sheet.
# NO Streamlit code in this file. EVER.

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime

import pandas as pd

from db import SheetNotFound

logger = logging.getLogger(__name__)

SUMMARY_LABELS = [
    "Material ID",
    "Material Name",
    "Start",
    "Sent",
    "Outgoing",
    "Received",
    "Incoming",
    "Net",
    "Manual",
]
START_ROW = SUMMARY_LABELS.index("Start")
SUMMARY_FIELDS = ["sent", "outgoing", "received", "incoming", "net", "manual"]


# =============================
# ERRORS
# =============================

class StockError(Exception):
    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class CatalogUnavailable(StockError):
    pass


class LedgerReadFailure(StockError):
    def __init__(self, ledger: str, message: str, cause: Exception = None):
        super().__init__(f"{ledger}: {message}", cause)
        self.ledger = ledger


class SinkWriteFailure(StockError):
    pass


class AggregationFailure(StockError):
    pass


# =============================
# TYPES
# =============================

@dataclass
class Material:
    id: str
    name: str


@dataclass
class Catalog:
    materials: list = field(default_factory=list)
    names: dict = field(default_factory=dict)

    @property
    def ids(self) -> list:
        """Catalog IDs in sheet order, first position wins for repeats."""
        return list(dict.fromkeys(m.id for m in self.materials))

    def __len__(self):
        return len(self.materials)


@dataclass
class LedgerTotals:
    total: dict = field(default_factory=dict)
    settled: dict = field(default_factory=dict)     # received / sent
    pending: dict = field(default_factory=dict)     # incoming / outgoing


@dataclass
class SalesTotals(LedgerTotals):
    dispatched: dict = field(default_factory=dict)


@dataclass
class StockSummaryRow:
    id: str
    name: str
    start: float = 0
    sent: float = 0
    outgoing: float = 0
    received: float = 0
    incoming: float = 0
    net: float = 0
    manual: float = 0


@dataclass
class StockResult:
    rows: list = field(default_factory=list)
    error: AggregationFailure = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def sink_failed(self) -> bool:
        """Stock was computed but the summary sheet was not saved."""
        return self.error is not None and isinstance(self.error.cause, SinkWriteFailure)


# =============================
# WORKBOOK
# =============================

def init_workbook(store, settings):
    """Create every sheet the stock book needs. Safe to call every run."""
    store.create_sheet(settings.catalog_sheet, ["Material ID", "Material Name"])
    for layout in settings.ledgers:
        store.create_sheet(layout.sheet, layout.fixed_headers)
    _ensure_summary_sheet(store, settings)


def _ensure_summary_sheet(store, settings):
    sheet = settings.summary_sheet
    store.create_sheet(sheet)
    if store.row_count(sheet) == 0:
        for label in SUMMARY_LABELS:
            store.append_row(sheet, [label])
    store.ensure_width(sheet, settings.summary_offset)


# =============================
# CELL COERCION
# =============================

def _whole(value):
    value = float(value)
    return int(value) if value.is_integer() else value


def coerce_quantities(values) -> list:
    """Blank or non-numeric cells become 0. Never raises."""
    series = pd.Series(list(values), dtype=object)
    if series.empty:
        return []
    series = series.map(lambda v: v if isinstance(v, (int, float)) and not isinstance(v, bool) else str(v).strip())
    numbers = pd.to_numeric(series, errors="coerce").fillna(0)
    return [_whole(n) for n in numbers]


def to_quantity(value):
    return coerce_quantities([value])[0]


def to_calendar_date(value):
    """
    Cell value -> datetime.date, time of day dropped.
    Blank or unreadable values give None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return None
    text = str(value).strip()
    if not text:
        return None
    ts = pd.to_datetime(text, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date()


def is_settled(lifecycle_date, today: date) -> bool:
    return lifecycle_date is not None and lifecycle_date <= today


# =============================
# MATERIAL CATALOG
# =============================

def load_catalog(store, settings) -> Catalog:
    try:
        rows = store.read_table(settings.catalog_sheet)
    except (SheetNotFound, sqlite3.Error) as e:
        raise CatalogUnavailable(f"Cannot read material catalog '{settings.catalog_sheet}'", e) from e

    catalog = Catalog()
    for row in rows[1:]:
        if not row:
            continue
        material_id = str(row[0]).strip()
        if not material_id:
            continue
        name = str(row[1]).strip() if len(row) > 1 else ""
        catalog.materials.append(Material(material_id, name))
        catalog.names[material_id] = name
    return catalog


# =============================
# HEADERS
# =============================

def trim_headers(cells) -> list:
    """Trimmed header strings with trailing blanks dropped."""
    headers = ["" if c is None else str(c).strip() for c in cells]
    while headers and not headers[-1]:
        headers.pop()
    return headers


def split_blocks(headers):
    """
    Split a two-block header into (ordered, dispatched).
    The dispatched block starts at the first repeated material ID.
    """
    seen = set()
    for i, h in enumerate(headers):
        if not h:
            continue
        if h in seen:
            return headers[:i], headers[i:]
        seen.add(h)
    return headers, []


def _checked_blocks(layout, headers):
    ordered, dispatched = split_blocks(headers)
    if dispatched != ordered[:len(dispatched)]:
        raise LedgerReadFailure(
            layout.sheet,
            "dispatched columns do not follow the ordered columns' material order",
        )
    return ordered, dispatched


# =============================
# LEDGER ACCUMULATION
# =============================

def _block_sums(data, start, headers, mask=None) -> dict:
    """Sum one block of material columns per material ID, blank headers skipped."""
    sums = {}
    if not headers:
        return sums
    width = len(headers)
    block = [coerce_quantities((list(row[start:start + width]) + [""] * width)[:width]) for row in data]
    frame = pd.DataFrame(block, columns=range(width), dtype=float)
    if mask is not None:
        frame = frame[mask.values]
    column_sums = frame.sum()
    for j, material_id in enumerate(headers):
        if not material_id:
            continue
        sums[material_id] = sums.get(material_id, 0) + _whole(column_sums[j])
    return sums


def accumulate_ledger(rows, layout, today: date) -> LedgerTotals:
    """
    Totals per material for one ledger, split into settled (lifecycle date on or
    before today) and pending (no date, or a future date).
    """
    offset = layout.material_offset
    headers = trim_headers(rows[0][offset:]) if rows else []
    data = list(rows[1:])

    if layout.two_blocks:
        ordered, dispatched = _checked_blocks(layout, headers)
    else:
        ordered, dispatched = headers, []

    settled_mask = None
    if layout.date_col is not None:
        settled_mask = pd.Series(
            [is_settled(to_calendar_date(row[layout.date_col]) if len(row) > layout.date_col else None, today)
             for row in data],
            dtype=bool,
        )

    totals = SalesTotals() if layout.two_blocks else LedgerTotals()
    totals.total = _block_sums(data, offset, ordered)
    if settled_mask is not None:
        totals.settled = _block_sums(data, offset, ordered, settled_mask)
        totals.pending = _block_sums(data, offset, ordered, ~settled_mask)
    if layout.two_blocks:
        totals.dispatched = _block_sums(data, offset + len(ordered), dispatched)
    return totals


def manual_snapshot(rows, layout) -> dict:
    """
    Current manual stock per material: the last non-blank entry in append order.
    Recorded At is kept as metadata only.
    """
    if len(rows) < 2:
        return {}
    offset = layout.material_offset
    headers = trim_headers(rows[0][offset:])

    latest = None
    for row in rows[1:]:
        if any(c is not None and str(c).strip() != "" for c in row):
            latest = row

    if latest is None:
        return {}
    return _block_sums([latest], offset, headers)


def _read_ledger(store, layout) -> list:
    try:
        return store.read_table(layout.sheet)
    except (SheetNotFound, sqlite3.Error) as e:
        raise LedgerReadFailure(layout.sheet, "cannot read ledger", e) from e


# =============================
# COLUMN RECONCILIATION
# =============================

def ensure_material_columns(store, layout, catalog_ids) -> list:
    """
    Append catalog IDs missing from a ledger's material header, in catalog order.
    Existing columns never move relative to each other. Two-block ledgers get the
    new IDs at the end of both blocks. Returns the IDs that were added.
    """
    sheet = layout.sheet
    offset = layout.material_offset
    try:
        headers = trim_headers(store.read_row(sheet, 0, offset))
    except (SheetNotFound, sqlite3.Error) as e:
        raise LedgerReadFailure(sheet, "cannot read header row", e) from e

    wanted = list(dict.fromkeys(i for i in catalog_ids if i))

    if layout.two_blocks:
        ordered, dispatched = _checked_blocks(layout, headers)
    else:
        ordered, dispatched = headers, []
    present = {h for h in ordered if h}
    missing = [i for i in wanted if i not in present]

    with store.transaction():
        if missing:
            at = offset + len(ordered)
            if dispatched:
                store.insert_columns(sheet, at, len(missing))
            store.ensure_width(sheet, at + len(missing))
            store.write_range(sheet, 0, at, [missing])
            ordered = ordered + missing

        # complete the dispatched block so both blocks match
        fill = ordered[len(dispatched):] if layout.two_blocks else []
        if fill:
            end = offset + len(ordered) + len(dispatched)
            store.ensure_width(sheet, end + len(fill))
            store.write_range(sheet, 0, end, [fill])

    if missing:
        logger.info("Added material columns to %s: %s", sheet, ", ".join(missing))
    return missing


def undispatched(totals: SalesTotals) -> dict:
    """Ordered minus dispatched per material."""
    ids = list(dict.fromkeys(list(totals.total) + list(totals.dispatched)))
    return {i: totals.total.get(i, 0) - totals.dispatched.get(i, 0) for i in ids}


# =============================
# SUMMARY SHEET
# =============================

def _start_cells(header, start_row, ids) -> dict:
    """
    Raw Start cell per material, keyed by the Material ID row the sheet holds.
    Columns that have no ID yet fall back to catalog position.
    """
    by_id = {}
    for i, h in enumerate(header):
        if h and h not in by_id:
            by_id[h] = start_row[i] if i < len(start_row) else ""

    cells = {}
    for i, material_id in enumerate(ids):
        if material_id in by_id:
            cells[material_id] = by_id[material_id]
        elif i < len(header) and header[i]:
            # column belongs to another material
            cells[material_id] = ""
        else:
            cells[material_id] = start_row[i] if i < len(start_row) else ""
    return cells


def _layout_shifted(header, ids) -> bool:
    return any(h and (i >= len(ids) or ids[i] != h) for i, h in enumerate(header))


def _read_start(store, settings):
    sheet, offset = settings.summary_sheet, settings.summary_offset
    header = trim_headers(store.read_row(sheet, 0, offset))
    return header, store.read_row(sheet, START_ROW, offset)


def read_starting_balance(store, settings, ids) -> dict:
    """Opening stock per material from the Start row. Blank or missing reads as 0."""
    try:
        header, start_row = _read_start(store, settings)
    except SheetNotFound:
        header, start_row = [], []
    cells = _start_cells(header, start_row, ids)
    values = coerce_quantities([cells[i] for i in ids])
    return dict(zip(ids, values))


def write_summary(store, settings, rows):
    """
    Replace every derived row of the summary sheet in one transaction.
    Start cells are only ever moved along with their Material ID, when the
    catalog drops or reorders materials.
    """
    sheet = settings.summary_sheet
    offset = settings.summary_offset
    ids = [r.id for r in rows]
    try:
        with store.transaction():
            _ensure_summary_sheet(store, settings)
            header, start_row = _read_start(store, settings)
            store.ensure_width(sheet, offset + len(rows))
            pad = [""] * (store.width(sheet) - offset - len(rows))

            columns = {
                "Material ID": ids,
                "Material Name": [r.name for r in rows],
            }
            for name in SUMMARY_FIELDS:
                columns[name.capitalize()] = [getattr(r, name) for r in rows]

            if _layout_shifted(header, ids):
                cells = _start_cells(header, start_row, ids)
                columns["Start"] = [cells[i] for i in ids]
                logger.warning("Material columns moved on %s, Start values moved with them", sheet)

            for row_idx, label in enumerate(SUMMARY_LABELS):
                if label not in columns:
                    continue
                store.write_range(sheet, row_idx, 0, [[label]])
                store.write_range(sheet, row_idx, offset, [columns[label] + pad])
    except (sqlite3.Error, ValueError, LookupError) as e:
        raise SinkWriteFailure(f"Cannot write summary sheet '{sheet}'", e) from e


def summary_frame(rows) -> pd.DataFrame:
    columns = ["id", "name", "start"] + SUMMARY_FIELDS
    return pd.DataFrame([asdict(r) for r in rows], columns=columns)


# =============================
# STOCK ENGINE
# =============================

def compute_stock(store, settings, today: date = None) -> list:
    """Stock per catalog material. Raises StockError subclasses."""
    today = today or date.today()

    catalog = load_catalog(store, settings)
    if not catalog:
        return []
    ids = catalog.ids

    purchases = accumulate_ledger(_read_ledger(store, settings.purchases), settings.purchases, today)
    sales = accumulate_ledger(_read_ledger(store, settings.sales), settings.sales, today)
    manual = manual_snapshot(_read_ledger(store, settings.manual), settings.manual)
    start = read_starting_balance(store, settings, ids)

    rows = []
    for material_id in ids:
        received = purchases.settled.get(material_id, 0)
        sent = sales.settled.get(material_id, 0)
        rows.append(StockSummaryRow(
            id=material_id,
            name=catalog.names.get(material_id, ""),
            start=start[material_id],
            sent=sent,
            outgoing=sales.pending.get(material_id, 0),
            received=received,
            incoming=purchases.pending.get(material_id, 0),
            net=start[material_id] + received - sent,
            manual=manual.get(material_id, 0),
        ))
    return rows


def compute_and_refresh_stock(store, settings, today: date = None) -> StockResult:
    """
    Recompute stock and overwrite the summary sheet.
    Never raises: failures come back on StockResult.error.
    """
    try:
        rows = compute_stock(store, settings, today)
    except StockError as e:
        logger.error("Stock computation failed: %s", e.message)
        return StockResult([], AggregationFailure(f"Stock computation failed: {e.message}", e))
    except Exception as e:
        logger.exception("Stock computation failed")
        return StockResult([], AggregationFailure(f"Stock computation failed: {e}", e))

    try:
        write_summary(store, settings, rows)
    except SinkWriteFailure as e:
        logger.error("Stock computed but not saved: %s", e.message)
        return StockResult(rows, AggregationFailure(f"Stock computed but not saved: {e.message}", e))

    if not rows:
        logger.info("Material catalog is empty, summary sheet cleared")
    else:
        logger.info("Stock refreshed for %d materials", len(rows))
    return StockResult(rows)
