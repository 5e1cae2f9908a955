# orders.py
# Order entry against the ledger sheets. NO Streamlit code here either.

import logging
import re
from datetime import date, datetime

import pandas as pd

import logic

logger = logging.getLogger(__name__)

# updatable fixed columns, by position in the ledger's fixed headers
PURCHASE_FIELDS = {"invoice_no": 3, "amount": 4, "document": 5, "despatch_date": 6}
SALES_FIELDS = {"amount": 3, "document": 4, "appointment_date": 5}


# =============================
# MATERIALS
# =============================

def add_material(store, settings, material_id: str, name: str = ""):
    material_id = (material_id or "").strip()
    if not material_id:
        raise ValueError("Material ID is required.")

    catalog = logic.load_catalog(store, settings)
    if material_id in catalog.names:
        raise ValueError(f"Material {material_id} already exists")

    store.append_row(settings.catalog_sheet, [material_id, (name or "").strip() or material_id])
    logger.info("Added material %s", material_id)


def rename_material(store, settings, material_id: str, name: str):
    material_id = (material_id or "").strip()
    rows = store.read_table(settings.catalog_sheet)
    hits = [i for i, row in enumerate(rows) if i > 0 and str(row[0]).strip() == material_id]
    if not hits:
        raise KeyError(f"Unknown material: {material_id}")
    store.ensure_width(settings.catalog_sheet, 2)
    with store.transaction():
        for i in hits:
            store.write_range(settings.catalog_sheet, i, 1, [[(name or "").strip()]])


def sync_ledger_columns(store, settings) -> dict:
    """Bring every ledger's material columns up to date with the catalog."""
    ids = logic.load_catalog(store, settings).ids
    return {layout.sheet: logic.ensure_material_columns(store, layout, ids) for layout in settings.ledgers}


# =============================
# HELPERS
# =============================

def next_id(rows, prefix: str) -> str:
    """Prefix plus a zero-padded sequence one above the highest in use."""
    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    highest = 0
    for row in rows[1:]:
        if not row:
            continue
        m = pattern.match(str(row[0]).strip())
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{prefix}-{highest + 1:05d}"


def _clean_quantities(quantities, catalog_ids) -> dict:
    known = set(catalog_ids)
    clean = {}
    for material_id, qty in (quantities or {}).items():
        material_id = str(material_id).strip()
        if material_id not in known:
            raise ValueError(f"Unknown material: {material_id}")
        if qty is None or qty == "":
            continue
        if isinstance(qty, bool) or not isinstance(qty, (int, float)) or not float(qty).is_integer():
            raise ValueError(f"Quantity for {material_id} must be a whole number")
        if qty < 0:
            raise ValueError(f"Quantity for {material_id} cannot be negative")
        if qty:
            clean[material_id] = int(qty)
    return clean


def _as_cell(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return "" if value is None else value


def _find_row(rows, order_id: str) -> int:
    for i, row in enumerate(rows):
        if i > 0 and row and str(row[0]).strip() == order_id:
            return i
    raise KeyError(f"Order {order_id} not found")


def _append_order(store, settings, layout, fixed: list, quantities: dict, dispatched: dict = None) -> str:
    catalog = logic.load_catalog(store, settings)
    quantities = _clean_quantities(quantities, catalog.ids)
    dispatched = _clean_quantities(dispatched, catalog.ids)
    if not quantities:
        raise ValueError("Enter at least one quantity > 0")

    with store.transaction():
        logic.ensure_material_columns(store, layout, catalog.ids)
        rows = store.read_table(layout.sheet)
        headers = logic.trim_headers(rows[0][layout.material_offset:])
        if layout.two_blocks:
            ordered, second = logic.split_blocks(headers)
        else:
            ordered, second = headers, []

        order_id = next_id(rows, layout.id_prefix)
        offset = layout.material_offset
        row = [""] * store.width(layout.sheet)
        for i, value in enumerate([order_id] + fixed):
            row[i] = _as_cell(value)
        for j, material_id in enumerate(ordered):
            if material_id in quantities:
                row[offset + j] = quantities[material_id]
        for j, material_id in enumerate(second):
            if material_id in dispatched:
                row[offset + len(ordered) + j] = dispatched[material_id]
        store.append_row(layout.sheet, row)

    logger.info("Recorded %s with %d material lines", order_id, len(quantities))
    return order_id


# =============================
# ORDER ENTRY
# =============================

def submit_purchase(store, settings, supplier: str, quantities: dict, despatch_date=None,
                    invoice_no: str = "", amount=None, document: str = "", order_date=None) -> str:
    fixed = [order_date or date.today(), (supplier or "").strip(), invoice_no, amount, document, despatch_date]
    return _append_order(store, settings, settings.purchases, fixed, quantities)


def submit_sale(store, settings, customer: str, quantities: dict, appointment_date=None,
                dispatched: dict = None, amount=None, document: str = "", order_date=None) -> str:
    fixed = [order_date or date.today(), (customer or "").strip(), amount, document, appointment_date]
    return _append_order(store, settings, settings.sales, fixed, quantities, dispatched)


def submit_manual(store, settings, quantities: dict, note: str = "", recorded_at=None) -> str:
    """
    Record a manual stock snapshot. It replaces the previous snapshot as a whole,
    so materials left out read as 0.
    """
    catalog = logic.load_catalog(store, settings)
    quantities = _clean_quantities(quantities, catalog.ids)
    layout = settings.manual
    recorded_at = recorded_at or datetime.now().replace(microsecond=0)

    with store.transaction():
        logic.ensure_material_columns(store, layout, catalog.ids)
        rows = store.read_table(layout.sheet)
        headers = logic.trim_headers(rows[0][layout.material_offset:])
        entry_id = next_id(rows, layout.id_prefix)
        row = [""] * store.width(layout.sheet)
        row[0], row[1], row[2] = entry_id, _as_cell(recorded_at), note or ""
        for j, material_id in enumerate(headers):
            if material_id in quantities:
                row[layout.material_offset + j] = quantities[material_id]
        store.append_row(layout.sheet, row)

    logger.info("Recorded manual snapshot %s", entry_id)
    return entry_id


# =============================
# UPDATES
# =============================

def update_order(store, settings, ledger: str, order_id: str, **fields):
    """
    Update the editable fields of an existing order, looked up by its ID.
    Purchases: invoice_no, amount, document, despatch_date.
    Sales: amount, document, appointment_date.
    """
    layout = settings.ledger(ledger)
    if layout is settings.purchases:
        allowed = PURCHASE_FIELDS
    elif layout is settings.sales:
        allowed = SALES_FIELDS
    else:
        raise ValueError(f"{layout.sheet} entries cannot be edited")

    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValueError(f"Fields not editable on {layout.sheet}: {unknown}")

    rows = store.read_table(layout.sheet)
    row_idx = _find_row(rows, order_id)
    with store.transaction():
        for name, value in fields.items():
            store.write_range(layout.sheet, row_idx, allowed[name], [[_as_cell(value)]])
    logger.info("Updated %s: %s", order_id, ", ".join(sorted(fields)))


def record_dispatch(store, settings, order_id: str, dispatched: dict):
    """Overwrite the dispatched quantities of a sales order."""
    layout = settings.sales
    catalog = logic.load_catalog(store, settings)
    dispatched = _clean_quantities(dispatched, catalog.ids)

    with store.transaction():
        logic.ensure_material_columns(store, layout, catalog.ids)
        rows = store.read_table(layout.sheet)
        row_idx = _find_row(rows, order_id)
        headers = logic.trim_headers(rows[0][layout.material_offset:])
        ordered, second = logic.split_blocks(headers)
        start = layout.material_offset + len(ordered)
        values = [dispatched.get(material_id, "") for material_id in second]
        if values:
            store.write_range(layout.sheet, row_idx, start, [values])


# =============================
# VIEWS
# =============================

def ledger_frame(store, layout) -> pd.DataFrame:
    """Ledger as a DataFrame; dispatched columns get a ' (dispatched)' suffix."""
    rows = store.read_table(layout.sheet)
    if not rows:
        return pd.DataFrame()
    offset = layout.material_offset
    headers = logic.trim_headers(rows[0][offset:])
    if layout.two_blocks:
        ordered, second = logic.split_blocks(headers)
        headers = ordered + [f"{h} (dispatched)" for h in second]
    columns = [str(h) for h in rows[0][:offset]] + [h or f"col_{offset + j}" for j, h in enumerate(headers)]
    data = [(list(r) + [""] * len(columns))[:len(columns)] for r in rows[1:]]
    return pd.DataFrame(data, columns=columns)
