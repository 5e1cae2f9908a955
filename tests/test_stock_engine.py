import sqlite3
from datetime import date, datetime, timedelta

import pytest

import logic
import orders
from conftest import TODAY

YESTERDAY = TODAY - timedelta(days=1)
TOMORROW = TODAY + timedelta(days=1)


def _purchase_rows(settings, headers, *rows):
    """Purchases sheet rows: (despatch date, [quantities...]) per data row."""
    fixed = settings.purchases.fixed_headers
    table = [fixed + headers]
    for despatch, qty in rows:
        row = [""] * len(fixed) + list(qty)
        row[settings.purchases.date_col] = despatch
        table.append(row)
    return table


# =============================
# COERCION
# =============================

def test_coerce_quantities():
    assert logic.coerce_quantities(["", None, "abc", "5", 3, 2.0, " 7 ", 2.5]) == [0, 0, 0, 5, 3, 2, 7, 2.5]


def test_to_calendar_date_drops_time_of_day():
    assert logic.to_calendar_date("2026-10-18T23:59:00") == date(2026, 10, 18)
    assert logic.to_calendar_date(datetime(2026, 10, 18, 6, 30)) == date(2026, 10, 18)
    assert logic.to_calendar_date(date(2026, 1, 2)) == date(2026, 1, 2)
    assert logic.to_calendar_date("") is None
    assert logic.to_calendar_date("not a date") is None


def test_is_settled():
    assert logic.is_settled(TODAY, TODAY)
    assert logic.is_settled(YESTERDAY, TODAY)
    assert not logic.is_settled(TOMORROW, TODAY)
    assert not logic.is_settled(None, TODAY)


# =============================
# CATALOG
# =============================

def test_load_catalog_keeps_order_and_trims(store, settings):
    for row in (["M2", "Bolt"], [" M1 ", "Widget"], ["", "orphan"], ["M2", "Bolt v2"]):
        store.append_row(settings.catalog_sheet, row)

    catalog = logic.load_catalog(store, settings)

    assert [m.id for m in catalog.materials] == ["M2", "M1", "M2"]
    assert catalog.ids == ["M2", "M1"]
    assert catalog.names == {"M2": "Bolt v2", "M1": "Widget"}


def test_missing_catalog_sheet(store, settings):
    settings.catalog_sheet = "Nope"

    with pytest.raises(logic.CatalogUnavailable):
        logic.load_catalog(store, settings)


# =============================
# LEDGER ACCUMULATION
# =============================

def test_blank_and_zero_accumulate_the_same(settings):
    with_zero = _purchase_rows(settings, ["M1", "M2"], (YESTERDAY, [0, 3]), ("", [2, 0]))
    with_blank = _purchase_rows(settings, ["M1", "M2"], (YESTERDAY, ["", 3]), ("", [2, ""]))

    a = logic.accumulate_ledger(with_zero, settings.purchases, TODAY)
    b = logic.accumulate_ledger(with_blank, settings.purchases, TODAY)

    assert a == b
    assert a.total == {"M1": 2, "M2": 3}


def test_non_numeric_cells_count_as_zero(settings):
    rows = _purchase_rows(settings, ["M1"], (YESTERDAY, ["lots"]), (YESTERDAY, ["4"]))

    totals = logic.accumulate_ledger(rows, settings.purchases, TODAY)

    assert totals.total == {"M1": 4}


def test_blank_header_columns_are_skipped(settings):
    rows = _purchase_rows(settings, ["M1", " ", "M2"], (YESTERDAY, [1, 50, 2]))

    totals = logic.accumulate_ledger(rows, settings.purchases, TODAY)

    assert totals.total == {"M1": 1, "M2": 2}


def test_date_split_is_per_row(settings):
    rows = _purchase_rows(
        settings, ["M1", "M2"],
        (YESTERDAY, [10, 1]),
        (TODAY.isoformat() + "T18:45:00", [5, 0]),
        (TOMORROW, [7, 2]),
        ("", [3, 4]),
        ("someday", [1, 1]),
    )

    totals = logic.accumulate_ledger(rows, settings.purchases, TODAY)

    assert totals.settled == {"M1": 15, "M2": 1}
    assert totals.pending == {"M1": 11, "M2": 7}
    for material_id, total in totals.total.items():
        assert totals.settled[material_id] + totals.pending[material_id] == total


def test_sales_split_ordered_and_dispatched(settings):
    fixed = settings.sales.fixed_headers
    rows = [fixed + ["M1", "M2", "M1", "M2"]]
    row = [""] * len(fixed) + [4, 6, 4, 1]
    row[settings.sales.date_col] = YESTERDAY.isoformat()
    rows.append(row)

    totals = logic.accumulate_ledger(rows, settings.sales, TODAY)

    assert totals.total == {"M1": 4, "M2": 6}
    assert totals.settled == {"M1": 4, "M2": 6}
    assert totals.pending == {"M1": 0, "M2": 0}
    assert totals.dispatched == {"M1": 4, "M2": 1}
    assert logic.undispatched(totals) == {"M1": 0, "M2": 5}


def test_empty_ledger(settings):
    totals = logic.accumulate_ledger([settings.purchases.fixed_headers], settings.purchases, TODAY)

    assert totals.total == {}


def test_manual_snapshot_takes_last_appended_entry(settings):
    fixed = settings.manual.fixed_headers
    rows = [
        fixed + ["M1", "M2"],
        ["MAN-00001", "2026-10-17T09:00:00", "", 5, 5],
        ["MAN-00002", "2026-10-18T09:00:00", "", 1, 4],
        ["MAN-00003", "2026-10-16T09:00:00", "late entry", 9, ""],
        ["", "", "", "", ""],
    ]

    assert logic.manual_snapshot(rows, settings.manual) == {"M1": 9, "M2": 0}


def test_manual_snapshot_ignores_recorded_at(settings):
    fixed = settings.manual.fixed_headers
    rows = [
        fixed + ["M1"],
        ["MAN-00001", "2026-10-18T09:00:00", "", 5],
        ["MAN-00002", "", "", 8],
    ]

    assert logic.manual_snapshot(rows, settings.manual) == {"M1": 8}


# =============================
# STOCK ENGINE
# =============================

def test_widget_scenario(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"))
    orders.submit_purchase(store, settings, "Acme", {"M1": 10}, despatch_date=YESTERDAY)
    orders.submit_sale(store, settings, "Bob", {"M1": 4}, appointment_date=TOMORROW)
    set_start([5])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert result.ok
    assert result.rows == [logic.StockSummaryRow(
        id="M1", name="Widget", start=5,
        sent=0, outgoing=4, received=10, incoming=0, net=15, manual=0,
    )]

    sheet = store.read_table(settings.summary_sheet)
    assert [row[:2] for row in sheet] == [
        ["Material ID", "M1"],
        ["Material Name", "Widget"],
        ["Start", 5],
        ["Sent", 0],
        ["Outgoing", 4],
        ["Received", 10],
        ["Incoming", 0],
        ["Net", 15],
        ["Manual", 0],
    ]


def test_refresh_is_idempotent(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"), ("M2", "Bolt"))
    orders.submit_purchase(store, settings, "Acme", {"M1": 3, "M2": 9}, despatch_date=YESTERDAY)
    orders.submit_sale(store, settings, "Bob", {"M2": 2})
    set_start([1, 2])

    first = logic.compute_and_refresh_stock(store, settings, TODAY)
    snapshot = store.read_table(settings.summary_sheet)
    second = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert first.rows == second.rows
    assert store.read_table(settings.summary_sheet) == snapshot


def test_summary_follows_catalog_order(store, settings, add_materials):
    add_materials(("Z9", "Zinc"), ("A1", "Alum"), ("M5", "Mica"))

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [r.id for r in result.rows] == ["Z9", "A1", "M5"]
    assert store.read_row(settings.summary_sheet, 0) == ["Material ID", "Z9", "A1", "M5"]


def test_repeated_catalog_id_gets_one_summary_column(store, settings):
    for row in (["M2", "Bolt"], ["M1", "Widget"], ["M2", "Bolt v2"]):
        store.append_row(settings.catalog_sheet, row)

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [(r.id, r.name) for r in result.rows] == [("M2", "Bolt v2"), ("M1", "Widget")]
    assert store.read_row(settings.summary_sheet, 0) == ["Material ID", "M2", "M1"]


def test_compute_stock_leaves_summary_sheet_alone(store, settings, add_materials):
    add_materials(("M1", "Widget"))
    before = store.read_table(settings.summary_sheet)

    rows = logic.compute_stock(store, settings, TODAY)

    assert [r.id for r in rows] == ["M1"]
    assert store.read_table(settings.summary_sheet) == before


def test_start_row_is_never_written(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"), ("M2", "Bolt"))
    set_start(["12", "n/a"])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [r.start for r in result.rows] == [12, 0]
    assert store.read_row(settings.summary_sheet, logic.START_ROW) == ["Start", "12", "n/a"]


def test_net_formula(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"), ("M2", "Bolt"), ("M3", "Nut"))
    orders.submit_purchase(store, settings, "Acme", {"M1": 10, "M2": 5}, despatch_date=YESTERDAY)
    orders.submit_purchase(store, settings, "Acme", {"M1": 100}, despatch_date=TOMORROW)
    orders.submit_sale(store, settings, "Bob", {"M1": 4, "M2": 8}, appointment_date=TODAY)
    set_start([2])

    rows = {r.id: r for r in logic.compute_stock(store, settings, TODAY)}

    assert rows["M1"].net == 2 + 10 - 4
    assert rows["M1"].incoming == 100
    assert rows["M2"].net == 0 + 5 - 8
    assert rows["M3"].net == 0
    for r in rows.values():
        assert r.net == r.start + r.received - r.sent


def test_manual_override_replaces_previous_snapshot(store, settings, add_materials):
    add_materials(("M1", "Widget"), ("M2", "Bolt"))
    orders.submit_manual(store, settings, {"M1": 7, "M2": 3}, recorded_at=datetime(2026, 10, 17, 8, 0))
    first = logic.compute_and_refresh_stock(store, settings, TODAY)
    # back-dated, still the newest snapshot
    orders.submit_manual(store, settings, {"M1": 2}, recorded_at=datetime(2026, 10, 16, 8, 0))
    second = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [r.manual for r in first.rows] == [7, 3]
    assert [r.manual for r in second.rows] == [2, 0]
    assert store.read_row(settings.summary_sheet, 8) == ["Manual", 2, 0]


def test_discontinued_material_drops_out_of_summary(store, settings, add_materials):
    add_materials(("M1", "Widget"))
    orders.submit_purchase(store, settings, "Acme", {"M1": 4}, despatch_date=YESTERDAY)
    # a column for a material the catalog no longer lists
    width = store.width(settings.purchases.sheet)
    store.ensure_width(settings.purchases.sheet, width + 1)
    store.write_range(settings.purchases.sheet, 0, width, [["OLD"]])
    store.write_range(settings.purchases.sheet, 1, width, [[99]])

    totals = logic.accumulate_ledger(store.read_table(settings.purchases.sheet), settings.purchases, TODAY)
    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert totals.total == {"M1": 4, "OLD": 99}
    assert [r.id for r in result.rows] == ["M1"]


def test_shrinking_catalog_blanks_stale_columns(store, settings, add_materials):
    add_materials(("M1", "Widget"), ("M2", "Bolt"))
    logic.compute_and_refresh_stock(store, settings, TODAY)
    store.write_range(settings.catalog_sheet, 2, 0, [["", ""]])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [r.id for r in result.rows] == ["M1"]
    assert store.read_row(settings.summary_sheet, 0) == ["Material ID", "M1", ""]


def test_start_stays_with_its_material_when_catalog_shrinks(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"), ("M2", "Bolt"), ("M3", "Nut"))
    set_start([5, 6, 7])
    logic.compute_and_refresh_stock(store, settings, TODAY)
    store.write_range(settings.catalog_sheet, 2, 0, [["", ""]])

    second = logic.compute_and_refresh_stock(store, settings, TODAY)
    third = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert {r.id: r.start for r in second.rows} == {"M1": 5, "M3": 7}
    assert {r.id: r.net for r in second.rows} == {"M1": 5, "M3": 7}
    assert third.rows == second.rows
    assert store.read_row(settings.summary_sheet, 0) == ["Material ID", "M1", "M3", ""]
    assert store.read_row(settings.summary_sheet, logic.START_ROW) == ["Start", 5, 7, ""]


def test_start_for_a_new_material_is_read_by_position(store, settings, add_materials, set_start):
    add_materials(("M1", "Widget"))
    logic.compute_and_refresh_stock(store, settings, TODAY)
    add_materials(("M2", "Bolt"))
    set_start([5, 9])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert [r.start for r in result.rows] == [5, 9]


def test_empty_catalog_is_not_an_error(store, settings, add_materials):
    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert result.ok
    assert result.rows == []

    add_materials(("M1", "Widget"))
    logic.compute_and_refresh_stock(store, settings, TODAY)
    store.write_range(settings.catalog_sheet, 1, 0, [["", ""]])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert result.ok
    assert result.rows == []
    assert store.read_row(settings.summary_sheet, 0) == ["Material ID", ""]
    assert store.read_row(settings.summary_sheet, 3) == ["Sent", ""]


# =============================
# FAILURES
# =============================

def test_catalog_failure_is_reported_not_raised(store, settings):
    settings.catalog_sheet = "Nope"

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert not result.ok
    assert result.rows == []
    assert isinstance(result.error, logic.AggregationFailure)
    assert isinstance(result.error.cause, logic.CatalogUnavailable)


def test_malformed_sales_header_aborts_without_writing(store, settings, add_materials):
    add_materials(("M1", "Widget"), ("M2", "Bolt"))
    logic.compute_and_refresh_stock(store, settings, TODAY)
    before = store.read_table(settings.summary_sheet)

    sheet = settings.sales.sheet
    offset = settings.sales.material_offset
    store.ensure_width(sheet, offset + 4)
    store.write_range(sheet, 0, offset, [["M1", "M2", "M2", "M1"]])

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert isinstance(result.error.cause, logic.LedgerReadFailure)
    assert result.error.cause.ledger == sheet
    assert store.read_table(settings.summary_sheet) == before


def test_missing_ledger_sheet(store, settings, add_materials):
    add_materials(("M1", "Widget"))
    settings.manual.sheet = "Gone"

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert isinstance(result.error.cause, logic.LedgerReadFailure)


def test_sink_failure_returns_rows_and_keeps_old_summary(store, settings, add_materials, monkeypatch):
    add_materials(("M1", "Widget"))
    logic.compute_and_refresh_stock(store, settings, TODAY)
    before = store.read_table(settings.summary_sheet)
    orders.submit_purchase(store, settings, "Acme", {"M1": 6}, despatch_date=YESTERDAY)

    real_write = store.write_range

    def failing_write(name, row_idx, col_idx, values):
        if name == settings.summary_sheet and row_idx == 8 and col_idx == settings.summary_offset:
            raise sqlite3.OperationalError("disk I/O error")
        return real_write(name, row_idx, col_idx, values)

    monkeypatch.setattr(store, "write_range", failing_write)

    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    assert result.sink_failed
    assert [r.net for r in result.rows] == [6]
    assert isinstance(result.error.cause, logic.SinkWriteFailure)
    assert store.read_table(settings.summary_sheet) == before


def test_summary_frame(store, settings, add_materials):
    add_materials(("M1", "Widget"))
    result = logic.compute_and_refresh_stock(store, settings, TODAY)

    df = logic.summary_frame(result.rows)

    assert list(df.columns) == ["id", "name", "start", "sent", "outgoing", "received", "incoming", "net", "manual"]
    assert df.loc[0, "id"] == "M1"
