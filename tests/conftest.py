from datetime import date

import pytest

import logic
import orders
from config import Settings
from db import SheetStore

TODAY = date(2026, 10, 18)


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=tmp_path / "book.sqlite")


@pytest.fixture
def store(settings):
    store = SheetStore(settings.db_path)
    logic.init_workbook(store, settings)
    return store


@pytest.fixture
def add_materials(store, settings):
    def _add(*pairs):
        for material_id, name in pairs:
            orders.add_material(store, settings, material_id, name)
    return _add


@pytest.fixture
def set_start(store, settings):
    """Type opening stock into the Start row, the way a user would."""
    def _set(values):
        sheet = settings.summary_sheet
        store.ensure_width(sheet, settings.summary_offset + len(values))
        store.write_range(sheet, logic.START_ROW, settings.summary_offset, [list(values)])
    return _set
