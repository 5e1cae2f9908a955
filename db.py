import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS sheets (
  name TEXT PRIMARY KEY,
  n_cols INTEGER NOT NULL DEFAULT 0      -- current sheet width
);

-- one row per non-blank cell, value is a JSON scalar
CREATE TABLE IF NOT EXISTS cells (
  sheet TEXT NOT NULL,
  row_idx INTEGER NOT NULL,
  col_idx INTEGER NOT NULL,
  value TEXT NOT NULL,
  PRIMARY KEY(sheet, row_idx, col_idx),
  FOREIGN KEY(sheet) REFERENCES sheets(name) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_cells_row ON cells(sheet, row_idx);
"""


class SheetNotFound(LookupError):
    pass


def _encode(value):
    if isinstance(value, datetime):
        value = value.isoformat(timespec="seconds")
    elif isinstance(value, date):
        value = value.isoformat()
    return json.dumps(value)


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value == "")


class SheetStore:
    """
    Spreadsheet-shaped storage: named sheets of rows and columns, addressed by
    0-based row/column indexes. Blank cells read back as "".
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)
        self._conn = None
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        with self._cursor() as cur:
            cur.executescript(SCHEMA_SQL)

    def get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def transaction(self):
        """All writes inside the block commit together or not at all."""
        if self._conn is not None:
            yield self
            return
        self._conn = self.get_conn()
        try:
            yield self
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _cursor(self):
        if self._conn is not None:
            yield self._conn.cursor()
            return
        conn = self.get_conn()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        finally:
            conn.close()

    # =============================
    # SHEETS
    # =============================

    def has_sheet(self, name: str) -> bool:
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM sheets WHERE name=?", (name,))
            return cur.fetchone() is not None

    def create_sheet(self, name: str, headers=None):
        """Create the sheet if missing. Headers are written only into an empty sheet."""
        with self._cursor() as cur:
            cur.execute("INSERT OR IGNORE INTO sheets (name, n_cols) VALUES (?, 0)", (name,))
        if headers and self.row_count(name) == 0:
            self.append_row(name, headers)

    def width(self, name: str) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT n_cols FROM sheets WHERE name=?", (name,))
            row = cur.fetchone()
        if row is None:
            raise SheetNotFound(name)
        return row[0]

    def ensure_width(self, name: str, n_cols: int):
        if n_cols > self.width(name):
            with self._cursor() as cur:
                cur.execute("UPDATE sheets SET n_cols=? WHERE name=?", (n_cols, name))

    def row_count(self, name: str) -> int:
        self.width(name)
        with self._cursor() as cur:
            cur.execute("SELECT MAX(row_idx) FROM cells WHERE sheet=?", (name,))
            last = cur.fetchone()[0]
        return 0 if last is None else last + 1

    # =============================
    # READS
    # =============================

    def read_table(self, name: str) -> list:
        """All rows, each padded with "" to the sheet width."""
        n_cols = self.width(name)
        n_rows = self.row_count(name)
        rows = [[""] * n_cols for _ in range(n_rows)]
        with self._cursor() as cur:
            cur.execute("SELECT row_idx, col_idx, value FROM cells WHERE sheet=?", (name,))
            for r, c, v in cur.fetchall():
                rows[r][c] = json.loads(v)
        return rows

    def read_row(self, name: str, row_idx: int, start_col: int = 0) -> list:
        n_cols = self.width(name)
        row = [""] * max(n_cols - start_col, 0)
        with self._cursor() as cur:
            cur.execute(
                "SELECT col_idx, value FROM cells WHERE sheet=? AND row_idx=? AND col_idx>=?",
                (name, row_idx, start_col),
            )
            for c, v in cur.fetchall():
                row[c - start_col] = json.loads(v)
        return row

    # =============================
    # WRITES
    # =============================

    def write_range(self, name: str, row_idx: int, col_idx: int, values: list):
        """Write a 2D block of values with its top-left corner at (row_idx, col_idx)."""
        n_cols = self.width(name)
        for row in values:
            if col_idx + len(row) > n_cols:
                raise ValueError(
                    f"Range exceeds width of sheet '{name}' ({col_idx + len(row)} > {n_cols})"
                )
        with self._cursor() as cur:
            for i, row in enumerate(values):
                for j, value in enumerate(row):
                    self._put(cur, name, row_idx + i, col_idx + j, value)

    def append_row(self, name: str, values: list) -> int:
        row_idx = self.row_count(name)
        self.ensure_width(name, len(values))
        with self._cursor() as cur:
            for j, value in enumerate(values):
                self._put(cur, name, row_idx, j, value)
            # keep an all-blank row addressable
            if all(_is_blank(v) for v in values):
                cur.execute(
                    "INSERT OR REPLACE INTO cells (sheet, row_idx, col_idx, value) VALUES (?, ?, 0, ?)",
                    (name, row_idx, json.dumps("")),
                )
        return row_idx

    def insert_columns(self, name: str, at: int, count: int):
        """Shift every column at or after `at` right by `count`; cells move with their column."""
        if count <= 0:
            return
        n_cols = self.width(name)
        with self._cursor() as cur:
            # two passes through negative indexes so the primary key never collides
            cur.execute(
                "UPDATE cells SET col_idx = -(col_idx + ?) - 1 WHERE sheet=? AND col_idx>=?",
                (count, name, at),
            )
            cur.execute(
                "UPDATE cells SET col_idx = -col_idx - 1 WHERE sheet=? AND col_idx<0",
                (name,),
            )
            cur.execute(
                "UPDATE sheets SET n_cols=? WHERE name=?",
                (max(n_cols, at) + count, name),
            )

    def _put(self, cur, name, row_idx, col_idx, value):
        if _is_blank(value):
            cur.execute(
                "DELETE FROM cells WHERE sheet=? AND row_idx=? AND col_idx=?",
                (name, row_idx, col_idx),
            )
        else:
            cur.execute(
                "INSERT OR REPLACE INTO cells (sheet, row_idx, col_idx, value) VALUES (?, ?, ?, ?)",
                (name, row_idx, col_idx, _encode(value)),
            )
