import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from tablecalc.models import Cell, Column, Row, Table


SCHEMA = """
CREATE TABLE IF NOT EXISTS tables (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    is_archived INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS columns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_id INTEGER NOT NULL REFERENCES tables(id),
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    position INTEGER NOT NULL,
    is_computed INTEGER NOT NULL DEFAULT 0,
    formula TEXT,
    UNIQUE (table_id, name)
);
CREATE TABLE IF NOT EXISTS rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_id INTEGER NOT NULL REFERENCES tables(id),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    deleted_at DATETIME
);
CREATE TABLE IF NOT EXISTS cells (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    row_id INTEGER NOT NULL REFERENCES rows(id),
    column_id INTEGER NOT NULL REFERENCES columns(id),
    value_json TEXT,
    formula TEXT,
    error_code TEXT,
    calc_version INTEGER NOT NULL DEFAULT 0,
    UNIQUE (row_id, column_id)
);
CREATE INDEX IF NOT EXISTS cells_row_id_idx ON cells (row_id);
CREATE INDEX IF NOT EXISTS columns_table_id_position_idx ON columns (table_id, position);
CREATE INDEX IF NOT EXISTS rows_table_id_idx ON rows (table_id);
"""


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def initialize_schema(self):
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()


@dataclass
class CellWrite:
    """One persisted cell write. `formula` is only written when `set_formula` is set."""
    row_id: int
    column_id: int
    value: Any = None
    error_code: Optional[str] = None
    formula: Optional[str] = None
    set_formula: bool = False


def _dump_value(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class TableRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_table(self, row) -> Table:
        d = dict(row)
        d["is_archived"] = bool(d["is_archived"])
        return Table(**d)

    def create(self, name: str) -> Table:
        with self.db.get_connection() as conn:
            cursor = conn.execute("INSERT INTO tables (name) VALUES (?)", (name,))
            conn.commit()
            return self.get_by_id(cursor.lastrowid)

    def get_by_id(self, table_id: int) -> Optional[Table]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM tables WHERE id = ?", (table_id,)).fetchone()
            return self._row_to_table(row) if row else None

    def get_all(self) -> List[Table]:
        with self.db.get_connection() as conn:
            rows = conn.execute("SELECT * FROM tables WHERE is_archived = 0 ORDER BY id").fetchall()
            return [self._row_to_table(r) for r in rows]

    def name_index(self) -> Dict[str, int]:
        """Non-archived table name -> id."""
        return {t.name: t.id for t in self.get_all()}

    def rename(self, table_id: int, name: str) -> Optional[Table]:
        with self.db.get_connection() as conn:
            conn.execute(
                "UPDATE tables SET name = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (name, table_id),
            )
            conn.commit()
            return self.get_by_id(table_id)

    def archive(self, table_id: int) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE tables SET is_archived = 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (table_id,),
            )
            conn.commit()
            return cursor.rowcount > 0


class ColumnRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_column(self, row) -> Column:
        d = dict(row)
        d["is_computed"] = bool(d["is_computed"])
        return Column(**d)

    def create(self, table_id: int, name: str, col_type: str = "text",
               formula: Optional[str] = None) -> Column:
        """Append a column at the next position and give every active row an empty cell."""
        with self.db.get_connection() as conn:
            (max_pos,) = conn.execute(
                "SELECT COALESCE(MAX(position), 0) FROM columns WHERE table_id = ?", (table_id,)
            ).fetchone()
            cursor = conn.execute(
                "INSERT INTO columns (table_id, name, type, position, is_computed, formula) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (table_id, name, col_type, max_pos + 1, int(formula is not None), formula),
            )
            column_id = cursor.lastrowid
            conn.execute(
                "INSERT OR IGNORE INTO cells (row_id, column_id) "
                "SELECT id, ? FROM rows WHERE table_id = ? AND deleted_at IS NULL",
                (column_id, table_id),
            )
            conn.commit()
            return self.get_by_id(column_id)

    def get_by_id(self, column_id: int) -> Optional[Column]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM columns WHERE id = ?", (column_id,)).fetchone()
            return self._row_to_column(row) if row else None

    def list_for_table(self, table_id: int) -> List[Column]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM columns WHERE table_id = ? ORDER BY position ASC", (table_id,)
            ).fetchall()
            return [self._row_to_column(r) for r in rows]

    def list_computed(self, table_id: int) -> List[Column]:
        return [c for c in self.list_for_table(table_id) if c.is_computed and c.formula]

    def set_formula(self, column_id: int, formula: Optional[str]) -> Optional[Column]:
        with self.db.get_connection() as conn:
            conn.execute(
                "UPDATE columns SET formula = ?, is_computed = ? WHERE id = ?",
                (formula, int(formula is not None), column_id),
            )
            conn.commit()
            return self.get_by_id(column_id)


class RowRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def create(self, table_id: int) -> Row:
        """Insert a row with an empty cell for every column of the table."""
        with self.db.get_connection() as conn:
            cursor = conn.execute("INSERT INTO rows (table_id) VALUES (?)", (table_id,))
            row_id = cursor.lastrowid
            conn.execute(
                "INSERT INTO cells (row_id, column_id) SELECT ?, id FROM columns WHERE table_id = ?",
                (row_id, table_id),
            )
            conn.commit()
            return self.get_by_id(row_id)

    def get_by_id(self, row_id: int) -> Optional[Row]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM rows WHERE id = ?", (row_id,)).fetchone()
            return Row(**dict(row)) if row else None

    def list_active_ids(self, table_id: int) -> List[int]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT id FROM rows WHERE table_id = ? AND deleted_at IS NULL ORDER BY id ASC",
                (table_id,),
            ).fetchall()
            return [r["id"] for r in rows]

    def soft_delete(self, row_id: int) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE rows SET deleted_at = CURRENT_TIMESTAMP WHERE id = ? AND deleted_at IS NULL",
                (row_id,),
            )
            conn.commit()
            return cursor.rowcount > 0


class CellRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_cell(self, row) -> Cell:
        d = dict(row)
        raw = d.pop("value_json", None)
        d.pop("table_id", None)
        return Cell(**d, value=json.loads(raw) if raw is not None else None)

    def get(self, row_id: int, column_id: int) -> Optional[Cell]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM cells WHERE row_id = ? AND column_id = ?", (row_id, column_id)
            ).fetchone()
            return self._row_to_cell(row) if row else None

    def get_many(self, coords: Iterable[tuple[int, int]]) -> Dict[tuple[int, int], Cell]:
        wanted = set(coords)
        if not wanted:
            return {}
        row_ids = sorted({r for r, _ in wanted})
        placeholders = ",".join("?" * len(row_ids))
        with self.db.get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM cells WHERE row_id IN ({placeholders})", row_ids
            ).fetchall()
        cells = (self._row_to_cell(r) for r in rows)
        return {(c.row_id, c.column_id): c for c in cells if (c.row_id, c.column_id) in wanted}

    def list_for_table(self, table_id: int) -> List[Cell]:
        """Every cell of the table's active rows."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT cells.* FROM cells JOIN rows ON cells.row_id = rows.id "
                "WHERE rows.table_id = ? AND rows.deleted_at IS NULL ORDER BY cells.id",
                (table_id,),
            ).fetchall()
            return [self._row_to_cell(r) for r in rows]

    def list_formula_cells(self, table_id: int, limit: Optional[int] = None) -> List[Cell]:
        sql = (
            "SELECT cells.* FROM cells JOIN rows ON cells.row_id = rows.id "
            "WHERE rows.table_id = ? AND rows.deleted_at IS NULL AND cells.formula IS NOT NULL "
            "ORDER BY cells.id"
        )
        params: list = [table_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.db.get_connection() as conn:
            return [self._row_to_cell(r) for r in conn.execute(sql, params).fetchall()]

    def _write(self, conn, write: CellWrite) -> None:
        conn.execute(
            """INSERT INTO cells (row_id, column_id, value_json, formula, error_code, calc_version)
               VALUES (?, ?, ?, ?, ?, 1)
               ON CONFLICT (row_id, column_id) DO UPDATE SET
                   value_json = excluded.value_json,
                   error_code = excluded.error_code,
                   formula = CASE WHEN ? THEN excluded.formula ELSE cells.formula END,
                   calc_version = cells.calc_version + 1""",
            (write.row_id, write.column_id, _dump_value(write.value),
             write.formula if write.set_formula else None, write.error_code,
             int(write.set_formula)),
        )

    def write(self, write: CellWrite) -> Cell:
        return self.write_many([write])[0]

    def write_many(self, writes: List[CellWrite]) -> List[Cell]:
        """Apply all writes in one transaction, bumping calc_version on each."""
        if not writes:
            return []
        with self.db.get_connection() as conn:
            for w in writes:
                self._write(conn, w)
            conn.commit()
        stored = self.get_many((w.row_id, w.column_id) for w in writes)
        return [stored[(w.row_id, w.column_id)] for w in writes]


class Store:
    """All repositories over one database."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.tables = TableRepository(db)
        self.columns = ColumnRepository(db)
        self.rows = RowRepository(db)
        self.cells = CellRepository(db)
