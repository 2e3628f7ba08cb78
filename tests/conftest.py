from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from tablecalc.config import Settings
from tablecalc.formula.registry import ContextRegistry
from tablecalc.service import FormulaService
from tablecalc.storage import CellWrite, DatabaseManager, Store


@dataclass
class SeededTable:
    id: int
    name: str
    columns: dict[str, int]
    rows: list[int]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=str(tmp_path / "tablecalc.db"), recalc_time_budget=0)


@pytest.fixture
def store(settings: Settings) -> Store:
    db = DatabaseManager(settings.db_path)
    db.initialize_schema()
    return Store(db)


@pytest.fixture
def registry(store: Store) -> Iterator[ContextRegistry]:
    contexts = ContextRegistry(store)
    yield contexts
    contexts.dispose()


@pytest.fixture
def service(store: Store, registry: ContextRegistry, settings: Settings) -> FormulaService:
    return FormulaService(store, registry, settings)


@pytest.fixture
def make_table(store: Store) -> Callable[..., SeededTable]:
    """Create a table with the given columns and one row per entry of `rows`.

    Each row is a dict of column name -> value; formulas are not evaluated here.
    """

    def _make(name: str, columns: list[str], rows: list[dict[str, Any]] | None = None) -> SeededTable:
        table = store.tables.create(name)
        column_ids = {col: store.columns.create(table.id, col).id for col in columns}
        row_ids = []
        writes = []
        for values in rows or []:
            row_id = store.rows.create(table.id).id
            row_ids.append(row_id)
            for col, value in values.items():
                writes.append(CellWrite(row_id=row_id, column_id=column_ids[col], value=value))
        store.cells.write_many(writes)
        return SeededTable(id=table.id, name=name, columns=column_ids, rows=row_ids)

    return _make
