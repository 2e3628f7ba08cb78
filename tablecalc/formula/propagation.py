"""Carry a write through to everything that depends on it.

Engine dependents of the changed cells are re-evaluated in the table's own
context, the write is replayed into contexts of other tables that hold a copy
of it, and computed columns naming a changed column are re-run. Every
recalculated cell is persisted with a fresh calc_version.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from tablecalc.formula.context import ComputedCell
from tablecalc.formula.errors import UnmappedCellError
from tablecalc.models import AffectedCell, Cell
from tablecalc.storage import CellWrite, Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CellChange:
    """A write that already happened: content is the formula text or the engine input of the value."""
    row_id: int
    column_id: int
    content: Any = None


@dataclass
class PropagationOutcome:
    affected_cells: List[AffectedCell] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    truncated: bool = False


def to_affected(cell: Cell) -> AffectedCell:
    return AffectedCell(
        id=cell.id,
        row_id=cell.row_id,
        column_id=cell.column_id,
        value=cell.value,
        error_code=cell.error_code,
        calc_version=cell.calc_version,
    )


def persist_computed(store: Store, cells: Iterable[ComputedCell],
                     exclude: Iterable[tuple[int, int]] = ()) -> List[AffectedCell]:
    """Write value and error code of each cell (formula untouched); the last result per cell wins."""
    skip = set(exclude)
    latest: dict[tuple[int, int], ComputedCell] = {}
    for cell in cells:
        key = (cell.row_id, cell.column_id)
        if key in skip:
            continue
        latest.pop(key, None)
        latest[key] = cell
    writes = [
        CellWrite(row_id=c.row_id, column_id=c.column_id, value=c.value, error_code=c.error_code)
        for c in latest.values()
    ]
    return [to_affected(cell) for cell in store.cells.write_many(writes)]


def merge_affected(*groups: Iterable[AffectedCell]) -> List[AffectedCell]:
    merged: dict[tuple[int, int], AffectedCell] = {}
    for group in groups:
        for cell in group:
            key = (cell.row_id, cell.column_id)
            current = merged.get(key)
            if current is None or cell.calc_version >= current.calc_version:
                merged.pop(key, None)
                merged[key] = cell
    return list(merged.values())


class DependencyPropagator:
    def __init__(self, store: Store, contexts, translator=None, *,
                 max_cells: Optional[int] = None, time_budget: Optional[float] = None):
        self.store = store
        self.contexts = contexts
        self.translator = translator
        self.max_cells = max_cells
        self.time_budget = time_budget

    def propagate(self, table_id: int, changes: List[CellChange], *,
                  include_computed: bool = True) -> PropagationOutcome:
        """Recalculate and persist everything depending on `changes` (caller holds the table lock)."""
        outcome = PropagationOutcome()
        if not changes:
            return outcome
        ctx = self.contexts.get(table_id)

        refs = []
        for change in changes:
            try:
                refs.append(ctx.reference(change.row_id, change.column_id))
            except UnmappedCellError as e:
                outcome.errors.append(str(e))
        result = ctx.recalculate_affected(refs, self.max_cells, time_budget=self.time_budget)
        outcome.errors.extend(result.errors)
        outcome.truncated = result.truncated

        computed = list(result.affected_cells)
        computed.extend(self.contexts.mirror(
            table_id, [(c.row_id, c.column_id, c.content) for c in changes]
        ))
        targets = [(c.row_id, c.column_id) for c in changes]
        engine_affected = persist_computed(self.store, computed, exclude=targets)

        column_affected: List[AffectedCell] = []
        if include_computed and self.translator is not None:
            for column_id, row_ids in self._group_by_column(changes).items():
                column_result = self.translator.propagate_source_column_change(table_id, column_id, row_ids)
                outcome.errors.extend(column_result.errors)
                outcome.truncated = outcome.truncated or column_result.truncated
                column_affected.extend(column_result.affected_cells)

        target_set = set(targets)
        outcome.affected_cells = [
            cell for cell in merge_affected(engine_affected, column_affected)
            if (cell.row_id, cell.column_id) not in target_set
        ]
        logger.debug("Propagated %d change(s) in table %d to %d cell(s)",
                     len(changes), table_id, len(outcome.affected_cells))
        return outcome

    @staticmethod
    def _group_by_column(changes: List[CellChange]) -> dict[int, List[int]]:
        grouped: dict[int, List[int]] = {}
        for change in changes:
            rows = grouped.setdefault(change.column_id, [])
            if change.row_id not in rows:
                rows.append(change.row_id)
        return grouped
