"""Explicitly triggered re-evaluation of volatile formulas.

Persisted values are snapshots, so NOW(), TODAY(), RAND() and RANDBETWEEN()
only move when something asks. A recalculation re-applies the unchanged
formula text, compares with the stored value and writes only what changed.
"""

import logging
import re
import time
from typing import List, Optional

from tablecalc.formula.errors import TableCalcError
from tablecalc.formula.propagation import merge_affected, persist_computed, to_affected
from tablecalc.models import Cell, RecalcCellDiff, RecalcResponse, RecalcStats, RecalcSummary
from tablecalc.storage import CellWrite, Store

logger = logging.getLogger(__name__)

VOLATILE_FUNCTIONS = ("NOW", "TODAY", "RAND", "RANDBETWEEN")

_VOLATILE_RE = re.compile(r'\b(NOW|TODAY|RAND|RANDBETWEEN)\s*\(', re.IGNORECASE)


def volatile_functions_in(formula: Optional[str]) -> list[str]:
    """Volatile function names used by the formula, upper-cased, in order of first use."""
    names: list[str] = []
    for match in _VOLATILE_RE.finditer(formula or ""):
        name = match.group(1).upper()
        if name not in names:
            names.append(name)
    return names


def is_volatile(formula: Optional[str]) -> bool:
    return bool(volatile_functions_in(formula))


class VolatileRecalculationCoordinator:
    def __init__(self, store: Store, contexts, *, max_cells: int = 1000,
                 time_budget: Optional[float] = None):
        self.store = store
        self.contexts = contexts
        self.max_cells = max_cells
        self.time_budget = time_budget

    def list_formula_cells(self, table_id: int, max_cells: Optional[int] = None) -> List[Cell]:
        limit = self.max_cells if max_cells is None else max_cells
        return self.store.cells.list_formula_cells(table_id, limit)

    def recalculate(
        self,
        table_id: int,
        *,
        force_all: bool = False,
        include_volatile: bool = True,
        max_cells: Optional[int] = None,
        time_budget: Optional[float] = None,
    ) -> RecalcResponse:
        """Re-evaluate volatile formulas (every formula with `force_all`) and persist changes.

        The caller holds the table lock.
        """
        started = time.perf_counter()
        max_cells = self.max_cells if max_cells is None else max_cells
        time_budget = self.time_budget if time_budget is None else time_budget
        deadline = time.monotonic() + time_budget if time_budget else None
        table = self.store.tables.get_by_id(table_id)
        summary = RecalcSummary(
            table_id=table_id,
            table_name=table.name if table else "",
            options={"force_recalc": force_all, "include_volatile": include_volatile,
                     "max_cells": max_cells, "time_budget": time_budget},
        )
        response = RecalcResponse(summary=summary)

        ctx = self.contexts.get(table_id)
        cells = self.list_formula_cells(table_id, max_cells)
        summary.total_cells = len(cells)
        writes: List[CellWrite] = []
        refs: List[str] = []
        changes = []

        for cell in cells:
            volatile = is_volatile(cell.formula)
            if volatile:
                summary.volatile_cells += 1
            if not force_all and not (include_volatile and volatile):
                continue
            if deadline is not None and time.monotonic() > deadline:
                summary.timed_out = True
                break
            summary.processed_cells += 1
            diff = RecalcCellDiff(cell_id=cell.id, row_id=cell.row_id, column_id=cell.column_id,
                                  formula=cell.formula, old_value=cell.value)
            try:
                evaluation = ctx.reapply_formula(cell.row_id, cell.column_id, cell.formula)
            except TableCalcError as e:
                summary.error_cells += 1
                diff.error = str(e)
                diff.error_code = e.code
                response.results.append(diff)
                continue
            diff.new_value = evaluation.value
            diff.error_code = evaluation.error_code
            diff.changed = evaluation.value != cell.value or evaluation.error_code != cell.error_code
            if evaluation.error_code:
                summary.error_cells += 1
            if diff.changed:
                summary.changed_cells += 1
                writes.append(CellWrite(row_id=cell.row_id, column_id=cell.column_id,
                                        value=evaluation.value, error_code=evaluation.error_code))
                refs.append(ctx.reference(cell.row_id, cell.column_id))
                changes.append((cell.row_id, cell.column_id, cell.formula))
            response.results.append(diff)

        if writes:
            dependents = ctx.recalculate_affected(refs, max_cells, time_budget=time_budget)
            mirrored = self.contexts.mirror(table_id, changes)
            written = [to_affected(c) for c in self.store.cells.write_many(writes)]
            others = persist_computed(self.store, dependents.affected_cells + mirrored,
                                      exclude=[(w.row_id, w.column_id) for w in writes])
            response.affected_cells = merge_affected(written, others)

        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        response.success = True
        response.message = (
            f"Recalculated {summary.processed_cells} cell(s), {summary.changed_cells} changed"
            + (" (stopped at time budget)" if summary.timed_out else "")
        )
        logger.info("Recalc table %d: total=%d processed=%d changed=%d errors=%d in %dms",
                    table_id, summary.total_cells, summary.processed_cells,
                    summary.changed_cells, summary.error_cells, summary.duration_ms)
        return response

    def stats(self, table_id: int) -> RecalcStats:
        table = self.store.tables.get_by_id(table_id)
        formula_cells = self.store.cells.list_formula_cells(table_id)
        counts = {name: 0 for name in VOLATILE_FUNCTIONS}
        volatile_cells = 0
        for cell in formula_cells:
            names = volatile_functions_in(cell.formula)
            if names:
                volatile_cells += 1
            for name in names:
                counts[name] += 1
        all_cells = self.store.cells.list_for_table(table_id)
        return RecalcStats(
            table_id=table_id,
            table_name=table.name if table else "",
            total_formula_cells=len(formula_cells),
            volatile_cells=volatile_cells,
            last_calc_version=max((c.calc_version for c in all_cells), default=0),
            volatile_function_counts=counts,
        )
