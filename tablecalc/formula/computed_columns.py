"""Computed columns: formulas that name columns instead of cells.

``=[Price]*0.19`` is translated per row into ``=A3*0.19`` (for the row at
position 3 when Price is column A) and written as a regular cell formula.
Dependencies between computed columns are tracked by the names they mention.
"""

import logging
import re
import time
from typing import Iterable, List, Optional

from tablecalc.formula.cell_mapper import CellMapper
from tablecalc.formula.context import normalize_formula
from tablecalc.formula.errors import NotFoundError, TableCalcError, UnmappedCellError
from tablecalc.formula.propagation import merge_affected, persist_computed, to_affected
from tablecalc.models import ColumnRecalcResult, FormulaValidation, PropagationResult, RowResult
from tablecalc.storage import CellWrite, Store

logger = logging.getLogger(__name__)

# [Name] not followed by '!', which would make it a table reference
_COLUMN_TOKEN_RE = re.compile(r'\[([^\]]+)\](?!\s*!)')


class ComputedColumnFormulaTranslator:
    def __init__(self, store: Store, contexts, *, max_cells: Optional[int] = None,
                 time_budget: Optional[float] = None):
        self.store = store
        self.contexts = contexts
        self.max_cells = max_cells
        self.time_budget = time_budget

    # ── translation ──────────────────────────────────────────────

    @staticmethod
    def get_dependencies(formula_text: str) -> set[str]:
        """Column names the formula mentions as [Name]."""
        return {m.group(1).strip() for m in _COLUMN_TOKEN_RE.finditer(formula_text or "")}

    def translate_for_row(self, table_id: int, formula_text: str, row_id: int) -> str:
        mapper = self.contexts.get(table_id).mapper_for(table_id)
        return self._translate(mapper, normalize_formula(formula_text), row_id)

    @staticmethod
    def _translate(mapper: CellMapper, formula: str, row_id: int) -> str:
        def replace(match: re.Match) -> str:
            column_id = mapper.column_id_for_name(match.group(1).strip())
            if column_id is None:
                return match.group(0)
            ref = mapper.cell_to_reference(row_id, column_id)
            if ref is None:
                raise UnmappedCellError(row_id, column_id, "row is not part of the row order")
            return ref

        return _COLUMN_TOKEN_RE.sub(replace, formula)

    def validate_column_formula(self, table_id: int, formula_text: str) -> FormulaValidation:
        """Check the formula against the first row (or A1 when the table has no rows).

        `value` is what the formula gives for that row.
        """
        formula = normalize_formula(formula_text)
        ctx = self.contexts.get(table_id)
        mapper = ctx.mapper_for(table_id)
        unknown = sorted(n for n in self.get_dependencies(formula) if mapper.column_id_for_name(n) is None)
        if mapper.row_order:
            sample = self._translate(mapper, formula, mapper.row_order[0])
        else:
            sample = _COLUMN_TOKEN_RE.sub(
                lambda m: "A1" if mapper.column_id_for_name(m.group(1).strip()) else m.group(0), formula)
        validation, preview = ctx.preview_formula(sample)
        message = validation.message
        if not message and unknown:
            message = f"Unknown column(s): {', '.join(unknown)}"
        return FormulaValidation(
            formula=formula,
            is_valid=validation.is_valid,
            value=preview.value,
            error_code=validation.error_code or ("#NAME?" if unknown else preview.error_code),
            message=message,
        )

    # ── recalculation ────────────────────────────────────────────

    def recalculate_column(
        self,
        table_id: int,
        column_id: int,
        formula_text: Optional[str] = None,
        row_ids: Optional[Iterable[int]] = None,
        *,
        max_cells: Optional[int] = None,
        time_budget: Optional[float] = None,
    ) -> ColumnRecalcResult:
        """Translate and write the column formula for each row (all rows by default).

        A failing row is reported and skipped. Stops early once `max_cells`
        rows are written or the time budget is spent.
        """
        if formula_text is None:
            column = self.store.columns.get_by_id(column_id)
            if column is None or not column.formula:
                raise NotFoundError(f"Computed column {column_id} not found")
            formula_text = column.formula
        formula = normalize_formula(formula_text)
        max_cells = self.max_cells if max_cells is None else max_cells
        time_budget = self.time_budget if time_budget is None else time_budget

        ctx = self.contexts.get(table_id)
        mapper = ctx.mapper_for(table_id)
        rows = list(mapper.row_order) if row_ids is None else list(row_ids)
        result = ColumnRecalcResult(column_id=column_id, success=True)
        deadline = time.monotonic() + time_budget if time_budget else None
        writes: List[CellWrite] = []
        refs: List[str] = []

        for row_id in rows:
            if max_cells is not None and len(writes) >= max_cells:
                result.truncated = True
                break
            if deadline is not None and time.monotonic() > deadline:
                result.truncated = True
                break
            try:
                translated = self._translate(mapper, formula, row_id)
                evaluation = ctx.set_formula(row_id, column_id, translated)
            except TableCalcError as e:
                result.errors.append(f"Row {row_id}: {e}")
                result.results.append(RowResult(row_id=row_id, error=str(e), error_code=e.code))
                continue
            result.results.append(RowResult(row_id=row_id, value=evaluation.value,
                                            error_code=evaluation.error_code))
            writes.append(CellWrite(row_id=row_id, column_id=column_id, value=evaluation.value,
                                    error_code=evaluation.error_code, formula=translated,
                                    set_formula=True))
            refs.append(ctx.reference(row_id, column_id))

        dependents = ctx.recalculate_affected(refs, max_cells, time_budget=time_budget)
        result.errors.extend(dependents.errors)
        result.truncated = result.truncated or dependents.truncated
        mirrored = self.contexts.mirror(table_id, [(w.row_id, w.column_id, w.formula) for w in writes])
        written = [to_affected(cell) for cell in self.store.cells.write_many(writes)]
        targets = [(w.row_id, w.column_id) for w in writes]
        others = persist_computed(self.store, dependents.affected_cells + mirrored, exclude=targets)
        result.affected_cells = merge_affected(written, others)
        result.success = not result.errors
        if result.truncated:
            logger.warning("Column %d of table %d stopped early after %d of %d rows",
                           column_id, table_id, len(writes), len(rows))
        logger.info("Recalculated computed column %d of table %d: %d row(s), %d error(s)",
                    column_id, table_id, len(writes), len(result.errors))
        return result

    def recalculate_all(self, table_id: int, row_ids: Optional[Iterable[int]] = None) -> List[ColumnRecalcResult]:
        row_ids = None if row_ids is None else list(row_ids)
        return [
            self.recalculate_column(table_id, column.id, column.formula, row_ids)
            for column in self.store.columns.list_computed(table_id)
        ]

    def propagate_source_column_change(
        self,
        table_id: int,
        changed_column_id: int,
        row_ids: Optional[Iterable[int]] = None,
        _visited: Optional[set] = None,
    ) -> PropagationResult:
        """Re-run every computed column whose formula names the changed column.

        Columns that depend on a re-run column are re-run in turn, each at most once.
        """
        result = PropagationResult()
        changed = self.store.columns.get_by_id(changed_column_id)
        if changed is None:
            result.errors.append(f"Column {changed_column_id} not found")
            return result
        row_ids = None if row_ids is None else list(row_ids)
        visited = _visited if _visited is not None else set()
        visited.add(changed_column_id)

        for column in self.store.columns.list_computed(table_id):
            if column.id in visited or changed.name not in self.get_dependencies(column.formula):
                continue
            visited.add(column.id)
            column_result = self.recalculate_column(table_id, column.id, column.formula, row_ids)
            result.affected_computed_columns += 1
            result.recalculated_cells += sum(1 for r in column_result.results if r.error is None)
            result.truncated = result.truncated or column_result.truncated
            result.errors.extend(column_result.errors)
            nested = self.propagate_source_column_change(table_id, column.id, row_ids, visited)
            result.affected_computed_columns += nested.affected_computed_columns
            result.recalculated_cells += nested.recalculated_cells
            result.errors.extend(nested.errors)
            result.truncated = result.truncated or nested.truncated
            result.affected_cells = merge_affected(
                result.affected_cells, column_result.affected_cells, nested.affected_cells)
        return result
