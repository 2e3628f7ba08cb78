"""Request-level formula operations.

Every mutating call holds the table lock from validation through
persistence of the last affected cell. If anything other than a domain
error escapes mid-way, the table's context is dropped so the next call
rebuilds it from the database.
"""

import logging
import time
from contextlib import contextmanager
from typing import List, Optional

from tablecalc.config import Settings
from tablecalc.formula.cell_mapper import RowOrderPolicy
from tablecalc.formula.computed_columns import ComputedColumnFormulaTranslator
from tablecalc.formula.context import literal_input, normalize_formula
from tablecalc.formula.errors import (
    GENERIC_ERROR,
    BulkLimitExceededError,
    FormulaValidationError,
    InvalidRowOrderError,
    NotFoundError,
    TableCalcError,
)
from tablecalc.formula.propagation import (
    CellChange,
    DependencyPropagator,
    PropagationOutcome,
    merge_affected,
)
from tablecalc.formula.registry import ContextRegistry
from tablecalc.formula.volatile import VolatileRecalculationCoordinator
from tablecalc.models import (
    AffectedCell,
    BulkCellError,
    BulkCellUpdateRequest,
    BulkUpdateResult,
    CellUpdate,
    CellUpdateResult,
    Column,
    ColumnCreate,
    ColumnRecalcResult,
    FormulaCell,
    FormulaValidation,
    RecalcRequest,
    RecalcResponse,
    RecalcStats,
    Row,
    RowOrderResult,
    Table,
)
from tablecalc.storage import CellWrite, Store

logger = logging.getLogger(__name__)


class FormulaService:
    def __init__(self, store: Store, contexts: ContextRegistry, settings: Settings):
        self.store = store
        self.contexts = contexts
        self.settings = settings
        time_budget = settings.recalc_time_budget or None
        self.translator = ComputedColumnFormulaTranslator(
            store, contexts, max_cells=settings.column_max_rows, time_budget=time_budget)
        self.propagator = DependencyPropagator(
            store, contexts, self.translator,
            max_cells=settings.recalc_max_cells, time_budget=time_budget)
        self.volatile = VolatileRecalculationCoordinator(
            store, contexts, max_cells=settings.recalc_max_cells, time_budget=time_budget)

    # ── helpers ──────────────────────────────────────────────────

    @contextmanager
    def _mutating(self, table_id: int):
        with self.contexts.lock(table_id):
            try:
                yield self.contexts.get(table_id)
            except TableCalcError:
                raise
            except Exception:
                logger.exception("Operation on table %d failed, dropping its context", table_id)
                self.contexts.invalidate(table_id)
                raise
            finally:
                self.contexts.dispose_retired(table_id)

    def _require_table(self, table_id: int) -> Table:
        table = self.store.tables.get_by_id(table_id)
        if table is None or table.is_archived:
            raise NotFoundError(f"Table {table_id} not found")
        return table

    def _cell_space(self, table_id: int) -> tuple[set[int], set[int]]:
        rows = set(self.store.rows.list_active_ids(table_id))
        columns = {c.id for c in self.store.columns.list_for_table(table_id)}
        return rows, columns

    @staticmethod
    def _require_cell(space: tuple[set[int], set[int]], row_id: int, column_id: int) -> None:
        rows, columns = space
        if row_id not in rows or column_id not in columns:
            raise NotFoundError(f"Cell not found: row {row_id}, column {column_id}")

    def _apply(self, ctx, update: CellUpdate) -> tuple[CellUpdateResult, CellChange]:
        if update.sets_formula:
            evaluation = ctx.set_formula(update.row_id, update.column_id, update.formula)
            formula = normalize_formula(update.formula)
            content = formula
        else:
            ctx.set_value(update.row_id, update.column_id, update.value)
            evaluation = ctx.evaluate(update.row_id, update.column_id)
            formula = None
            content = literal_input(update.value)
        cell = self.store.cells.write(CellWrite(
            row_id=update.row_id, column_id=update.column_id, value=evaluation.value,
            error_code=evaluation.error_code, formula=formula, set_formula=True,
        ))
        result = CellUpdateResult(
            row_id=cell.row_id, column_id=cell.column_id, value=cell.value,
            formula=cell.formula, error_code=cell.error_code, calc_version=cell.calc_version,
        )
        return result, CellChange(update.row_id, update.column_id, content)

    def _refresh_formulas(self, table_id: int) -> RecalcResponse:
        """Re-evaluate every formula cell after positions moved."""
        return self.volatile.recalculate(table_id, force_all=True)

    # ── cells ────────────────────────────────────────────────────

    def update_cell(self, table_id: int, update: CellUpdate) -> CellUpdateResult:
        self._require_table(table_id)
        self._require_cell(self._cell_space(table_id), update.row_id, update.column_id)
        with self._mutating(table_id) as ctx:
            result, change = self._apply(ctx, update)
            outcome = self.propagator.propagate(table_id, [change])
        result.affected_cells = outcome.affected_cells
        result.truncated = outcome.truncated
        result.propagation_errors = outcome.errors
        if outcome.truncated:
            logger.warning("Propagation from (row %d, column %d) of table %d was cut short; "
                           "run a forced recalc to bring the remaining dependents up to date",
                           update.row_id, update.column_id, table_id)
        if outcome.errors:
            logger.warning("Propagation from (row %d, column %d) reported: %s",
                           update.row_id, update.column_id, "; ".join(outcome.errors))
        return result

    def bulk_update(self, table_id: int, request: BulkCellUpdateRequest) -> BulkUpdateResult:
        """Apply many cell updates, propagating once at the end.

        With ``skip_formula_recalc`` dependents are left unpersisted; the
        chunk flagged ``is_last_chunk`` then re-evaluates every formula cell.
        """
        if len(request.cells) > self.settings.max_bulk_cells:
            raise BulkLimitExceededError(len(request.cells), self.settings.max_bulk_cells)
        self._require_table(table_id)
        started = time.perf_counter()
        space = self._cell_space(table_id)
        results: List[CellUpdateResult] = []
        errors: List[BulkCellError] = []
        changes: List[CellChange] = []
        affected: List[AffectedCell] = []
        outcome = PropagationOutcome()
        options = request.options

        with self._mutating(table_id) as ctx:
            for update in request.cells:
                try:
                    self._require_cell(space, update.row_id, update.column_id)
                    result, change = self._apply(ctx, update)
                except TableCalcError as e:
                    errors.append(BulkCellError(row_id=update.row_id, column_id=update.column_id, error=str(e)))
                    continue
                results.append(result)
                changes.append(change)
            if changes and not options.skip_formula_recalc:
                outcome = self.propagator.propagate(table_id, changes)
                affected = outcome.affected_cells
            elif options.skip_formula_recalc and options.is_last_chunk:
                affected = self._refresh_formulas(table_id).affected_cells

        logger.info("Bulk update on table %d: %d updated, %d failed%s", table_id, len(results),
                    len(errors), f" (chunk {options.chunk_id})" if options.chunk_id else "")
        return BulkUpdateResult(
            success=not errors,
            updated_count=len(results),
            errors=errors,
            results=results,
            affected_cells=affected,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            truncated=outcome.truncated,
            propagation_errors=outcome.errors,
        )

    def list_formula_cells(self, table_id: int, limit: Optional[int] = None) -> List[FormulaCell]:
        self._require_table(table_id)
        return [
            FormulaCell(row_id=c.row_id, column_id=c.column_id, formula=c.formula,
                        value=c.value, error_code=c.error_code)
            for c in self.store.cells.list_formula_cells(table_id, limit)
        ]

    def validate_formula(self, table_id: int, formula_text: str) -> FormulaValidation:
        """Check a cell or column formula against the live table without changing it."""
        self._require_table(table_id)
        with self.contexts.lock(table_id):
            if self.translator.get_dependencies(formula_text):
                return self.translator.validate_column_formula(table_id, formula_text)
            validation, preview = self.contexts.get(table_id).preview_formula(formula_text)
        return FormulaValidation(
            formula=validation.formula,
            is_valid=validation.is_valid,
            value=preview.value,
            error_code=preview.error_code,
            message=validation.message,
        )

    # ── recalculation ────────────────────────────────────────────

    def recalculate(self, table_id: int, request: RecalcRequest) -> RecalcResponse:
        self._require_table(table_id)
        with self._mutating(table_id):
            return self.volatile.recalculate(
                table_id,
                force_all=request.force_recalc,
                include_volatile=request.include_volatile,
                max_cells=request.max_cells,
                time_budget=request.time_budget,
            )

    def recalc_stats(self, table_id: int) -> RecalcStats:
        self._require_table(table_id)
        return self.volatile.stats(table_id)

    # ── structure ────────────────────────────────────────────────

    def create_table(self, name: str) -> Table:
        table = self.store.tables.create(name)
        self.contexts.refresh_name_indexes()
        return table

    def add_row(self, table_id: int) -> Row:
        self._require_table(table_id)
        with self._mutating(table_id):
            row = self.store.rows.create(table_id)
            self.contexts.reload(table_id)
            self.translator.recalculate_all(table_id, [row.id])
            self._refresh_formulas(table_id)
        return row

    def delete_row(self, row_id: int) -> List[AffectedCell]:
        row = self.store.rows.get_by_id(row_id)
        if row is None or row.deleted_at is not None:
            raise NotFoundError(f"Row {row_id} not found")
        with self._mutating(row.table_id):
            self.store.rows.soft_delete(row_id)
            self.contexts.reload(row.table_id)
            # rows below moved up, so computed cells need their formulas translated again
            columns = self.translator.recalculate_all(row.table_id)
            refreshed = self._refresh_formulas(row.table_id)
        return merge_affected(*(c.affected_cells for c in columns), refreshed.affected_cells)

    def add_column(self, table_id: int, request: ColumnCreate) -> Column:
        self._require_table(table_id)
        formula = normalize_formula(request.formula) if request.formula is not None else None
        with self._mutating(table_id):
            if formula is not None:
                validation = self.translator.validate_column_formula(table_id, formula)
                if not validation.is_valid:
                    raise FormulaValidationError(formula, validation.message,
                                                 validation.error_code or GENERIC_ERROR)
            column = self.store.columns.create(table_id, request.name, request.type, formula)
            self.contexts.reload(table_id)
            if formula is not None:
                self.translator.recalculate_column(table_id, column.id, formula)
        return column

    def set_column_formula(self, column_id: int, formula_text: Optional[str]) -> ColumnRecalcResult:
        """Make a column computed (or plain again with None) and recalculate it."""
        column = self.store.columns.get_by_id(column_id)
        if column is None:
            raise NotFoundError(f"Column {column_id} not found")
        table_id = column.table_id
        self._require_table(table_id)
        with self._mutating(table_id):
            if formula_text is None:
                self.store.columns.set_formula(column_id, None)
                return ColumnRecalcResult(column_id=column_id, success=True)
            formula = normalize_formula(formula_text)
            validation = self.translator.validate_column_formula(table_id, formula)
            if not validation.is_valid:
                raise FormulaValidationError(formula, validation.message,
                                             validation.error_code or GENERIC_ERROR)
            self.store.columns.set_formula(column_id, formula)
            result = self.translator.recalculate_column(table_id, column_id, formula)
            nested = self.translator.propagate_source_column_change(table_id, column_id)
            result.errors.extend(nested.errors)
            result.affected_cells = merge_affected(result.affected_cells, nested.affected_cells)
            result.success = not result.errors
            return result

    def set_row_order(self, table_id: int, row_ids: List[int]) -> RowOrderResult:
        self._require_table(table_id)
        active = set(self.store.rows.list_active_ids(table_id))
        if len(set(row_ids)) != len(row_ids):
            raise InvalidRowOrderError("Row order contains duplicate row ids")
        unknown = sorted(set(row_ids) - active)
        if unknown:
            raise InvalidRowOrderError(f"Rows not in table {table_id}: {unknown}")
        missing = sorted(active - set(row_ids))
        if missing and self.contexts.row_order_policy is RowOrderPolicy.STRICT:
            raise InvalidRowOrderError(f"Row order is missing rows {missing}")
        with self._mutating(table_id):
            dropped = self.contexts.set_row_order(table_id, row_ids)
            columns = self.translator.recalculate_all(table_id)
            refreshed = self._refresh_formulas(table_id)
        for other in dropped:
            with self._mutating(other):
                self._refresh_formulas(other)
        return RowOrderResult(
            table_id=table_id,
            row_ids=row_ids,
            columns=columns,
            affected_cells=merge_affected(*(c.affected_cells for c in columns), refreshed.affected_cells),
        )

    def rename_table(self, table_id: int, name: str) -> Table:
        table = self._require_table(table_id)
        with self.contexts.lock(table_id):
            renamed = self.store.tables.rename(table_id, name)
            dropped = self.contexts.rename_table(table_id, table.name, name)
        # formulas still naming the old table now resolve to #REF!
        for other in dropped:
            with self._mutating(other):
                self._refresh_formulas(other)
        return renamed

    def archive_table(self, table_id: int) -> None:
        self._require_table(table_id)
        with self.contexts.lock(table_id):
            self.store.tables.archive(table_id)
            self.contexts.invalidate(table_id)
            self.contexts.refresh_name_indexes()

    def invalidate(self, table_id: int) -> None:
        self.contexts.invalidate(table_id)
