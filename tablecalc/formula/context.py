"""Per-table computation context.

A context owns an engine workbook with one sheet for its table and exposes
set/evaluate/validate/recalculate in database coordinates. It is a cache of
the persisted cells and can be rebuilt from the database at any time.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from tablecalc.formula.cell_mapper import CellCoordinates, CellMapper, RowOrderPolicy
from tablecalc.formula.engine import MAX_COLS, MAX_ROWS, CellError, Workbook
from tablecalc.formula.errors import (
    GENERIC_ERROR,
    FormulaValidationError,
    MalformedReferenceError,
    UnmappedCellError,
    normalize_error,
)
from tablecalc.formula.references import parse_reference, to_reference
from tablecalc.storage import Store

logger = logging.getLogger(__name__)

Address = tuple[int, int, int]  # (sheet_id, row, col), 0-based engine coordinates


def primary_sheet_name(table_id: int) -> str:
    return f"table_{table_id}"


def normalize_formula(text: str) -> str:
    """Strip and make sure the text starts with '='."""
    text = (text or "").strip()
    return text if text.startswith('=') else '=' + text


def literal_input(value: Any) -> Any:
    """Engine input for a plain value.

    Text starting with '=' or an apostrophe gets a leading apostrophe so the
    engine keeps it as text instead of parsing it as a formula.
    """
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, str) and value[:1] in ("=", "'"):
        return "'" + value
    return value


@dataclass(frozen=True)
class Evaluation:
    value: Any = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    formula: str
    is_valid: bool
    error_code: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class ComputedCell:
    """Freshly evaluated cell, in database coordinates."""
    table_id: int
    row_id: int
    column_id: int
    value: Any = None
    error_code: Optional[str] = None


@dataclass
class RecalcResult:
    affected_cells: list[ComputedCell] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    truncated: bool = False


class TableComputationContext:
    def __init__(
        self,
        table_id: int,
        store: Store,
        *,
        row_order_policy: RowOrderPolicy = RowOrderPolicy.STRICT,
        full_rescan: bool = False,
        workbook_factory: Callable[[], Workbook] = Workbook,
        row_orders: Optional[dict[int, list[int]]] = None,
    ):
        self.table_id = table_id
        self.store = store
        self.row_order_policy = RowOrderPolicy(row_order_policy)
        self.full_rescan = full_rescan
        self.workbook_factory = workbook_factory
        self.workbook = workbook_factory()
        self.disposed = False
        self._sheets: dict[int, int] = {}        # table_id -> sheet_id
        self._tables_by_sheet: dict[int, int] = {}
        self._mappers: dict[int, CellMapper] = {}
        self._saved_orders: dict[int, list[int]] = dict(row_orders or {})

    @classmethod
    def create(cls, table_id: int, store: Store, **options) -> "TableComputationContext":
        ctx = cls(table_id, store, **options)
        ctx._open()
        logger.info("Created computation context for table %d", table_id)
        return ctx

    def _open(self) -> None:
        self._load_sheet(self.table_id, primary_sheet_name(self.table_id))

    # ── loading ──────────────────────────────────────────────────

    def _load_sheet(self, table_id: int, sheet_name: str) -> int:
        sheet_id = self.workbook.add_sheet(sheet_name)
        mapper = CellMapper(table_id, self.row_order_policy)
        mapper.load(self.store.columns.list_for_table(table_id))
        mapper.set_row_order(self._initial_row_order(table_id))
        self._sheets[table_id] = sheet_id
        self._tables_by_sheet[sheet_id] = table_id
        self._mappers[table_id] = mapper
        self._fill_sheet(table_id)
        return sheet_id

    def _initial_row_order(self, table_id: int) -> list[int]:
        """Active rows by ascending id, keeping a previously supplied order first."""
        active = self.store.rows.list_active_ids(table_id)
        previous = self._saved_orders.pop(table_id, None)
        if not previous:
            return active
        alive = set(active)
        kept = [row_id for row_id in previous if row_id in alive]
        seen = set(kept)
        return kept + [row_id for row_id in active if row_id not in seen]

    def _fill_sheet(self, table_id: int) -> None:
        mapper = self._mappers[table_id]
        contents = []
        for cell in self.store.cells.list_for_table(table_id):
            position = self._position(mapper, cell.row_id, cell.column_id)
            if position is None:
                logger.warning("Skipping unmapped cell (row %d, column %d) of table %d",
                               cell.row_id, cell.column_id, table_id)
                continue
            contents.append((*position, self._content_for(cell.formula, cell.value)))
        self.workbook.set_sheet_content(self._sheets[table_id], contents)

    def _content_for(self, formula: Optional[str], value: Any):
        if formula:
            return self.prepare_formula(formula)
        return literal_input(value)

    def prepare_formula(self, formula: str) -> str:
        """Turn formula text as entered into what the engine is given."""
        return formula

    # ── addressing ───────────────────────────────────────────────

    def loaded_tables(self) -> list[int]:
        return list(self._sheets)

    def mapper_for(self, table_id: Optional[int] = None) -> CellMapper:
        return self._mappers[self.table_id if table_id is None else table_id]

    def sheet_id_for(self, table_id: Optional[int] = None) -> int:
        return self._sheets[self.table_id if table_id is None else table_id]

    @staticmethod
    def _position(mapper: CellMapper, row_id: int, column_id: int) -> Optional[tuple[int, int]]:
        row = mapper.row_position(row_id)
        col = mapper.column_position(column_id)
        if row is None or col is None:
            return None
        return row - 1, col - 1

    def reference(self, row_id: int, column_id: int, table_id: Optional[int] = None) -> str:
        ref = self.mapper_for(table_id).cell_to_reference(row_id, column_id)
        if ref is None:
            raise UnmappedCellError(row_id, column_id, self._unmapped_reason(table_id, row_id, column_id))
        return ref

    def _unmapped_reason(self, table_id: Optional[int], row_id: int, column_id: int) -> str:
        mapper = self.mapper_for(table_id)
        if mapper.column_position(column_id) is None:
            return "unknown column"
        return "row is not part of the row order"

    def _address(self, table_id: int, row_id: int, column_id: int) -> Address:
        position = self._position(self.mapper_for(table_id), row_id, column_id)
        if position is None:
            raise UnmappedCellError(row_id, column_id, self._unmapped_reason(table_id, row_id, column_id))
        return (self._sheets[table_id], *position)

    def _locate(self, address: Address) -> Optional[tuple[int, CellCoordinates]]:
        sheet_id, row, col = address
        table_id = self._tables_by_sheet.get(sheet_id)
        if table_id is None:
            return None
        coords = self._mappers[table_id].reference_to_cell(to_reference(row + 1, col + 1))
        return (table_id, coords) if coords else None

    # ── writes ───────────────────────────────────────────────────

    def set_value(self, row_id: int, column_id: int, value: Any) -> None:
        self.write_content(self.table_id, row_id, column_id, self._content_for(None, value))

    def set_formula(self, row_id: int, column_id: int, formula_text: str) -> Evaluation:
        """Validate first; a rejected formula leaves the sheet untouched."""
        return self._set_formula(self.table_id, row_id, column_id, formula_text)

    def _set_formula(self, table_id: int, row_id: int, column_id: int, formula_text: str) -> Evaluation:
        address = self._address(table_id, row_id, column_id)
        formula = normalize_formula(formula_text)
        prepared = self.prepare_formula(formula)
        validation = self._validate_prepared(formula, prepared)
        if not validation.is_valid:
            raise FormulaValidationError(formula, validation.message, validation.error_code or GENERIC_ERROR)
        self.workbook.set_cell(*address, prepared)
        return self._evaluate_address(address)

    def write_content(self, table_id: int, row_id: int, column_id: int, content: Any) -> Address:
        """Unvalidated write of engine input.

        Text starting with '=' is an already-validated formula; plain values
        go through `literal_input` first.
        """
        address = self._address(table_id, row_id, column_id)
        if isinstance(content, str) and content.startswith('='):
            content = self.prepare_formula(content)
        self.workbook.set_cell(*address, content)
        return address

    def reapply_formula(self, row_id: int, column_id: int, formula: str) -> Evaluation:
        """Write the same formula again so the engine re-evaluates it."""
        address = self.write_content(self.table_id, row_id, column_id, formula)
        return self._evaluate_address(address)

    # ── validation ───────────────────────────────────────────────

    def validate_formula(self, formula_text: str) -> ValidationResult:
        formula = normalize_formula(formula_text)
        return self._validate_prepared(formula, self.prepare_formula(formula))

    def preview_formula(self, formula_text: str) -> tuple[ValidationResult, Evaluation]:
        """Validate the formula and evaluate it on a copy of the loaded sheets.

        The copy holds the formula in the last cell of the table's sheet.
        """
        formula = normalize_formula(formula_text)
        prepared = self.prepare_formula(formula)
        validation = self._validate_prepared(formula, prepared)
        if not validation.is_valid:
            return validation, Evaluation(None, validation.error_code)
        scratch = self.workbook.snapshot()
        try:
            address = (self.sheet_id_for(), MAX_ROWS - 1, MAX_COLS - 1)
            scratch.set_cell(*address, prepared)
            raw = scratch.get_cell(*address)
        finally:
            scratch.destroy()
        if isinstance(raw, CellError):
            return validation, Evaluation(None, normalize_error(raw))
        return validation, Evaluation(raw)

    def _validate_prepared(self, formula: str, prepared: str) -> ValidationResult:
        if len(prepared) < 2:
            return ValidationResult(formula, False, GENERIC_ERROR, "Empty formula")
        checker = self.workbook_factory()
        try:
            sheet_id = checker.add_sheet("validation")
            checker.set_cell(sheet_id, 0, 0, prepared)
            check = getattr(checker, "parse_error", None)
            if callable(check):
                error = check(sheet_id, 0, 0)
            else:
                result = checker.get_cell(sheet_id, 0, 0)
                error = result.message if isinstance(result, CellError) and result.type == "ERROR" else None
        finally:
            checker.destroy()
        if error:
            return ValidationResult(formula, False, GENERIC_ERROR, error)
        return ValidationResult(formula, True)

    # ── evaluation ───────────────────────────────────────────────

    def evaluate(self, row_id: int, column_id: int, table_id: Optional[int] = None) -> Evaluation:
        table_id = self.table_id if table_id is None else table_id
        return self._evaluate_address(self._address(table_id, row_id, column_id))

    def _evaluate_address(self, address: Address) -> Evaluation:
        raw = self.workbook.get_cell(*address)
        if isinstance(raw, CellError):
            return Evaluation(None, normalize_error(raw))
        return Evaluation(raw)

    def recalculate_affected(
        self,
        changed_refs: Iterable[str],
        max_cells: Optional[int] = None,
        *,
        table_id: Optional[int] = None,
        time_budget: Optional[float] = None,
    ) -> RecalcResult:
        """Evaluate every cell whose value may depend on the changed references.

        `changed_refs` are positional references on the sheet of `table_id`
        (the context's own table by default). The changed cells themselves are
        not part of the result.
        """
        table_id = self.table_id if table_id is None else table_id
        sheet_id = self.sheet_id_for(table_id)
        result = RecalcResult()
        changed: list[Address] = []
        for ref in changed_refs:
            try:
                parsed = parse_reference(ref)
            except MalformedReferenceError as e:
                result.errors.append(str(e))
                continue
            changed.append((sheet_id, parsed.row - 1, parsed.col - 1))

        deadline = time.monotonic() + time_budget if time_budget else None
        for address in self._affected_addresses(changed):
            if max_cells is not None and len(result.affected_cells) >= max_cells:
                result.truncated = True
                break
            if deadline is not None and time.monotonic() > deadline:
                result.truncated = True
                break
            located = self._locate(address)
            if located is None:
                result.errors.append(f"No database cell at sheet {address[0]} ({address[1]}, {address[2]})")
                continue
            owner, coords = located
            evaluation = self._evaluate_address(address)
            result.affected_cells.append(ComputedCell(
                table_id=owner, row_id=coords.row_id, column_id=coords.column_id,
                value=evaluation.value, error_code=evaluation.error_code,
            ))
        if result.truncated:
            logger.warning("Recalculation of table %d stopped after %d cells",
                           table_id, len(result.affected_cells))
        return result

    def _affected_addresses(self, changed: list[Address]) -> list[Address]:
        dependents = getattr(self.workbook, "dependents", None)
        if self.full_rescan or not callable(dependents):
            return self._rescan_addresses(changed)
        seen = set(changed)
        ordered: list[Address] = []
        for address in changed:
            for dependent in dependents(*address):
                if dependent not in seen:
                    seen.add(dependent)
                    ordered.append(dependent)
        return ordered

    def _rescan_addresses(self, changed: list[Address]) -> list[Address]:
        """Every formula cell of every loaded sheet, sheet by sheet in row-major order.

        Over-approximates the dependents; used when the engine cannot be asked.
        """
        skip = set(changed)
        ordered = []
        for sheet_id in self._sheets.values():
            for row, col in self.workbook.formula_cells(sheet_id):
                if (sheet_id, row, col) not in skip:
                    ordered.append((sheet_id, row, col))
        return ordered

    # ── lifecycle ────────────────────────────────────────────────

    def set_row_order(self, row_ids: Iterable[int], table_id: Optional[int] = None) -> None:
        """Replace the row order and lay the sheet out again from the database."""
        table_id = self.table_id if table_id is None else table_id
        self.mapper_for(table_id).set_row_order(row_ids)
        self._fill_sheet(table_id)

    def reload(self) -> None:
        """Rebuild from the database, keeping the current row orders."""
        self._saved_orders = {tid: list(m.row_order) for tid, m in self._mappers.items()}
        self.workbook.destroy()
        self.workbook = self.workbook_factory()
        self._sheets.clear()
        self._tables_by_sheet.clear()
        self._mappers.clear()
        self._open()
        logger.info("Reloaded computation context for table %d", self.table_id)

    def dispose(self) -> None:
        if self.disposed:
            return
        self.workbook.destroy()
        self._sheets.clear()
        self._tables_by_sheet.clear()
        self._mappers.clear()
        self.disposed = True
        logger.info("Disposed computation context for table %d", self.table_id)
