from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class Table(BaseModel):
    id: Optional[int] = Field(default=None)
    name: str
    is_archived: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class Column(BaseModel):
    id: Optional[int] = Field(default=None)
    table_id: int
    name: str
    type: str = "text"  # text, number, boolean, date
    position: int
    is_computed: bool = False
    formula: Optional[str] = None  # column-name syntax, e.g. =[Price]*0.19

class Row(BaseModel):
    id: Optional[int] = Field(default=None)
    table_id: int
    created_at: Optional[str] = None
    deleted_at: Optional[str] = None

class Cell(BaseModel):
    id: Optional[int] = Field(default=None)
    row_id: int
    column_id: int
    value: Any = None
    formula: Optional[str] = None
    error_code: Optional[str] = None
    calc_version: int = 0


# ── Requests ──────────────────────────────────────────────────────

class TableCreate(BaseModel):
    name: str

class TableRename(BaseModel):
    name: str

class ColumnCreate(BaseModel):
    name: str
    type: str = "text"
    formula: Optional[str] = None  # makes the column computed

class ColumnFormulaUpdate(BaseModel):
    formula: Optional[str] = None  # None turns the column back into a plain column

class RowOrderUpdate(BaseModel):
    row_ids: List[int]

class CellUpdate(BaseModel):
    """Either `value` or `formula`. `formula: null` clears an existing formula."""
    row_id: int
    column_id: int
    value: Any = None
    formula: Optional[str] = None

    @model_validator(mode="after")
    def _value_or_formula(self):
        has_value = "value" in self.model_fields_set
        has_formula = "formula" in self.model_fields_set
        if has_value and self.formula is not None:
            raise ValueError("Provide either value or formula, not both")
        if not has_value and not has_formula:
            raise ValueError("Either value or formula must be provided")
        return self

    @property
    def sets_formula(self) -> bool:
        return self.formula is not None

class BulkCellUpdateOptions(BaseModel):
    skip_formula_recalc: bool = False
    chunk_id: Optional[str] = None
    is_last_chunk: Optional[bool] = None

class BulkCellUpdateRequest(BaseModel):
    cells: List[CellUpdate]
    options: BulkCellUpdateOptions = Field(default_factory=BulkCellUpdateOptions)

class RecalcRequest(BaseModel):
    force_recalc: bool = False
    include_volatile: bool = True
    max_cells: Optional[int] = None
    time_budget: Optional[float] = None  # seconds

class FormulaValidateRequest(BaseModel):
    formula: str


# ── Results ───────────────────────────────────────────────────────

class AffectedCell(BaseModel):
    id: Optional[int] = None
    row_id: int
    column_id: int
    value: Any = None
    error_code: Optional[str] = None
    calc_version: int = 0

class CellUpdateResult(BaseModel):
    row_id: int
    column_id: int
    value: Any = None
    formula: Optional[str] = None
    error_code: Optional[str] = None
    calc_version: int = 0
    affected_cells: List[AffectedCell] = Field(default_factory=list)
    # set when recalc_max_cells or the time budget stopped propagation early
    truncated: bool = False
    propagation_errors: List[str] = Field(default_factory=list)

class BulkCellError(BaseModel):
    row_id: int
    column_id: int
    error: str

class BulkUpdateResult(BaseModel):
    success: bool
    updated_count: int
    errors: List[BulkCellError] = Field(default_factory=list)
    results: List[CellUpdateResult] = Field(default_factory=list)
    affected_cells: List[AffectedCell] = Field(default_factory=list)
    processing_time_ms: int = 0
    truncated: bool = False
    propagation_errors: List[str] = Field(default_factory=list)

class RowResult(BaseModel):
    row_id: int
    value: Any = None
    error_code: Optional[str] = None
    error: Optional[str] = None

class ColumnRecalcResult(BaseModel):
    column_id: int
    success: bool
    results: List[RowResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    affected_cells: List[AffectedCell] = Field(default_factory=list)
    truncated: bool = False

class RowOrderResult(BaseModel):
    table_id: int
    row_ids: List[int]
    columns: List[ColumnRecalcResult] = Field(default_factory=list)
    affected_cells: List[AffectedCell] = Field(default_factory=list)

class PropagationResult(BaseModel):
    affected_computed_columns: int = 0
    recalculated_cells: int = 0
    errors: List[str] = Field(default_factory=list)
    affected_cells: List[AffectedCell] = Field(default_factory=list)
    truncated: bool = False

class RecalcCellDiff(BaseModel):
    cell_id: int
    row_id: int
    column_id: int
    formula: str
    old_value: Any = None
    new_value: Any = None
    changed: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None

class RecalcSummary(BaseModel):
    table_id: int
    table_name: str = ""
    total_cells: int = 0
    processed_cells: int = 0
    volatile_cells: int = 0
    changed_cells: int = 0
    error_cells: int = 0
    duration_ms: int = 0
    timed_out: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)

class RecalcResponse(BaseModel):
    success: bool = True
    summary: RecalcSummary
    results: List[RecalcCellDiff] = Field(default_factory=list)
    affected_cells: List[AffectedCell] = Field(default_factory=list)
    message: str = ""

class RecalcStats(BaseModel):
    table_id: int
    table_name: str = ""
    total_formula_cells: int = 0
    volatile_cells: int = 0
    last_calc_version: int = 0
    volatile_function_counts: Dict[str, int] = Field(default_factory=dict)

class FormulaCell(BaseModel):
    row_id: int
    column_id: int
    formula: str
    value: Any = None
    error_code: Optional[str] = None

class FormulaValidation(BaseModel):
    formula: str
    is_valid: bool
    value: Any = None
    error_code: Optional[str] = None
    message: str = ""
