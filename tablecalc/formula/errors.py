"""Exceptions raised by the coordination layer and the error-code normalizer.

Error codes persisted on cells:
  #DIV/0!  division by zero
  #REF!    invalid, out-of-range or dangling reference (incl. unknown tables)
  #NAME?   unknown function or name
  #VALUE!  wrong operand type
  #CYCLE!  circular dependency
  #NUM!    invalid numeric result
  #NULL!   empty intersection
  #ERROR!  anything else (syntax errors, unrecognised engine errors)
"""

from typing import Any, Optional


ERROR_CODES = (
    "#DIV/0!", "#REF!", "#NAME?", "#VALUE!",
    "#CYCLE!", "#NUM!", "#NULL!", "#ERROR!",
)
GENERIC_ERROR = "#ERROR!"

# Engine error type name -> persisted code
_ENGINE_ERROR_TYPES = {
    "DIV_BY_ZERO": "#DIV/0!",
    "REF": "#REF!",
    "REF_ERROR": "#REF!",
    "NAME": "#NAME?",
    "NAME_ERROR": "#NAME?",
    "VALUE": "#VALUE!",
    "VALUE_ERROR": "#VALUE!",
    "CYCLE": "#CYCLE!",
    "CYCLE_ERROR": "#CYCLE!",
    "NUM": "#NUM!",
    "NUM_ERROR": "#NUM!",
    "NULL": "#NULL!",
    "NULL_ERROR": "#NULL!",
    "ERROR": "#ERROR!",
}


# ── Exceptions ────────────────────────────────────────────────────

class TableCalcError(Exception):
    """Base for all coordination-layer errors. `code` is the cell error code."""
    code: str = GENERIC_ERROR


class MalformedReferenceError(TableCalcError, ValueError):
    code = "#REF!"


class UnmappedCellError(TableCalcError):
    """A (row_id, column_id) pair has no positional reference."""
    code = "#REF!"

    def __init__(self, row_id: int, column_id: int, reason: str = ""):
        self.row_id = row_id
        self.column_id = column_id
        msg = f"Cell (row {row_id}, column {column_id}) cannot be mapped"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class FormulaValidationError(TableCalcError):
    """The formula did not pass validation; nothing was mutated."""

    def __init__(self, formula: str, message: str, code: str = GENERIC_ERROR):
        super().__init__(f"Invalid formula {formula!r}: {message}")
        self.formula = formula
        self.code = code


class BulkLimitExceededError(TableCalcError):
    def __init__(self, count: int, limit: int):
        super().__init__(f"Maximum {limit} cells per bulk update, got {count}")
        self.count = count
        self.limit = limit


class NotFoundError(TableCalcError):
    pass


class InvalidRowOrderError(TableCalcError, ValueError):
    """The supplied row order is not usable for the table."""


# ── Normalizer ────────────────────────────────────────────────────

def _is_formatted_code(text: str) -> bool:
    return len(text) > 2 and text.startswith('#') and (text.endswith('!') or text.endswith('?'))


def normalize_error(raw: Any) -> Optional[str]:
    """Map an engine error representation to the persisted error vocabulary.

    Accepts engine error objects (anything with a ``type`` attribute), dicts
    with a ``type``/``error`` key, bare type names and already-formatted codes.
    Returns None for None.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        raw = raw.get("type") or raw.get("error")
    elif not isinstance(raw, str):
        raw = getattr(raw, "type", None)
    if not isinstance(raw, str):
        return GENERIC_ERROR
    key = raw.strip()
    if key.upper() in _ENGINE_ERROR_TYPES:
        return _ENGINE_ERROR_TYPES[key.upper()]
    if _is_formatted_code(key):
        return key
    return GENERIC_ERROR
