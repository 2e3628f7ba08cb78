"""A1-notation helpers.

Column positions and row positions are 1-based here: position 1 is column A,
row position 1 is the first row of the sheet.
"""

import re
from dataclasses import dataclass

from tablecalc.formula.errors import MalformedReferenceError


_REFERENCE_RE = re.compile(r'^(\$?)([A-Z]+)(\$?)(\d+)$')


@dataclass(frozen=True)
class ParsedReference:
    row: int
    col: int
    row_absolute: bool = False
    col_absolute: bool = False


def position_to_label(position: int) -> str:
    """1->A, 26->Z, 27->AA, 53->BA."""
    if position < 1:
        raise ValueError(f"Column position must be >= 1, got {position}")
    label = ""
    while position > 0:
        position, rem = divmod(position - 1, 26)
        label = chr(rem + ord('A')) + label
    return label


def label_to_position(label: str) -> int:
    """A->1, Z->26, AA->27."""
    if not label or not label.isalpha() or not label.isupper():
        raise MalformedReferenceError(f"Bad column label: {label!r}")
    n = 0
    for ch in label:
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n


def to_reference(row: int, col: int, *, row_absolute: bool = False,
                 col_absolute: bool = False) -> str:
    """(1, 1) -> 'A1'; absolute markers produce '$A$1'."""
    if row < 1:
        raise ValueError(f"Row position must be >= 1, got {row}")
    return (
        f"{'$' if col_absolute else ''}{position_to_label(col)}"
        f"{'$' if row_absolute else ''}{row}"
    )


def parse_reference(ref: str) -> ParsedReference:
    """'$B$3' -> ParsedReference(row=3, col=2, row_absolute=True, col_absolute=True)."""
    m = _REFERENCE_RE.match(ref or "")
    if not m:
        raise MalformedReferenceError(f"Invalid A1 notation: {ref!r}")
    dollar_col, letters, dollar_row, digits = m.groups()
    row = int(digits)
    if row < 1:
        raise MalformedReferenceError(f"Row must be >= 1: {ref!r}")
    return ParsedReference(
        row=row,
        col=label_to_position(letters),
        row_absolute=dollar_row == '$',
        col_absolute=dollar_col == '$',
    )


def is_absolute(ref: str) -> bool:
    return '$' in ref


def make_absolute(ref: str) -> str:
    parsed = parse_reference(ref)
    return to_reference(parsed.row, parsed.col, row_absolute=True, col_absolute=True)
