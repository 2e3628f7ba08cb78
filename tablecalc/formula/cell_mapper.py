"""Per-table mapping between (row_id, column_id) and positional references.

Column positions come from the column records, row positions from the current
row order. Reordering rows changes which reference denotes a row, never its id.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from tablecalc.formula.references import parse_reference, to_reference
from tablecalc.models import Column

logger = logging.getLogger(__name__)


class RowOrderPolicy(str, Enum):
    """What to do with a row that is not part of the row order."""
    STRICT = "strict"
    ROW_ID_FALLBACK = "row_id_fallback"


@dataclass(frozen=True)
class CellCoordinates:
    row_id: int
    column_id: int


class CellMapper:
    def __init__(self, table_id: int, policy: RowOrderPolicy = RowOrderPolicy.STRICT):
        self.table_id = table_id
        self.policy = RowOrderPolicy(policy)
        self.column_positions: dict[int, int] = {}
        self.position_to_column_id: dict[int, int] = {}
        self.column_names: dict[str, int] = {}
        self.row_order: list[int] = []
        self._row_index: dict[int, int] = {}

    # ── loading ──────────────────────────────────────────────────

    def load(self, columns: Iterable[Column]) -> None:
        """Rebuild the column maps; positions are dense from 1 in `position` order."""
        self.column_positions.clear()
        self.position_to_column_id.clear()
        self.column_names.clear()
        for position, column in enumerate(sorted(columns, key=lambda c: c.position), start=1):
            self.column_positions[column.id] = position
            self.position_to_column_id[position] = column.id
            self.column_names[column.name] = column.id

    def set_row_order(self, row_ids: Iterable[int]) -> None:
        order = list(row_ids)
        if len(set(order)) != len(order):
            raise ValueError("Row order contains duplicate row ids")
        self.row_order = order
        self._row_index = {row_id: i for i, row_id in enumerate(order, start=1)}

    # ── lookups ──────────────────────────────────────────────────

    def column_position(self, column_id: int) -> Optional[int]:
        return self.column_positions.get(column_id)

    def column_id_at(self, position: int) -> Optional[int]:
        return self.position_to_column_id.get(position)

    def column_id_for_name(self, name: str) -> Optional[int]:
        return self.column_names.get(name)

    def row_position(self, row_id: int) -> Optional[int]:
        position = self._row_index.get(row_id)
        if position is not None:
            return position
        if self.policy is RowOrderPolicy.ROW_ID_FALLBACK:
            logger.debug("Row %d of table %d not in row order, using its id", row_id, self.table_id)
            return row_id
        return None

    def row_id_at(self, position: int) -> Optional[int]:
        if 1 <= position <= len(self.row_order):
            return self.row_order[position - 1]
        if self.policy is RowOrderPolicy.ROW_ID_FALLBACK:
            return position
        return None

    # ── conversion ───────────────────────────────────────────────

    def cell_to_reference(self, row_id: int, column_id: int) -> Optional[str]:
        col = self.column_position(column_id)
        if col is None:
            return None
        row = self.row_position(row_id)
        if row is None:
            return None
        return to_reference(row, col)

    def reference_to_cell(self, ref: str) -> Optional[CellCoordinates]:
        """Inverse of cell_to_reference. Raises MalformedReferenceError on bad input."""
        parsed = parse_reference(ref)
        column_id = self.column_id_at(parsed.col)
        row_id = self.row_id_at(parsed.row)
        if column_id is None or row_id is None:
            return None
        return CellCoordinates(row_id=row_id, column_id=column_id)
