"""Computation context spanning several tables.

The primary table lives on sheet ``table_<id>``; other tables are loaded on
demand as sheets named after the table. Formula text written as
``Sales!A1``, ``Sales!A1:B10`` or ``[Sales 2024]!A1`` is rewritten into the
engine's quoted sheet syntax before the engine sees it. A table name that
does not resolve becomes the literal ``#REF!`` so the formula still evaluates.
"""

import logging
import re
from typing import Any, Optional

from tablecalc.formula.context import (
    Evaluation,
    RecalcResult,
    TableComputationContext,
    primary_sheet_name,
)
from tablecalc.formula.engine import quote_sheet_name
from tablecalc.formula.errors import NotFoundError

logger = logging.getLogger(__name__)

_CROSS_REF_RE = re.compile(
    r"(?<![A-Za-z0-9_'\]])"
    r"(?:\[([^\]]+)\]|([A-Za-z_][A-Za-z0-9_]*))"
    r"!(\$?[A-Z]+\$?\d+(?::\$?[A-Z]+\$?\d+)?)"
)

_STRING_RE = re.compile(r'"(?:[^"]|"")*"')

INVALID_REFERENCE = "#REF!"


def _outside_strings(text: str, rewrite) -> str:
    """Apply `rewrite` to the parts of `text` that are not string literals."""
    parts = []
    last = 0
    for match in _STRING_RE.finditer(text):
        parts.append(rewrite(text[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(rewrite(text[last:]))
    return "".join(parts)


class CrossTableComputationContext(TableComputationContext):
    def __init__(self, table_id, store, **options):
        super().__init__(table_id, store, **options)
        self._name_index: dict[str, int] = {}
        self._folded_index: dict[str, int] = {}

    def _open(self) -> None:
        self.load_table_name_index()
        self.load_table(self.table_id, is_primary=True)

    # ── tables ───────────────────────────────────────────────────

    def load_table(self, table_id: int, is_primary: bool = False) -> int:
        """Sheet id of the table, loading it first if needed."""
        if table_id in self._sheets:
            return self._sheets[table_id]
        if is_primary or table_id == self.table_id:
            name = primary_sheet_name(table_id)
        else:
            table = self.store.tables.get_by_id(table_id)
            if table is None:
                raise NotFoundError(f"Table {table_id} not found")
            name = table.name
            if self.workbook.sheet_id(name) is not None:
                name = primary_sheet_name(table_id)
        sheet_id = self._load_sheet(table_id, name)
        logger.info("Loaded table %d as sheet %r into context of table %d", table_id, name, self.table_id)
        return sheet_id

    def load_table_name_index(self) -> dict[str, int]:
        """Snapshot of non-archived table names. Stale after renames until refreshed."""
        self._name_index = self.store.tables.name_index()
        self._folded_index = {name.casefold(): tid for name, tid in self._name_index.items()}
        return dict(self._name_index)

    def refresh_name_index(self) -> dict[str, int]:
        return self.load_table_name_index()

    def resolve_table(self, name: str) -> Optional[int]:
        name = name.strip()
        if name in self._name_index:
            return self._name_index[name]
        return self._folded_index.get(name.casefold())

    def is_valid_table_reference(self, name: str) -> bool:
        return self.resolve_table(name) is not None

    def handle_table_rename(self, old_name: str, new_name: str,
                            table_id: Optional[int] = None) -> None:
        """Point the new name at the table. Formulas still using the old name become #REF!."""
        previous = self._name_index.pop(old_name, None)
        self._folded_index.pop(old_name.casefold(), None)
        table_id = previous if table_id is None else table_id
        if table_id is not None:
            self._name_index[new_name] = table_id
            self._folded_index[new_name.casefold()] = table_id
        logger.info("Table renamed %r -> %r in context of table %d", old_name, new_name, self.table_id)

    # ── formula text ─────────────────────────────────────────────

    def rewrite_cross_references(self, formula_text: str) -> str:
        def replace(match: re.Match) -> str:
            name = match.group(1) or match.group(2)
            table_id = self.resolve_table(name)
            if table_id is None:
                logger.warning("Unresolved table reference %r in context of table %d", name, self.table_id)
                return INVALID_REFERENCE
            sheet_id = self.load_table(table_id)
            return f"{quote_sheet_name(self.workbook.sheet_name(sheet_id))}!{match.group(3)}"

        return _outside_strings(formula_text, lambda part: _CROSS_REF_RE.sub(replace, part))

    def prepare_formula(self, formula: str) -> str:
        return self.rewrite_cross_references(formula)

    @staticmethod
    def referenced_tables(formula_text: str) -> list[str]:
        """Table names referenced by the formula, in order of first use."""
        names: list[str] = []
        for match in _CROSS_REF_RE.finditer(_STRING_RE.sub('""', formula_text or "")):
            name = (match.group(1) or match.group(2)).strip()
            if name not in names:
                names.append(name)
        return names

    # ── writes ───────────────────────────────────────────────────

    def update_cell_with_formula(self, table_id: int, row_id: int, column_id: int,
                                 formula_text: str) -> Evaluation:
        self.load_table(table_id)
        return self._set_formula(table_id, row_id, column_id, formula_text)

    def mirror_cell(self, table_id: int, row_id: int, column_id: int, content: Any) -> Optional[RecalcResult]:
        """Apply a write made through another context to the loaded copy of `table_id`.

        `content` is formula text or the `literal_input` of a value. Returns the
        recalculated dependents, or None when the table is not loaded here.
        """
        if table_id not in self._sheets:
            return None
        self.write_content(table_id, row_id, column_id, content)
        return self.recalculate_affected([self.reference(row_id, column_id, table_id)], table_id=table_id)
