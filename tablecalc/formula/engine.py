"""Spreadsheet computation engine.

A Workbook holds any number of named sheets. Cells hold plain values or
formula text starting with '='. Values are evaluated lazily and cached until
the next mutation of the workbook.

Supports: + - * / ^ & %, comparisons (= <> < > <= >=), numbers, "strings",
TRUE/FALSE, error literals (#REF! ...), cell refs (A1, $A$1), ranges (A1:B3),
sheet refs (Sheet1!A1, 'My Sheet'!A1:B3) and the functions in FUNCTIONS.

Rows and columns are 0-based in this module (row 0, col 0 is A1).

Error types carried by CellError.type:
  DIV_BY_ZERO division by zero
  REF         invalid, out-of-bounds or unknown-sheet reference
  NAME        unknown function or bare name
  VALUE       wrong operand type
  CYCLE       circular dependency detected
  NUM         invalid numeric result
  NULL        empty intersection
  ERROR       syntax error or anything else
"""

import math
import random
import re
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional


MAX_ROWS = 1_048_576
MAX_COLS = 16_384

_EPOCH = datetime(1899, 12, 30)


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all evaluation errors. `error_type` ends up in CellError.type."""
    error_type: str = "ERROR"

    def __init__(self, message: str = "", error_type: str | None = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type

class FormulaSyntaxError(FormulaError):
    error_type = "ERROR"

class DivisionByZeroError(FormulaError):
    error_type = "DIV_BY_ZERO"

class InvalidRefError(FormulaError):
    error_type = "REF"

class CycleError(FormulaError):
    error_type = "CYCLE"

class UnknownNameError(FormulaError):
    error_type = "NAME"

class ValueTypeError(FormulaError):
    error_type = "VALUE"

class NumError(FormulaError):
    error_type = "NUM"


@dataclass(frozen=True)
class CellError:
    """Error-tagged result of get_cell."""
    type: str
    message: str = ""


_ERROR_LITERALS = {
    "#DIV/0!": "DIV_BY_ZERO",
    "#REF!": "REF",
    "#NAME?": "NAME",
    "#VALUE!": "VALUE",
    "#CYCLE!": "CYCLE",
    "#NUM!": "NUM",
    "#NULL!": "NULL",
    "#ERROR!": "ERROR",
    "#N/A": "NA",
}


# ── Helpers ───────────────────────────────────────────────────────

_CELL_REF_RE = re.compile(r'^\$?([A-Za-z]{1,3})\$?(\d{1,7})$')


def col_to_index(col_str: str) -> int:
    """A->0, B->1, ..., Z->25, AA->26."""
    n = 0
    for ch in col_str.upper():
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def index_to_col(idx: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA."""
    result = ""
    idx += 1
    while idx > 0:
        idx, rem = divmod(idx - 1, 26)
        result = chr(rem + ord('A')) + result
    return result


def parse_cell_ref(ref: str) -> tuple[int, int]:
    """'A1' / '$A$1' -> (row=0, col=0). Bounds are checked at evaluation."""
    m = _CELL_REF_RE.match(ref.strip())
    if not m:
        raise FormulaSyntaxError(f"Bad cell reference: {ref}")
    return int(m.group(2)) - 1, col_to_index(m.group(1))


def _in_bounds(row: int, col: int) -> bool:
    return 0 <= row < MAX_ROWS and 0 <= col < MAX_COLS


def quote_sheet_name(name: str) -> str:
    """Sheet name as written in a reference: 'My Sheet' -> "'My Sheet'"."""
    return "'" + name.replace("'", "''") + "'"


# ── Tokenizer ─────────────────────────────────────────────────────

_TOKEN_RE = re.compile(r"""
    (?P<WS>\s+)
  | (?P<STRING>"(?:[^"]|"")*")
  | (?P<NUMBER>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<ERRLIT>\#(?:DIV/0!|REF!|NAME\?|VALUE!|CYCLE!|NUM!|NULL!|ERROR!|N/A))
  | (?P<SHEET>'(?:[^']|'')+'!|[A-Za-z_][A-Za-z0-9_.]*!)
  | (?P<FUNC>[A-Za-z_][A-Za-z0-9_.]*(?=\s*\())
  | (?P<REF>\$?[A-Za-z]{1,3}\$?\d+(?![A-Za-z0-9_]))
  | (?P<BOOL>(?i:TRUE|FALSE)(?![A-Za-z0-9_]))
  | (?P<BRACKET>\[[^\]]*\])
  | (?P<NAME>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<OP><>|<=|>=|[-+*/^&%=<>])
  | (?P<LPAREN>\()
  | (?P<RPAREN>\))
  | (?P<COMMA>,)
  | (?P<COLON>:)
""", re.VERBOSE)


def tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise FormulaSyntaxError(f"Unexpected '{text[pos]}' at pos {pos}")
        kind = m.lastgroup
        if kind != "WS":
            tokens.append((kind, m.group(0)))
        pos = m.end()
    return tokens


# ── Parser (recursive descent, no eval()) ─────────────────────────
#
# AST nodes are tuples:
#   ('num', float) ('str', str) ('bool', bool) ('err', type) ('name', text)
#   ('ref', sheet|None, row, col) ('range', sheet|None, r1, c1, r2, c2)
#   ('unary', op, node) ('pct', node) ('bin', op, left, right)
#   ('call', NAME, [args])

class _Parser:
    __slots__ = ('tokens', 'pos')

    _COMPARISON = ('=', '<>', '<', '>', '<=', '>=')

    def __init__(self, text: str):
        self.tokens = tokenize(text)
        self.pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _peek_op(self) -> str | None:
        tok = self._peek()
        return tok[1] if tok and tok[0] == "OP" else None

    def _eat(self, kind: str | None = None) -> tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise FormulaSyntaxError("Unexpected end of expression")
        if kind and tok[0] != kind:
            raise FormulaSyntaxError(f"Expected {kind}, got '{tok[1]}'")
        self.pos += 1
        return tok

    def parse(self):
        if not self.tokens:
            raise FormulaSyntaxError("Empty expression")
        node = self._comparison()
        if self.pos != len(self.tokens):
            raise FormulaSyntaxError(f"Unexpected '{self.tokens[self.pos][1]}'")
        return node

    def _comparison(self):
        left = self._concat()
        while self._peek_op() in self._COMPARISON:
            op = self._eat()[1]
            left = ('bin', op, left, self._concat())
        return left

    def _concat(self):
        left = self._additive()
        while self._peek_op() == '&':
            self._eat()
            left = ('bin', '&', left, self._additive())
        return left

    def _additive(self):
        left = self._term()
        while self._peek_op() in ('+', '-'):
            op = self._eat()[1]
            left = ('bin', op, left, self._term())
        return left

    def _term(self):
        left = self._power()
        while self._peek_op() in ('*', '/'):
            op = self._eat()[1]
            left = ('bin', op, left, self._power())
        return left

    def _power(self):
        left = self._unary()
        while self._peek_op() == '^':
            self._eat()
            left = ('bin', '^', left, self._unary())
        return left

    def _unary(self):
        if self._peek_op() in ('-', '+'):
            op = self._eat()[1]
            return ('unary', op, self._unary())
        node = self._primary()
        while self._peek_op() == '%':
            self._eat()
            node = ('pct', node)
        return node

    def _reference(self, sheet: str | None):
        first = self._eat("REF")[1]
        r1, c1 = parse_cell_ref(first)
        tok = self._peek()
        if tok and tok[0] == "COLON":
            self._eat()
            r2, c2 = parse_cell_ref(self._eat("REF")[1])
            return ('range', sheet, min(r1, r2), min(c1, c2), max(r1, r2), max(c1, c2))
        return ('ref', sheet, r1, c1)

    def _primary(self):
        tok = self._peek()
        if tok is None:
            raise FormulaSyntaxError("Unexpected end of expression")
        kind, text = tok
        if kind == "NUMBER":
            self._eat()
            return ('num', float(text))
        if kind == "STRING":
            self._eat()
            return ('str', text[1:-1].replace('""', '"'))
        if kind == "BOOL":
            self._eat()
            return ('bool', text.upper() == "TRUE")
        if kind == "ERRLIT":
            self._eat()
            return ('err', _ERROR_LITERALS[text])
        if kind == "SHEET":
            self._eat()
            name = text[:-1]
            if name.startswith("'"):
                name = name[1:-1].replace("''", "'")
            return self._reference(name)
        if kind == "REF":
            return self._reference(None)
        if kind == "FUNC":
            self._eat()
            self._eat("LPAREN")
            args = []
            nxt = self._peek()
            if nxt and nxt[0] != "RPAREN":
                args.append(self._comparison())
                while self._peek() and self._peek()[0] == "COMMA":
                    self._eat()
                    args.append(self._comparison())
            self._eat("RPAREN")
            return ('call', text.upper(), args)
        if kind in ("NAME", "BRACKET"):
            self._eat()
            return ('name', text)
        if kind == "LPAREN":
            self._eat()
            node = self._comparison()
            self._eat("RPAREN")
            return node
        raise FormulaSyntaxError(f"Unexpected '{text}'")


def parse_formula(formula: str):
    """Parse '=...' text into an AST. Raises FormulaSyntaxError."""
    if not formula or not formula.startswith('='):
        raise FormulaSyntaxError("Formula must start with '='")
    return _Parser(formula[1:]).parse()


def _collect_precedents(node, out: list) -> None:
    kind = node[0]
    if kind == 'ref':
        out.append(('cell', node[1], node[2], node[3], node[2], node[3]))
    elif kind == 'range':
        out.append(('range',) + node[1:])
    elif kind in ('unary', 'pct'):
        _collect_precedents(node[-1], out)
    elif kind == 'bin':
        _collect_precedents(node[2], out)
        _collect_precedents(node[3], out)
    elif kind == 'call':
        for arg in node[2]:
            _collect_precedents(arg, out)


# ── Value coercion ────────────────────────────────────────────────

def _scalar(value):
    if isinstance(value, list):
        if len(value) == 1:
            return value[0]
        raise ValueTypeError("Range used where a single value is expected")
    return value


def _to_number(value) -> float:
    value = _scalar(value)
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        raise ValueTypeError(f"Not a number: {value!r}")


def _to_text(value) -> str:
    value = _scalar(value)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        return format_number(value)
    return str(value)


def _to_bool(value) -> bool:
    value = _scalar(value)
    if isinstance(value, str):
        upper = value.strip().upper()
        if upper in ("TRUE", "FALSE"):
            return upper == "TRUE"
        raise ValueTypeError(f"Not a boolean: {value!r}")
    return bool(_to_number(value))


def format_number(value: float) -> str:
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return f"{value:.10g}"


def _finalize(value):
    """Normalize a computed result: integral floats become ints."""
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise NumError("Result is not a finite number")
        if value == int(value) and abs(value) < 1e15:
            return int(value)
    return value


def _rank(value) -> int:
    if isinstance(value, bool):
        return 2
    if isinstance(value, str):
        return 1
    return 0


def _compare(a, b) -> int:
    a, b = _scalar(a), _scalar(b)
    if a is None:
        a = "" if isinstance(b, str) else (False if isinstance(b, bool) else 0)
    if b is None:
        b = "" if isinstance(a, str) else (False if isinstance(a, bool) else 0)
    ra, rb = _rank(a), _rank(b)
    if ra != rb:
        return -1 if ra < rb else 1
    if ra == 1:
        a, b = a.casefold(), b.casefold()
    return (a > b) - (a < b)


def _numbers(args: Iterable) -> list[float]:
    """Numbers for aggregate functions: ranges contribute numeric cells only."""
    nums: list[float] = []
    for arg in args:
        if isinstance(arg, list):
            nums.extend(float(v) for v in arg
                        if isinstance(v, (int, float)) and not isinstance(v, bool))
        else:
            nums.append(_to_number(arg))
    return nums


def _flatten(args: Iterable) -> list:
    out: list = []
    for arg in args:
        if isinstance(arg, list):
            out.extend(arg)
        else:
            out.append(arg)
    return out


def serial_now() -> float:
    """Current time as a spreadsheet serial number (days since 1899-12-30)."""
    return (datetime.now() - _EPOCH).total_seconds() / 86400.0


# ── Functions ─────────────────────────────────────────────────────

def _fn_average(args):
    nums = _numbers(args)
    if not nums:
        raise DivisionByZeroError("AVERAGE of no numbers")
    return sum(nums) / len(nums)


def _fn_round(args):
    if not 1 <= len(args) <= 2:
        raise ValueTypeError("ROUND takes 1 or 2 arguments")
    value = _to_number(args[0])
    digits = int(_to_number(args[1])) if len(args) > 1 else 0
    factor = 10 ** digits
    return math.copysign(math.floor(abs(value) * factor + 0.5) / factor, value)


def _fn_sqrt(args):
    value = _to_number(_single(args))
    if value < 0:
        raise NumError("SQRT of a negative number")
    return math.sqrt(value)


def _fn_power(args):
    if len(args) != 2:
        raise ValueTypeError("POWER takes 2 arguments")
    return _power(_to_number(args[0]), _to_number(args[1]))


def _power(base: float, exp: float) -> float:
    if base == 0 and exp < 0:
        raise DivisionByZeroError("Zero to a negative power")
    try:
        result = base ** exp
    except OverflowError:
        raise NumError("Numeric overflow")
    if isinstance(result, complex):
        raise NumError("Complex result")
    return result


def _fn_mod(args):
    if len(args) != 2:
        raise ValueTypeError("MOD takes 2 arguments")
    num, div = _to_number(args[0]), _to_number(args[1])
    if div == 0:
        raise DivisionByZeroError("MOD by zero")
    return num - div * math.floor(num / div)


def _fn_and(args):
    values = _flatten(args)
    if not values:
        raise ValueTypeError("AND needs at least one argument")
    return all(_to_bool(v) for v in values if v is not None)


def _fn_or(args):
    values = _flatten(args)
    if not values:
        raise ValueTypeError("OR needs at least one argument")
    return any(_to_bool(v) for v in values if v is not None)


def _fn_randbetween(args):
    if len(args) != 2:
        raise ValueTypeError("RANDBETWEEN takes 2 arguments")
    low, high = math.ceil(_to_number(args[0])), math.floor(_to_number(args[1]))
    if low > high:
        raise NumError("RANDBETWEEN bottom is greater than top")
    return float(random.randint(low, high))


def _single(args):
    if len(args) != 1:
        raise ValueTypeError("Function takes exactly one argument")
    return args[0]


def _no_args(fn: Callable[[], Any]) -> Callable[[list], Any]:
    def wrapper(args):
        if args:
            raise ValueTypeError("Function takes no arguments")
        return fn()
    return wrapper


FUNCTIONS: dict[str, Callable[[list], Any]] = {
    "SUM": lambda args: sum(_numbers(args)),
    "AVERAGE": _fn_average,
    "AVG": _fn_average,
    "COUNT": lambda args: float(sum(1 for v in _flatten(args)
                                    if isinstance(v, (int, float)) and not isinstance(v, bool))),
    "COUNTA": lambda args: float(sum(1 for v in _flatten(args) if v is not None and v != "")),
    "MIN": lambda args: min(_numbers(args), default=0.0),
    "MAX": lambda args: max(_numbers(args), default=0.0),
    "AND": _fn_and,
    "OR": _fn_or,
    "NOT": lambda args: not _to_bool(_single(args)),
    "ROUND": _fn_round,
    "ABS": lambda args: abs(_to_number(_single(args))),
    "SQRT": _fn_sqrt,
    "POWER": _fn_power,
    "MOD": _fn_mod,
    "CONCAT": lambda args: "".join(_to_text(v) for v in _flatten(args)),
    "CONCATENATE": lambda args: "".join(_to_text(v) for v in _flatten(args)),
    "LEN": lambda args: float(len(_to_text(_single(args)))),
    "UPPER": lambda args: _to_text(_single(args)).upper(),
    "LOWER": lambda args: _to_text(_single(args)).lower(),
    "TRIM": lambda args: " ".join(_to_text(_single(args)).split()),
    "TRUE": _no_args(lambda: True),
    "FALSE": _no_args(lambda: False),
    "NOW": _no_args(serial_now),
    "TODAY": _no_args(lambda: float((date.today() - _EPOCH.date()).days)),
    "RAND": _no_args(random.random),
    "RANDBETWEEN": _fn_randbetween,
}


# ── Workbook ──────────────────────────────────────────────────────

@dataclass
class _Content:
    raw: Any
    ast: Any = None
    parse_error: Optional[str] = None

    @property
    def is_formula(self) -> bool:
        return isinstance(self.raw, str) and self.raw.startswith('=') and len(self.raw) > 1

    @property
    def value(self):
        """Plain content. A leading apostrophe marks text kept as typed: "'=1" is the text "=1"."""
        if isinstance(self.raw, str) and self.raw.startswith("'"):
            return self.raw[1:]
        return self.raw


class _Sheet:
    __slots__ = ('name', 'cells')

    def __init__(self, name: str):
        self.name = name
        self.cells: dict[tuple[int, int], _Content] = {}


Address = tuple[int, int, int]  # (sheet_id, row, col)


class Workbook:
    """Multi-sheet computation engine.

    forward: formula address -> precedent specs read by its formula
    Dependents are found by breadth-first search over the forward specs.
    """

    def __init__(self) -> None:
        self._sheets: dict[int, _Sheet] = {}
        self._names: dict[str, int] = {}
        self._next_id = 0
        self._cache: dict[Address, Any] = {}
        self._forward: dict[Address, list[tuple]] = {}
        self._destroyed = False

    # ── sheets ───────────────────────────────────────────────────

    def _check(self) -> None:
        if self._destroyed:
            raise RuntimeError("Workbook has been destroyed")

    def _sheet(self, sheet_id: int) -> _Sheet:
        self._check()
        try:
            return self._sheets[sheet_id]
        except KeyError:
            raise KeyError(f"Unknown sheet id: {sheet_id}") from None

    def add_sheet(self, name: str) -> int:
        self._check()
        key = name.casefold()
        if key in self._names:
            raise ValueError(f"Sheet {name!r} already exists")
        sheet_id = self._next_id
        self._next_id += 1
        self._sheets[sheet_id] = _Sheet(name)
        self._names[key] = sheet_id
        self._cache.clear()
        return sheet_id

    def sheet_id(self, name: str) -> Optional[int]:
        self._check()
        return self._names.get(name.casefold())

    def sheet_name(self, sheet_id: int) -> str:
        return self._sheet(sheet_id).name

    def list_sheets(self) -> list[str]:
        self._check()
        return [s.name for s in self._sheets.values()]

    def clear_sheet(self, sheet_id: int) -> None:
        sheet = self._sheet(sheet_id)
        sheet.cells.clear()
        for addr in [a for a in self._forward if a[0] == sheet_id]:
            del self._forward[addr]
        self._cache.clear()

    def destroy(self) -> None:
        self._sheets.clear()
        self._names.clear()
        self._cache.clear()
        self._forward.clear()
        self._destroyed = True

    def snapshot(self) -> "Workbook":
        """Independent copy with the same sheets, ids and contents."""
        self._check()
        copy = Workbook()
        for sheet_id, sheet in self._sheets.items():
            clone = _Sheet(sheet.name)
            clone.cells = dict(sheet.cells)
            copy._sheets[sheet_id] = clone
        copy._names = dict(self._names)
        copy._next_id = self._next_id
        copy._forward = dict(self._forward)
        return copy

    # ── contents ─────────────────────────────────────────────────

    def _store(self, sheet_id: int, row: int, col: int, content) -> None:
        if not _in_bounds(row, col):
            raise InvalidRefError(f"Cell ({row}, {col}) out of bounds")
        sheet = self._sheet(sheet_id)
        addr = (sheet_id, row, col)
        self._forward.pop(addr, None)
        if content is None or content == "":
            sheet.cells.pop((row, col), None)
            return
        entry = _Content(raw=content)
        if entry.is_formula:
            try:
                entry.ast = parse_formula(content)
            except FormulaSyntaxError as e:
                entry.parse_error = str(e) or "Syntax error"
            else:
                precedents: list[tuple] = []
                _collect_precedents(entry.ast, precedents)
                self._forward[addr] = precedents
        sheet.cells[(row, col)] = entry

    def set_cell(self, sheet_id: int, row: int, col: int, content) -> None:
        """Write a value or '=formula' text; None or '' empties the cell."""
        self._store(sheet_id, row, col, content)
        self._cache.clear()

    def set_sheet_content(self, sheet_id: int, contents: Iterable[tuple[int, int, Any]]) -> None:
        """Replace the whole sheet with (row, col, content) triples."""
        self.clear_sheet(sheet_id)
        for row, col, content in contents:
            self._store(sheet_id, row, col, content)
        self._cache.clear()

    def get_content(self, sheet_id: int, row: int, col: int):
        entry = self._sheet(sheet_id).cells.get((row, col))
        return entry.raw if entry else None

    def parse_error(self, sheet_id: int, row: int, col: int) -> Optional[str]:
        entry = self._sheet(sheet_id).cells.get((row, col))
        return entry.parse_error if entry else None

    def formula_cells(self, sheet_id: int) -> list[tuple[int, int]]:
        return sorted(k for k, v in self._sheet(sheet_id).cells.items() if v.is_formula)

    # ── evaluation ───────────────────────────────────────────────

    def get_cell(self, sheet_id: int, row: int, col: int):
        """Evaluated value of a cell, or a CellError."""
        self._sheet(sheet_id)
        try:
            value = self._cell_value(sheet_id, row, col, frozenset())
            return _finalize(_scalar(value))
        except FormulaError as e:
            return CellError(e.error_type, str(e))
        except RecursionError:
            return CellError("ERROR", "Dependency chain too deep")

    def _cell_value(self, sheet_id: int, row: int, col: int, visiting: frozenset):
        if not _in_bounds(row, col):
            raise InvalidRefError(f"{index_to_col(max(col, 0))}{row + 1} is out of bounds")
        addr = (sheet_id, row, col)
        if addr in self._cache:
            cached = self._cache[addr]
            if isinstance(cached, CellError):
                raise FormulaError(cached.message, error_type=cached.type)
            return cached
        if addr in visiting:
            raise CycleError(f"Circular reference at {index_to_col(col)}{row + 1}")

        entry = self._sheets[sheet_id].cells.get((row, col))
        if entry is None:
            return None
        if not entry.is_formula:
            return entry.value
        try:
            if entry.parse_error:
                raise FormulaSyntaxError(entry.parse_error)
            value = _finalize(_scalar(self._eval(entry.ast, sheet_id, visiting | {addr})))
        except FormulaError as e:
            self._cache[addr] = CellError(e.error_type, str(e))
            raise
        self._cache[addr] = value
        return value

    def _resolve_sheet(self, name: str | None, current: int) -> int:
        if name is None:
            return current
        sheet_id = self._names.get(name.casefold())
        if sheet_id is None:
            raise InvalidRefError(f"Unknown sheet: {name}")
        return sheet_id

    def _range_values(self, sheet_id: int, r1: int, c1: int, r2: int, c2: int,
                      visiting: frozenset) -> list:
        if not (_in_bounds(r1, c1) and _in_bounds(r2, c2)):
            raise InvalidRefError("Range out of bounds")
        cells = self._sheets[sheet_id].cells
        keys = sorted(k for k in cells if r1 <= k[0] <= r2 and c1 <= k[1] <= c2)
        return [self._cell_value(sheet_id, r, c, visiting) for r, c in keys]

    def _eval(self, node, sheet_id: int, visiting: frozenset):
        kind = node[0]
        if kind in ('num', 'str', 'bool'):
            return node[1]
        if kind == 'err':
            raise FormulaError(f"Error literal {node[1]}", error_type=node[1])
        if kind == 'name':
            raise UnknownNameError(f"Unknown name: {node[1]}")
        if kind == 'ref':
            target = self._resolve_sheet(node[1], sheet_id)
            return self._cell_value(target, node[2], node[3], visiting)
        if kind == 'range':
            target = self._resolve_sheet(node[1], sheet_id)
            return self._range_values(target, *node[2:], visiting)
        if kind == 'unary':
            value = _to_number(self._eval(node[2], sheet_id, visiting))
            return -value if node[1] == '-' else value
        if kind == 'pct':
            return _to_number(self._eval(node[1], sheet_id, visiting)) / 100.0
        if kind == 'bin':
            return self._binary(node[1], self._eval(node[2], sheet_id, visiting),
                                self._eval(node[3], sheet_id, visiting))
        if kind == 'call':
            return self._call(node[1], node[2], sheet_id, visiting)
        raise FormulaSyntaxError(f"Unknown node {kind}")

    @staticmethod
    def _binary(op: str, left, right):
        if op == '&':
            return _to_text(left) + _to_text(right)
        if op in _Parser._COMPARISON:
            c = _compare(left, right)
            return {'=': c == 0, '<>': c != 0, '<': c < 0,
                    '>': c > 0, '<=': c <= 0, '>=': c >= 0}[op]
        a, b = _to_number(left), _to_number(right)
        if op == '+':
            return a + b
        if op == '-':
            return a - b
        if op == '*':
            return a * b
        if op == '/':
            if b == 0:
                raise DivisionByZeroError("Division by zero")
            return a / b
        if op == '^':
            return _power(a, b)
        raise FormulaSyntaxError(f"Unknown operator {op}")

    def _call(self, name: str, arg_nodes: list, sheet_id: int, visiting: frozenset):
        if name == "IF":
            if not 2 <= len(arg_nodes) <= 3:
                raise ValueTypeError("IF takes 2 or 3 arguments")
            if _to_bool(self._eval(arg_nodes[0], sheet_id, visiting)):
                return self._eval(arg_nodes[1], sheet_id, visiting)
            if len(arg_nodes) == 3:
                return self._eval(arg_nodes[2], sheet_id, visiting)
            return False
        if name == "IFERROR":
            if len(arg_nodes) != 2:
                raise ValueTypeError("IFERROR takes 2 arguments")
            try:
                return _scalar(self._eval(arg_nodes[0], sheet_id, visiting))
            except CycleError:
                raise
            except FormulaError:
                return self._eval(arg_nodes[1], sheet_id, visiting)
        fn = FUNCTIONS.get(name)
        if fn is None:
            raise UnknownNameError(f"Unknown function: {name}")
        args = [self._eval(a, sheet_id, visiting) for a in arg_nodes]
        try:
            return fn(args)
        except OverflowError:
            raise NumError(f"{name} overflow")

    # ── dependencies ─────────────────────────────────────────────

    def _covers(self, spec: tuple, owner_sheet: int, target: Address) -> bool:
        _, sheet_name, r1, c1, r2, c2 = spec
        if sheet_name is None:
            sheet_id = owner_sheet
        else:
            sheet_id = self._names.get(sheet_name.casefold())
        return (sheet_id == target[0]
                and r1 <= target[1] <= r2 and c1 <= target[2] <= c2)

    def dependents(self, sheet_id: int, row: int, col: int) -> list[Address]:
        """All formula cells that transitively read (sheet_id, row, col).

        Breadth-first order from the changed cell; the changed cell itself is
        not included unless it sits on a cycle.
        """
        self._sheet(sheet_id)
        found: set[Address] = set()
        order: list[Address] = []
        queue: deque[Address] = deque([(sheet_id, row, col)])
        while queue:
            current = queue.popleft()
            for addr, specs in self._forward.items():
                if addr in found:
                    continue
                if any(self._covers(spec, addr[0], current) for spec in specs):
                    found.add(addr)
                    order.append(addr)
                    queue.append(addr)
        return order
