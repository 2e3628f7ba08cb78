from typing import Callable

import pytest

from tablecalc.formula.context import TableComputationContext, normalize_formula
from tablecalc.formula.errors import FormulaValidationError, UnmappedCellError
from tablecalc.storage import Store


@pytest.fixture
def sales(make_table: Callable):
    return make_table("Sales", ["Price", "Calc"], [{"Price": 1}, {"Price": 2}, {"Price": 3}])


def _context(store: Store, table, **options) -> TableComputationContext:
    return TableComputationContext.create(table.id, store, **options)


def test_normalize_formula() -> None:
    assert normalize_formula("  =A1+1 ") == "=A1+1"
    assert normalize_formula("A1+1") == "=A1+1"
    assert normalize_formula("") == "="


def test_context_loads_persisted_values(store: Store, sales) -> None:
    ctx = _context(store, sales)
    price = sales.columns["Price"]

    assert [ctx.evaluate(row_id, price).value for row_id in sales.rows] == [1, 2, 3]
    assert ctx.reference(sales.rows[2], price) == "A3"
    assert ctx.reference(sales.rows[0], sales.columns["Calc"]) == "B1"


def test_set_formula_evaluates(store: Store, sales) -> None:
    ctx = _context(store, sales)
    calc = sales.columns["Calc"]

    evaluation = ctx.set_formula(sales.rows[0], calc, "SUM(A1:A3)")

    assert evaluation.value == 6
    assert evaluation.error_code is None


def test_rejected_formula_leaves_previous_content(store: Store, sales) -> None:
    ctx = _context(store, sales)
    calc = sales.columns["Calc"]
    ctx.set_formula(sales.rows[0], calc, "=A1*2")

    with pytest.raises(FormulaValidationError) as info:
        ctx.set_formula(sales.rows[0], calc, "=A1*")

    assert info.value.code == "#ERROR!"
    assert ctx.evaluate(sales.rows[0], calc).value == 2


@pytest.mark.parametrize(
    ("formula", "code"),
    [
        ("=10/0", "#DIV/0!"),
        ("=A1048577", "#REF!"),
        ("=NOPE(1)", "#NAME?"),
        ("=B1", "#CYCLE!"),
    ],
)
def test_evaluation_errors_are_normalized(store: Store, sales, formula: str, code: str) -> None:
    ctx = _context(store, sales)

    evaluation = ctx.set_formula(sales.rows[0], sales.columns["Calc"], formula)

    assert evaluation.value is None
    assert evaluation.error_code == code


def test_validate_formula_does_not_mutate(store: Store, sales) -> None:
    ctx = _context(store, sales)
    calc = sales.columns["Calc"]
    ctx.set_formula(sales.rows[0], calc, "=A1+100")

    assert ctx.validate_formula("=SUM(A1:A3)").is_valid
    assert ctx.validate_formula("=10/0").is_valid
    invalid = ctx.validate_formula("=SUM(1,")
    assert not invalid.is_valid
    assert invalid.error_code == "#ERROR!"
    assert invalid.message
    assert ctx.validate_formula("").message == "Empty formula"
    assert ctx.evaluate(sales.rows[0], calc).value == 101


def test_rows_outside_the_order_cannot_be_addressed(store: Store, sales) -> None:
    ctx = _context(store, sales)
    late_row = store.rows.create(sales.id).id

    with pytest.raises(UnmappedCellError):
        ctx.reference(late_row, sales.columns["Price"])
    with pytest.raises(UnmappedCellError):
        ctx.set_value(late_row, sales.columns["Price"], 5)
    with pytest.raises(UnmappedCellError):
        ctx.reference(sales.rows[0], 999)


def test_recalculate_affected_returns_dependents_only(store: Store, sales) -> None:
    ctx = _context(store, sales)
    price, calc = sales.columns["Price"], sales.columns["Calc"]
    r1, r2, r3 = sales.rows
    ctx.set_formula(r1, calc, "=A1*2")
    ctx.set_formula(r2, calc, "=B1+1")
    ctx.set_formula(r3, calc, "=7")

    ctx.set_value(r1, price, 5)
    result = ctx.recalculate_affected(["A1"])

    assert [(c.row_id, c.column_id, c.value) for c in result.affected_cells] == [
        (r1, calc, 10),
        (r2, calc, 11),
    ]
    assert all(c.table_id == sales.id for c in result.affected_cells)
    assert not result.truncated


def test_full_rescan_over_approximates_dependents(store: Store, sales) -> None:
    ctx = _context(store, sales, full_rescan=True)
    price, calc = sales.columns["Price"], sales.columns["Calc"]
    r1, r2, r3 = sales.rows
    ctx.set_formula(r1, calc, "=A1*2")
    ctx.set_formula(r2, calc, "=B1+1")
    ctx.set_formula(r3, calc, "=7")

    ctx.set_value(r1, price, 5)
    result = ctx.recalculate_affected(["A1"])

    values = {(c.row_id, c.column_id): c.value for c in result.affected_cells}
    assert values == {(r1, calc): 10, (r2, calc): 11, (r3, calc): 7}


def test_recalculate_affected_stops_at_max_cells(store: Store, sales) -> None:
    ctx = _context(store, sales)
    calc = sales.columns["Calc"]
    ctx.set_formula(sales.rows[0], calc, "=A1*2")
    ctx.set_formula(sales.rows[1], calc, "=A1*3")

    result = ctx.recalculate_affected(["A1"], max_cells=1)

    assert len(result.affected_cells) == 1
    assert result.truncated


def test_malformed_changed_reference_is_reported(store: Store, sales) -> None:
    result = _context(store, sales).recalculate_affected(["not-a-ref"])

    assert result.affected_cells == []
    assert len(result.errors) == 1


def test_row_order_survives_reload(store: Store, sales) -> None:
    ctx = _context(store, sales)
    price = sales.columns["Price"]
    r1, r2, r3 = sales.rows

    ctx.set_row_order([r3, r1, r2])
    assert ctx.reference(r1, price) == "A2"
    assert ctx.evaluate(r3, price).value == 3

    ctx.reload()

    assert ctx.reference(r3, price) == "A1"
    assert ctx.mapper_for().row_order == [r3, r1, r2]


def test_saved_row_order_is_applied_on_create(store: Store, sales) -> None:
    r1, r2, r3 = sales.rows
    ctx = _context(store, sales, row_orders={sales.id: [r2, 999, r1]})

    # unknown ids are dropped, missing active rows are appended
    assert ctx.mapper_for().row_order == [r2, r1, r3]


def test_dispose(store: Store, sales) -> None:
    ctx = _context(store, sales)
    ctx.dispose()
    ctx.dispose()

    assert ctx.disposed
    assert ctx.loaded_tables() == []
