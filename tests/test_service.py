import dataclasses
import sqlite3
from typing import Callable

import pytest

from tablecalc.config import Settings
from tablecalc.formula.errors import (
    BulkLimitExceededError,
    FormulaValidationError,
    InvalidRowOrderError,
    NotFoundError,
)
from tablecalc.formula.registry import ContextRegistry
from tablecalc.models import (
    BulkCellUpdateOptions,
    BulkCellUpdateRequest,
    CellUpdate,
    ColumnCreate,
    RecalcRequest,
)
from tablecalc.service import FormulaService
from tablecalc.storage import Store


@pytest.fixture
def sales(make_table: Callable):
    return make_table("Sales", ["Price", "Total"], [{"Price": 1}, {"Price": 2}, {"Price": 3}])


def _formula(table, row: int, column: str, formula: str) -> CellUpdate:
    return CellUpdate(row_id=table.rows[row], column_id=table.columns[column], formula=formula)


def _value(table, row: int, column: str, value) -> CellUpdate:
    return CellUpdate(row_id=table.rows[row], column_id=table.columns[column], value=value)


# ── single cells ─────────────────────────────────────────────────

def test_update_cell_with_formula(service: FormulaService, store: Store, sales) -> None:
    result = service.update_cell(sales.id, _formula(sales, 0, "Total", "SUM(A1:A3)"))

    assert result.value == 6
    assert result.formula == "=SUM(A1:A3)"
    assert result.error_code is None
    cell = store.cells.get(sales.rows[0], sales.columns["Total"])
    assert (cell.value, cell.formula, cell.calc_version) == (6, "=SUM(A1:A3)", result.calc_version)


def test_update_cell_propagates_to_dependents(service: FormulaService, store: Store, sales) -> None:
    total = sales.columns["Total"]
    service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*10"))
    service.update_cell(sales.id, _formula(sales, 1, "Total", "=B1+1"))

    result = service.update_cell(sales.id, _value(sales, 0, "Price", 5))

    assert result.value == 5
    assert [(c.row_id, c.column_id, c.value) for c in result.affected_cells] == [
        (sales.rows[0], total, 50),
        (sales.rows[1], total, 51),
    ]
    assert store.cells.get(sales.rows[1], total).value == 51


def test_error_results_are_persisted(service: FormulaService, store: Store, sales) -> None:
    result = service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1/0"))

    assert result.value is None
    assert result.error_code == "#DIV/0!"
    assert store.cells.get(sales.rows[0], sales.columns["Total"]).error_code == "#DIV/0!"


def test_invalid_formula_changes_nothing(service: FormulaService, store: Store, sales) -> None:
    service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*2"))
    before = store.cells.get(sales.rows[0], sales.columns["Total"])

    with pytest.raises(FormulaValidationError):
        service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*"))

    assert store.cells.get(sales.rows[0], sales.columns["Total"]) == before


def test_clearing_a_formula(service: FormulaService, store: Store, sales) -> None:
    service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*2"))

    result = service.update_cell(
        sales.id, CellUpdate(row_id=sales.rows[0], column_id=sales.columns["Total"], formula=None))

    assert result.formula is None
    assert store.cells.get(sales.rows[0], sales.columns["Total"]).formula is None


def test_unknown_targets_are_not_found(service: FormulaService, sales) -> None:
    with pytest.raises(NotFoundError):
        service.update_cell(999, _value(sales, 0, "Price", 1))
    with pytest.raises(NotFoundError, match="Cell not found"):
        service.update_cell(sales.id, CellUpdate(row_id=999, column_id=sales.columns["Price"], value=1))


def test_failed_write_drops_the_context(
    service: FormulaService, registry: ContextRegistry, store: Store, sales, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry.get(sales.id)

    def broken_write(write):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store.cells, "write", broken_write)

    with pytest.raises(sqlite3.OperationalError):
        service.update_cell(sales.id, _value(sales, 0, "Price", 9))
    assert registry.peek(sales.id) is None


# ── bulk ─────────────────────────────────────────────────────────

def test_bulk_limit_is_checked_before_any_write(
    store: Store, registry: ContextRegistry, settings: Settings, sales
) -> None:
    service = FormulaService(store, registry, dataclasses.replace(settings, max_bulk_cells=2))
    before = store.cells.get(sales.rows[0], sales.columns["Price"])
    request = BulkCellUpdateRequest(cells=[_value(sales, i, "Price", 100) for i in range(3)])

    with pytest.raises(BulkLimitExceededError):
        service.bulk_update(sales.id, request)

    assert store.cells.get(sales.rows[0], sales.columns["Price"]) == before
    assert registry.peek(sales.id) is None


def test_bulk_update_collects_per_cell_errors(service: FormulaService, store: Store, sales) -> None:
    service.update_cell(sales.id, _formula(sales, 2, "Total", "=SUM(A1:A3)"))
    request = BulkCellUpdateRequest(cells=[
        _value(sales, 0, "Price", 10),
        CellUpdate(row_id=999, column_id=sales.columns["Price"], value=1),
        _formula(sales, 1, "Total", "=A2*"),
        _value(sales, 1, "Price", 20),
    ])

    result = service.bulk_update(sales.id, request)

    assert not result.success
    assert result.updated_count == 2
    assert [(e.row_id, "Cell not found" in e.error) for e in result.errors] == [(999, True), (sales.rows[1], False)]
    assert [(c.row_id, c.value) for c in result.affected_cells] == [(sales.rows[2], 33)]
    assert store.cells.get(sales.rows[2], sales.columns["Total"]).value == 33


def test_bulk_chunks_defer_recalculation_to_the_last_chunk(service: FormulaService, store: Store, sales) -> None:
    total = sales.columns["Total"]
    service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*2"))

    first = service.bulk_update(sales.id, BulkCellUpdateRequest(
        cells=[_value(sales, 0, "Price", 50)],
        options=BulkCellUpdateOptions(skip_formula_recalc=True, chunk_id="c1", is_last_chunk=False),
    ))
    assert first.affected_cells == []
    assert store.cells.get(sales.rows[0], total).value == 2

    last = service.bulk_update(sales.id, BulkCellUpdateRequest(
        cells=[_value(sales, 1, "Price", 7)],
        options=BulkCellUpdateOptions(skip_formula_recalc=True, chunk_id="c2", is_last_chunk=True),
    ))
    assert [(c.row_id, c.value) for c in last.affected_cells] == [(sales.rows[0], 100)]
    assert store.cells.get(sales.rows[0], total).value == 100


def test_value_starting_with_equals_is_kept_as_text(service: FormulaService, store: Store, sales) -> None:
    total = sales.columns["Total"]
    service.update_cell(sales.id, _formula(sales, 1, "Total", '=B1&"!"'))

    result = service.update_cell(sales.id, _value(sales, 0, "Total", "=1+(("))

    assert (result.value, result.formula, result.error_code) == ("=1+((", None, None)
    assert [(c.row_id, c.value) for c in result.affected_cells] == [(sales.rows[1], "=1+((!")]
    assert store.cells.get(sales.rows[0], total).value == "=1+(("

    service.invalidate(sales.id)
    reloaded = service.contexts.get(sales.id)
    assert reloaded.evaluate(sales.rows[0], total).value == "=1+(("
    assert reloaded.evaluate(sales.rows[1], total).value == "=1+((!"


def test_truncated_propagation_is_reported(store: Store, registry: ContextRegistry, settings: Settings,
                                           make_table: Callable) -> None:
    service = FormulaService(store, registry, dataclasses.replace(settings, recalc_max_cells=1))
    table = make_table("Calc", ["A", "B", "C"], [{"A": 1}])
    row_id = table.rows[0]
    service.update_cell(table.id, CellUpdate(row_id=row_id, column_id=table.columns["B"], formula="=A1+1"))
    service.update_cell(table.id, CellUpdate(row_id=row_id, column_id=table.columns["C"], formula="=A1+2"))

    result = service.update_cell(table.id, CellUpdate(row_id=row_id, column_id=table.columns["A"], value=100))

    assert result.truncated
    assert len(result.affected_cells) == 1
    bulk = service.bulk_update(table.id, BulkCellUpdateRequest(
        cells=[CellUpdate(row_id=row_id, column_id=table.columns["A"], value=200)]))
    assert bulk.truncated

    service.recalculate(table.id, RecalcRequest(force_recalc=True, max_cells=10))

    assert store.cells.get(row_id, table.columns["B"]).value == 201
    assert store.cells.get(row_id, table.columns["C"]).value == 202


# ── formulas ─────────────────────────────────────────────────────

def test_list_and_validate_formulas(service: FormulaService, sales) -> None:
    service.update_cell(sales.id, _formula(sales, 0, "Total", "=A1*2"))
    service.update_cell(sales.id, _formula(sales, 1, "Total", "=A2*2"))

    cells = service.list_formula_cells(sales.id)
    assert [(c.row_id, c.formula, c.value) for c in cells] == [
        (sales.rows[0], "=A1*2", 2),
        (sales.rows[1], "=A2*2", 4),
    ]
    assert len(service.list_formula_cells(sales.id, limit=1)) == 1

    preview = service.validate_formula(sales.id, "=SUM(A1:A3)")
    assert preview.is_valid
    assert preview.value == 6
    assert service.validate_formula(sales.id, "=1/0").error_code == "#DIV/0!"
    invalid = service.validate_formula(sales.id, "=SUM(")
    assert not invalid.is_valid
    assert invalid.error_code == "#ERROR!"
    assert service.validate_formula(sales.id, "=[Ghost]+1").error_code == "#NAME?"


# ── structure ────────────────────────────────────────────────────

def test_add_row_fills_computed_columns(service: FormulaService, store: Store, sales) -> None:
    tax = service.add_column(sales.id, ColumnCreate(name="Tax", formula="=[Price]*2"))

    row = service.add_row(sales.id)

    cell = store.cells.get(row.id, tax.id)
    assert cell.formula == "=A4*2"
    assert cell.value == 0


def test_delete_row_shifts_formulas(service: FormulaService, store: Store, sales) -> None:
    total = sales.columns["Total"]
    service.update_cell(sales.id, _formula(sales, 2, "Total", "=SUM(A1:A3)"))

    affected = service.delete_row(sales.rows[0])

    assert [(c.row_id, c.column_id, c.value) for c in affected] == [(sales.rows[2], total, 5)]
    assert store.cells.get(sales.rows[2], total).value == 5
    with pytest.raises(NotFoundError):
        service.delete_row(sales.rows[0])


def test_delete_row_retranslates_computed_columns(service: FormulaService, store: Store, make_table: Callable) -> None:
    table = make_table("Orders", ["Price"], [{"Price": 10}, {"Price": 20}, {"Price": 30}])
    tax = service.add_column(table.id, ColumnCreate(name="Tax", formula="=[Price]*2"))
    assert store.cells.get(table.rows[2], tax.id).formula == "=A3*2"

    affected = service.delete_row(table.rows[0])

    cell = store.cells.get(table.rows[2], tax.id)
    assert (cell.formula, cell.value) == ("=A2*2", 60)
    assert store.cells.get(table.rows[1], tax.id).formula == "=A1*2"
    assert (table.rows[2], tax.id) in {(c.row_id, c.column_id) for c in affected}


def test_set_and_clear_column_formula(service: FormulaService, store: Store, sales) -> None:
    result = service.set_column_formula(sales.columns["Total"], "[Price]*3")

    assert result.success
    assert [r.value for r in result.results] == [3, 6, 9]
    assert store.columns.get_by_id(sales.columns["Total"]).formula == "=[Price]*3"

    service.set_column_formula(sales.columns["Total"], None)

    assert not store.columns.get_by_id(sales.columns["Total"]).is_computed
    with pytest.raises(NotFoundError):
        service.set_column_formula(999, "=1")


def test_row_order_moves_computed_references(service: FormulaService, store: Store, sales) -> None:
    r1, r2, r3 = sales.rows
    tax = service.add_column(sales.id, ColumnCreate(name="Tax", formula="=[Price]*10"))

    result = service.set_row_order(sales.id, [r3, r1, r2])

    assert result.row_ids == [r3, r1, r2]
    assert store.cells.get(r1, tax.id).formula == "=A2*10"
    assert store.cells.get(r3, tax.id).formula == "=A1*10"
    assert [store.cells.get(r, tax.id).value for r in (r1, r2, r3)] == [10, 20, 30]


@pytest.mark.parametrize("order", [[1, 1, 2, 3], [1, 2, 3, 999], [1, 2]])
def test_invalid_row_orders_are_rejected(service: FormulaService, sales, order: list[int]) -> None:
    with pytest.raises(InvalidRowOrderError):
        service.set_row_order(sales.id, order)


def test_cross_table_writes_reach_other_tables(service: FormulaService, store: Store, make_table: Callable) -> None:
    inventory = make_table("Inventory", ["Qty"], [{"Qty": 5}])
    orders = make_table("Orders", ["Need"], [{}])
    need = (orders.rows[0], orders.columns["Need"])
    assert service.update_cell(orders.id, _formula(orders, 0, "Need", "=Inventory!A1*2")).value == 10

    result = service.update_cell(inventory.id, _value(inventory, 0, "Qty", 7))

    assert [(c.row_id, c.column_id, c.value) for c in result.affected_cells] == [(*need, 14)]
    assert store.cells.get(*need).value == 14


def test_renaming_a_table_breaks_references_to_its_old_name(
    service: FormulaService, store: Store, make_table: Callable
) -> None:
    inventory = make_table("Inventory", ["Qty"], [{"Qty": 5}])
    orders = make_table("Orders", ["Need"], [{}])
    need = (orders.rows[0], orders.columns["Need"])
    service.update_cell(orders.id, _formula(orders, 0, "Need", "=Inventory!A1*2"))

    renamed = service.rename_table(inventory.id, "Stock")

    assert renamed.name == "Stock"
    cell = store.cells.get(*need)
    assert (cell.value, cell.error_code) == (None, "#REF!")
    assert service.update_cell(orders.id, _formula(orders, 0, "Need", "=Stock!A1*3")).value == 15


def test_archived_tables_are_gone(service: FormulaService, make_table: Callable) -> None:
    table = make_table("Old", ["A"], [{"A": 1}])

    service.archive_table(table.id)

    with pytest.raises(NotFoundError):
        service.recalc_stats(table.id)
    with pytest.raises(NotFoundError):
        service.archive_table(table.id)


def test_create_table_is_visible_to_live_contexts(service: FormulaService, make_table: Callable) -> None:
    orders = make_table("Orders", ["Need"], [{}])
    assert service.update_cell(orders.id, _formula(orders, 0, "Need", "=Later!A1")).error_code == "#REF!"

    later = service.create_table("Later")
    service.add_column(later.id, ColumnCreate(name="X"))

    assert service.update_cell(orders.id, _formula(orders, 0, "Need", "=Later!A1+1")).value == 1
