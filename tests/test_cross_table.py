from typing import Callable

import pytest

from tablecalc.formula.cross_table import CrossTableComputationContext
from tablecalc.formula.errors import NotFoundError
from tablecalc.storage import Store


@pytest.fixture
def tables(make_table: Callable):
    inventory = make_table("Inventory", ["Qty"], [{"Qty": 5}, {"Qty": 8}, {"Qty": 11}])
    prices = make_table("Price List", ["Amount"], [{"Amount": 3}])
    orders = make_table("Orders", ["Need"], [{}])
    return inventory, prices, orders


@pytest.fixture
def ctx(store: Store, tables) -> CrossTableComputationContext:
    _, _, orders = tables
    return CrossTableComputationContext.create(orders.id, store)


def _set(ctx: CrossTableComputationContext, orders, formula: str):
    return ctx.update_cell_with_formula(orders.id, orders.rows[0], orders.columns["Need"], formula)


def test_only_the_primary_table_is_loaded_up_front(ctx: CrossTableComputationContext, tables) -> None:
    _, _, orders = tables

    assert ctx.loaded_tables() == [orders.id]


def test_rewrite_cross_references(ctx: CrossTableComputationContext, tables) -> None:
    inventory, _, _ = tables

    assert ctx.rewrite_cross_references("=Inventory!A1*2") == "='Inventory'!A1*2"
    assert ctx.rewrite_cross_references("=SUM([Inventory]!A1:A3)") == "=SUM('Inventory'!A1:A3)"
    assert ctx.rewrite_cross_references("=inventory!$A$1") == "='Inventory'!$A$1"
    assert ctx.rewrite_cross_references("=[Price List]!A1") == "='Price List'!A1"
    assert ctx.rewrite_cross_references("=MissingTable!A1+1") == "=#REF!+1"
    assert ctx.rewrite_cross_references("=A1+B2") == "=A1+B2"
    assert inventory.id in ctx.loaded_tables()


def test_cross_table_formulas_evaluate(ctx: CrossTableComputationContext, tables) -> None:
    _, _, orders = tables

    assert _set(ctx, orders, "=Inventory!A1*2").value == 10
    assert _set(ctx, orders, "=SUM(Inventory!A1:A3)").value == 24
    assert _set(ctx, orders, "=[Price List]!A1+Inventory!A2").value == 11


def test_unknown_table_evaluates_to_ref_error(ctx: CrossTableComputationContext, tables) -> None:
    _, _, orders = tables

    evaluation = _set(ctx, orders, "=MissingTable!A1")

    assert evaluation.value is None
    assert evaluation.error_code == "#REF!"


def test_referenced_tables() -> None:
    formula = "=Sales!A1+[Price List]!B2+Sales!C3+[Qty]*2"

    assert CrossTableComputationContext.referenced_tables(formula) == ["Sales", "Price List"]
    assert CrossTableComputationContext.referenced_tables(None) == []


def test_string_literals_are_not_rewritten(ctx: CrossTableComputationContext, tables) -> None:
    _, _, orders = tables

    rewritten = ctx.rewrite_cross_references('="Inventory!A1"&Inventory!A1')
    assert rewritten == "=\"Inventory!A1\"&'Inventory'!A1"
    assert ctx.rewrite_cross_references('="Ghost!A1 ""x"""') == '="Ghost!A1 ""x"""'
    assert CrossTableComputationContext.referenced_tables('="Ghost!A1"&Orders!A1') == ["Orders"]
    assert _set(ctx, orders, '="Missing!A1"').value == "Missing!A1"


def test_table_resolution(ctx: CrossTableComputationContext, tables) -> None:
    inventory, prices, _ = tables

    assert ctx.resolve_table("Inventory") == inventory.id
    assert ctx.resolve_table(" price list ") == prices.id
    assert ctx.is_valid_table_reference("INVENTORY")
    assert not ctx.is_valid_table_reference("Nope")


def test_rename_switches_the_valid_name(ctx: CrossTableComputationContext, tables) -> None:
    inventory, _, orders = tables
    assert _set(ctx, orders, "=Inventory!A1").value == 5

    ctx.handle_table_rename("Inventory", "Stock", inventory.id)

    assert _set(ctx, orders, "=Stock!A1").value == 5
    assert _set(ctx, orders, "=Inventory!A1").error_code == "#REF!"


def test_mirror_cell_recalculates_dependents(ctx: CrossTableComputationContext, tables) -> None:
    inventory, prices, orders = tables
    _set(ctx, orders, "=Inventory!A1*2")

    result = ctx.mirror_cell(inventory.id, inventory.rows[0], inventory.columns["Qty"], 9)

    assert [(c.table_id, c.row_id, c.column_id, c.value) for c in result.affected_cells] == [
        (orders.id, orders.rows[0], orders.columns["Need"], 18),
    ]
    assert ctx.mirror_cell(prices.id, prices.rows[0], prices.columns["Amount"], 1) is None


def test_loading_a_missing_table_raises(ctx: CrossTableComputationContext) -> None:
    with pytest.raises(NotFoundError):
        ctx.load_table(999)


def test_sheet_name_collision_falls_back_to_table_id(store: Store, make_table: Callable) -> None:
    first = make_table("Main", ["A"], [{"A": 1}])
    clash = make_table(f"table_{first.id}", ["B"], [{"B": 2}])
    # the primary sheet of `first` already uses the name `clash` would get
    ctx = CrossTableComputationContext.create(first.id, store)

    sheet_id = ctx.load_table(clash.id)

    assert ctx.workbook.sheet_name(sheet_id) == f"table_{clash.id}"
    assert ctx.evaluate(clash.rows[0], clash.columns["B"], table_id=clash.id).value == 2
