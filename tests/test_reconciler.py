"""Unit tests for stock delta reconciliation."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock, call

import pytest

from petshop_sales import reconciler
from petshop_sales.constants import ReconciliationFailurePolicy
from petshop_sales.data_manager import LineItem
from petshop_sales.errors import InsufficientStockError, PartialReconciliationFailure, StoreIOError
from petshop_sales.reconciler import MutationKind, StockMutation, StockPlan


def _items(*pairs: tuple[str, int]) -> list[LineItem]:
    return [LineItem(product_id, quantity, Decimal("2.00")) for product_id, quantity in pairs]


def _ret(product_id: str, quantity: int) -> StockMutation:
    return StockMutation(product_id, quantity, MutationKind.RETURN)


def _rem(product_id: str, quantity: int) -> StockMutation:
    return StockMutation(product_id, quantity, MutationKind.REMOVAL)


def _stock(store, *product_ids: str) -> dict[str, int]:
    return {pid: store.get_product(pid).stock_quantity for pid in product_ids}


# ---------------------------------------------------------------------------
# Plan computation
# ---------------------------------------------------------------------------


def test_plan_returns_units_when_quantity_drops():
    plan = reconciler.compute_stock_plan(_items(("P1", 3)), _items(("P1", 1)))

    assert plan.returns == (_ret("P1", 2),)
    assert plan.removals == ()


def test_plan_partitions_returns_and_removals():
    plan = reconciler.compute_stock_plan(
        _items(("A", 2), ("B", 1), ("C", 4)),
        _items(("B", 3), ("C", 4), ("D", 1)),
    )

    assert plan.returns == (_ret("A", 2),)
    assert plan.removals == (_rem("B", 2), _rem("D", 1))


def test_plan_orders_old_products_before_new_only_products():
    plan = reconciler.compute_stock_plan(_items(("B", 1), ("A", 1)), _items(("C", 1), ("A", 2), ("B", 2)))

    assert [m.product_id for m in plan.removals] == ["B", "A", "C"]


def test_plan_ignores_unchanged_products():
    plan = reconciler.compute_stock_plan(_items(("P1", 1)), _items(("P1", 1)))

    assert plan.is_empty
    assert plan.mutations() == ()


def test_plan_sums_duplicate_lines_per_product():
    plan = reconciler.compute_stock_plan(_items(("P1", 2), ("P1", 2)), _items(("P1", 5)))

    assert plan.removals == (_rem("P1", 1),)


def test_plan_for_new_sale_is_all_removals():
    plan = StockPlan.for_new_sale(_items(("P1", 2), ("P2", 1), ("P1", 1)))

    assert plan.returns == ()
    assert plan.removals == (_rem("P1", 3), _rem("P2", 1))


def test_invert_swaps_directions_and_phases():
    plan = StockPlan(returns=(_ret("A", 1),), removals=(_rem("B", 2),))

    inverted = plan.invert()

    assert inverted.returns == (_ret("B", 2),)
    assert inverted.removals == (_rem("A", 1),)
    assert inverted.invert() == plan


def test_mutation_str_is_signed():
    assert str(_ret("P1", 2)) == "+2 P1"
    assert str(_rem("P1", 2)) == "-2 P1"


# ---------------------------------------------------------------------------
# Plan application
# ---------------------------------------------------------------------------


def test_apply_runs_returns_before_removals(product_store, stock_products):
    stock_products(A=("1.00", 0), B=("1.00", 2))
    recorder = Mock(wraps=product_store)
    plan = reconciler.compute_stock_plan(_items(("A", 3)), _items(("B", 2)))

    applied = reconciler.apply_stock_plan(recorder, plan)

    assert applied == (_ret("A", 3), _rem("B", 2))
    assert recorder.method_calls == [call.increment_stock("A", 3), call.decrement_stock("B", 2)]
    assert _stock(product_store, "A", "B") == {"A": 3, "B": 0}


def test_conservation_after_edit(product_store, stock_products):
    stock_products(P1=("1.00", 7))
    plan = reconciler.compute_stock_plan(_items(("P1", 3)), _items(("P1", 1)))

    reconciler.apply_stock_plan(product_store, plan)

    assert _stock(product_store, "P1") == {"P1": 9}


def test_removal_failure_reports_available_and_delta(product_store, stock_products):
    """Old [(P1,1)] with P1 at 0, new [(P1,1),(P2,100)] with P2 at 5."""

    stock_products(P1=("1.00", 0), P2=("1.00", 5))
    plan = reconciler.compute_stock_plan(_items(("P1", 1)), _items(("P1", 1), ("P2", 100)))
    assert plan.mutations() == (_rem("P2", 100),)

    with pytest.raises(InsufficientStockError) as excinfo:
        reconciler.apply_stock_plan(product_store, plan)

    assert (excinfo.value.product_id, excinfo.value.available, excinfo.value.requested) == ("P2", 5, 100)
    assert _stock(product_store, "P1", "P2") == {"P1": 0, "P2": 5}


def test_removal_failure_rolls_back_applied_returns(product_store, stock_products):
    stock_products(A=("1.00", 0), B=("1.00", 1))
    plan = reconciler.compute_stock_plan(_items(("A", 2), ("B", 1)), _items(("B", 5)))

    with pytest.raises(InsufficientStockError) as excinfo:
        reconciler.apply_stock_plan(product_store, plan)

    assert excinfo.value.requested == 4
    assert _stock(product_store, "A", "B") == {"A": 0, "B": 1}


def test_rollback_undoes_earlier_removals_newest_first(product_store, stock_products):
    stock_products(A=("1.00", 5), B=("1.00", 5), C=("1.00", 0))
    recorder = Mock(wraps=product_store)
    plan = reconciler.compute_stock_plan([], _items(("A", 1), ("B", 2), ("C", 1)))

    with pytest.raises(InsufficientStockError):
        reconciler.apply_stock_plan(recorder, plan)

    assert recorder.method_calls == [
        call.decrement_stock("A", 1),
        call.decrement_stock("B", 2),
        call.decrement_stock("C", 1),
        call.increment_stock("B", 2),
        call.increment_stock("A", 1),
    ]
    assert _stock(product_store, "A", "B", "C") == {"A": 5, "B": 5, "C": 0}


def test_accept_policy_keeps_mutations_and_reports_partial_failure(product_store, stock_products):
    stock_products(A=("1.00", 0), B=("1.00", 1))
    plan = reconciler.compute_stock_plan(_items(("A", 2), ("B", 1)), _items(("B", 5)))

    with pytest.raises(PartialReconciliationFailure) as excinfo:
        reconciler.apply_stock_plan(product_store, plan, on_failure=ReconciliationFailurePolicy.ACCEPT)

    failure = excinfo.value
    assert failure.applied == (_ret("A", 2),)
    assert isinstance(failure.cause, InsufficientStockError)
    assert failure.cause.product_id == "B"
    assert "+2 A" in str(failure)
    assert _stock(product_store, "A", "B") == {"A": 2, "B": 1}


def test_accept_policy_without_applied_mutations_raises_original_error(product_store, stock_products):
    stock_products(P1=("1.00", 0))
    plan = StockPlan.for_new_sale(_items(("P1", 1)))

    with pytest.raises(InsufficientStockError):
        reconciler.apply_stock_plan(product_store, plan, on_failure=ReconciliationFailurePolicy.ACCEPT)


def test_failed_rollback_surfaces_partial_failure():
    store = Mock(name="product_store")
    store.increment_stock.return_value = 2
    shortage = InsufficientStockError("B", 1, 4)
    outage = StoreIOError("product", "write product A", "connection reset")
    store.decrement_stock.side_effect = [shortage, outage]
    plan = StockPlan(returns=(_ret("A", 2),), removals=(_rem("B", 4),))

    with pytest.raises(PartialReconciliationFailure) as excinfo:
        reconciler.apply_stock_plan(store, plan)

    assert excinfo.value.applied == (_ret("A", 2),)
    assert excinfo.value.cause is shortage
    assert excinfo.value.__cause__ is outage


def test_store_failure_mid_pass_is_rolled_back_and_reraised():
    store = Mock(name="product_store")
    store.increment_stock.return_value = 4
    outage = StoreIOError("product", "write product B", "timeout")
    store.decrement_stock.side_effect = [outage, 0]
    plan = StockPlan(returns=(_ret("A", 4),), removals=(_rem("B", 1),))

    with pytest.raises(StoreIOError) as excinfo:
        reconciler.apply_stock_plan(store, plan)

    assert excinfo.value is outage
    assert store.method_calls == [
        call.increment_stock("A", 4),
        call.decrement_stock("B", 1),
        call.decrement_stock("A", 4),
    ]


def test_revert_mutations_leaves_unreverted_entries_in_list():
    store = Mock(name="product_store")
    store.increment_stock.side_effect = [3, StoreIOError("product", "write", "down")]
    applied = [_rem("A", 1), _rem("B", 2)]

    with pytest.raises(StoreIOError):
        reconciler.revert_mutations(store, applied)

    assert applied == [_rem("A", 1)]
