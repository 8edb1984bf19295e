"""Stock delta reconciliation for sales whose line items change.

Reconciliation is split in two steps. :func:`compute_stock_plan` is pure: it
compares the quantities a sale held before an edit with the quantities it
holds now and produces a :class:`StockPlan`. :func:`apply_stock_plan` then
executes that plan against a :class:`~petshop_sales.data_manager.ProductStore`
one mutation at a time, returns first and removals second, so units freed by
the edit are back on the shelf before any extra units are taken.

The create path reuses the same machinery with a plan made only of removals
(see :meth:`StockPlan.for_new_sale`), and compensation is simply the inverted
plan of whatever was already applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Sequence

from . import log
from .cart import aggregate_quantities
from .constants import ReconciliationFailurePolicy
from .data_manager import LineItem, ProductStore
from .errors import BusinessRuleViolation, PartialReconciliationFailure, StoreIOError


class MutationKind(str, Enum):
    """Direction of a single stock mutation."""

    RETURN = "return"
    REMOVAL = "removal"


@dataclass(frozen=True)
class StockMutation:
    """Move ``quantity`` units of ``product_id`` back to, or off, the shelf."""

    product_id: str
    quantity: int
    kind: MutationKind

    def inverse(self) -> "StockMutation":
        kind = MutationKind.REMOVAL if self.kind is MutationKind.RETURN else MutationKind.RETURN
        return StockMutation(self.product_id, self.quantity, kind)

    def __str__(self) -> str:
        sign = "+" if self.kind is MutationKind.RETURN else "-"
        return f"{sign}{self.quantity} {self.product_id}"


@dataclass(frozen=True)
class StockPlan:
    """Ordered stock mutations needed to move between two line item sets."""

    returns: tuple[StockMutation, ...] = ()
    removals: tuple[StockMutation, ...] = ()

    @classmethod
    def for_new_sale(cls, items: Iterable[LineItem]) -> "StockPlan":
        return compute_stock_plan((), items)

    @property
    def is_empty(self) -> bool:
        return not self.returns and not self.removals

    def mutations(self) -> tuple[StockMutation, ...]:
        """All mutations in the order they are applied."""
        return self.returns + self.removals

    def invert(self) -> "StockPlan":
        """Plan that undoes this one.

        Undone removals become returns and are applied first.
        """
        return StockPlan(
            returns=tuple(mutation.inverse() for mutation in self.removals),
            removals=tuple(mutation.inverse() for mutation in self.returns),
        )


def compute_stock_plan(old_items: Iterable[LineItem], new_items: Iterable[LineItem]) -> StockPlan:
    """Compute the net per-product stock change between two line item sets.

    Quantities are summed per product on each side (a product that is absent
    counts as zero) and ``delta = new - old`` is taken over the union of
    products. Products whose quantity shrank are **returns**, products whose
    quantity grew are **removals** and unchanged products produce nothing.
    Products are visited in the order they first appear in ``old_items``,
    followed by products that only appear in ``new_items``.

    Args:
        old_items (Iterable[LineItem]): Line items the sale had when the edit
            session was opened.
        new_items (Iterable[LineItem]): Line items the sale should hold now.

    Returns:
        StockPlan: Returns and removals, each with a positive quantity.
    """
    old_quantities = aggregate_quantities(old_items)
    new_quantities = aggregate_quantities(new_items)

    returns: List[StockMutation] = []
    removals: List[StockMutation] = []
    for product_id in dict.fromkeys([*old_quantities, *new_quantities]):
        delta = new_quantities.get(product_id, 0) - old_quantities.get(product_id, 0)
        if delta < 0:
            returns.append(StockMutation(product_id, -delta, MutationKind.RETURN))
        elif delta > 0:
            removals.append(StockMutation(product_id, delta, MutationKind.REMOVAL))

    return StockPlan(returns=tuple(returns), removals=tuple(removals))


def _apply(product_store: ProductStore, mutation: StockMutation) -> int:
    if mutation.kind is MutationKind.RETURN:
        return product_store.increment_stock(mutation.product_id, mutation.quantity)
    return product_store.decrement_stock(mutation.product_id, mutation.quantity)


def revert_mutations(product_store: ProductStore, applied: List[StockMutation]) -> None:
    """Undo ``applied`` mutations, newest first.

    Each mutation is popped from ``applied`` once its inverse succeeds, so if
    an undo fails the list still holds exactly the mutations left in effect.
    """
    while applied:
        mutation = applied[-1]
        _apply(product_store, mutation.inverse())
        applied.pop()
        log.info("Reverted stock mutation %s", mutation)


def apply_stock_plan(
    product_store: ProductStore,
    plan: StockPlan,
    *,
    on_failure: ReconciliationFailurePolicy = ReconciliationFailurePolicy.ROLLBACK,
) -> tuple[StockMutation, ...]:
    """Execute ``plan`` against ``product_store``.

    All returns are applied before any removal. Removals rely on the store's
    conditional decrement, so the first product without enough stock raises
    :class:`~petshop_sales.errors.InsufficientStockError` carrying the stock
    the store actually had and the delta that was requested, and the pass
    stops there. Every mutation is its own round trip; nothing runs in
    parallel.

    When the pass fails after some mutations went through, ``on_failure``
    decides what happens to them:

    * ``ROLLBACK`` reverts them newest first and re-raises the original
      error. If the rollback itself fails the stock is left altered and
      :class:`~petshop_sales.errors.PartialReconciliationFailure` is raised.
    * ``ACCEPT`` leaves them in place and raises
      :class:`~petshop_sales.errors.PartialReconciliationFailure`.

    A failure before any mutation was applied is always re-raised unchanged.

    Returns:
        tuple[StockMutation, ...]: The mutations applied, in order.
    """
    applied: List[StockMutation] = []
    try:
        for mutation in plan.mutations():
            new_level = _apply(product_store, mutation)
            applied.append(mutation)
            log.debug("Applied stock mutation %s (stock now %d)", mutation, new_level)
    except (BusinessRuleViolation, StoreIOError) as exc:
        if not applied:
            raise
        if on_failure is ReconciliationFailurePolicy.ACCEPT:
            log.error(
                "Stock pass failed on %s; keeping %d applied mutation(s): %s",
                exc,
                len(applied),
                ", ".join(str(mutation) for mutation in applied),
            )
            raise PartialReconciliationFailure(applied, exc) from exc

        log.warning("Stock pass failed (%s); rolling back %d mutation(s)", exc, len(applied))
        try:
            revert_mutations(product_store, applied)
        except (BusinessRuleViolation, StoreIOError) as rollback_exc:
            log.error(
                "Rollback failed (%s); mutations still applied: %s",
                rollback_exc,
                ", ".join(str(mutation) for mutation in applied),
            )
            raise PartialReconciliationFailure(applied, exc) from rollback_exc
        raise

    return tuple(applied)


def summarize_plan(plan: StockPlan) -> Sequence[str]:
    """Human readable lines describing ``plan``, for logs and the CLI."""
    return [str(mutation) for mutation in plan.mutations()]
