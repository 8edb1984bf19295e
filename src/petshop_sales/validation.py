"""Stock availability checks run before a new sale is committed."""

from __future__ import annotations

from typing import Iterable, Mapping

from . import log
from .cart import aggregate_quantities
from .data_manager import LineItem, ProductStore
from .errors import InsufficientStockError, UnknownProductError


def take_stock_snapshot(product_store: ProductStore, product_ids: Iterable[str]) -> dict[str, int]:
    """Read the current stock of each product, one request at a time.

    Duplicate identifiers are read once.

    Raises:
        UnknownProductError: If a product does not resolve.
        StoreIOError: If the store cannot be reached.
    """
    snapshot: dict[str, int] = {}
    for product_id in product_ids:
        if product_id in snapshot:
            continue
        snapshot[product_id] = product_store.get_product(product_id).stock_quantity
    log.debug("Took stock snapshot for %d product(s)", len(snapshot))
    return snapshot


def validate_for_create(items: Iterable[LineItem], stock_snapshot: Mapping[str, int]) -> None:
    """Check that ``items`` fit in the stock recorded by ``stock_snapshot``.

    Quantities for the same product are summed across lines before comparing,
    so two lines of 3 units against a stock of 5 are rejected. Products are
    checked in the order they first appear in ``items``. Nothing is mutated.

    Args:
        items (Iterable[LineItem]): Proposed line items.
        stock_snapshot (Mapping[str, int]): Stock per product read at
            submission time.

    Raises:
        UnknownProductError: If a product is missing from the snapshot.
        InsufficientStockError: For the first product whose requested
            quantity exceeds its snapshot stock.
    """
    for product_id, requested in aggregate_quantities(items).items():
        if product_id not in stock_snapshot:
            log.warning("Sale rejected: '%s' has no stock snapshot", product_id)
            raise UnknownProductError(product_id)
        available = stock_snapshot[product_id]
        if requested > available:
            log.warning(
                "Sale rejected: '%s' requested %d, only %d available",
                product_id,
                requested,
                available,
            )
            raise InsufficientStockError(product_id, available, requested)
