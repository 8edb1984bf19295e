"""In-memory cart holding the line items of the sale being drafted."""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional

from . import log
from .data_manager import LineItem, ProductRow
from .errors import InvalidQuantityError


ProductLookup = Callable[[str], ProductRow]


def require_positive_quantity(quantity: object, product_id: Optional[str] = None) -> int:
    """Validate that a line item quantity is a strictly positive integer.

    Args:
        quantity (object): Quantity supplied by the caller.
        product_id (str | None): Product the quantity belongs to, used only in
            the error message.

    Returns:
        int: The validated quantity.

    Raises:
        InvalidQuantityError: If ``quantity`` is not an ``int`` or is zero or
            negative. ``bool`` values are rejected even though they subclass
            ``int``.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed for '%s': %r", product_id, quantity)
        raise InvalidQuantityError(quantity, product_id)
    return quantity


def calculate_total(items: Iterable[LineItem]) -> Decimal:
    """Return the sum of ``quantity * unit_price`` over ``items``."""

    return sum((item.subtotal for item in items), Decimal("0"))


def aggregate_quantities(items: Iterable[LineItem]) -> Dict[str, int]:
    """Sum quantities per product, keeping first-appearance order."""

    quantities: Dict[str, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


class SaleCart:
    """Working set of line items for a new sale or an edit session.

    The cart never talks to the stock store. Products are resolved through
    ``product_lookup`` only to capture their current unit price, which then
    stays frozen on the line item.
    """

    def __init__(self, product_lookup: ProductLookup, items: Iterable[LineItem] = ()) -> None:
        self._lookup = product_lookup
        self._items: list[LineItem] = list(items)

    def add_item(self, product_id: str, quantity: int) -> LineItem:
        quantity = require_positive_quantity(quantity, product_id)
        product = self._lookup(product_id)
        item = LineItem(product_id=product.product_id, quantity=quantity, unit_price=product.unit_price)
        self._items.append(item)
        log.debug("Cart: added %d x '%s' at %s", quantity, product_id, product.unit_price)
        return item

    def remove_item(self, index: int) -> LineItem:
        if not 0 <= index < len(self._items):
            raise IndexError(f"No line item at position {index} (cart has {len(self._items)})")
        item = self._items.pop(index)
        log.debug("Cart: removed line %d ('%s')", index, item.product_id)
        return item

    @property
    def items(self) -> tuple[LineItem, ...]:
        return tuple(self._items)

    @property
    def total(self) -> Decimal:
        return calculate_total(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    def quantities_by_product(self) -> Dict[str, int]:
        return aggregate_quantities(self._items)

    def __len__(self) -> int:
        return len(self._items)
