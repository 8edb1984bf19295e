"""Exception hierarchy raised by the sales reconciliation engine.

Business rule violations carry enough context for a caller to tell the user
which product, line or sale caused the failure and by how much. Storage and
network failures are kept outside that hierarchy because they say nothing
about the sale itself.
"""

from __future__ import annotations

from typing import Any, Sequence


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class EmptySaleError(BusinessRuleViolation):
    """Raised when a sale is committed without any line items."""

    def __init__(self, sale_id: str | None = None) -> None:
        self.sale_id = sale_id
        if sale_id is None:
            message = "A sale needs at least one line item"
        else:
            message = f"Sale '{sale_id}' needs at least one line item"
        super().__init__(message)


class InvalidQuantityError(BusinessRuleViolation, ValueError):
    """Raised when a line item quantity is not a positive integer."""

    def __init__(self, quantity: Any, product_id: str | None = None) -> None:
        self.quantity = quantity
        self.product_id = product_id
        target = f" for product '{product_id}'" if product_id else ""
        super().__init__(f"Quantity must be a positive integer{target}, got {quantity!r}")


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or sale is unknown."""


class UnknownProductError(MissingReferenceError):
    """Raised when a product identifier does not resolve."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Unknown product id: {product_id}")


class UnknownSaleError(MissingReferenceError):
    """Raised when a sale identifier does not resolve."""

    def __init__(self, sale_id: str) -> None:
        self.sale_id = sale_id
        super().__init__(f"Unknown sale id: {sale_id}")


class InsufficientStockError(BusinessRuleViolation):
    """Raised when more units are requested than a product has on hand."""

    def __init__(self, product_id: str, available: int, requested: int) -> None:
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available} (short by {self.shortfall})"
        )

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class PartialReconciliationFailure(BusinessRuleViolation):
    """Raised when a failed stock pass leaves some mutations applied.

    ``applied`` lists the stock mutations that remain in effect and ``cause``
    is the error that interrupted the pass.
    """

    def __init__(self, applied: Sequence[Any], cause: Exception) -> None:
        self.applied = tuple(applied)
        self.cause = cause
        changes = ", ".join(str(mutation) for mutation in self.applied) or "none"
        super().__init__(
            f"Stock left partially reconciled after failure ({cause}); "
            f"mutations still applied: {changes}"
        )


class StoreIOError(Exception):
    """Raised when a product or sale store cannot complete a request."""

    def __init__(self, store: str, operation: str, detail: str) -> None:
        self.store = store
        self.operation = operation
        self.detail = detail
        super().__init__(f"{store} store failed during {operation}: {detail}")


__all__ = [
    "BusinessRuleViolation",
    "EmptySaleError",
    "InvalidQuantityError",
    "MissingReferenceError",
    "UnknownProductError",
    "UnknownSaleError",
    "InsufficientStockError",
    "PartialReconciliationFailure",
    "StoreIOError",
]
