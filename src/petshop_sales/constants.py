"""Enumerations shared across the pet shop sales modules.

Centralises domain constants so the stores, the reconciliation engine and the
CLI rely on a single source of truth for payment methods, sheet names and the
policies that govern stock handling.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"


class PaymentMethod(str, Enum):
    """Enumerate the payment methods a sale may be settled with."""

    CASH = "Cash"
    DEBIT_CARD = "Debit Card"
    CREDIT_CARD = "Credit Card"
    INSTANT_TRANSFER = "Instant-Transfer Payment"
    BANK_TRANSFER = "Bank Transfer"


DEFAULT_PAYMENT_METHOD = PaymentMethod.CREDIT_CARD


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"


class DeletePolicy(str, Enum):
    """What happens to stock when a sale record is deleted."""

    # Sales are financial records; deleting one leaves stock untouched.
    RETAIN_STOCK = "retain-stock"
    RESTORE_STOCK = "restore-stock"


class ReconciliationFailurePolicy(str, Enum):
    """How a failed stock pass treats the mutations it already applied."""

    ROLLBACK = "rollback"
    ACCEPT = "accept"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PaymentMethod",
    "DEFAULT_PAYMENT_METHOD",
    "SheetName",
    "DeletePolicy",
    "ReconciliationFailurePolicy",
]
