"""Business logic layer for the pet shop sales engine.

This module is the commit orchestrator. It sequences stock validation, stock
mutation and sale persistence for the create, edit and delete paths and
decides what is compensated when a later step fails. All I/O goes through the
product and sale stores held by the :class:`RuntimeContext`.

The two stores are independent, so a commit is run as a saga: each step that
changes state has a compensating action that is applied if a later step
fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log, remote_store
from .cart import SaleCart, calculate_total
from .constants import DEFAULT_PAYMENT_METHOD, EXPECTED_SCHEMA_VERSION, DeletePolicy, PaymentMethod
from .data_manager import LineItem, ProductRow, ProductStore, SaleRow, SaleStore
from .errors import (
    BusinessRuleViolation,
    EmptySaleError,
    MissingReferenceError,
    PartialReconciliationFailure,
    StoreIOError,
)
from .reconciler import StockPlan, apply_stock_plan, compute_stock_plan, summarize_plan
from .validation import take_stock_snapshot, validate_for_create


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the stores used by the BLL.

    ``workbook`` is set for the workbook backend and ``client`` for the HTTP
    backend; the other one stays ``None``.
    """

    settings: data_manager.ConfigSettings
    product_store: ProductStore
    sale_store: SaleStore
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)
    client: Any = field(default=None, repr=False, compare=False)


@dataclass
class EditSession:
    """An open edit of a committed sale.

    ``original`` is the sale exactly as it was when the session was opened.
    Reconciliation compares against this snapshot rather than re-reading the
    sale at commit time, and the snapshot travels with the session instead of
    living in shared state. A session can be committed once; ``committed``
    is set after a successful commit.
    """

    original: SaleRow
    cart: SaleCart
    committed: bool = False

    @property
    def sale_id(self) -> str:
        return str(self.original.sale_id)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and wire up the configured store backend.

    When the configuration names a ``[Remote] BaseUrl`` both stores talk to
    that server over HTTP. Otherwise the master workbook is opened and both
    stores operate on it in memory until :func:`persist_context` is called.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)

    if settings.remote_base_url:
        client = remote_store.build_client(settings.remote_base_url, timeout=settings.remote_timeout)
        log.info("Loaded runtime context for remote stores at '%s'", settings.remote_base_url)
        return RuntimeContext(
            settings=settings,
            product_store=remote_store.HttpProductStore(client, conflict_retries=settings.conflict_retries),
            sale_store=remote_store.HttpSaleStore(client),
            client=client,
        )

    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return workbook_context(settings, workbook)


def workbook_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Build a context whose stores both operate on ``workbook``."""

    return RuntimeContext(
        settings=settings,
        product_store=data_manager.WorkbookProductStore(workbook),
        sale_store=data_manager.WorkbookSaleStore(workbook),
        workbook=workbook,
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Remote stores write through on every call, so there is nothing to do for
    them.

    Raises:
        StoreIOError: If the workbook cannot be written.
    """
    if context.workbook is None:
        return
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Contexts without a workbook are returned unchanged.
    """
    if context.workbook is None:
        return context
    workbook = data_manager.open_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return workbook_context(context.settings, workbook)


def close_context(context: RuntimeContext) -> None:
    """Release the HTTP client held by a remote context."""

    if context.client is not None:
        context.client.close()


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    return context.product_store.get_product(product_id)


def list_products(context: RuntimeContext) -> List[ProductRow]:
    return context.product_store.list_products()


def stock_levels(context: RuntimeContext) -> Dict[str, int]:
    """Map each product id to its current stock quantity."""

    return {product.product_id: product.stock_quantity for product in list_products(context)}


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    unit_price: Decimal,
    stock_quantity: int,
    category: str = "",
) -> ProductRow:
    """Register a product so it can be sold.

    Raises:
        ValueError: If the price or stock is negative.
    """
    if unit_price < Decimal("0"):
        log.error("Rejected product '%s' with negative price %s", product_id, unit_price)
        raise ValueError("Unit price must be zero or positive")
    if stock_quantity < 0:
        log.error("Rejected product '%s' with negative stock %s", product_id, stock_quantity)
        raise ValueError("Stock quantity must be zero or positive")
    record = ProductRow(
        product_id=product_id,
        product_name=product_name,
        unit_price=unit_price,
        stock_quantity=stock_quantity,
        category=category,
    )
    created = context.product_store.add_product(record)
    log.info("Registered product '%s' with %d unit(s) in stock", product_id, stock_quantity)
    return created


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    return context.sale_store.get_sale(sale_id)


def list_sales(context: RuntimeContext) -> List[SaleRow]:
    return context.sale_store.list_sales()


def new_cart(context: RuntimeContext, items: Iterable[LineItem] = ()) -> SaleCart:
    """Start a cart whose prices come from the context's product store."""

    return SaleCart(lambda product_id: get_product(context, product_id), items)


def build_sale_record(
    items: Iterable[LineItem],
    *,
    sale_id: Optional[str],
    customer_id: str,
    payment_method: PaymentMethod,
    timestamp: datetime,
) -> SaleRow:
    """Assemble a sale whose total is recomputed from ``items``.

    The total is never taken from caller-held state.
    """
    line_items = tuple(items)
    return SaleRow(
        sale_id=sale_id,
        timestamp=timestamp,
        customer_id=customer_id,
        line_items=line_items,
        total=calculate_total(line_items),
        payment_method=payment_method,
    )


def _require_payment_method(payment_method: Any) -> PaymentMethod:
    if not isinstance(payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {payment_method}")
    return payment_method


def create_sale(
    context: RuntimeContext,
    cart: SaleCart,
    *,
    customer_id: str,
    payment_method: PaymentMethod = DEFAULT_PAYMENT_METHOD,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Commit the cart as a new sale.

    Steps, in fixed order:

    1. reject an empty cart;
    2. read a fresh stock snapshot and validate the cart against it;
    3. persist the sale through the sale store, total recomputed;
    4. take the stock for each product, one conditional decrement at a time.

    If step 4 fails, the units already taken are returned and the sale record
    is deleted before the error propagates, so a failed create leaves neither
    a sale nor missing stock behind.

    Raises:
        EmptySaleError: If the cart has no items.
        UnknownProductError: If a product no longer resolves.
        InsufficientStockError: If stock does not cover the cart, either at
            validation time or when the decrement runs.
        PartialReconciliationFailure: If compensation could not be completed.
        StoreIOError: On storage failures.
    """
    if cart.is_empty:
        log.warning("Rejected sale for customer '%s': cart is empty", customer_id)
        raise EmptySaleError()
    payment_method = _require_payment_method(payment_method)

    items = cart.items
    snapshot = take_stock_snapshot(context.product_store, (item.product_id for item in items))
    validate_for_create(items, snapshot)

    draft = build_sale_record(
        items,
        sale_id=None,
        customer_id=customer_id,
        payment_method=payment_method,
        timestamp=_resolve_timestamp(timestamp),
    )
    sale = context.sale_store.create_sale(draft)
    log.info("Recorded sale '%s' for customer '%s' (total=%s)", sale.sale_id, customer_id, sale.total)

    try:
        apply_stock_plan(context.product_store, StockPlan.for_new_sale(items))
    except (BusinessRuleViolation, StoreIOError) as exc:
        log.warning("Stock update for sale '%s' failed (%s); discarding the sale", sale.sale_id, exc)
        _discard_sale(context, sale, exc)
        raise

    log.info("Took stock for sale '%s': %s", sale.sale_id, ", ".join(summarize_plan(StockPlan.for_new_sale(items))))
    return sale


def _discard_sale(context: RuntimeContext, sale: SaleRow, cause: Exception) -> None:
    try:
        context.sale_store.delete_sale(str(sale.sale_id))
    except (MissingReferenceError, StoreIOError) as exc:
        log.error("Could not discard sale '%s' after failed stock update: %s", sale.sale_id, exc)
        raise PartialReconciliationFailure([f"sale {sale.sale_id} still recorded"], cause) from exc


def _compensate(context: RuntimeContext, undo: StockPlan, cause: Exception) -> None:
    """Apply ``undo`` after ``cause`` interrupted a commit.

    If the undo cannot be completed the stock changes it was meant to revert
    are reported through :class:`PartialReconciliationFailure`.
    """
    try:
        apply_stock_plan(context.product_store, undo)
    except PartialReconciliationFailure:
        raise
    except (BusinessRuleViolation, StoreIOError) as exc:
        log.error("Could not undo stock changes (%s): %s", ", ".join(summarize_plan(undo)), exc)
        raise PartialReconciliationFailure(undo.invert().mutations(), cause) from exc


def open_edit_session(context: RuntimeContext, sale_id: str) -> EditSession:
    """Snapshot a committed sale and seed a cart with its line items.

    Raises:
        UnknownSaleError: If the sale does not exist.
    """
    original = get_sale(context, sale_id)
    log.info("Opened edit session for sale '%s' (%d line(s))", sale_id, len(original.line_items))
    return EditSession(original=original, cart=new_cart(context, original.line_items))


def commit_edit(
    context: RuntimeContext,
    session: EditSession,
    *,
    customer_id: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Replace a sale's line items with the session cart.

    Steps, in fixed order:

    1. reject a session that was already committed, an empty cart and an
       unsupported payment method;
    2. reconcile stock between the session snapshot and the cart (returns
       first, then removals);
    3. persist the replacement sale, total recomputed.

    If step 2 fails the sale record is untouched; what happens to the stock
    mutations already applied follows ``settings.on_partial_failure``. If
    step 3 fails the applied stock plan is inverted and applied before the
    error propagates.

    Header fields not given keep the values from the snapshot.

    Raises:
        BusinessRuleViolation: If the session was already committed or the
            payment method is not supported.
        EmptySaleError: If the cart has no items.
        InsufficientStockError: If a removal cannot be covered.
        PartialReconciliationFailure: If stock is left partially reconciled.
        StoreIOError: On storage failures.
    """
    original = session.original
    if session.committed:
        log.warning("Rejected edit of sale '%s': session was already committed", session.sale_id)
        raise BusinessRuleViolation(f"Edit session for sale '{session.sale_id}' was already committed")
    if session.cart.is_empty:
        log.warning("Rejected edit of sale '%s': cart is empty", session.sale_id)
        raise EmptySaleError(session.sale_id)

    items = session.cart.items
    updated = build_sale_record(
        items,
        sale_id=original.sale_id,
        customer_id=customer_id if customer_id is not None else original.customer_id,
        payment_method=_require_payment_method(payment_method or original.payment_method),
        timestamp=timestamp or original.timestamp,
    )
    plan = compute_stock_plan(original.line_items, items)
    log.info(
        "Reconciling sale '%s': %s",
        session.sale_id,
        ", ".join(summarize_plan(plan)) or "no stock change",
    )
    apply_stock_plan(context.product_store, plan, on_failure=context.settings.on_partial_failure)

    try:
        context.sale_store.update_sale(updated)
    except (BusinessRuleViolation, StoreIOError) as exc:
        log.warning("Saving sale '%s' failed (%s); undoing its stock changes", session.sale_id, exc)
        _compensate(context, plan.invert(), exc)
        raise

    session.committed = True
    log.info("Updated sale '%s' (total %s -> %s)", session.sale_id, original.total, updated.total)
    return updated


def delete_sale(context: RuntimeContext, sale_id: str, *, policy: Optional[DeletePolicy] = None) -> SaleRow:
    """Delete a sale under an explicit stock policy.

    ``DeletePolicy.RETAIN_STOCK`` treats the sale as a financial record whose
    removal does not put goods back on the shelf. ``DeletePolicy.RESTORE_STOCK``
    returns every line item's units first and only deletes the record once
    the stock is back. Without ``policy`` the configured default applies.

    Returns:
        SaleRow: The deleted sale.

    Raises:
        UnknownSaleError: If the sale does not exist.
        PartialReconciliationFailure: If the delete fails and the returned
            units cannot be taken back.
        StoreIOError: On storage failures.
    """
    policy = policy or context.settings.delete_policy
    sale = get_sale(context, sale_id)

    if policy is DeletePolicy.RESTORE_STOCK:
        restore = StockPlan.for_new_sale(sale.line_items).invert()
        apply_stock_plan(context.product_store, restore)
        try:
            context.sale_store.delete_sale(sale_id)
        except (BusinessRuleViolation, StoreIOError) as exc:
            log.warning("Deleting sale '%s' failed (%s); taking its stock back", sale_id, exc)
            _compensate(context, restore.invert(), exc)
            raise
        log.info("Deleted sale '%s' and restored stock: %s", sale_id, ", ".join(summarize_plan(restore)))
        return sale

    context.sale_store.delete_sale(sale_id)
    log.info("Deleted sale '%s'; stock left unchanged", sale_id)
    return sale
