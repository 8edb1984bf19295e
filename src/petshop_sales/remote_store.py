"""HTTP implementations of the product and sale stores.

Speaks the REST contract of the shop backend (``/products`` and ``/sales``)
through a shared :class:`httpx.Client`. Stock mutations use optimistic
concurrency: the product is read together with its ``ETag`` and written back
with ``If-Match``; a ``412`` answer means another writer got there first, so
the read-check-write cycle is repeated up to ``conflict_retries`` times.
Servers that do not send an ``ETag`` get plain, unconditional writes.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from . import log
from .constants import PaymentMethod
from .data_manager import (
    DEFAULT_CONFLICT_RETRIES,
    LineItem,
    ProductRow,
    SaleRow,
    require_stock_quantity,
)
from .errors import InsufficientStockError, StoreIOError, UnknownProductError, UnknownSaleError


T = TypeVar("T")


def product_to_payload(record: ProductRow) -> Dict[str, Any]:
    return {
        "id": record.product_id,
        "name": record.product_name,
        "price": str(record.unit_price),
        "stock": record.stock_quantity,
        "category": record.category,
    }


def product_from_payload(payload: Dict[str, Any]) -> ProductRow:
    return ProductRow(
        product_id=str(payload["id"]),
        product_name=str(payload.get("name", "")),
        unit_price=_to_decimal(payload.get("price", "0")),
        stock_quantity=int(payload.get("stock", 0)),
        category=str(payload.get("category") or ""),
    )


def sale_to_payload(record: SaleRow) -> Dict[str, Any]:
    """Serialize a sale for ``POST /sales`` and ``PUT /sales/{id}``.

    The total travels as a decimal string so no float rounding creeps in.
    """

    payload: Dict[str, Any] = {
        "timestamp": record.timestamp.isoformat(),
        "customerId": record.customer_id,
        "lineItems": [
            {
                "productId": item.product_id,
                "quantity": item.quantity,
                "unitPrice": str(item.unit_price),
            }
            for item in record.line_items
        ],
        "total": str(record.total),
        "paymentMethod": record.payment_method.value,
    }
    if record.sale_id is not None:
        payload["id"] = record.sale_id
    return payload


def sale_from_payload(payload: Dict[str, Any]) -> SaleRow:
    items = tuple(
        LineItem(
            product_id=str(raw["productId"]),
            quantity=int(raw["quantity"]),
            unit_price=_to_decimal(raw["unitPrice"]),
        )
        for raw in payload.get("lineItems", [])
    )
    return SaleRow(
        sale_id=str(payload["id"]),
        timestamp=datetime.fromisoformat(str(payload["timestamp"])),
        customer_id=str(payload.get("customerId", "")),
        line_items=items,
        total=_to_decimal(payload.get("total", "0")),
        payment_method=PaymentMethod(payload["paymentMethod"]),
    )


def _to_decimal(raw: Any) -> Decimal:
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {raw!r}") from exc


class _RemoteStore:
    store_name = "remote"

    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def _request(self, method: str, url: str, *, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            log.error("Timeout during %s %s", method, url)
            raise StoreIOError(self.store_name, operation, "request timed out") from exc
        except httpx.HTTPError as exc:
            log.error("Transport failure during %s %s: %s", method, url, exc)
            raise StoreIOError(self.store_name, operation, str(exc)) from exc

    def _decode(self, response: httpx.Response, operation: str, parse: Callable[[Any], T]) -> T:
        """Decode a JSON body with ``parse``; malformed bodies become :class:`StoreIOError`."""
        try:
            return parse(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            log.error("%s store %s returned a malformed body: %s", self.store_name, operation, exc)
            raise StoreIOError(self.store_name, operation, f"malformed response body: {exc}") from exc

    def _fail(self, response: httpx.Response, operation: str) -> StoreIOError:
        detail = f"unexpected status {response.status_code}: {response.text[:200]}"
        log.error("%s store %s failed: %s", self.store_name, operation, detail)
        return StoreIOError(self.store_name, operation, detail)


class HttpProductStore(_RemoteStore):
    """:class:`~petshop_sales.data_manager.ProductStore` over ``/products``."""

    store_name = "product"

    def __init__(self, client: httpx.Client, *, conflict_retries: int = DEFAULT_CONFLICT_RETRIES) -> None:
        super().__init__(client)
        self.conflict_retries = conflict_retries

    def _fetch(self, product_id: str) -> tuple[ProductRow, Optional[str]]:
        operation = f"read product {product_id}"
        response = self._request("GET", f"/products/{product_id}", operation=operation)
        if response.status_code == 404:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise UnknownProductError(product_id)
        if response.status_code != 200:
            raise self._fail(response, operation)
        return self._decode(response, operation, product_from_payload), response.headers.get("ETag")

    def get_product(self, product_id: str) -> ProductRow:
        product, _ = self._fetch(product_id)
        return product

    def list_products(self) -> List[ProductRow]:
        response = self._request("GET", "/products", operation="list products")
        if response.status_code != 200:
            raise self._fail(response, "list products")
        return self._decode(response, "list products", lambda body: [product_from_payload(raw) for raw in body])

    def add_product(self, record: ProductRow) -> ProductRow:
        operation = f"create product {record.product_id}"
        response = self._request("POST", "/products", operation=operation, json=product_to_payload(record))
        if response.status_code not in (200, 201):
            raise self._fail(response, operation)
        return self._decode(response, operation, product_from_payload)

    def put_product(self, record: ProductRow) -> ProductRow:
        return self._put(record, etag=None)

    def _put(self, record: ProductRow, *, etag: Optional[str]) -> ProductRow:
        operation = f"write product {record.product_id}"
        headers = {"If-Match": etag} if etag else {}
        response = self._request(
            "PUT",
            f"/products/{record.product_id}",
            operation=operation,
            json=product_to_payload(record),
            headers=headers,
        )
        if response.status_code == 404:
            raise UnknownProductError(record.product_id)
        if response.status_code == 412:
            raise _VersionConflict(record.product_id)
        if response.status_code not in (200, 204):
            raise self._fail(response, operation)
        return record

    def _adjust(self, product_id: str, change: int) -> int:
        for attempt in range(1, self.conflict_retries + 1):
            product, etag = self._fetch(product_id)
            new_level = product.stock_quantity + change
            if new_level < 0:
                log.warning(
                    "Refused to take %d unit(s) of '%s': only %d in stock",
                    -change,
                    product_id,
                    product.stock_quantity,
                )
                raise InsufficientStockError(product_id, product.stock_quantity, -change)
            try:
                self._put(replace(product, stock_quantity=new_level), etag=etag)
            except _VersionConflict:
                log.info(
                    "Stock write for '%s' lost a race (attempt %d of %d), retrying",
                    product_id,
                    attempt,
                    self.conflict_retries,
                )
                continue
            return new_level
        raise StoreIOError(
            self.store_name,
            f"adjust stock of {product_id}",
            f"gave up after {self.conflict_retries} conflicting writes",
        )

    def increment_stock(self, product_id: str, quantity: int) -> int:
        require_stock_quantity(product_id, quantity)
        return self._adjust(product_id, quantity)

    def decrement_stock(self, product_id: str, quantity: int) -> int:
        require_stock_quantity(product_id, quantity)
        return self._adjust(product_id, -quantity)


class HttpSaleStore(_RemoteStore):
    """:class:`~petshop_sales.data_manager.SaleStore` over ``/sales``."""

    store_name = "sale"

    def create_sale(self, record: SaleRow) -> SaleRow:
        response = self._request("POST", "/sales", operation="create sale", json=sale_to_payload(record))
        if response.status_code not in (200, 201):
            raise self._fail(response, "create sale")
        return self._decode(response, "create sale", sale_from_payload)

    def get_sale(self, sale_id: str) -> SaleRow:
        operation = f"read sale {sale_id}"
        response = self._request("GET", f"/sales/{sale_id}", operation=operation)
        if response.status_code == 404:
            log.warning("Sale lookup failed for id '%s'", sale_id)
            raise UnknownSaleError(sale_id)
        if response.status_code != 200:
            raise self._fail(response, operation)
        return self._decode(response, operation, sale_from_payload)

    def list_sales(self) -> List[SaleRow]:
        response = self._request("GET", "/sales", operation="list sales")
        if response.status_code != 200:
            raise self._fail(response, "list sales")
        return self._decode(response, "list sales", lambda body: [sale_from_payload(raw) for raw in body])

    def update_sale(self, record: SaleRow) -> SaleRow:
        operation = f"update sale {record.sale_id}"
        response = self._request(
            "PUT",
            f"/sales/{record.sale_id}",
            operation=operation,
            json=sale_to_payload(record),
        )
        if response.status_code == 404:
            raise UnknownSaleError(str(record.sale_id))
        if response.status_code not in (200, 204):
            raise self._fail(response, operation)
        return record

    def delete_sale(self, sale_id: str) -> None:
        operation = f"delete sale {sale_id}"
        response = self._request("DELETE", f"/sales/{sale_id}", operation=operation)
        if response.status_code == 404:
            raise UnknownSaleError(sale_id)
        if response.status_code not in (200, 204):
            raise self._fail(response, operation)


class _VersionConflict(Exception):
    """Internal signal that an ``If-Match`` write was rejected."""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product '{product_id}' changed since it was read")
        self.product_id = product_id


def build_client(base_url: str, *, timeout: float) -> httpx.Client:
    """Create the shared HTTP client used by both remote stores."""

    return httpx.Client(base_url=base_url, timeout=timeout, headers={"Accept": "application/json"})
