"""Data access layer for the pet shop sales engine.

This module provides the low-level helpers that read from and write to the
master workbook, plus the two store classes the reconciliation engine talks
to. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
4. Store contracts: :class:`ProductStore` and :class:`SaleStore`, implemented
   here on top of the workbook and in :mod:`petshop_sales.remote_store` over
   HTTP.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DeletePolicy, PaymentMethod, ReconciliationFailurePolicy, SheetName
from .errors import InsufficientStockError, InvalidQuantityError, StoreIOError, UnknownProductError, UnknownSaleError


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value

DEFAULT_REMOTE_TIMEOUT = 10.0
DEFAULT_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    delete_policy: DeletePolicy = DeletePolicy.RETAIN_STOCK
    on_partial_failure: ReconciliationFailurePolicy = ReconciliationFailurePolicy.ROLLBACK
    remote_base_url: Optional[str] = None
    remote_timeout: float = DEFAULT_REMOTE_TIMEOUT
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit_price: Decimal
    stock_quantity: int
    category: str = ""


@dataclass(frozen=True)
class LineItem:
    """One product, quantity and price tuple within a sale.

    ``unit_price`` is the price captured when the item was added to the cart,
    so later product price changes do not alter committed sales.
    """

    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class SaleRow:
    """A sale header together with its ordered line items."""

    sale_id: Optional[str]
    timestamp: datetime
    customer_id: str
    line_items: tuple[LineItem, ...]
    total: Decimal
    payment_method: PaymentMethod


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Sales]`` and ``[Remote]`` are
    optional and fall back to the module defaults. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a policy or numeric option holds an unsupported value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    delete_raw = parser.get("Sales", "DeletePolicy", fallback=DeletePolicy.RETAIN_STOCK.value)
    failure_raw = parser.get("Sales", "OnPartialFailure", fallback=ReconciliationFailurePolicy.ROLLBACK.value)
    try:
        delete_policy = DeletePolicy(delete_raw.strip().lower())
        on_partial_failure = ReconciliationFailurePolicy(failure_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Invalid [Sales] policy value: {exc}") from exc

    base_url = parser.get("Remote", "BaseUrl", fallback="").strip() or None
    remote_timeout = parser.getfloat("Remote", "Timeout", fallback=DEFAULT_REMOTE_TIMEOUT)
    conflict_retries = parser.getint("Remote", "ConflictRetries", fallback=DEFAULT_CONFLICT_RETRIES)
    if conflict_retries < 1:
        raise ValueError("[Remote] ConflictRetries must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        delete_policy=delete_policy,
        on_partial_failure=on_partial_failure,
        remote_base_url=base_url,
        remote_timeout=remote_timeout,
        conflict_retries=conflict_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand.

    Raises:
        StoreIOError: If the file system refuses the write.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StoreIOError("workbook", "save", str(exc)) from exc


def _sheet(workbook: Workbook, sheet_name: str):
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        log.error("Workbook is missing the '%s' sheet", sheet_name)
        raise StoreIOError("workbook", f"open sheet {sheet_name}", "sheet not found") from exc


def _header_map(sheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped.
    """

    sheet = _sheet(workbook, PRODUCTS_SHEET)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_line_items(workbook: Workbook) -> Iterable[tuple[str, int, LineItem]]:
    """Yield ``(sale_id, line_number, item)`` triples from ``SaleItems``."""

    sheet = _sheet(workbook, SALE_ITEMS_SHEET)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_line_item(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sales with their line items attached, in sheet order.

    Line items are grouped by ``SaleID`` and ordered by ``LineNumber`` so the
    original cart order survives a round trip through the workbook.
    """

    grouped: Dict[str, List[tuple[int, LineItem]]] = {}
    for sale_id, line_number, item in iter_line_items(workbook):
        grouped.setdefault(sale_id, []).append((line_number, item))

    sheet = _sheet(workbook, SALES_SHEET)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        sale_id = str(raw[0])
        items = sorted(grouped.get(sale_id, []), key=lambda pair: pair[0])
        yield deserialize_sale(raw, tuple(item for _, item in items))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    _sheet(workbook, PRODUCTS_SHEET).append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header and each of its line items.

    Line numbers start at 1 and follow the order of ``record.line_items``.
    """

    _sheet(workbook, SALES_SHEET).append(serialize_sale(record))
    items_sheet = _sheet(workbook, SALE_ITEMS_SHEET)
    for line_number, item in enumerate(record.line_items, start=1):
        items_sheet.append(serialize_line_item(record.sale_id, line_number, item))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are modified, leaving other columns untouched.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = _sheet(workbook, PRODUCTS_SHEET)
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def replace_sale(workbook: Workbook, record: SaleRow) -> None:
    """Overwrite a sale header and swap in its new line item set.

    Raises:
        KeyError: If the sale cannot be found.
    """

    row_index = locate_row(workbook, SALES_SHEET, "SaleID", record.sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {record.sale_id}")

    sheet = _sheet(workbook, SALES_SHEET)
    for column, value in enumerate(serialize_sale(record), start=1):
        sheet.cell(row=row_index, column=column, value=value)

    delete_line_items(workbook, record.sale_id)
    items_sheet = _sheet(workbook, SALE_ITEMS_SHEET)
    for line_number, item in enumerate(record.line_items, start=1):
        items_sheet.append(serialize_line_item(record.sale_id, line_number, item))


def delete_sale_rows(workbook: Workbook, sale_id: str) -> None:
    """Remove a sale header and all of its line items.

    Raises:
        KeyError: If the sale cannot be found.
    """

    row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")
    _sheet(workbook, SALES_SHEET).delete_rows(row_index)
    delete_line_items(workbook, sale_id)


def delete_line_items(workbook: Workbook, sale_id: str) -> int:
    """Delete every ``SaleItems`` row belonging to ``sale_id``.

    Returns:
        int: Number of rows removed.
    """

    sheet = _sheet(workbook, SALE_ITEMS_SHEET)
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row and row[0] is not None and str(row[0]) == sale_id
    ]
    # Bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = _sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductID, ProductName, UnitPrice, StockQuantity, Category]``."""

    return [
        record.product_id,
        record.product_name,
        record.unit_price,
        record.stock_quantity,
        record.category,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale header as ``[SaleID, Timestamp, CustomerID, PaymentMethod, Total]``."""

    return [
        record.sale_id,
        record.timestamp.isoformat(),
        record.customer_id,
        record.payment_method.value,
        record.total,
    ]


def serialize_line_item(sale_id: Optional[str], line_number: int, item: LineItem) -> list[object]:
    """Arrange a line item as ``[SaleID, LineNumber, ProductID, Quantity, UnitPrice]``."""

    return [sale_id, line_number, item.product_id, item.quantity, item.unit_price]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal` and stock an ``int`` so values
    Excel stored as floats compare exactly.
    """

    product_id, product_name, price_raw, stock_raw, category = (list(raw_row) + [None] * 5)[:5]
    unit_price = Decimal(str(price_raw)) if price_raw is not None else Decimal("0.00")
    stock_quantity = int(stock_raw) if stock_raw is not None else 0
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        unit_price=unit_price,
        stock_quantity=stock_quantity,
        category=str(category) if category is not None else "",
    )


def deserialize_line_item(raw_row: Sequence[object]) -> tuple[str, int, LineItem]:
    """Convert a raw ``SaleItems`` row into ``(sale_id, line_number, item)``."""

    sale_id, line_number, product_id, quantity, price_raw = raw_row[:5]
    item = LineItem(
        product_id=str(product_id),
        quantity=int(quantity),
        unit_price=Decimal(str(price_raw)) if price_raw is not None else Decimal("0.00"),
    )
    return str(sale_id), int(line_number or 0), item


def deserialize_sale(raw_row: Sequence[object], line_items: tuple[LineItem, ...]) -> SaleRow:
    """Convert a raw ``Sales`` row plus its items into a :class:`SaleRow`."""

    sale_id, timestamp_raw, customer_id, payment_raw, total_raw = raw_row[:5]
    if isinstance(timestamp_raw, datetime):
        timestamp = timestamp_raw
    else:
        timestamp = datetime.fromisoformat(str(timestamp_raw))
    return SaleRow(
        sale_id=str(sale_id),
        timestamp=timestamp,
        customer_id=str(customer_id) if customer_id is not None else "",
        line_items=line_items,
        total=Decimal(str(total_raw)) if total_raw is not None else Decimal("0.00"),
        payment_method=PaymentMethod(str(payment_raw)),
    )


def generate_sale_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable sale identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""

    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


class ProductStore(Protocol):
    """Authoritative per-product stock counter."""

    def get_product(self, product_id: str) -> ProductRow: ...

    def list_products(self) -> List[ProductRow]: ...

    def add_product(self, record: ProductRow) -> ProductRow: ...

    def put_product(self, record: ProductRow) -> ProductRow: ...

    def increment_stock(self, product_id: str, quantity: int) -> int: ...

    def decrement_stock(self, product_id: str, quantity: int) -> int: ...


class SaleStore(Protocol):
    """Persistence for sale records."""

    def create_sale(self, record: SaleRow) -> SaleRow: ...

    def get_sale(self, sale_id: str) -> SaleRow: ...

    def list_sales(self) -> List[SaleRow]: ...

    def update_sale(self, record: SaleRow) -> SaleRow: ...

    def delete_sale(self, sale_id: str) -> None: ...


def require_stock_quantity(product_id: str, quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(quantity, product_id)


class WorkbookProductStore:
    """:class:`ProductStore` backed by the ``Products`` sheet.

    Stock mutations run their read, check and write under one lock so a
    conditional decrement can never interleave with another mutation.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = threading.Lock()

    def get_product(self, product_id: str) -> ProductRow:
        for product in iter_products(self.workbook):
            if product.product_id == product_id:
                return product
        log.warning("Product lookup failed for id '%s'", product_id)
        raise UnknownProductError(product_id)

    def list_products(self) -> List[ProductRow]:
        return list(iter_products(self.workbook))

    def add_product(self, record: ProductRow) -> ProductRow:
        if locate_row(self.workbook, PRODUCTS_SHEET, "ProductID", record.product_id) is not None:
            raise ValueError(f"Product id already registered: {record.product_id}")
        if record.stock_quantity < 0:
            raise ValueError(f"Stock quantity cannot be negative for product '{record.product_id}'")
        append_product(self.workbook, record)
        return record

    def put_product(self, record: ProductRow) -> ProductRow:
        if record.stock_quantity < 0:
            raise ValueError(f"Stock quantity cannot be negative for product '{record.product_id}'")
        try:
            update_product(
                self.workbook,
                record.product_id,
                field_values={
                    "ProductName": record.product_name,
                    "UnitPrice": record.unit_price,
                    "StockQuantity": record.stock_quantity,
                    "Category": record.category,
                },
            )
        except KeyError as exc:
            raise UnknownProductError(record.product_id) from exc
        return record

    def increment_stock(self, product_id: str, quantity: int) -> int:
        require_stock_quantity(product_id, quantity)
        with self._lock:
            product = self.get_product(product_id)
            new_level = product.stock_quantity + quantity
            self.put_product(replace(product, stock_quantity=new_level))
        log.debug("Returned %d unit(s) of '%s' (stock now %d)", quantity, product_id, new_level)
        return new_level

    def decrement_stock(self, product_id: str, quantity: int) -> int:
        require_stock_quantity(product_id, quantity)
        with self._lock:
            product = self.get_product(product_id)
            if product.stock_quantity < quantity:
                log.warning(
                    "Refused to take %d unit(s) of '%s': only %d in stock",
                    quantity,
                    product_id,
                    product.stock_quantity,
                )
                raise InsufficientStockError(product_id, product.stock_quantity, quantity)
            new_level = product.stock_quantity - quantity
            self.put_product(replace(product, stock_quantity=new_level))
        log.debug("Took %d unit(s) of '%s' (stock now %d)", quantity, product_id, new_level)
        return new_level


class WorkbookSaleStore:
    """:class:`SaleStore` backed by the ``Sales`` and ``SaleItems`` sheets."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def create_sale(self, record: SaleRow) -> SaleRow:
        sale_id = generate_sale_id(when=record.timestamp)
        suffix = 1
        while locate_row(self.workbook, SALES_SHEET, "SaleID", sale_id) is not None:
            suffix += 1
            sale_id = f"{generate_sale_id(when=record.timestamp)}-{suffix}"
        created = replace(record, sale_id=sale_id)
        append_sale(self.workbook, created)
        return created

    def get_sale(self, sale_id: str) -> SaleRow:
        for sale in iter_sales(self.workbook):
            if sale.sale_id == sale_id:
                return sale
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise UnknownSaleError(sale_id)

    def list_sales(self) -> List[SaleRow]:
        return list(iter_sales(self.workbook))

    def update_sale(self, record: SaleRow) -> SaleRow:
        try:
            replace_sale(self.workbook, record)
        except KeyError as exc:
            raise UnknownSaleError(str(record.sale_id)) from exc
        return record

    def delete_sale(self, sale_id: str) -> None:
        try:
            delete_sale_rows(self.workbook, sale_id)
        except KeyError as exc:
            raise UnknownSaleError(sale_id) from exc
