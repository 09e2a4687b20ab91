"""Document store for the shop ledger.

This module plays the part of the remote document database: the ``products``
and ``sales`` collections live as sheets in a single ``openpyxl`` workbook and
every read or write goes through the helpers below. Business rules belong in
:mod:`shop_ledger.core_logic`.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file
   within a bounded time, under an inter-process write lock.
3. Store-side services: the server clock and document identifiers.
4. Collection operations: typed documents, ordered queries, and
   version-guarded updates.
"""


from __future__ import annotations

import configparser
import hashlib
import io
import os
import tempfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

import openpyxl
from filelock import FileLock
from filelock import Timeout as LockTimeout
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import PRODUCT_COLUMNS, SALE_COLUMNS, CollectionName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = CollectionName.PRODUCTS.value
SALES_SHEET = CollectionName.SALES.value

DEFAULT_OPERATION_TIMEOUT = 10.0
DEFAULT_MAX_RETRIES = 3
LOCK_SUFFIX = ".lock"

_STORE_LOCKS: dict[Path, FileLock] = {}

T = TypeVar("T")


class StoreError(RuntimeError):
    """Base class for failures raised by the document store."""


class VersionConflict(StoreError):
    """Raised when a guarded update finds the document changed underneath it."""

    def __init__(self, document_id: str, expected: int, actual: int):
        super().__init__(
            f"Document '{document_id}' is at version {actual}, expected {expected}"
        )
        self.document_id = document_id
        self.expected = expected
        self.actual = actual


class StoreTimeout(StoreError):
    """Raised when a store operation does not finish within its time budget."""


@dataclass(frozen=True)
class StoreSnapshot:
    """A workbook together with the fingerprint of the file bytes it was read from."""

    workbook: Workbook
    fingerprint: str


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    autosave: bool = True
    owner_email: Optional[str] = None
    password_hash: Optional[str] = None
    receipt_phone: str = ""


@dataclass(frozen=True)
class ProductDocument:
    """In-memory view of a document from the ``products`` collection."""

    product_id: str
    name: str
    category: Optional[str]
    price: int
    stock: int
    is_hidden: bool
    created_at: Optional[datetime]
    last_stock_added_at: Optional[datetime]
    last_stock_added_qty: Optional[int]
    stock_baseline: int
    version: int


@dataclass(frozen=True)
class SaleDocument:
    """In-memory view of a document from the ``sales`` collection."""

    sale_id: str
    product_id: str
    product_name: str
    product_category: Optional[str]
    qty: int
    price: Optional[int]
    buyer_name: str
    customer_type: Optional[str]
    sold_at: Optional[datetime]


class _StoreClock:
    """Server-side clock handing out strictly increasing UTC timestamps."""

    def __init__(self) -> None:
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = datetime.now(UTC)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


_clock = _StoreClock()


def server_timestamp() -> datetime:
    """Return the store's notion of "now".

    Callers never supply their own timestamps for ``soldAt`` or
    ``lastStockAddedAt``; the store clock keeps ordering consistent no matter
    how skewed a client machine is. Successive calls never return the same
    instant, so ordering by timestamp matches write order.
    """

    return _clock.now()


def new_document_id(prefix: str) -> str:
    """Allocate an opaque identifier such as ``P3f9c0a1b2c4d``."""

    return f"{prefix}{uuid.uuid4().hex[:12]}"


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the store behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

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

    The ``[System]`` section is mandatory. ``[Store]``, ``[Auth]`` and
    ``[Receipt]`` are optional and fall back to their defaults. Relative
    ``DataFile`` entries are anchored at ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric or boolean option is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    operation_timeout = parser.getfloat(
        "Store", "OperationTimeout", fallback=DEFAULT_OPERATION_TIMEOUT)
    max_retries = parser.getint("Store", "MaxRetries", fallback=DEFAULT_MAX_RETRIES)
    autosave = parser.getboolean("Store", "AutoSave", fallback=True)
    if max_retries < 1:
        raise ValueError("Store.MaxRetries must be at least 1")

    owner_email = parser.get("Auth", "OwnerEmail", fallback=None)
    password_hash = parser.get("Auth", "PasswordHash", fallback=None)
    receipt_phone = parser.get("Receipt", "PhoneNumber", fallback="")

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        operation_timeout=operation_timeout,
        max_retries=max_retries,
        autosave=autosave,
        owner_email=owner_email or None,
        password_hash=password_hash or None,
        receipt_phone=receipt_phone,
    )


def call_with_timeout(func: Callable[..., T], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> T:
    """Run ``func`` and give up waiting after ``timeout`` seconds.

    A ``timeout`` of ``None`` or zero disables the bound. The abandoned call
    keeps running in its worker thread; the caller only stops waiting for it.

    Raises:
        StoreTimeout: If the call does not complete in time.
    """

    if not timeout or timeout <= 0:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shop-ledger-store")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        log.error("Store operation '%s' timed out after %ss", getattr(func, "__name__", func), timeout)
        raise StoreTimeout(
            f"Store operation timed out after {timeout} seconds") from exc
    finally:
        executor.shutdown(wait=False)


def load_store(data_file: Path, *, timeout: Optional[float] = None) -> StoreSnapshot:
    """Load the store workbook along with the fingerprint of its file.

    The file is read once; the workbook is parsed from those bytes so the
    fingerprint describes exactly the state that was loaded.

    Args:
        data_file (Path): Filesystem path to the store workbook.
        timeout (float | None): Upper bound in seconds for loading the file.

    Returns:
        StoreSnapshot: Loaded workbook and its content fingerprint.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If a collection sheet or one of its columns is missing.
        StoreTimeout: If loading takes longer than ``timeout``.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    snapshot = call_with_timeout(_read_snapshot, data_file, timeout=timeout)
    validate_workbook(snapshot.workbook)
    return snapshot


def open_workbook(data_file: Path, *, timeout: Optional[float] = None) -> Workbook:
    """Open the store workbook and check that both collections are present.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If a collection sheet or one of its columns is missing.
        StoreTimeout: If loading takes longer than ``timeout``.
    """

    return load_store(data_file, timeout=timeout).workbook


def validate_workbook(workbook: Workbook) -> None:
    """Ensure the ``products`` and ``sales`` sheets carry every expected column.

    Raises:
        KeyError: If a sheet or column is missing.
    """

    for sheet_name, columns in ((PRODUCTS_SHEET, PRODUCT_COLUMNS), (SALES_SHEET, SALE_COLUMNS)):
        if sheet_name not in workbook.sheetnames:
            raise KeyError(f"Workbook is missing the '{sheet_name}' sheet")
        header_map = _header_map(workbook[sheet_name])
        missing = [column for column in columns if column not in header_map]
        if missing:
            raise KeyError(
                f"Sheet '{sheet_name}' is missing columns: {', '.join(missing)}")


def save_workbook(workbook: Workbook, destination: Path, *, timeout: Optional[float] = None) -> str:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is serialized in memory first and the destination is only
    replaced once that finished within ``timeout``. A timed-out save leaves
    the previous file untouched. Parent directories are created on demand.

    Returns:
        str: Fingerprint of the bytes written.

    Raises:
        StoreTimeout: If serializing takes longer than ``timeout``.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    payload = call_with_timeout(_serialize_workbook, workbook, timeout=timeout)
    _replace_file(dest, payload)
    return _fingerprint(payload)


def file_fingerprint(data_file: Path) -> Optional[str]:
    """Return the content fingerprint of ``data_file``, ``None`` when it is absent."""

    try:
        return _fingerprint(Path(data_file).expanduser().resolve().read_bytes())
    except FileNotFoundError:
        return None


def lock_file_for(data_file: Path) -> Path:
    """Path of the lock file guarding writes to ``data_file``."""

    data_file = Path(data_file).expanduser().resolve()
    return data_file.with_name(data_file.name + LOCK_SUFFIX)


def acquire_store_lock(data_file: Path, *, timeout: Optional[float] = None) -> FileLock:
    """Take the inter-process write lock of ``data_file`` and return it held.

    One lock object is kept per file so nested acquisitions in the same
    thread re-enter instead of blocking. Release it with ``release()``.

    Raises:
        StoreTimeout: If another process holds the lock for longer than
            ``timeout``.
    """

    lock_path = lock_file_for(data_file)
    lock = _STORE_LOCKS.get(lock_path)
    if lock is None:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = _STORE_LOCKS[lock_path] = FileLock(str(lock_path))
    try:
        lock.acquire(timeout=timeout if timeout and timeout > 0 else -1)
    except LockTimeout as exc:
        log.error("Could not lock store '%s' within %ss", data_file, timeout)
        raise StoreTimeout(f"Store is locked by another writer: {data_file}") from exc
    return lock


def _read_snapshot(data_file: Path) -> StoreSnapshot:
    payload = data_file.read_bytes()
    workbook = openpyxl.load_workbook(io.BytesIO(payload))
    return StoreSnapshot(workbook=workbook, fingerprint=_fingerprint(payload))


def _serialize_workbook(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _replace_file(dest: Path, payload: bytes) -> None:
    with tempfile.NamedTemporaryFile("wb", delete=False, dir=str(dest.parent), suffix=".tmp") as tmp:
        tmp.write(payload)
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, dest)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _fingerprint(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def iter_products(workbook: Workbook) -> Iterable[ProductDocument]:
    """Yield every product document ordered by name.

    Names compare case-insensitively; ties keep sheet order.
    """

    sheet = workbook[PRODUCTS_SHEET]
    documents = [deserialize_product(row) for row in _iter_rows(sheet, PRODUCT_COLUMNS)]
    documents.sort(key=lambda document: document.name.casefold())
    yield from documents


def iter_sales(
    workbook: Workbook,
    *,
    since: Optional[datetime] = None,
    customer_type: Optional[str] = None,
    product_category: Optional[str] = None,
) -> Iterable[SaleDocument]:
    """Yield sale documents newest first, optionally filtered.

    Args:
        workbook (Workbook): Workbook containing the ``sales`` sheet.
        since (datetime | None): Keep only sales with ``soldAt >= since``.
            Naive datetimes are interpreted as UTC.
        customer_type (str | None): Keep only sales with this customer type.
        product_category (str | None): Keep only sales whose category
            snapshot matches, compared case-insensitively.

    Yields:
        SaleDocument: Matching sales ordered by ``soldAt`` descending. Sales
            without a timestamp sort last.
    """

    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    category = product_category.strip().lower() if product_category else None

    sheet = workbook[SALES_SHEET]
    documents = []
    for row in _iter_rows(sheet, SALE_COLUMNS):
        document = deserialize_sale(row)
        if since is not None and (document.sold_at is None or document.sold_at < since):
            continue
        if customer_type is not None and document.customer_type != customer_type:
            continue
        if category is not None and (document.product_category or "") != category:
            continue
        documents.append(document)

    documents.sort(
        key=lambda document: document.sold_at or datetime.min.replace(tzinfo=UTC),
        reverse=True,
    )
    yield from documents


def find_product(workbook: Workbook, product_id: str) -> Optional[ProductDocument]:
    """Return the product stored under ``product_id`` or ``None``."""

    sheet = workbook[PRODUCTS_SHEET]
    row_index = locate_row(workbook, PRODUCTS_SHEET, "id", product_id)
    if row_index is None:
        return None
    return deserialize_product(_read_row(sheet, row_index, PRODUCT_COLUMNS))


def find_sale(workbook: Workbook, sale_id: str) -> Optional[SaleDocument]:
    """Return the sale stored under ``sale_id`` or ``None``."""

    sheet = workbook[SALES_SHEET]
    row_index = locate_row(workbook, SALES_SHEET, "id", sale_id)
    if row_index is None:
        return None
    return deserialize_sale(_read_row(sheet, row_index, SALE_COLUMNS))


def insert_product(workbook: Workbook, record: ProductDocument) -> ProductDocument:
    """Append a product document, assigning an id when the record has none.

    The stored document starts at version 1 regardless of the version carried
    by ``record``.
    """

    product_id = record.product_id or new_document_id("P")
    stored = ProductDocument(
        product_id=product_id,
        name=record.name,
        category=record.category,
        price=record.price,
        stock=record.stock,
        is_hidden=record.is_hidden,
        created_at=record.created_at,
        last_stock_added_at=record.last_stock_added_at,
        last_stock_added_qty=record.last_stock_added_qty,
        stock_baseline=record.stock_baseline,
        version=1,
    )
    _append(workbook[PRODUCTS_SHEET], serialize_product(stored), PRODUCT_COLUMNS)
    return stored


def insert_sale(workbook: Workbook, record: SaleDocument) -> SaleDocument:
    """Append a sale document with a store-assigned id and ``soldAt``.

    Whatever ``sale_id`` and ``sold_at`` the record carries are replaced, the
    same way a document database ignores client-side values for
    server-generated fields.
    """

    stored = SaleDocument(
        sale_id=new_document_id("S"),
        product_id=record.product_id,
        product_name=record.product_name,
        product_category=record.product_category,
        qty=record.qty,
        price=record.price,
        buyer_name=record.buyer_name,
        customer_type=record.customer_type,
        sold_at=server_timestamp(),
    )
    _append(workbook[SALES_SHEET], serialize_sale(stored), SALE_COLUMNS)
    return stored


def update_product(
    workbook: Workbook,
    product_id: str,
    *,
    field_values: dict[str, Any],
    expected_version: Optional[int] = None,
) -> ProductDocument:
    """Update selected fields of a product and bump its version.

    When ``expected_version`` is given the write only happens if the stored
    document is still at that version; this is the compare-and-swap primitive
    the stock rules rely on.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier of the document to update.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values. ``id`` and ``version`` cannot be written directly.
        expected_version (int | None): Version the caller last observed.

    Returns:
        ProductDocument: The document as stored after the update.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
        VersionConflict: If ``expected_version`` no longer matches.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "id", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)
    for field in field_values:
        if field not in header_map or field in ("id", "version"):
            raise KeyError(f"Unknown product field: {field}")

    current = deserialize_product(_read_row(sheet, row_index, PRODUCT_COLUMNS))
    if expected_version is not None and current.version != expected_version:
        raise VersionConflict(product_id, expected_version, current.version)

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))
    sheet.cell(row=row_index, column=header_map["version"], value=current.version + 1)

    return deserialize_product(_read_row(sheet, row_index, PRODUCT_COLUMNS))


def update_sale(workbook: Workbook, sale_id: str, *, field_values: dict[str, Any]) -> SaleDocument:
    """Update selected fields of a sale document.

    Raises:
        KeyError: If the sale or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, SALES_SHEET, "id", sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")

    sheet = workbook[SALES_SHEET]
    header_map = _header_map(sheet)
    for field, value in field_values.items():
        if field not in header_map or field == "id":
            raise KeyError(f"Unknown sale field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))

    return deserialize_sale(_read_row(sheet, row_index, SALE_COLUMNS))


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove a product document.

    Raises:
        KeyError: If the product does not exist.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "id", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    workbook[PRODUCTS_SHEET].delete_rows(row_index)


def delete_sale(workbook: Workbook, sale_id: str) -> None:
    """Remove a sale document.

    Raises:
        KeyError: If the sale does not exist.
    """

    row_index = locate_row(workbook, SALES_SHEET, "id", sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")
    workbook[SALES_SHEET].delete_rows(row_index)


def delete_sales_for_product(workbook: Workbook, product_id: str) -> int:
    """Remove every sale referencing ``product_id`` and return how many."""

    sheet = workbook[SALES_SHEET]
    column = _header_map(sheet)["productId"]
    doomed = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[column - 1] == product_id
    ]
    # Delete bottom-up so earlier indices stay valid.
    for row_idx in reversed(doomed):
        sheet.delete_rows(row_idx)
    return len(doomed)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductDocument) -> dict[str, object]:
    """Map a product document onto its column names."""

    return {
        "id": record.product_id,
        "name": record.name,
        "category": record.category,
        "price": record.price,
        "stock": record.stock,
        "isHidden": record.is_hidden,
        "createdAt": record.created_at,
        "lastStockAddedAt": record.last_stock_added_at,
        "lastStockAddedQty": record.last_stock_added_qty,
        "stockBaseline": record.stock_baseline,
        "version": record.version,
    }


def serialize_sale(record: SaleDocument) -> dict[str, object]:
    """Map a sale document onto its column names."""

    return {
        "id": record.sale_id,
        "productId": record.product_id,
        "productName": record.product_name,
        "productCategory": record.product_category,
        "qty": record.qty,
        "price": record.price,
        "buyerName": record.buyer_name,
        "customerType": record.customer_type,
        "soldAt": record.sold_at,
    }


def deserialize_product(raw: dict[str, object]) -> ProductDocument:
    """Convert raw cell values into a strongly typed product document.

    Blank numeric cells read as zero; a blank ``stockBaseline`` (rows written
    before the column existed) falls back to the current stock.
    """

    stock = _to_int(raw.get("stock"))
    baseline_raw = raw.get("stockBaseline")
    return ProductDocument(
        product_id=str(raw.get("id")),
        name=str(raw.get("name") or ""),
        category=_to_optional_str(raw.get("category")),
        price=_to_int(raw.get("price")),
        stock=stock,
        is_hidden=bool(raw.get("isHidden")),
        created_at=_to_datetime(raw.get("createdAt")),
        last_stock_added_at=_to_datetime(raw.get("lastStockAddedAt")),
        last_stock_added_qty=(
            _to_int(raw.get("lastStockAddedQty"))
            if raw.get("lastStockAddedQty") is not None else None),
        stock_baseline=_to_int(baseline_raw) if baseline_raw is not None else stock,
        version=_to_int(raw.get("version")) or 1,
    )


def deserialize_sale(raw: dict[str, object]) -> SaleDocument:
    """Convert raw cell values into a strongly typed sale document.

    A blank ``price`` stays ``None`` so legacy rows without a price snapshot
    remain distinguishable from free items.
    """

    price_raw = raw.get("price")
    return SaleDocument(
        sale_id=str(raw.get("id")),
        product_id=str(raw.get("productId") or ""),
        product_name=str(raw.get("productName") or ""),
        product_category=_to_optional_str(raw.get("productCategory")),
        qty=_to_int(raw.get("qty")),
        price=_to_int(price_raw) if price_raw is not None else None,
        buyer_name=str(raw.get("buyerName") or ""),
        customer_type=_to_optional_str(raw.get("customerType")),
        sold_at=_to_datetime(raw.get("soldAt")),
    )


def _header_map(sheet: Worksheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _iter_rows(sheet: Worksheet, columns: Sequence[str]) -> Iterable[dict[str, object]]:
    header_map = _header_map(sheet)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield {column: raw[header_map[column] - 1] for column in columns}


def _read_row(sheet: Worksheet, row_index: int, columns: Sequence[str]) -> dict[str, object]:
    header_map = _header_map(sheet)
    return {
        column: sheet.cell(row=row_index, column=header_map[column]).value
        for column in columns
    }


def _append(sheet: Worksheet, values: dict[str, object], columns: Sequence[str]) -> None:
    header_map = _header_map(sheet)
    row = [None] * max(header_map.values())
    for column in columns:
        row[header_map[column] - 1] = _to_cell(values[column])
    sheet.append(row)


def _to_cell(value: Any) -> Any:
    # Excel cells cannot hold timezone-aware datetimes.
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _to_int(value: object) -> int:
    if value is None or value == "":
        return 0
    return int(value)  # type: ignore[arg-type]


def _to_optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _to_datetime(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment
