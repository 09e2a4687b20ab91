"""Business logic layer for the shop ledger.

This module owns the rules that keep the catalog and the sales ledger
consistent. It consumes the document store in :mod:`shop_ledger.data_manager`
for all I/O and guarantees that ``stock`` only ever changes through the
sanctioned paths: a manual catalog edit, :func:`record_sale` /
:func:`reverse_sale`, and :func:`add_stock`.

Stock changes are applied as version-guarded updates: the product is read,
the new value is computed and checked, and the write only lands if nobody
else touched the document in between. Conflicts are retried a bounded number
of times.

Writers in other processes are kept apart by the store lock. With autosave on
every mutation holds the lock from its first read to its save, and refuses to
run on a context whose data file has changed since it was loaded. With
autosave off the same check guards :func:`persist_context`. A refused write
surfaces as a retryable :class:`StaleStore`; reload with
:func:`refresh_context` and try again. :func:`audit_stock` and
:func:`repair_stock` remain the repair procedure for drift from any other
source.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import bcrypt
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CustomerType


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed input, before the store is touched."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a sale asks for more units than the product has."""

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or sale is unknown."""


class ProductNotFound(MissingReferenceError):
    """Raised when a product id does not resolve."""


class SaleNotFound(MissingReferenceError):
    """Raised when a sale id does not resolve."""


class AuthenticationError(BusinessRuleViolation):
    """Raised on failed sign-in or when a gated operation has no session."""


class RemoteFailure(Exception):
    """Raised when the document store fails underneath an operation."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class StaleStore(RemoteFailure):
    """Raised when the data file changed since the context loaded it."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


@dataclass
class StoreRevision:
    """What a context last knew about its data file.

    ``fingerprint`` is the content fingerprint last read or written; ``None``
    means the workbook never came from the file. ``stale`` is set once an
    autosave failed and the workbook holds changes that never reached disk.
    """

    fingerprint: Optional[str] = None
    stale: bool = False


@dataclass(frozen=True)
class Session:
    """The signed-in store owner."""

    email: str
    signed_in_at: datetime


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, live workbook and session passed to every operation."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    session: Optional[Session] = None
    revision: StoreRevision = field(default_factory=StoreRevision, compare=False)


@dataclass(frozen=True)
class BuyerInfo:
    """Buyer metadata copied onto a sale."""

    buyer_name: str = ""
    customer_type: Optional[CustomerType] = None


@dataclass(frozen=True)
class StockDrift:
    """A product whose recorded stock disagrees with the ledger."""

    product_id: str
    product_name: str
    recorded: int
    expected: int

    @property
    def delta(self) -> int:
        return self.recorded - self.expected


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context without a session; call :func:`sign_in` before
            using gated operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        RemoteFailure: If the workbook cannot be loaded in time.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    snapshot = _store_call(
        "open workbook",
        data_manager.load_store,
        settings.data_file,
        timeout=settings.operation_timeout,
    )
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=snapshot.workbook,
        revision=StoreRevision(fingerprint=snapshot.fingerprint),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook back to the configured data file.

    The save runs under the store lock and only if the file still holds what
    this context loaded or last wrote; otherwise another writer got there
    first and the context must be reloaded before writing.

    Raises:
        StaleStore: If the data file changed underneath the context.
        RemoteFailure: If the save fails or exceeds the operation timeout.
    """
    with _store_lock(context):
        _ensure_current(context)
        fingerprint = _store_call(
            "save workbook",
            data_manager.save_workbook,
            context.workbook,
            destination=context.settings.data_file,
            timeout=context.settings.operation_timeout,
        )
        context.revision.fingerprint = fingerprint
    log.info("Persisted store '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved changes but keeping the session."""
    snapshot = _store_call(
        "reload workbook",
        data_manager.load_store,
        context.settings.data_file,
        timeout=context.settings.operation_timeout,
    )
    log.info("Reloaded store '%s'", context.settings.data_file)
    return replace(
        context,
        workbook=snapshot.workbook,
        revision=StoreRevision(fingerprint=snapshot.fingerprint),
    )


def _checkpoint(context: RuntimeContext) -> None:
    if not context.settings.autosave:
        return
    try:
        persist_context(context)
    except RemoteFailure:
        context.revision.stale = True
        raise


@contextmanager
def _store_lock(context: RuntimeContext) -> Iterator[None]:
    lock = _store_call(
        "lock store",
        data_manager.acquire_store_lock,
        context.settings.data_file,
        timeout=context.settings.operation_timeout,
    )
    try:
        yield
    finally:
        lock.release()


def _ensure_current(context: RuntimeContext) -> None:
    """Refuse to write from a workbook the data file has moved past."""
    revision = context.revision
    on_disk = _store_call("read store fingerprint", data_manager.file_fingerprint, context.settings.data_file)
    if revision.stale or on_disk != revision.fingerprint:
        log.warning(
            "Store '%s' changed since this context loaded it; refusing to write",
            context.settings.data_file,
        )
        raise StaleStore(f"Store '{context.settings.data_file}' changed since it was loaded; reload and retry")


@contextmanager
def _store_transaction(context: RuntimeContext) -> Iterator[None]:
    """Hold the store lock across one read-check-write-save cycle.

    Without autosave the workbook is only written by :func:`persist_context`,
    which performs the same check, so nothing is locked here.
    """
    if not context.settings.autosave:
        yield
        return
    with _store_lock(context):
        _ensure_current(context)
        yield


def _store_call(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Invoke a store function, surfacing I/O failures as :class:`RemoteFailure`."""
    try:
        return func(*args, **kwargs)
    except data_manager.StoreTimeout as exc:
        log.error("Store call '%s' timed out: %s", description, exc)
        raise RemoteFailure(f"Timed out during {description}", retryable=True) from exc
    except (data_manager.StoreError, OSError) as exc:
        if isinstance(exc, FileNotFoundError):
            raise
        log.error("Store call '%s' failed: %s", description, exc)
        raise RemoteFailure(f"Store failure during {description}: {exc}") from exc


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    """Hash ``password`` with bcrypt for the ``[Auth] PasswordHash`` entry."""
    if not password:
        raise ValidationError("Password must not be empty")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def sign_in(context: RuntimeContext, email: str, password: str) -> RuntimeContext:
    """Verify the owner's credentials and return a context carrying a session.

    Raises:
        AuthenticationError: If no owner is configured or the credentials do
            not match.
    """
    owner_email = context.settings.owner_email
    password_hash = context.settings.password_hash
    if not owner_email or not password_hash:
        log.error("Sign-in attempted but no owner account is configured")
        raise AuthenticationError("No owner account is configured")

    if (email or "").strip().casefold() != owner_email.strip().casefold():
        log.warning("Sign-in rejected for '%s'", email)
        raise AuthenticationError("Invalid email or password")
    try:
        matches = bcrypt.checkpw((password or "").encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError as exc:
        log.error("Configured password hash is malformed")
        raise AuthenticationError("Invalid email or password") from exc
    if not matches:
        log.warning("Sign-in rejected for '%s'", email)
        raise AuthenticationError("Invalid email or password")

    session = Session(email=owner_email, signed_in_at=data_manager.server_timestamp())
    log.info("Owner '%s' signed in", owner_email)
    return replace(context, session=session)


def sign_out(context: RuntimeContext) -> RuntimeContext:
    """Return a copy of ``context`` without a session."""
    if context.session is not None:
        log.info("Owner '%s' signed out", context.session.email)
    return replace(context, session=None)


def require_session(context: RuntimeContext) -> Session:
    """Return the active session or raise :class:`AuthenticationError`."""
    if context.session is None:
        log.warning("Rejected gated operation without a session")
        raise AuthenticationError("Sign in required")
    return context.session


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a quantity is a whole number greater than zero."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")
    return quantity


def require_nonnegative_whole(value: Any, field_name: str) -> int:
    """Validate that ``value`` is a whole number that is zero or more."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.error("%s validation failed: %r", field_name, value)
        raise ValidationError(f"{field_name} must be a whole number of zero or more")
    return value


def require_name(name: Any) -> str:
    """Validate and trim a product name."""
    if not isinstance(name, str) or not name.strip():
        log.error("Name validation failed: %r", name)
        raise ValidationError("Name must not be empty")
    return name.strip()


def normalize_category(category: Optional[str]) -> Optional[str]:
    """Lower-case a category for consistent grouping; blank becomes ``None``."""
    if category is None:
        return None
    cleaned = category.strip().lower()
    return cleaned or None


def display_category(category: Optional[str]) -> str:
    """Re-capitalize a stored category for display."""
    if not category:
        return "-"
    return category[:1].upper() + category[1:]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductDocument:
    """Resolve a product by id.

    Raises:
        ProductNotFound: If the id does not resolve.
    """
    product = data_manager.find_product(context.workbook, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFound(f"Unknown product id: {product_id}")
    return product


def list_products(context: RuntimeContext, *, include_hidden: bool = False) -> List[data_manager.ProductDocument]:
    """Return products ordered by name, hiding hidden ones unless asked."""
    products = list(data_manager.iter_products(context.workbook))
    if include_hidden:
        return products
    return [product for product in products if not product.is_hidden]


def public_price_list(
    context: RuntimeContext,
    *,
    keyword: Optional[str] = None,
    sort: Optional[str] = None,
) -> List[data_manager.ProductDocument]:
    """Return the public, read-only price list. No session is required.

    Args:
        context (RuntimeContext): Runtime context; the session is ignored.
        keyword (str | None): Case-insensitive substring to match in names.
        sort (str | None): ``"asc"`` or ``"desc"`` to order by price;
            ``None`` keeps name order.

    Raises:
        ValidationError: If ``sort`` is not a supported value.
    """
    if sort not in (None, "asc", "desc"):
        raise ValidationError(f"Unsupported sort order: {sort}")

    products = list_products(context)
    if keyword:
        needle = keyword.casefold()
        products = [product for product in products if needle in product.name.casefold()]
    if sort is not None:
        products.sort(key=lambda product: product.price, reverse=(sort == "desc"))
    return products


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    price: int,
    stock: int,
    category: Optional[str] = None,
    is_hidden: bool = False,
) -> data_manager.ProductDocument:
    """Create a product; its opening stock becomes the stock baseline.

    Raises:
        AuthenticationError: Without a session.
        ValidationError: For an empty name or negative/non-integer numbers.
    """
    require_session(context)
    clean_name = require_name(name)
    require_nonnegative_whole(price, "Price")
    require_nonnegative_whole(stock, "Stock")

    record = data_manager.ProductDocument(
        product_id="",
        name=clean_name,
        category=normalize_category(category),
        price=price,
        stock=stock,
        is_hidden=bool(is_hidden),
        created_at=data_manager.server_timestamp(),
        last_stock_added_at=None,
        last_stock_added_qty=None,
        stock_baseline=stock,
        version=1,
    )
    with _store_transaction(context):
        product = data_manager.insert_product(context.workbook, record)
        _checkpoint(context)
    log.info("Added product '%s' (%s) with stock %d at price %d", product.product_id, clean_name, stock, price)
    return product


def edit_product(
    context: RuntimeContext,
    product_id: str,
    *,
    name: Optional[str] = None,
    price: Optional[int] = None,
    stock: Optional[int] = None,
    category: Optional[str] = None,
) -> data_manager.ProductDocument:
    """Apply a manual edit to catalog fields.

    A manual stock change is a trusted correction: the baseline is re-anchored
    so the edited value becomes consistent with the live ledger.

    Raises:
        AuthenticationError: Without a session.
        ProductNotFound: If the product does not exist.
        ValidationError: For malformed field values.
    """
    require_session(context)
    field_values: Dict[str, Any] = {}
    if name is not None:
        field_values["name"] = require_name(name)
    if price is not None:
        field_values["price"] = require_nonnegative_whole(price, "Price")
    if category is not None:
        field_values["category"] = normalize_category(category)
    if stock is not None:
        require_nonnegative_whole(stock, "Stock")
    elif not field_values:
        raise ValidationError("Nothing to update")

    def build(product: data_manager.ProductDocument) -> Dict[str, Any]:
        values = dict(field_values)
        if stock is not None:
            values["stock"] = stock
            values["stockBaseline"] = stock + _live_quantity(context, product.product_id)
        return values

    with _store_transaction(context):
        product = _update_with_retry(context, product_id, build)
        _checkpoint(context)
    edited = sorted(field_values) + (["stock"] if stock is not None else [])
    log.info("Edited product '%s' fields: %s", product_id, ", ".join(edited))
    return product


def set_product_visibility(context: RuntimeContext, product_id: str, *, hidden: bool) -> data_manager.ProductDocument:
    """Hide or show a product on the price list and the sale picker."""
    require_session(context)
    with _store_transaction(context):
        product = _update_with_retry(context, product_id, lambda _: {"isHidden": bool(hidden)})
        _checkpoint(context)
    log.info("Product '%s' is now %s", product_id, "hidden" if hidden else "visible")
    return product


def toggle_product_visibility(context: RuntimeContext, product_id: str) -> data_manager.ProductDocument:
    """Flip the ``isHidden`` flag of a product."""
    with _store_transaction(context):
        current = get_product(context, product_id)
        return set_product_visibility(context, product_id, hidden=not current.is_hidden)


def add_stock(context: RuntimeContext, product_id: str, qty: int) -> data_manager.ProductDocument:
    """Record a manual stock addition.

    ``lastStockAddedQty`` holds this call's quantity only; it is not a running
    total.

    Raises:
        AuthenticationError: Without a session.
        ValidationError: If ``qty`` is not a positive whole number.
        ProductNotFound: If the product does not exist.
    """
    require_session(context)
    require_positive_quantity(qty)

    def build(product: data_manager.ProductDocument) -> Dict[str, Any]:
        return {
            "stock": product.stock + qty,
            "stockBaseline": product.stock_baseline + qty,
            "lastStockAddedAt": data_manager.server_timestamp(),
            "lastStockAddedQty": qty,
        }

    with _store_transaction(context):
        product = _update_with_retry(context, product_id, build)
        _checkpoint(context)
    log.info("Added %d units to product '%s' (stock now %d)", qty, product_id, product.stock)
    return product


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Delete a product and keep its sales.

    Sales carry snapshots of the product's name, category and price, so the
    ledger and every report stay meaningful after the product is gone.
    """
    require_session(context)
    with _store_transaction(context):
        get_product(context, product_id)
        data_manager.delete_product(context.workbook, product_id)
        _checkpoint(context)
    log.info("Deleted product '%s'; its sales were kept", product_id)


def purge_product(context: RuntimeContext, product_id: str) -> int:
    """Delete a product together with every sale that references it.

    This is irreversible: no stock is restored and the sale history of the
    product is lost.

    Returns:
        int: Number of sales removed.
    """
    session = require_session(context)
    with _store_transaction(context):
        product = get_product(context, product_id)
        removed = data_manager.delete_sales_for_product(context.workbook, product_id)
        data_manager.delete_product(context.workbook, product_id)
        _checkpoint(context)
    log.warning(
        "PURGE by '%s': deleted product '%s' (%s) and %d referencing sales",
        session.email,
        product_id,
        product.name,
        removed,
    )
    return removed


# ---------------------------------------------------------------------------
# Stock-consistency rule
# ---------------------------------------------------------------------------


def _update_with_retry(
    context: RuntimeContext,
    product_id: str,
    build_update: Callable[[data_manager.ProductDocument], Dict[str, Any]],
) -> data_manager.ProductDocument:
    """Read-check-write a product as a version-guarded update.

    ``build_update`` receives the freshly read product and returns the field
    values to write; it may raise to abort (for example
    :class:`InsufficientStock`). A concurrent write between the read and the
    update triggers a re-read, up to ``settings.max_retries`` attempts.

    Raises:
        ProductNotFound: If the product does not exist.
        RemoteFailure: If every attempt lost the race.
    """
    attempts = context.settings.max_retries
    last_conflict: Optional[data_manager.VersionConflict] = None
    for attempt in range(1, attempts + 1):
        product = get_product(context, product_id)
        field_values = build_update(product)
        try:
            return data_manager.update_product(
                context.workbook,
                product_id,
                field_values=field_values,
                expected_version=product.version,
            )
        except data_manager.VersionConflict as exc:
            last_conflict = exc
            log.warning(
                "Concurrent update on product '%s' (attempt %d/%d): %s",
                product_id,
                attempt,
                attempts,
                exc,
            )
    raise RemoteFailure(
        f"Product '{product_id}' kept changing; gave up after {attempts} attempts",
        retryable=True,
    ) from last_conflict


def _live_quantity(context: RuntimeContext, product_id: str) -> int:
    return sum(
        sale.qty
        for sale in data_manager.iter_sales(context.workbook)
        if sale.product_id == product_id
    )


def record_sale(
    context: RuntimeContext,
    product_id: str,
    qty: int,
    buyer: Optional[BuyerInfo] = None,
) -> data_manager.SaleDocument:
    """Record a sale and take its quantity out of stock.

    The stock check and the decrement happen in one version-guarded update,
    and with autosave on the whole cycle runs under the store lock on a
    workbook that matches the file, so two sellers racing for the last units
    cannot both succeed. The sale is then appended with a snapshot of the
    product's name, category and price; ``soldAt`` comes from the store
    clock. If appending the sale fails the decrement is compensated; if the
    compensation fails too the drift is logged for :func:`repair_stock`.

    Args:
        context (RuntimeContext): Signed-in runtime context.
        product_id (str): Product being sold; must exist and be visible.
        qty (int): Units sold, a positive whole number.
        buyer (BuyerInfo | None): Buyer metadata to copy onto the sale.

    Returns:
        data_manager.SaleDocument: The stored sale, including its id.

    Raises:
        AuthenticationError: Without a session.
        ValidationError: If ``qty`` is not a positive whole number.
        ProductNotFound: If the product does not exist.
        BusinessRuleViolation: If the product is hidden.
        InsufficientStock: If ``qty`` exceeds the current stock; nothing is
            written.
        StaleStore: If another writer changed the data file since this
            context loaded it; nothing is written.
        RemoteFailure: If the store fails or concurrent writers win every
            attempt.
    """
    require_session(context)
    require_positive_quantity(qty)
    buyer = buyer or BuyerInfo()

    def build(product: data_manager.ProductDocument) -> Dict[str, Any]:
        if product.is_hidden:
            log.warning("Attempted sale on hidden product '%s'", product_id)
            raise BusinessRuleViolation(f"Product '{product_id}' is hidden")
        if qty > product.stock:
            log.warning(
                "Rejected sale of %d units of '%s': only %d in stock",
                qty,
                product_id,
                product.stock,
            )
            raise InsufficientStock(product_id, qty, product.stock)
        return {"stock": product.stock - qty}

    with _store_transaction(context):
        product = _update_with_retry(context, product_id, build)

        snapshot = data_manager.SaleDocument(
            sale_id="",
            product_id=product.product_id,
            product_name=product.name,
            product_category=product.category,
            qty=qty,
            price=product.price,
            buyer_name=(buyer.buyer_name or "").strip(),
            customer_type=buyer.customer_type.value if buyer.customer_type else None,
            sold_at=None,
        )
        try:
            sale = data_manager.insert_sale(context.workbook, snapshot)
        except (data_manager.StoreError, KeyError, OSError) as exc:
            log.error("Appending sale for product '%s' failed: %s", product_id, exc)
            _compensate_decrement(context, product_id, qty)
            raise RemoteFailure(f"Could not record sale for product '{product_id}': {exc}") from exc

        _checkpoint(context)
    log.info(
        "Recorded sale '%s': %d x '%s' at %d (stock %d -> %d)",
        sale.sale_id,
        qty,
        product.name,
        product.price,
        product.stock + qty,
        product.stock,
    )
    return sale


def _compensate_decrement(context: RuntimeContext, product_id: str, qty: int) -> None:
    try:
        _update_with_retry(context, product_id, lambda product: {"stock": product.stock + qty})
    except (MissingReferenceError, RemoteFailure, data_manager.StoreError) as exc:
        log.error(
            "STOCK DRIFT: could not give back %d units to product '%s' after a failed sale (%s); "
            "run repair_stock",
            qty,
            product_id,
            exc,
        )
    else:
        log.warning("Rolled back stock decrement of %d units on product '%s'", qty, product_id)


def reverse_sale(context: RuntimeContext, sale_id: str) -> None:
    """Delete a sale and give its quantity back to the product.

    The stock increment is written (and checkpointed) before the sale is
    deleted, so an interruption leaves the sale in place as a trace rather
    than an unexplained stock bump. When the product no longer exists there is
    nothing to credit and only the sale is removed.

    Raises:
        AuthenticationError: Without a session.
        SaleNotFound: If the sale does not exist.
        RemoteFailure: If the store fails.
    """
    require_session(context)
    with _store_transaction(context):
        sale = get_sale(context, sale_id)

        if data_manager.find_product(context.workbook, sale.product_id) is not None:
            product = _update_with_retry(
                context,
                sale.product_id,
                lambda current: {"stock": current.stock + sale.qty},
            )
            _checkpoint(context)
            log.info(
                "Restored %d units to product '%s' (stock now %d)",
                sale.qty,
                sale.product_id,
                product.stock,
            )
        else:
            log.info("Product '%s' of sale '%s' no longer exists; nothing to restore", sale.product_id, sale_id)

        data_manager.delete_sale(context.workbook, sale_id)
        _checkpoint(context)
    log.info("Reversed sale '%s'", sale_id)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleDocument:
    """Resolve a sale by id.

    Raises:
        SaleNotFound: If the id does not resolve.
    """
    sale = data_manager.find_sale(context.workbook, sale_id)
    if sale is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise SaleNotFound(f"Unknown sale id: {sale_id}")
    return sale


def list_sales(
    context: RuntimeContext,
    *,
    since: Optional[datetime] = None,
    customer_type: Optional[CustomerType] = None,
    product_category: Optional[str] = None,
) -> List[data_manager.SaleDocument]:
    """Return sales newest first, optionally filtered by window start, customer
    type and category."""
    require_session(context)
    return list(
        data_manager.iter_sales(
            context.workbook,
            since=since,
            customer_type=customer_type.value if customer_type else None,
            product_category=product_category,
        )
    )


def update_sale_details(
    context: RuntimeContext,
    sale_id: str,
    *,
    buyer_name: Optional[str] = None,
    customer_type: Optional[CustomerType] = None,
    product_category: Optional[str] = None,
) -> data_manager.SaleDocument:
    """Correct the display fields of a sale.

    ``qty`` and ``productId`` are immutable; reverse the sale and record a new
    one to change them.
    """
    require_session(context)
    field_values: Dict[str, Any] = {}
    if buyer_name is not None:
        field_values["buyerName"] = buyer_name.strip()
    if customer_type is not None:
        field_values["customerType"] = customer_type.value
    if product_category is not None:
        field_values["productCategory"] = normalize_category(product_category)
    if not field_values:
        raise ValidationError("Nothing to update")

    with _store_transaction(context):
        get_sale(context, sale_id)
        sale = data_manager.update_sale(context.workbook, sale_id, field_values=field_values)
        _checkpoint(context)
    log.info("Updated sale '%s' fields: %s", sale_id, ", ".join(sorted(field_values)))
    return sale


def backfill_sale_prices(context: RuntimeContext) -> int:
    """Fill the price snapshot of legacy sales from their product's price.

    Sales whose product was deleted cannot be backfilled and are left alone.

    Returns:
        int: Number of sales updated.
    """
    require_session(context)
    updated = 0
    with _store_transaction(context):
        for sale in data_manager.iter_sales(context.workbook):
            if sale.price is not None:
                continue
            product = data_manager.find_product(context.workbook, sale.product_id)
            if product is None:
                log.warning("Cannot backfill price of sale '%s': product '%s' is gone", sale.sale_id, sale.product_id)
                continue
            data_manager.update_sale(context.workbook, sale.sale_id, field_values={"price": product.price})
            updated += 1
        if updated:
            _checkpoint(context)
    log.info("Backfilled price snapshots on %d sales", updated)
    return updated


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def audit_stock(context: RuntimeContext) -> List[StockDrift]:
    """Compare every product's stock with its baseline minus live sales.

    Returns:
        list[StockDrift]: One entry per drifting product, in name order.
    """
    require_session(context)
    live: Dict[str, int] = defaultdict(int)
    for sale in data_manager.iter_sales(context.workbook):
        live[sale.product_id] += sale.qty

    drifts = []
    for product in data_manager.iter_products(context.workbook):
        expected = product.stock_baseline - live[product.product_id]
        if expected != product.stock:
            drifts.append(
                StockDrift(
                    product_id=product.product_id,
                    product_name=product.name,
                    recorded=product.stock,
                    expected=expected,
                )
            )
    if drifts:
        log.warning("Stock audit found %d drifting products", len(drifts))
    return drifts


def repair_stock(context: RuntimeContext, product_ids: Optional[Sequence[str]] = None) -> List[StockDrift]:
    """Rewrite drifting stock values to what the ledger says they should be.

    A negative expectation is clamped to zero and the baseline re-anchored to
    match.

    Args:
        context (RuntimeContext): Signed-in runtime context.
        product_ids (Sequence[str] | None): Restrict the repair to these
            products; ``None`` repairs everything :func:`audit_stock` reports.

    Returns:
        list[StockDrift]: The drifts that were repaired.
    """
    wanted = set(product_ids) if product_ids is not None else None
    repaired = []
    with _store_transaction(context):
        for drift in audit_stock(context):
            if wanted is not None and drift.product_id not in wanted:
                continue
            target = max(drift.expected, 0)
            live = _live_quantity(context, drift.product_id)
            _update_with_retry(
                context,
                drift.product_id,
                lambda _: {"stock": target, "stockBaseline": target + live},
            )
            log.warning(
                "Repaired stock of '%s' from %d to %d",
                drift.product_id,
                drift.recorded,
                target,
            )
            repaired.append(drift)
        if repaired:
            _checkpoint(context)
    return repaired
