"""Read-side aggregation views over products and sales.

Everything here is a pure function of the lists it receives: no store access,
no caching. Callers fetch the current snapshot (see
:func:`shop_ledger.core_logic.list_products` and
:func:`shop_ledger.core_logic.list_sales`) and recompute whenever either side
changes.
"""

from __future__ import annotations

import calendar
from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import (
    LOW_STOCK_THRESHOLD,
    TOP_PRODUCTS_LIMIT,
    UNCATEGORIZED,
    Metric,
    TimeWindow,
)
from .data_manager import ProductDocument, SaleDocument


Bucket = Tuple[str, int]


@dataclass(frozen=True)
class DashboardSummary:
    """Everything the dashboard shows for one time window."""

    window: TimeWindow
    product_count: int
    total_stock: int
    total_revenue: int
    total_quantity: int
    buckets: List[Bucket]
    top_products: List[Bucket]
    low_stock: List[ProductDocument]
    categories: List[Bucket]


def index_products(products: Iterable[ProductDocument]) -> Dict[str, ProductDocument]:
    return {product.product_id: product for product in products}


def sale_unit_price(sale: SaleDocument, products_by_id: Mapping[str, ProductDocument]) -> int:
    """Price used for revenue: the sale's snapshot, else the product's current
    price, else zero."""
    if sale.price is not None:
        return sale.price
    product = products_by_id.get(sale.product_id)
    return product.price if product is not None else 0


def sale_revenue(sale: SaleDocument, products_by_id: Mapping[str, ProductDocument]) -> int:
    return sale.qty * sale_unit_price(sale, products_by_id)


def sale_value(sale: SaleDocument, products_by_id: Mapping[str, ProductDocument], metric: Metric) -> int:
    if metric is Metric.QUANTITY:
        return sale.qty
    return sale_revenue(sale, products_by_id)


def total_revenue(sales: Iterable[SaleDocument], products: Iterable[ProductDocument]) -> int:
    """Sum of ``qty * unit price`` over ``sales``."""
    lookup = index_products(products)
    return sum(sale_revenue(sale, lookup) for sale in sales)


def total_stock(products: Iterable[ProductDocument]) -> int:
    return sum(product.stock for product in products)


def low_stock(products: Iterable[ProductDocument], threshold: int = LOW_STOCK_THRESHOLD) -> List[ProductDocument]:
    """Products whose stock is at or below ``threshold``, in input order."""
    return [product for product in products if product.stock <= threshold]


def window_start(window: TimeWindow, now: datetime) -> Optional[datetime]:
    """Return the first instant of ``window`` relative to ``now``.

    Weeks start on Monday. ``ALL_TIME`` has no start and returns ``None``.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window is TimeWindow.TODAY:
        return midnight
    if window is TimeWindow.THIS_WEEK:
        return midnight - timedelta(days=midnight.weekday())
    if window is TimeWindow.LAST_7_DAYS:
        return midnight - timedelta(days=6)
    if window is TimeWindow.THIS_MONTH:
        return midnight.replace(day=1)
    if window is TimeWindow.THIS_YEAR:
        return midnight.replace(month=1, day=1)
    return None


def filter_window(sales: Iterable[SaleDocument], window: TimeWindow, now: datetime) -> List[SaleDocument]:
    """Keep the sales sold at or after the start of ``window``."""
    now = _aware(now)
    start = window_start(window, now)
    if start is None:
        return list(sales)
    return [sale for sale in sales if sale.sold_at is not None and sale.sold_at >= start]


def bucket_totals(
    sales: Iterable[SaleDocument],
    products: Iterable[ProductDocument],
    window: TimeWindow,
    *,
    now: Optional[datetime] = None,
    metric: Metric = Metric.REVENUE,
) -> List[Bucket]:
    """Sum ``metric`` per calendar bucket of ``window``.

    Buckets are hours for ``TODAY``, weekdays for ``THIS_WEEK``, days for
    ``LAST_7_DAYS`` and ``THIS_MONTH``, months for ``THIS_YEAR`` and the
    months that have sales for ``ALL_TIME``. Every bucket of a bounded window
    is present, zero or not, and buckets come out in calendar order. Sale
    timestamps are read in ``now``'s timezone (UTC when ``now`` is naive).

    Returns:
        list[tuple[str, int]]: ``(label, total)`` pairs.
    """
    now = _aware(now or datetime.now(UTC))
    lookup = index_products(products)
    labels, key_of = _bucket_layout(window, now)

    totals: Dict[Hashable, int] = OrderedDict((key, 0) for key in labels)
    for sale in sales:
        if sale.sold_at is None:
            continue
        key = key_of(sale.sold_at.astimezone(now.tzinfo))
        if key is None:
            continue
        if key not in totals:
            if window is not TimeWindow.ALL_TIME:
                continue
            totals[key] = 0
            labels[key] = "%04d-%02d" % key  # type: ignore[str-format]
        totals[key] += sale_value(sale, lookup, metric)

    keys = sorted(totals) if window is TimeWindow.ALL_TIME else list(totals)
    return [(labels[key], totals[key]) for key in keys]


def _bucket_layout(
    window: TimeWindow, now: datetime
) -> Tuple[Dict[Hashable, str], Callable[[datetime], Optional[Hashable]]]:
    today = now.date()
    if window is TimeWindow.TODAY:
        labels: Dict[Hashable, str] = {hour: f"{hour:02d}:00" for hour in range(24)}
        return labels, lambda moment: moment.hour if moment.date() == today else None

    if window is TimeWindow.THIS_WEEK:
        monday = today - timedelta(days=today.weekday())
        labels = {day: calendar.day_abbr[day] for day in range(7)}
        return labels, lambda moment: (
            moment.weekday() if monday <= moment.date() < monday + timedelta(days=7) else None
        )

    if window is TimeWindow.LAST_7_DAYS:
        days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
        labels = {day: day.strftime("%d %b") for day in days}
        return labels, lambda moment: moment.date()

    if window is TimeWindow.THIS_MONTH:
        days_in_month = calendar.monthrange(today.year, today.month)[1]
        labels = {day: str(day) for day in range(1, days_in_month + 1)}
        return labels, lambda moment: (
            moment.day if (moment.year, moment.month) == (today.year, today.month) else None
        )

    if window is TimeWindow.THIS_YEAR:
        labels = {month: calendar.month_abbr[month] for month in range(1, 13)}
        return labels, lambda moment: moment.month if moment.year == today.year else None

    return {}, lambda moment: (moment.year, moment.month)


def top_products(
    sales: Iterable[SaleDocument],
    products: Iterable[ProductDocument],
    *,
    metric: Metric = Metric.QUANTITY,
    limit: int = TOP_PRODUCTS_LIMIT,
) -> List[Bucket]:
    """Rank product names by total ``metric``, highest first.

    Grouping uses the sale's name snapshot, so renamed or deleted products
    still count. Equal totals keep the order in which the names first appear
    in ``sales``.
    """
    lookup = index_products(products)
    totals: Dict[str, int] = {}
    for sale in sales:
        totals[sale.product_name] = totals.get(sale.product_name, 0) + sale_value(sale, lookup, metric)
    # sorted() is stable, so ties stay in first-seen order
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return ranked[:limit]


def category_breakdown(
    sales: Iterable[SaleDocument],
    products: Iterable[ProductDocument],
    *,
    metric: Metric = Metric.REVENUE,
) -> List[Bucket]:
    """Total ``metric`` per category snapshot, highest first."""
    return _group(sales, products, lambda sale: sale.product_category or UNCATEGORIZED, metric)


def customer_type_breakdown(
    sales: Iterable[SaleDocument],
    products: Iterable[ProductDocument],
    *,
    metric: Metric = Metric.REVENUE,
) -> List[Bucket]:
    """Total ``metric`` per customer type, highest first."""
    return _group(sales, products, lambda sale: sale.customer_type or "-", metric)


def _group(
    sales: Iterable[SaleDocument],
    products: Iterable[ProductDocument],
    key: Callable[[SaleDocument], str],
    metric: Metric,
) -> List[Bucket]:
    lookup = index_products(products)
    totals: Dict[str, int] = {}
    for sale in sales:
        name = key(sale)
        totals[name] = totals.get(name, 0) + sale_value(sale, lookup, metric)
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def dashboard_summary(
    products: Sequence[ProductDocument],
    sales: Sequence[SaleDocument],
    window: TimeWindow = TimeWindow.THIS_YEAR,
    *,
    now: Optional[datetime] = None,
    metric: Metric = Metric.REVENUE,
) -> DashboardSummary:
    """Compose every dashboard figure for ``window``.

    Catalog figures (product count, total stock, low stock) always describe
    the whole catalog; sales figures only cover the window.
    """
    now = _aware(now or datetime.now(UTC))
    in_window = filter_window(sales, window, now)
    return DashboardSummary(
        window=window,
        product_count=len(products),
        total_stock=total_stock(products),
        total_revenue=total_revenue(in_window, products),
        total_quantity=sum(sale.qty for sale in in_window),
        buckets=bucket_totals(in_window, products, window, now=now, metric=metric),
        top_products=top_products(in_window, products, metric=metric),
        low_stock=low_stock(products),
        categories=category_breakdown(in_window, products, metric=metric),
    )


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment
