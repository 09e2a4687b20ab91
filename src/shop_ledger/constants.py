"""Enumerations and fixed thresholds shared across the shop ledger.

The data access layer, the business rules and the reporting helpers all key
off these values, so collection names and dashboard windows are spelled in a
single place.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook columns below correspond to.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Products at or below this stock level show up on the low-stock list.
LOW_STOCK_THRESHOLD = 10

# Number of entries returned by the top-seller ranking.
TOP_PRODUCTS_LIMIT = 5

UNCATEGORIZED = "uncategorized"


class CollectionName(str, Enum):
    """Enumerate the document collections (workbook sheets) of the store."""

    PRODUCTS = "products"
    SALES = "sales"


class CustomerType(str, Enum):
    """Enumerate the buyer categories recorded on a sale."""

    RETAIL = "retail"
    RESELLER = "reseller"


class TimeWindow(str, Enum):
    """Enumerate the dashboard windows and their bucket granularity."""

    TODAY = "today"
    THIS_WEEK = "this_week"
    LAST_7_DAYS = "last_7_days"
    THIS_MONTH = "this_month"
    THIS_YEAR = "this_year"
    ALL_TIME = "all_time"


class Metric(str, Enum):
    """Enumerate the values aggregation views can sum."""

    REVENUE = "revenue"
    QUANTITY = "qty"


PRODUCT_COLUMNS: tuple[str, ...] = (
    "id",
    "name",
    "category",
    "price",
    "stock",
    "isHidden",
    "createdAt",
    "lastStockAddedAt",
    "lastStockAddedQty",
    "stockBaseline",
    "version",
)

SALE_COLUMNS: tuple[str, ...] = (
    "id",
    "productId",
    "productName",
    "productCategory",
    "qty",
    "price",
    "buyerName",
    "customerType",
    "soldAt",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LOW_STOCK_THRESHOLD",
    "TOP_PRODUCTS_LIMIT",
    "UNCATEGORIZED",
    "CollectionName",
    "CustomerType",
    "TimeWindow",
    "Metric",
    "PRODUCT_COLUMNS",
    "SALE_COLUMNS",
]
