"""Receipt text and the messaging deep link sent after a sale."""

from __future__ import annotations

import re
from datetime import datetime, tzinfo
from typing import Optional
from urllib.parse import quote

from .data_manager import SaleDocument


MESSAGE_LINK_BASE = "https://wa.me/"
RECEIPT_RULE = "-" * 35


def format_rupiah(amount: int) -> str:
    """Format a whole-rupiah amount, e.g. ``50000`` -> ``"Rp 50.000"``."""
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(int(amount)):,}".replace(",", ".")
    return f"{sign}Rp {grouped}"


def format_timestamp(moment: Optional[datetime], tz: Optional[tzinfo] = None) -> str:
    """Render ``moment`` as ``17 Oct 2026 14:05``; ``-`` when unknown."""
    if moment is None:
        return "-"
    if tz is not None:
        moment = moment.astimezone(tz)
    return moment.strftime("%d %b %Y %H:%M")


def format_receipt(sale: SaleDocument, store_name: str, *, tz: Optional[tzinfo] = None) -> str:
    """Build the plain-text receipt for a completed sale.

    The total uses the sale's price snapshot; a legacy sale without one shows
    a zero total rather than today's price.
    """
    total = sale.qty * (sale.price or 0)
    lines = [
        f"*Purchase receipt - {store_name}*",
        RECEIPT_RULE,
        f"Product: *{sale.product_name}*",
        f"Quantity: *{sale.qty}*",
        f"Total: *{format_rupiah(total)}*",
        f"Buyer: {sale.buyer_name or '-'}",
        f"Date: {format_timestamp(sale.sold_at, tz)}",
        RECEIPT_RULE,
        "Thank you for shopping with us!",
    ]
    return "\n".join(lines)


def build_message_link(phone_number: str, text: str) -> str:
    """Return a ``wa.me`` deep link that opens a chat pre-filled with ``text``.

    Raises:
        ValueError: If ``phone_number`` contains no digits.
    """
    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        raise ValueError("A receipt phone number is required")
    return f"{MESSAGE_LINK_BASE}{digits}?text={quote(text, safe='')}"
