"""Square order → normalized sale mapping."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

CENTS = Decimal("0.01")
DEFAULT_PAYMENT_METHOD = "card"


@dataclass
class NormalizedSaleItem:
    item_name: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    pos_item_id: Optional[str] = None


@dataclass
class NormalizedSale:
    pos_transaction_id: str
    location_id: Optional[str]
    sale_date: date
    gross_revenue: Decimal
    discounts: Decimal
    net_revenue: Decimal
    vat_amount: Decimal
    tip_amount: Decimal
    total_amount: Decimal
    payment_method: str
    currency: Optional[str] = None
    status: str = "completed"
    items: list[NormalizedSaleItem] = field(default_factory=list)


def minor_units(money: Any, required: bool = False) -> int:
    """Read the integer ``amount`` of a Square Money object.

    Missing optional amounts are 0. Anything that is not an integer raises
    ValueError so the order is counted as failed instead of imported wrong.
    """
    if money is None:
        if required:
            raise ValueError("required money field is missing")
        return 0
    if not isinstance(money, dict):
        raise ValueError(f"money field is not an object: {money!r}")
    amount = money.get("amount")
    if amount is None:
        if required:
            raise ValueError("required money amount is missing")
        return 0
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"money amount is not an integer: {amount!r}")
    return amount


def to_decimal(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(CENTS)


def payment_method_for(tenders: Optional[list]) -> str:
    """One CASH tender is cash, one other tender is card, several are mixed."""
    tenders = tenders or []
    if len(tenders) == 0:
        return DEFAULT_PAYMENT_METHOD
    if len(tenders) > 1:
        return "mixed"
    tender_type = (tenders[0] or {}).get("type", "")
    return "cash" if str(tender_type).upper() == "CASH" else "card"


def sale_date_for(order: dict) -> date:
    """UTC calendar date the order closed (falls back to creation time)."""
    timestamp = order.get("closed_at") or order.get("created_at")
    if not timestamp:
        raise ValueError("order has neither closed_at nor created_at")
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def _parse_quantity(raw: Any) -> Decimal:
    try:
        quantity = Decimal(str(raw if raw is not None else "1"))
    except InvalidOperation:
        raise ValueError(f"line item quantity is not numeric: {raw!r}")
    if not quantity.is_finite():
        raise ValueError(f"line item quantity is not finite: {raw!r}")
    return quantity


def map_line_item(line: dict) -> NormalizedSaleItem:
    name = line.get("name") or "Unnamed item"
    variation = line.get("variation_name")
    if variation and variation.lower() != "regular":
        name = f"{name} ({variation})"

    total_money = line.get("total_money")
    if total_money is None:
        total_money = line.get("gross_sales_money")

    return NormalizedSaleItem(
        item_name=name[:255],
        quantity=_parse_quantity(line.get("quantity")),
        unit_price=to_decimal(minor_units(line.get("base_price_money"))),
        line_total=to_decimal(minor_units(total_money)),
        pos_item_id=line.get("catalog_object_id"),
    )


def map_order(order: dict) -> NormalizedSale:
    """Transform one Square order into a NormalizedSale.

    Raises ValueError for orders that cannot be mapped safely.
    """
    order_id = order.get("id")
    if not order_id:
        raise ValueError("order has no id")

    line_items = order.get("line_items") or []
    total = minor_units(order.get("total_money"), required=True)
    tax = minor_units(order.get("total_tax_money"))
    tip = minor_units(order.get("total_tip_money"))
    discount = minor_units(order.get("total_discount_money"))

    if line_items:
        gross = sum(minor_units(line.get("gross_sales_money")) for line in line_items)
    else:
        gross = total - tax - tip + discount

    currency = (order.get("total_money") or {}).get("currency")

    return NormalizedSale(
        pos_transaction_id=order_id,
        location_id=order.get("location_id"),
        sale_date=sale_date_for(order),
        gross_revenue=to_decimal(gross),
        discounts=to_decimal(discount),
        net_revenue=to_decimal(gross - discount),
        vat_amount=to_decimal(tax),
        tip_amount=to_decimal(tip),
        total_amount=to_decimal(total),
        payment_method=payment_method_for(order.get("tenders")),
        currency=currency,
        items=[map_line_item(line) for line in line_items],
    )
