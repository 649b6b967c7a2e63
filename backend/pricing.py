"""Order totals in integer minor currency units (cents).

Product prices are tax-inclusive: the configured tax percentage only yields a
reporting figure and is never added to what the customer is charged. Every
caller that needs a total (cart display, order creation, payment session line
items) goes through :func:`compute_totals`.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Mapping, Optional, Union

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class PaymentConfig:
    tax_percent: Number = 0
    shipping_fee: int = 0
    free_shipping_threshold: int = 0

    @classmethod
    def from_document(cls, document: Optional[Mapping]) -> "PaymentConfig":
        if not document:
            return cls()
        return cls(
            tax_percent=document.get("tax_percent", 0) or 0,
            shipping_fee=int(document.get("shipping_fee", 0) or 0),
            free_shipping_threshold=int(document.get("free_shipping_threshold", 0) or 0),
        )

    def to_document(self) -> Dict[str, Number]:
        return {
            "tax_percent": self.tax_percent,
            "shipping_fee": self.shipping_fee,
            "free_shipping_threshold": self.free_shipping_threshold,
        }

    def to_dict(self) -> Dict[str, Number]:
        return {
            "taxPercent": self.tax_percent,
            "shippingFee": self.shipping_fee,
            "freeShippingThreshold": self.free_shipping_threshold,
        }


@dataclass(frozen=True)
class LineItem:
    unit_price: int
    quantity: int


@dataclass(frozen=True)
class OrderTotals:
    subtotal: int
    tax_amount: int
    shipping_amount: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "subtotal": self.subtotal,
            "taxAmount": self.tax_amount,
            "shippingAmount": self.shipping_amount,
            "total": self.total,
        }


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_subtotal(items: Iterable[LineItem]) -> int:
    return sum(item.unit_price * item.quantity for item in items)


def calculate_tax(subtotal: int, tax_percent: Number) -> int:
    # str() keeps decimal literals such as 8.25 exact.
    rate = Decimal(str(tax_percent))
    return round_half_up(Decimal(subtotal) * rate / Decimal(100))


def calculate_shipping(subtotal: int, config: PaymentConfig) -> int:
    if subtotal >= config.free_shipping_threshold:
        return 0
    return config.shipping_fee


def compute_totals(items: Iterable[LineItem], config: PaymentConfig) -> OrderTotals:
    """
    Compute subtotal, tax, shipping and total for a list of line items.

    Args:
        items: Objects exposing integer ``unit_price`` (cents) and ``quantity``.
        config: The payment configuration in effect.

    Returns:
        OrderTotals where ``total = subtotal + shipping_amount``. The tax
        amount is informational only.
    """
    subtotal = calculate_subtotal(items)
    tax_amount = calculate_tax(subtotal, config.tax_percent)
    shipping_amount = calculate_shipping(subtotal, config)
    return OrderTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        shipping_amount=shipping_amount,
        total=subtotal + shipping_amount,
    )
