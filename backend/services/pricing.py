"""
Pricing Engine
==============
Pure order totals. Every component is rounded to cents (half-up) before the
total is summed, so subtotal + tax + shipping == total holds exactly.
"""

from decimal import Decimal
from typing import Iterable, Protocol

from config import CommerceConfig
from schemas.orders import Totals, to_money


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


class PricingEngine:
    def __init__(self, config: CommerceConfig):
        self.tax_rate = config.tax_rate
        self.free_shipping_threshold = config.free_shipping_threshold
        self.flat_shipping_fee = to_money(config.flat_shipping_fee)

    def subtotal(self, lines: Iterable[PricedLine]) -> Decimal:
        total = Decimal("0")
        for line in lines:
            if line.quantity < 1:
                raise ValueError(f"quantity must be >= 1, got {line.quantity}")
            if line.unit_price < 0:
                raise ValueError(f"unit_price must be >= 0, got {line.unit_price}")
            total += Decimal(line.unit_price) * line.quantity
        return to_money(total)

    def shipping_for(self, subtotal: Decimal) -> Decimal:
        # Free shipping only strictly above the threshold
        if subtotal > self.free_shipping_threshold:
            return Decimal("0.00")
        return self.flat_shipping_fee

    def price(self, lines: Iterable[PricedLine]) -> Totals:
        subtotal = self.subtotal(lines)
        tax = to_money(subtotal * self.tax_rate)
        shipping = self.shipping_for(subtotal)
        return Totals(
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=subtotal + tax + shipping,
        )

    def intent_amount(self, lines: Iterable[PricedLine], shipping: Decimal, tax: Decimal) -> Decimal:
        """Amount for a client-built intent: items plus the shipping and tax the client quoted."""
        return self.subtotal(lines) + to_money(shipping) + to_money(tax)
