"""
Authoritative order pricing.

Prices always come from the catalog at order time; whatever the client sent
is ignored. Tax is a percentage of the subtotal, rounded half-up to a whole
minor unit.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session, select

from .errors import ValidationFailed
from .models import OrderItemCreate, Product


@dataclass(frozen=True)
class TaxPolicy:
    rate_percent: Decimal

    def tax_for(self, subtotal: int) -> int:
        tax = Decimal(subtotal) * self.rate_percent / Decimal(100)
        return int(tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PricedLine:
    product: Product
    quantity: int
    unit_price: int
    special_instructions: str | None

    @property
    def total_price(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OrderTotals:
    subtotal: int
    tax_amount: int
    discount_amount: int
    total_amount: int


def resolve_line_prices(session: Session, items: list[OrderItemCreate]) -> list[PricedLine]:
    """Re-read price and availability for every line. One bad line rejects them all."""
    for item in items:
        if item.quantity < 1:
            raise ValidationFailed(
                "invalid_quantity",
                f"Quantity for product '{item.product_id}' must be at least 1",
            )

    product_ids = {item.product_id for item in items}
    products = {
        p.id: p
        for p in session.exec(select(Product).where(Product.id.in_(product_ids))).all()
    }

    lines = []
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            raise ValidationFailed(
                "product_not_found", f"Product with ID '{item.product_id}' not found"
            )
        if not product.is_available:
            raise ValidationFailed(
                "product_not_available", f"Product '{product.name}' is currently not available"
            )
        lines.append(
            PricedLine(
                product=product,
                quantity=item.quantity,
                unit_price=product.price,
                special_instructions=item.special_instructions,
            )
        )
    return lines


def compute_totals(lines: list[PricedLine], tax_policy: TaxPolicy, discount_amount: int = 0) -> OrderTotals:
    subtotal = sum(line.total_price for line in lines)
    tax_amount = tax_policy.tax_for(subtotal)
    return OrderTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=subtotal + tax_amount - discount_amount,
    )
