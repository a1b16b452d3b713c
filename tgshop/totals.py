from decimal import Decimal

from tgshop.models import OrderTotals

ZERO = Decimal("0")


def calculate_totals(lines, delivery_fee) -> OrderTotals:
    # no tax or discount rules yet; the fields are kept for display
    subtotal = sum((line.unit_price * line.quantity for line in lines), ZERO)
    shipping_cost = Decimal(str(delivery_fee))
    tax_amount = ZERO
    discount_amount = ZERO
    return OrderTotals(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=subtotal + shipping_cost + tax_amount - discount_amount,
    )
