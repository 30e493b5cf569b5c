"""Platform commission rate table.

The same function is used when an order is priced and when a payout is
released, so both sides always agree on the platform's cut.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CUSTOMIZATION_RATE = Decimal("0.10")
DESIGN_DOMINANT_RATE = Decimal("0.10")
PRODUCT_DOMINANT_RATE = Decimal("0.08")

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


class CommissionType:
    CUSTOMIZATION = "customization"
    DESIGN_DOMINANT = "design_dominant"
    PRODUCT_DOMINANT = "product_dominant"
    NONE = "none"


@dataclass(frozen=True)
class CommissionQuote:
    rate: Decimal
    amount: Decimal
    type: str
    base: Decimal

    @property
    def net(self):
        return (self.base - self.amount).quantize(CENT)

    def as_dict(self):
        return {"rate": str(self.rate), "amount": str(self.amount), "type": self.type, "base": str(self.base)}


def _money(value):
    amount = Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)
    if amount < 0:
        raise ValueError("Commission inputs cannot be negative.")
    return amount


def calculate_commission(*, product_subtotal=0, design_subtotal=0, customization_design_fee=0):
    product_subtotal = _money(product_subtotal)
    design_subtotal = _money(design_subtotal)
    customization_design_fee = _money(customization_design_fee)

    if customization_design_fee > 0:
        rate, commission_type, base = CUSTOMIZATION_RATE, CommissionType.CUSTOMIZATION, customization_design_fee
    elif product_subtotal == 0 and design_subtotal == 0:
        return CommissionQuote(rate=Decimal("0"), amount=ZERO, type=CommissionType.NONE, base=ZERO)
    elif design_subtotal >= product_subtotal:
        rate, commission_type, base = DESIGN_DOMINANT_RATE, CommissionType.DESIGN_DOMINANT, product_subtotal + design_subtotal
    else:
        rate, commission_type, base = PRODUCT_DOMINANT_RATE, CommissionType.PRODUCT_DOMINANT, product_subtotal + design_subtotal

    amount = (base * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return CommissionQuote(rate=rate, amount=amount, type=commission_type, base=base)
