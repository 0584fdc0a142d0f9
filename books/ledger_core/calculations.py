"""
Invoice arithmetic.

Pure functions over Decimal values: nothing here touches the database, so
the same code computes a draft preview, the persisted totals and the
round-trip check that re-derives stored totals from stored items.

Order of operations (kept fixed so results are reproducible):
    1. per item: quantity x unit_price, item discount, own tax rate
    2. subtotal = sum of discounted item amounts
    3. invoice discount on the subtotal
    4. tax = own-rate item taxes + invoice rate on the remaining items'
       post-discount amounts
    5. total = subtotal - invoice discount + tax + shipping

Every monetary intermediate is rounded half-up to the cent as soon as it
is produced.
"""
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Sequence, Tuple

from django.core.exceptions import ValidationError

from .choices import DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value, name="value") -> Decimal:
    """Coerce str/int/Decimal input to Decimal; floats are refused."""
    if isinstance(value, float):
        raise ValidationError(f"{name} must be a Decimal or string, not float")
    if value is None:
        raise ValidationError(f"{name} is required")
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{name} is not a valid number: {value!r}")


def money(value) -> Decimal:
    """Round to 2 places, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Discount:
    kind: str = DiscountType.PERCENTAGE
    value: Decimal = ZERO

    def amount_off(self, base: Decimal) -> Decimal:
        """Discount amount for `base`, clamped so base never goes below 0."""
        value = to_decimal(self.value, "discount")
        if value < 0:
            raise ValidationError("Discount cannot be negative")
        if self.kind == DiscountType.PERCENTAGE:
            amount = money(base * value / HUNDRED)
        elif self.kind == DiscountType.FIXED:
            amount = money(value)
        else:
            raise ValidationError(f"Unknown discount type: {self.kind}")
        return min(amount, base)


@dataclass(frozen=True)
class LineInput:
    quantity: Decimal
    unit_price: Decimal
    discount: Optional[Discount] = None
    # Percentage already resolved by the tax engine; None = use invoice rate
    tax_percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class LineResult:
    line_subtotal: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    uses_invoice_rate: bool


@dataclass(frozen=True)
class InvoiceTotals:
    lines: Tuple[LineResult, ...]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total: Decimal


def _check_percentage(pct, name):
    pct = to_decimal(pct, name)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(f"{name} must be between 0 and 100")
    return pct


def tax_on(amount: Decimal, percentage: Decimal) -> Decimal:
    return money(amount * percentage / HUNDRED)


def _allocate(amount: Decimal, weights: Sequence[Decimal]) -> list:
    """Split `amount` across `weights` proportionally, in cents.

    Largest remainder: every share is first cut down to the cent, then the
    leftover cents go one each to the largest cut-off fractions (later
    items win ties). Shares add up to `amount` exactly and never exceed
    the exact proportional share by a cent or more, so none turns negative.
    """
    total_weight = sum(weights, ZERO)
    shares = [ZERO for _ in weights]
    if amount == ZERO or total_weight == ZERO:
        return shares
    sign = -1 if amount < 0 else 1
    magnitude = abs(amount)
    remainders = []
    for i, weight in enumerate(weights):
        if weight <= 0:
            continue
        exact = magnitude * weight / total_weight
        shares[i] = exact.quantize(CENT, rounding=ROUND_DOWN)
        remainders.append((exact - shares[i], i))
    leftover = int((magnitude - sum(shares, ZERO)) / CENT)
    for _, i in sorted(remainders, reverse=True)[:leftover]:
        shares[i] += CENT
    return [sign * share for share in shares]


def calculate_line(line: LineInput):
    """Step 1 for one item: (subtotal, discount, net, own tax or None)."""
    quantity = to_decimal(line.quantity, "quantity")
    unit_price = to_decimal(line.unit_price, "unit_price")
    if quantity < 0:
        raise ValidationError("Quantity must be >= 0")
    if unit_price < 0:
        raise ValidationError("Unit price must be >= 0")

    line_subtotal = money(quantity * unit_price)
    discount_amount = (
        line.discount.amount_off(line_subtotal) if line.discount else ZERO
    )
    net_amount = money(line_subtotal - discount_amount)

    own_tax = None
    if line.tax_percentage is not None:
        pct = _check_percentage(line.tax_percentage, "item tax rate")
        own_tax = tax_on(net_amount, pct)
    return line_subtotal, discount_amount, net_amount, own_tax


def calculate_invoice(
    lines: Sequence[LineInput],
    discount: Optional[Discount] = None,
    tax_percentage: Optional[Decimal] = None,
    shipping=ZERO,
) -> InvoiceTotals:
    shipping_amount = money(shipping or ZERO)
    if shipping_amount < 0:
        raise ValidationError("Shipping cannot be negative")
    invoice_pct = None
    if tax_percentage is not None:
        invoice_pct = _check_percentage(tax_percentage, "invoice tax rate")

    # 1. per item
    computed = [calculate_line(line) for line in lines]

    # 2. subtotal (post item-discount, pre-tax)
    subtotal = money(sum((c[2] for c in computed), ZERO))

    # 3. invoice-level discount
    discount_amount = discount.amount_off(subtotal) if discount else ZERO

    # 4. tax: items without their own rate are taxed at the invoice rate
    # on what is left after their share of the invoice discount
    shares = _allocate(discount_amount, [c[2] for c in computed])
    results = []
    for (line_subtotal, item_discount, net, own_tax), share in zip(computed, shares):
        if own_tax is not None:
            line_tax, uses_invoice_rate = own_tax, False
        elif invoice_pct is not None:
            line_tax, uses_invoice_rate = tax_on(net - share, invoice_pct), True
        else:
            line_tax, uses_invoice_rate = ZERO, True
        results.append(
            LineResult(
                line_subtotal=line_subtotal,
                discount_amount=item_discount,
                net_amount=net,
                tax_amount=line_tax,
                line_total=money(net + line_tax),
                uses_invoice_rate=uses_invoice_rate,
            )
        )
    tax_amount = money(sum((r.tax_amount for r in results), ZERO))

    # 5. total
    total = money(subtotal - discount_amount + tax_amount + shipping_amount)

    return InvoiceTotals(
        lines=tuple(results),
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        shipping_amount=shipping_amount,
        total=total,
    )
