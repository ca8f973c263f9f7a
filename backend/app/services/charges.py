"""Charge calculation: metered utility bills, rent and commission invoices.

Pure functions, no I/O.  Every figure is carried at full Decimal precision
through the calculation; callers round with ``ChargeBreakdown.quantized()``
only when the result is persisted, so repeated partial-payment splits never
compound rounding error.

Tax modes:
    EXCLUSIVE       tax = base × rate/100, grand total = base + tax
    INCLUSIVE       base already contains tax; it is split back into
                    base / (1 + rate/100) and the embedded tax, grand total
                    stays equal to the quoted base
    NOT_APPLICABLE  no tax (also used whenever the rate is null)
"""

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal

from app.middleware.exceptions import InvalidCommissionInput, InvalidReadingRange
from app.models.tenant import ServiceChargeType, TaxMode

TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")


def as_decimal(value) -> Decimal:
    """Convert floats, ints and strings to Decimal without binary noise."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value) -> Decimal:
    return as_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ChargeBreakdown:
    subtotal: Decimal
    tax_amount: Decimal
    grand_total: Decimal
    tax_mode: TaxMode
    tax_rate: Decimal | None = None
    units: Decimal | None = None
    rent: Decimal | None = None
    service_charge: Decimal | None = None

    def quantized(self) -> "ChargeBreakdown":
        """Round monetary figures to 2 dp for persistence."""
        return replace(
            self,
            subtotal=quantize_money(self.subtotal),
            tax_amount=quantize_money(self.tax_amount),
            grand_total=quantize_money(self.grand_total),
            rent=quantize_money(self.rent) if self.rent is not None else None,
            service_charge=(
                quantize_money(self.service_charge)
                if self.service_charge is not None else None
            ),
        )


def apply_tax(
    base: Decimal,
    tax_rate,
    tax_mode: TaxMode,
) -> tuple[Decimal, Decimal, Decimal, Decimal | None, TaxMode]:
    """Split a taxable base into (subtotal, tax, grand_total, rate, mode).

    A null or zero rate degrades to NOT_APPLICABLE.
    """
    if tax_mode == TaxMode.NOT_APPLICABLE or tax_rate is None or as_decimal(tax_rate) == ZERO:
        return base, ZERO, base, None, TaxMode.NOT_APPLICABLE

    rate = as_decimal(tax_rate)
    if tax_mode == TaxMode.INCLUSIVE:
        true_subtotal = base / (1 + rate / HUNDRED)
        return true_subtotal, base - true_subtotal, base, rate, tax_mode

    tax = base * rate / HUNDRED
    return base, tax, base + tax, rate, tax_mode


def compute_charge(
    previous_reading,
    current_reading,
    charge_per_unit,
    tax_rate=None,
    tax_mode: TaxMode = TaxMode.EXCLUSIVE,
) -> ChargeBreakdown:
    """Price a metered reading: units × charge_per_unit, then tax.

    Raises:
        InvalidReadingRange: if the meter went backwards.
    """
    previous = as_decimal(previous_reading)
    current = as_decimal(current_reading)
    if current < previous:
        raise InvalidReadingRange(previous_reading, current_reading)

    units = current - previous
    base = units * as_decimal(charge_per_unit)
    subtotal, tax, grand_total, rate, mode = apply_tax(base, tax_rate, tax_mode)

    return ChargeBreakdown(
        units=units,
        subtotal=subtotal,
        tax_amount=tax,
        grand_total=grand_total,
        tax_rate=rate,
        tax_mode=mode,
    )


def compute_service_charge(
    rent,
    charge_type: ServiceChargeType | None,
    fixed_amount=None,
    percentage=None,
    per_sq_ft_rate=None,
    unit_size=None,
) -> Decimal:
    """Service charge for one period; missing inputs count as zero."""
    if charge_type is None:
        return ZERO
    if charge_type == ServiceChargeType.FIXED:
        return as_decimal(fixed_amount)
    if charge_type == ServiceChargeType.PERCENTAGE:
        return as_decimal(rent) * as_decimal(percentage) / HUNDRED
    if charge_type == ServiceChargeType.PER_SQ_FT:
        return as_decimal(per_sq_ft_rate) * as_decimal(unit_size)
    raise ValueError(f"Unknown service charge type: {charge_type}")


def compute_rent_charge(
    rent,
    tax_rate=None,
    tax_mode: TaxMode = TaxMode.NOT_APPLICABLE,
    service_charge_type: ServiceChargeType | None = None,
    fixed_amount=None,
    percentage=None,
    per_sq_ft_rate=None,
    unit_size=None,
) -> ChargeBreakdown:
    """Price a rent period: (rent + service charge) is the taxable base."""
    rent_amount = as_decimal(rent)
    service_charge = compute_service_charge(
        rent_amount,
        service_charge_type,
        fixed_amount=fixed_amount,
        percentage=percentage,
        per_sq_ft_rate=per_sq_ft_rate,
        unit_size=unit_size,
    )
    base = rent_amount + service_charge
    subtotal, tax, grand_total, rate, mode = apply_tax(base, tax_rate, tax_mode)

    return ChargeBreakdown(
        rent=rent_amount,
        service_charge=service_charge,
        subtotal=subtotal,
        tax_amount=tax,
        grand_total=grand_total,
        tax_rate=rate,
        tax_mode=mode,
    )


def commission_rate_fraction(commission_rate) -> Decimal:
    """Normalise a commission rate: values above 1 are percentages (8.5 → 0.085)."""
    rate = as_decimal(commission_rate)
    return rate / HUNDRED if rate > 1 else rate


def compute_commission_charge(
    collection_amount,
    commission_rate,
    vat_rate=None,
) -> ChargeBreakdown:
    """Price a manager commission on a period's rent collections.

    The commission is the taxable base; VAT (0–100) is charged on top.

    Raises:
        InvalidCommissionInput: negative collections or rate.
    """
    collected = as_decimal(collection_amount)
    if collected < ZERO:
        raise InvalidCommissionInput(f"Collection amount cannot be negative, got {collection_amount}")
    if as_decimal(commission_rate) < ZERO:
        raise InvalidCommissionInput(f"Commission rate cannot be negative, got {commission_rate}")

    base = collected * commission_rate_fraction(commission_rate)
    subtotal, tax, grand_total, rate, mode = apply_tax(base, vat_rate, TaxMode.EXCLUSIVE)

    return ChargeBreakdown(
        subtotal=subtotal,
        tax_amount=tax,
        grand_total=grand_total,
        tax_rate=rate,
        tax_mode=mode,
    )
