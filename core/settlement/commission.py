"""
Commission Calculator - Policy Rates and GST

Pure functions over Decimal. Every invoice amount in the ledger comes from
here and nowhere else.

Rounding rule:
1. Commission = property value x rate, rounded half-up to cents
2. GST = rounded commission x 10%, rounded half-up to cents
3. Total = commission + GST
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Final, Optional

from core.settlement.errors import ValidationError
from core.settlement.schema import to_decimal


class InvoiceCategory(Enum):
    """What an invoice bills for."""

    SETTLEMENT_COMMISSION = "settlement_commission"
    PLATFORM_COMMISSION = "platform_commission"
    BUYER_PAYMENT = "buyer_payment"
    OTHER = "other"


# Percentages, not fractions
SETTLEMENT_COMMISSION_RATE: Final[Decimal] = Decimal("1.1")
PLATFORM_COMMISSION_RATE: Final[Decimal] = Decimal("0.55")
BUYER_PAYMENT_RATE: Final[Decimal] = Decimal("10")
GST_RATE: Final[Decimal] = Decimal("10")

POLICY_RATES: Final[dict[InvoiceCategory, Decimal]] = {
    InvoiceCategory.SETTLEMENT_COMMISSION: SETTLEMENT_COMMISSION_RATE,
    InvoiceCategory.PLATFORM_COMMISSION: PLATFORM_COMMISSION_RATE,
    InvoiceCategory.BUYER_PAYMENT: BUYER_PAYMENT_RATE,
}

CENT: Final[Decimal] = Decimal("0.01")
HUNDRED: Final[Decimal] = Decimal("100")


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    """``rate`` percent of ``amount``, rounded to cents."""
    return round_money(amount * rate / HUNDRED)


@dataclass(frozen=True)
class CommissionBreakdown:
    """Result of a commission calculation."""

    category: InvoiceCategory
    property_value: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    gst_rate: Decimal
    gst_amount: Decimal
    total_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "property_value": str(self.property_value),
            "commission_rate": str(self.commission_rate),
            "commission_amount": str(self.commission_amount),
            "gst_rate": str(self.gst_rate),
            "gst_amount": str(self.gst_amount),
            "total_amount": str(self.total_amount),
        }


def resolve_rate(category: InvoiceCategory, requested_rate: Any = None) -> Decimal:
    """
    Pick the rate for a category.

    Policy categories always use their fixed rate; a caller-supplied rate is
    ignored. ``OTHER`` has no policy rate and requires one between 0 and 100.
    """
    policy_rate = POLICY_RATES.get(category)
    if policy_rate is not None:
        return policy_rate

    if requested_rate is None:
        raise ValidationError.for_field(
            "commission_rate", "A commission rate is required for this invoice category"
        )
    try:
        rate = to_decimal(requested_rate, "commission_rate")
    except ValueError as e:
        raise ValidationError.for_field("commission_rate", str(e), requested_rate) from e
    if rate < 0 or rate > HUNDRED:
        raise ValidationError.for_field(
            "commission_rate", "Commission rate must be between 0 and 100", requested_rate
        )
    return rate


def calculate_commission(
    category: InvoiceCategory,
    property_value: Any,
    requested_rate: Optional[Any] = None,
) -> CommissionBreakdown:
    """
    Calculate commission, GST and total for an invoice.

    Args:
        category: Invoice category
        property_value: Sale price of the property
        requested_rate: Caller-supplied rate (only honoured for OTHER)

    Returns:
        CommissionBreakdown with all amounts rounded to cents

    Raises:
        ValidationError: If the value is missing or negative, or the rate is invalid
    """
    if property_value is None:
        raise ValidationError.for_field("property_value", "Property value is required")
    try:
        value = to_decimal(property_value, "property_value")
    except ValueError as e:
        raise ValidationError.for_field("property_value", str(e), property_value) from e
    if value < 0:
        raise ValidationError.for_field(
            "property_value", "Property value cannot be negative", str(value)
        )

    rate = resolve_rate(category, requested_rate)
    commission = percent_of(value, rate)
    gst = percent_of(commission, GST_RATE)

    return CommissionBreakdown(
        category=category,
        property_value=round_money(value),
        commission_rate=rate,
        commission_amount=commission,
        gst_rate=GST_RATE,
        gst_amount=gst,
        total_amount=commission + gst,
    )
