"""
Tests for the Commission Calculator

Tests covering:
1. Policy rates for settlement, platform and buyer invoices
2. Commission rounded half-up before GST is computed
3. Caller-supplied rates ignored for policy categories
4. OTHER requires a rate between 0 and 100
5. Missing and negative property values rejected
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from core.settlement import InvoiceCategory, ValidationError, calculate_commission
from core.settlement.commission import percent_of, round_money


class TestPolicyRates:
    """Fixed rates per invoice category."""

    def test_settlement_commission_on_750k(self):
        """1.1% of 750k plus GST is 9,075.00."""
        result = calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, 750000)

        assert result.commission_rate == Decimal("1.1")
        assert result.commission_amount == Decimal("8250.00")
        assert result.gst_amount == Decimal("825.00")
        assert result.total_amount == Decimal("9075.00")

    def test_settlement_commission_on_500k(self):
        """1.1% of 500k plus GST is 6,050.00."""
        result = calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, "500000")

        assert result.commission_amount == Decimal("5500.00")
        assert result.gst_amount == Decimal("550.00")
        assert result.total_amount == Decimal("6050.00")

    def test_platform_commission_is_half_rate(self):
        """Platform commission is 0.55%."""
        result = calculate_commission(InvoiceCategory.PLATFORM_COMMISSION, 500000)

        assert result.commission_rate == Decimal("0.55")
        assert result.commission_amount == Decimal("2750.00")
        assert result.total_amount == Decimal("3025.00")

    def test_buyer_payment_is_ten_percent(self):
        """Buyer deposit invoice is 10% plus GST."""
        result = calculate_commission(InvoiceCategory.BUYER_PAYMENT, 500000)

        assert result.commission_amount == Decimal("50000.00")
        assert result.gst_amount == Decimal("5000.00")
        assert result.total_amount == Decimal("55000.00")

    def test_requested_rate_ignored_for_policy_category(self):
        """A caller cannot under-bill the settlement commission."""
        result = calculate_commission(
            InvoiceCategory.SETTLEMENT_COMMISSION, 500000, requested_rate="0.5"
        )

        assert result.commission_rate == Decimal("1.1")
        assert result.total_amount == Decimal("6050.00")

    def test_to_dict_uses_strings(self):
        """Serialised amounts are strings, not floats."""
        data = calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, 750000).to_dict()

        assert data["category"] == "settlement_commission"
        assert data["total_amount"] == "9075.00"
        assert data["gst_rate"] == "10"


class TestRounding:
    """Half-up rounding on the commission, then GST on the rounded value."""

    def test_round_money_half_up(self):
        """0.165 rounds to 0.17, not to the even 0.16."""
        assert round_money(Decimal("0.165")) == Decimal("0.17")
        assert round_money(Decimal("2.675")) == Decimal("2.68")

    def test_percent_of(self):
        """Percent helper rounds to cents."""
        assert percent_of(Decimal("30"), Decimal("0.55")) == Decimal("0.17")

    def test_gst_on_rounded_commission(self):
        """GST is computed on the already-rounded commission."""
        result = calculate_commission(InvoiceCategory.PLATFORM_COMMISSION, 30)

        assert result.commission_amount == Decimal("0.17")
        assert result.gst_amount == Decimal("0.02")
        assert result.total_amount == Decimal("0.19")

    def test_float_input_has_no_binary_noise(self):
        """Float values are converted through str."""
        result = calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, 100000.10)

        assert result.property_value == Decimal("100000.10")
        assert result.commission_amount == Decimal("1100.00")


class TestOtherCategory:
    """OTHER has no policy rate."""

    def test_requires_rate(self):
        """Missing rate is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            calculate_commission(InvoiceCategory.OTHER, 500000)

        assert exc_info.value.errors[0].field == "commission_rate"

    def test_uses_requested_rate(self):
        """A valid rate is honoured."""
        result = calculate_commission(InvoiceCategory.OTHER, 200000, requested_rate="2.5")

        assert result.commission_amount == Decimal("5000.00")
        assert result.total_amount == Decimal("5500.00")

    @pytest.mark.parametrize("rate", ["-1", "150", "abc", "NaN", "Infinity"])
    def test_rejects_invalid_rate(self, rate):
        """Rates outside 0-100 or non-numeric are rejected."""
        with pytest.raises(ValidationError):
            calculate_commission(InvoiceCategory.OTHER, 200000, requested_rate=rate)


class TestPropertyValue:
    """Input validation on the sale price."""

    def test_missing_value(self):
        with pytest.raises(ValidationError) as exc_info:
            calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, None)

        assert exc_info.value.errors[0].field == "property_value"

    def test_negative_value(self):
        with pytest.raises(ValidationError):
            calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, -100)

    def test_non_numeric_value(self):
        with pytest.raises(ValidationError):
            calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, "lots")

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity", Decimal("sNaN")])
    def test_non_finite_value(self, value):
        with pytest.raises(ValidationError) as exc_info:
            calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, value)

        assert exc_info.value.errors[0].field == "property_value"

    def test_zero_value(self):
        """A zero price produces a zero invoice rather than an error."""
        result = calculate_commission(InvoiceCategory.SETTLEMENT_COMMISSION, 0)

        assert result.total_amount == Decimal("0.00")
