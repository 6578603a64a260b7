"""
Tests for Payment Records

Tests covering:
1. One record per invoice with frozen snapshots
2. Status follows the invoice: processing, completed, cancelled, refunded
3. Admin notes, failures and the reconciliation summary
"""

from __future__ import annotations

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from core.settlement import (
    CounterpartyRole,
    InvoiceCategory,
    NotFoundError,
    PaymentRecordRepository,
    PaymentRecordStatus,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def invoice(services, listing):
    return services.ledger.get_or_create(
        category=InvoiceCategory.SETTLEMENT_COMMISSION,
        prop=listing,
        counterparty_role=CounterpartyRole.SELLER,
        counterparty_id="seller-1",
        agent_id="agent-1",
    ).invoice


@pytest.fixture
def repository(services):
    return services.payment_records


@pytest.fixture
def record(repository, invoice, listing):
    return repository.create_from_invoice(invoice, listing)


class TestCreate:
    """Snapshots taken at issue time."""

    def test_snapshot(self, record, invoice):
        assert record.status == PaymentRecordStatus.PENDING
        assert record.amount == Decimal("6050.00")
        assert record.currency == "AUD"
        assert record.invoice_details["invoice_number"] == invoice.invoice_number
        assert record.invoice_details["gst_amount"] == "550.00"
        assert record.property_details["price"] == "500000"
        assert record.payer_details == {
            "id": "seller-1", "name": "Sam Seller", "email": "sam@example.com", "role": "seller",
        }
        assert record.agent_details["name"] == "Alex Agent"

    def test_one_record_per_invoice(self, repository, record, invoice, listing):
        again = repository.create_from_invoice(invoice, listing)

        assert again.record_id == record.record_id
        assert len(repository.list_all()) == 1


class TestSync:
    """Record status tracks the invoice."""

    def test_partial_payment_processing(self, services, repository, record, invoice):
        services.ledger.record_payment(invoice.invoice_id, "100")
        repository.sync_with_invoice(invoice)
        assert record.status == PaymentRecordStatus.PROCESSING

    def test_paid_completes(self, services, repository, record, invoice):
        services.ledger.record_payment(invoice.invoice_id, "6050.00")
        repository.sync_with_invoice(invoice)

        assert record.status == PaymentRecordStatus.COMPLETED
        assert record.completed_at is not None

    def test_cancelled(self, services, repository, record, invoice):
        services.ledger.cancel(invoice.invoice_id)
        repository.sync_with_invoice(invoice)
        assert record.status == PaymentRecordStatus.CANCELLED

    def test_refunded(self, services, repository, record, invoice):
        services.ledger.record_payment(invoice.invoice_id, "6050.00")
        services.ledger.refund(invoice.invoice_id)
        repository.sync_with_invoice(invoice)
        assert record.status == PaymentRecordStatus.REFUNDED

    def test_invoice_without_record(self, repository, invoice):
        assert repository.sync_with_invoice(invoice) is None


class TestAdmin:
    """Operator actions."""

    def test_add_note(self, repository, record):
        repository.add_admin_note(record.record_id, "Chased by phone", "admin-1")

        assert record.admin_notes[0]["note"] == "Chased by phone"
        assert record.admin_notes[0]["added_by"] == "admin-1"

    def test_unknown_record(self, repository):
        with pytest.raises(NotFoundError):
            repository.add_admin_note("PR-NOPE", "note", "admin-1")
        with pytest.raises(NotFoundError):
            repository.mark_failed("PR-NOPE", "bounced", "Transfer bounced")

    def test_mark_failed(self, repository, record):
        repository.mark_failed(record.record_id, "bounced", "Transfer bounced")

        assert record.status == PaymentRecordStatus.FAILED
        assert record.error_details == {"code": "bounced", "message": "Transfer bounced"}

    def test_summary_and_filter(self, repository, record):
        summary = repository.summary()

        assert summary["total_records"] == 1
        assert summary["status_counts"] == {"pending": 1}
        assert summary["amounts_by_status"] == {"pending": "6050.00"}
        assert repository.list_all(PaymentRecordStatus.COMPLETED) == []

    def test_persistence(self, services, record, invoice, listing):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = str(Path(tmpdir) / "payment_records.json")
            repository = PaymentRecordRepository(services.directory, path)
            created = repository.create_from_invoice(invoice, listing)

            reloaded = PaymentRecordRepository(services.directory, path)
            assert reloaded.get_by_invoice(invoice.invoice_id).record_id == created.record_id
