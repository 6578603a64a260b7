"""
Payment Records - Reconciliation Snapshots of Expected Payments

One record per invoice, holding copies of the invoice, property, payer and
agent details as they were when the invoice was issued. Records track
completion independently of the invoice and back the admin reconciliation
view. Nothing in the status workflow depends on them succeeding.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional

from core.settlement.directory import UserDirectory
from core.settlement.errors import NotFoundError
from core.settlement.invoice import Invoice, InvoiceStatus
from core.settlement.schema import DEFAULT_CURRENCY, Property


logger = logging.getLogger(__name__)


class PaymentRecordStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass
class PaymentRecord:
    """Admin-facing snapshot of an invoice's expected payment."""

    record_id: str
    invoice_id: str
    property_id: str
    agent_id: str
    payer_id: str
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    status: PaymentRecordStatus = PaymentRecordStatus.PENDING
    payment_method: str = "bank_transfer"
    invoice_details: dict = field(default_factory=dict)
    property_details: dict = field(default_factory=dict)
    payer_details: dict = field(default_factory=dict)
    agent_details: dict = field(default_factory=dict)
    initiated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_details: Optional[dict] = None
    admin_notes: list[dict] = field(default_factory=list)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "invoice_id": self.invoice_id,
            "property_id": self.property_id,
            "agent_id": self.agent_id,
            "payer_id": self.payer_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "payment_method": self.payment_method,
            "invoice_details": self.invoice_details,
            "property_details": self.property_details,
            "payer_details": self.payer_details,
            "agent_details": self.agent_details,
            "initiated_at": self.initiated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "error_details": self.error_details,
            "admin_notes": self.admin_notes,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRecord":
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            record_id=data["record_id"],
            invoice_id=data["invoice_id"],
            property_id=data["property_id"],
            agent_id=data["agent_id"],
            payer_id=data["payer_id"],
            amount=Decimal(data["amount"]),
            currency=data.get("currency", DEFAULT_CURRENCY),
            status=PaymentRecordStatus(data["status"]),
            payment_method=data.get("payment_method", "bank_transfer"),
            invoice_details=data.get("invoice_details", {}),
            property_details=data.get("property_details", {}),
            payer_details=data.get("payer_details", {}),
            agent_details=data.get("agent_details", {}),
            initiated_at=datetime.fromisoformat(data["initiated_at"]),
            completed_at=_dt(data.get("completed_at")),
            failed_at=_dt(data.get("failed_at")),
            error_details=data.get("error_details"),
            admin_notes=data.get("admin_notes", []),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class PaymentRecordRepository:
    """Stores payment records, one per invoice."""

    def __init__(self, directory: UserDirectory, persist_path: Optional[str] = None):
        self._directory = directory
        self._records: dict[str, PaymentRecord] = {}
        self._by_invoice: dict[str, str] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return

        data = {
            "records": {rid: r.to_dict() for rid, r in self._records.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for rid, record_data in data.get("records", {}).items():
                record = PaymentRecord.from_dict(record_data)
                self._records[rid] = record
                self._by_invoice[record.invoice_id] = rid
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load payment records from %s: %s", self._persist_path, e)

    def _user_snapshot(self, user_id: str) -> dict:
        user = self._directory.get(user_id)
        if user is None:
            return {"id": user_id}
        return {"id": user.user_id, "name": user.name, "email": user.email}

    def create_from_invoice(self, invoice: Invoice, prop: Property) -> PaymentRecord:
        """
        Create the payment record for an invoice.

        Returns the existing record if the invoice already has one.
        """
        with self._lock:
            existing_id = self._by_invoice.get(invoice.invoice_id)
            if existing_id is not None:
                return self._records[existing_id]

            record = PaymentRecord(
                record_id=f"PR-{uuid.uuid4().hex[:12].upper()}",
                invoice_id=invoice.invoice_id,
                property_id=invoice.property_id,
                agent_id=invoice.agent_id,
                payer_id=invoice.counterparty_id,
                amount=invoice.total_amount,
                payment_method=(
                    invoice.payment_methods[0]["type"] if invoice.payment_methods else "bank_transfer"
                ),
                invoice_details={
                    "invoice_number": invoice.invoice_number,
                    "category": invoice.category.value,
                    "commission_amount": str(invoice.commission_amount),
                    "gst_amount": str(invoice.tax.gst_amount),
                    "total_amount": str(invoice.total_amount),
                    "due_date": invoice.due_date.isoformat(),
                },
                property_details={
                    "title": prop.title,
                    "address": prop.address,
                    "price": str(prop.price),
                },
                payer_details={
                    **self._user_snapshot(invoice.counterparty_id),
                    "role": invoice.counterparty_role.value,
                },
                agent_details=self._user_snapshot(invoice.agent_id),
            )
            self._records[record.record_id] = record
            self._by_invoice[invoice.invoice_id] = record.record_id
            self._save_to_file()

        logger.info(
            "Payment record %s created for invoice %s",
            record.record_id, invoice.invoice_number,
        )
        return record

    def sync_with_invoice(self, invoice: Invoice) -> Optional[PaymentRecord]:
        """Bring a record's status in line with its invoice."""
        with self._lock:
            record = self.get_by_invoice(invoice.invoice_id)
            if record is None:
                return None

            now = datetime.utcnow()
            if invoice.status == InvoiceStatus.PAID:
                if record.status != PaymentRecordStatus.COMPLETED:
                    record.status = PaymentRecordStatus.COMPLETED
                    record.completed_at = now
            elif invoice.status == InvoiceStatus.CANCELLED:
                record.status = PaymentRecordStatus.CANCELLED
            elif invoice.status == InvoiceStatus.REFUNDED:
                record.status = PaymentRecordStatus.REFUNDED
            elif invoice.payments:
                record.status = PaymentRecordStatus.PROCESSING
            record.updated_at = now
            self._save_to_file()
            return record

    def mark_failed(self, record_id: str, code: str, message: str) -> PaymentRecord:
        with self._lock:
            record = self._require(record_id)
            record.status = PaymentRecordStatus.FAILED
            record.failed_at = datetime.utcnow()
            record.error_details = {"code": code, "message": message}
            record.updated_at = record.failed_at
            self._save_to_file()
            return record

    def add_admin_note(self, record_id: str, note: str, added_by: str) -> PaymentRecord:
        with self._lock:
            record = self._require(record_id)
            record.admin_notes.append({
                "note": note,
                "added_by": added_by,
                "added_at": datetime.utcnow().isoformat(),
            })
            record.updated_at = datetime.utcnow()
            self._save_to_file()
            return record

    def _require(self, record_id: str) -> PaymentRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Payment record {record_id} not found")
        return record

    def get(self, record_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            return self._records.get(record_id)

    def get_by_invoice(self, invoice_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            record_id = self._by_invoice.get(invoice_id)
            return self._records.get(record_id) if record_id else None

    def list_all(self, status: Optional[PaymentRecordStatus] = None) -> list[PaymentRecord]:
        """Records, newest first, optionally filtered by status."""
        with self._lock:
            records = [
                r for r in self._records.values()
                if status is None or r.status == status
            ]
        return sorted(records, key=lambda r: r.initiated_at, reverse=True)

    def summary(self) -> dict:
        """Counts and amounts by status for the reconciliation view."""
        counts: dict[str, int] = {}
        amounts: dict[str, Decimal] = {}
        for record in self.list_all():
            key = record.status.value
            counts[key] = counts.get(key, 0) + 1
            amounts[key] = amounts.get(key, Decimal("0")) + record.amount
        return {
            "total_records": sum(counts.values()),
            "status_counts": counts,
            "amounts_by_status": {k: str(v) for k, v in amounts.items()},
        }
