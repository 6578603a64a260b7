"""
Invoice Ledger - Financial Documents Produced at Settlement

The ledger owns every invoice. It guarantees that at most one non-cancelled
invoice exists per key (property, counterparty role, counterparty, category)
by keeping a uniqueness index that is checked and updated under one lock.

Key principles:
- Amounts are derived from the commission calculator at creation and frozen
- Totals are always computed from line items and tax, never stored
- Payments are append-only
- Invoices are never deleted; cancellation is a status
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Final, Optional

from core.settlement.commission import (
    InvoiceCategory,
    calculate_commission,
    round_money,
)
from core.settlement.directory import UserDirectory
from core.settlement.errors import (
    ConflictError,
    DuplicateInvoiceError,
    InvoiceGenerationError,
    NotFoundError,
    ValidationError,
)
from core.settlement.schema import Property, parse_iso_datetime, to_decimal


logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Constants
# =============================================================================


class InvoiceStatus(Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class CounterpartyRole(Enum):
    """Who an invoice is addressed to."""

    SELLER = "seller"
    BUYER = "buyer"


# Statuses that no longer accept payments or reminders
CLOSED_STATUSES: Final[frozenset[InvoiceStatus]] = frozenset(
    {InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED}
)

# Statuses that can roll over to OVERDUE
OPEN_STATUSES: Final[frozenset[InvoiceStatus]] = frozenset(
    {InvoiceStatus.PENDING, InvoiceStatus.SENT, InvoiceStatus.VIEWED}
)

DUE_DAYS: Final[dict[InvoiceCategory, int]] = {
    InvoiceCategory.SETTLEMENT_COMMISSION: 30,
    InvoiceCategory.PLATFORM_COMMISSION: 14,
    InvoiceCategory.BUYER_PAYMENT: 30,
    InvoiceCategory.OTHER: 30,
}

LINE_ITEM_DESCRIPTIONS: Final[dict[InvoiceCategory, str]] = {
    InvoiceCategory.SETTLEMENT_COMMISSION: "Real Estate Commission - {title}",
    InvoiceCategory.PLATFORM_COMMISSION: "Platform Commission (0.55%) - {title}",
    InvoiceCategory.BUYER_PAYMENT: "Property Purchase Payment (10%) - {title}",
    InvoiceCategory.OTHER: "Commission - {title}",
}

DISPLAY_CURRENCY: Final[str] = "A$"
TRUST_ACCOUNT_BANK_NAME: Final[str] = "Trust Account"

# (property_id, counterparty_role, counterparty_id, category)
InvoiceKey = tuple[str, str, str, str]


def make_invoice_key(
    property_id: str,
    counterparty_role: CounterpartyRole,
    counterparty_id: str,
    category: InvoiceCategory,
) -> InvoiceKey:
    """Build the idempotency key for an invoice."""
    return (property_id, counterparty_role.value, str(counterparty_id), category.value)


def payment_reference(property_id: str) -> str:
    """Transfer reference buyers quote when paying into the trust account."""
    return f"PROP-{property_id[-6:]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Invoice Parts
# =============================================================================


@dataclass(frozen=True)
class LineItem:
    """A billed line. Frozen once the invoice exists."""

    description: str
    unit_price: Decimal
    quantity: int = 1
    taxable: bool = True

    @property
    def total_price(self) -> Decimal:
        return round_money(self.unit_price * self.quantity)

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "taxable": self.taxable,
            "total_price": str(self.total_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            description=data["description"],
            unit_price=Decimal(data["unit_price"]),
            quantity=data.get("quantity", 1),
            taxable=data.get("taxable", True),
        )


@dataclass(frozen=True)
class TaxBreakdown:
    """GST plus any other taxes, as rate and amount pairs."""

    gst_rate: Decimal
    gst_amount: Decimal
    other: tuple[tuple[str, Decimal, Decimal], ...] = ()  # (name, rate, amount)

    @property
    def total(self) -> Decimal:
        return self.gst_amount + sum((amount for _, _, amount in self.other), Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "gst": {"rate": str(self.gst_rate), "amount": str(self.gst_amount)},
            "other": [
                {"name": name, "rate": str(rate), "amount": str(amount)}
                for name, rate, amount in self.other
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaxBreakdown":
        return cls(
            gst_rate=Decimal(data["gst"]["rate"]),
            gst_amount=Decimal(data["gst"]["amount"]),
            other=tuple(
                (t["name"], Decimal(t["rate"]), Decimal(t["amount"]))
                for t in data.get("other", [])
            ),
        )


@dataclass(frozen=True)
class Payment:
    """A payment received against an invoice."""

    payment_id: str
    amount: Decimal
    method: str
    received_at: datetime
    reference: Optional[str] = None
    recorded_by: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "method": self.method,
            "received_at": self.received_at.isoformat(),
            "reference": self.reference,
            "recorded_by": self.recorded_by,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Payment":
        return cls(
            payment_id=data["payment_id"],
            amount=Decimal(data["amount"]),
            method=data["method"],
            received_at=datetime.fromisoformat(data["received_at"]),
            reference=data.get("reference"),
            recorded_by=data.get("recorded_by"),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class InvoiceCommunication:
    """A delivery or view event on an invoice."""

    type: str  # email, in_app, view
    status: str  # sent, viewed
    at: datetime
    by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status,
            "at": self.at.isoformat(),
            "by": self.by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InvoiceCommunication":
        return cls(
            type=data["type"],
            status=data["status"],
            at=datetime.fromisoformat(data["at"]),
            by=data.get("by"),
        )


# =============================================================================
# Invoice
# =============================================================================


@dataclass
class Invoice:
    """A financial document billed to a seller or buyer."""

    invoice_id: str
    category: InvoiceCategory
    property_id: str
    property_title: str
    agent_id: str
    counterparty_role: CounterpartyRole
    counterparty_id: str
    property_value: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    tax: TaxBreakdown
    line_items: tuple[LineItem, ...]
    due_date: datetime
    invoice_number: str = ""  # Assigned by the ledger on insert
    property_address: str = ""
    status: InvoiceStatus = InvoiceStatus.PENDING
    payments: list[Payment] = field(default_factory=list)
    communications: list[InvoiceCommunication] = field(default_factory=list)
    invoice_date: datetime = field(default_factory=datetime.utcnow)
    settlement_date: Optional[datetime] = None
    payment_terms: str = ""
    payment_methods: list[dict] = field(default_factory=list)
    public_notes: Optional[str] = None
    display_currency: str = DISPLAY_CURRENCY
    created_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    # =========================================================================
    # Derived amounts
    # =========================================================================

    @property
    def key(self) -> InvoiceKey:
        return make_invoice_key(
            self.property_id, self.counterparty_role, self.counterparty_id, self.category
        )

    @property
    def seller_id(self) -> Optional[str]:
        if self.counterparty_role == CounterpartyRole.SELLER:
            return self.counterparty_id
        return None

    @property
    def buyer_id(self) -> Optional[str]:
        if self.counterparty_role == CounterpartyRole.BUYER:
            return self.counterparty_id
        return None

    @property
    def subtotal(self) -> Decimal:
        return sum((item.total_price for item in self.line_items), Decimal("0"))

    @property
    def total_tax(self) -> Decimal:
        return self.tax.total

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal + self.total_tax

    @property
    def amount_paid(self) -> Decimal:
        return sum((p.amount for p in self.payments), Decimal("0"))

    @property
    def amount_due(self) -> Decimal:
        return self.total_amount - self.amount_paid

    @property
    def is_active(self) -> bool:
        """Whether the invoice holds its idempotency key."""
        return self.status != InvoiceStatus.CANCELLED

    def is_overdue_at(self, now: datetime) -> bool:
        return self.status not in CLOSED_STATUSES and self.due_date < now

    @property
    def is_overdue(self) -> bool:
        return self.is_overdue_at(datetime.utcnow())

    @property
    def days_past_due(self) -> int:
        now = datetime.utcnow()
        if not self.is_overdue_at(now):
            return 0
        delta = now - self.due_date
        # Any part of a day counts as a full day
        return delta.days + (1 if delta.seconds or delta.microseconds else 0)

    # =========================================================================
    # Serialisation
    # =========================================================================

    def to_summary(self) -> dict:
        """Short form returned from a status change."""
        return {
            "invoiceNumber": self.invoice_number,
            "amount": str(self.total_amount),
            "dueDate": self.due_date.isoformat(),
        }

    def to_dict(self) -> dict:
        """Full representation, including derived amounts."""
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "category": self.category.value,
            "property_id": self.property_id,
            "property_title": self.property_title,
            "property_address": self.property_address,
            "agent_id": self.agent_id,
            "counterparty_role": self.counterparty_role.value,
            "counterparty_id": self.counterparty_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "property_value": str(self.property_value),
            "commission_rate": str(self.commission_rate),
            "commission_amount": str(self.commission_amount),
            "tax": self.tax.to_dict(),
            "line_items": [li.to_dict() for li in self.line_items],
            "subtotal": str(self.subtotal),
            "total_tax": str(self.total_tax),
            "total_amount": str(self.total_amount),
            "amount_paid": str(self.amount_paid),
            "amount_due": str(self.amount_due),
            "status": self.status.value,
            "is_overdue": self.is_overdue,
            "days_past_due": self.days_past_due,
            "payments": [p.to_dict() for p in self.payments],
            "communications": [c.to_dict() for c in self.communications],
            "invoice_date": self.invoice_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "settlement_date": _iso(self.settlement_date),
            "payment_terms": self.payment_terms,
            "payment_methods": self.payment_methods,
            "public_notes": self.public_notes,
            "display_currency": self.display_currency,
            "created_by": self.created_by,
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Invoice":
        """Create from dictionary. Derived fields are ignored."""
        return cls(
            invoice_id=data["invoice_id"],
            invoice_number=data["invoice_number"],
            category=InvoiceCategory(data["category"]),
            property_id=data["property_id"],
            property_title=data["property_title"],
            property_address=data.get("property_address", ""),
            agent_id=data["agent_id"],
            counterparty_role=CounterpartyRole(data["counterparty_role"]),
            counterparty_id=data["counterparty_id"],
            property_value=Decimal(data["property_value"]),
            commission_rate=Decimal(data["commission_rate"]),
            commission_amount=Decimal(data["commission_amount"]),
            tax=TaxBreakdown.from_dict(data["tax"]),
            line_items=tuple(LineItem.from_dict(li) for li in data["line_items"]),
            due_date=datetime.fromisoformat(data["due_date"]),
            status=InvoiceStatus(data["status"]),
            payments=[Payment.from_dict(p) for p in data.get("payments", [])],
            communications=[
                InvoiceCommunication.from_dict(c) for c in data.get("communications", [])
            ],
            invoice_date=datetime.fromisoformat(data["invoice_date"]),
            settlement_date=_parse_optional(data.get("settlement_date")),
            payment_terms=data.get("payment_terms", ""),
            payment_methods=data.get("payment_methods", []),
            public_notes=data.get("public_notes"),
            display_currency=data.get("display_currency", DISPLAY_CURRENCY),
            created_by=data.get("created_by"),
            cancellation_reason=data.get("cancellation_reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class InvoiceResult:
    """Outcome of get_or_create."""

    invoice: Invoice
    already_existed: bool


# =============================================================================
# Ledger
# =============================================================================


class InvoiceLedger:
    """
    Owner of all invoices.

    Indexes:
    - ``_active_keys``: idempotency key -> invoice ID (non-cancelled only)
    - ``_numbers``: invoice number -> invoice ID
    """

    def __init__(self, directory: UserDirectory, persist_path: Optional[str] = None):
        """
        Initialise ledger.

        Args:
            directory: User directory for resolving agents and counterparties
            persist_path: Optional path to persist data to JSON file
        """
        self._directory = directory
        self._invoices: dict[str, Invoice] = {}
        self._active_keys: dict[InvoiceKey, str] = {}
        self._numbers: dict[str, str] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "invoices": {iid: inv.to_dict() for iid, inv in self._invoices.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        """Load data from file and rebuild the indexes."""
        try:
            data = json.loads(self._persist_path.read_text())
            for iid, inv_data in data.get("invoices", {}).items():
                invoice = Invoice.from_dict(inv_data)
                self._invoices[iid] = invoice
                self._numbers[invoice.invoice_number] = iid
                if invoice.is_active:
                    self._active_keys[invoice.key] = iid
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load invoice data from %s: %s", self._persist_path, e)

    # =========================================================================
    # Creation
    # =========================================================================

    def get_or_create(
        self,
        category: InvoiceCategory,
        prop: Property,
        counterparty_role: CounterpartyRole,
        counterparty_id: str,
        agent_id: str,
        settlement_date: Optional[datetime] = None,
        created_by: Optional[str] = None,
        requested_rate: Optional[Any] = None,
    ) -> InvoiceResult:
        """
        Return the active invoice for a key, creating it if none exists.

        Concurrent callers for the same key receive the same invoice; all but
        one see ``already_existed=True``.

        Raises:
            InvoiceGenerationError: If the agent or counterparty cannot be
                resolved, or the amounts cannot be calculated
        """
        key = make_invoice_key(prop.property_id, counterparty_role, counterparty_id, category)

        existing = self.find_active(key)
        if existing is not None:
            logger.info(
                "Existing %s invoice reused: %s for property=%s",
                category.value, existing.invoice_number, prop.property_id,
            )
            return InvoiceResult(invoice=existing, already_existed=True)

        invoice = self._build_invoice(
            category=category,
            prop=prop,
            counterparty_role=counterparty_role,
            counterparty_id=str(counterparty_id),
            agent_id=str(agent_id),
            settlement_date=settlement_date,
            created_by=created_by,
            requested_rate=requested_rate,
        )

        try:
            self._insert(invoice)
        except DuplicateInvoiceError as e:
            winner = self.get(e.existing_invoice_id)
            logger.info(
                "Concurrent %s invoice for property=%s resolved to %s",
                category.value, prop.property_id, winner.invoice_number,
            )
            return InvoiceResult(invoice=winner, already_existed=True)

        logger.info(
            "New %s invoice created: %s (%s%% on %s)",
            category.value, invoice.invoice_number, invoice.commission_rate, prop.price,
        )
        return InvoiceResult(invoice=invoice, already_existed=False)

    def _build_invoice(
        self,
        category: InvoiceCategory,
        prop: Property,
        counterparty_role: CounterpartyRole,
        counterparty_id: str,
        agent_id: str,
        settlement_date: Optional[datetime],
        created_by: Optional[str],
        requested_rate: Optional[Any],
    ) -> Invoice:
        agent = self._directory.get(agent_id)
        if agent is None:
            raise InvoiceGenerationError(
                f"Agent {agent_id} not found", {"agent_id": agent_id}
            )
        counterparty = self._directory.get(counterparty_id)
        if counterparty is None:
            raise InvoiceGenerationError(
                f"{counterparty_role.value.capitalize()} {counterparty_id} not found",
                {"counterparty_id": counterparty_id},
            )

        try:
            breakdown = calculate_commission(category, prop.price, requested_rate)
        except ValidationError as e:
            raise InvoiceGenerationError(e.message, {"property_id": prop.property_id}) from e

        now = datetime.utcnow()
        due_days = DUE_DAYS[category]
        line_item = LineItem(
            description=LINE_ITEM_DESCRIPTIONS[category].format(title=prop.title),
            unit_price=breakdown.commission_amount,
        )

        payment_methods: list[dict] = []
        public_notes = None
        if category == InvoiceCategory.BUYER_PAYMENT:
            reference = payment_reference(prop.property_id)
            payment_methods.append({
                "type": "bank_transfer",
                "details": {
                    "account_name": agent.name,
                    "account_number": agent.bank_account_number,
                    "bank_name": TRUST_ACCOUNT_BANK_NAME,
                    "reference": reference,
                },
            })
            public_notes = (
                "Please transfer the deposit amount to the agent's trust account "
                f"using the reference: {reference}"
            )

        return Invoice(
            invoice_id=f"INVC-{uuid.uuid4().hex[:12].upper()}",
            category=category,
            property_id=prop.property_id,
            property_title=prop.title,
            property_address=prop.address,
            agent_id=agent.user_id,
            counterparty_role=counterparty_role,
            counterparty_id=counterparty.user_id,
            property_value=breakdown.property_value,
            commission_rate=breakdown.commission_rate,
            commission_amount=breakdown.commission_amount,
            tax=TaxBreakdown(gst_rate=breakdown.gst_rate, gst_amount=breakdown.gst_amount),
            line_items=(line_item,),
            due_date=now + timedelta(days=due_days),
            invoice_date=now,
            settlement_date=settlement_date or now,
            payment_terms=f"Net {due_days}",
            payment_methods=payment_methods,
            public_notes=public_notes,
            created_by=created_by or agent.user_id,
            created_at=now,
            updated_at=now,
        )

    def _insert(self, invoice: Invoice) -> None:
        """
        Insert under the index lock.

        Raises:
            DuplicateInvoiceError: If an active invoice already holds the key
        """
        with self._lock:
            key = invoice.key
            holder = self._active_keys.get(key)
            if holder is not None:
                raise DuplicateInvoiceError(key, holder)

            number = self._next_invoice_number(invoice.created_at.year)
            if number in self._numbers:
                raise ConflictError(f"Invoice number {number} already issued")
            invoice.invoice_number = number

            self._invoices[invoice.invoice_id] = invoice
            self._numbers[number] = invoice.invoice_id
            self._active_keys[key] = invoice.invoice_id
            self._save_to_file()

    def _next_invoice_number(self, year: int) -> str:
        """Sequential per calendar year. Caller holds the lock."""
        count = sum(1 for inv in self._invoices.values() if inv.created_at.year == year)
        return f"INV-{year}-{count + 1:06d}"

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(invoice_id)

    def require(self, invoice_id: str) -> Invoice:
        """Get an invoice or raise NotFoundError."""
        invoice = self.get(invoice_id) or self.get_by_number(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        with self._lock:
            invoice_id = self._numbers.get(invoice_number)
            return self._invoices.get(invoice_id) if invoice_id else None

    def find_active(self, key: InvoiceKey) -> Optional[Invoice]:
        """The non-cancelled invoice holding a key, if any."""
        with self._lock:
            invoice_id = self._active_keys.get(key)
            return self._invoices.get(invoice_id) if invoice_id else None

    def list_for_property(self, property_id: str) -> list[Invoice]:
        """Invoices for a property, newest first."""
        with self._lock:
            found = [i for i in self._invoices.values() if i.property_id == property_id]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    def list_for_counterparty(
        self,
        counterparty_id: str,
        role: Optional[CounterpartyRole] = None,
    ) -> list[Invoice]:
        """Invoices addressed to a seller or buyer, newest first."""
        with self._lock:
            found = [
                i for i in self._invoices.values()
                if i.counterparty_id == str(counterparty_id)
                and (role is None or i.counterparty_role == role)
            ]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    def list_for_agent(self, agent_id: str) -> list[Invoice]:
        with self._lock:
            found = [i for i in self._invoices.values() if i.agent_id == str(agent_id)]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    def list_all(self) -> list[Invoice]:
        with self._lock:
            return sorted(self._invoices.values(), key=lambda i: i.created_at, reverse=True)

    # =========================================================================
    # Mutations
    # =========================================================================

    def record_payment(
        self,
        invoice_id: str,
        amount: Any,
        method: str = "bank_transfer",
        reference: Optional[str] = None,
        recorded_by: Optional[str] = None,
        received_at: Optional[Any] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        """
        Append a payment.

        A payment that clears the balance marks the invoice paid; partial
        payments leave the status unchanged.

        Raises:
            NotFoundError: If the invoice does not exist
            ConflictError: If the invoice is cancelled, refunded or already paid
            ValidationError: If the amount is not positive or exceeds the balance
        """
        try:
            value = round_money(to_decimal(amount, "amount"))
        except ValueError as e:
            raise ValidationError.for_field("amount", str(e), amount) from e
        if value <= 0:
            raise ValidationError.for_field("amount", "Payment amount must be positive", str(value))
        try:
            when = parse_iso_datetime(received_at) if received_at else datetime.utcnow()
        except ValueError as e:
            raise ValidationError.for_field("received_at", str(e), received_at) from e

        with self._lock:
            invoice = self.require(invoice_id)
            if invoice.status in CLOSED_STATUSES:
                raise ConflictError(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value}",
                    {"invoice_id": invoice.invoice_id, "status": invoice.status.value},
                )
            if value > invoice.amount_due:
                raise ValidationError.for_field(
                    "amount",
                    f"Payment exceeds amount due ({invoice.amount_due})",
                    str(value),
                )

            invoice.payments.append(Payment(
                payment_id=f"PAY-{uuid.uuid4().hex[:10].upper()}",
                amount=value,
                method=method,
                received_at=when,
                reference=reference,
                recorded_by=recorded_by,
                notes=notes,
            ))
            if invoice.amount_due <= 0:
                invoice.status = InvoiceStatus.PAID
            invoice.updated_at = datetime.utcnow()
            self._save_to_file()

        logger.info(
            "Payment of %s recorded on %s (due now %s)",
            value, invoice.invoice_number, invoice.amount_due,
        )
        return invoice

    def mark_sent(self, invoice_id: str, sent_by: Optional[str] = None, channel: str = "email") -> Invoice:
        """Record delivery of an invoice to its counterparty."""
        with self._lock:
            invoice = self.require(invoice_id)
            if invoice.status in CLOSED_STATUSES:
                raise ConflictError(
                    f"Cannot send a {invoice.status.value} invoice",
                    {"invoice_id": invoice.invoice_id},
                )
            if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
                invoice.status = InvoiceStatus.SENT
            invoice.communications.append(InvoiceCommunication(
                type=channel, status="sent", at=datetime.utcnow(), by=sent_by,
            ))
            invoice.updated_at = datetime.utcnow()
            self._save_to_file()
            return invoice

    def mark_viewed(self, invoice_id: str, viewed_by: Optional[str] = None) -> Invoice:
        """Record that the counterparty opened the invoice."""
        with self._lock:
            invoice = self.require(invoice_id)
            if invoice.status == InvoiceStatus.SENT:
                invoice.status = InvoiceStatus.VIEWED
            invoice.communications.append(InvoiceCommunication(
                type="view", status="viewed", at=datetime.utcnow(), by=viewed_by,
            ))
            invoice.updated_at = datetime.utcnow()
            self._save_to_file()
            return invoice

    def cancel(self, invoice_id: str, cancelled_by: Optional[str] = None, reason: str = "") -> Invoice:
        """
        Cancel an invoice and release its key.

        Invoices with payments must be refunded instead.
        """
        with self._lock:
            invoice = self.require(invoice_id)
            if invoice.status == InvoiceStatus.CANCELLED:
                return invoice
            if invoice.payments or invoice.status in CLOSED_STATUSES:
                raise ConflictError(
                    "Invoices with payments cannot be cancelled; refund instead",
                    {"invoice_id": invoice.invoice_id, "status": invoice.status.value},
                )
            invoice.status = InvoiceStatus.CANCELLED
            invoice.cancellation_reason = reason or None
            invoice.updated_at = datetime.utcnow()
            if self._active_keys.get(invoice.key) == invoice.invoice_id:
                del self._active_keys[invoice.key]
            self._save_to_file()

        logger.info("Invoice %s cancelled by %s", invoice.invoice_number, cancelled_by)
        return invoice

    def refund(self, invoice_id: str, refunded_by: Optional[str] = None, reason: str = "") -> Invoice:
        """Mark a paid (or part-paid) invoice as refunded. The key stays occupied."""
        with self._lock:
            invoice = self.require(invoice_id)
            if not invoice.payments:
                raise ConflictError(
                    "Only invoices with payments can be refunded",
                    {"invoice_id": invoice.invoice_id},
                )
            if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
                raise ConflictError(f"Invoice is already {invoice.status.value}")
            invoice.status = InvoiceStatus.REFUNDED
            invoice.cancellation_reason = reason or None
            invoice.updated_at = datetime.utcnow()
            self._save_to_file()

        logger.info("Invoice %s refunded by %s", invoice.invoice_number, refunded_by)
        return invoice

    def mark_overdue(self, now: Optional[datetime] = None) -> list[Invoice]:
        """Move open invoices past their due date to OVERDUE."""
        now = now or datetime.utcnow()
        changed = []
        with self._lock:
            for invoice in self._invoices.values():
                if invoice.status in OPEN_STATUSES and invoice.due_date < now:
                    invoice.status = InvoiceStatus.OVERDUE
                    invoice.updated_at = now
                    changed.append(invoice)
            if changed:
                self._save_to_file()
        return changed

    # =========================================================================
    # Reporting
    # =========================================================================

    def summary_for_counterparty(self, counterparty_id: str) -> dict:
        """Counts and totals by status for one seller or buyer."""
        invoices = self.list_for_counterparty(counterparty_id)
        status_counts: dict[str, int] = {}
        total_amount = Decimal("0")
        total_paid = Decimal("0")
        total_due = Decimal("0")
        overdue = 0
        for invoice in invoices:
            status_counts[invoice.status.value] = status_counts.get(invoice.status.value, 0) + 1
            if invoice.status == InvoiceStatus.CANCELLED:
                continue
            total_amount += invoice.total_amount
            total_paid += invoice.amount_paid
            if invoice.status not in CLOSED_STATUSES:
                total_due += invoice.amount_due
            if invoice.is_overdue:
                overdue += 1

        return {
            "counterparty_id": str(counterparty_id),
            "total_invoices": len(invoices),
            "status_counts": status_counts,
            "total_amount": str(total_amount),
            "total_paid": str(total_paid),
            "total_due": str(total_due),
            "overdue_count": overdue,
        }
