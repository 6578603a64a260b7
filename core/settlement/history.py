"""
Property Status History - Audit Trail of Sales Status Changes

Every accepted status change produces exactly one history entry. The entry
has two halves:

- StatusChange: what was changed, by whom, and why. Frozen at creation and
  covered by a SHA-256 hash that also links to the previous entry for the
  same property, so tampering with either the entry or the order of entries
  is detectable.
- Processing state: how far the downstream steps (invoices, notifications)
  got. This is the only part that changes after creation; the error log is
  append-only.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Final, Optional, Union

from core.settlement.errors import NotFoundError
from core.settlement.invoice import InvoiceResult
from core.settlement.schema import ChangeSource, SalesStatus


logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Constants
# =============================================================================


class ProcessingStatus(Enum):
    """How far downstream processing of a status change got."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(Enum):
    """Per-step marker used to resume interrupted processing."""

    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InvoiceSlot(Enum):
    """Where an invoice outcome is attached on an entry."""

    SELLER = "invoice"
    BUYER = "buyer_invoice"
    PLATFORM = "platform_invoice"


STEP_PROPERTY_UPDATE: Final[str] = "property_update"
STEP_SELLER_INVOICE: Final[str] = "seller_invoice"
STEP_BUYER_INVOICE: Final[str] = "buyer_invoice"
STEP_PLATFORM_INVOICE: Final[str] = "platform_invoice"
STEP_NOTIFICATIONS: Final[str] = "notifications"

INVOICE_STEPS: Final[dict[InvoiceSlot, str]] = {
    InvoiceSlot.SELLER: STEP_SELLER_INVOICE,
    InvoiceSlot.BUYER: STEP_BUYER_INVOICE,
    InvoiceSlot.PLATFORM: STEP_PLATFORM_INVOICE,
}


# =============================================================================
# Hash Utilities
# =============================================================================


def _serialize_for_hash(data: dict[str, Any]) -> str:
    """Deterministic JSON for hashing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_change_hash(
    entry_id: str,
    property_id: str,
    previous_status: Optional[str],
    new_status: str,
    changed_by: str,
    change_reason: Optional[str],
    metadata: dict[str, Any],
    settlement_details: dict[str, Any],
    recorded_at: datetime,
    previous_change_hash: Optional[str],
) -> str:
    """SHA-256 over every immutable field of a status change."""
    hashable_content = {
        "entry_id": entry_id,
        "property_id": property_id,
        "previous_status": previous_status,
        "new_status": new_status,
        "changed_by": changed_by,
        "change_reason": change_reason,
        "metadata": metadata,
        "settlement_details": settlement_details,
        "recorded_at": recorded_at.isoformat(),
        "previous_change_hash": previous_change_hash,
    }
    serialized = _serialize_for_hash(hashable_content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _status_value(status: Optional[SalesStatus]) -> Optional[str]:
    return status.value if status else None


# =============================================================================
# Immutable Change Record
# =============================================================================


@dataclass(frozen=True)
class RequestMetadata:
    """Snapshot of the request that caused a change."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: ChangeSource = ChangeSource.WEB

    def to_dict(self) -> dict:
        return {
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RequestMetadata":
        return cls(
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            source=ChangeSource(data.get("source", ChangeSource.WEB.value)),
        )


@dataclass(frozen=True)
class StatusChange:
    """The immutable half of a history entry."""

    entry_id: str
    property_id: str
    previous_status: Optional[SalesStatus]
    new_status: SalesStatus
    changed_by: str
    change_reason: Optional[str]
    metadata: RequestMetadata
    settlement_details: dict
    recorded_at: datetime
    change_hash: str
    previous_change_hash: Optional[str] = None

    @classmethod
    def create(
        cls,
        property_id: str,
        previous_status: Optional[SalesStatus],
        new_status: SalesStatus,
        changed_by: str,
        change_reason: Optional[str] = None,
        metadata: Optional[RequestMetadata] = None,
        settlement_details: Optional[dict] = None,
        previous_change_hash: Optional[str] = None,
    ) -> "StatusChange":
        """Create a change record with its hash computed."""
        entry_id = f"HIST-{uuid.uuid4().hex[:12].upper()}"
        metadata = metadata or RequestMetadata()
        settlement_details = settlement_details or {}
        recorded_at = datetime.utcnow()

        change_hash = compute_change_hash(
            entry_id=entry_id,
            property_id=property_id,
            previous_status=_status_value(previous_status),
            new_status=new_status.value,
            changed_by=changed_by,
            change_reason=change_reason,
            metadata=metadata.to_dict(),
            settlement_details=settlement_details,
            recorded_at=recorded_at,
            previous_change_hash=previous_change_hash,
        )

        return cls(
            entry_id=entry_id,
            property_id=property_id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by=changed_by,
            change_reason=change_reason,
            metadata=metadata,
            settlement_details=settlement_details,
            recorded_at=recorded_at,
            change_hash=change_hash,
            previous_change_hash=previous_change_hash,
        )

    def verify_hash(self) -> bool:
        """
        Verify this change's hash matches its content.

        Returns:
            True if hash is valid, False if tampered
        """
        expected = compute_change_hash(
            entry_id=self.entry_id,
            property_id=self.property_id,
            previous_status=_status_value(self.previous_status),
            new_status=self.new_status.value,
            changed_by=self.changed_by,
            change_reason=self.change_reason,
            metadata=self.metadata.to_dict(),
            settlement_details=self.settlement_details,
            recorded_at=self.recorded_at,
            previous_change_hash=self.previous_change_hash,
        )
        return self.change_hash == expected

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "property_id": self.property_id,
            "previous_status": _status_value(self.previous_status),
            "new_status": self.new_status.value,
            "changed_by": self.changed_by,
            "change_reason": self.change_reason,
            "metadata": self.metadata.to_dict(),
            "settlement_details": self.settlement_details,
            "recorded_at": self.recorded_at.isoformat(),
            "change_hash": self.change_hash,
            "previous_change_hash": self.previous_change_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatusChange":
        return cls(
            entry_id=data["entry_id"],
            property_id=data["property_id"],
            previous_status=SalesStatus.from_string(data.get("previous_status")),
            new_status=SalesStatus(data["new_status"]),
            changed_by=data["changed_by"],
            change_reason=data.get("change_reason"),
            metadata=RequestMetadata.from_dict(data["metadata"]),
            settlement_details=data.get("settlement_details", {}),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
            change_hash=data["change_hash"],
            previous_change_hash=data.get("previous_change_hash"),
        )


# =============================================================================
# Processing State
# =============================================================================


@dataclass
class InvoiceLink:
    """Denormalised pointer to an invoice and how it was obtained."""

    generated: bool
    category: str
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    amount: Optional[str] = None
    status: Optional[str] = None
    generated_at: Optional[datetime] = None
    already_existed: bool = False

    @classmethod
    def from_result(cls, result: InvoiceResult) -> "InvoiceLink":
        invoice = result.invoice
        return cls(
            generated=True,
            category=invoice.category.value,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            amount=str(invoice.total_amount),
            status=invoice.status.value,
            generated_at=invoice.created_at,
            already_existed=result.already_existed,
        )

    def to_dict(self) -> dict:
        return {
            "generated": self.generated,
            "category": self.category,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "amount": self.amount,
            "status": self.status,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "already_existed": self.already_existed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InvoiceLink":
        return cls(
            generated=data["generated"],
            category=data["category"],
            invoice_id=data.get("invoice_id"),
            invoice_number=data.get("invoice_number"),
            amount=data.get("amount"),
            status=data.get("status"),
            generated_at=(
                datetime.fromisoformat(data["generated_at"]) if data.get("generated_at") else None
            ),
            already_existed=data.get("already_existed", False),
        )


@dataclass
class ErrorLogEntry:
    """A failure recorded against an entry. Only ``resolved`` ever changes."""

    error: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    step: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "step": self.step,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorLogEntry":
        return cls(
            error=data["error"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            step=data.get("step"),
            resolved=data.get("resolved", False),
            resolved_at=(
                datetime.fromisoformat(data["resolved_at"]) if data.get("resolved_at") else None
            ),
        )


@dataclass
class StatusHistoryEntry:
    """A status change plus its downstream processing state."""

    change: StatusChange
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    invoice: Optional[InvoiceLink] = None
    buyer_invoice: Optional[InvoiceLink] = None
    platform_invoice: Optional[InvoiceLink] = None
    notifications: list[dict] = field(default_factory=list)
    error_log: list[ErrorLogEntry] = field(default_factory=list)
    steps: dict[str, StepState] = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def entry_id(self) -> str:
        return self.change.entry_id

    @property
    def property_id(self) -> str:
        return self.change.property_id

    @property
    def previous_status(self) -> Optional[SalesStatus]:
        return self.change.previous_status

    @property
    def new_status(self) -> SalesStatus:
        return self.change.new_status

    @property
    def changed_by(self) -> str:
        return self.change.changed_by

    @property
    def created_at(self) -> datetime:
        return self.change.recorded_at

    @property
    def unresolved_errors(self) -> list[ErrorLogEntry]:
        return [e for e in self.error_log if not e.resolved]

    def step_state(self, step: str) -> StepState:
        return self.steps.get(step, StepState.PENDING)

    def to_summary(self) -> dict:
        """Short form returned from a status change."""
        return {
            "id": self.entry_id,
            "previousStatus": _status_value(self.previous_status),
            "newStatus": self.new_status.value,
            "changedAt": self.created_at.isoformat(),
        }

    def to_dict(self) -> dict:
        return {
            **self.change.to_dict(),
            "processing_status": self.processing_status.value,
            "invoice": self.invoice.to_dict() if self.invoice else None,
            "buyer_invoice": self.buyer_invoice.to_dict() if self.buyer_invoice else None,
            "platform_invoice": (
                self.platform_invoice.to_dict() if self.platform_invoice else None
            ),
            "notifications": self.notifications,
            "error_log": [e.to_dict() for e in self.error_log],
            "steps": {name: state.value for name, state in self.steps.items()},
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatusHistoryEntry":
        def _link(value: Optional[dict]) -> Optional[InvoiceLink]:
            return InvoiceLink.from_dict(value) if value else None

        return cls(
            change=StatusChange.from_dict(data),
            processing_status=ProcessingStatus(data["processing_status"]),
            invoice=_link(data.get("invoice")),
            buyer_invoice=_link(data.get("buyer_invoice")),
            platform_invoice=_link(data.get("platform_invoice")),
            notifications=data.get("notifications", []),
            error_log=[ErrorLogEntry.from_dict(e) for e in data.get("error_log", [])],
            steps={k: StepState(v) for k, v in data.get("steps", {}).items()},
            processed_at=(
                datetime.fromisoformat(data["processed_at"]) if data.get("processed_at") else None
            ),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


EntryRef = Union[StatusHistoryEntry, str]


# =============================================================================
# Recorder
# =============================================================================


class AuditTrailRecorder:
    """
    Stores history entries and applies the permitted updates to them.

    The change half of an entry is never replaced; every update method
    touches processing state only.
    """

    def __init__(self, persist_path: Optional[str] = None):
        self._entries: dict[str, StatusHistoryEntry] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return

        data = {
            "entries": {eid: e.to_dict() for eid, e in self._entries.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for eid, entry_data in data.get("entries", {}).items():
                self._entries[eid] = StatusHistoryEntry.from_dict(entry_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load status history from %s: %s", self._persist_path, e)

    def _resolve(self, entry: EntryRef) -> StatusHistoryEntry:
        if isinstance(entry, StatusHistoryEntry):
            return entry
        return self.require(entry)

    def _touch(self, entry: StatusHistoryEntry) -> None:
        entry.updated_at = datetime.utcnow()
        self._save_to_file()

    # =========================================================================
    # Recording
    # =========================================================================

    def record(
        self,
        property_id: str,
        previous_status: Optional[SalesStatus],
        new_status: SalesStatus,
        changed_by: str,
        change_reason: Optional[str] = None,
        metadata: Optional[RequestMetadata] = None,
        settlement_details: Optional[dict] = None,
        steps: Optional[dict[str, StepState]] = None,
    ) -> StatusHistoryEntry:
        """
        Create the history entry for a status change.

        The entry starts in PROCESSING and is linked to the latest entry for
        the same property.
        """
        with self._lock:
            latest = self._latest_for_property(property_id)
            change = StatusChange.create(
                property_id=property_id,
                previous_status=previous_status,
                new_status=new_status,
                changed_by=changed_by,
                change_reason=change_reason,
                metadata=metadata,
                settlement_details=settlement_details,
                previous_change_hash=latest.change.change_hash if latest else None,
            )
            entry = StatusHistoryEntry(
                change=change,
                processing_status=ProcessingStatus.PROCESSING,
                steps=dict(steps or {}),
            )
            self._entries[entry.entry_id] = entry
            self._save_to_file()

        logger.info(
            "Status history %s recorded: %s -> %s on %s by %s",
            entry.entry_id,
            _status_value(previous_status),
            new_status.value,
            property_id,
            changed_by,
        )
        return entry

    def mark_processing(self, entry: EntryRef) -> StatusHistoryEntry:
        """Return an entry to PROCESSING before a retry."""
        with self._lock:
            entry = self._resolve(entry)
            entry.processing_status = ProcessingStatus.PROCESSING
            self._touch(entry)
            return entry

    def mark_processed(self, entry: EntryRef) -> StatusHistoryEntry:
        """Finalise an entry as COMPLETED."""
        with self._lock:
            entry = self._resolve(entry)
            entry.processing_status = ProcessingStatus.COMPLETED
            entry.processed_at = datetime.utcnow()
            self._touch(entry)
            return entry

    def mark_failed(
        self,
        entry: EntryRef,
        error: Union[Exception, str],
        step: Optional[str] = None,
    ) -> StatusHistoryEntry:
        """Finalise an entry as FAILED and append the error."""
        with self._lock:
            entry = self._resolve(entry)
            entry.processing_status = ProcessingStatus.FAILED
            entry.processed_at = datetime.utcnow()
            entry.error_log.append(ErrorLogEntry(error=str(error), step=step))
            self._touch(entry)

        logger.error("Status history %s marked failed: %s", entry.entry_id, error)
        return entry

    def log_error(
        self,
        entry: EntryRef,
        error: Union[Exception, str],
        step: Optional[str] = None,
    ) -> StatusHistoryEntry:
        """Append an error without changing the processing status."""
        with self._lock:
            entry = self._resolve(entry)
            entry.error_log.append(ErrorLogEntry(error=str(error), step=step))
            self._touch(entry)
            return entry

    def resolve_errors(self, entry: EntryRef) -> int:
        """Flag every unresolved error as resolved. Returns the count."""
        with self._lock:
            entry = self._resolve(entry)
            now = datetime.utcnow()
            pending = entry.unresolved_errors
            for error in pending:
                error.resolved = True
                error.resolved_at = now
            if pending:
                self._touch(entry)
            return len(pending)

    def attach_invoice(
        self,
        entry: EntryRef,
        slot: InvoiceSlot,
        result: InvoiceResult,
    ) -> StatusHistoryEntry:
        """Link an invoice outcome and commit the matching step."""
        with self._lock:
            entry = self._resolve(entry)
            setattr(entry, slot.value, InvoiceLink.from_result(result))
            entry.steps[INVOICE_STEPS[slot]] = StepState.COMMITTED
            self._touch(entry)
            return entry

    def set_step(self, entry: EntryRef, step: str, state: StepState) -> StatusHistoryEntry:
        with self._lock:
            entry = self._resolve(entry)
            entry.steps[step] = state
            self._touch(entry)
            return entry

    def add_notification(self, entry: EntryRef, receipt: dict) -> StatusHistoryEntry:
        """Append a delivered notification to the entry."""
        with self._lock:
            entry = self._resolve(entry)
            entry.notifications.append(receipt)
            self._touch(entry)
            return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, entry_id: str) -> Optional[StatusHistoryEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def require(self, entry_id: str) -> StatusHistoryEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Status history entry {entry_id} not found")
        return entry

    def _latest_for_property(self, property_id: str) -> Optional[StatusHistoryEntry]:
        entries = self.list_for_property(property_id)
        return entries[0] if entries else None

    def list_for_property(self, property_id: str) -> list[StatusHistoryEntry]:
        """Entries for a property, newest first."""
        with self._lock:
            # Insertion order is recording order
            found = [e for e in self._entries.values() if e.property_id == property_id]
        return list(reversed(found))

    def list_by_agent(self, agent_id: str) -> list[StatusHistoryEntry]:
        with self._lock:
            found = [e for e in self._entries.values() if e.changed_by == str(agent_id)]
        return sorted(found, key=lambda e: e.created_at, reverse=True)

    def list_by_processing_status(self, status: ProcessingStatus) -> list[StatusHistoryEntry]:
        """Entries in a processing state, oldest first (work-queue order)."""
        with self._lock:
            found = [e for e in self._entries.values() if e.processing_status == status]
        return sorted(found, key=lambda e: e.created_at)

    def list_all(self) -> list[StatusHistoryEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.created_at, reverse=True)

    # =========================================================================
    # Integrity
    # =========================================================================

    def verify_integrity(self, entry: EntryRef) -> bool:
        """Check an entry's change hash against its content."""
        return self._resolve(entry).change.verify_hash()

    def verify_property_chain(self, property_id: str) -> dict[str, Any]:
        """
        Verify every entry for a property and the links between them.

        Returns:
            Dict with 'valid' bool and 'error' message if invalid
        """
        entries = list(reversed(self.list_for_property(property_id)))
        previous_hash: Optional[str] = None
        for index, entry in enumerate(entries, start=1):
            if not entry.change.verify_hash():
                return {
                    "valid": False,
                    "error": f"Entry {entry.entry_id} hash mismatch",
                    "position": index,
                }
            if entry.change.previous_change_hash != previous_hash:
                return {
                    "valid": False,
                    "error": f"Entry {entry.entry_id} is not linked to the entry before it",
                    "position": index,
                }
            previous_hash = entry.change.change_hash
        return {"valid": True, "entries": len(entries)}
