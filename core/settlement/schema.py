"""
Settlement Schema - Property Record and Shared Enums

Defines the property record that the status workflow mutates, the sales-status
progression, and the value objects shared by the ledger, audit trail and
notification modules.

Principles:
- The property owns its current sales status
- At most one assigned agent is active at a time
- Sales status progression is canonical but not enforced by default
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Final, Optional


# =============================================================================
# Enums
# =============================================================================


class SalesStatus(Enum):
    """Sales pipeline stage of a property. ``None`` means no sale in progress."""

    CONTRACT_EXCHANGED = "contract-exchanged"
    UNCONDITIONAL = "unconditional"
    SETTLED = "settled"

    @property
    def display_name(self) -> str:
        return _SALES_STATUS_DISPLAY[self]

    @classmethod
    def from_string(cls, value: Optional[str]) -> Optional["SalesStatus"]:
        """Convert string to SalesStatus; returns None for unknown values."""
        if value is None:
            return None
        normalised = str(value).strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalised:
                return member
        return None


_SALES_STATUS_DISPLAY: Final[dict[SalesStatus, str]] = {
    SalesStatus.CONTRACT_EXCHANGED: "Contract Exchanged",
    SalesStatus.UNCONDITIONAL: "Unconditional",
    SalesStatus.SETTLED: "Settled",
}


class ListingStatus(Enum):
    """Listing lifecycle status, distinct from the sales status."""

    PENDING = "pending"
    ACTIVE = "active"
    UNDER_CONTRACT = "under-contract"
    SOLD = "sold"
    WITHDRAWN = "withdrawn"
    REJECTED = "rejected"


class AgentRole(Enum):
    """Role of an agent assignment on a property."""

    LISTING = "listing"
    SELLING = "selling"
    CO_LISTING = "co-listing"


class ChangeSource(Enum):
    """Channel a status change request arrived through."""

    WEB = "web"
    MOBILE = "mobile"
    API = "api"
    SYSTEM = "system"


# =============================================================================
# Constants
# =============================================================================

# Canonical forward progression. A missing key (None) may move to any status.
CANONICAL_PROGRESSION: Final[dict[Optional[SalesStatus], frozenset[SalesStatus]]] = {
    None: frozenset(SalesStatus),
    SalesStatus.CONTRACT_EXCHANGED: frozenset(
        {SalesStatus.UNCONDITIONAL, SalesStatus.SETTLED}
    ),
    SalesStatus.UNCONDITIONAL: frozenset({SalesStatus.SETTLED}),
    SalesStatus.SETTLED: frozenset(),
}

MAX_CHANGE_REASON_LENGTH: Final[int] = 500

# Settlement dates further out than this are rejected
MAX_SETTLEMENT_DAYS_AHEAD: Final[int] = 365

# Off-platform deposit handled through the agent's trust account
DEPOSIT_PERCENTAGE: Final[Decimal] = Decimal("10")
DEFAULT_CURRENCY: Final[str] = "AUD"

SLUG_PATTERN: Final = re.compile(r"[^a-z0-9]+")


def is_canonical_progression(
    current: Optional[SalesStatus],
    requested: SalesStatus,
) -> bool:
    """
    Check whether a change follows the canonical progression.

    Re-applying the current status counts as canonical (idempotent request).
    """
    if current == requested:
        return True
    return requested in CANONICAL_PROGRESSION.get(current, frozenset())


# =============================================================================
# Helpers
# =============================================================================


def generate_property_id() -> str:
    """Generate a unique property ID."""
    return f"PROP-{uuid.uuid4().hex[:12].upper()}"


def slugify(text: str) -> str:
    """Build a URL slug from a property title."""
    return SLUG_PATTERN.sub("-", text.lower()).strip("-")


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """Convert numbers and numeric strings to a finite Decimal."""
    if value is None or isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # str() keeps floats like 0.1 from carrying binary noise
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"{field_name} must be a number") from e
    if not result.is_finite():
        raise ValueError(f"{field_name} must be a finite number")
    return result


def parse_iso_datetime(value: Any) -> datetime:
    """
    Parse an ISO-8601 date or datetime into a naive UTC datetime.

    Raises:
        ValueError: If the value is not a valid ISO-8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Expected an ISO-8601 date string")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Agent Assignment
# =============================================================================


@dataclass
class AgentAssignment:
    """An agent assigned to a property. Only one assignment may be active."""

    agent_id: str
    role: AgentRole = AgentRole.LISTING
    is_active: bool = True
    commission_rate: Optional[Decimal] = None
    assigned_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialisation."""
        return {
            "agent_id": self.agent_id,
            "role": self.role.value,
            "is_active": self.is_active,
            "commission_rate": (
                str(self.commission_rate) if self.commission_rate is not None else None
            ),
            "assigned_at": self.assigned_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentAssignment":
        """Create from dictionary."""
        rate = data.get("commission_rate")
        return cls(
            agent_id=data["agent_id"],
            role=AgentRole(data.get("role", AgentRole.LISTING.value)),
            is_active=data.get("is_active", True),
            commission_rate=Decimal(rate) if rate is not None else None,
            assigned_at=(
                datetime.fromisoformat(data["assigned_at"])
                if data.get("assigned_at")
                else datetime.utcnow()
            ),
        )


# =============================================================================
# Property Record
# =============================================================================


@dataclass
class Property:
    """
    A listing under sale.

    ``price`` is the authoritative sale value used for every invoice.
    ``sales_status`` tracks the sale pipeline; ``status`` tracks the listing.
    """

    property_id: str
    title: str
    price: Decimal
    owner_id: str
    address: str = ""
    slug: str = ""
    sales_status: Optional[SalesStatus] = None
    status: ListingStatus = ListingStatus.ACTIVE
    agents: list[AgentAssignment] = field(default_factory=list)
    settlement_date: Optional[datetime] = None
    contact_email: Optional[str] = None
    is_deleted: bool = False
    last_modified_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        """Validate property state."""
        if not self.property_id:
            raise ValueError("property_id is required")
        if not self.owner_id:
            raise ValueError("owner_id is required")
        self.price = to_decimal(self.price, "price")
        if self.price < 0:
            raise ValueError("price cannot be negative")
        if not self.slug:
            self.slug = slugify(self.title) or self.property_id.lower()
        if sum(1 for a in self.agents if a.is_active) > 1:
            raise ValueError("At most one agent assignment may be active")

    @classmethod
    def create(
        cls,
        title: str,
        price: Any,
        owner_id: str,
        address: str = "",
        agent_id: Optional[str] = None,
        contact_email: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> "Property":
        """Create a new active listing, optionally with an assigned agent."""
        prop = cls(
            property_id=generate_property_id(),
            title=title,
            price=price,
            owner_id=owner_id,
            address=address,
            slug=slug or "",
            contact_email=contact_email,
        )
        if agent_id:
            prop.assign_agent(agent_id)
        return prop

    # =========================================================================
    # Agents
    # =========================================================================

    @property
    def active_agent(self) -> Optional[AgentAssignment]:
        """The acting agent, if any."""
        for assignment in self.agents:
            if assignment.is_active:
                return assignment
        return None

    def is_active_agent(self, agent_id: str) -> bool:
        """Check whether the given agent is the acting agent."""
        active = self.active_agent
        return active is not None and active.agent_id == str(agent_id)

    def assign_agent(
        self,
        agent_id: str,
        role: AgentRole = AgentRole.LISTING,
        commission_rate: Optional[Decimal] = None,
    ) -> AgentAssignment:
        """
        Make an agent the acting agent.

        Any previously active assignment is deactivated but kept as history.
        """
        for assignment in self.agents:
            assignment.is_active = False

        assignment = AgentAssignment(
            agent_id=str(agent_id),
            role=role,
            is_active=True,
            commission_rate=commission_rate,
        )
        self.agents.append(assignment)
        self.updated_at = datetime.utcnow()
        return assignment

    # =========================================================================
    # Status
    # =========================================================================

    def apply_sales_status(
        self,
        new_status: SalesStatus,
        changed_by: str,
        settlement_date: Optional[datetime] = None,
    ) -> Optional[SalesStatus]:
        """
        Apply a sales status in place and return the previous value.

        Settling also marks the listing sold and stamps the settlement date.
        """
        previous = self.sales_status
        self.sales_status = new_status
        self.last_modified_by = changed_by
        if new_status == SalesStatus.SETTLED:
            self.status = ListingStatus.SOLD
            if settlement_date is not None:
                self.settlement_date = settlement_date
        self.updated_at = datetime.utcnow()
        return previous

    def to_summary_dict(self) -> dict:
        """Short form used in API responses and notifications."""
        return {
            "id": self.property_id,
            "salesStatus": self.sales_status.value if self.sales_status else None,
            "status": self.status.value,
            "lastModified": self.updated_at.isoformat(),
        }

    def to_dict(self) -> dict:
        """Convert property to dictionary for serialisation."""
        return {
            "property_id": self.property_id,
            "title": self.title,
            "price": str(self.price),
            "owner_id": self.owner_id,
            "address": self.address,
            "slug": self.slug,
            "sales_status": self.sales_status.value if self.sales_status else None,
            "status": self.status.value,
            "agents": [a.to_dict() for a in self.agents],
            "settlement_date": _iso(self.settlement_date),
            "contact_email": self.contact_email,
            "is_deleted": self.is_deleted,
            "last_modified_by": self.last_modified_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Property":
        """Create property from dictionary."""
        return cls(
            property_id=data["property_id"],
            title=data["title"],
            price=Decimal(data["price"]),
            owner_id=data["owner_id"],
            address=data.get("address", ""),
            slug=data.get("slug", ""),
            sales_status=SalesStatus.from_string(data.get("sales_status")),
            status=ListingStatus(data.get("status", ListingStatus.ACTIVE.value)),
            agents=[AgentAssignment.from_dict(a) for a in data.get("agents", [])],
            settlement_date=_parse_optional(data.get("settlement_date")),
            contact_email=data.get("contact_email"),
            is_deleted=data.get("is_deleted", False),
            last_modified_by=data.get("last_modified_by"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


# =============================================================================
# Settlement Details
# =============================================================================


@dataclass
class SettlementDetails:
    """
    Settlement terms supplied with a status change.

    Free-text contact fields are sanitised on parse: names trimmed,
    emails trimmed and lower-cased.
    """

    settlement_date: Optional[datetime] = None
    settlement_amount: Optional[Decimal] = None
    solicitor_name: Optional[str] = None
    solicitor_email: Optional[str] = None
    conveyancer_name: Optional[str] = None
    conveyancer_email: Optional[str] = None
    bank_details: Optional[dict] = None
    commission_rate: Optional[Decimal] = None  # Ignored for policy invoices
    legal_release_confirmed: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialisation."""
        return {
            "settlement_date": _iso(self.settlement_date),
            "settlement_amount": (
                str(self.settlement_amount) if self.settlement_amount is not None else None
            ),
            "solicitor_name": self.solicitor_name,
            "solicitor_email": self.solicitor_email,
            "conveyancer_name": self.conveyancer_name,
            "conveyancer_email": self.conveyancer_email,
            "bank_details": self.bank_details,
            "commission_rate": (
                str(self.commission_rate) if self.commission_rate is not None else None
            ),
            "legal_release_confirmed": self.legal_release_confirmed,
        }


def build_deposit_terms(price: Decimal, released_at: datetime) -> dict:
    """
    Deposit handling block recorded on the audit trail when a sale settles.

    The deposit is held off-platform in the agent's trust account and is
    released once the solicitor confirms settlement.
    """
    expected = (price * DEPOSIT_PERCENTAGE / Decimal("100")).quantize(Decimal("0.01"))
    return {
        "percentage": str(DEPOSIT_PERCENTAGE),
        "expected_amount": str(expected),
        "handler": "agent_trust_account",
        "currency": DEFAULT_CURRENCY,
        "release_status": "released",
        "released_at": released_at.isoformat(),
        "commission_deducted": True,
        "notes": (
            "Deposit handled off-platform via agent trust account "
            "after solicitor confirmation."
        ),
    }
