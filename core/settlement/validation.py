"""
Status Change Validation - Request Checks and Authorization Gate

Every check here runs before any write. Field problems are collected into
a single result so the caller sees all of them at once; authorization and
listing-state checks raise immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from core.settlement.directory import User
from core.settlement.errors import AuthorizationError, FieldError, ValidationError
from core.settlement.schema import (
    MAX_CHANGE_REASON_LENGTH,
    MAX_SETTLEMENT_DAYS_AHEAD,
    ListingStatus,
    Property,
    SalesStatus,
    SettlementDetails,
    is_canonical_progression,
    parse_iso_datetime,
    to_decimal,
)


logger = logging.getLogger(__name__)

VALID_STATUS_VALUES = ", ".join(s.value for s in SalesStatus)

# Accepted spellings for settlement detail keys
_SETTLEMENT_ALIASES: dict[str, str] = {
    "settlementDate": "settlement_date",
    "settlementAmount": "settlement_amount",
    "solicitorName": "solicitor_name",
    "solicitorEmail": "solicitor_email",
    "conveyancerName": "conveyancer_name",
    "conveyancerEmail": "conveyancer_email",
    "bankDetails": "bank_details",
    "commissionRate": "commission_rate",
    "legalReleaseConfirmed": "legal_release_confirmed",
}


# =============================================================================
# Validation Result
# =============================================================================


@dataclass(frozen=True)
class TransitionValidationResult:
    """
    Result of validating a status change request.

    ``status`` and ``settlement`` hold the parsed values when valid.
    """

    errors: tuple[FieldError, ...]
    status: Optional[SalesStatus] = None
    settlement: Optional[SettlementDetails] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise ValidationError listing every failing field."""
        if self.errors:
            raise ValidationError("Validation failed", list(self.errors))

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
        }


# =============================================================================
# Field Validation
# =============================================================================


def _clean_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_email(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def parse_settlement_details(
    raw: Optional[dict],
    now: Optional[datetime] = None,
) -> tuple[Optional[SettlementDetails], list[FieldError]]:
    """
    Parse and sanitise settlement details.

    Returns:
        Tuple of (details or None, field errors)
    """
    if raw is None:
        return None, []
    if not isinstance(raw, dict):
        return None, [FieldError("settlementDetails", "Settlement details must be an object")]

    data = {_SETTLEMENT_ALIASES.get(k, k): v for k, v in raw.items()}
    errors: list[FieldError] = []
    now = now or datetime.utcnow()

    settlement_date = None
    if data.get("settlement_date") is not None:
        try:
            settlement_date = parse_iso_datetime(data["settlement_date"])
        except ValueError:
            errors.append(FieldError(
                "settlementDetails.settlementDate",
                "Settlement date must be a valid date",
                data["settlement_date"],
            ))
        else:
            today = now.replace(hour=0, minute=0, second=0, microsecond=0)
            if settlement_date > today + timedelta(days=MAX_SETTLEMENT_DAYS_AHEAD):
                errors.append(FieldError(
                    "settlementDetails.settlementDate",
                    "Settlement date cannot be more than 1 year in the future",
                    data["settlement_date"],
                ))

    commission_rate = None
    if data.get("commission_rate") is not None:
        try:
            commission_rate = to_decimal(data["commission_rate"], "commission_rate")
        except ValueError:
            commission_rate = None
        if commission_rate is None or not (Decimal("0") <= commission_rate <= Decimal("100")):
            errors.append(FieldError(
                "settlementDetails.commissionRate",
                "Commission rate must be between 0 and 100",
                data["commission_rate"],
            ))
            commission_rate = None

    settlement_amount = None
    if data.get("settlement_amount") is not None:
        try:
            settlement_amount = to_decimal(data["settlement_amount"], "settlement_amount")
        except ValueError:
            errors.append(FieldError(
                "settlementDetails.settlementAmount",
                "Settlement amount must be a number",
                data["settlement_amount"],
            ))

    legal_release = data.get("legal_release_confirmed", False)
    if legal_release is None:
        legal_release = False
    if not isinstance(legal_release, bool):
        errors.append(FieldError(
            "settlementDetails.legalReleaseConfirmed",
            "legalReleaseConfirmed must be a boolean",
            legal_release,
        ))
        legal_release = False

    bank_details = data.get("bank_details")
    if bank_details is not None and not isinstance(bank_details, dict):
        errors.append(FieldError(
            "settlementDetails.bankDetails", "Bank details must be an object", bank_details
        ))
        bank_details = None

    details = SettlementDetails(
        settlement_date=settlement_date,
        settlement_amount=settlement_amount,
        solicitor_name=_clean_name(data.get("solicitor_name")),
        solicitor_email=_clean_email(data.get("solicitor_email")),
        conveyancer_name=_clean_name(data.get("conveyancer_name")),
        conveyancer_email=_clean_email(data.get("conveyancer_email")),
        bank_details=bank_details,
        commission_rate=commission_rate,
        legal_release_confirmed=legal_release,
    )
    return details, errors


def validate_transition_request(
    prop: Property,
    status: Any,
    change_reason: Optional[str] = None,
    settlement_details: Optional[dict] = None,
    seller_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionValidationResult:
    """
    Validate the request fields of a status change.

    Args:
        prop: Target property
        status: Requested status value
        change_reason: Optional free-text reason
        settlement_details: Optional raw settlement details
        seller_id: Optional seller reference; must match the owner
        now: Clock override for date checks

    Returns:
        TransitionValidationResult with every failing field
    """
    errors: list[FieldError] = []

    if prop.is_deleted:
        errors.append(FieldError("id", "Cannot update status of deleted property", prop.property_id))

    parsed_status = None
    if status is None or (isinstance(status, str) and not status.strip()):
        errors.append(FieldError("status", "Status is required"))
    else:
        try:
            parsed_status = SalesStatus(status)
        except ValueError:
            parsed_status = None
        if parsed_status is None:
            errors.append(FieldError(
                "status",
                f"Invalid status. Must be one of: {VALID_STATUS_VALUES}",
                status,
            ))

    if change_reason is not None and len(change_reason.strip()) > MAX_CHANGE_REASON_LENGTH:
        errors.append(FieldError(
            "changeReason",
            f"Change reason cannot exceed {MAX_CHANGE_REASON_LENGTH} characters",
        ))

    if seller_id is not None and str(seller_id) != prop.owner_id:
        errors.append(FieldError(
            "sellerId", "Seller ID does not match the property owner", seller_id
        ))

    details, detail_errors = parse_settlement_details(settlement_details, now=now)
    errors.extend(detail_errors)

    return TransitionValidationResult(
        errors=tuple(errors),
        status=parsed_status,
        settlement=details,
    )


# =============================================================================
# Authorization and State Checks
# =============================================================================


def authorize_transition(prop: Property, actor: User) -> None:
    """
    Check the caller may change this property's sales status.

    Admins bypass the assignment check. Agents must be the acting agent.

    Raises:
        AuthorizationError: If the caller is not allowed
    """
    if actor.is_admin:
        return

    if not actor.is_agent:
        raise AuthorizationError(
            "Access denied. Only agents can update property sales status",
            {"required_role": "agent", "user_role": actor.role.value},
        )

    if not prop.is_active_agent(actor.user_id):
        active = prop.active_agent
        raise AuthorizationError(
            "Access denied. You are not assigned to this property",
            {
                "property_id": prop.property_id,
                "assigned_agents": [active.agent_id] if active else [],
            },
        )


def check_listing_state(prop: Property, requested: SalesStatus) -> None:
    """
    Sold listings only accept ``settled``.

    Raises:
        ValidationError: If the listing is sold and the request is not settling
    """
    if prop.status == ListingStatus.SOLD and requested != SalesStatus.SETTLED:
        raise ValidationError(
            "Cannot change status of sold property unless settling",
            [FieldError("status", "Property is sold", requested.value)],
            {"current_property_status": prop.status.value},
        )


def check_progression(
    prop: Property,
    requested: SalesStatus,
    strict: bool = False,
) -> Optional[str]:
    """
    Compare a requested status with the canonical progression.

    Returns:
        A warning message for an off-progression change, or None

    Raises:
        ValidationError: If ``strict`` and the change is off-progression
    """
    current = prop.sales_status
    if is_canonical_progression(current, requested):
        return None

    message = (
        f"Unusual status progression: {current.value if current else None} -> "
        f"{requested.value} for property {prop.property_id}"
    )
    if strict:
        raise ValidationError(
            "Status change does not follow the sales progression",
            [FieldError("status", message, requested.value)],
        )

    logger.warning(message)
    return message
