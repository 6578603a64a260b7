"""
Property Routes - Sales Status Changes and Status History

Routes:
- PATCH /properties/{id_or_slug}/status          - Change the sales status
- GET   /properties/{id_or_slug}/status-history  - Audit trail, newest first

Notifications for an accepted change are delivered after the response is
sent; a delivery problem never changes the response.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from core.settlement import (
    AuthorizationError,
    ChangeSource,
    NotFoundError,
    RequestMetadata,
    SettlementServices,
    TransitionRequest,
    User,
)
from web.auth import get_settlement_services, require_actor
from web.responses import ok


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/properties", tags=["properties"])

SOURCE_HEADER = "X-Client-Source"


# =============================================================================
# Request Model
# =============================================================================


class StatusUpdateBody(BaseModel):
    """Body of a sales status change. camelCase keys as sent by the clients."""

    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = None
    change_reason: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("changeReason", "change_reason")
    )
    settlement_details: Optional[dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("settlementDetails", "settlement_details")
    )
    seller_id: Optional[Union[str, int]] = Field(
        default=None, validation_alias=AliasChoices("sellerId", "sellerID", "seller_id")
    )
    buyer_id: Optional[Union[str, int]] = Field(
        default=None, validation_alias=AliasChoices("buyerId", "buyerID", "buyer_id")
    )


def request_metadata(request: Request) -> RequestMetadata:
    """Snapshot of the caller's client for the audit entry."""
    raw_source = (request.headers.get(SOURCE_HEADER) or "").strip().lower()
    try:
        source = ChangeSource(raw_source) if raw_source else ChangeSource.WEB
    except ValueError:
        source = ChangeSource.WEB
    return RequestMetadata(
        user_agent=request.headers.get("User-Agent"),
        ip_address=request.client.host if request.client else None,
        source=source,
    )


# =============================================================================
# Routes
# =============================================================================


@router.patch("/{property_ref}/status")
def update_sales_status(
    property_ref: str,
    body: StatusUpdateBody,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    """
    Change a property's sales status.

    Settling issues the seller commission invoice, plus the buyer deposit
    invoice when buyerId is given and the platform commission invoice when
    the legal release is confirmed.
    """
    transition_request = TransitionRequest(
        status=body.status,
        change_reason=body.change_reason,
        settlement_details=body.settlement_details,
        seller_id=str(body.seller_id) if body.seller_id is not None else None,
        buyer_id=str(body.buyer_id) if body.buyer_id is not None else None,
        metadata=request_metadata(request),
    )
    result = services.engine.transition(property_ref, transition_request, actor)

    background_tasks.add_task(services.dispatcher.deliver_pending)
    return ok(result.to_response(), result.message)


@router.get("/{property_ref}/status-history")
def get_status_history(
    property_ref: str,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    """
    Status history of a property, newest first.

    Visible to admins, the owner and any agent ever assigned to the property.
    """
    prop = services.properties.get_by_ref(property_ref)
    if prop is None:
        raise NotFoundError("Property not found", {"property": property_ref})

    assigned = {a.agent_id for a in prop.agents}
    if not (actor.is_admin or actor.user_id == prop.owner_id or actor.user_id in assigned):
        raise AuthorizationError("Not authorised to view this property's history")

    entries = services.recorder.list_for_property(prop.property_id)
    return ok(
        {
            "property": prop.to_summary_dict(),
            "history": [entry.to_dict() for entry in entries],
        }
    )
