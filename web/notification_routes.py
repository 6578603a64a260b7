"""
Notification Routes - The Caller's In-App Notifications

Routes:
- GET  /notifications             - Caller's notifications, newest first
- POST /notifications/{id}/read   - Mark one as read

Admins also see the shared operator queue (recipient "admin").
"""

from fastapi import APIRouter, Depends, Query

from core.settlement import NotFoundError, SettlementServices, User
from core.settlement.notifications import ADMIN_RECIPIENT
from web.auth import get_settlement_services, require_actor
from web.responses import ok


router = APIRouter(prefix="/notifications", tags=["notifications"])


def _recipients(actor: User) -> list[str]:
    recipients = [actor.user_id]
    if actor.is_admin:
        recipients.append(ADMIN_RECIPIENT)
    return recipients


@router.get("")
def list_notifications(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    notifications = []
    for recipient in _recipients(actor):
        notifications.extend(services.store.list_for_user(recipient, unread_only=unread_only))
    notifications.sort(key=lambda n: n.created_at, reverse=True)

    return ok({
        "notifications": [n.to_dict() for n in notifications],
        "unreadCount": sum(services.store.unread_count(r) for r in _recipients(actor)),
    })


@router.post("/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    notification = services.store.get(notification_id)
    if notification is None or notification.recipient_id not in _recipients(actor):
        raise NotFoundError(f"Notification {notification_id} not found")

    notification = services.store.mark_read(notification_id, notification.recipient_id)
    return ok(notification.to_dict(), "Notification marked as read")
