"""
This module defines the NotificationService for handling notifications.

Status changes are written to an outbox (``notification_logs``) inside the
same store transaction as the change itself; the Telegram dispatcher drains
the outbox later.
"""

from typing import Any, Dict, List, Optional

from ..models import (
    AssignedRequest,
    CancelledRequest,
    CollectedRequest,
    CompletedRequest,
    WasteRequest,
    WasteType,
)
from .persistence_service import PersistenceService

_WASTE_TYPE_EMOJI = {
    WasteType.PLASTIC: "🧴",
    WasteType.PAPER: "📰",
    WasteType.METAL: "🔩",
    WasteType.E_WASTE: "🔌",
    WasteType.ORGANIC: "🥬",
    WasteType.CARDBOARD: "📦",
    WasteType.GLASS: "🍾",
}


class NotificationService:
    """Handles the business logic for creating and sending notifications."""

    def __init__(self, persistence_service: PersistenceService):
        self.persistence = persistence_service

    def queue_status_update(self, request: WasteRequest) -> Optional[int]:
        """
        Queues a message telling the owner about the request's new status.

        Returns:
            The notification log ID, or None if the owner has no linked chat.
        """
        message = self.build_message(request)
        if message is None:
            return None

        with self.persistence as p:
            owner = p.get_user(request.owner_id)
            if owner is None or owner["telegram_chat_id"] is None:
                return None
            return p.create_notification_log(
                owner["id"], request.id, owner["telegram_chat_id"], message
            )

    def build_message(self, request: WasteRequest) -> Optional[str]:
        """Returns the owner-facing text for a request's current state."""
        emoji = self._get_waste_type_emoji(request.waste_type)
        label = f"{request.waste_type.value} pickup #{request.id}"

        if isinstance(request, AssignedRequest):
            return (
                f"{emoji} Your {label} was accepted and is scheduled for "
                f"{request.scheduled_date.isoformat()}."
            )
        if isinstance(request, CollectedRequest):
            return f"{emoji} Your {label} has been collected."
        if isinstance(request, CompletedRequest):
            return (
                f"✅ Your {label} is complete! You earned ₹{request.actual_value:g} "
                f"and {request.green_coins_earned} GreenCoins."
            )
        if isinstance(request, CancelledRequest):
            return f"❌ Your {label} was cancelled."
        return None

    def _get_waste_type_emoji(self, waste_type: WasteType) -> str:
        """Returns an emoji for a given waste type."""
        return _WASTE_TYPE_EMOJI.get(waste_type, "🗑️")

    def get_due_notifications(self) -> List[Dict[str, Any]]:
        """
        Gathers all notifications that are waiting to be sent.

        Returns:
            A list of dictionaries, where each dictionary represents a notification task.
        """
        with self.persistence.read_only() as p:
            rows = p.get_pending_notifications()
        return [
            {
                "log_id": row["id"],
                "user_id": row["user_id"],
                "request_id": row["request_id"],
                "chat_id": row["chat_id"],
                "message": row["message"],
            }
            for row in rows
        ]

    def update_notification_log(
        self, log_id: int, status: str, error_message: Optional[str] = None
    ) -> None:
        """Updates the status of a notification log."""
        with self.persistence as p:
            p.update_notification_log_status(log_id, status, error_message)
