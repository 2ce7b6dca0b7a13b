"""
This module defines the central facade for the pickup platform.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .calendar_export import build_collector_calendar
from .exceptions import Forbidden, InvalidInput, PickupError
from .models import (
    CompletedRequest,
    Coordinates,
    Logistics,
    PendingRequest,
    Role,
    Transaction,
    UserAccount,
    VerificationStatus,
    WasteRequest,
)
from .services.account_service import AccountService
from .services.analytics_service import DEFAULT_TIMEFRAME, AnalyticsService
from .services.ledger_service import LedgerService
from .services.lifecycle_service import LifecycleService
from .services.notification_service import NotificationService
from .services.persistence_service import PersistenceService

logger = logging.getLogger(__name__)


class PickupPlatformFacade:
    """
    The central entry point for the pickup platform.
    It orchestrates the various services to perform high-level operations.

    Identities passed in are assumed to be verified by the transport layer;
    the facade only checks what each role may do.
    """

    def __init__(
        self,
        persistence_service: PersistenceService,
        account_service: AccountService,
        lifecycle_service: LifecycleService,
        ledger_service: LedgerService,
        analytics_service: AnalyticsService,
        notification_service: NotificationService,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.persistence_service = persistence_service
        self.account_service = account_service
        self.lifecycle_service = lifecycle_service
        self.ledger_service = ledger_service
        self.analytics_service = analytics_service
        self.notification_service = notification_service
        self.clock = clock

    @contextmanager
    def _operation(self, description: str):
        """Logs expected errors as warnings and unexpected ones with a traceback."""
        try:
            yield
        except PickupError as e:
            logger.warning(f"Could not {description}: {e}")
            raise
        except Exception as e:
            logger.exception(f"An unexpected error occurred while trying to {description}: {e}")
            raise

    def _require_self_or_admin(self, requester_id: int, subject_id: int) -> None:
        if requester_id == subject_id:
            return
        if self.account_service.get_role(requester_id) is not Role.ADMIN:
            raise Forbidden(
                f"User {requester_id} may not view data belonging to user {subject_id}."
            )

    def _require_role(self, user_id: int, *roles: Role) -> None:
        if self.account_service.get_role(user_id) not in roles:
            raise Forbidden(f"User {user_id} lacks the required role.")

    # --- Accounts ---

    def register_user(
        self, name: str, role: Role = Role.USER, telegram_chat_id: Optional[int] = None
    ) -> UserAccount:
        with self._operation(f"register account '{name}'"):
            return self.account_service.register(name, role, telegram_chat_id)

    def issue_link_code(self, requester_id: int, user_id: int) -> str:
        """Returns a one-time code the user sends to the bot with /link."""
        with self._operation(f"issue a Telegram link code for user {user_id}"):
            self._require_self_or_admin(requester_id, user_id)
            return self.account_service.issue_link_code(user_id)

    def redeem_link_code(self, code: str, chat_id: int) -> UserAccount:
        """Routes a user's pickup notifications to the chat that redeemed the code."""
        with self._operation(f"redeem a link code for chat {chat_id}"):
            return self.account_service.redeem_link_code(code, chat_id)

    def find_account_by_telegram_chat(self, chat_id: int) -> Optional[UserAccount]:
        with self._operation(f"look up the account linked to chat {chat_id}"):
            return self.account_service.find_by_telegram_chat(chat_id)

    def verify_collector(
        self,
        admin_id: int,
        collector_id: int,
        status: VerificationStatus,
        notes: Optional[str] = None,
    ) -> UserAccount:
        with self._operation(f"update verification of collector {collector_id}"):
            return self.account_service.verify_collector(
                admin_id, collector_id, status, notes
            )

    def set_collector_active(
        self, requester_id: int, collector_id: int, active: bool
    ) -> UserAccount:
        """Lets a collector (or an admin) pause or resume taking new pickups."""
        with self._operation(f"change availability of collector {collector_id}"):
            self._require_self_or_admin(requester_id, collector_id)
            return self.account_service.set_collector_active(collector_id, active)

    # --- Pickup lifecycle ---

    def create_request(
        self,
        owner_id: int,
        waste_type: str,
        quantity_kg: float,
        address: str,
        lat: float,
        lng: float,
        preferred_time,
        description: str = "",
    ) -> PendingRequest:
        """
        Submits a pickup request on behalf of a citizen.

        Args:
            owner_id: The citizen's user ID.
            waste_type: Canonical waste type or free text close to one.
            quantity_kg: Weight in kilograms.
            address: Pickup address.
            lat: Latitude of the pickup point.
            lng: Longitude of the pickup point.
            preferred_time: A datetime or an ISO 8601 string.
            description: Optional notes for the collector.

        Returns:
            The pending request with its price estimate attached.
        """
        with self._operation(f"create a request for user {owner_id}"):
            if isinstance(preferred_time, str):
                try:
                    preferred_time = datetime.fromisoformat(preferred_time)
                except ValueError:
                    raise InvalidInput(
                        f"Preferred time '{preferred_time}' is not an ISO date-time."
                    ) from None
            logistics = Logistics(
                address=address,
                coordinates=Coordinates(lat=lat, lng=lng),
                preferred_time=preferred_time,
                description=description or "",
            )
            return self.lifecycle_service.create(
                owner_id, waste_type, quantity_kg, logistics
            )

    def accept_request(
        self, request_id: int, collector_id: int, scheduled_date: Optional[date] = None
    ) -> WasteRequest:
        with self._operation(f"accept request {request_id} for collector {collector_id}"):
            return self.lifecycle_service.accept(request_id, collector_id, scheduled_date)

    def mark_collected(self, request_id: int, collector_id: int) -> WasteRequest:
        with self._operation(f"mark request {request_id} as collected"):
            return self.lifecycle_service.mark_collected(request_id, collector_id)

    def complete_request(
        self, request_id: int, collector_id: int, actual_value: Optional[float] = None
    ) -> Tuple[CompletedRequest, Transaction]:
        with self._operation(f"complete request {request_id}"):
            return self.lifecycle_service.complete(request_id, collector_id, actual_value)

    def cancel_request(self, request_id: int, requester_id: int) -> WasteRequest:
        with self._operation(f"cancel request {request_id}"):
            return self.lifecycle_service.cancel(request_id, requester_id)

    def get_request(self, request_id: int) -> WasteRequest:
        with self._operation(f"load request {request_id}"):
            return self.lifecycle_service.get(request_id)

    def list_pending(self, collector_id: int) -> List[PendingRequest]:
        """Pending requests a collector can claim."""
        with self._operation(f"list pending requests for user {collector_id}"):
            self._require_role(collector_id, Role.COLLECTOR, Role.ADMIN)
            return self.lifecycle_service.list_pending()

    def list_requests(
        self,
        status: Optional[str] = None,
        owner_id: Optional[int] = None,
        collector_id: Optional[int] = None,
    ) -> List[WasteRequest]:
        with self._operation("list requests"):
            return self.lifecycle_service.list_requests(status, owner_id, collector_id)

    # --- Ledger ---

    def get_transactions(self, requester_id: int, user_id: int) -> List[Transaction]:
        with self._operation(f"list transactions of user {user_id}"):
            self._require_self_or_admin(requester_id, user_id)
            return self.ledger_service.transactions_for(user_id)

    def adjust_green_coins(
        self, admin_id: int, user_id: int, amount: int, description: str
    ) -> Transaction:
        with self._operation(f"adjust GreenCoins of user {user_id}"):
            return self.ledger_service.adjust_green_coins(
                admin_id, user_id, amount, description
            )

    def reconcile_balances(self, requester_id: int) -> List[Dict[str, int]]:
        with self._operation("reconcile balances"):
            self._require_role(requester_id, Role.ADMIN)
            return self.ledger_service.reconcile()

    # --- Statistics ---

    def get_user_stats(self, requester_id: int, user_id: int) -> Dict[str, Any]:
        with self._operation(f"compute statistics for user {user_id}"):
            self._require_self_or_admin(requester_id, user_id)
            return self.analytics_service.user_stats(user_id)

    def get_collector_stats(self, requester_id: int, collector_id: int) -> Dict[str, Any]:
        with self._operation(f"compute statistics for collector {collector_id}"):
            self._require_self_or_admin(requester_id, collector_id)
            return self.analytics_service.collector_stats(collector_id)

    def get_platform_stats(
        self, requester_id: int, timeframe: str = DEFAULT_TIMEFRAME
    ) -> Dict[str, Any]:
        with self._operation("compute platform statistics"):
            self._require_role(requester_id, Role.ADMIN)
            return self.analytics_service.platform_stats(timeframe)

    def export_collector_schedule(self, collector_id: int) -> bytes:
        """Returns the collector's assigned pickups as an iCalendar document."""
        with self._operation(f"export the schedule of collector {collector_id}"):
            collector = self.account_service.get(collector_id)
            if collector.role is not Role.COLLECTOR:
                raise InvalidInput(f"User {collector_id} is not a collector.")
            requests = self.lifecycle_service.list_requests(collector_id=collector_id)
            return build_collector_calendar(collector.name, requests, self.clock())

    def get_dashboard_data(self, timeframe: str = DEFAULT_TIMEFRAME) -> dict:
        """Retrieves all necessary data for the dashboard."""
        try:
            stats = self.analytics_service.platform_stats(timeframe)
            with self.persistence_service.read_only() as p:
                logs = [dict(row) for row in p.get_all_logs()]
            return {"stats": stats, "logs": logs}
        except Exception as e:
            logger.exception("Failed to retrieve dashboard data.")
            return {"stats": None, "logs": [], "error": str(e)}

    # --- Notification Cycle Methods ---

    def get_due_notifications(self) -> List[dict]:
        """Gets all notifications that are due to be sent."""
        try:
            return self.notification_service.get_due_notifications()
        except Exception:
            logger.exception("Failed to get due notifications.")
            return []

    def update_notification_log(
        self, log_id: int, status: str, error_message: Optional[str] = None
    ) -> None:
        """Updates the status of a sent notification."""
        try:
            self.notification_service.update_notification_log(
                log_id, status, error_message
            )
        except Exception:
            logger.exception(f"Failed to update notification log for log_id {log_id}.")
