"""
This module defines the LifecycleService, the state machine of a pickup request.

    pending -> assigned -> [collected] -> completed*
    pending -> cancelled*

Every transition is a single conditional UPDATE whose WHERE clause carries the
precondition. When the row count is zero the current row is read back, inside
the same transaction, to report why the transition was refused.
"""

import logging
import math
import time
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

import holidays

from ..config import (
    CLAIM_MAX_RETRIES,
    CLAIM_RETRY_DELAY,
    HOLIDAY_COUNTRY,
    HOLIDAY_SUBDIV,
)
from ..exceptions import (
    AlreadyClaimed,
    Forbidden,
    InvalidInput,
    InvalidTransition,
    LedgerError,
    NotFound,
    StoreUnavailable,
)
from ..models import (
    CompletedRequest,
    Logistics,
    PendingRequest,
    RequestStatus,
    Role,
    Transaction,
    TransactionKind,
    WasteRequest,
    request_from_row,
)
from ..pricing import estimate, parse_waste_type
from .account_service import AccountService
from .ledger_service import LedgerService
from .notification_service import NotificationService
from .persistence_service import PersistenceService

logger = logging.getLogger(__name__)


class LifecycleService:
    """Creates requests and moves them through their legal transitions."""

    def __init__(
        self,
        persistence_service: PersistenceService,
        account_service: AccountService,
        ledger_service: LedgerService,
        notification_service: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = datetime.now,
        max_retries: int = CLAIM_MAX_RETRIES,
        retry_delay: float = CLAIM_RETRY_DELAY,
    ):
        self.persistence = persistence_service
        self.accounts = account_service
        self.ledger = ledger_service
        self.notifications = notification_service
        self.clock = clock
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.public_holidays = holidays.country_holidays(
            HOLIDAY_COUNTRY, subdiv=HOLIDAY_SUBDIV
        )

    # --- Creation ---

    def create(
        self, owner_id: int, waste_type, quantity_kg: float, logistics: Logistics
    ) -> PendingRequest:
        """
        Prices and stores a new pending request.

        Raises:
            InvalidInput: On a bad waste type, quantity or missing logistics.
            NotFound: If the owner has no account.
            Forbidden: If the owner is not a citizen account.
        """
        waste_type = parse_waste_type(waste_type)
        request_estimate = estimate(waste_type, quantity_kg)
        self._validate_logistics(logistics)

        if self.accounts.get_role(owner_id) is not Role.USER:
            raise Forbidden(f"User {owner_id} may not request pickups.")

        with self.persistence.transaction() as p:
            request_id = p.insert_request(
                owner_id=owner_id,
                waste_type=waste_type.value,
                quantity_kg=float(quantity_kg),
                estimated_value=request_estimate.value,
                estimated_green_coins=request_estimate.green_coins,
                address=logistics.address.strip(),
                lat=logistics.coordinates.lat,
                lng=logistics.coordinates.lng,
                preferred_time=logistics.preferred_time,
                description=(logistics.description or "").strip(),
                created_at=self.clock(),
            )
            request = request_from_row(p.get_request(request_id))

        logger.info(
            f"Created request {request.id} for user {owner_id}: {waste_type.value}, "
            f"{quantity_kg}kg, estimated {request_estimate.value} INR."
        )
        return request

    def _validate_logistics(self, logistics: Logistics) -> None:
        if logistics is None:
            raise InvalidInput("Pickup logistics are required.")
        if not logistics.address or not logistics.address.strip():
            raise InvalidInput("A pickup address is required.")
        if not isinstance(logistics.preferred_time, datetime):
            raise InvalidInput("A preferred pickup time is required.")

        coordinates = logistics.coordinates
        if coordinates is None:
            raise InvalidInput("Pickup coordinates are required.")
        for name, value, limit in (
            ("Latitude", coordinates.lat, 90),
            ("Longitude", coordinates.lng, 180),
        ):
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or not math.isfinite(value)
                or abs(value) > limit
            ):
                raise InvalidInput(f"{name} must be between -{limit} and {limit}.")

    # --- Transitions ---

    def accept(
        self,
        request_id: int,
        collector_id: int,
        scheduled_date: Optional[date] = None,
    ) -> WasteRequest:
        """
        Claims a pending request for a collector.

        Of any number of concurrent callers exactly one succeeds; the others
        get AlreadyClaimed. Lock timeouts are retried, then reported as
        StoreUnavailable.

        Raises:
            Forbidden: If the caller is not a collector, is inactive or was rejected.
            NotFound: If the request or collector does not exist.
            AlreadyClaimed: If another collector holds the request.
            InvalidTransition: If the request was cancelled.
        """
        collector = self.accounts.get(collector_id)
        if collector.role is not Role.COLLECTOR:
            raise Forbidden(f"User {collector_id} is not a collector.")
        if not collector.can_take_pickups:
            raise Forbidden(
                f"Collector {collector_id} is not taking pickups "
                f"(active={collector.is_active}, verification={collector.verification_status.value})."
            )

        today = self.clock().date()
        if scheduled_date is None:
            scheduled_date = self.next_pickup_date(today)
        elif isinstance(scheduled_date, datetime):
            scheduled_date = scheduled_date.date()
        if scheduled_date < today:
            raise InvalidInput(f"Scheduled date {scheduled_date} is in the past.")

        for attempt in range(self.max_retries):
            try:
                request = self._claim(request_id, collector_id, scheduled_date)
                break
            except StoreUnavailable as e:
                logger.warning(
                    f"Attempt {attempt + 1} to claim request {request_id} hit store contention: {e}"
                )
                if attempt + 1 == self.max_retries:
                    logger.error(
                        f"All {self.max_retries} claim attempts failed for request {request_id}."
                    )
                    raise
                time.sleep(self.retry_delay)

        logger.info(
            f"Collector {collector_id} claimed request {request_id} for {scheduled_date}."
        )
        return request

    def _claim(
        self, request_id: int, collector_id: int, scheduled_date: date
    ) -> WasteRequest:
        with self.persistence.transaction() as p:
            if not p.claim_request(request_id, collector_id, scheduled_date):
                row = p.get_request(request_id)
                if row is None:
                    raise NotFound(f"Request {request_id} does not exist.")
                if row["status"] == RequestStatus.CANCELLED.value:
                    raise InvalidTransition(f"Request {request_id} was cancelled.")
                raise AlreadyClaimed(
                    f"Request {request_id} is already {row['status']} by collector {row['collector_id']}."
                )
            request = request_from_row(p.get_request(request_id))
            self._notify(request)
        return request

    def mark_collected(self, request_id: int, collector_id: int) -> WasteRequest:
        """Records that the assigned collector has physically picked up the waste."""
        with self.persistence.transaction() as p:
            if not p.mark_request_collected(request_id, collector_id, self.clock()):
                self._raise_refusal(
                    p.get_request(request_id),
                    request_id,
                    collector_id,
                    {RequestStatus.ASSIGNED},
                    "mark as collected",
                )
            request = request_from_row(p.get_request(request_id))
            self._notify(request)

        logger.info(f"Collector {collector_id} collected request {request_id}.")
        return request

    def complete(
        self, request_id: int, collector_id: int, actual_value: Optional[float] = None
    ) -> Tuple[CompletedRequest, Transaction]:
        """
        Completes a request and credits its owner, as one atomic unit.

        Args:
            request_id: The request to complete.
            collector_id: Must be the assigned collector.
            actual_value: Collector-reported value; defaults to the estimate.

        Returns:
            The completed request and its pickup transaction.

        Raises:
            InvalidTransition: If the request is not assigned or collected.
            Forbidden: If the caller is not the assigned collector.
            LedgerError: If the ledger already holds a pickup entry for the request.
        """
        if actual_value is not None and (
            isinstance(actual_value, bool)
            or not isinstance(actual_value, (int, float))
            or not math.isfinite(actual_value)
            or actual_value < 0
        ):
            raise InvalidInput(f"Actual value must be a non-negative number, got {actual_value!r}.")

        try:
            with self.persistence.transaction() as p:
                if not p.complete_request(
                    request_id, collector_id, self.clock(), actual_value
                ):
                    self._raise_refusal(
                        p.get_request(request_id),
                        request_id,
                        collector_id,
                        {RequestStatus.ASSIGNED, RequestStatus.COLLECTED},
                        "complete",
                    )
                request = request_from_row(p.get_request(request_id))
                transaction = self.ledger.record(
                    user_id=request.owner_id,
                    kind=TransactionKind.PICKUP,
                    monetary_amount=request.actual_value,
                    green_coins=request.green_coins_earned,
                    description=(
                        f"Pickup completed: {request.waste_type.value} "
                        f"({request.quantity_kg:g}kg)"
                    ),
                    related_request_id=request.id,
                    collector_id=collector_id,
                    quantity_kg=request.quantity_kg,
                )
                self._notify(request)
        except LedgerError:
            logger.critical(
                f"Ledger refused the pickup credit for request {request_id}; completion rolled back."
            )
            raise

        logger.info(
            f"Collector {collector_id} completed request {request_id}; "
            f"transaction {transaction.id} credited user {request.owner_id}."
        )
        return request, transaction

    def cancel(self, request_id: int, requester_id: int) -> WasteRequest:
        """
        Cancels a pending request. Only its owner or an administrator may do so.

        Raises:
            Forbidden: If the requester is neither owner nor admin.
            InvalidTransition: If the request is no longer pending.
        """
        role = self.accounts.get_role(requester_id)

        with self.persistence.transaction() as p:
            row = p.get_request(request_id)
            if row is None:
                raise NotFound(f"Request {request_id} does not exist.")
            if row["owner_id"] != requester_id and role is not Role.ADMIN:
                raise Forbidden(
                    f"User {requester_id} may not cancel request {request_id}."
                )
            if not p.cancel_request(request_id, requester_id, self.clock()):
                raise InvalidTransition(
                    f"Request {request_id} is {row['status']} and can no longer be cancelled."
                )
            request = request_from_row(p.get_request(request_id))
            if requester_id != request.owner_id:
                self._notify(request)

        logger.info(f"User {requester_id} cancelled request {request_id}.")
        return request

    def _raise_refusal(
        self, row, request_id: int, collector_id: int, allowed, action: str
    ) -> None:
        """Explains why a conditional update matched no row."""
        if row is None:
            raise NotFound(f"Request {request_id} does not exist.")
        status = RequestStatus(row["status"])
        if status not in allowed:
            raise InvalidTransition(
                f"Cannot {action} request {request_id} while it is {status.value}."
            )
        if row["collector_id"] != collector_id:
            raise Forbidden(
                f"Collector {collector_id} is not assigned to request {request_id}."
            )
        raise InvalidTransition(f"Cannot {action} request {request_id}.")

    def _notify(self, request: WasteRequest) -> None:
        if self.notifications is not None:
            self.notifications.queue_status_update(request)

    # --- Reads ---

    def get(self, request_id: int) -> WasteRequest:
        with self.persistence.read_only() as p:
            row = p.get_request(request_id)
        if row is None:
            raise NotFound(f"Request {request_id} does not exist.")
        return request_from_row(row)

    def list_pending(self) -> List[PendingRequest]:
        """Returns requests waiting for a collector, newest first."""
        return self.list_requests(status=RequestStatus.PENDING)

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        owner_id: Optional[int] = None,
        collector_id: Optional[int] = None,
    ) -> List[WasteRequest]:
        if status is not None:
            try:
                status = RequestStatus(status)
            except ValueError:
                raise InvalidInput(f"Unknown status '{status}'.") from None
        with self.persistence.read_only() as p:
            rows = p.get_requests(
                status=status.value if status else None,
                owner_id=owner_id,
                collector_id=collector_id,
            )
        return [request_from_row(row) for row in rows]

    def next_pickup_date(self, after: date) -> date:
        """First day after the given date that is not a public holiday."""
        candidate = after + timedelta(days=1)
        while candidate in self.public_holidays:
            candidate += timedelta(days=1)
        return candidate
