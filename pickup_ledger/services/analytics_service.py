"""
This module defines the AnalyticsService, which derives statistics from history.

Nothing here writes to the store, and no figure is read from a cached counter:
every number is recomputed from waste requests and ledger entries loaded in a
single store transaction.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Tuple

from ..config import CO2_SAVED_PER_KG
from ..exceptions import InvalidInput, NotFound
from ..models import (
    AssignedRequest,
    CollectedRequest,
    CompletedRequest,
    PendingRequest,
    Role,
    Transaction,
    TransactionKind,
    UserAccount,
    WasteRequest,
    request_from_row,
)
from .ledger_service import eco_score_for
from .persistence_service import PersistenceService

logger = logging.getLogger(__name__)

TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_TIMEFRAME = "30d"
GROWTH_KINDS = ("users", "collectors", "requests", "waste", "revenue")


class _Snapshot(NamedTuple):
    users: Dict[int, UserAccount]
    requests: List[WasteRequest]
    transactions: List[Transaction]


def waste_type_breakdown(completed_requests: Iterable[WasteRequest]) -> List[Dict[str, Any]]:
    """
    Groups completed requests by waste type.

    Each entry holds the total quantity, the number of pickups and the share
    of the overall quantity in percent, rounded to one decimal. When the
    overall quantity is zero every share is 0.
    """
    quantities: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for request in completed_requests:
        quantities[request.waste_type.value] += request.quantity_kg
        counts[request.waste_type.value] += 1

    total = sum(quantities.values())
    breakdown = [
        {
            "type": waste_type,
            "quantity": quantity,
            "count": counts[waste_type],
            "percentage": round(quantity / total * 100, 1) if total > 0 else 0,
        }
        for waste_type, quantity in quantities.items()
    ]
    breakdown.sort(key=lambda entry: (-entry["quantity"], entry["type"]))
    return breakdown


def _month_starts(today: date, months: int = 12) -> List[date]:
    """First day of each of the last ``months`` months, oldest first."""
    starts = []
    year, month = today.year, today.month
    for _ in range(months):
        starts.append(date(year, month, 1))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return starts[::-1]


class AnalyticsService:
    """Read-only statistics for citizens, collectors and administrators."""

    def __init__(
        self,
        persistence_service: PersistenceService,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.persistence = persistence_service
        self.clock = clock

    def _load(self) -> _Snapshot:
        with self.persistence.read_only() as p:
            users = {row["id"]: UserAccount.from_row(row) for row in p.get_users()}
            requests = [request_from_row(row) for row in p.get_requests()]
            transactions = [Transaction.from_row(row) for row in p.get_transactions()]
        return _Snapshot(users, requests, transactions)

    # --- Series ---

    def growth_series(
        self, entity_kind: str, start_date: date, end_date: date = None
    ) -> List[Tuple[date, float]]:
        """
        Buckets creation or completion events by calendar day.

        Args:
            entity_kind: One of users, collectors, requests, waste, revenue.
            start_date: First day of the window.
            end_date: Last day of the window, today by default.

        Returns:
            One (day, value) pair per day in the window, oldest first, with
            zero for days without events.
        """
        return self._growth_series(self._load(), entity_kind, start_date, end_date)

    def _growth_series(
        self, snapshot: _Snapshot, entity_kind: str, start_date: date, end_date: date = None
    ) -> List[Tuple[date, float]]:
        if entity_kind not in GROWTH_KINDS:
            raise InvalidInput(f"Unknown growth series '{entity_kind}'.")
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        end_date = end_date or self.clock().date()
        if isinstance(end_date, datetime):
            end_date = end_date.date()
        if start_date > end_date:
            raise InvalidInput("The series must start on or before its end date.")

        if entity_kind in ("users", "collectors"):
            role = Role.USER if entity_kind == "users" else Role.COLLECTOR
            events = [
                (user.created_at.date(), 1)
                for user in snapshot.users.values()
                if user.role is role
            ]
        elif entity_kind == "requests":
            events = [(request.created_at.date(), 1) for request in snapshot.requests]
        else:
            events = [
                (
                    request.completed_at.date(),
                    request.quantity_kg if entity_kind == "waste" else request.actual_value,
                )
                for request in snapshot.requests
                if isinstance(request, CompletedRequest)
            ]

        buckets = {
            start_date + timedelta(days=offset): 0
            for offset in range((end_date - start_date).days + 1)
        }
        for day, amount in events:
            if day in buckets:
                buckets[day] += amount
        return list(buckets.items())

    # --- Rankings ---

    def top_collectors(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Collectors ranked by completed pickups; ties go to the lower collector ID."""
        return self._top_collectors(self._load(), limit)

    def _top_collectors(self, snapshot: _Snapshot, limit: int) -> List[Dict[str, Any]]:
        if limit < 1:
            raise InvalidInput("The leaderboard limit must be at least 1.")

        totals: Dict[int, Dict[str, Any]] = {}
        for request in snapshot.requests:
            if not isinstance(request, CompletedRequest):
                continue
            entry = totals.setdefault(
                request.collector_id,
                {"total_pickups": 0, "total_waste_kg": 0.0, "total_earnings": 0.0},
            )
            entry["total_pickups"] += 1
            entry["total_waste_kg"] += request.quantity_kg
            entry["total_earnings"] += request.actual_value

        ranked = sorted(
            totals.items(), key=lambda item: (-item[1]["total_pickups"], item[0])
        )[:limit]
        return [
            {
                "collector_id": collector_id,
                "name": snapshot.users[collector_id].name
                if collector_id in snapshot.users
                else None,
                **entry,
            }
            for collector_id, entry in ranked
        ]

    # --- Per-account statistics ---

    def user_stats(self, user_id: int) -> Dict[str, Any]:
        """Pickup, earnings and reward figures for one citizen."""
        snapshot = self._load()
        user = snapshot.users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} does not exist.")

        requests = [r for r in snapshot.requests if r.owner_id == user_id]
        completed = [r for r in requests if isinstance(r, CompletedRequest)]
        transactions = [t for t in snapshot.transactions if t.user_id == user_id]
        pickup_credits = [t for t in transactions if t.kind is TransactionKind.PICKUP]

        waste_collected = sum(r.quantity_kg for r in completed)
        total_earnings = sum(t.monetary_amount for t in pickup_credits)
        upcoming = [r.scheduled_date for r in requests if isinstance(r, AssignedRequest)]

        return {
            "user": {
                "id": user.id,
                "name": user.name,
                "green_coins": user.green_coins,
                "eco_score": user.eco_score,
                "joined_at": user.created_at.isoformat(),
            },
            "overview": {
                "total_pickups": len(completed),
                "pending_pickups": sum(isinstance(r, PendingRequest) for r in requests),
                "active_pickups": sum(
                    isinstance(r, (AssignedRequest, CollectedRequest)) for r in requests
                ),
                "waste_collected_kg": waste_collected,
                "total_earnings": total_earnings,
                "green_coins": sum(t.green_coins for t in transactions),
                "eco_score": sum(eco_score_for(r.quantity_kg) for r in completed),
                "co2_saved_kg": waste_collected * CO2_SAVED_PER_KG,
                "avg_pickup_value": round(total_earnings / len(completed), 2)
                if completed
                else 0,
                "next_pickup": min(upcoming).isoformat() if upcoming else None,
            },
            "trends": {
                "monthly": self._monthly(
                    completed,
                    earnings=[(t.created_at, t.monetary_amount) for t in pickup_credits],
                ),
                "waste_types": waste_type_breakdown(completed),
            },
            "recent_transactions": [
                t.to_dict()
                for t in sorted(
                    transactions, key=lambda t: (t.created_at, t.id), reverse=True
                )[:10]
            ],
        }

    def collector_stats(self, collector_id: int) -> Dict[str, Any]:
        """Performance figures for one collector."""
        snapshot = self._load()
        collector = snapshot.users.get(collector_id)
        if collector is None or collector.role is not Role.COLLECTOR:
            raise NotFound(f"Collector {collector_id} does not exist.")

        claimed = [
            r
            for r in snapshot.requests
            if getattr(r, "collector_id", None) == collector_id
        ]
        completed = [r for r in claimed if isinstance(r, CompletedRequest)]
        total_earnings = sum(r.actual_value for r in completed)
        waste_collected = sum(r.quantity_kg for r in completed)

        return {
            "collector": {
                "id": collector.id,
                "name": collector.name,
                "joined_at": collector.created_at.isoformat(),
                "verification_status": collector.verification_status.value,
                "is_active": collector.is_active,
            },
            "performance": {
                "total_pickups": len(completed),
                "assigned_pickups": sum(
                    isinstance(r, (AssignedRequest, CollectedRequest)) for r in claimed
                ),
                "total_earnings": total_earnings,
                "waste_collected_kg": waste_collected,
                "completion_rate": round(len(completed) / len(claimed) * 100, 1)
                if claimed
                else 0,
                "avg_earnings_per_pickup": round(total_earnings / len(completed), 2)
                if completed
                else 0,
                "efficiency_kg_per_pickup": round(waste_collected / len(completed), 1)
                if completed
                else 0,
            },
            "trends": {
                "monthly": self._monthly(
                    completed,
                    earnings=[(r.completed_at, r.actual_value) for r in completed],
                ),
                "waste_types": waste_type_breakdown(completed),
            },
        }

    def platform_stats(self, timeframe: str = DEFAULT_TIMEFRAME) -> Dict[str, Any]:
        """Administrator overview: totals, growth curves and rankings."""
        if timeframe not in TIMEFRAMES:
            logger.warning(
                f"Unknown timeframe '{timeframe}', falling back to {DEFAULT_TIMEFRAME}."
            )
            timeframe = DEFAULT_TIMEFRAME

        snapshot = self._load()
        today = self.clock().date()
        start_date = today - timedelta(days=TIMEFRAMES[timeframe])

        completed = [r for r in snapshot.requests if isinstance(r, CompletedRequest)]
        total_requests = len(snapshot.requests)
        waste_total = sum(r.quantity_kg for r in completed)

        return {
            "overview": {
                "total_users": sum(u.role is Role.USER for u in snapshot.users.values()),
                "total_collectors": sum(
                    u.role is Role.COLLECTOR for u in snapshot.users.values()
                ),
                "total_requests": total_requests,
                "completed_requests": len(completed),
                "pending_requests": sum(
                    isinstance(r, PendingRequest) for r in snapshot.requests
                ),
                "total_waste_collected_kg": waste_total,
                "total_revenue": sum(r.actual_value for r in completed),
                "green_coins_issued": sum(
                    t.green_coins for t in snapshot.transactions if t.green_coins > 0
                ),
                "co2_saved_kg": waste_total * CO2_SAVED_PER_KG,
                "completion_rate": round(len(completed) / total_requests * 100, 1)
                if total_requests
                else 0,
            },
            "growth": {
                kind: [
                    {"day": day.isoformat(), "value": value}
                    for day, value in self._growth_series(snapshot, kind, start_date, today)
                ]
                for kind in GROWTH_KINDS
            },
            "breakdown": {
                "waste_types": waste_type_breakdown(completed),
                "top_collectors": self._top_collectors(snapshot, 10),
                "recent_activities": self._recent_activities(snapshot, 20),
            },
            "timeframe": timeframe,
        }

    def _recent_activities(self, snapshot: _Snapshot, limit: int) -> List[Dict[str, Any]]:
        def name_of(user_id):
            user = snapshot.users.get(user_id)
            return user.name if user else None

        recent = sorted(
            snapshot.requests, key=lambda r: (r.created_at, r.id), reverse=True
        )[:limit]
        return [
            {
                "request_id": r.id,
                "status": r.status.value,
                "user": name_of(r.owner_id),
                "collector": name_of(getattr(r, "collector_id", None)),
                "waste_type": r.waste_type.value,
                "quantity_kg": r.quantity_kg,
                "created_at": r.created_at.isoformat(),
            }
            for r in recent
        ]

    def _monthly(
        self,
        completed: List[CompletedRequest],
        earnings: List[Tuple[datetime, float]],
    ) -> List[Dict[str, Any]]:
        """Pickups, earnings and kilograms for each of the last twelve months."""
        months = {start: {"pickups": 0, "earnings": 0.0, "waste_kg": 0.0}
                  for start in _month_starts(self.clock().date())}

        def bucket(moment: datetime):
            return months.get(date(moment.year, moment.month, 1))

        for request in completed:
            entry = bucket(request.completed_at)
            if entry is not None:
                entry["pickups"] += 1
                entry["waste_kg"] += request.quantity_kg
        for moment, amount in earnings:
            entry = bucket(moment)
            if entry is not None:
                entry["earnings"] += amount

        return [
            {"month": start.strftime("%b %Y"), **entry} for start, entry in months.items()
        ]
