"""
This module defines the data models for pickup requests, ledger entries and accounts.

A waste request is represented as a tagged union: one frozen dataclass per
lifecycle status. Fields such as ``collector_id`` or ``actual_value`` only
exist on the states that legally carry them.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class WasteType(str, Enum):
    PLASTIC = "plastic"
    PAPER = "paper"
    METAL = "metal"
    E_WASTE = "e-waste"
    ORGANIC = "organic"
    MIXED = "mixed"
    CARDBOARD = "cardboard"
    GLASS = "glass"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    COLLECTED = "collected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


class TransactionKind(str, Enum):
    PICKUP = "pickup"
    PURCHASE = "purchase"
    REWARD = "reward"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"
    PLATFORM_FEE = "platform_fee"


class Role(str, Enum):
    USER = "user"
    COLLECTOR = "collector"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class Logistics:
    """Where and when the citizen wants the waste picked up."""

    address: str
    coordinates: Coordinates
    preferred_time: datetime
    description: str = ""


@dataclass(frozen=True)
class Estimate:
    value: float
    green_coins: int


@dataclass(frozen=True)
class WasteRequest:
    """Fields shared by every lifecycle state."""

    status: ClassVar[RequestStatus]

    id: int
    owner_id: int
    waste_type: WasteType
    quantity_kg: float
    estimate: Estimate
    logistics: Logistics
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Returns a JSON-friendly representation including the status tag."""
        data = asdict(self)
        data["status"] = self.status.value
        data["waste_type"] = self.waste_type.value
        return _isoformat_values(data)


@dataclass(frozen=True)
class PendingRequest(WasteRequest):
    status: ClassVar[RequestStatus] = RequestStatus.PENDING


@dataclass(frozen=True)
class AssignedRequest(WasteRequest):
    status: ClassVar[RequestStatus] = RequestStatus.ASSIGNED

    collector_id: int
    scheduled_date: date


@dataclass(frozen=True)
class CollectedRequest(WasteRequest):
    status: ClassVar[RequestStatus] = RequestStatus.COLLECTED

    collector_id: int
    scheduled_date: date
    collected_at: datetime


@dataclass(frozen=True)
class CompletedRequest(WasteRequest):
    status: ClassVar[RequestStatus] = RequestStatus.COMPLETED

    collector_id: int
    scheduled_date: date
    completed_at: datetime
    actual_value: float
    green_coins_earned: int
    collected_at: Optional[datetime] = None


@dataclass(frozen=True)
class CancelledRequest(WasteRequest):
    status: ClassVar[RequestStatus] = RequestStatus.CANCELLED

    cancelled_at: datetime
    cancelled_by: int


@dataclass(frozen=True)
class Transaction:
    """One immutable ledger entry."""

    id: int
    user_id: int
    kind: TransactionKind
    monetary_amount: float
    green_coins: int
    description: str
    created_at: datetime
    collector_id: Optional[int] = None
    related_request_id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Transaction":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            kind=TransactionKind(row["kind"]),
            monetary_amount=row["monetary_amount"],
            green_coins=row["green_coins"],
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            collector_id=row["collector_id"],
            related_request_id=row["related_request_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return _isoformat_values(data)


@dataclass(frozen=True)
class UserAccount:
    id: int
    name: str
    role: Role
    green_coins: int
    eco_score: int
    created_at: datetime
    telegram_chat_id: Optional[int] = field(default=None, compare=False)
    # Collector accounts only
    verification_status: Optional[VerificationStatus] = None
    verification_notes: Optional[str] = None
    is_active: bool = True

    @property
    def can_take_pickups(self) -> bool:
        """Collectors that were not rejected and are currently available."""
        return (
            self.role is Role.COLLECTOR
            and self.is_active
            and self.verification_status is not VerificationStatus.REJECTED
        )

    @classmethod
    def from_row(cls, row) -> "UserAccount":
        status = row["verification_status"]
        return cls(
            id=row["id"],
            name=row["name"],
            role=Role(row["role"]),
            green_coins=row["green_coins"],
            eco_score=row["eco_score"],
            created_at=datetime.fromisoformat(row["created_at"]),
            telegram_chat_id=row["telegram_chat_id"],
            verification_status=VerificationStatus(status) if status else None,
            verification_notes=row["verification_notes"],
            is_active=bool(row["is_active"]),
        )


def request_from_row(row) -> WasteRequest:
    """Builds the dataclass matching the status column of a waste_requests row."""
    status = RequestStatus(row["status"])
    common = dict(
        id=row["id"],
        owner_id=row["owner_id"],
        waste_type=WasteType(row["waste_type"]),
        quantity_kg=row["quantity_kg"],
        estimate=Estimate(
            value=row["estimated_value"], green_coins=row["estimated_green_coins"]
        ),
        logistics=Logistics(
            address=row["address"],
            coordinates=Coordinates(lat=row["lat"], lng=row["lng"]),
            preferred_time=datetime.fromisoformat(row["preferred_time"]),
            description=row["description"] or "",
        ),
        created_at=datetime.fromisoformat(row["created_at"]),
    )

    if status is RequestStatus.PENDING:
        return PendingRequest(**common)
    if status is RequestStatus.CANCELLED:
        return CancelledRequest(
            **common,
            cancelled_at=datetime.fromisoformat(row["cancelled_at"]),
            cancelled_by=row["cancelled_by"],
        )

    scheduled = date.fromisoformat(row["scheduled_date"])
    if status is RequestStatus.ASSIGNED:
        return AssignedRequest(
            **common, collector_id=row["collector_id"], scheduled_date=scheduled
        )
    collected_at = (
        datetime.fromisoformat(row["collected_at"]) if row["collected_at"] else None
    )
    if status is RequestStatus.COLLECTED:
        return CollectedRequest(
            **common,
            collector_id=row["collector_id"],
            scheduled_date=scheduled,
            collected_at=collected_at,
        )
    return CompletedRequest(
        **common,
        collector_id=row["collector_id"],
        scheduled_date=scheduled,
        completed_at=datetime.fromisoformat(row["completed_at"]),
        actual_value=row["actual_value"],
        green_coins_earned=row["green_coins_earned"],
        collected_at=collected_at,
    )


def _isoformat_values(data: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in data.items():
        if isinstance(value, (date, datetime)):
            data[key] = value.isoformat()
        elif isinstance(value, dict):
            data[key] = _isoformat_values(value)
    return data
