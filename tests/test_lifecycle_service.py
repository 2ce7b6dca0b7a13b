"""
Unit tests for the LifecycleService state machine.
"""
import threading
from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest

from pickup_ledger.exceptions import (AlreadyClaimed, Forbidden, InvalidInput,
                                      InvalidTransition, LedgerError, NotFound,
                                      StoreUnavailable)
from pickup_ledger.models import (AssignedRequest, CancelledRequest,
                                  CollectedRequest, CompletedRequest,
                                  Coordinates, Logistics, PendingRequest,
                                  RequestStatus, Role, TransactionKind,
                                  WasteType)
from pickup_ledger.services.persistence_service import PersistenceService

from conftest import create_pickup

TOMORROW = date(2025, 3, 4)


@pytest.fixture
def people(platform):
    return {
        "asha": platform.accounts.register("Asha"),
        "vikram": platform.accounts.register("Vikram"),
        "ravi": platform.accounts.register("Ravi", Role.COLLECTOR),
        "meena": platform.accounts.register("Meena", Role.COLLECTOR),
        "admin": platform.accounts.register("Admin", Role.ADMIN),
    }


@pytest.fixture
def pending(platform, people):
    return create_pickup(platform, people["asha"].id)


@pytest.fixture
def assigned(platform, people, pending):
    return platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)


def _logistics(**overrides):
    values = dict(
        address="12 MG Road",
        coordinates=Coordinates(lat=12.97, lng=77.59),
        preferred_time=datetime(2025, 3, 4, 10, 0),
    )
    values.update(overrides)
    return Logistics(**values)


# --- create ---

def test_create_attaches_estimate(platform, people):
    request = platform.lifecycle.create(people["asha"].id, "Plastic", 5, _logistics())

    assert isinstance(request, PendingRequest)
    assert request.waste_type is WasteType.PLASTIC
    assert request.estimate.value == 60
    assert request.estimate.green_coins == 120
    assert request.created_at == platform.clock()


@pytest.mark.parametrize("quantity", [0, -2])
def test_create_rejects_non_positive_quantity(platform, people, quantity):
    with pytest.raises(InvalidInput):
        platform.lifecycle.create(people["asha"].id, "paper", quantity, _logistics())


@pytest.mark.parametrize(
    "logistics",
    [
        None,
        _logistics(address="  "),
        _logistics(preferred_time="tomorrow"),
        _logistics(coordinates=None),
        _logistics(coordinates=Coordinates(lat=91, lng=0)),
        _logistics(coordinates=Coordinates(lat=0, lng=-181)),
    ],
)
def test_create_rejects_missing_logistics(platform, people, logistics):
    with pytest.raises(InvalidInput):
        platform.lifecycle.create(people["asha"].id, "paper", 2, logistics)


def test_create_rejects_unknown_waste_type(platform, people):
    with pytest.raises(InvalidInput):
        platform.lifecycle.create(people["asha"].id, "qqq", 2, _logistics())


def test_only_citizens_create_requests(platform, people):
    with pytest.raises(Forbidden):
        platform.lifecycle.create(people["ravi"].id, "paper", 2, _logistics())
    with pytest.raises(NotFound):
        platform.lifecycle.create(404, "paper", 2, _logistics())


# --- accept ---

def test_accept_binds_collector(platform, people, pending):
    request = platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)

    assert isinstance(request, AssignedRequest)
    assert request.collector_id == people["ravi"].id
    assert request.scheduled_date == TOMORROW


def test_accept_losing_collector_gets_already_claimed(platform, people, assigned):
    with pytest.raises(AlreadyClaimed):
        platform.lifecycle.accept(assigned.id, people["meena"].id, TOMORROW)

    # The winner's claim is untouched
    assert platform.lifecycle.get(assigned.id).collector_id == people["ravi"].id


def test_accept_unknown_request(platform, people):
    with pytest.raises(NotFound):
        platform.lifecycle.accept(404, people["ravi"].id, TOMORROW)


def test_accept_cancelled_request(platform, people, pending):
    platform.lifecycle.cancel(pending.id, people["asha"].id)
    with pytest.raises(InvalidTransition) as excinfo:
        platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)
    assert not isinstance(excinfo.value, AlreadyClaimed)


def test_accept_requires_collector(platform, people, pending):
    with pytest.raises(Forbidden):
        platform.lifecycle.accept(pending.id, people["vikram"].id, TOMORROW)


def test_accept_rejects_past_dates(platform, people, pending):
    with pytest.raises(InvalidInput):
        platform.lifecycle.accept(pending.id, people["ravi"].id, date(2025, 3, 2))


def test_accept_defaults_to_next_working_day(platform, people, pending):
    request = platform.lifecycle.accept(pending.id, people["ravi"].id)
    assert request.scheduled_date == platform.lifecycle.next_pickup_date(platform.clock().date())
    assert request.scheduled_date > platform.clock().date()


def test_next_pickup_date_skips_public_holidays(platform):
    republic_day = date(2025, 1, 26)
    assert republic_day in platform.lifecycle.public_holidays

    result = platform.lifecycle.next_pickup_date(date(2025, 1, 25))

    assert result > republic_day
    assert result not in platform.lifecycle.public_holidays


def test_concurrent_accepts_have_exactly_one_winner(platform, people, pending):
    collectors = [people["ravi"], people["meena"]] + [
        platform.accounts.register(f"Collector {n}", Role.COLLECTOR) for n in range(6)
    ]
    barrier = threading.Barrier(len(collectors))
    outcomes = []
    lock = threading.Lock()

    def attempt(collector_id):
        barrier.wait()
        try:
            platform.lifecycle.accept(pending.id, collector_id, TOMORROW)
            result = "won"
        except AlreadyClaimed:
            result = "lost"
        with lock:
            outcomes.append((collector_id, result))

    threads = [threading.Thread(target=attempt, args=(c.id,)) for c in collectors]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [collector_id for collector_id, result in outcomes if result == "won"]
    assert len(outcomes) == len(collectors)
    assert len(winners) == 1
    assert platform.lifecycle.get(pending.id).collector_id == winners[0]


def test_accept_retries_store_contention(platform, people, pending):
    real_claim = platform.lifecycle._claim
    calls = []

    def flaky_claim(*args):
        calls.append(args)
        if len(calls) == 1:
            raise StoreUnavailable("Store is locked: database is locked")
        return real_claim(*args)

    with patch.object(platform.lifecycle, "_claim", side_effect=flaky_claim):
        request = platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)

    assert len(calls) == 2
    assert request.status is RequestStatus.ASSIGNED


def test_accept_gives_up_after_max_retries(platform, people, pending):
    with patch.object(
        platform.lifecycle, "_claim", side_effect=StoreUnavailable("locked")
    ) as claim:
        with pytest.raises(StoreUnavailable):
            platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)
    assert claim.call_count == platform.lifecycle.max_retries


def test_locked_store_surfaces_as_store_unavailable(platform, db_path, people, pending):
    platform.persistence.timeout = 0.05

    with PersistenceService(db_path=db_path):
        with pytest.raises(StoreUnavailable):
            platform.lifecycle.cancel(pending.id, people["asha"].id)

    assert platform.lifecycle.get(pending.id).status is RequestStatus.PENDING


def test_reads_do_not_wait_for_a_writer(platform, db_path, pending):
    platform.persistence.timeout = 0.05

    with PersistenceService(db_path=db_path):
        assert platform.lifecycle.get(pending.id).id == pending.id
        assert [r.id for r in platform.lifecycle.list_pending()] == [pending.id]


def test_inactive_collector_cannot_accept(platform, people, pending):
    platform.accounts.set_collector_active(people["ravi"].id, False)

    with pytest.raises(Forbidden):
        platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)

    platform.accounts.set_collector_active(people["ravi"].id, True)
    assert platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW).collector_id == people["ravi"].id


def test_rejected_collector_cannot_accept(platform, people, pending):
    platform.accounts.verify_collector(people["admin"].id, people["ravi"].id, "rejected")

    with pytest.raises(Forbidden):
        platform.lifecycle.accept(pending.id, people["ravi"].id, TOMORROW)
    assert platform.lifecycle.get(pending.id).status is RequestStatus.PENDING


def test_verified_collector_accepts(platform, people, pending):
    platform.accounts.verify_collector(people["admin"].id, people["meena"].id, "verified")
    request = platform.lifecycle.accept(pending.id, people["meena"].id, TOMORROW)
    assert request.status is RequestStatus.ASSIGNED


# --- mark_collected ---

def test_mark_collected(platform, people, assigned):
    platform.clock.advance(days=1)
    request = platform.lifecycle.mark_collected(assigned.id, people["ravi"].id)

    assert isinstance(request, CollectedRequest)
    assert request.collected_at == platform.clock()


def test_mark_collected_by_other_collector(platform, people, assigned):
    with pytest.raises(Forbidden):
        platform.lifecycle.mark_collected(assigned.id, people["meena"].id)


def test_mark_collected_requires_assignment(platform, people, pending):
    with pytest.raises(InvalidTransition):
        platform.lifecycle.mark_collected(pending.id, people["ravi"].id)


# --- complete ---

def test_complete_credits_owner_once(platform, people, assigned):
    asha = people["asha"]
    platform.clock.advance(days=1)

    request, transaction = platform.lifecycle.complete(assigned.id, people["ravi"].id)

    assert isinstance(request, CompletedRequest)
    assert request.completed_at == platform.clock()
    assert request.actual_value == 60
    assert request.green_coins_earned == 120
    assert transaction.kind is TransactionKind.PICKUP
    assert transaction.monetary_amount == 60
    assert transaction.green_coins == 120
    assert transaction.collector_id == people["ravi"].id
    assert transaction.description == "Pickup completed: plastic (5kg)"
    account = platform.accounts.get(asha.id)
    assert account.green_coins == 120
    assert account.eco_score == 2


def test_complete_after_collection(platform, people, assigned):
    platform.lifecycle.mark_collected(assigned.id, people["ravi"].id)
    request, _ = platform.lifecycle.complete(assigned.id, people["ravi"].id)
    assert request.collected_at is not None


def test_complete_with_reported_value(platform, people, assigned):
    request, transaction = platform.lifecycle.complete(
        assigned.id, people["ravi"].id, actual_value=55.5
    )
    assert request.actual_value == 55.5
    assert transaction.monetary_amount == 55.5
    # GreenCoins always follow the estimate
    assert transaction.green_coins == 120
    assert request.estimate.value == 60


@pytest.mark.parametrize("value", [-1, float("nan"), "60"])
def test_complete_rejects_bad_reported_value(platform, people, assigned, value):
    with pytest.raises(InvalidInput):
        platform.lifecycle.complete(assigned.id, people["ravi"].id, actual_value=value)


def test_complete_twice_creates_one_transaction(platform, people, assigned):
    platform.lifecycle.complete(assigned.id, people["ravi"].id)

    with pytest.raises(InvalidTransition):
        platform.lifecycle.complete(assigned.id, people["ravi"].id)

    pickups = platform.ledger.transactions_for(people["asha"].id, TransactionKind.PICKUP)
    assert len(pickups) == 1


def test_concurrent_completions_credit_once(platform, people, assigned):
    attempts = 6
    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            platform.lifecycle.complete(assigned.id, people["ravi"].id)
            result = "ok"
        except InvalidTransition:
            result = "refused"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["ok"] + ["refused"] * (attempts - 1)
    pickups = platform.ledger.transactions_for(people["asha"].id, TransactionKind.PICKUP)
    assert len(pickups) == 1
    assert platform.accounts.get(people["asha"].id).green_coins == 120
    assert platform.ledger.reconcile() == []


def test_complete_by_other_collector(platform, people, assigned):
    with pytest.raises(Forbidden):
        platform.lifecycle.complete(assigned.id, people["meena"].id)
    assert platform.lifecycle.get(assigned.id).status is RequestStatus.ASSIGNED


def test_complete_pending_request(platform, people, pending):
    with pytest.raises(InvalidTransition):
        platform.lifecycle.complete(pending.id, people["ravi"].id)


def test_complete_rolls_back_when_ledger_refuses(platform, people, assigned):
    platform.ledger.record = MagicMock(side_effect=LedgerError("duplicate"))

    with pytest.raises(LedgerError):
        platform.lifecycle.complete(assigned.id, people["ravi"].id)

    assert platform.lifecycle.get(assigned.id).status is RequestStatus.ASSIGNED


# --- cancel ---

def test_owner_cancels_pending_request(platform, people, pending):
    request = platform.lifecycle.cancel(pending.id, people["asha"].id)

    assert isinstance(request, CancelledRequest)
    assert request.cancelled_by == people["asha"].id
    assert request.is_terminal


def test_admin_cancels_pending_request(platform, people, pending):
    request = platform.lifecycle.cancel(pending.id, people["admin"].id)
    assert request.cancelled_by == people["admin"].id


def test_cancel_by_stranger(platform, people, pending):
    with pytest.raises(Forbidden):
        platform.lifecycle.cancel(pending.id, people["vikram"].id)
    with pytest.raises(Forbidden):
        platform.lifecycle.cancel(pending.id, people["ravi"].id)


def test_cancel_assigned_request(platform, people, assigned):
    with pytest.raises(InvalidTransition):
        platform.lifecycle.cancel(assigned.id, people["asha"].id)
    with pytest.raises(InvalidTransition):
        platform.lifecycle.cancel(assigned.id, people["admin"].id)


def test_terminal_states_never_change(platform, people, assigned, pending):
    platform.lifecycle.complete(assigned.id, people["ravi"].id)
    with pytest.raises(InvalidTransition):
        platform.lifecycle.cancel(assigned.id, people["asha"].id)
    with pytest.raises(InvalidTransition):
        platform.lifecycle.mark_collected(assigned.id, people["ravi"].id)
    assert platform.lifecycle.get(assigned.id).status is RequestStatus.COMPLETED


def test_cancel_unknown_request(platform, people):
    with pytest.raises(NotFound):
        platform.lifecycle.cancel(404, people["asha"].id)


# --- reads ---

def test_list_pending_newest_first(platform, people, pending):
    platform.clock.advance(minutes=5)
    newer = create_pickup(platform, people["vikram"].id, "paper", 2)
    platform.clock.advance(minutes=5)
    claimed = create_pickup(platform, people["vikram"].id, "metal", 1)
    platform.lifecycle.accept(claimed.id, people["ravi"].id, TOMORROW)

    assert [r.id for r in platform.lifecycle.list_pending()] == [newer.id, pending.id]


def test_list_requests_filters(platform, people, assigned):
    assert [r.id for r in platform.lifecycle.list_requests(collector_id=people["ravi"].id)] == [assigned.id]
    assert platform.lifecycle.list_requests(owner_id=people["vikram"].id) == []
    assert len(platform.lifecycle.list_requests(status="assigned")) == 1
    with pytest.raises(InvalidInput):
        platform.lifecycle.list_requests(status="lost")


def test_get_unknown_request(platform):
    with pytest.raises(NotFound):
        platform.lifecycle.get(404)
