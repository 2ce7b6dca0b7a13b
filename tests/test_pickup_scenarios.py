"""
End-to-end pickup scenarios through the facade against a real database.
"""
import threading
from datetime import date

import pytest

from pickup_ledger.exceptions import AlreadyClaimed, InvalidTransition
from pickup_ledger.models import RequestStatus, Role, TransactionKind

from conftest import create_pickup


@pytest.fixture
def people(platform):
    facade = platform.facade
    return {
        "asha": facade.register_user("Asha"),
        "ravi": facade.register_user("Ravi", Role.COLLECTOR),
        "meena": facade.register_user("Meena", Role.COLLECTOR),
        "admin": facade.register_user("Admin", Role.ADMIN),
    }


def _accept_simultaneously(facade, request_id, collector_ids):
    barrier = threading.Barrier(len(collector_ids))
    outcomes = {}

    def attempt(collector_id):
        barrier.wait()
        try:
            outcomes[collector_id] = facade.accept_request(request_id, collector_id, date(2025, 3, 4))
        except AlreadyClaimed as e:
            outcomes[collector_id] = e

    threads = [threading.Thread(target=attempt, args=(c,)) for c in collector_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_full_pickup_lifecycle(platform, people):
    facade = platform.facade
    asha, ravi, meena, admin = people["asha"], people["ravi"], people["meena"], people["admin"]

    # 1. A plastic request of 5kg is priced at 60 rupees and 120 GreenCoins
    request = create_pickup(platform, asha.id, "plastic", 5)
    assert request.status is RequestStatus.PENDING
    assert request.estimate.value == 60
    assert request.estimate.green_coins == 120
    assert [r.id for r in facade.list_pending(ravi.id)] == [request.id]

    # 2. Two collectors accept at the same moment; exactly one wins
    outcomes = _accept_simultaneously(facade, request.id, [ravi.id, meena.id])
    winners = [c for c, result in outcomes.items() if not isinstance(result, Exception)]
    losers = [c for c, result in outcomes.items() if isinstance(result, AlreadyClaimed)]
    assert len(winners) == 1
    assert len(losers) == 1
    winner = winners[0]
    assert facade.get_request(request.id).collector_id == winner
    assert facade.list_pending(ravi.id) == []

    # 3. The winner completes; one pickup transaction credits the owner
    platform.clock.advance(days=1)
    completed, transaction = facade.complete_request(request.id, winner)
    assert completed.status is RequestStatus.COMPLETED
    pickups = [
        t for t in facade.get_transactions(asha.id, asha.id)
        if t.kind is TransactionKind.PICKUP
    ]
    assert len(pickups) == 1
    assert pickups[0].id == transaction.id
    assert pickups[0].monetary_amount == 60
    assert pickups[0].green_coins == 120
    owner = platform.accounts.get(asha.id)
    assert owner.green_coins == 120
    assert owner.eco_score == 2

    # 4. Completing again fails and leaves the ledger alone
    with pytest.raises(InvalidTransition):
        facade.complete_request(request.id, winner)
    assert len(facade.get_transactions(asha.id, asha.id)) == 1

    # Balances still match the ledger
    assert facade.reconcile_balances(admin.id) == []
    stats = facade.get_user_stats(asha.id, asha.id)
    assert stats["overview"]["green_coins"] == owner.green_coins


def test_cancel_assigned_request_fails(platform, people):
    facade = platform.facade
    request = create_pickup(platform, people["asha"].id)
    facade.accept_request(request.id, people["ravi"].id, date(2025, 3, 4))

    # 5. Claimed pickups cannot be cancelled
    with pytest.raises(InvalidTransition):
        facade.cancel_request(request.id, people["asha"].id)
    assert facade.get_request(request.id).status is RequestStatus.ASSIGNED


def test_top_collectors_ranks_by_completed_pickups(platform, people):
    facade = platform.facade
    asha, ravi, meena, admin = people["asha"], people["ravi"], people["meena"], people["admin"]

    # 6. Ravi completes 3 pickups and Meena 5; Meena leads the board
    for collector, count in ((ravi, 3), (meena, 5)):
        for _ in range(count):
            request = create_pickup(platform, asha.id, "paper", 2)
            facade.accept_request(request.id, collector.id, date(2025, 3, 4))
            facade.complete_request(request.id, collector.id)

    ranking = platform.analytics.top_collectors(limit=1)
    assert [entry["collector_id"] for entry in ranking] == [meena.id]
    assert ranking[0]["total_pickups"] == 5

    board = facade.get_platform_stats(admin.id)["breakdown"]["top_collectors"]
    assert [entry["name"] for entry in board] == ["Meena", "Ravi"]
    assert facade.reconcile_balances(admin.id) == []
    assert platform.accounts.get(asha.id).green_coins == 8 * 32


def test_collector_schedule_export(platform, people):
    facade = platform.facade
    request = create_pickup(platform, people["asha"].id, "metal", 1.5)
    facade.accept_request(request.id, people["ravi"].id, date(2025, 3, 5))

    ics = facade.export_collector_schedule(people["ravi"].id)

    assert b"BEGIN:VCALENDAR" in ics
    assert f"pickup-{request.id}@ecopickup".encode() in ics
    assert b"DTSTART;VALUE=DATE:20250305" in ics
