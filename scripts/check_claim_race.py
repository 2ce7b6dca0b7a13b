import argparse
import concurrent.futures
import logging
import os
import sys
import tempfile
from collections import Counter
from datetime import datetime, timedelta

# Add the project root to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ecopickup.app_factory import create_facade
from pickup_ledger.exceptions import AlreadyClaimed, StoreUnavailable
from pickup_ledger.models import Role
from pickup_ledger.services.persistence_service import PersistenceService

# Configure logging
logging.basicConfig(level=logging.WARNING, format="%(message)s")
logger = logging.getLogger(__name__)


def try_accept(facade, request_id, collector_id):
    try:
        facade.accept_request(request_id, collector_id)
        return (request_id, collector_id, "won")
    except AlreadyClaimed:
        return (request_id, collector_id, "lost")
    except StoreUnavailable:
        return (request_id, collector_id, "busy")


def main():
    parser = argparse.ArgumentParser(
        description="Races collectors for the same pickups and checks that every pickup has one winner."
    )
    parser.add_argument("--collectors", type=int, default=8)
    parser.add_argument("--requests", type=int, default=25)
    args = parser.parse_args()

    db_path = os.path.join(tempfile.mkdtemp(), "claim_race.db")
    with PersistenceService(db_path) as p:
        p.init_db()
    facade = create_facade(db_path)

    citizen = facade.register_user("Race Citizen")
    collectors = [
        facade.register_user(f"Collector {n}", Role.COLLECTOR)
        for n in range(args.collectors)
    ]
    preferred_time = datetime.now() + timedelta(days=1)
    request_ids = [
        facade.create_request(
            citizen.id, "plastic", 2.5, "12 MG Road, Bengaluru", 12.97, 77.59, preferred_time
        ).id
        for _ in range(args.requests)
    ]

    print(f"Racing {len(collectors)} collectors for {len(request_ids)} pickups...")

    attempts = [(r, c.id) for r in request_ids for c in collectors]
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(collectors)) as executor:
        futures = [executor.submit(try_accept, facade, r, c) for r, c in attempts]
        outcomes = [f.result() for f in concurrent.futures.as_completed(futures)]

    winners = Counter(request_id for request_id, _, result in outcomes if result == "won")
    busy = sum(1 for _, _, result in outcomes if result == "busy")
    broken = [r for r in request_ids if winners[r] > 1]
    unclaimed = [r for r in request_ids if winners[r] == 0]

    for request_id in request_ids:
        if request_id in unclaimed:
            continue
        request = facade.get_request(request_id)
        facade.complete_request(request_id, request.collector_id)
    drift = facade.reconcile_balances(
        facade.register_user("Race Admin", Role.ADMIN).id
    )

    print("\n--- Summary ---")
    print(f"Claim attempts: {len(attempts)}")
    print(f"Gave up on a busy store: {busy}")
    print(f"Pickups with more than one winner: {len(broken)}")
    print(f"Pickups nobody could claim: {len(unclaimed)}")
    print(f"Balances out of step with the ledger: {len(drift)}")

    if broken or drift:
        print(f"FAIL: pickups {broken}, drift {drift}")
        sys.exit(1)
    print("PASS")


if __name__ == "__main__":
    main()
