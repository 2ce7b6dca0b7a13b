"""
Shared fixtures: a temporary database wired to real services and a controllable clock.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from ecopickup.app_factory import create_facade
from pickup_ledger.services.persistence_service import PersistenceService

START = datetime(2025, 3, 3, 9, 0)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "test_ecopickup.db")
    with PersistenceService(db_path=path) as p:
        p.init_db()
    return path


@pytest.fixture
def platform(db_path, clock):
    """All services over one database, sharing the frozen clock."""
    facade = create_facade(db_path)
    for service in (
        facade,
        facade.account_service,
        facade.ledger_service,
        facade.lifecycle_service,
        facade.analytics_service,
    ):
        service.clock = clock
    facade.lifecycle_service.retry_delay = 0
    return SimpleNamespace(
        facade=facade,
        persistence=facade.persistence_service,
        accounts=facade.account_service,
        ledger=facade.ledger_service,
        lifecycle=facade.lifecycle_service,
        analytics=facade.analytics_service,
        notifications=facade.notification_service,
        clock=clock,
    )


def create_pickup(platform, owner_id, waste_type="plastic", quantity_kg=5, **logistics):
    """Submits a request with plausible logistics for the preferred day after the clock."""
    details = dict(
        address="12 MG Road, Bengaluru",
        lat=12.9716,
        lng=77.5946,
        preferred_time=platform.clock() + timedelta(days=1),
    )
    details.update(logistics)
    return platform.facade.create_request(owner_id, waste_type, quantity_kg, **details)
