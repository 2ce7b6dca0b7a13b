"""
This module provides a factory for creating and configuring the application's core components.
"""
from pickup_ledger.config import PICKUP_DB_PATH
from pickup_ledger.facade import PickupPlatformFacade
from pickup_ledger.services.account_service import AccountService
from pickup_ledger.services.analytics_service import AnalyticsService
from pickup_ledger.services.ledger_service import LedgerService
from pickup_ledger.services.lifecycle_service import LifecycleService
from pickup_ledger.services.notification_service import NotificationService
from pickup_ledger.services.persistence_service import PersistenceService

from .logging_config import setup_database_logging


def initialize_app(db_path: str = PICKUP_DB_PATH) -> None:
    """
    Initializes the application by creating the database schema and setting up logging.
    """
    # The logs table must exist before the database handler writes to it
    with PersistenceService(db_path) as persistence_service:
        persistence_service.init_db()
    setup_database_logging(db_path)


def create_facade(db_path: str = PICKUP_DB_PATH) -> PickupPlatformFacade:
    """
    Initializes and returns the PickupPlatformFacade with all its dependencies.
    """
    persistence_service = PersistenceService(db_path)
    account_service = AccountService(persistence_service)
    ledger_service = LedgerService(persistence_service, account_service)
    notification_service = NotificationService(persistence_service)
    lifecycle_service = LifecycleService(
        persistence_service=persistence_service,
        account_service=account_service,
        ledger_service=ledger_service,
        notification_service=notification_service,
    )
    analytics_service = AnalyticsService(persistence_service)

    facade = PickupPlatformFacade(
        persistence_service=persistence_service,
        account_service=account_service,
        lifecycle_service=lifecycle_service,
        ledger_service=ledger_service,
        analytics_service=analytics_service,
        notification_service=notification_service,
    )
    return facade
