"""
This module defines the LedgerService, the only writer of transactions and balances.
"""
import logging
import math
import sqlite3
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from ..config import ECO_SCORE_PER_KG
from ..exceptions import Forbidden, InvalidInput, LedgerError, NotFound
from ..models import Role, Transaction, TransactionKind
from .account_service import AccountService
from .persistence_service import PersistenceService

logger = logging.getLogger(__name__)


def eco_score_for(quantity_kg: float) -> int:
    """EcoScore earned for a completed pickup of the given weight."""
    return math.floor(quantity_kg * ECO_SCORE_PER_KG)


class LedgerService:
    """
    Appends ledger entries and moves user balances with them.

    The entry and the balance change are written in one store transaction,
    so a user's GreenCoins always equal the sum of their entries.
    """

    def __init__(
        self,
        persistence_service: PersistenceService,
        account_service: AccountService,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.persistence = persistence_service
        self.accounts = account_service
        self.clock = clock

    def record(
        self,
        user_id: int,
        kind: Union[TransactionKind, str],
        monetary_amount: float,
        green_coins: int,
        description: str,
        related_request_id: Optional[int] = None,
        collector_id: Optional[int] = None,
        quantity_kg: Optional[float] = None,
    ) -> Transaction:
        """
        Appends a transaction and applies its GreenCoins (and EcoScore for pickups).

        Args:
            user_id: The account credited or debited.
            kind: The transaction kind.
            monetary_amount: Rupees moved by this entry, may be zero.
            green_coins: GreenCoins delta, negative for debits.
            description: Human readable reason, required.
            related_request_id: The waste request this entry pays for.
            collector_id: The collector involved, if any.
            quantity_kg: Weight picked up; required for pickup entries.

        Returns:
            The stored Transaction.

        Raises:
            InvalidInput: On malformed arguments or a debit larger than the balance.
            NotFound: If the user does not exist.
            LedgerError: If a pickup entry already exists for the request.
            StoreUnavailable: If another writer held the store past the timeout.
        """
        try:
            kind = TransactionKind(kind)
        except ValueError:
            raise InvalidInput(f"Unknown transaction kind '{kind}'.") from None
        if not description or not description.strip():
            raise InvalidInput("A transaction description is required.")
        if isinstance(green_coins, bool) or not isinstance(green_coins, int):
            raise InvalidInput("GreenCoins must be a whole number.")

        eco_delta = 0
        if kind is TransactionKind.PICKUP:
            if related_request_id is None:
                raise InvalidInput("Pickup entries must reference a request.")
            if quantity_kg is None or quantity_kg <= 0:
                raise InvalidInput("Pickup entries need the collected quantity.")
            eco_delta = eco_score_for(quantity_kg)

        with self.persistence.transaction() as p:
            if not p.adjust_user_balances(user_id, green_coins, eco_delta):
                if p.get_user(user_id) is None:
                    raise NotFound(f"User {user_id} does not exist.")
                raise InvalidInput(
                    f"User {user_id} does not have {-green_coins} GreenCoins to debit."
                )
            try:
                transaction_id = p.insert_transaction(
                    user_id=user_id,
                    kind=kind.value,
                    monetary_amount=monetary_amount,
                    green_coins=green_coins,
                    description=description.strip(),
                    created_at=self.clock(),
                    collector_id=collector_id,
                    related_request_id=related_request_id,
                )
            except sqlite3.IntegrityError as e:
                raise LedgerError(
                    f"Ledger rejected {kind.value} entry for request {related_request_id}: {e}"
                ) from e
            transaction = Transaction.from_row(p.get_transaction(transaction_id))

        logger.info(
            f"Recorded {kind.value} transaction {transaction.id} for user {user_id}: "
            f"{monetary_amount} INR, {green_coins} GreenCoins."
        )
        return transaction

    def adjust_green_coins(
        self, admin_id: int, user_id: int, amount: int, description: str
    ) -> Transaction:
        """Manually credits (reward) or debits (penalty) GreenCoins. Admins only."""
        if self.accounts.get_role(admin_id) is not Role.ADMIN:
            raise Forbidden(f"User {admin_id} may not adjust GreenCoins.")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidInput("The adjustment must be a non-zero whole number.")

        kind = TransactionKind.REWARD if amount > 0 else TransactionKind.PENALTY
        return self.record(
            user_id=user_id,
            kind=kind,
            monetary_amount=0,
            green_coins=amount,
            description=description,
        )

    def transactions_for(
        self, user_id: int, kind: Optional[TransactionKind] = None
    ) -> List[Transaction]:
        """Returns a user's ledger entries, newest first."""
        with self.persistence.read_only() as p:
            rows = p.get_transactions(
                user_id=user_id, kind=TransactionKind(kind).value if kind else None
            )
        return [Transaction.from_row(row) for row in rows]

    def reconcile(self) -> List[Dict[str, int]]:
        """Returns every account whose stored GreenCoins differ from its ledger sum."""
        with self.persistence.read_only() as p:
            rows = p.get_balance_totals()
        drift = [
            {
                "user_id": row["user_id"],
                "stored_green_coins": row["stored_green_coins"],
                "ledger_green_coins": row["ledger_green_coins"],
            }
            for row in rows
            if row["stored_green_coins"] != row["ledger_green_coins"]
        ]
        for entry in drift:
            logger.error(f"Balance drift detected: {entry}")
        return drift
