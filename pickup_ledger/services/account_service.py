"""
This module defines the AccountService, the identity directory the core consults.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..config import LINK_CODE_TTL_MINUTES
from ..exceptions import Forbidden, InvalidInput, NotFound
from ..models import Role, UserAccount, VerificationStatus
from .persistence_service import PersistenceService

logger = logging.getLogger(__name__)

LINK_CODE_BYTES = 4


class AccountService:
    """Registers accounts and answers role lookups."""

    def __init__(
        self,
        persistence_service: PersistenceService,
        clock: Callable[[], datetime] = datetime.now,
        link_code_ttl: timedelta = timedelta(minutes=LINK_CODE_TTL_MINUTES),
    ):
        self.persistence = persistence_service
        self.clock = clock
        self.link_code_ttl = link_code_ttl

    def register(
        self, name: str, role: Role = Role.USER, telegram_chat_id: Optional[int] = None
    ) -> UserAccount:
        """Creates an account with empty balances."""
        if not name or not name.strip():
            raise InvalidInput("A name is required.")
        try:
            role = Role(role)
        except ValueError:
            raise InvalidInput(f"Unknown role '{role}'.") from None

        with self.persistence.transaction() as p:
            user_id = p.insert_user(
                name.strip(), role.value, self.clock(), telegram_chat_id
            )
            account = UserAccount.from_row(p.get_user(user_id))
        logger.info(f"Registered {role.value} account {user_id}.")
        return account

    def get(self, user_id: int) -> UserAccount:
        with self.persistence.read_only() as p:
            row = p.get_user(user_id)
        if row is None:
            raise NotFound(f"User {user_id} does not exist.")
        return UserAccount.from_row(row)

    def find_by_telegram_chat(self, chat_id: int) -> Optional[UserAccount]:
        with self.persistence.read_only() as p:
            row = p.get_user_by_telegram_chat_id(chat_id)
        return UserAccount.from_row(row) if row else None

    def get_role(self, user_id: int) -> Role:
        """Returns the verified role of a user."""
        return self.get(user_id).role

    def list_accounts(self, role: Optional[Role] = None) -> List[UserAccount]:
        with self.persistence.read_only() as p:
            rows = p.get_users(Role(role).value if role else None)
        return [UserAccount.from_row(row) for row in rows]

    # --- Telegram linking ---

    def issue_link_code(self, user_id: int) -> str:
        """
        Creates a single-use code that binds the first chat redeeming it to the user.

        The code expires after ``link_code_ttl``.
        """
        code = secrets.token_hex(LINK_CODE_BYTES).upper()
        now = self.clock()
        with self.persistence.transaction() as p:
            if p.get_user(user_id) is None:
                raise NotFound(f"User {user_id} does not exist.")
            p.insert_link_code(code, user_id, now, now + self.link_code_ttl)
        logger.info(f"Issued a Telegram link code for user {user_id}.")
        return code

    def redeem_link_code(self, code: str, chat_id: int) -> UserAccount:
        """
        Links the chat to the account the code was issued for.

        Raises:
            InvalidInput: If the code is unknown, already used or expired.
        """
        code = (code or "").strip().upper()
        with self.persistence.transaction() as p:
            user_id = p.redeem_link_code(code, chat_id, self.clock())
            if user_id is None:
                raise InvalidInput("This link code is invalid or has expired.")
            p.set_telegram_chat_id(user_id, chat_id)
            p.release_telegram_chat(chat_id, keep_user_id=user_id)
            account = UserAccount.from_row(p.get_user(user_id))
        logger.info(f"Chat {chat_id} redeemed a link code for user {user_id}.")
        return account

    # --- Collectors ---

    def _require_collector(self, p: PersistenceService, collector_id: int) -> None:
        row = p.get_user(collector_id)
        if row is None:
            raise NotFound(f"User {collector_id} does not exist.")
        if row["role"] != Role.COLLECTOR.value:
            raise InvalidInput(f"User {collector_id} is not a collector.")

    def verify_collector(
        self,
        admin_id: int,
        collector_id: int,
        status: VerificationStatus,
        notes: Optional[str] = None,
    ) -> UserAccount:
        """Records an administrator's verification decision for a collector."""
        if self.get_role(admin_id) is not Role.ADMIN:
            raise Forbidden(f"User {admin_id} may not verify collectors.")
        try:
            status = VerificationStatus(status)
        except ValueError:
            raise InvalidInput(f"Unknown verification status '{status}'.") from None

        with self.persistence.transaction() as p:
            self._require_collector(p, collector_id)
            p.set_collector_verification(collector_id, status.value, notes)
            account = UserAccount.from_row(p.get_user(collector_id))
        logger.info(
            f"Admin {admin_id} set collector {collector_id} verification to {status.value}."
        )
        return account

    def set_collector_active(self, collector_id: int, active: bool) -> UserAccount:
        """Marks a collector as available for new pickups, or not."""
        with self.persistence.transaction() as p:
            self._require_collector(p, collector_id)
            p.set_collector_active(collector_id, bool(active))
            account = UserAccount.from_row(p.get_user(collector_id))
        logger.info(
            f"Collector {collector_id} is now {'active' if active else 'inactive'}."
        )
        return account
