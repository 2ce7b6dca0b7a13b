"""
This module defines the PersistenceService for database interactions.

Each ``with persistence as p:`` block is one ``BEGIN IMMEDIATE`` transaction on
a connection owned by the calling thread. Entering the service again on the
same thread joins the open transaction instead of starting a new one, so a
service can call another service and both writes commit or roll back together.

``persistence.transaction()`` is the same write session with lock timeouts
reported as ``StoreUnavailable``. ``persistence.read_only()`` opens a deferred
session for queries, which never takes the write lock.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import ContextManager, Iterator, List, Optional

from ..config import PICKUP_DB_PATH, SQLITE_BUSY_TIMEOUT, SQLITE_JOURNAL_MODE
from ..exceptions import StoreUnavailable

_ACTIVE_STATUSES = "('assigned', 'collected', 'completed')"


def is_busy(error: sqlite3.OperationalError) -> bool:
    """True when the error is a lock timeout rather than a broken statement."""
    message = str(error).lower()
    return "locked" in message or "busy" in message


class PersistenceService:
    """Handles all database interactions for the application."""

    def __init__(
        self,
        db_path: str = PICKUP_DB_PATH,
        timeout: float = SQLITE_BUSY_TIMEOUT,
        journal_mode: Optional[str] = SQLITE_JOURNAL_MODE,
    ):
        self.db_path = db_path
        self.timeout = timeout
        self.journal_mode = journal_mode
        self._local = threading.local()

    def __enter__(self) -> "PersistenceService":
        """Opens the thread's connection and starts a write transaction."""
        self._open("BEGIN IMMEDIATE")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Commits on success, rolls back on error, then closes the connection."""
        self._close(rollback=exc_type is not None)

    def _open(self, begin_statement: str) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            conn = sqlite3.connect(
                self.db_path, timeout=self.timeout, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            try:
                if self.journal_mode:
                    conn.execute(f"PRAGMA journal_mode = {self.journal_mode}")
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute(begin_statement)
            except sqlite3.Error:
                conn.close()
                raise
            self._local.conn = conn
        self._local.depth = depth + 1

    def _close(self, rollback: bool) -> None:
        self._local.depth -= 1
        if self._local.depth:
            return
        conn = self._local.conn
        self._local.conn = None
        try:
            conn.execute("ROLLBACK" if rollback else "COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _session(self, begin_statement: str) -> Iterator["PersistenceService"]:
        try:
            self._open(begin_statement)
            try:
                yield self
            except BaseException:
                self._close(rollback=True)
                raise
            self._close(rollback=False)
        except sqlite3.OperationalError as e:
            if not is_busy(e):
                raise
            raise StoreUnavailable(f"Store is locked: {e}") from e

    def transaction(self) -> ContextManager["PersistenceService"]:
        """A write session whose lock timeouts surface as StoreUnavailable."""
        return self._session("BEGIN IMMEDIATE")

    def read_only(self) -> ContextManager["PersistenceService"]:
        """A deferred session for queries; joins an open session on this thread."""
        return self._session("BEGIN DEFERRED")

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    def _get_cursor(self) -> sqlite3.Cursor:
        """Returns a cursor, ensuring the connection is open."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            raise RuntimeError("Database connection is not open. Use 'with' statement.")
        return conn.cursor()

    def init_db(self) -> None:
        """Initialize SQLite schema if not exists."""
        cur = self._get_cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'collector', 'admin')),
                green_coins INTEGER NOT NULL DEFAULT 0 CHECK (green_coins >= 0),
                eco_score INTEGER NOT NULL DEFAULT 0 CHECK (eco_score >= 0),
                telegram_chat_id INTEGER,
                verification_status TEXT CHECK (
                    verification_status IN ('pending', 'verified', 'rejected')
                ),
                verification_notes TEXT,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                created_at TEXT NOT NULL,
                CHECK ((verification_status IS NOT NULL) = (role = 'collector'))
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS waste_requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER NOT NULL REFERENCES users(id),
                waste_type TEXT NOT NULL,
                quantity_kg REAL NOT NULL CHECK (quantity_kg > 0),
                description TEXT,
                address TEXT NOT NULL,
                lat REAL NOT NULL,
                lng REAL NOT NULL,
                preferred_time TEXT NOT NULL,
                estimated_value REAL NOT NULL,
                estimated_green_coins INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (
                    status IN ('pending', 'assigned', 'collected', 'completed', 'cancelled')
                ),
                collector_id INTEGER REFERENCES users(id),
                scheduled_date TEXT,
                collected_at TEXT,
                actual_value REAL,
                green_coins_earned INTEGER,
                completed_at TEXT,
                cancelled_at TEXT,
                cancelled_by INTEGER,
                created_at TEXT NOT NULL,
                CHECK ((collector_id IS NOT NULL) = (status IN {_ACTIVE_STATUSES})),
                CHECK ((actual_value IS NOT NULL) = (status = 'completed')),
                CHECK ((green_coins_earned IS NOT NULL) = (status = 'completed'))
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_requests_status ON waste_requests(status)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_requests_owner ON waste_requests(owner_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_requests_collector ON waste_requests(collector_id)"
        )
        # Terminal states never change again
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS waste_requests_terminal
            BEFORE UPDATE ON waste_requests
            WHEN OLD.status IN ('completed', 'cancelled')
            BEGIN
                SELECT RAISE(ABORT, 'waste request is in a terminal state');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS waste_requests_estimate_fixed
            BEFORE UPDATE OF estimated_value, estimated_green_coins ON waste_requests
            WHEN NEW.estimated_value IS NOT OLD.estimated_value
              OR NEW.estimated_green_coins IS NOT OLD.estimated_green_coins
            BEGIN
                SELECT RAISE(ABORT, 'estimates are immutable');
            END
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                collector_id INTEGER REFERENCES users(id),
                related_request_id INTEGER REFERENCES waste_requests(id),
                kind TEXT NOT NULL CHECK (
                    kind IN ('pickup', 'purchase', 'reward', 'penalty', 'withdrawal', 'platform_fee')
                ),
                monetary_amount REAL NOT NULL DEFAULT 0,
                green_coins INTEGER NOT NULL DEFAULT 0,
                description TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        # One pickup credit per request
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_pickup_request
            ON transactions(related_request_id) WHERE kind = 'pickup'
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_transactions_user ON transactions(user_id)"
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS transactions_no_update
            BEFORE UPDATE ON transactions
            BEGIN
                SELECT RAISE(ABORT, 'transactions are append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS transactions_no_delete
            BEFORE DELETE ON transactions
            BEGIN
                SELECT RAISE(ABORT, 'transactions are append-only');
            END
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS link_codes (
                code TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(id),
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                redeemed_at TEXT,
                redeemed_by_chat_id INTEGER
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                logger_name TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS system_info (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notification_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                request_id INTEGER,
                chat_id INTEGER NOT NULL,
                message TEXT NOT NULL,
                timestamp_scheduled DATETIME DEFAULT CURRENT_TIMESTAMP,
                timestamp_sent DATETIME,
                status TEXT NOT NULL,
                error_message TEXT,
                FOREIGN KEY(user_id) REFERENCES users(id)
            )
            """
        )

    # --- Accounts ---

    def insert_user(
        self,
        name: str,
        role: str,
        created_at: datetime,
        telegram_chat_id: Optional[int] = None,
    ) -> int:
        """
        Creates an account with zero balances and returns its ID.

        Collectors start with a pending verification.
        """
        verification_status = "pending" if role == "collector" else None
        cur = self._get_cursor()
        cur.execute(
            """
            INSERT INTO users (name, role, telegram_chat_id, verification_status, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, role, telegram_chat_id, verification_status, created_at.isoformat()),
        )
        return cur.lastrowid

    def get_user(self, user_id: int) -> Optional[sqlite3.Row]:
        cur = self._get_cursor()
        cur.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        return cur.fetchone()

    def get_user_by_telegram_chat_id(self, chat_id: int) -> Optional[sqlite3.Row]:
        cur = self._get_cursor()
        cur.execute(
            "SELECT * FROM users WHERE telegram_chat_id = ? ORDER BY id LIMIT 1", (chat_id,)
        )
        return cur.fetchone()

    def get_users(self, role: Optional[str] = None) -> List[sqlite3.Row]:
        """Retrieves all accounts, optionally restricted to one role."""
        cur = self._get_cursor()
        if role is None:
            cur.execute("SELECT * FROM users ORDER BY id")
        else:
            cur.execute("SELECT * FROM users WHERE role = ? ORDER BY id", (role,))
        return cur.fetchall()

    def set_telegram_chat_id(self, user_id: int, chat_id: Optional[int]) -> bool:
        cur = self._get_cursor()
        cur.execute(
            "UPDATE users SET telegram_chat_id = ? WHERE id = ?", (chat_id, user_id)
        )
        return cur.rowcount == 1

    def release_telegram_chat(self, chat_id: int, keep_user_id: int) -> None:
        """Unlinks a chat from every account except one."""
        cur = self._get_cursor()
        cur.execute(
            "UPDATE users SET telegram_chat_id = NULL WHERE telegram_chat_id = ? AND id != ?",
            (chat_id, keep_user_id),
        )

    def set_collector_verification(
        self, user_id: int, status: str, notes: Optional[str]
    ) -> bool:
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE users SET verification_status = ?, verification_notes = ?
            WHERE id = ? AND role = 'collector'
            """,
            (status, notes, user_id),
        )
        return cur.rowcount == 1

    def set_collector_active(self, user_id: int, active: bool) -> bool:
        cur = self._get_cursor()
        cur.execute(
            "UPDATE users SET is_active = ? WHERE id = ? AND role = 'collector'",
            (1 if active else 0, user_id),
        )
        return cur.rowcount == 1

    def insert_link_code(
        self, code: str, user_id: int, created_at: datetime, expires_at: datetime
    ) -> None:
        cur = self._get_cursor()
        cur.execute(
            "INSERT INTO link_codes (code, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            (code, user_id, created_at.isoformat(), expires_at.isoformat()),
        )

    def redeem_link_code(self, code: str, chat_id: int, now: datetime) -> Optional[int]:
        """
        Marks an unused, unexpired code as redeemed by a chat.

        Returns:
            The user ID the code was issued for, or None if it cannot be redeemed.
        """
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE link_codes SET redeemed_at = ?, redeemed_by_chat_id = ?
            WHERE code = ? AND redeemed_at IS NULL AND expires_at > ?
            """,
            (now.isoformat(), chat_id, code, now.isoformat()),
        )
        if cur.rowcount != 1:
            return None
        cur.execute("SELECT user_id FROM link_codes WHERE code = ?", (code,))
        return cur.fetchone()["user_id"]

    def adjust_user_balances(
        self, user_id: int, green_coins_delta: int, eco_score_delta: int = 0
    ) -> bool:
        """
        Adds the deltas to a user's balances.

        Returns False, without writing, when the user does not exist or the
        GreenCoins balance would drop below zero.
        """
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE users
            SET green_coins = green_coins + ?, eco_score = eco_score + ?
            WHERE id = ? AND green_coins + ? >= 0 AND eco_score + ? >= 0
            """,
            (
                green_coins_delta,
                eco_score_delta,
                user_id,
                green_coins_delta,
                eco_score_delta,
            ),
        )
        return cur.rowcount == 1

    # --- Waste requests ---

    def insert_request(
        self,
        owner_id: int,
        waste_type: str,
        quantity_kg: float,
        estimated_value: float,
        estimated_green_coins: int,
        address: str,
        lat: float,
        lng: float,
        preferred_time: datetime,
        description: str,
        created_at: datetime,
    ) -> int:
        """Inserts a pending request and returns its ID."""
        cur = self._get_cursor()
        cur.execute(
            """
            INSERT INTO waste_requests (
                owner_id, waste_type, quantity_kg, estimated_value, estimated_green_coins,
                address, lat, lng, preferred_time, description, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
            """,
            (
                owner_id,
                waste_type,
                quantity_kg,
                estimated_value,
                estimated_green_coins,
                address,
                lat,
                lng,
                preferred_time.isoformat(),
                description,
                created_at.isoformat(),
            ),
        )
        return cur.lastrowid

    def get_request(self, request_id: int) -> Optional[sqlite3.Row]:
        cur = self._get_cursor()
        cur.execute("SELECT * FROM waste_requests WHERE id = ?", (request_id,))
        return cur.fetchone()

    def get_requests(
        self,
        status: Optional[str] = None,
        owner_id: Optional[int] = None,
        collector_id: Optional[int] = None,
    ) -> List[sqlite3.Row]:
        """Retrieves requests matching every given filter, newest first."""
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if collector_id is not None:
            clauses.append("collector_id = ?")
            params.append(collector_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cur = self._get_cursor()
        cur.execute(
            f"SELECT * FROM waste_requests {where} ORDER BY created_at DESC, id DESC",
            params,
        )
        return cur.fetchall()

    def claim_request(
        self, request_id: int, collector_id: int, scheduled_date: date
    ) -> bool:
        """
        Binds a collector to a pending request.

        The status check and the write are one statement, so of several
        concurrent callers exactly one sees a row count of 1.
        """
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE waste_requests
            SET status = 'assigned', collector_id = ?, scheduled_date = ?
            WHERE id = ? AND status = 'pending'
            """,
            (collector_id, scheduled_date.isoformat(), request_id),
        )
        return cur.rowcount == 1

    def mark_request_collected(
        self, request_id: int, collector_id: int, collected_at: datetime
    ) -> bool:
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE waste_requests
            SET status = 'collected', collected_at = ?
            WHERE id = ? AND status = 'assigned' AND collector_id = ?
            """,
            (collected_at.isoformat(), request_id, collector_id),
        )
        return cur.rowcount == 1

    def complete_request(
        self,
        request_id: int,
        collector_id: int,
        completed_at: datetime,
        actual_value: Optional[float],
    ) -> bool:
        """Completes an assigned or collected request; a None value keeps the estimate."""
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE waste_requests
            SET status = 'completed',
                completed_at = ?,
                actual_value = COALESCE(?, estimated_value),
                green_coins_earned = estimated_green_coins
            WHERE id = ? AND status IN ('assigned', 'collected') AND collector_id = ?
            """,
            (completed_at.isoformat(), actual_value, request_id, collector_id),
        )
        return cur.rowcount == 1

    def cancel_request(
        self, request_id: int, cancelled_by: int, cancelled_at: datetime
    ) -> bool:
        cur = self._get_cursor()
        cur.execute(
            """
            UPDATE waste_requests
            SET status = 'cancelled', cancelled_by = ?, cancelled_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (cancelled_by, cancelled_at.isoformat(), request_id),
        )
        return cur.rowcount == 1

    # --- Ledger ---

    def insert_transaction(
        self,
        user_id: int,
        kind: str,
        monetary_amount: float,
        green_coins: int,
        description: str,
        created_at: datetime,
        collector_id: Optional[int] = None,
        related_request_id: Optional[int] = None,
    ) -> int:
        """
        Appends a ledger entry and returns its ID.

        Raises:
            sqlite3.IntegrityError: On a second pickup entry for the same request.
        """
        cur = self._get_cursor()
        cur.execute(
            """
            INSERT INTO transactions (
                user_id, collector_id, related_request_id, kind,
                monetary_amount, green_coins, description, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                collector_id,
                related_request_id,
                kind,
                monetary_amount,
                green_coins,
                description,
                created_at.isoformat(),
            ),
        )
        return cur.lastrowid

    def get_transaction(self, transaction_id: int) -> Optional[sqlite3.Row]:
        cur = self._get_cursor()
        cur.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,))
        return cur.fetchone()

    def get_transactions(
        self,
        user_id: Optional[int] = None,
        kind: Optional[str] = None,
        related_request_id: Optional[int] = None,
    ) -> List[sqlite3.Row]:
        """Retrieves ledger entries matching every given filter, newest first."""
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if related_request_id is not None:
            clauses.append("related_request_id = ?")
            params.append(related_request_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cur = self._get_cursor()
        cur.execute(
            f"SELECT * FROM transactions {where} ORDER BY created_at DESC, id DESC",
            params,
        )
        return cur.fetchall()

    def get_balance_totals(self) -> List[sqlite3.Row]:
        """Returns each user's stored GreenCoins next to the sum of their ledger entries."""
        cur = self._get_cursor()
        cur.execute(
            """
            SELECT u.id AS user_id,
                   u.green_coins AS stored_green_coins,
                   COALESCE(SUM(t.green_coins), 0) AS ledger_green_coins
            FROM users u
            LEFT JOIN transactions t ON t.user_id = u.id
            GROUP BY u.id
            ORDER BY u.id
            """
        )
        return cur.fetchall()

    # --- Notifications ---

    def create_notification_log(
        self, user_id: int, request_id: Optional[int], chat_id: int, message: str
    ) -> int:
        """Queues a notification and returns its log ID."""
        cur = self._get_cursor()
        cur.execute(
            """
            INSERT INTO notification_logs (user_id, request_id, chat_id, message, status)
            VALUES (?, ?, ?, ?, 'pending')
            """,
            (user_id, request_id, chat_id, message),
        )
        return cur.lastrowid

    def get_pending_notifications(self) -> List[sqlite3.Row]:
        cur = self._get_cursor()
        cur.execute(
            "SELECT * FROM notification_logs WHERE status = 'pending' ORDER BY id"
        )
        return cur.fetchall()

    def update_notification_log_status(
        self, log_id: int, status: str, error_message: Optional[str] = None
    ) -> None:
        """Updates the status of a notification log."""
        cur = self._get_cursor()
        cur.execute(
            "UPDATE notification_logs SET status = ?, error_message = ?, timestamp_sent = CURRENT_TIMESTAMP WHERE id = ?",
            (status, error_message, log_id),
        )

    # --- Operations ---

    def get_all_logs(self) -> List[sqlite3.Row]:
        """Retrieves all logs from the database, ordered by timestamp descending."""
        cur = self._get_cursor()
        cur.execute(
            "SELECT * FROM logs ORDER BY timestamp DESC, id DESC LIMIT 100"
        )  # Limit to 100 to avoid overwhelming the dashboard
        return cur.fetchall()

    def set_system_info(self, key: str, value: str) -> None:
        cur = self._get_cursor()
        cur.execute(
            "INSERT OR REPLACE INTO system_info (key, value) VALUES (?, ?)", (key, value)
        )

    def get_system_info(self, key: str) -> Optional[str]:
        cur = self._get_cursor()
        cur.execute("SELECT value FROM system_info WHERE key = ?", (key,))
        row = cur.fetchone()
        return row[0] if row else None
