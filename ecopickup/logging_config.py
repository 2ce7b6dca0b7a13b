"""
This module sets up a database logging handler for the application.

Store sessions hold a write lock for their whole duration, so records are
handed to a background listener thread and written to SQLite from there.
"""
import atexit
import logging
import queue
import sqlite3
import sys
from logging import Handler, LogRecord
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

from pickup_ledger.config import LOG_LEVEL, PICKUP_DB_PATH, SQLITE_BUSY_TIMEOUT

_listener: Optional[QueueListener] = None


def _stop_listener() -> None:
    """Flushes queued records and stops the database writer thread."""
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None


atexit.register(_stop_listener)


class SQLiteHandler(Handler):
    """
    A logging handler that writes records to the ``logs`` table.
    """

    def __init__(self, db_path: str = PICKUP_DB_PATH, timeout: float = SQLITE_BUSY_TIMEOUT):
        super().__init__()
        self.db_path = db_path
        self.timeout = timeout

    def emit(self, record: LogRecord) -> None:
        """
        Writes the log record to the database.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            try:
                conn.execute(
                    "INSERT INTO logs (level, message, logger_name) VALUES (?, ?, ?)",
                    (record.levelname, self.format(record), record.name),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            print(f"CRITICAL: Could not write log to database: {e}", file=sys.stderr)


def setup_database_logging(db_path: str = PICKUP_DB_PATH, level: int = LOG_LEVEL) -> QueueListener:
    """
    Configures the root logger to log to the database and the console.

    Returns:
        The running queue listener that feeds the database handler.
    """
    global _listener

    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove any existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    _stop_listener()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    db_handler = SQLiteHandler(db_path)
    db_handler.setLevel(level)
    db_handler.setFormatter(formatter)

    log_queue: "queue.Queue[LogRecord]" = queue.Queue(-1)
    _listener = QueueListener(log_queue, db_handler, respect_handler_level=True)
    _listener.start()
    logger.addHandler(QueueHandler(log_queue))

    # Add a console handler as well for immediate feedback
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logging.info("Logging configured to use database and console.")
    return _listener
