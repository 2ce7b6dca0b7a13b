"""
This module defines custom exceptions for the pickup lifecycle and ledger.

Every exception carries a ``user_message`` that the transport layer can show
as-is; ``str(exc)`` holds the detailed, log-oriented message.
"""


class PickupError(Exception):
    """Base class for all expected errors raised by the core."""

    user_message = "The operation could not be completed."

    def __init__(self, message: str = None):
        super().__init__(message or self.user_message)


class InvalidInput(PickupError):
    """Malformed quantity, waste type or missing logistics."""

    user_message = "Some of the details provided are invalid."


class NotFound(PickupError):
    """Unknown request or user id."""

    user_message = "The requested item could not be found."


class Forbidden(PickupError):
    """The actor is not allowed to perform the action."""

    user_message = "You are not allowed to do that."


class InvalidTransition(PickupError):
    """The action is not legal from the request's current status."""

    user_message = "This pickup cannot be changed in its current state."


class AlreadyClaimed(InvalidTransition):
    """Another collector won the race for this request."""

    user_message = "This pickup was already claimed by another collector."


class LedgerError(PickupError):
    """The ledger refused a write that the lifecycle expected to succeed."""

    user_message = "The payment could not be recorded. Please contact support."


class StoreUnavailable(PickupError):
    """The store stayed locked for every retry attempt."""

    user_message = "The service is busy right now. Please try again."
