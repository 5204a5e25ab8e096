"""Error taxonomy shared by services and the HTTP layer.

Every error carries a stable ``code`` and the HTTP status it maps to. Messages
are meant for end users and never include internal identifiers.
"""

from typing import Optional


class BetPulseError(Exception):
    code = "error"
    status_code = 500
    default_message = "Unexpected error."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidArgument(BetPulseError):
    code = "invalid_argument"
    status_code = 400
    default_message = "Invalid request."


class NotFound(BetPulseError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class UserNotFound(NotFound):
    default_message = "User not found."


class GameNotFound(NotFound):
    default_message = "Game not found."


class BetNotFound(NotFound):
    default_message = "Bet not found."


class TransactionNotFound(NotFound):
    default_message = "Transaction not found."


class InsufficientFunds(BetPulseError):
    code = "insufficient_funds"
    status_code = 409
    default_message = "Insufficient balance."


class InvalidState(BetPulseError):
    code = "invalid_state"
    status_code = 409
    default_message = "Operation not allowed in the current state."


class MissingDestination(InvalidState):
    code = "missing_destination"
    default_message = "Transaction has no M-Pesa number associated."


class ProviderError(BetPulseError):
    """The payment provider call failed or timed out."""

    code = "provider_error"
    status_code = 502
    default_message = "Payment provider unavailable. Please try again shortly."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        # Provider-side diagnostic; logged and stored, never shown to players
        self.detail = detail or self.message


class SettlementError(BetPulseError):
    """A bet could not be settled; the stake was not kept."""

    code = "settlement_failed"
    status_code = 500
    default_message = "The bet could not be settled. Your balance was not charged."


class AuthenticationError(BetPulseError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Invalid or missing token."


class PermissionDenied(BetPulseError):
    code = "forbidden"
    status_code = 403
    default_message = "Administrator access required."
