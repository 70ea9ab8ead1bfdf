"""Error taxonomy for the round engine.

Every error carries a stable ``code`` so controllers can map it to a
response without string matching.
"""

from typing import Any, Optional


class GameError(Exception):
    code = "GAME_ERROR"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.details = details


# ---------------------------------------------------------------------
# VALIDATION (no side effect)
# ---------------------------------------------------------------------

class ValidationError(GameError):
    code = "VALIDATION_ERROR"

class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"

class InvalidSelectionError(ValidationError):
    code = "INVALID_SELECTION"

class UnknownGameError(ValidationError):
    code = "UNKNOWN_GAME"

class RoundNotFoundError(ValidationError):
    code = "ROUND_NOT_FOUND"

class BetNotFoundError(ValidationError):
    code = "BET_NOT_FOUND"

class GamePausedError(ValidationError):
    code = "GAME_PAUSED"

class MatchNotFoundError(ValidationError):
    code = "MATCH_NOT_FOUND"


# ---------------------------------------------------------------------
# CONFLICTS
# ---------------------------------------------------------------------

class ConflictError(GameError):
    code = "CONFLICT"

class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"

class RoundClosedError(ConflictError):
    code = "ROUND_CLOSED"

class AlreadyResolvedError(ConflictError):
    code = "ALREADY_RESOLVED"

    def __init__(self, message: str = "", outcome: Optional[dict] = None, **details: Any):
        super().__init__(message, **details)
        self.outcome = outcome

class DuplicateRequestError(ConflictError):
    code = "DUPLICATE_REQUEST"

class DuplicateBetError(ConflictError):
    code = "DUPLICATE_BET"

class TooLateError(ConflictError):
    code = "TOO_LATE"

class IncompleteSettlementError(ConflictError):
    code = "INCOMPLETE_SETTLEMENT"

class StaleStateError(ConflictError):
    """The client acted on a board that has since changed; refresh and retry."""
    code = "STALE_STATE"


# ---------------------------------------------------------------------
# RESOURCES / INFRASTRUCTURE
# ---------------------------------------------------------------------

class InsufficientBalanceError(GameError):
    code = "INSUFFICIENT_BALANCE"

class WalletNotFoundError(GameError):
    code = "WALLET_NOT_FOUND"

class WalletUnavailableError(GameError):
    """Transient wallet failure; the operation is safe to retry."""
    code = "WALLET_UNAVAILABLE"

class InvariantViolation(GameError):
    """A bug, not a user-facing condition. The round is held for inspection."""
    code = "INVARIANT_VIOLATION"
