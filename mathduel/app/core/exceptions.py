"""Exceptions raised by the tournament engine."""

from datetime import datetime
from typing import Optional


class EngineError(Exception):
    """Base exception for all tournament engine errors."""

    pass


# ========== Caller errors (nothing mutated) ==========


class EngineValidationError(EngineError, ValueError):
    """Raised when a request is rejected before any state changes."""

    pass


class NotFoundError(EngineValidationError):
    """Raised when a tournament, participant or game does not exist."""

    pass


class InvalidStateError(EngineValidationError):
    """Raised when the target is not in a state that allows the operation."""

    pass


class InputLockedError(InvalidStateError):
    """Raised when a player answers during the wrong-answer cooldown."""

    def __init__(self, message: str, locked_until: Optional[datetime] = None):
        super().__init__(message)
        self.locked_until = locked_until


# ========== Internal / infrastructure ==========


class RaceLostError(EngineError):
    """A conditional update matched no row: another writer got there first."""

    pass


class OracleUnavailableError(EngineError):
    """The problem supplier or rating store could not serve the request."""

    pass


class CorruptStateError(EngineError):
    """Persisted state violates an engine invariant and needs an operator."""

    pass
