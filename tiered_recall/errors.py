"""
Error taxonomy for the memory core.

Storage and provider errors propagate to the caller. Recognition errors are
absorbed by the coordinator's fallback paths and never reach end users.
"""

from typing import Optional


class TieredRecallError(Exception):
    """Base class for all errors raised by this package."""


# ============================================================================
# Storage
# ============================================================================

class StorageUnavailable(TieredRecallError):
    """Turn store or transition log could not be reached or written."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SessionNotFound(TieredRecallError):
    """No session exists with the given id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionEnded(TieredRecallError):
    """Session has already been ended and accepts no new turns."""

    def __init__(self, session_id: str):
        super().__init__(f"Session already ended: {session_id}")
        self.session_id = session_id


class TurnNotFound(TieredRecallError):
    """No turn exists with the given id."""

    def __init__(self, turn_id: str):
        super().__init__(f"Turn not found: {turn_id}")
        self.turn_id = turn_id


# ============================================================================
# Concurrency
# ============================================================================

class SessionBusy(TieredRecallError):
    """A turn is already in flight for this session; caller should retry."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has a turn in flight")
        self.session_id = session_id


# ============================================================================
# Configuration
# ============================================================================

class InvalidConfig(TieredRecallError):
    """Configuration failed validation at load time."""


class InvalidWeights(InvalidConfig):
    """Significance weights are negative or do not sum to 1.0."""


# ============================================================================
# Recognition capability
# ============================================================================

class RecognitionError(TieredRecallError):
    """Base class for recognition-pass failures (recoverable via fallback)."""


class RecognitionUnavailable(RecognitionError):
    """Recognition capability raised or is not reachable."""


class RecognitionTimeout(RecognitionError):
    """Recognition call exceeded its time bound."""

    def __init__(self, timeout_s: float):
        super().__init__(f"Recognition call timed out after {timeout_s}s")
        self.timeout_s = timeout_s


class MalformedRecognitionOutput(RecognitionError):
    """Recognition output could not be parsed or failed validation."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


# ============================================================================
# Generation capability
# ============================================================================

class ProviderError(TieredRecallError):
    """Generation model failed; fatal for the current request only."""
