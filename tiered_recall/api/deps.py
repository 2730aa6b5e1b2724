"""Shared API dependencies and error mapping."""

from typing import Optional

from fastapi import HTTPException

from tiered_recall.engine import MemoryEngine
from tiered_recall.errors import (
    ProviderError,
    SessionBusy,
    SessionEnded,
    SessionNotFound,
    StorageUnavailable,
    TieredRecallError,
    TurnNotFound,
)


_engine: Optional[MemoryEngine] = None


def set_engine(engine: Optional[MemoryEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> MemoryEngine:
    """Dependency to get the memory engine."""
    if _engine is None:
        raise HTTPException(status_code=503, detail="Memory engine not initialized")
    return _engine


_STATUS = (
    (SessionNotFound, 404),
    (TurnNotFound, 404),
    (SessionBusy, 409),
    (SessionEnded, 409),
    (StorageUnavailable, 503),
    (ProviderError, 502),
)


def to_http_error(exc: TieredRecallError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    for exc_type, status in _STATUS:
        if isinstance(exc, exc_type):
            detail = "Storage unavailable, try again" if status == 503 else str(exc)
            return HTTPException(status_code=status, detail=detail)
    return HTTPException(status_code=500, detail=str(exc))
