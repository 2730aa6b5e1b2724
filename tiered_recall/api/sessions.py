"""
Session and turn endpoints.

A session is the unit of Hot/Warm memory; ending it moves its turns to
Cold storage.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from tiered_recall.engine import MemoryEngine
from tiered_recall.errors import TieredRecallError
from tiered_recall.memory.schemas import AssistantResponse, MemoryBundle, Session, Turn

from .deps import get_engine, to_http_error
from .schemas import (
    EndSessionResponse,
    PreviewRequest,
    SetTierRequest,
    SetTierResponse,
    StartSessionRequest,
    TurnRequest,
)


router = APIRouter(prefix="/sessions", tags=["sessions"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("", response_model=Session)
async def start_session(request: StartSessionRequest, engine: MemoryEngine = Depends(get_engine)):
    """Return the user's active session, creating one if needed."""
    try:
        return engine.start_session(request.user_id)
    except TieredRecallError as e:
        raise to_http_error(e) from e


@router.post("/{session_id}/turns", response_model=AssistantResponse)
async def post_turn(
    session_id: str,
    request: TurnRequest,
    engine: MemoryEngine = Depends(get_engine),
):
    """
    Process one user message.

    Errors:
        404 unknown session, 409 session busy or ended, 502 generation
        failed, 503 storage unavailable (safe to retry)
    """
    try:
        return await engine.process_turn(session_id, request.user_id, request.text)
    except TieredRecallError as e:
        raise to_http_error(e) from e


@router.post("/{session_id}/end", response_model=EndSessionResponse)
async def end_session(session_id: str, engine: MemoryEngine = Depends(get_engine)):
    try:
        transitions = await engine.end_session(session_id)
    except TieredRecallError as e:
        raise to_http_error(e) from e

    turn_ids = [tr.turn_id for tr in transitions]
    return EndSessionResponse(session_id=session_id, transitioned_turn_ids=turn_ids, count=len(turn_ids))


@router.post("/{session_id}/preview", response_model=MemoryBundle)
async def preview_bundle(
    session_id: str,
    request: PreviewRequest,
    engine: MemoryEngine = Depends(get_engine),
):
    """Memory that would be assembled for a message, without storing a turn."""
    try:
        return await engine.get_memory_bundle_preview(session_id, request.text)
    except TieredRecallError as e:
        raise to_http_error(e) from e


@router.get("/{session_id}/turns", response_model=List[Turn])
async def list_turns(
    session_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    engine: MemoryEngine = Depends(get_engine),
):
    try:
        return engine.get_turns(session_id, offset=offset, limit=limit)
    except TieredRecallError as e:
        raise to_http_error(e) from e


@admin_router.post("/turns/{turn_id}/tier", response_model=SetTierResponse)
async def set_turn_tier(
    turn_id: str,
    request: SetTierRequest,
    engine: MemoryEngine = Depends(get_engine),
):
    """Manual tier override, recorded in the transition log as manual:<reason>."""
    try:
        transition = engine.set_tier(turn_id, request.tier, request.reason)
    except TieredRecallError as e:
        raise to_http_error(e) from e

    if transition is None:
        return SetTierResponse(turn_id=turn_id, changed=False, to_tier=request.tier)
    return SetTierResponse(
        turn_id=turn_id,
        changed=True,
        from_tier=transition.from_tier,
        to_tier=transition.to_tier,
    )
