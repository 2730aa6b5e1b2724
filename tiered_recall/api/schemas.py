"""Pydantic models for API requests and responses."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from tiered_recall.memory.schemas import Tier


class StartSessionRequest(BaseModel):
    """Request body for POST /sessions."""

    user_id: str = Field(..., description="User identifier", min_length=1)


class TurnRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/turns."""

    user_id: str = Field(..., description="Owner of the session", min_length=1)
    text: str = Field(..., description="User message", min_length=1, max_length=20000)

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_42",
                "text": "Remember the quantum computing discussion?",
            }
        }


class PreviewRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/preview."""

    text: str = Field(..., description="Hypothetical user message", min_length=1)


class EndSessionResponse(BaseModel):
    """Response after ending a session."""

    session_id: str
    transitioned_turn_ids: List[str] = Field(default_factory=list, description="Turns moved to cold")
    count: int


class SetTierRequest(BaseModel):
    """Administrative tier override."""

    tier: Tier = Field(..., description="Target tier: hot, warm or cold")
    reason: str = Field(..., description="Audit reason", min_length=1)


class SetTierResponse(BaseModel):
    turn_id: str
    changed: bool
    from_tier: Optional[Tier] = None
    to_tier: Tier


class HealthResponse(BaseModel):
    """Response model for /health endpoint."""

    status: str = Field(..., description="Service status")
    components: Dict[str, bool] = Field(default_factory=dict, description="Component availability")
    indexed_turns: int = 0
