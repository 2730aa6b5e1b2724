"""
Strict parsing of recognition model output.

A response either validates completely or raises MalformedRecognitionOutput;
partially valid output is never used.
"""

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tiered_recall.errors import MalformedRecognitionOutput
from tiered_recall.memory.schemas import IdentityAnchor, RecognitionOutput, RetrievalPlan


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class _PlanPayload(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    needs_warm: bool
    needs_cold: bool
    search_terms: List[str] = Field(default_factory=list)
    max_results: Optional[int] = Field(None, ge=1)
    temporal_context: str = ""
    rationale: str = ""


class _AnchorPayload(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    turn_id: Optional[str] = None
    anchor_type: str
    description: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class _OutputPayload(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    recognition_report: str = Field(..., min_length=1)
    topics: List[str] = Field(default_factory=list)
    domain_signals: Dict[str, float] = Field(default_factory=dict)
    identity_anchors: List[_AnchorPayload] = Field(default_factory=list)


def extract_json(raw: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of a model response.

    The object may be wrapped in a ``` or ```json fence; without a fence the
    whole (stripped) response must be the object.
    """
    if raw is None:
        raise MalformedRecognitionOutput("empty response", raw)

    match = _FENCE.search(raw)
    body = match.group(1).strip() if match else raw.strip()
    if not body:
        raise MalformedRecognitionOutput("empty response", raw)

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedRecognitionOutput(f"invalid JSON: {e}", raw) from e

    if not isinstance(data, dict):
        raise MalformedRecognitionOutput("expected a JSON object", raw)
    return data


def parse_retrieval_plan(raw: str, default_max_results: int = 8) -> RetrievalPlan:
    """
    Parse a planning-pass response into a RetrievalPlan.

    Raises:
        MalformedRecognitionOutput: invalid JSON, wrong types, or retrieval
            requested without search terms
    """
    data = extract_json(raw)
    try:
        payload = _PlanPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedRecognitionOutput(f"plan failed validation: {e.error_count()} errors", raw) from e

    terms = [t.strip() for t in payload.search_terms if t.strip()]
    if (payload.needs_warm or payload.needs_cold) and not terms:
        raise MalformedRecognitionOutput("retrieval requested with no search terms", raw)

    return RetrievalPlan(
        needs_warm=payload.needs_warm,
        needs_cold=payload.needs_cold,
        search_terms=terms,
        max_results=payload.max_results or default_max_results,
        temporal_context=payload.temporal_context,
        rationale=payload.rationale,
        source="recognition",
    )


def parse_recognition_output(raw: str) -> RecognitionOutput:
    """Parse a context-pass response into a RecognitionOutput."""
    data = extract_json(raw)
    try:
        payload = _OutputPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedRecognitionOutput(f"output failed validation: {e.error_count()} errors", raw) from e

    for domain, strength in payload.domain_signals.items():
        if not 0.0 <= strength <= 1.0:
            raise MalformedRecognitionOutput(f"domain signal out of range: {domain}={strength}", raw)

    return RecognitionOutput(
        recognition_report=payload.recognition_report,
        topics=payload.topics,
        domain_signals=payload.domain_signals,
        identity_anchors=[IdentityAnchor(**a.model_dump()) for a in payload.identity_anchors],
    )
