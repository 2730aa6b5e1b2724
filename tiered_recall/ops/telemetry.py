"""
Telemetry and structured logging for the memory core.

Recognition pass timings and tier transitions are emitted as structured
JSON events; library modules otherwise log through stdlib `logging`.
"""

import uuid
from typing import Any, Dict, Optional

import structlog


structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger("tiered_recall.telemetry")


def new_run_id() -> str:
    """Generate a new unique run ID."""
    return str(uuid.uuid4())


def log_step(
    run_id: str,
    step_name: str,
    ms: float,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a recognition-flow step with timing.

    Args:
        run_id: Unique run identifier (one per processed turn)
        step_name: Name of the step (e.g., "plan", "assemble", "context")
        ms: Duration in milliseconds
        extra: Optional extra fields to log
    """
    logger.info(
        "step_executed",
        run_id=run_id,
        step=step_name,
        duration_ms=round(ms, 3),
        **(extra or {}),
    )


def log_transition(
    turn_id: str,
    from_tier: str,
    to_tier: str,
    reason: str,
    session_id: Optional[str] = None,
) -> None:
    """Audit event for a tier transition."""
    logger.info(
        "tier_transition",
        turn_id=turn_id,
        from_tier=from_tier,
        to_tier=to_tier,
        reason=reason,
        session_id=session_id,
    )


def log_fallback(run_id: str, stage: str, reason: str) -> None:
    """A recognition pass fell back to its deterministic path."""
    logger.warning("recognition_fallback", run_id=run_id, stage=stage, reason=reason)
