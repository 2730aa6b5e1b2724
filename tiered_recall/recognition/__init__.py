"""
Two-pass recognition flow.

Pass 1 plans retrieval, pass 2 recognizes context over the assembled
memory. Both degrade to deterministic fallbacks.
"""

from .models import (
    RecognitionModel,
    GenerationModel,
    GeneratedResponse,
    MockRecognitionModel,
    ScriptedRecognitionModel,
    UnavailableRecognitionModel,
    MockGenerator,
)
from .parsing import parse_retrieval_plan, parse_recognition_output
from .coordinator import RecognitionCoordinator, RecognitionRun, RecognitionState, fallback_plan

__all__ = [
    "RecognitionModel",
    "GenerationModel",
    "GeneratedResponse",
    "MockRecognitionModel",
    "ScriptedRecognitionModel",
    "UnavailableRecognitionModel",
    "MockGenerator",
    "parse_retrieval_plan",
    "parse_recognition_output",
    "RecognitionCoordinator",
    "RecognitionRun",
    "RecognitionState",
    "fallback_plan",
]
