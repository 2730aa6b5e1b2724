"""Model capabilities used by the two-pass flow: recognition and generation."""
from __future__ import annotations

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Sequence, Union

from tiered_recall.errors import ProviderError, RecognitionUnavailable
from tiered_recall.index.tokenize import tokenize


@dataclass
class GeneratedResponse:
    """Container for generated response with metadata."""
    text: str
    model_used: str
    prompt_length: int
    response_length: int
    processing_time: float = 0.0


class RecognitionModel(ABC):
    """Structured-output model used for the planning and context passes."""

    @abstractmethod
    async def infer(self, prompt: str) -> str:
        """Return the raw model output for a prompt."""
        pass

    def is_available(self) -> bool:
        return True


class GenerationModel(ABC):
    """Produces the assistant reply from the final prompt."""

    @abstractmethod
    async def generate(self, prompt: str) -> GeneratedResponse:
        """Generate a reply. Raises ProviderError on failure."""
        pass

    def is_available(self) -> bool:
        return True


# ============================================================================
# Deterministic implementations (tests, local runs)
# ============================================================================

_MEMORY_CUES = ("remember", "recall", "earlier", "before", "last time", "previously")
_PLAN_MARKER = "RETRIEVAL PLAN"


class MockRecognitionModel(RecognitionModel):
    """
    Rule-based recognition model producing well-formed JSON.

    Answers planning prompts with a plan built from the user message and
    context prompts with a short recognition report.
    """

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s
        self.calls = 0

    async def infer(self, prompt: str) -> str:
        self.calls += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)

        message = _extract_user_message(prompt)
        terms = list(dict.fromkeys(tokenize(message)))[:8]

        if _PLAN_MARKER in prompt:
            lowered = message.lower()
            wants_memory = any(cue in lowered for cue in _MEMORY_CUES)
            plan = {
                "needs_warm": bool(terms),
                "needs_cold": wants_memory and bool(terms),
                "search_terms": terms,
                "max_results": 8,
                "temporal_context": "mock temporal assessment",
                "rationale": "keyword match on user message",
            }
            return "```json\n" + json.dumps(plan) + "\n```"

        output = {
            "recognition_report": f"User is asking about: {', '.join(terms) or 'general conversation'}",
            "topics": terms[:3],
            "domain_signals": {t: 0.5 for t in terms[:3]},
            "identity_anchors": [],
        }
        return json.dumps(output)


Script = Union[str, BaseException, Callable[[str], str]]


class ScriptedRecognitionModel(RecognitionModel):
    """
    Replays a fixed script of outcomes, one per call.

    Each entry is returned as-is (str), raised (exception) or called with the
    prompt (callable). When the script runs out the last entry repeats.
    Prompts are recorded for inspection.
    """

    def __init__(self, script: Sequence[Script], delay_s: float = 0.0):
        if not script:
            raise ValueError("script must not be empty")
        self.script = list(script)
        self.delay_s = delay_s
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def infer(self, prompt: str) -> str:
        step = self.script[min(len(self.prompts), len(self.script) - 1)]
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(prompt)
        return step


class UnavailableRecognitionModel(RecognitionModel):
    """Recognition capability that is switched off; every call fails fast."""

    async def infer(self, prompt: str) -> str:
        raise RecognitionUnavailable("recognition model is not configured")

    def is_available(self) -> bool:
        return False


class MockGenerator(GenerationModel):
    """Mock generator for testing and local runs."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> GeneratedResponse:
        start = time.time()
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("mock generator configured to fail")

        message = _extract_user_message(prompt)
        text = f"Here is a response to: {message}" if message else "Hello! How can I help?"
        return GeneratedResponse(
            text=text,
            model_used="mock_generator",
            prompt_length=len(prompt),
            response_length=len(text),
            processing_time=time.time() - start,
        )


_USER_LINE = re.compile(r"^USER MESSAGE:\s*(.*)$", re.MULTILINE)


def _extract_user_message(prompt: str) -> str:
    match = _USER_LINE.search(prompt)
    return match.group(1).strip() if match else ""
