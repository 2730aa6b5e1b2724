"""
Two-pass recognition flow.

Pass 1 asks the recognition model which memory to fetch (RetrievalPlan).
Pass 2 retrieves and assembles the MemoryBundle, then asks the model to
recognize topics and identity anchors over it. Both passes retry with
exponential backoff and degrade to deterministic fallbacks, so a turn is
never blocked by the recognition capability.

States:
    awaiting_plan -> plan_received -> memory_assembled -> context_built -> done
    any state -> failed
"""

import asyncio
import logging
import re
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Tuple, TypeVar

from tiered_recall.config.settings import BundleCfg, RecognitionCfg
from tiered_recall.errors import RecognitionError, RecognitionTimeout, TieredRecallError
from tiered_recall.index.tokenize import STOP_WORDS
from tiered_recall.memory.bundle import assemble_bundle
from tiered_recall.memory.schemas import (
    MemoryBundle,
    RecognitionOutput,
    RetrievalPlan,
    ScoredTurn,
)
from tiered_recall.memory.temporal import TemporalContext
from tiered_recall.memory.tiers import TierManager
from tiered_recall.ops.telemetry import log_fallback, log_step, new_run_id
from .models import RecognitionModel
from .parsing import parse_recognition_output, parse_retrieval_plan
from .prompts import build_context_prompt, build_plan_prompt


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecognitionState(str, Enum):
    AWAITING_PLAN = "awaiting_plan"
    PLAN_RECEIVED = "plan_received"
    MEMORY_ASSEMBLED = "memory_assembled"
    CONTEXT_BUILT = "context_built"
    DONE = "done"
    FAILED = "failed"


_NEXT_STATE = {
    RecognitionState.AWAITING_PLAN: RecognitionState.PLAN_RECEIVED,
    RecognitionState.PLAN_RECEIVED: RecognitionState.MEMORY_ASSEMBLED,
    RecognitionState.MEMORY_ASSEMBLED: RecognitionState.CONTEXT_BUILT,
    RecognitionState.CONTEXT_BUILT: RecognitionState.DONE,
}


class RecognitionRun:
    """State of one two-pass run. Fallbacks are recorded, not hidden."""

    def __init__(self, session_id: str, user_id: str, user_text: str, temporal: TemporalContext):
        self.run_id = new_run_id()
        self.session_id = session_id
        self.user_id = user_id
        self.user_text = user_text
        self.temporal = temporal

        self.state = RecognitionState.AWAITING_PLAN
        self.history: List[Tuple[RecognitionState, str]] = [(self.state, "")]

        self.plan: Optional[RetrievalPlan] = None
        self.bundle: Optional[MemoryBundle] = None
        self.recognition: Optional[RecognitionOutput] = None
        self.plan_fallback = False
        self.context_fallback = False
        self.plan_attempts = 0
        self.context_attempts = 0

    def advance(self, state: RecognitionState, detail: str = "") -> None:
        if self.state == RecognitionState.FAILED or _NEXT_STATE.get(self.state) != state:
            raise RuntimeError(f"illegal recognition transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append((state, detail))

    def fail(self, detail: str) -> None:
        self.state = RecognitionState.FAILED
        self.history.append((RecognitionState.FAILED, detail))

    @property
    def fallbacks(self) -> List[str]:
        stages = []
        if self.plan_fallback:
            stages.append("plan")
        if self.context_fallback:
            stages.append("context")
        return stages


# ============================================================================
# Deterministic fallback plan
# ============================================================================

MEMORY_CUE_WORDS = (
    "remember", "recall", "earlier", "before", "previously", "last time",
    "we talked", "we discussed", "you said", "i told you", "mentioned",
)

_CUE_TOKENS = frozenset(w for cue in MEMORY_CUE_WORDS for w in cue.split())


def has_memory_cue(text: str) -> bool:
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(cue)}\b", lowered) for cue in MEMORY_CUE_WORDS)


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    """Extract important keywords from the user message."""
    clean = re.sub(r"[^\w\s]", "", text.lower())
    keywords = []
    for word in clean.split():
        if len(word) > 3 and word not in STOP_WORDS and word not in _CUE_TOKENS and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


def fallback_plan(
    user_text: str,
    temporal: TemporalContext,
    cfg: Optional[RecognitionCfg] = None,
    source: str = "fallback",
) -> RetrievalPlan:
    """
    Plan used when the recognition pass is unavailable.

    Warm memory is searched after a short gap, Cold memory when the user
    explicitly refers back to an earlier conversation.
    """
    cfg = cfg or RecognitionCfg()
    return RetrievalPlan(
        needs_warm=temporal.is_recent(cfg.warm_gap_seconds),
        needs_cold=has_memory_cue(user_text),
        search_terms=extract_keywords(user_text),
        max_results=cfg.default_max_results,
        rationale="deterministic fallback",
        temporal_context=temporal.framing,
        source=source,
    )


# ============================================================================
# Coordinator
# ============================================================================

class RecognitionCoordinator:
    """Runs the two-pass protocol for one turn at a time per session."""

    def __init__(
        self,
        tiers: TierManager,
        model: RecognitionModel,
        cfg: Optional[RecognitionCfg] = None,
        bundle_cfg: Optional[BundleCfg] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tiers = tiers
        self.model = model
        self.cfg = cfg or RecognitionCfg()
        self.bundle_cfg = bundle_cfg or BundleCfg()
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.cfg.enabled and self.model.is_available()

    async def run(
        self,
        session_id: str,
        user_id: str,
        user_text: str,
        temporal: TemporalContext,
        current_turn_id: Optional[str] = None,
        mark_criticality: bool = True,
    ) -> RecognitionRun:
        """
        Execute both passes and return the finished run.

        Args:
            session_id: Session of the current turn
            user_id: Owner, for Cold retrieval
            user_text: Current user message
            temporal: Time since the user's previous turn
            current_turn_id: Turn being answered; excluded from the bundle
            mark_criticality: Schedule background criticality updates from
                identity anchors (off for previews)
        """
        run = RecognitionRun(session_id, user_id, user_text, temporal)
        try:
            hot = [t for t in self.tiers.get_hot(session_id) if t.id != current_turn_id]

            start = time.perf_counter()
            run.plan = (await self.plan(run, hot)).clamped(self.cfg.max_results_cap)
            run.advance(RecognitionState.PLAN_RECEIVED, run.plan.source)
            log_step(run.run_id, "plan", (time.perf_counter() - start) * 1000,
                     {"source": run.plan.source, "attempts": run.plan_attempts})

            start = time.perf_counter()
            retrieved = self.retrieve(run.plan, session_id, user_id, exclude={current_turn_id})
            run.bundle = assemble_bundle(session_id, hot, retrieved, self.bundle_cfg.token_budget)
            run.advance(RecognitionState.MEMORY_ASSEMBLED, f"{len(run.bundle.retrieved)} retrieved")
            log_step(run.run_id, "assemble", (time.perf_counter() - start) * 1000,
                     {"retrieved": len(run.bundle.retrieved), "trimmed": run.bundle.trimmed,
                      "tokens": run.bundle.total_tokens})

            start = time.perf_counter()
            run.recognition = await self.recognize(run)
            run.advance(RecognitionState.CONTEXT_BUILT, "fallback" if run.context_fallback else "recognition")
            log_step(run.run_id, "context", (time.perf_counter() - start) * 1000,
                     {"fallback": run.context_fallback, "attempts": run.context_attempts})

            if mark_criticality and run.recognition is not None:
                allowed = set(run.bundle.turn_ids)
                if current_turn_id:
                    allowed.add(current_turn_id)
                self.schedule_criticality(run.recognition, allowed)

            run.advance(RecognitionState.DONE)
        except asyncio.CancelledError:
            run.fail("cancelled")
            raise
        except TieredRecallError as e:
            run.fail(str(e))
            raise
        return run

    async def plan(self, run: RecognitionRun, hot) -> RetrievalPlan:
        """Pass 1: ask for a retrieval plan, falling back deterministically."""
        if not self.enabled:
            run.plan_fallback = True
            return fallback_plan(run.user_text, run.temporal, self.cfg, source="disabled")

        prompt = build_plan_prompt(run.user_text, hot, run.temporal)
        plan, attempts = await self._call_with_retry(
            prompt,
            lambda raw: parse_retrieval_plan(raw, self.cfg.default_max_results),
            run.run_id,
            "plan",
        )
        run.plan_attempts = attempts
        if plan is None:
            run.plan_fallback = True
            return fallback_plan(run.user_text, run.temporal, self.cfg)
        return plan

    def retrieve(
        self,
        plan: RetrievalPlan,
        session_id: str,
        user_id: str,
        exclude: Optional[Set[str]] = None,
    ) -> List[ScoredTurn]:
        """Search the tiers named by the plan and merge by significance."""
        if not plan.search_terms:
            return []

        results: List[ScoredTurn] = []
        if plan.needs_warm:
            results.extend(self.tiers.search_warm(session_id, plan.search_terms, plan.max_results))
        if plan.needs_cold:
            results.extend(self.tiers.search_cold(user_id, plan.search_terms, plan.max_results))

        exclude = exclude or set()
        merged = {}
        for scored in results:
            if scored.turn.id in exclude:
                continue
            if scored.turn.id not in merged or scored.score > merged[scored.turn.id].score:
                merged[scored.turn.id] = scored

        ranked = sorted(
            merged.values(),
            key=lambda s: (-s.score, -s.turn.created_at, -s.turn.sequence_number, s.turn.id),
        )
        return ranked[: plan.max_results]

    async def recognize(self, run: RecognitionRun) -> Optional[RecognitionOutput]:
        """Pass 2: recognition over the assembled bundle. None means fall back to the raw bundle."""
        if not self.enabled:
            run.context_fallback = True
            return None

        prompt = build_context_prompt(run.user_text, run.temporal, run.bundle)
        output, attempts = await self._call_with_retry(prompt, parse_recognition_output, run.run_id, "context")
        run.context_attempts = attempts
        if output is None:
            run.context_fallback = True
        return output

    async def _call_with_retry(
        self,
        prompt: str,
        parse: Callable[[str], T],
        run_id: str,
        stage: str,
    ) -> Tuple[Optional[T], int]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.cfg.pass_deadline_s
        last_error = ""
        attempts = 0
        for attempt in range(1, self.cfg.max_attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                last_error = f"pass deadline of {self.cfg.pass_deadline_s}s exceeded; {last_error}"
                break
            attempts = attempt
            timeout = min(self.cfg.timeout_s, remaining)
            try:
                try:
                    raw = await asyncio.wait_for(self.model.infer(prompt), timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise RecognitionTimeout(timeout) from e
                return parse(raw), attempt
            except RecognitionError as e:
                last_error = str(e)
            except Exception as e:
                # Provider-specific failures are recoverable here
                last_error = f"{type(e).__name__}: {e}"

            logger.warning("Recognition %s attempt %d/%d failed: %s",
                           stage, attempt, self.cfg.max_attempts, last_error)
            if attempt < self.cfg.max_attempts:
                backoff = self.cfg.backoff_base_s * (2 ** (attempt - 1))
                await self._sleep(min(backoff, max(0.0, deadline - loop.time())))

        log_fallback(run_id, stage, last_error)
        return None, attempts

    # ------------------------------------------------------------------
    # Background criticality
    # ------------------------------------------------------------------

    def schedule_criticality(self, output: RecognitionOutput, allowed_ids: Set[str]) -> Optional[asyncio.Task]:
        """Mark anchored turns critical without blocking the response path."""
        turn_ids = [a.turn_id for a in output.identity_anchors if a.turn_id in allowed_ids]
        if not turn_ids:
            return None

        task = asyncio.create_task(self._mark_critical(list(dict.fromkeys(turn_ids))))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _mark_critical(self, turn_ids: List[str]) -> None:
        for turn_id in turn_ids:
            try:
                await asyncio.to_thread(self.tiers.store.set_criticality, turn_id, True)
            except TieredRecallError:
                logger.exception("Failed to mark turn %s critical", turn_id)

    async def drain(self) -> None:
        """Wait for pending background tasks (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
