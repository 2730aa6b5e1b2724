"""
MemoryEngine: the produced interface of the memory core.

Wires the turn store, ranked index, tier manager and recognition coordinator
together and runs one user message through append -> recognize -> generate
-> complete.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from tiered_recall.config.settings import Settings
from tiered_recall.errors import ProviderError, SessionBusy, SessionNotFound, TieredRecallError
from tiered_recall.index.ranked_index import IndexStatsSnapshot, RankedIndex
from tiered_recall.memory.anchors import detect_anchors
from tiered_recall.memory.schemas import (
    AssistantResponse,
    MemoryBundle,
    Session,
    Tier,
    TierTransition,
    Turn,
)
from tiered_recall.memory.significance import SignificanceScorer
from tiered_recall.memory.temporal import TemporalContext
from tiered_recall.memory.tiers import TierManager
from tiered_recall.memory.tokens import estimate_tokens
from tiered_recall.persist.turn_store import IndexUpdate, TurnStore
from tiered_recall.recognition.coordinator import RecognitionCoordinator
from tiered_recall.recognition.models import (
    GenerationModel,
    MockGenerator,
    MockRecognitionModel,
    RecognitionModel,
)
from tiered_recall.recognition.prompts import build_generation_prompt


logger = logging.getLogger(__name__)


class MemoryEngine:
    """
    Orchestrates conversation memory for an assistant.

    At most one turn is processed per session at a time; a second request
    for a busy session fails fast with SessionBusy. Different sessions run
    concurrently.
    """

    def __init__(
        self,
        store: TurnStore,
        index: RankedIndex,
        tiers: TierManager,
        coordinator: RecognitionCoordinator,
        generator: GenerationModel,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.index = index
        self.tiers = tiers
        self.coordinator = coordinator
        self.generator = generator
        self.settings = settings or Settings()
        self._session_locks: Dict[str, asyncio.Lock] = {}

        self.store.subscribe(self._on_store_update)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        recognition_model: Optional[RecognitionModel] = None,
        generator: Optional[GenerationModel] = None,
        db_path: Union[str, Path, None] = None,
    ) -> "MemoryEngine":
        """
        Build an engine from settings.

        Args:
            settings: Application settings (defaults if omitted)
            recognition_model: Recognition capability (mock if omitted)
            generator: Generation capability (mock if omitted)
            db_path: Override for settings.store.db_path

        Returns:
            Ready engine with the index rebuilt from stored turns
        """
        settings = settings or Settings()
        store = TurnStore(db_path or settings.store.db_path, user_query_cap=settings.store.user_query_cap)
        index = RankedIndex.rebuild(store.iter_all_turns(), k1=settings.ranking.k1, b=settings.ranking.b)
        tiers = TierManager(store, index, SignificanceScorer(settings.significance), settings.tiers)
        coordinator = RecognitionCoordinator(
            tiers,
            recognition_model or MockRecognitionModel(),
            settings.recognition,
            settings.bundle,
        )
        logger.info("Memory engine ready: %d turns indexed", len(index))
        return cls(store, index, tiers, coordinator, generator or MockGenerator(), settings)

    def _on_store_update(self, event: IndexUpdate) -> None:
        self.index.handle_update(event)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, user_id: str) -> Session:
        return self.tiers.get_or_create_session(user_id)

    async def end_session(self, session_id: str) -> List[TierTransition]:
        """End a session, moving its Hot and Warm turns to Cold."""
        lock = self._session_locks.get(session_id)
        if lock is not None and lock.locked():
            raise SessionBusy(session_id)
        transitions = self.tiers.end_session(session_id)
        self._session_locks.pop(session_id, None)
        return transitions

    def get_session(self, session_id: str) -> Session:
        return self.store.require_session(session_id)

    def get_turns(self, session_id: str, offset: int = 0, limit: Optional[int] = None) -> List[Turn]:
        self.store.require_session(session_id)
        return self.store.get_turns(session_id, offset=offset, limit=limit)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def process_turn(self, session_id: str, user_id: str, user_text: str) -> AssistantResponse:
        """
        Answer one user message with tiered memory.

        Raises:
            SessionBusy: another turn is in flight for this session
            SessionNotFound, SessionEnded: session cannot accept turns
            StorageUnavailable: turn store failure (nothing is lost)
            ProviderError: generation failed; the user turn stays stored
                without assistant text
        """
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            raise SessionBusy(session_id)

        try:
            async with lock:
                session = self.store.require_session(session_id)
                if session.user_id != user_id:
                    raise SessionNotFound(session_id)

                temporal = TemporalContext.from_last_turn(self.store.last_turn_time(user_id))
                user_tokens = estimate_tokens(user_text)
                turn_id = self.store.append_turn(session_id, user_text, user_tokens)
                self.tiers.enforce_hot_bound(session_id)

                anchors = detect_anchors(user_text, turn_id)
                if anchors:
                    self.store.set_criticality(turn_id, True)
                    logger.info("Turn %s carries identity anchors: %s", turn_id, [a.anchor_type for a in anchors])

                run = await self.coordinator.run(
                    session_id, user_id, user_text, temporal, current_turn_id=turn_id,
                )
                prompt = build_generation_prompt(user_text, run.bundle, run.recognition, temporal)

                try:
                    generated = await self.generator.generate(prompt)
                except TieredRecallError:
                    raise
                except Exception as e:
                    raise ProviderError(f"generation failed: {e}") from e

                self.store.complete_turn(
                    turn_id, generated.text, (user_tokens, estimate_tokens(generated.text)),
                )
                self.tiers.enforce_hot_bound(session_id)
        finally:
            # Turns never queue on a session lock, so a released one can be dropped
            if not lock.locked() and self._session_locks.get(session_id) is lock:
                del self._session_locks[session_id]

        logger.info("Processed turn %s in session %s (fallbacks=%s)", turn_id, session_id, run.fallbacks)
        return AssistantResponse(
            turn_id=turn_id,
            session_id=session_id,
            text=generated.text,
            bundle=run.bundle,
            recognition=run.recognition,
            plan=run.plan,
            fallbacks=run.fallbacks,
            state=run.state.value,
        )

    async def get_memory_bundle_preview(self, session_id: str, user_text: str) -> MemoryBundle:
        """Run both recognition passes without storing a turn or generating."""
        session = self.store.require_session(session_id)
        temporal = TemporalContext.from_last_turn(self.store.last_turn_time(session.user_id))
        run = await self.coordinator.run(
            session_id, session.user_id, user_text, temporal, mark_criticality=False,
        )
        return run.bundle

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_tier(self, turn_id: str, tier: Tier, reason: str) -> Optional[TierTransition]:
        return self.tiers.set_tier(turn_id, tier, reason)

    def rebuild_index(self) -> IndexStatsSnapshot:
        """Rebuild the ranked index from the turn store and swap it in."""
        index = RankedIndex.rebuild(self.store.iter_all_turns(), k1=self.index.k1, b=self.index.b)
        self.index = index
        self.tiers.index = index
        logger.info("Rebuilt index: %d turns", len(index))
        return index.stats_snapshot()

    async def aclose(self) -> None:
        await self.coordinator.drain()
        self.store.close()

    def close(self) -> None:
        self.store.close()
