"""Test configuration and fixtures."""

from typing import List

import pytest

from tiered_recall.config.settings import RecognitionCfg, Settings, TierCfg
from tiered_recall.index.ranked_index import RankedIndex
from tiered_recall.memory.significance import SignificanceScorer
from tiered_recall.memory.tiers import TierManager
from tiered_recall.persist.turn_store import TurnStore


@pytest.fixture
def settings() -> Settings:
    """Settings with fast recognition retries for tests."""
    return Settings(
        recognition=RecognitionCfg(timeout_s=0.2, max_attempts=3, backoff_base_s=0.0),
    )


@pytest.fixture
def store(tmp_path):
    """Create a temporary TurnStore."""
    turn_store = TurnStore(tmp_path / "turns.db")
    yield turn_store
    turn_store.close()


@pytest.fixture
def index(store):
    """Ranked index kept in sync with the store."""
    ranked = RankedIndex()
    store.subscribe(ranked.handle_update)
    return ranked


@pytest.fixture
def tiers(store, index):
    """Tier manager with default bounds."""
    return TierManager(store, index, SignificanceScorer(), TierCfg())


@pytest.fixture
def add_turns(store, tiers):
    """Append and complete one turn per text, enforcing the Hot bound like the engine does."""
    def _add(session_id: str, texts: List[str], reply: str = "Noted.", enforce: bool = True,
             manager: TierManager = None) -> List[str]:
        manager = manager or tiers
        turn_ids = []
        for text in texts:
            turn_id = store.append_turn(session_id, text)
            if enforce:
                manager.enforce_hot_bound(session_id)
            store.complete_turn(turn_id, reply)
            if enforce:
                manager.enforce_hot_bound(session_id)
            turn_ids.append(turn_id)
        return turn_ids
    return _add


@pytest.fixture
def unrelated_texts() -> List[str]:
    return [
        "What is a good recipe for banana bread?",
        "How do I fix a flat bicycle tire?",
        "Recommend a novel set in Lisbon.",
        "What time zone is Tokyo in?",
        "Explain how sourdough starters work.",
        "Which houseplants tolerate low light?",
        "How long should I boil an egg?",
        "Tips for running a first marathon.",
        "What are the rules of chess castling?",
    ]


@pytest.fixture
def quantum_text() -> str:
    return "Let's talk about quantum computing and how qubits use superposition."
