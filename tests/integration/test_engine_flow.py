"""
Integration tests for MemoryEngine.

Runs full turns (append -> recognize -> generate -> complete) over a real
SQLite database with mock recognition and generation models.
"""

import asyncio

import pytest

from tiered_recall.engine import MemoryEngine
from tiered_recall.errors import ProviderError, SessionBusy, SessionEnded, SessionNotFound
from tiered_recall.memory.schemas import Tier
from tiered_recall.recognition.models import MockGenerator, MockRecognitionModel, ScriptedRecognitionModel

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture
def engine(tmp_path, settings):
    """Engine over a temporary database."""
    memory_engine = MemoryEngine.from_settings(settings, db_path=tmp_path / "engine.db")
    yield memory_engine
    memory_engine.close()


async def test_three_turns_stay_hot(engine):
    session = engine.start_session("user_1")

    for text in ["Hi there", "What is BM25?", "And how does IDF work?"]:
        response = await engine.process_turn(session.id, "user_1", text)
        assert response.text
        assert response.state == "done"

    turns = engine.get_turns(session.id)
    assert len(turns) == 3
    assert all(t.tier == Tier.HOT for t in turns)
    assert all(t.is_complete for t in turns)
    assert engine.tiers.search_warm(session.id, ["bm25"], limit=5) == []


async def test_sixth_turn_evicts_one(engine):
    session = engine.start_session("user_1")
    for i in range(6):
        await engine.process_turn(session.id, "user_1", f"message number {i}")

    turns = engine.get_turns(session.id)
    assert [t.tier for t in turns] == [Tier.WARM] + [Tier.HOT] * 5

    log = engine.store.get_transitions(session_id=session.id)
    assert len(log) == 1
    assert log[0].reason == "capacity"


async def test_bundle_excludes_current_turn_and_fits_budget(engine):
    session = engine.start_session("user_1")
    await engine.process_turn(session.id, "user_1", "first message")
    response = await engine.process_turn(session.id, "user_1", "second message")

    assert response.turn_id not in response.bundle.turn_ids
    assert response.bundle.total_tokens <= engine.settings.bundle.token_budget


async def test_session_busy_rejects_concurrent_turn(tmp_path, settings):
    engine = MemoryEngine.from_settings(
        settings,
        recognition_model=MockRecognitionModel(latency_s=0.1),
        db_path=tmp_path / "busy.db",
    )
    session = engine.start_session("user_1")
    other = engine.start_session("user_2")

    first = asyncio.create_task(engine.process_turn(session.id, "user_1", "slow question"))
    await asyncio.sleep(0.02)

    with pytest.raises(SessionBusy):
        await engine.process_turn(session.id, "user_1", "impatient follow-up")

    # A different session is not blocked
    other_response = await engine.process_turn(other.id, "user_2", "independent question")
    first_response = await first

    assert other_response.text and first_response.text
    assert len(engine.get_turns(session.id)) == 1
    engine.close()


async def test_session_locks_released_after_turns(tmp_path, settings):
    engine = MemoryEngine.from_settings(settings, generator=MockGenerator(fail=True), db_path=tmp_path / "locks.db")
    sessions = [engine.start_session(f"user_{i}") for i in range(3)]

    for session in sessions:
        with pytest.raises(ProviderError):
            await engine.process_turn(session.id, session.user_id, "will fail")

    engine.generator = MockGenerator()
    for session in sessions:
        await engine.process_turn(session.id, session.user_id, "hello")

    # Sessions that are never ended leave no lock behind
    assert engine._session_locks == {}
    engine.close()


async def test_provider_error_leaves_partial_turn(tmp_path, settings):
    engine = MemoryEngine.from_settings(settings, generator=MockGenerator(fail=True), db_path=tmp_path / "p.db")
    session = engine.start_session("user_1")

    with pytest.raises(ProviderError):
        await engine.process_turn(session.id, "user_1", "will fail")

    [turn] = engine.get_turns(session.id)
    assert turn.user_text == "will fail"
    assert turn.assistant_text is None

    # Session slot released after the failure
    engine.generator = MockGenerator()
    response = await engine.process_turn(session.id, "user_1", "try again")
    assert response.text
    engine.close()


async def test_identity_cue_marks_turn_critical(engine):
    session = engine.start_session("user_1")
    response = await engine.process_turn(session.id, "user_1", "My name is Ada and I prefer short answers.")
    assert engine.store.get_turn(response.turn_id).criticality is True


async def test_recognition_outage_still_answers(tmp_path, settings):
    engine = MemoryEngine.from_settings(
        settings,
        recognition_model=ScriptedRecognitionModel([RuntimeError("recognizer offline")]),
        db_path=tmp_path / "outage.db",
    )
    session = engine.start_session("user_1")

    response = await engine.process_turn(session.id, "user_1", "Hello?")

    assert response.text
    assert response.fallbacks == ["plan", "context"]
    assert response.plan.source == "fallback"
    engine.close()


async def test_end_session_then_recall_from_cold(engine):
    first = engine.start_session("user_1")
    await engine.process_turn(first.id, "user_1", "Let's talk about quantum computing and qubits.")
    for text in ["Banana bread recipe please", "How to fix a bike tire"]:
        await engine.process_turn(first.id, "user_1", text)

    transitions = await engine.end_session(first.id)
    assert len(transitions) == 3
    assert all(t.tier == Tier.COLD for t in engine.get_turns(first.id))
    assert engine.get_session(first.id).ended_at is not None

    with pytest.raises(SessionEnded):
        await engine.process_turn(first.id, "user_1", "one more?")

    second = engine.start_session("user_1")
    assert second.id != first.id

    response = await engine.process_turn(second.id, "user_1", "Do you remember the quantum computing discussion?")
    assert response.plan.needs_cold is True
    assert response.bundle.retrieved
    assert "quantum" in response.bundle.retrieved[0].turn.user_text


async def test_preview_does_not_store_turn(engine):
    session = engine.start_session("user_1")
    await engine.process_turn(session.id, "user_1", "First message")

    bundle = await engine.get_memory_bundle_preview(session.id, "What did I say first?")

    assert len(bundle.hot_turns) == 1
    assert len(engine.get_turns(session.id)) == 1


async def test_wrong_user_rejected(engine):
    session = engine.start_session("user_1")
    with pytest.raises(SessionNotFound):
        await engine.process_turn(session.id, "user_2", "hijack")


async def test_rebuild_index_matches_incremental(engine):
    session = engine.start_session("user_1")
    for text in ["alpha topic", "beta topic", "gamma topic with alpha"]:
        await engine.process_turn(session.id, "user_1", text)

    incremental = engine.index.stats_snapshot()
    rebuilt = engine.rebuild_index()

    assert rebuilt == incremental
    assert engine.tiers.index is engine.index


async def test_restart_rebuilds_index_from_store(tmp_path, settings):
    db_path = tmp_path / "restart.db"
    engine = MemoryEngine.from_settings(settings, db_path=db_path)
    session = engine.start_session("user_1")
    await engine.process_turn(session.id, "user_1", "persistent memory test")
    snapshot = engine.index.stats_snapshot()
    engine.close()

    reopened = MemoryEngine.from_settings(settings, db_path=db_path)
    assert reopened.index.stats_snapshot() == snapshot
    assert reopened.start_session("user_1").id == session.id
    reopened.close()
