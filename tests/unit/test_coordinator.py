"""
Unit tests for the two-pass recognition coordinator.

Tests the state machine, retry/backoff, deterministic fallbacks and
background criticality marking.
"""

import asyncio
import json
import time

import pytest

from tiered_recall.config.settings import BundleCfg, RecognitionCfg, TierCfg
from tiered_recall.memory.temporal import TemporalContext
from tiered_recall.memory.tiers import TierManager
from tiered_recall.recognition.coordinator import (
    RecognitionCoordinator,
    RecognitionRun,
    RecognitionState,
    extract_keywords,
    fallback_plan,
    has_memory_cue,
)
from tiered_recall.recognition.models import (
    MockRecognitionModel,
    ScriptedRecognitionModel,
    UnavailableRecognitionModel,
)

# Mark all tests as async
pytestmark = pytest.mark.asyncio


RECENT = TemporalContext.from_last_turn(last_turn_at=1000.0, now=1030.0)
VALID_OUTPUT = json.dumps({"recognition_report": "User asks about physics", "topics": ["quantum"]})


def plan_json(**overrides) -> str:
    plan = {
        "needs_warm": True,
        "needs_cold": False,
        "search_terms": ["quantum"],
        "max_results": 5,
        "temporal_context": "same session",
        "rationale": "refers back",
    }
    plan.update(overrides)
    return json.dumps(plan)


def make_coordinator(tiers, model, **cfg_overrides):
    cfg = RecognitionCfg(**{"timeout_s": 0.5, "backoff_base_s": 0.0, **cfg_overrides})
    return RecognitionCoordinator(tiers, model, cfg, BundleCfg())


# ============================================================================
# State Machine
# ============================================================================

async def test_successful_run_reaches_done(tiers, add_turns):
    session = tiers.get_or_create_session("user_1")
    add_turns(session.id, ["Tell me about quantum computing"])
    coordinator = make_coordinator(tiers, MockRecognitionModel())

    run = await coordinator.run(session.id, "user_1", "What about qubits?", RECENT)

    assert run.state == RecognitionState.DONE
    assert [state for state, _ in run.history] == [
        RecognitionState.AWAITING_PLAN,
        RecognitionState.PLAN_RECEIVED,
        RecognitionState.MEMORY_ASSEMBLED,
        RecognitionState.CONTEXT_BUILT,
        RecognitionState.DONE,
    ]
    assert run.fallbacks == []
    assert run.plan.source == "recognition"
    assert run.recognition is not None


async def test_illegal_transition_rejected():
    run = RecognitionRun("s", "u", "hi", RECENT)
    with pytest.raises(RuntimeError):
        run.advance(RecognitionState.CONTEXT_BUILT)


async def test_current_turn_excluded_from_bundle(store, tiers, add_turns):
    session = tiers.get_or_create_session("user_1")
    add_turns(session.id, ["earlier message"])
    current = store.append_turn(session.id, "current message")
    coordinator = make_coordinator(tiers, MockRecognitionModel())

    run = await coordinator.run(session.id, "user_1", "current message", RECENT, current_turn_id=current)

    assert current not in run.bundle.turn_ids
    assert len(run.bundle.hot_turns) == 1


# ============================================================================
# Retry and Fallback
# ============================================================================

async def test_malformed_then_valid_plan_retries(tiers):
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel(["not json", plan_json(), VALID_OUTPUT])
    coordinator = make_coordinator(tiers, model)

    run = await coordinator.run(session.id, "user_1", "quantum?", RECENT)

    assert run.plan_attempts == 2
    assert not run.plan_fallback
    assert not run.context_fallback
    assert model.calls == 3


async def test_exhausted_plan_uses_fallback(tiers):
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel(["garbage"])
    coordinator = make_coordinator(tiers, model)

    run = await coordinator.run(session.id, "user_1", "Do you remember our quantum chat?", RECENT)

    assert run.plan_fallback and run.context_fallback
    assert run.fallbacks == ["plan", "context"]
    assert run.plan.source == "fallback"
    assert run.plan.needs_warm is True
    assert run.plan.needs_cold is True
    assert "quantum" in run.plan.search_terms
    assert run.state == RecognitionState.DONE
    # 3 plan attempts + 3 context attempts, then no more calls
    assert model.calls == 6


async def test_backoff_doubles_between_attempts(tiers):
    session = tiers.get_or_create_session("user_1")
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    model = ScriptedRecognitionModel([RuntimeError("provider down")])
    coordinator = RecognitionCoordinator(
        tiers, model, RecognitionCfg(backoff_base_s=1.0, max_attempts=3), BundleCfg(), sleep=fake_sleep,
    )

    await coordinator.run(session.id, "user_1", "hello", RECENT)

    # plan: 1s, 2s; context: 1s, 2s (no sleep after the last attempt)
    assert delays == [1.0, 2.0, 1.0, 2.0]


async def test_timeouts_terminate_within_bound(tiers):
    """Both passes fall back within their deadlines when every call times out."""
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([plan_json()], delay_s=5.0)
    timeout, attempts = 0.05, 3
    coordinator = make_coordinator(tiers, model, timeout_s=timeout, max_attempts=attempts)

    start = time.monotonic()
    run = await coordinator.run(session.id, "user_1", "hello there", RECENT)
    elapsed = time.monotonic() - start

    assert run.plan_fallback and run.context_fallback
    assert run.plan is not None and run.bundle is not None
    assert elapsed < 2 * attempts * timeout + 1.0


async def test_plan_pass_stops_at_deadline(tiers):
    """attempts x max_backoff caps the pass even when timeouts and sleeps would add up to more."""
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([plan_json()], delay_s=5.0)
    cfg = RecognitionCfg(timeout_s=0.2, backoff_base_s=0.02, max_attempts=3)
    coordinator = RecognitionCoordinator(tiers, model, cfg, BundleCfg())
    # Unclipped: 3 x 0.2 + 0.02 + 0.04 = 0.66s
    assert cfg.pass_deadline_s == pytest.approx(0.24)

    run = RecognitionRun(session.id, "user_1", "hello there", RECENT)
    start = time.monotonic()
    plan = await coordinator.plan(run, [])
    elapsed = time.monotonic() - start

    assert plan.source == "fallback"
    assert run.plan_fallback
    assert elapsed < cfg.pass_deadline_s + 0.15


async def test_default_config_deadline_fits_backoff_schedule(tiers):
    """With defaults a pass never runs past attempts x max_backoff."""
    cfg = RecognitionCfg()
    assert cfg.max_backoff_s == 4.0
    assert cfg.pass_deadline_s == 12.0

    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([RuntimeError("provider down")])
    coordinator = RecognitionCoordinator(tiers, model, cfg, BundleCfg(), sleep=fake_sleep)

    run = RecognitionRun(session.id, "user_1", "hello", RECENT)
    plan = await coordinator.plan(run, [])

    assert plan.source == "fallback"
    assert run.plan_attempts == 3
    assert sum(delays) <= cfg.pass_deadline_s


async def test_disabled_recognition_never_calls_model(tiers):
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([plan_json()])
    coordinator = make_coordinator(tiers, model, enabled=False)

    run = await coordinator.run(session.id, "user_1", "hello", RECENT)

    assert model.calls == 0
    assert run.plan.source == "disabled"
    assert run.recognition is None


async def test_unavailable_model_uses_fallback(tiers):
    session = tiers.get_or_create_session("user_1")
    coordinator = make_coordinator(tiers, UnavailableRecognitionModel())

    run = await coordinator.run(session.id, "user_1", "hello", RECENT)

    assert run.plan.source == "disabled"
    assert run.state == RecognitionState.DONE


async def test_context_failure_keeps_raw_bundle(tiers, add_turns, quantum_text, unrelated_texts):
    session = tiers.get_or_create_session("user_1")
    add_turns(session.id, [quantum_text] + unrelated_texts[:5])
    model = ScriptedRecognitionModel([plan_json(), "bad output"])
    coordinator = make_coordinator(tiers, model)

    run = await coordinator.run(session.id, "user_1", "remember the quantum computing discussion", RECENT)

    assert not run.plan_fallback
    assert run.context_fallback
    assert run.recognition is None
    assert run.bundle.retrieved[0].turn.user_text == quantum_text


async def test_cancellation_propagates(tiers):
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([plan_json()], delay_s=5.0)
    coordinator = make_coordinator(tiers, model, timeout_s=10.0)

    task = asyncio.create_task(coordinator.run(session.id, "user_1", "hello", RECENT))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


# ============================================================================
# Retrieval
# ============================================================================

async def test_plan_max_results_clamped_to_cap(tiers):
    session = tiers.get_or_create_session("user_1")
    model = ScriptedRecognitionModel([plan_json(max_results=999), VALID_OUTPUT])
    coordinator = make_coordinator(tiers, model, max_results_cap=20)

    run = await coordinator.run(session.id, "user_1", "hello", RECENT)
    assert run.plan.max_results == 20


async def test_cold_retrieval_from_previous_session(store, index, add_turns, quantum_text):
    tiers = TierManager(store, index, cfg=TierCfg())
    old = tiers.get_or_create_session("user_1")
    add_turns(old.id, [quantum_text, "How do I fix a flat tire?"])
    tiers.end_session(old.id)
    current = tiers.get_or_create_session("user_1")

    model = ScriptedRecognitionModel([plan_json(needs_warm=False, needs_cold=True), VALID_OUTPUT])
    coordinator = make_coordinator(tiers, model)

    run = await coordinator.run(current.id, "user_1", "remember quantum?", RECENT)

    assert [s.turn.user_text for s in run.bundle.retrieved] == [quantum_text]


# ============================================================================
# Criticality
# ============================================================================

async def test_identity_anchor_marks_turn_critical(store, tiers, add_turns):
    session = tiers.get_or_create_session("user_1")
    [anchored] = add_turns(session.id, ["I'm a physicist working on qubits"])
    output = json.dumps({
        "recognition_report": "User is a physicist",
        "identity_anchors": [
            {"turn_id": anchored, "anchor_type": "identity", "description": "physicist", "confidence": 0.9},
            {"turn_id": "turn_unknown", "anchor_type": "identity", "description": "ignored", "confidence": 0.9},
        ],
    })
    coordinator = make_coordinator(tiers, ScriptedRecognitionModel([plan_json(), output]))

    await coordinator.run(session.id, "user_1", "hello again", RECENT)
    await coordinator.drain()

    assert store.get_turn(anchored).criticality is True


async def test_preview_does_not_mark_criticality(store, tiers, add_turns):
    session = tiers.get_or_create_session("user_1")
    [anchored] = add_turns(session.id, ["My name is Ada"])
    output = json.dumps({
        "recognition_report": "Ada",
        "identity_anchors": [{"turn_id": anchored, "anchor_type": "identity", "confidence": 0.9}],
    })
    coordinator = make_coordinator(tiers, ScriptedRecognitionModel([plan_json(), output]))

    await coordinator.run(session.id, "user_1", "hi", RECENT, mark_criticality=False)
    await coordinator.drain()

    assert store.get_turn(anchored).criticality is False


# ============================================================================
# Fallback Plan
# ============================================================================

async def test_fallback_plan_recent_gap_needs_warm():
    plan = fallback_plan("Tell me more about gardening", RECENT)
    assert plan.needs_warm is True
    assert plan.needs_cold is False
    assert plan.source == "fallback"


async def test_fallback_plan_long_gap_skips_warm():
    stale = TemporalContext.from_last_turn(last_turn_at=0.0, now=3 * 86400)
    plan = fallback_plan("Tell me more about gardening", stale)
    assert plan.needs_warm is False


async def test_memory_cues_and_keywords():
    assert has_memory_cue("Do you remember what we discussed?")
    assert not has_memory_cue("What is the weather like?")
    assert extract_keywords("Remember the quantum computing discussion!") == ["quantum", "computing", "discussion"]
