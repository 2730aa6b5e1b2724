"""
Unit tests for the ranked index (BM25 over turns).
"""

import math

import pytest

from tiered_recall.index.ranked_index import RankedIndex
from tiered_recall.index.tokenize import stem, tokenize, tokenize_terms


# ============================================================================
# Tokenization
# ============================================================================

def test_tokenize_lowercases_and_drops_stop_words():
    assert tokenize("The Quantum computer") == ["quantum", "comput"]


def test_tokenize_collapses_word_forms():
    assert tokenize("computing")[0] == tokenize("computers")[0]
    assert stem("discussions") == stem("discussion")


def test_tokenize_empty():
    assert tokenize("") == []
    assert tokenize("the and of") == []


def test_tokenize_terms_dedupes():
    assert tokenize_terms(["quantum computing", "Quantum"]) == ["quantum", "comput"]


def test_tokenize_keeps_non_ascii_words():
    assert tokenize("Crème brûlée au café") == ["crème", "brûlée", "au", "café"]
    assert tokenize("Давай обсудим квантовые вычисления") == ["давай", "обсудим", "квантовые", "вычисления"]
    assert tokenize("snake_case") == ["snake", "case"]


def test_search_matches_non_ascii_terms():
    index = RankedIndex()
    index.add("ru", "Давай обсудим квантовые вычисления", sequence_number=1, created_at=1.0)
    index.add("fr", "Parlons du café et de la crème brûlée", sequence_number=2, created_at=2.0)
    index.add("en", "Bread recipes for beginners", sequence_number=3, created_at=3.0)

    assert [doc_id for doc_id, _ in index.search(["квантовые"])] == ["ru"]
    assert [doc_id for doc_id, _ in index.search(["brûlée"])] == ["fr"]
    # accented words are not split into ASCII fragments
    assert index.search(["br"]) == []


# ============================================================================
# Scoring
# ============================================================================

@pytest.fixture
def small_index():
    index = RankedIndex(k1=1.2, b=0.75)
    index.add("d1", "quantum physics lecture", sequence_number=1, created_at=1.0)
    index.add("d2", "banana bread recipe", sequence_number=2, created_at=2.0)
    index.add("d3", "quantum quantum entanglement basics", sequence_number=3, created_at=3.0)
    return index


def test_bm25_matches_formula(small_index):
    # d1 tokens: quantum, physic, lecture (3); d3: quantum x2, entanglement, basic (4)
    n, df, avgdl = 3, 2, (3 + 3 + 4) / 3
    idf = math.log((n - df + 0.5) / (df + 0.5) + 1)

    def bm25(tf, dl):
        return idf * tf * (1.2 + 1) / (tf + 1.2 * (1 - 0.75 + 0.75 * dl / avgdl))

    scores = small_index.score(["quantum"])
    assert scores["d1"] == pytest.approx(bm25(1, 3))
    assert scores["d3"] == pytest.approx(bm25(2, 4))
    assert "d2" not in scores


def test_idf_is_positive_for_common_terms():
    index = RankedIndex()
    for i in range(3):
        index.add(f"d{i}", "hello world")
    assert index.idf("hello") > 0


def test_search_orders_best_first(small_index):
    results = small_index.search(["quantum"])
    assert [doc_id for doc_id, _ in results] == ["d3", "d1"]
    assert all(score > 0 for _, score in results)


def test_search_ties_break_newest_first():
    index = RankedIndex()
    index.add("old", "chess openings", sequence_number=1, created_at=1.0)
    index.add("new", "chess openings", sequence_number=2, created_at=2.0)

    results = index.search(["chess"])
    assert [doc_id for doc_id, _ in results] == ["new", "old"]


def test_search_respects_candidates_and_limit(small_index):
    assert small_index.search(["quantum"], candidate_ids={"d1", "d2"}) == [
        ("d1", small_index.score(["quantum"])["d1"])
    ]
    assert len(small_index.search(["quantum"], limit=1)) == 1


def test_search_no_terms_returns_empty(small_index):
    assert small_index.search([]) == []
    assert small_index.search(["the"]) == []


# ============================================================================
# Statistics Consistency
# ============================================================================

def test_incremental_matches_rebuild_after_mixed_updates(store):
    """Stats after any add/replace/remove sequence equal a from-scratch rebuild."""
    index = RankedIndex()
    store.subscribe(index.handle_update)
    session = store.create_session("user_1")

    texts = [
        "quantum computing with qubits",
        "bread baking at home",
        "qubits and superposition explained",
        "marathon training plan",
    ]
    ids = [store.append_turn(session.id, t) for t in texts]
    store.complete_turn(ids[0], "Qubits can be in superposition.")
    store.complete_turn(ids[2], "Superposition is a linear combination of states.")

    rebuilt = RankedIndex.rebuild(store.iter_all_turns())

    assert index.stats_snapshot() == rebuilt.stats_snapshot()
    assert index.score(["qubits", "superposition"]) == rebuilt.score(["qubits", "superposition"])


def test_remove_restores_previous_stats():
    index = RankedIndex()
    index.add("a", "alpha beta gamma")
    before = index.stats_snapshot()

    index.add("b", "beta delta")
    assert index.remove("b") is True
    assert index.remove("b") is False

    assert index.stats_snapshot() == before
    assert len(index) == 1
    assert "b" not in index


def test_readd_replaces_document():
    index = RankedIndex()
    index.add("a", "alpha beta")
    index.add("a", "gamma")

    snapshot = index.stats_snapshot()
    assert snapshot.doc_count == 1
    assert snapshot.total_length == 1
    assert dict(snapshot.doc_freq) == {"gamma": 1}
