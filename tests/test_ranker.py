import random

import pytest

from matchflow.errors import DimensionMismatch, PermanentError, ZeroVector
from matchflow.ranker import ZERO_VECTOR_SENTINEL, match_score, rank, similarity


def test_identical_vectors_score_100():
    assert similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert match_score(similarity([1.0, 0.0], [1.0, 0.0])) == 100.0


def test_orthogonal_vectors_score_0():
    sim = similarity([1.0, 0.0], [0.0, 1.0])
    assert sim == 0.0
    assert match_score(sim) == 0.0


def test_opposite_vectors_floor_at_zero_score():
    assert similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)
    assert match_score(-1.0) == 0.0


def test_self_similarity_is_one():
    v = [0.3, -1.7, 2.2, 0.05]
    assert similarity(v, v) == pytest.approx(1.0)


def test_symmetric_and_bounded():
    rng = random.Random(7)
    for _ in range(200):
        n = rng.randint(1, 16)
        a = [rng.uniform(-5, 5) for _ in range(n)]
        b = [rng.uniform(-5, 5) for _ in range(n)]
        s = similarity(a, b)
        assert s == similarity(b, a)
        assert -1.0 <= s <= 1.0


def test_dimension_mismatch():
    with pytest.raises(DimensionMismatch) as exc:
        similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert isinstance(exc.value, PermanentError)
    assert (exc.value.left, exc.value.right) == (2, 3)


def test_zero_vector_is_explicit():
    with pytest.raises(ZeroVector):
        similarity([0.0, 0.0], [1.0, 0.0])
    with pytest.raises(ZeroVector):
        similarity([1.0, 0.0], [0.0, 0.0])


def test_rank_sorts_descending_with_stable_ties():
    candidates = {
        "low": [0.0, 1.0],
        "tie-a": [1.0, 1.0],
        "best": [1.0, 0.0],
        "tie-b": [2.0, 2.0],
    }
    ranked = rank([1.0, 0.0], candidates, threshold=None)
    assert [cid for cid, _ in ranked] == ["best", "tie-a", "tie-b", "low"]


def test_rank_threshold_filters_below():
    candidates = [("a", [1.0, 0.0]), ("b", [1.0, 1.0]), ("c", [0.0, 1.0])]
    ranked = rank([1.0, 0.0], candidates, threshold=50)
    assert [cid for cid, _ in ranked] == ["a", "b"]


def test_rank_default_threshold_drops_negative():
    ranked = rank([1.0, 0.0], {"neg": [-1.0, 0.0], "zero": [0.0, 1.0]})
    assert [cid for cid, _ in ranked] == ["zero"]


def test_rank_propagates_invalid_by_default():
    with pytest.raises(DimensionMismatch):
        rank([1.0, 0.0], {"bad": [1.0]})
    with pytest.raises(ZeroVector):
        rank([1.0, 0.0], {"zero": [0.0, 0.0]})


def test_rank_skip_invalid():
    candidates = {"bad": [1.0], "zero": [0.0, 0.0], "good": [1.0, 0.0]}
    ranked = rank([1.0, 0.0], candidates, threshold=None, skip_invalid=True)
    assert ranked == [("good", 1.0), ("zero", ZERO_VECTOR_SENTINEL)]
