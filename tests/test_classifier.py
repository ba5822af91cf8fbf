"""
Unit tests for KNN classification.
Tests voting, confidence blending, tie-breaking and edge cases.
"""

import pytest
import os
import sys
import time
from unittest.mock import MagicMock

import numpy as np

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from classifier import ClassificationResult, KNNClassifier, compute_result
from pattern_store import Neighbor, PatternStore
from exceptions import ConfigurationError, DeadlineExceededError, InferenceError


def _classifier(store, vector):
    model = MagicMock()
    model.embed.return_value = np.asarray(vector, dtype=np.float32)
    return KNNClassifier(model, store)


class TestComputeResult:
    """Tests for the shared voting and confidence computation."""

    def test_empty_neighbors(self):
        result = compute_result([])
        assert result.label == "clean"
        assert result.confidence == 0.0
        assert result.is_attack is False
        assert result.nearest_distance is None
        assert result.neighbors == []
        assert result.votes == {}

    def test_weighted_vote(self):
        result = compute_result([
            Neighbor("sqli", "high", 0.1),
            Neighbor("xss", "medium", 0.2),
            Neighbor("sqli", "low", 0.3),
        ])
        assert result.label == "sqli"
        assert result.is_attack is True
        assert result.votes == {"sqli": 1.6, "xss": 0.8}
        assert result.nearest_distance == 0.1
        # ((1 - 0.1) + 1.6 / 2.4) / 2
        assert result.confidence == round((0.9 + 1.6 / 2.4) / 2, 4)

    def test_closer_minority_can_lose(self):
        result = compute_result([
            Neighbor("xss", None, 0.05),
            Neighbor("clean", None, 0.1),
            Neighbor("clean", None, 0.1),
        ])
        assert result.label == "clean"
        assert result.is_attack is False

    def test_exact_tie_is_lexicographic(self):
        result = compute_result([
            Neighbor("xss", None, 0.2),
            Neighbor("sqli", None, 0.2),
        ])
        assert result.label == "sqli"

    def test_confidence_clamped(self):
        # opposite vectors give distance 2 and negative weights
        result = compute_result([Neighbor("sqli", None, 2.0)])
        assert 0.0 <= result.confidence <= 1.0

    def test_zero_total_weight(self):
        result = compute_result([Neighbor("sqli", None, 1.0), Neighbor("xss", None, 1.0)])
        assert result.confidence == 0.0
        assert result.label == "sqli"

    def test_neighbors_projected_and_rounded(self):
        result = compute_result([Neighbor("sqli", "high", 0.123456)])
        assert result.neighbors == [{"label": "sqli", "severity": "high", "distance": 0.1235}]

    def test_to_dict(self):
        result = compute_result([Neighbor("sqli", "high", 0.0)])
        data = result.to_dict()
        assert data["label"] == "sqli"
        assert data["confidence"] == 1.0
        assert data["storage"] == "memory"
        assert set(data) == {
            "label", "confidence", "is_attack", "nearest_distance",
            "neighbors", "votes", "latency_ms", "storage"
        }


class TestKNNClassifier:
    """Tests for end-to-end classification over a store."""

    @pytest.fixture
    def store(self):
        vectors = np.array([
            [1.0, 0.0, 0.0],
            [0.9, 0.1, 0.0],
            [0.0, 1.0, 0.0],
            [0.0, 0.0, 1.0],
        ], dtype=np.float32)
        return PatternStore(vectors, ["sqli", "sqli", "xss", "clean"], ["high", "low", "medium", None])

    def test_identical_vector_wins_with_k1(self, store):
        result = _classifier(store, [0.0, 1.0, 0.0]).classify("anything", k=1)
        assert result.label == "xss"
        assert result.nearest_distance == pytest.approx(0.0, abs=1e-4)
        assert result.votes == {"xss": 1.0}
        assert result.confidence == 1.0

    @pytest.mark.parametrize("k", [1, 2, 3, 4, 10])
    def test_neighbor_count_and_order(self, store, k):
        result = _classifier(store, [0.5, 0.5, 0.1]).classify("text", k=k)
        assert len(result.neighbors) == min(k, store.size())
        distances = [n["distance"] for n in result.neighbors]
        assert distances == sorted(distances)
        assert 0.0 <= result.confidence <= 1.0

    def test_clean_only_corpus(self):
        store = PatternStore(np.random.default_rng(0).normal(size=(6, 3)), ["clean"] * 6)
        for vector in np.random.default_rng(1).normal(size=(5, 3)):
            result = _classifier(store, vector).classify("text", k=3)
            assert result.label == "clean"
            assert result.is_attack is False

    def test_empty_store(self):
        result = _classifier(PatternStore.empty(3), [1.0, 0.0, 0.0]).classify("text")
        assert result.label == "clean"
        assert result.confidence == 0.0
        assert result.neighbors == []

    def test_invalid_k(self, store):
        with pytest.raises(ConfigurationError):
            _classifier(store, [1.0, 0.0, 0.0]).classify("text", k=0)

    def test_wrong_dimension_embedding(self, store):
        classifier = _classifier(store, [1.0, 0.0])
        with pytest.raises(InferenceError):
            classifier.classify("text")
        with pytest.raises(InferenceError):
            classifier.classify_embedding(np.ones(4, dtype=np.float32))

    def test_expired_deadline_stops_before_search(self, store):
        classifier = _classifier(store, [1.0, 0.0, 0.0])
        with pytest.raises(DeadlineExceededError):
            classifier.classify("text", deadline=time.monotonic() - 1)
        assert classifier.get_stats()["total_classifications"] == 0

    def test_latency_and_stats(self, store):
        classifier = _classifier(store, [1.0, 0.0, 0.0])
        result = classifier.classify("text", k=3)
        assert result.latency_ms >= 0.0
        assert result.latency_ms == round(result.latency_ms, 2)
        stats = classifier.get_stats()
        assert stats["total_classifications"] == 1
        assert stats["attacks_detected"] == 1

    def test_embeds_request_text(self, store):
        classifier = _classifier(store, [1.0, 0.0, 0.0])
        classifier.classify("METHOD:GET PATH:/")
        classifier.model.embed.assert_called_once_with("METHOD:GET PATH:/", deadline=None)

    def test_swapped_source_used_by_next_query(self, store):
        classifier = _classifier(store, [0.0, 0.0, 1.0])
        assert classifier.classify("text", k=1).label == "clean"
        classifier.neighbor_source = PatternStore(np.array([[0.0, 0.0, 1.0]]), ["ssrf"])
        assert classifier.classify("text", k=1).label == "ssrf"

    def test_request_to_text(self):
        text = KNNClassifier.request_to_text(method="GET", path="/")
        assert text.startswith("METHOD:GET PATH:/ DEPTH:1")

    def test_result_is_dataclass(self, store):
        result = _classifier(store, [1.0, 0.0, 0.0]).classify("text")
        assert isinstance(result, ClassificationResult)
        assert result.storage == "memory"
