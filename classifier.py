"""
K-nearest-neighbor request classification.
Distance-weighted voting over ranked neighbors with a blended confidence score.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

import numpy as np

from config.model_config import CLEAN_LABEL, DEFAULT_K
from embedding import EmbeddingModel, check_deadline
from exceptions import ConfigurationError
from pattern_store import Neighbor, NeighborSource
from request_features import request_to_text

logger = logging.getLogger(__name__)


@dataclass
class ClassificationResult:
    """Verdict for one classified request."""
    label: str
    confidence: float
    is_attack: bool
    nearest_distance: Optional[float] = None
    neighbors: List[Dict[str, Any]] = field(default_factory=list)
    votes: Dict[str, float] = field(default_factory=dict)
    latency_ms: float = 0.0
    storage: str = "memory"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "label": self.label,
            "confidence": self.confidence,
            "is_attack": self.is_attack,
            "nearest_distance": self.nearest_distance,
            "neighbors": [dict(n) for n in self.neighbors],
            "votes": dict(self.votes),
            "latency_ms": self.latency_ms,
            "storage": self.storage
        }


def compute_result(neighbors: List[Neighbor]) -> ClassificationResult:
    """
    Vote over ranked neighbors and blend distance and voting confidence.

    Each neighbor adds its similarity (1 - distance) to its label's weight.
    The heaviest label wins; exact ties go to the lexicographically smallest
    label. Confidence is the mean of ``1 - nearest_distance`` and the
    winner's share of the total weight.

    Args:
        neighbors: Neighbors in ascending distance order

    Returns:
        ClassificationResult (latency not yet set)
    """
    if not neighbors:
        return ClassificationResult(label=CLEAN_LABEL, confidence=0.0, is_attack=False)

    votes: Dict[str, float] = {}
    for n in neighbors:
        votes[n.label] = votes.get(n.label, 0.0) + (1.0 - n.distance)

    predicted_label = min(votes, key=lambda label: (-votes[label], label))

    nearest_distance = neighbors[0].distance
    distance_confidence = 1.0 - nearest_distance

    total_weight = sum(votes.values())
    winner_weight = votes[predicted_label]
    voting_confidence = winner_weight / total_weight if total_weight > 0 else 0.0

    confidence = (distance_confidence + voting_confidence) / 2
    confidence = min(max(confidence, 0.0), 1.0)

    return ClassificationResult(
        label=predicted_label,
        confidence=round(confidence, 4),
        is_attack=predicted_label != CLEAN_LABEL,
        nearest_distance=round(nearest_distance, 4),
        neighbors=[
            {"label": n.label, "severity": n.severity, "distance": round(n.distance, 4)}
            for n in neighbors
        ],
        votes={label: round(weight, 4) for label, weight in votes.items()}
    )


class KNNClassifier:
    """
    Embeds canonical request text and votes over its nearest stored patterns.
    The neighbor source is replaced by assignment; each query reads it once.
    """

    def __init__(self,
                 model: EmbeddingModel,
                 neighbor_source: NeighborSource,
                 storage: str = "memory"):
        self.model = model
        self.neighbor_source = neighbor_source
        self.storage = storage

        self._lock = threading.Lock()
        self.stats = {
            "total_classifications": 0,
            "attacks_detected": 0,
            "avg_latency_ms": 0.0
        }

    def classify(self,
                 request_text: str,
                 k: int = DEFAULT_K,
                 deadline: Optional[float] = None) -> ClassificationResult:
        """
        Classify canonical request text.

        Args:
            request_text: Output of request_to_text (or any text)
            k: Number of neighbors to vote
            deadline: Optional time.monotonic() deadline, checked before
                inference and before the neighbor search

        Returns:
            ClassificationResult
        """
        start_time = time.perf_counter()
        embedding = self.model.embed(request_text, deadline=deadline)
        check_deadline(deadline, "neighbor search")
        result = self.classify_embedding(embedding, k=k)
        result.latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        self._record(result)
        return result

    def classify_embedding(self, embedding: np.ndarray, k: int = DEFAULT_K) -> ClassificationResult:
        """Classify a precomputed embedding."""
        if k < 1:
            raise ConfigurationError(f"k must be >= 1, got {k}")
        source = self.neighbor_source
        neighbors = source.nearest(embedding, k)
        result = compute_result(neighbors)
        result.storage = self.storage
        return result

    @staticmethod
    def request_to_text(**kwargs) -> str:
        return request_to_text(**kwargs)

    def _record(self, result: ClassificationResult) -> None:
        with self._lock:
            total = self.stats["total_classifications"] + 1
            self.stats["avg_latency_ms"] += (result.latency_ms - self.stats["avg_latency_ms"]) / total
            self.stats["total_classifications"] = total
            if result.is_attack:
                self.stats["attacks_detected"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get classifier statistics."""
        with self._lock:
            return dict(self.stats)
