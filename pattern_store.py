"""
Attack pattern corpus and exact nearest-neighbor search.

The store is immutable after construction. Adding patterns builds a new
store; callers publish it by swapping their reference, so queries already
running keep searching the snapshot they started with.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from config.model_config import (
    ATTACK_LABELS,
    CLEAN_LABEL,
    MODEL_FILES,
    NEAR_ZERO_NORM,
    SEVERITIES
)
from downloader import read_json
from exceptions import (
    ConfigurationError,
    InferenceError,
    ModelDataCorruptError,
    ModelDataMissingError
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttackPattern:
    """A labeled reference vector."""
    embedding: np.ndarray
    label: str
    severity: Optional[str] = None
    source: str = "bundled"


@dataclass(frozen=True)
class Neighbor:
    """A stored pattern projected onto one query, with its cosine distance."""
    label: str
    severity: Optional[str]
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


class NeighborSource:
    """
    Anything that can rank stored patterns by cosine distance to a query.
    """

    def nearest(self, query: np.ndarray, k: int) -> List[Neighbor]:
        """
        Return up to ``k`` neighbors in ascending distance, ties in storage order.
        """
        raise NotImplementedError

    def size(self) -> int:
        raise NotImplementedError


def validate_label(label: str, severity: Optional[str] = None) -> None:
    """Reject labels and severities outside the closed enumerations."""
    if label != CLEAN_LABEL and label not in ATTACK_LABELS:
        raise ConfigurationError(f"Unknown label: {label!r}")
    if severity is not None and severity not in SEVERITIES:
        raise ConfigurationError(f"Unknown severity: {severity!r}")


def row_norms(matrix: np.ndarray) -> np.ndarray:
    """Euclidean norm of each row, in float64."""
    m = np.asarray(matrix, dtype=np.float64)
    return np.sqrt(np.einsum("ij,ij->i", m, m))


def cosine_similarities(query: np.ndarray,
                        matrix: np.ndarray,
                        norms: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Cosine similarity of one query against every row of ``matrix``.

    Similarity is defined as 0.0 where either norm is below 1e-8. Both the
    in-memory scan and the database distance function use this routine.
    Dot products and norms are reduced row by row with einsum, so a row
    scored alone gets the same bits as the same row inside a full matrix.

    Args:
        query: Vector [dim]
        matrix: Rows [n, dim]
        norms: Precomputed row norms [n] (computed if omitted)

    Returns:
        Similarities [n] as float64
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    if norms is None:
        norms = row_norms(m)
    dots = np.einsum("ij,j->i", m, q)
    denom = norms * np.sqrt(np.einsum("i,i->", q, q))
    sims = np.zeros(m.shape[0], dtype=np.float64)
    valid = denom >= NEAR_ZERO_NORM
    sims[valid] = dots[valid] / denom[valid]
    return sims


class PatternStore(NeighborSource):
    """
    Immutable in-memory pattern table searched by exact brute force.
    """

    def __init__(self,
                 vectors: np.ndarray,
                 labels: Sequence[str],
                 severities: Optional[Sequence[Optional[str]]] = None,
                 sources: Optional[Sequence[str]] = None):
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2:
            raise ModelDataCorruptError(f"Pattern vectors must be 2-D, got shape {vectors.shape}")
        n = vectors.shape[0]
        severities = list(severities) if severities is not None else [None] * n
        sources = list(sources) if sources is not None else ["bundled"] * n
        if len(labels) != n or len(severities) != n or len(sources) != n:
            raise ModelDataCorruptError(
                f"Metadata length mismatch: {n} vectors, {len(labels)} labels, "
                f"{len(severities)} severities"
            )

        vectors = vectors.copy()
        vectors.flags.writeable = False
        self._vectors = vectors
        self._norms = row_norms(vectors)
        self._norms.flags.writeable = False
        self._labels = tuple(labels)
        self._severities = tuple(severities)
        self._sources = tuple(sources)

    @classmethod
    def empty(cls, dim: int) -> "PatternStore":
        return cls(np.zeros((0, dim), dtype=np.float32), [])

    @classmethod
    def from_bytes(cls, blob: bytes, metadata: Dict) -> "PatternStore":
        """
        Build a store from a little-endian float32 blob and labels metadata.

        Args:
            blob: Row-major float32 data, ``num_vectors * dim`` values
            metadata: ``{labels, severities, num_vectors, dim}``

        Raises:
            ModelDataCorruptError: Blob or metadata are inconsistent
        """
        try:
            dim = int(metadata["dim"])
            num_vectors = int(metadata["num_vectors"])
            labels = list(metadata["labels"])
        except (KeyError, TypeError, ValueError) as e:
            raise ModelDataCorruptError(f"Invalid labels metadata: {e}") from e
        severities = metadata.get("severities")
        severities = list(severities) if severities is not None else [None] * len(labels)

        if dim < 1:
            raise ModelDataCorruptError(f"Invalid dim: {dim}")
        if len(blob) % 4 != 0:
            raise ModelDataCorruptError(f"Vector blob length {len(blob)} is not a multiple of 4 bytes")

        floats = np.frombuffer(blob, dtype='<f4')
        if floats.size % dim != 0:
            raise ModelDataCorruptError(
                f"Vector blob holds {floats.size} floats, not a multiple of dim {dim}"
            )
        if len(labels) != num_vectors:
            raise ModelDataCorruptError(
                f"labels has {len(labels)} entries, expected num_vectors={num_vectors}"
            )
        if len(severities) != num_vectors:
            raise ModelDataCorruptError(
                f"severities has {len(severities)} entries, expected num_vectors={num_vectors}"
            )
        rows = floats.size // dim
        if rows != num_vectors:
            raise ModelDataCorruptError(f"Vector blob holds {rows} rows, expected {num_vectors}")

        return cls(floats.reshape(rows, dim), labels, severities)

    @classmethod
    def from_files(cls, model_path: str) -> "PatternStore":
        """Load vectors.bin and labels.json from a model directory."""
        vectors_path = os.path.join(model_path, MODEL_FILES["vectors"])
        labels_path = os.path.join(model_path, MODEL_FILES["labels"])

        if not os.path.exists(vectors_path):
            raise ModelDataMissingError(
                f"Pattern vectors not found: {vectors_path}",
                missing_files=[MODEL_FILES["vectors"]]
            )
        metadata = read_json(labels_path)
        if not isinstance(metadata, dict):
            raise ModelDataCorruptError("labels.json must be a JSON object")

        with open(vectors_path, 'rb') as f:
            blob = f.read()

        store = cls.from_bytes(blob, metadata)
        logger.info(f"Pattern store loaded: {store.size():,} vectors, dim={store.dim}")
        return store

    @property
    def dim(self) -> int:
        return self._vectors.shape[1]

    def size(self) -> int:
        return self._vectors.shape[0]

    def __len__(self) -> int:
        return self.size()

    def at(self, i: int) -> AttackPattern:
        return AttackPattern(
            embedding=self._vectors[i],
            label=self._labels[i],
            severity=self._severities[i],
            source=self._sources[i]
        )

    def __iter__(self):
        for i in range(self.size()):
            yield self.at(i)

    def label_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for label in self._labels:
            counts[label] = counts.get(label, 0) + 1
        return counts

    def record(self, pattern_id: int) -> Optional[Dict[str, Any]]:
        """Metadata for one pattern; ids are 1-based positions."""
        i = pattern_id - 1
        if not 0 <= i < self.size():
            return None
        return {
            "id": pattern_id,
            "label": self._labels[i],
            "severity": self._severities[i],
            "dim": self.dim,
            "source": self._sources[i]
        }

    def records(self,
                label: Optional[str] = None,
                severity: Optional[str] = None,
                attacks_only: bool = False) -> List[Dict[str, Any]]:
        """Metadata for every pattern matching the filters, in storage order."""
        return [
            self.record(i + 1)
            for i in range(self.size())
            if (label is None or self._labels[i] == label)
            and (severity is None or self._severities[i] == severity)
            and not (attacks_only and self._labels[i] == CLEAN_LABEL)
        ]

    def with_patterns(self, patterns: Iterable[AttackPattern]) -> "PatternStore":
        """
        Return a new store holding this store's patterns followed by ``patterns``.
        """
        patterns = list(patterns)
        if not patterns:
            return self
        rows = []
        for p in patterns:
            validate_label(p.label, p.severity)
            vec = np.asarray(p.embedding, dtype=np.float32).reshape(-1)
            if vec.shape[0] != self.dim:
                raise ModelDataCorruptError(
                    f"Pattern dimension {vec.shape[0]} != store dimension {self.dim}"
                )
            rows.append(vec)
        return PatternStore(
            np.vstack([self._vectors] + [r[np.newaxis, :] for r in rows]),
            self._labels + tuple(p.label for p in patterns),
            self._severities + tuple(p.severity for p in patterns),
            self._sources + tuple(p.source for p in patterns)
        )

    def nearest(self, query: np.ndarray, k: int) -> List[Neighbor]:
        query = np.asarray(query, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dim:
            raise InferenceError(f"Query dimension {query.shape[0]} != store dimension {self.dim}")
        if self.size() == 0 or k < 1:
            return []

        distances = 1.0 - cosine_similarities(query, self._vectors, self._norms)
        order = np.argsort(distances, kind="stable")[:k]
        return [
            Neighbor(
                label=self._labels[i],
                severity=self._severities[i],
                distance=float(distances[i])
            )
            for i in order
        ]
