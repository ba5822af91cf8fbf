"""
Unit tests for the SQLite pattern database.
Tests inserts, seeding, in-database nearest-neighbor search and parity with memory mode.
"""

import pytest
import os
import sys

import numpy as np

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import (
    PatternDatabase,
    DatabaseNeighborSource,
    encode_embedding,
    decode_embedding
)
from classifier import compute_result
from pattern_store import PatternStore
from exceptions import ConfigurationError, ModelDataCorruptError, ModelDataMissingError


class TestEmbeddingEncoding:
    """Tests for the embedding blob format."""

    def test_little_endian_float32(self):
        blob = encode_embedding(np.array([1.0, -2.5]))
        assert blob == np.array([1.0, -2.5], dtype="<f4").tobytes()
        assert decode_embedding(blob).tolist() == [1.0, -2.5]


class TestPatternDatabase:
    """Tests for pattern storage."""

    @pytest.fixture
    def db(self, db_path):
        return PatternDatabase(db_path)

    def test_empty_database(self, db):
        assert db.get_total_count() == 0
        assert db.get_dim() is None
        assert db.label_counts() == {}

    def test_add_pattern(self, db):
        pattern_id = db.add_pattern(np.array([1.0, 0.0]), "sqli", "high", sample_text="METHOD:POST")
        row = db.get_pattern_by_id(pattern_id)
        assert row["label"] == "sqli"
        assert row["severity"] == "high"
        assert row["source"] == "custom"
        assert row["dim"] == 2
        assert row["sample_text"] == "METHOD:POST"
        assert db.get_dim() == 2

    def test_add_pattern_rejects_unknown_label(self, db):
        with pytest.raises(ConfigurationError):
            db.add_pattern(np.ones(2), "worm")

    def test_add_pattern_rejects_other_dimension(self, db):
        db.add_pattern(np.ones(2), "sqli")
        with pytest.raises(ModelDataCorruptError):
            db.add_pattern(np.ones(3), "xss")

    def test_get_pattern_not_found(self, db):
        assert db.get_pattern_by_id(999) is None

    def test_get_patterns_filters(self, db):
        db.add_pattern(np.ones(2), "sqli", "high")
        db.add_pattern(np.ones(2), "xss", "low")
        db.add_pattern(np.ones(2), "clean")

        assert len(db.get_patterns()) == 3
        assert [p["label"] for p in db.get_patterns(label="xss")] == ["xss"]
        assert [p["label"] for p in db.get_patterns(severity="high")] == ["sqli"]
        assert [p["label"] for p in db.get_patterns(attacks_only=True)] == ["sqli", "xss"]
        assert [p["label"] for p in db.get_patterns(limit=1, offset=1)] == ["xss"]

    def test_label_counts(self, db):
        db.add_pattern(np.ones(2), "sqli")
        db.add_pattern(np.ones(2), "sqli")
        db.add_pattern(np.ones(2), "xss")
        assert db.label_counts() == {"sqli": 2, "xss": 1}


class TestSeeding:
    """Tests for bundled corpus seeding."""

    def test_seed_replaces_everything(self, db_path, model_dir):
        db = PatternDatabase(db_path)
        db.add_pattern(np.ones(4), "ssrf")

        count = db.seed_from_bundled_data(model_dir)

        assert count == 4
        assert db.get_total_count() == 4
        assert db.label_counts() == {"clean": 1, "sqli": 2, "xss": 1}
        rows = db.get_patterns()
        assert [r["label"] for r in rows] == ["sqli", "xss", "clean", "sqli"]
        assert all(r["source"] == "bundled" for r in rows)

    def test_seed_in_batches(self, db_path):
        vectors = np.random.default_rng(0).normal(size=(1203, 3)).astype(np.float32)
        store = PatternStore(vectors, ["sqli"] * 1203)
        assert PatternDatabase(db_path).replace_all(store) == 1203

    def test_seed_missing_directory(self, db_path, tmp_path):
        with pytest.raises(ModelDataMissingError):
            PatternDatabase(db_path).seed_from_bundled_data(str(tmp_path / "absent"))


class TestDatabaseSearch:
    """Tests for nearest-neighbor queries inside SQLite."""

    @pytest.fixture
    def corpus(self):
        vectors = np.array([
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [1.0, 0.0, 0.0],
            [0.6, 0.8, 0.0],
            [0.0, 0.0, 0.0],
        ], dtype=np.float32)
        return PatternStore(
            vectors,
            ["sqli", "xss", "clean", "scanner", "spam_bot"],
            ["high", "medium", None, "low", "low"]
        )

    @pytest.fixture
    def source(self, db_path, corpus):
        db = PatternDatabase(db_path)
        db.replace_all(corpus)
        return DatabaseNeighborSource(db)

    def test_nearest_ordering_and_limit(self, source):
        neighbors = source.nearest(np.array([1.0, 0.0, 0.0], dtype=np.float32), k=3)
        assert [n.label for n in neighbors] == ["sqli", "clean", "scanner"]
        assert neighbors[0].distance == pytest.approx(0.0, abs=1e-7)
        assert neighbors[2].distance == pytest.approx(0.4, abs=1e-6)

    def test_zero_vector_row(self, source):
        neighbors = source.nearest(np.array([0.0, 0.0, 1.0], dtype=np.float32), k=5)
        assert [n.distance for n in neighbors] == pytest.approx([1.0] * 5)
        assert [n.label for n in neighbors] == ["sqli", "xss", "clean", "scanner", "spam_bot"]

    def test_size(self, source):
        assert source.size() == 5

    @pytest.mark.parametrize("query", [
        [1.0, 0.0, 0.0],
        [0.3, 0.9, 0.1],
        [0.0, 0.0, 1.0],
        [-1.0, 0.2, 0.0],
    ])
    @pytest.mark.parametrize("k", [1, 3, 5])
    def test_matches_memory_mode(self, source, corpus, query, k):
        query = np.asarray(query, dtype=np.float32)
        memory_result = compute_result(corpus.nearest(query, k))
        database_result = compute_result(source.nearest(query, k))
        assert database_result.label == memory_result.label
        assert database_result.confidence == memory_result.confidence
        assert database_result.votes == memory_result.votes
        assert database_result.neighbors == memory_result.neighbors

    def test_unrounded_distances_match_memory_mode(self, db_path):
        rng = np.random.default_rng(11)
        store = PatternStore(
            rng.standard_normal((40, 32)).astype(np.float32),
            ["sqli", "xss", "clean", "scanner"] * 10
        )
        db = PatternDatabase(db_path)
        db.replace_all(store)
        source = DatabaseNeighborSource(db)

        for _ in range(10):
            query = rng.standard_normal(32).astype(np.float32)
            assert source.nearest(query, 40) == store.nearest(query, 40)

    def test_other_dimension_rows_ignored(self, db_path):
        db = PatternDatabase(db_path)
        db.add_pattern(np.array([1.0, 0.0]), "sqli")
        source = DatabaseNeighborSource(db)
        assert source.nearest(np.array([1.0, 0.0, 0.0], dtype=np.float32), k=5) == []
