"""
SQLite storage for attack pattern vectors (database storage mode).
Nearest-neighbor queries run inside SQLite through a registered cosine distance function.
"""

import sqlite3
import os
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Generator, Iterable
from contextlib import contextmanager
from threading import Lock
import logging

import numpy as np

from config.model_config import CLEAN_LABEL, SEED_BATCH_SIZE
from exceptions import ModelDataCorruptError, ModelDataMissingError
from pattern_store import (
    AttackPattern,
    Neighbor,
    NeighborSource,
    PatternStore,
    cosine_similarities,
    validate_label
)

logger = logging.getLogger(__name__)


def encode_embedding(embedding: np.ndarray) -> bytes:
    """Serialize a vector as little-endian float32."""
    return np.asarray(embedding, dtype='<f4').reshape(-1).tobytes()


def decode_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype='<f4')


def _cosine_distance(stored: bytes, query: bytes) -> Optional[float]:
    if stored is None or query is None:
        return None
    a = decode_embedding(stored)
    q = decode_embedding(query)
    if a.shape[0] != q.shape[0]:
        return None
    return float(1.0 - cosine_similarities(q, a[np.newaxis, :])[0])


class PatternDatabase:
    """
    SQLite manager for attack pattern vectors.
    Row ids preserve insertion order and break distance ties.
    """

    # Table schema
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS attack_patterns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            label TEXT NOT NULL,
            severity TEXT,
            embedding BLOB NOT NULL,
            dim INTEGER NOT NULL,
            source TEXT NOT NULL DEFAULT 'bundled',
            sample_text TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """

    # Indexes for common queries
    INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_patterns_label ON attack_patterns(label)",
        "CREATE INDEX IF NOT EXISTS idx_patterns_severity ON attack_patterns(severity)",
        "CREATE INDEX IF NOT EXISTS idx_patterns_source ON attack_patterns(source)",
    ]

    def __init__(self, db_path: str = "attack_patterns.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._lock = Lock()
        self._init_database()
        logger.info(f"PatternDatabase initialized: {self.db_path}")

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get database connection with automatic cleanup.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")  # Write-Ahead Logging for concurrency
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.create_function("cosine_distance", 2, _cosine_distance, deterministic=True)
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize database schema and indexes."""
        with self.get_connection() as conn:
            conn.execute(self.SCHEMA)
            for index_sql in self.INDEXES:
                conn.execute(index_sql)

    def add_pattern(
        self,
        embedding: np.ndarray,
        label: str,
        severity: Optional[str] = None,
        source: str = "custom",
        sample_text: Optional[str] = None
    ) -> int:
        """
        Insert a single pattern.

        Args:
            embedding: Pattern vector
            label: Attack label or "clean"
            severity: low/medium/high/critical or None
            source: Provenance tag
            sample_text: Request text the vector was computed from

        Returns:
            int: ID of inserted row
        """
        validate_label(label, severity)
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        existing_dim = self.get_dim()
        if existing_dim is not None and existing_dim != vector.shape[0]:
            raise ModelDataCorruptError(
                f"Pattern dimension {vector.shape[0]} != stored dimension {existing_dim}"
            )

        with self._lock, self.get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO attack_patterns (label, severity, embedding, dim, source, sample_text)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (label, severity, encode_embedding(vector), vector.shape[0], source, sample_text))
            pattern_id = cursor.lastrowid

        logger.info(f"Added pattern ID {pattern_id}: {label} ({severity or 'no severity'}, {source})")
        return pattern_id

    def replace_all(self, patterns: Iterable[AttackPattern]) -> int:
        """
        Replace the whole corpus in one transaction.

        Returns:
            Number of stored patterns
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock, self.get_connection() as conn:
            conn.execute("DELETE FROM attack_patterns")
            batch = []
            for p in patterns:
                vector = np.asarray(p.embedding, dtype=np.float32).reshape(-1)
                batch.append((p.label, p.severity, encode_embedding(vector), vector.shape[0], p.source, now))
                if len(batch) >= SEED_BATCH_SIZE:
                    self._insert_batch(conn, batch)
                    batch = []
            if batch:
                self._insert_batch(conn, batch)
            count = conn.execute("SELECT COUNT(*) FROM attack_patterns").fetchone()[0]
        return count

    @staticmethod
    def _insert_batch(conn: sqlite3.Connection, batch: List[tuple]) -> None:
        conn.executemany("""
            INSERT INTO attack_patterns (label, severity, embedding, dim, source, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, batch)

    def seed_from_bundled_data(self, model_path: str) -> int:
        """
        Replace all patterns with the bundled corpus from a model directory.

        Args:
            model_path: Directory holding vectors.bin and labels.json

        Returns:
            Number of seeded patterns
        """
        if not os.path.isdir(model_path):
            raise ModelDataMissingError(f"Bundled data not found at {model_path}")
        store = PatternStore.from_files(model_path)
        count = self.replace_all(store)
        logger.info(f"Seeded {count:,} patterns from {model_path}")
        return count

    def nearest_neighbors(self, embedding: np.ndarray, k: int) -> List[Dict[str, Any]]:
        """
        Find the k patterns closest to the embedding by cosine distance.

        Returns:
            Rows with id, label, severity, sample_text, distance
        """
        query = encode_embedding(embedding)
        with self.get_connection() as conn:
            cursor = conn.execute("""
                SELECT id, label, severity, sample_text,
                       cosine_distance(embedding, ?) AS distance
                FROM attack_patterns
                WHERE dim = ?
                ORDER BY distance ASC, id ASC
                LIMIT ?
            """, (query, int(np.asarray(embedding).size), k))
            return [dict(row) for row in cursor.fetchall()]

    def get_dim(self) -> Optional[int]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT dim FROM attack_patterns ORDER BY id LIMIT 1").fetchone()
            return row[0] if row else None

    def get_pattern_by_id(self, pattern_id: int) -> Optional[Dict[str, Any]]:
        """
        Get a specific pattern by ID (without its embedding).

        Args:
            pattern_id: Pattern ID to retrieve

        Returns:
            Pattern dictionary or None
        """
        with self.get_connection() as conn:
            cursor = conn.execute("""
                SELECT id, label, severity, dim, source, sample_text, created_at
                FROM attack_patterns WHERE id = ?
            """, (pattern_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_patterns(
        self,
        limit: int = 100,
        offset: int = 0,
        label: Optional[str] = None,
        severity: Optional[str] = None,
        attacks_only: bool = False
    ) -> List[Dict[str, Any]]:
        """
        List patterns with optional filtering.

        Args:
            limit: Maximum number of results
            offset: Number of results to skip
            label: Filter by label
            severity: Filter by severity
            attacks_only: Exclude clean patterns

        Returns:
            List of pattern dictionaries
        """
        query = "SELECT id, label, severity, dim, source, sample_text, created_at FROM attack_patterns WHERE 1=1"
        params: List[Any] = []

        if label:
            query += " AND label = ?"
            params.append(label)

        if severity:
            query += " AND severity = ?"
            params.append(severity)

        if attacks_only:
            query += " AND label != ?"
            params.append(CLEAN_LABEL)

        query += " ORDER BY id ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.get_connection() as conn:
            cursor = conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def label_counts(self) -> Dict[str, int]:
        """Number of stored patterns per label."""
        with self.get_connection() as conn:
            cursor = conn.execute("""
                SELECT label, COUNT(*) AS count
                FROM attack_patterns
                GROUP BY label
                ORDER BY label
            """)
            return {row["label"]: row["count"] for row in cursor.fetchall()}

    def get_total_count(self) -> int:
        """
        Get total number of stored patterns.

        Returns:
            Total count
        """
        with self.get_connection() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM attack_patterns")
            return cursor.fetchone()[0]


class DatabaseNeighborSource(NeighborSource):
    """Neighbor search delegated to a PatternDatabase."""

    def __init__(self, database: PatternDatabase):
        self.database = database

    def nearest(self, query: np.ndarray, k: int) -> List[Neighbor]:
        if k < 1:
            return []
        rows = self.database.nearest_neighbors(query, k)
        return [
            Neighbor(label=row["label"], severity=row["severity"], distance=float(row["distance"]))
            for row in rows
            if row["distance"] is not None
        ]

    def size(self) -> int:
        return self.database.get_total_count()
