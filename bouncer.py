"""
Process-wide classifier handle.

A Bouncer is constructed once at startup and passed to request-handling
code. It loads the model and pattern corpus (eagerly or on first use, with a
one-shot guard), dispatches to the configured storage mode, publishes new
pattern stores atomically and fans results out to observers.
"""

import time
import asyncio
import logging
import threading
from typing import Optional, Dict, Any, List, Iterable

import numpy as np

from classifier import ClassificationResult, KNNClassifier
from database import DatabaseNeighborSource, PatternDatabase
from downloader import ensure_model
from embedding import EmbeddingModel, check_deadline
from exceptions import ConfigurationError, DeadlineExceededError, ModelDataCorruptError
from monitor import ClassificationObserver
from pattern_store import AttackPattern, PatternStore, validate_label
from request_features import request_to_text
from settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Bouncer:
    """
    Classifier handle for one configuration.
    """

    def __init__(self,
                 config: Optional[Settings] = None,
                 observers: Optional[Iterable[ClassificationObserver]] = None,
                 model: Optional[EmbeddingModel] = None,
                 store: Optional[PatternStore] = None,
                 database: Optional[PatternDatabase] = None):
        """
        Args:
            config: Settings (defaults to the module-level settings)
            observers: Receivers for classification and attack events
            model: Preloaded embedding model (loaded from model_path if omitted)
            store: Preloaded pattern store for memory mode
            database: Pattern database for database mode
        """
        self.config = config or default_settings
        self.observers: List[ClassificationObserver] = list(observers or [])

        self._model = model
        self._initial_store = store
        self._database = database
        self._classifier: Optional[KNNClassifier] = None
        self._has_patterns = False

        self._load_lock = threading.Lock()
        self._write_lock = threading.Lock()

        if self.config.enabled and not self.config.protected_paths:
            logger.warning("No protected paths configured")

    # =================================================================
    # Loading
    # =================================================================

    @property
    def loaded(self) -> bool:
        return self._classifier is not None

    @property
    def model(self) -> EmbeddingModel:
        """Embedding model, shared by both storage modes."""
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    self._model = self._load_model()
        return self._model

    @property
    def database(self) -> PatternDatabase:
        if self._database is None:
            with self._load_lock:
                if self._database is None:
                    self._database = PatternDatabase(self.config.database_path)
        return self._database

    @property
    def classifier(self) -> KNNClassifier:
        """Classifier for the configured storage mode, built on first use."""
        if self._classifier is None:
            model = self.model
            database = self.database if self.config.database_storage else None
            with self._load_lock:
                if self._classifier is None:
                    self._classifier = self._build_classifier(model, database)
        return self._classifier

    def load(self) -> "Bouncer":
        """Load everything now instead of on the first classification."""
        _ = self.classifier
        return self

    def _ensure_model_files(self) -> None:
        ensure_model(
            self.config.model_path,
            auto_download=self.config.auto_download,
            base_url=self.config.model_base_url,
            timeout=self.config.download_timeout,
            verbose=self.config.verbose_download
        )

    def _load_model(self) -> EmbeddingModel:
        self._ensure_model_files()
        model = EmbeddingModel.from_pretrained(self.config.model_path, device=self.config.device)
        logger.info(f"Embedding model ready: {model.get_info()}")
        return model

    def _build_classifier(self,
                          model: EmbeddingModel,
                          database: Optional[PatternDatabase]) -> KNNClassifier:
        if database is not None:
            source = DatabaseNeighborSource(database)
            logger.info(f"Classifier using database storage: {database.db_path}")
            return KNNClassifier(model, source, storage="database")

        store = self._initial_store
        if store is None:
            self._ensure_model_files()
            store = PatternStore.from_files(self.config.model_path)
        if store.dim != model.embedding_dim:
            raise ModelDataCorruptError(
                f"Pattern dimension {store.dim} != embedding dimension {model.embedding_dim}"
            )
        logger.info(f"Classifier using memory storage: {store.size():,} patterns")
        return KNNClassifier(model, store, storage="memory")

    # =================================================================
    # Classification
    # =================================================================

    @property
    def enabled(self) -> bool:
        """
        Whether requests should be classified at all.

        In database mode this queries SQLite until the table is first seen
        non-empty; call it off the event loop.
        """
        if not self.config.enabled:
            return False
        if self.config.database_storage:
            if not self._has_patterns:
                self._has_patterns = self.database.get_total_count() > 0
            return self._has_patterns
        return self.loaded or bool(self.config.model_path)

    def classify(self,
                 request_text: str,
                 k: Optional[int] = None,
                 deadline: Optional[float] = None) -> ClassificationResult:
        """
        Classify canonical request text with the configured storage mode.

        Args:
            request_text: Canonical request text
            k: Neighbors to vote (defaults to settings.default_k)
            deadline: time.monotonic() value after which no verdict is
                produced and observers are not notified

        Returns:
            ClassificationResult

        Raises:
            DeadlineExceededError: The deadline passed first
        """
        k = self.config.default_k if k is None else k
        result = self.classifier.classify(request_text, k=k, deadline=deadline)
        check_deadline(deadline, "notification")
        self._notify(result)
        return result

    async def classify_async(self,
                             request_text: str,
                             k: Optional[int] = None,
                             timeout: Optional[float] = None) -> ClassificationResult:
        """
        Classify off the event loop, honoring the caller's deadline.

        The deadline travels with the work: once it passes, the worker stops
        before inference or drops its verdict without notifying observers.

        Raises:
            asyncio.TimeoutError: The deadline passed before a verdict
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.classify, request_text, k, deadline),
                timeout=timeout
            )
        except DeadlineExceededError as e:
            raise asyncio.TimeoutError(str(e)) from e

    def classify_request(self,
                         method: str,
                         path: str,
                         body: Optional[str] = "",
                         user_agent: Optional[str] = "",
                         params: Optional[Dict[str, Any]] = None,
                         headers: Optional[Dict[str, Any]] = None,
                         k: Optional[int] = None) -> ClassificationResult:
        """Build the canonical text for a request and classify it."""
        text = request_to_text(
            method=method,
            path=path,
            body=body,
            user_agent=user_agent,
            params=params,
            headers=headers
        )
        return self.classify(text, k=k)

    @staticmethod
    def request_to_text(**kwargs) -> str:
        return request_to_text(**kwargs)

    def is_protected(self, path: str) -> bool:
        return self.config.is_protected_path(path)

    def is_blocking_verdict(self,
                            result: ClassificationResult,
                            threshold: Optional[float] = None) -> bool:
        """An attack verdict at or above the threshold (the configured one by default)."""
        threshold = self.config.threshold if threshold is None else threshold
        return result.is_attack and result.confidence >= threshold

    def _notify(self, result: ClassificationResult) -> None:
        attack = self.is_blocking_verdict(result)
        for observer in self.observers:
            try:
                observer.on_classification(result)
                if attack:
                    observer.on_attack(result)
            except Exception:
                logger.exception(f"Observer {type(observer).__name__} failed")

    # =================================================================
    # Pattern management
    # =================================================================

    def add_pattern(self,
                    label: str,
                    severity: Optional[str] = None,
                    text: Optional[str] = None,
                    embedding: Optional[np.ndarray] = None,
                    source: str = "custom") -> int:
        """
        Add a custom pattern from request text or a precomputed embedding.

        Memory mode publishes a new store; database mode inserts a row.

        Returns:
            Total number of stored patterns after the insert
        """
        validate_label(label, severity)
        if embedding is None:
            if text is None:
                raise ConfigurationError("Either text or embedding is required")
            embedding = self.model.embed(text)
        embedding = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if embedding.shape[0] != self.model.embedding_dim:
            raise ConfigurationError(
                f"Embedding dimension {embedding.shape[0]} != {self.model.embedding_dim}"
            )

        classifier = self.classifier
        if classifier.storage == "database":
            self.database.add_pattern(embedding, label, severity, source=source, sample_text=text)
            self._has_patterns = True
            return self.database.get_total_count()

        with self._write_lock:
            store = classifier.neighbor_source.with_patterns(
                [AttackPattern(embedding=embedding, label=label, severity=severity, source=source)]
            )
            classifier.neighbor_source = store
        logger.info(f"Added {label} pattern; memory store now holds {store.size():,}")
        return store.size()

    def replace_store(self, store: PatternStore) -> None:
        """Publish a new in-memory pattern store."""
        classifier = self.classifier
        if classifier.storage != "memory":
            raise ConfigurationError("replace_store requires memory storage")
        if store.dim != self.model.embedding_dim:
            raise ModelDataCorruptError(
                f"Pattern dimension {store.dim} != embedding dimension {self.model.embedding_dim}"
            )
        with self._write_lock:
            classifier.neighbor_source = store
        logger.info(f"Pattern store replaced: {store.size():,} patterns")

    def seed_database(self, model_path: Optional[str] = None) -> int:
        """Replace the database corpus with the bundled vectors."""
        model_path = model_path or self.config.model_path
        count = self.database.seed_from_bundled_data(model_path)
        self._has_patterns = count > 0
        return count

    def pattern_counts(self) -> Dict[str, int]:
        """Stored patterns per label for the active storage mode."""
        classifier = self.classifier
        if classifier.storage == "database":
            return self.database.label_counts()
        return classifier.neighbor_source.label_counts()

    def pattern_total(self) -> int:
        return self.classifier.neighbor_source.size()

    def list_patterns(self,
                      limit: int = 100,
                      offset: int = 0,
                      label: Optional[str] = None,
                      severity: Optional[str] = None,
                      attacks_only: bool = False) -> List[Dict[str, Any]]:
        """
        Pattern metadata (no embeddings) for the active storage mode.

        Args:
            limit: Maximum number of results
            offset: Number of results to skip
            label: Only this label
            severity: Only this severity
            attacks_only: Exclude clean patterns

        Returns:
            Pattern dictionaries in storage order
        """
        classifier = self.classifier
        if classifier.storage == "database":
            return self.database.get_patterns(
                limit=limit, offset=offset, label=label, severity=severity, attacks_only=attacks_only
            )
        records = classifier.neighbor_source.records(
            label=label, severity=severity, attacks_only=attacks_only
        )
        return records[offset:offset + limit]

    def get_pattern(self, pattern_id: int) -> Optional[Dict[str, Any]]:
        """One pattern's metadata by id, or None."""
        classifier = self.classifier
        if classifier.storage == "database":
            return self.database.get_pattern_by_id(pattern_id)
        return classifier.neighbor_source.record(pattern_id)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"loaded": self.loaded, "storage": self.config.storage}
        if self._classifier is not None:
            stats["classifier"] = self._classifier.get_stats()
        return stats
