"""
Classification monitoring: observer interface, attack logging and statistics.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from classifier import ClassificationResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        fmt: "json" for structured output, "console" for plain text
    """
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


class ClassificationObserver:
    """
    Receives classification results. Override the hooks you need.
    """

    def on_classification(self, result: ClassificationResult) -> None:
        """Called for every classification."""

    def on_attack(self, result: ClassificationResult) -> None:
        """Called when an attack verdict reaches the confidence threshold."""


class AttackMonitor(ClassificationObserver):
    """
    Logs detected attacks and keeps classification statistics.
    """

    # Log level per attack label
    LABEL_LOG_LEVELS = {
        "sqli": logging.ERROR,
        "command_injection": logging.ERROR,
        "path_traversal": logging.ERROR,
        "log4shell": logging.ERROR,
        "xxe": logging.ERROR,
        "xss": logging.WARNING,
        "ssrf": logging.WARNING
    }

    def __init__(self, logs_dir: Optional[str] = None):
        """
        Initialize the monitor. The attack log file is opened by start().

        Args:
            logs_dir: Directory for the dated attack log file (None disables it)
        """
        self._lock = threading.Lock()
        self.logs_dir = logs_dir
        self.logger = logging.getLogger('attacks')
        self._file_handler: Optional[logging.FileHandler] = None

        self.stats = {
            "total_classifications": 0,
            "attacks_detected": 0,
            "clean": 0,
            "by_label": {},
            "avg_latency_ms": 0.0
        }

    def start(self) -> None:
        """Open the dated attack log file. Does nothing without logs_dir or when already open."""
        if not self.logs_dir or self._file_handler is not None:
            return
        path = Path(self.logs_dir)
        path.mkdir(parents=True, exist_ok=True)

        log_file = path / f"attacks_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(JSONFormatter())
        self.logger.addHandler(file_handler)
        self._file_handler = file_handler
        logger.info(f"Attack log: {log_file}")

    def close(self) -> None:
        """Detach and close this monitor's log file handler."""
        handler, self._file_handler = self._file_handler, None
        if handler is not None:
            self.logger.removeHandler(handler)
            handler.close()

    def on_classification(self, result: ClassificationResult) -> None:
        with self._lock:
            total = self.stats["total_classifications"] + 1
            self.stats["avg_latency_ms"] += (result.latency_ms - self.stats["avg_latency_ms"]) / total
            self.stats["total_classifications"] = total
            by_label = self.stats["by_label"]
            by_label[result.label] = by_label.get(result.label, 0) + 1
            if not result.is_attack:
                self.stats["clean"] += 1

    def on_attack(self, result: ClassificationResult) -> None:
        with self._lock:
            self.stats["attacks_detected"] += 1

        level = self.LABEL_LOG_LEVELS.get(result.label, logging.INFO)
        log_entry = {
            "label": result.label,
            "confidence": result.confidence,
            "nearest_distance": result.nearest_distance,
            "latency_ms": result.latency_ms,
            "storage": result.storage
        }
        self.logger.log(level, f"Attack detected: {json.dumps(log_entry)}")

    def get_stats(self) -> Dict[str, Any]:
        """Get monitor statistics."""
        with self._lock:
            stats = dict(self.stats)
            stats["by_label"] = dict(self.stats["by_label"])
            return stats
