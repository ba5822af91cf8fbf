"""
Unit tests for attack monitoring and logging configuration.
"""

import pytest
import os
import sys
import json
import logging

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from classifier import ClassificationResult
from monitor import AttackMonitor, JSONFormatter, configure_logging


def _result(label, confidence=0.9, latency_ms=1.0):
    return ClassificationResult(
        label=label,
        confidence=confidence,
        is_attack=label != "clean",
        nearest_distance=0.1,
        latency_ms=latency_ms
    )


class TestAttackMonitor:
    """Tests for attack logging and statistics."""

    @pytest.fixture
    def monitor(self):
        return AttackMonitor()

    def test_statistics(self, monitor):
        monitor.on_classification(_result("clean", latency_ms=1.0))
        monitor.on_classification(_result("sqli", latency_ms=3.0))
        monitor.on_attack(_result("sqli"))

        stats = monitor.get_stats()
        assert stats["total_classifications"] == 2
        assert stats["attacks_detected"] == 1
        assert stats["clean"] == 1
        assert stats["by_label"] == {"clean": 1, "sqli": 1}
        assert stats["avg_latency_ms"] == pytest.approx(2.0)

    @pytest.mark.parametrize("label,level", [
        ("sqli", logging.ERROR),
        ("log4shell", logging.ERROR),
        ("xss", logging.WARNING),
        ("ssrf", logging.WARNING),
        ("scanner", logging.INFO),
    ])
    def test_log_level_by_label(self, monitor, caplog, label, level):
        with caplog.at_level(logging.INFO, logger="attacks"):
            monitor.on_attack(_result(label))

        record = caplog.records[-1]
        assert record.levelno == level
        assert record.name == "attacks"
        assert f'"label": "{label}"' in record.getMessage()

    def test_file_logging(self, tmp_path):
        logs_dir = tmp_path / "logs"
        monitor = AttackMonitor(logs_dir=str(logs_dir))
        monitor.start()
        try:
            monitor.on_attack(_result("xss"))
        finally:
            monitor.close()

        files = os.listdir(logs_dir)
        assert len(files) == 1
        assert files[0].startswith("attacks_")
        with open(logs_dir / files[0]) as f:
            entry = json.loads(f.readline())
        assert entry["level"] == "WARNING"
        assert "xss" in entry["message"]

    def test_no_file_until_started(self, tmp_path):
        logs_dir = tmp_path / "logs"
        monitor = AttackMonitor(logs_dir=str(logs_dir))
        monitor.on_attack(_result("sqli"))
        assert not logs_dir.exists()
        monitor.close()

    def test_close_leaves_other_monitor_handler(self, tmp_path):
        first = AttackMonitor(logs_dir=str(tmp_path / "first"))
        second = AttackMonitor(logs_dir=str(tmp_path / "second"))
        first.start()
        second.start()
        try:
            second_handler = second._file_handler
            first.close()
            assert second_handler in second.logger.handlers
            assert first._file_handler is None
        finally:
            first.close()
            second.close()
        assert second_handler not in second.logger.handlers

    def test_start_is_idempotent(self, tmp_path):
        monitor = AttackMonitor(logs_dir=str(tmp_path / "logs"))
        monitor.start()
        handler = monitor._file_handler
        monitor.start()
        try:
            assert monitor._file_handler is handler
            assert monitor.logger.handlers.count(handler) == 1
        finally:
            monitor.close()

    def test_stats_are_copies(self, monitor):
        monitor.on_classification(_result("sqli"))
        stats = monitor.get_stats()
        stats["by_label"]["sqli"] = 100
        assert monitor.get_stats()["by_label"]["sqli"] == 1


class TestLogging:
    """Tests for logging configuration."""

    def test_json_formatter(self):
        record = logging.LogRecord("bouncer", logging.INFO, __file__, 10, "loaded %s", ("x",), None)
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "INFO"
        assert data["name"] == "bouncer"
        assert data["message"] == "loaded x"
        assert data["line"] == 10

    def test_json_formatter_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]

    def test_configure_logging(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging("DEBUG", "console")
            assert root.level == logging.DEBUG
            assert not isinstance(root.handlers[0].formatter, JSONFormatter)

            configure_logging("warning", "json")
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
