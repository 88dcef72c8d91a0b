"""Unit tests for SpecFlow logging and observability.

This module tests the logging infrastructure, performance monitoring,
and observability hooks.
"""

import json
import logging
import sys
import pytest
from unittest.mock import patch, MagicMock

from specflow.specflow_logging import (
    setup_logging,
    JsonFormatter,
    PerformanceMonitor,
    log_performance,
    log_operation,
    ObservabilityHooks,
    log_error_with_context,
    log_phase_inserted,
    log_status_updated,
    observability_hooks,
    performance_monitor,
)


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_json_formatter_basic(self):
        """Test basic JSON formatting."""
        formatter = JsonFormatter()

        logger = logging.getLogger("test")
        record = logger.makeRecord("test", logging.INFO, "registry.py", 10, "Test message", (), None)

        data = json.loads(formatter.format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert "module" in data
        assert "function" in data
        assert data["line"] == 10

    def test_json_formatter_with_exception(self):
        """Test JSON formatting with exception info."""
        formatter = JsonFormatter()

        logger = logging.getLogger("test")
        try:
            raise ValueError("Test exception")
        except ValueError:
            record = logger.makeRecord(
                "test", logging.ERROR, "registry.py", 10, "Test message", (), sys.exc_info()
            )

        data = json.loads(formatter.format(record))

        assert data["level"] == "ERROR"
        assert "ValueError" in data["exception"]

    def test_json_formatter_with_extra_fields(self):
        """Test JSON formatting with extra fields."""
        formatter = JsonFormatter()

        logger = logging.getLogger("test")
        record = logger.makeRecord("test", logging.INFO, "registry.py", 10, "Test message", (), None)
        record.extra_fields = {"phase": "0020", "mapping": {"0025": "0020"}}

        data = json.loads(formatter.format(record))

        assert data["phase"] == "0020"
        assert data["mapping"] == {"0025": "0020"}


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    def test_record_metric(self):
        """Test recording a performance metric."""
        monitor = PerformanceMonitor()

        monitor.record_metric("insert_phase_duration", 0.5, {"status": "success"})

        metrics = monitor.get_metrics("insert_phase_duration")
        assert len(metrics) == 1
        assert metrics["insert_phase_duration"][0]["value"] == 0.5
        assert metrics["insert_phase_duration"][0]["tags"]["status"] == "success"
        assert "timestamp" in metrics["insert_phase_duration"][0]

    def test_get_all_metrics_and_clear(self):
        """Test getting all metrics, then clearing them."""
        monitor = PerformanceMonitor()

        monitor.record_metric("metric1", 1)
        monitor.record_metric("metric2", 2)
        monitor.record_metric("metric1", 3)

        all_metrics = monitor.get_metrics()
        assert len(all_metrics) == 2
        assert [metric["value"] for metric in all_metrics["metric1"]] == [1, 3]

        monitor.clear()
        assert monitor.get_metrics() == {}

    def test_unknown_metric(self):
        """Unknown metric names give an empty list."""
        assert PerformanceMonitor().get_metrics("missing") == {"missing": []}

    def test_samples_are_bounded_per_metric(self):
        """Only the most recent samples are kept for each metric name."""
        monitor = PerformanceMonitor(max_samples=2)

        for value in (1, 2, 3, 4):
            monitor.record_metric("reconcile_duration", value)
        monitor.record_metric("roadmap_status_duration", 9)

        kept = monitor.get_metrics("reconcile_duration")["reconcile_duration"]
        assert [metric["value"] for metric in kept] == [3, 4]
        assert len(monitor.get_metrics()["roadmap_status_duration"]) == 1

    def test_summary(self):
        """The summary covers numeric samples only."""
        monitor = PerformanceMonitor()
        monitor.record_metric("insert_phase_duration", 0.5)
        monitor.record_metric("insert_phase_duration", 1.5)
        monitor.record_metric("label", "not a number")

        assert monitor.summary() == {
            "insert_phase_duration": {"count": 2, "mean": 1.0, "max": 1.5},
        }


class TestLogPerformance:
    """Test cases for log_performance decorator."""

    def test_log_performance_decorator(self):
        """Test the log_performance decorator."""
        @log_performance("test_operation")
        def test_function():
            return "test_result"

        assert test_function() == "test_result"

        metrics = performance_monitor.get_metrics("test_operation_duration")["test_operation_duration"]
        assert len(metrics) == 1
        assert metrics[0]["value"] >= 0
        assert metrics[0]["tags"]["status"] == "success"

    def test_log_performance_decorator_with_exception(self):
        """Test the log_performance decorator with exception."""
        @log_performance("test_operation")
        def test_function():
            raise ValueError("Test error")

        with pytest.raises(ValueError):
            test_function()

        metrics = performance_monitor.get_metrics("test_operation_duration")["test_operation_duration"]
        assert len(metrics) == 1
        assert metrics[0]["tags"]["status"] == "error"
        assert metrics[0]["tags"]["error_type"] == "ValueError"

    def test_registry_operations_are_timed(self, registry):
        """Registry mutations record a duration metric."""
        registry.insert("10", "Caching")
        assert len(performance_monitor.get_metrics("insert_phase_duration")["insert_phase_duration"]) == 1


class TestLogOperation:
    """Test cases for log_operation context manager."""

    def test_log_operation_success(self):
        """Test successful operation logging."""
        with patch("specflow.specflow_logging.std_logging.getLogger") as mock_logger:
            mock_logger_instance = MagicMock()
            mock_logger.return_value = mock_logger_instance

            with log_operation("insert_phase", after="0010"):
                pass

            assert mock_logger_instance.info.call_count == 2
            assert mock_logger_instance.error.called is False

    def test_log_operation_with_exception(self):
        """Test operation logging with exception."""
        with patch("specflow.specflow_logging.std_logging.getLogger") as mock_logger:
            mock_logger_instance = MagicMock()
            mock_logger.return_value = mock_logger_instance

            with pytest.raises(ValueError):
                with log_operation("insert_phase"):
                    raise ValueError("Test error")

            assert mock_logger_instance.error.called
            assert "Test error" in str(mock_logger_instance.error.call_args)


class TestObservabilityHooks:
    """Test cases for ObservabilityHooks."""

    def test_register_and_trigger_hooks(self):
        """Test registering and triggering hooks."""
        hooks = ObservabilityHooks()
        received = {}

        def callback(**data):
            received.update(data)

        hooks.register_hook("phase_inserted", callback)
        hooks.trigger_hooks("phase_inserted", phase="0011")

        assert received == {"phase": "0011"}

    def test_unregister_hook(self):
        """Unregistered callbacks are no longer called."""
        hooks = ObservabilityHooks()
        calls = []

        def callback(**data):
            calls.append(data)

        hooks.register_hook("phase_deferred", callback)
        hooks.unregister_hook("phase_deferred", callback)
        hooks.trigger_hooks("phase_deferred", phase="0020")

        assert calls == []

    def test_log_registry_event(self):
        """Registry events pass the phase and a timestamp to hooks."""
        hooks = ObservabilityHooks()
        received = {}
        hooks.register_hook("phase_restored", lambda **data: received.update(data))

        hooks.log_registry_event("phase_restored", phase="0041", original="0040")

        assert received["phase"] == "0041"
        assert received["original"] == "0040"
        assert "timestamp" in received
        assert "event_type" not in received

    def test_hook_failure_handling(self):
        """Test that hook failures don't crash the system."""
        hooks = ObservabilityHooks()

        def failing_callback(**data):
            raise ValueError("Hook failed")

        hooks.register_hook("phase_inserted", failing_callback)

        with patch.object(hooks.logger, "error") as mock_error:
            hooks.trigger_hooks("phase_inserted", phase="0011")

        assert "Hook failed" in str(mock_error.call_args)


class TestLoggingFunctions:
    """Test cases for logging convenience functions."""

    def test_log_phase_inserted(self):
        """Test log_phase_inserted function."""
        with patch("specflow.specflow_logging.observability_hooks") as mock_hooks:
            log_phase_inserted("0011", "0010", rolled_over=False)

            mock_hooks.log_registry_event.assert_called_once_with(
                "phase_inserted", phase="0011", after="0010", rolled_over=False
            )

    def test_log_status_updated(self):
        """Test log_status_updated function."""
        with patch("specflow.specflow_logging.observability_hooks") as mock_hooks:
            log_status_updated("0030", "complete", changed=True)

            call_args = mock_hooks.log_registry_event.call_args
            assert call_args[0] == ("phase_status_updated",)
            assert call_args[1]["status"] == "complete"
            assert call_args[1]["changed"] is True

    def test_log_error_with_context(self):
        """Test log_error_with_context function."""
        with patch("specflow.specflow_logging.std_logging.getLogger") as mock_logger:
            error = ValueError("Test error")
            context = {"operation": "insert_phase", "after": "0010"}

            log_error_with_context(error, context, extra_param="extra_value")

            assert mock_logger.return_value.error.called
            call_args = mock_logger.return_value.error.call_args
            assert "Error in insert_phase: Test error" in call_args[0][0]
            extra_fields = call_args[1]["extra"]["extra_fields"]
            assert extra_fields["context"] == context
            assert extra_fields["extra_param"] == "extra_value"
            assert extra_fields["error_type"] == "ValueError"


class TestLoggingIntegration:
    """Integration tests for logging functionality."""

    @pytest.fixture(autouse=True)
    def reset_specflow_logger(self):
        yield
        logger = logging.getLogger("specflow")
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)

    def test_setup_logging(self, tmp_path):
        """Test setting up logging configuration."""
        log_file = tmp_path / "test.log"

        setup_logging(log_level=logging.DEBUG, log_file=log_file)
        logging.getLogger("specflow.test").info("Test message")

        assert log_file.exists()
        content = log_file.read_text()
        assert "Test message" in content
        for line in content.strip().split("\n"):
            json.loads(line)

    def test_setup_logging_replaces_handlers(self, tmp_path):
        """Calling setup twice does not duplicate handlers."""
        setup_logging(log_level=logging.INFO)
        setup_logging(log_level=logging.INFO, log_file=tmp_path / "test.log")
        assert len(logging.getLogger("specflow").handlers) == 2

    def test_end_to_end_logging_flow(self, tmp_path):
        """Test end-to-end logging flow."""
        log_file = tmp_path / "test.log"
        setup_logging(log_level=logging.DEBUG, log_file=log_file)

        observability_hooks.log_registry_event("phase_deferred", phase="0020", forced=True)
        performance_monitor.record_metric("test_metric", 42)

        content = log_file.read_text()
        assert "Registry event: phase_deferred" in content
        assert "Metric recorded: test_metric=42" in content
