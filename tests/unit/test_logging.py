"""
Unit tests for structured migration logging.
"""

import json
import logging

from squizzle.logging import (
    CorrelationContext,
    MigrationEventType,
    MigrationLogger,
    get_correlation_id,
    get_migration_logger,
)


class TestMigrationLogger:
    """Test cases for MigrationLogger."""

    def test_events_reach_handlers(self):
        """Test that handlers receive structured events."""
        events = []
        logger = MigrationLogger("test-handlers")
        logger.add_event_handler(events.append)

        with CorrelationContext("corr-1"):
            logger.log_operation_started("apply", "1.0.0", dry_run=True)
            logger.log_migration("1.0.0", "drizzle/0001.sql", "success", 1.5)

        assert [e.event_type for e in events] == [
            MigrationEventType.OPERATION_STARTED,
            MigrationEventType.MIGRATION_COMPLETED,
        ]
        assert events[0].correlation_id == "corr-1"
        assert events[0].metadata["dry_run"] is True
        assert events[1].duration_ms == 1.5

    def test_failing_handler_is_contained(self, caplog):
        """Test that a broken handler does not break logging."""
        logger = MigrationLogger("test-broken")

        def broken(event):
            raise RuntimeError("boom")

        logger.add_event_handler(broken)
        with caplog.at_level(logging.ERROR, logger="squizzle.test-broken"):
            logger.error("something failed")

        assert "Event handler error: boom" in caplog.text
        logger.remove_event_handler(broken)

    def test_event_serialization(self):
        """Test that events serialize to JSON."""
        events = []
        logger = MigrationLogger("test-json")
        logger.add_event_handler(events.append)

        logger.log_operation_failed("apply", "1.0.0", ValueError("bad"))
        data = json.loads(events[0].to_json())

        assert data["event_type"] == "operation_failed"
        assert data["metadata"]["error_type"] == "ValueError"
        assert data["status"] == "failure"

    def test_records_carry_event(self, caplog):
        """Test that log records expose the event as an extra attribute."""
        logger = MigrationLogger("test-extra")

        with caplog.at_level(logging.INFO, logger="squizzle.test-extra"):
            logger.log_plan("1.0.0", ["a.sql", "b.sql"])

        record = caplog.records[-1]
        assert record.migration_event["event_type"] == "plan"
        assert "a.sql, b.sql" in record.getMessage()


class TestCorrelation:
    """Test cases for correlation context handling."""

    def test_context_is_restored(self):
        """Test that correlation IDs are scoped to the context."""
        before = get_correlation_id()
        with CorrelationContext("outer"):
            assert get_correlation_id() == "outer"
            with CorrelationContext("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() == before

    def test_shared_loggers(self):
        """Test that named loggers are shared."""
        assert get_migration_logger("shared") is get_migration_logger("shared")
