# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging

import asyncpg
import pytest
from asyncpg.exceptions import PostgresError

from truckdesk.config import Settings, validate_or_warn, warn_on_risky_config
from truckdesk.infra.db_resilience_async import is_transient_error, retry_on_transient_error
from truckdesk.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext
from truckdesk.infra.metrics import AppMetrics, MetricsCollector, get_metrics_collector
from truckdesk.infra.migrations_async import migration_files
from truckdesk.transport.security import sanitize_error_message, validate_token_strength


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        exc = PostgresError("connection timeout")
        assert is_transient_error(exc) is True

    def test_is_transient_error_server_closed(self):
        exc = PostgresError("server closed the connection unexpectedly")
        assert is_transient_error(exc) is True

    def test_deadlock_is_transient(self):
        assert is_transient_error(asyncpg.DeadlockDetectedError("deadlock detected")) is True

    def test_unique_violation_is_not_transient(self):
        exc = asyncpg.UniqueViolationError("duplicate key value violates unique constraint, connection ok")
        assert is_transient_error(exc) is False

    def test_is_transient_error_non_transient(self):
        exc = ValueError("some other error")
        assert is_transient_error(exc) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_operation()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0.001)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise PostgresError("connection timeout")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_gives_up(self):
        call_count = 0

        @retry_on_transient_error(max_retries=2, initial_delay=0.001)
        async def always_down():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("connection refused")

        with pytest.raises(ConnectionError):
            await always_down()

        assert call_count == 3
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["database_errors_total{operation=always_down}"] == 1


class TestLogging:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("truckdesk.test", logging.INFO, __file__, 10, "Job scheduled", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_context(self):
        output = json.loads(JSONFormatter().format(self._record(job_id="job-1", truck_id="truck-1")))

        assert output["message"] == "Job scheduled"
        assert output["level"] == "INFO"
        assert output["job_id"] == "job-1"
        assert output["truck_id"] == "truck-1"
        assert "customer_id" not in output

    def test_console_formatter_context(self):
        line = ConsoleFormatter().format(
            self._record(job_id="0123456789abcdef", customer_id="cust-1", request_id="req-42")
        )

        assert "job=01234567" in line
        assert "customer=cust-1" in line
        assert "req=req-42" in line
        assert line.endswith("Job scheduled")

    def test_log_context_attaches_fields(self, caplog):
        logger = logging.getLogger("truckdesk.test.context")
        with caplog.at_level(logging.INFO, logger="truckdesk.test.context"):
            LogContext(logger, job_id="job-9", customer_id=None).info("hello")

        record = caplog.records[-1]
        assert record.job_id == "job-9"
        assert not hasattr(record, "customer_id")


class TestMetrics:
    def test_labelled_counter_key(self):
        collector = MetricsCollector()
        collector.inc_counter("transitions_applied_total", labels={"target": "SCHEDULED", "kind": "status"})

        assert collector.get_metrics()["counters"] == {
            "transitions_applied_total{kind=status,target=SCHEDULED}": 1
        }

    def test_histogram_stats(self):
        collector = MetricsCollector()
        for value in (0.2, 0.4, 0.9):
            collector.observe_histogram("bucket_utilization", value)

        stats = collector.get_metrics()["histograms"]["bucket_utilization"]
        assert stats["count"] == 3
        assert stats["max"] == 0.9
        assert stats["avg"] == pytest.approx(0.5)

    def test_infinite_utilization_not_observed(self):
        AppMetrics.capacity_evaluated("over", float("inf"))

        metrics = get_metrics_collector().get_metrics()
        assert metrics["counters"]["capacity_reports_total{level=over}"] == 1
        assert "bucket_utilization" not in metrics["histograms"]

    def test_track_operation_records_duration(self):
        with AppMetrics.track_operation("create_job"):
            pass

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert histograms["dispatch_operation_seconds{operation=create_job}"]["count"] == 1


class TestConfig:
    def test_dsn_from_parts(self):
        s = Settings(database_url=None, pguser="u", pgpassword="p", pghost="db", pgport=6543, pgdatabase="dispatch")
        assert s.database_dsn == "postgresql://u:p@db:6543/dispatch"

    def test_database_url_wins(self):
        s = Settings(database_url="postgresql://x@y/z")
        assert s.database_dsn == "postgresql://x@y/z"

    def test_server_settings(self):
        s = Settings(pg_statement_timeout_ms=1500)
        assert s.server_settings["statement_timeout"] == "1500"
        assert s.server_settings["application_name"] == "truckdesk"

    def test_production_requires_token_and_postgres(self):
        s = Settings(app_env="prod", api_token=None, storage_backend="memory")
        missing = s.validate_required_for_production()

        assert "api_token" in missing
        assert any("memory backend" in m for m in missing)
        with pytest.raises(RuntimeError, match="Missing required settings"):
            validate_or_warn(s)

    def test_dev_only_warns(self):
        s = Settings(app_env="dev", api_token=None, capacity_warning_threshold=1.5)

        validate_or_warn(s)
        warnings = warn_on_risky_config(s)
        assert any("api_token" in w for w in warnings)
        assert any("capacity_warning_threshold" in w for w in warnings)

    def test_queued_delivery_on_memory_backend_warns(self):
        s = Settings(storage_backend="memory", notification_delivery="queued", api_token="x")
        assert any("falls back to direct" in w for w in warn_on_risky_config(s))


class TestSecurity:
    def test_strong_token(self):
        assert validate_token_strength("Zq8vLr3TnW5xKp2YbM7cHd4JfG6sA9eR") == []

    def test_weak_token(self):
        warnings = validate_token_strength("password")
        assert any("too short" in w for w in warnings)
        assert any("weak pattern" in w for w in warnings)
        assert any("diversity" in w for w in warnings)

    def test_sanitize_in_production(self):
        assert sanitize_error_message(ValueError("secret detail"), is_production=True) == "Invalid input"
        assert sanitize_error_message(RuntimeError("x"), is_production=True) == "Internal server error"

    def test_sanitize_in_dev(self):
        assert sanitize_error_message(ValueError("secret detail"), is_production=False) == "secret detail"


class TestMigrations:
    def test_migration_files_sorted_and_packaged(self):
        names = [p.name for p in migration_files()]
        assert names[0] == "001_dispatch_core.sql"
        assert names == sorted(names)

    def test_expected_schema_version_matches_latest_file(self):
        assert Settings().expected_schema_version == migration_files()[-1].name
