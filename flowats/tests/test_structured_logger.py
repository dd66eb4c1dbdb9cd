"""Tests for structured JSON logging, request loggers and timers."""

import io
import json
from datetime import datetime, timezone

from flowats.logging_config import setup_logging
from flowats.observability.logger import (
    RequestLogger,
    classify_performance,
    create_request_logger,
    get_logger,
    log_config_event,
)


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestStructuredLogger:
    def test_record_shape_and_context(self, logs):
        log = get_logger("flowats.tests", service="api")
        log.info("candidate_imported", userId="u1", count=3)

        record = logs.out[-1]
        assert record["level"] == "info"
        assert record["message"] == "candidate_imported"
        assert record["service"] == "api"
        assert record["userId"] == "u1"
        assert record["count"] == 3
        assert record["timestamp"].startswith("20")

    def test_call_fields_override_context(self, logs):
        log = get_logger("flowats.tests", source="context")
        log.info("m", source="call")

        assert logs.out[-1]["source"] == "call"

    def test_none_fields_are_dropped(self, logs):
        get_logger("flowats.tests").info("m", userId=None, jobId="j1")

        record = logs.out[-1]
        assert "userId" not in record
        assert record["jobId"] == "j1"

    def test_errors_go_to_stderr_only(self, logs):
        log = get_logger("flowats.tests")
        log.warn("almost")
        log.error("broken", reason="db down")

        assert [r["message"] for r in logs.err] == ["broken"]
        assert logs.err[0]["level"] == "error"
        assert "broken" not in [r["message"] for r in logs.out]
        assert logs.out[-1]["level"] == "warn"

    def test_level_threshold_suppresses_lower_records(self):
        out, err = io.StringIO(), io.StringIO()
        setup_logging("warn", stdout=out, stderr=err, colorize=False)
        try:
            log = get_logger("flowats.tests")
            log.debug("hidden")
            log.info("hidden")
            log.warn("shown")
            assert not log.is_enabled("info")
            assert log.is_enabled("error")
        finally:
            setup_logging("info", stdout=io.StringIO(), stderr=io.StringIO(), colorize=False)

        assert [r["message"] for r in _lines(out)] == ["shown"]
        assert err.getvalue() == ""

    def test_exception_is_serialized(self, logs):
        log = get_logger("flowats.tests")
        try:
            raise ValueError("bad payload")
        except ValueError:
            log.error("parse_failed", exc_info=True)

        record = logs.err[-1]
        assert "ValueError: bad payload" in record["exception"]

    def test_fields_named_like_record_keys_are_accepted(self, logs):
        log = get_logger("flowats.tests")
        log.info("import_done", level="x", message="y", timestamp="z")
        create_request_logger("req-0").warn("retrying", message="upstream said no")

        record = logs.out[-2]
        assert record["message"] == "import_done"
        assert record["level"] == "info"
        assert record["timestamp"].startswith("20")
        assert logs.out[-1]["message"] == "retrying"
        assert logs.out[-1]["level"] == "warn"

    def test_helper_fields_win_over_colliding_extras(self, logs):
        log = RequestLogger("req-c")
        log.request_end("GET", "/api/jobs", 200, 1.0, method="x", status=999)
        log_config_event("loaded", "LOG_LEVEL", status="other", variable="other")

        end, config = logs.out[-2], logs.out[-1]
        assert end["method"] == "GET"
        assert end["status"] == 200
        assert config["status"] == "loaded"
        assert config["variable"] == "LOG_LEVEL"

    def test_non_json_values_are_stringified(self, logs):
        when = datetime(2026, 1, 2, tzinfo=timezone.utc)
        get_logger("flowats.tests").info("m", when=when)

        assert logs.out[-1]["when"] == str(when)

    def test_bind_extends_context_without_mutating_parent(self, logs):
        parent = get_logger("flowats.tests", service="api")
        child = parent.bind(tenant="t1")
        parent.info("parent")
        child.info("child")

        assert "tenant" not in logs.out[-2]
        assert logs.out[-1]["tenant"] == "t1"
        assert logs.out[-1]["service"] == "api"

    def test_colorized_output_wraps_line(self):
        out = io.StringIO()
        setup_logging("info", stdout=out, stderr=io.StringIO(), colorize=True)
        try:
            get_logger("flowats.tests").info("colored")
        finally:
            setup_logging("info", stdout=io.StringIO(), stderr=io.StringIO(), colorize=False)

        line = out.getvalue().strip()
        assert line.startswith("\x1b[36m")
        assert line.endswith("\x1b[0m")


class TestRequestLogger:
    def test_request_id_on_every_record(self, logs):
        log = create_request_logger("req-1", ip="203.0.113.5")
        log.request_start("GET", "/api/jobs")
        log.info("work")

        assert all(r["requestId"] == "req-1" for r in logs.out)
        assert logs.out[0]["ip"] == "203.0.113.5"

    def test_generated_request_id(self):
        log = create_request_logger()
        assert len(log.request_id) == 36

    def test_request_end_severity_follows_status(self, logs):
        log = RequestLogger("req-2")
        log.request_end("GET", "/api/jobs", 200, 12.3456)
        log.request_end("GET", "/api/jobs/9", 404, 3.0)
        log.request_end("POST", "/api/generate/resume", 503, 40.0)

        ok, missing = logs.out[-2], logs.out[-1]
        assert ok["level"] == "info"
        assert ok["durationMs"] == 12.35
        assert ok["statusClass"] == "2xx"
        assert missing["level"] == "warn"
        assert missing["statusClass"] == "4xx"

        failed = logs.err[-1]
        assert failed["level"] == "error"
        assert failed["status"] == 503
        assert failed["statusClass"] == "5xx"

    def test_set_context_applies_to_later_records_only(self, logs):
        log = RequestLogger("req-3")
        log.info("before")
        log.set_context(userId="u42", requestId="hijack")
        log.info("after")

        before, after = logs.out[-2], logs.out[-1]
        assert "userId" not in before
        assert after["userId"] == "u42"
        assert after["requestId"] == "req-3"

    def test_auth_event_failure_is_a_warning(self, logs):
        log = RequestLogger("req-4")
        log.auth_event("login", user_id="u1", success=False)

        record = logs.out[-1]
        assert record["message"] == "auth_login"
        assert record["level"] == "warn"
        assert record["success"] is False

    def test_db_operation_and_external_call(self, logs):
        log = RequestLogger("req-5")
        log.db_operation("select", "ai_artifacts", duration_ms=4.2)
        log.db_operation("insert", "ai_artifacts", error="duplicate key")
        log.external_call("openai", "chat", duration_ms=900.0, status=429)

        assert logs.out[0]["message"] == "db_operation"
        assert logs.out[0]["level"] == "debug"
        assert logs.err[-1]["error"] == "duplicate key"
        assert logs.out[-1]["level"] == "warn"
        assert logs.out[-1]["service"] == "openai"


class TestTimer:
    def test_end_reports_elapsed_and_performance(self, logs, clock):
        log = create_request_logger("req-6", clock=clock)
        timer = log.timer("parse_resume")
        clock.advance(250)
        timer.checkpoint("extracted")
        clock.advance(1_250)

        assert timer.end(pages=2) == 1_500

        checkpoint, end = logs.out[-2], logs.out[-1]
        assert checkpoint["message"] == "timer_checkpoint"
        assert checkpoint["level"] == "debug"
        assert checkpoint["elapsedMs"] == 250
        assert end["message"] == "timer_end"
        assert end["durationMs"] == 1_500
        assert end["performance"] == "normal"
        assert end["pages"] == 2

    def test_slow_operation(self, logs, clock):
        timer = create_request_logger("req-7", clock=clock).timer("generate")
        clock.advance(6_000)
        timer.end()

        assert logs.out[-1]["performance"] == "slow"

    def test_performance_boundaries(self):
        assert classify_performance(0) == "fast"
        assert classify_performance(999.9) == "fast"
        assert classify_performance(1_000) == "normal"
        assert classify_performance(4_999) == "normal"
        assert classify_performance(5_000) == "slow"


class TestConfigEvents:
    def test_missing_is_error_invalid_is_warning(self, logs):
        log_config_event("missing", "SUPABASE_URL")
        log_config_event("invalid", "ALLOW_DEV_AUTH", issue="enabled in production")
        log_config_event("loaded", "LOG_LEVEL", value="info")

        assert logs.err[-1]["variable"] == "SUPABASE_URL"
        assert logs.err[-1]["level"] == "error"
        invalid, loaded = logs.out[-2], logs.out[-1]
        assert invalid["level"] == "warn"
        assert invalid["status"] == "invalid"
        assert loaded["level"] == "info"
        assert loaded["message"] == "config"
