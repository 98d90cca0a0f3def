"""Tests for structured logging and request_id propagation."""

import json
import logging

from researchhub.core.logging import (
    JsonFormatter,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
)


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="researchhub"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_log_event_binds_context_and_truncates(caplog):
    token = request_id_ctx_var.set("rid-log-1")
    try:
        with caplog.at_level(logging.INFO, logger="researchhub"):
            log_event("info", "points.assigned", user_id="u1", event_type="points.assigned", extra={"reason": "x" * 600})
    finally:
        request_id_ctx_var.reset(token)

    record = next(r for r in caplog.records if r.getMessage() == "points.assigned")
    assert record.request_id == "rid-log-1"
    assert record.user_id == "u1"
    assert record.reason.endswith("...<truncated>")
    assert len(record.reason) < 600


def test_json_formatter_keeps_event_fields():
    record = logging.LogRecord("researchhub", logging.WARNING, __file__, 1, "plan.limit_exceeded", None, None)
    record.request_id = "rid-2"
    record.user_id = "r1"
    record.error_code = "plan_limit_exceeded"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "plan.limit_exceeded"
    assert payload["level"] == "WARNING"
    assert payload["request_id"] == "rid-2"
    assert payload["user_id"] == "r1"
    assert payload["error_code"] == "plan_limit_exceeded"
    assert payload["timestamp"].endswith("Z")


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(3) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"
