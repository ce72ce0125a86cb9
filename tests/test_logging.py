"""
test_logging.py — Log formatting and request context tests.

Covers:
    • JSON lines carry request fields and dispatch extras
    • Console lines tag the request, actor and alert
    • The middleware binds context per request; release restores the outer one

Run with:
    pytest tests/test_logging.py -v
"""

from __future__ import annotations

import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.alerting.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    bind_request_context,
    get_request_context,
    release_request_context,
)
from backend.alerting.core.middleware import RequestLoggingMiddleware


def _make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "backend.alerting.alerts.dispatcher", logging.INFO, __file__, 10,
        "Batch %d delivered", (2,), None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_json_includes_context_and_extras(self):
        token = bind_request_context(request_id="req-1234", actor_id="ops-2", client_ip=None)
        try:
            line = JSONFormatter().format(_make_record(alert_id="A-1", batch_index=2))
        finally:
            release_request_context(token)

        entry = json.loads(line)
        assert entry["message"] == "Batch 2 delivered"
        assert entry["request"] == {"request_id": "req-1234", "actor_id": "ops-2"}
        assert (entry["alert_id"], entry["batch_index"]) == ("A-1", 2)
        assert "recipient_id" not in entry

    def test_json_without_request(self):
        entry = json.loads(JSONFormatter().format(_make_record()))
        assert "request" not in entry

    def test_pretty_tags_actor_and_alert(self):
        token = bind_request_context(request_id="abcdef123456", actor_id="ops-7")
        try:
            line = PrettyFormatter().format(_make_record(alert_id="ALERT-XYZ-9", batch_index=0))
        finally:
            release_request_context(token)

        assert "[abcdef12 · ops-7]" in line
        assert "<ALERT-XY>" in line
        assert "#0" in line
        assert line.endswith("backend.alerting.alerts.dispatcher: Batch 2 delivered")


class TestRequestMiddleware:

    @pytest.fixture
    def seen(self):
        return []

    @pytest.fixture
    def client(self, seen):
        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware)

        @app.get("/echo")
        async def echo():
            seen.append(dict(get_request_context()))
            return {"ok": True}

        with TestClient(app) as test_client:
            yield test_client

    def test_request_id_and_actor_bound(self, client, seen):
        response = client.get("/echo", headers={"X-Request-ID": "req-42", "X-Actor-Id": "ops-5"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.headers["X-Process-Time"].endswith("ms")
        assert seen[0]["request_id"] == "req-42"
        assert seen[0]["actor_id"] == "ops-5"
        assert seen[0]["endpoint"] == "/echo"

    def test_generated_request_id(self, client, seen):
        response = client.get("/echo")
        assert len(response.headers["X-Request-ID"]) == 16
        assert "actor_id" not in seen[0]

    def test_each_request_gets_its_own_context(self, client, seen):
        client.get("/echo", headers={"X-Actor-Id": "ops-5"})
        client.get("/echo")
        assert seen[0]["actor_id"] == "ops-5"
        assert "actor_id" not in seen[1]


class TestContextBinding:

    def test_release_restores_previous(self):
        outer = bind_request_context(request_id="outer")
        inner = bind_request_context(request_id="inner")
        release_request_context(inner)
        assert get_request_context() == {"request_id": "outer"}
        release_request_context(outer)
        assert get_request_context() == {}
