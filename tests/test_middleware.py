"""
Unit tests for middleware — RequestIDMiddleware and RequestTimingMiddleware —
and the logging helpers that consume the request id.

Uses httpx.AsyncClient against a lightweight FastAPI test app to exercise
both middleware classes through their full dispatch cycle.
"""

import json
import logging
import uuid

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from tradefin.core.logging import JSONFormatter, RequestIdFilter, request_id_ctx
from tradefin.middleware import REQUEST_ID_HEADER, RequestIDMiddleware, RequestTimingMiddleware


def _make_test_app() -> FastAPI:
    """Create a minimal FastAPI app with both middleware classes."""
    app = FastAPI()
    app.add_middleware(RequestTimingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/test")
    async def test_endpoint():
        return {"request_id": request_id_ctx.get()}

    return app


@pytest.fixture()
def test_app():
    return _make_test_app()


async def _get(app: FastAPI, **kwargs):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get("/test", **kwargs)


# ────────────────────────────────────────────────────────────────────────────
# RequestIDMiddleware
# ────────────────────────────────────────────────────────────────────────────


class TestRequestIDMiddleware:
    """Tests for X-Request-ID header injection and the logging context."""

    @pytest.mark.asyncio
    async def test_generates_request_id_when_absent(self, test_app):
        resp = await _get(test_app)

        request_id = resp.headers[REQUEST_ID_HEADER]
        uuid.UUID(request_id)  # raises if invalid

    @pytest.mark.asyncio
    async def test_honours_existing_request_id(self, test_app):
        resp = await _get(test_app, headers={REQUEST_ID_HEADER: "trace-12345"})
        assert resp.headers[REQUEST_ID_HEADER] == "trace-12345"

    @pytest.mark.asyncio
    async def test_request_id_visible_to_handler(self, test_app):
        resp = await _get(test_app, headers={REQUEST_ID_HEADER: "trace-abc"})
        assert resp.json() == {"request_id": "trace-abc"}

    @pytest.mark.asyncio
    async def test_context_reset_after_request(self, test_app):
        await _get(test_app, headers={REQUEST_ID_HEADER: "trace-abc"})
        assert request_id_ctx.get() is None


# ────────────────────────────────────────────────────────────────────────────
# RequestTimingMiddleware
# ────────────────────────────────────────────────────────────────────────────


class TestRequestTimingMiddleware:
    """Tests for X-Process-Time header injection."""

    @pytest.mark.asyncio
    async def test_adds_process_time_header(self, test_app):
        resp = await _get(test_app)

        process_time = resp.headers["X-Process-Time"]
        assert process_time.endswith("ms")
        assert float(process_time.replace("ms", "")) >= 0


# ────────────────────────────────────────────────────────────────────────────
# Logging helpers
# ────────────────────────────────────────────────────────────────────────────


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("tradefin.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLoggingHelpers:
    def test_filter_stamps_current_request_id(self):
        token = request_id_ctx.set("req-1")
        try:
            record = _record()
            assert RequestIdFilter().filter(record) is True
        finally:
            request_id_ctx.reset(token)
        assert record.request_id == "req-1"

    def test_json_formatter_includes_extras(self):
        record = _record(request_id="req-2", invoice_id=7, investor="0xA")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "hello x"
        assert entry["request_id"] == "req-2"
        assert entry["invoice_id"] == 7
        assert entry["investor"] == "0xA"
        assert "status_code" not in entry
