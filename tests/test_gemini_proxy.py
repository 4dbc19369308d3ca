"""
End-to-end tests for the Gemini proxy FastAPI service.

Tests cover:
- Preflight, method and health endpoints
- Input validation (JSON, size, missing key) and rate limiting
- Fallback, JSON enforcement and language handling through the HTTP surface
- SSE streaming and error mapping
"""

import json
from contextlib import contextmanager
from dataclasses import replace
from unittest.mock import patch

import httpx
import pytest

import gemini_proxy_service as service
from prompts import GUARD_HEADER
from ratelimit import RateLimiter

ROUTE = "/api/gemini"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def client():
    """Create test client."""
    transport = httpx.ASGITransport(app=service.app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def fast_config():
    """Service config with a fixed pool and no backoff waits."""
    cfg = replace(
        service.config,
        gemini_api_key="test-key",
        model_pool=("P1", "P2"),
        base_backoff_s=0.0,
        backoff_jitter_s=0.0,
    )
    with patch("gemini_proxy_service.config", cfg):
        yield cfg


@pytest.fixture
def upstream(fast_config, fake_gemini):
    """Route the service's outbound calls to a scripted fake."""

    @contextmanager
    def _install(script):
        fake = fake_gemini(script)
        with patch("gemini_proxy_service._new_http_client", fake.client):
            yield fake

    return _install


def _events(body: str):
    out = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        out.append((lines["event"], lines["data"]))
    return out


# ============================================================================
# Surface Tests
# ============================================================================

class TestSurface:
    """Test routing, CORS and validation."""

    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_preflight(self, client):
        response = await client.options(ROUTE)
        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]

    async def test_trusted_origin_echoed(self, client):
        response = await client.options(ROUTE, headers={"Origin": "http://localhost:5173"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        response = await client.options(ROUTE, headers={"Origin": "https://evil.example"})
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_method_not_allowed(self, client, method):
        response = await client.request(method, ROUTE)
        assert response.status_code == 405
        assert response.json() == {"error": "Method Not Allowed"}

    @pytest.mark.parametrize("method", ["OPTIONS", "GET"])
    async def test_request_id_echoed_outside_post(self, client, method):
        response = await client.request(method, ROUTE, headers={"X-Request-ID": "pre-42"})
        assert response.headers["x-request-id"] == "pre-42"

    @pytest.mark.parametrize(
        "raw",
        [
            '{"prompt": "hello", "timeout_ms": 1e309}',
            '{"prompt": "hello", "max_chunks": 1e309}',
            '{"prompt": "hello", "timeout_ms": NaN}',
            '{"prompt": "hello", "max_chunks": -Infinity}',
        ],
    )
    async def test_non_finite_numbers_fall_back_to_defaults(self, client, upstream, raw):
        with upstream({"P1": ["ok"]}):
            response = await client.post(ROUTE, content=raw, headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "ok"
        assert data["requestId"] == response.headers["x-request-id"]

    def test_parse_body_clamps(self, fast_config):
        req = service.parse_body(
            {"timeout_ms": float("inf"), "max_chunks": float("nan")}, fast_config
        )
        assert req.timeout_ms == fast_config.default_timeout_ms
        assert req.max_chunks == fast_config.default_max_chunks

        req = service.parse_body({"timeout_ms": 10 ** 400, "max_chunks": 0}, fast_config)
        assert req.timeout_ms == fast_config.max_timeout_ms
        assert req.max_chunks == 1

    async def test_invalid_json(self, client, fast_config):
        response = await client.post(ROUTE, content="not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        data = response.json()
        assert "Invalid JSON" in data["error"]
        assert data["requestId"] == response.headers["x-request-id"]

    async def test_non_object_body(self, client, fast_config):
        response = await client.post(ROUTE, json=[1, 2])
        assert response.status_code == 400

    async def test_missing_api_key(self, client):
        with patch("gemini_proxy_service.config", replace(service.config, gemini_api_key="")):
            response = await client.post(ROUTE, json={"prompt": "hi"})
        assert response.status_code == 500
        assert "GEMINI_API_KEY" in response.json()["error"]

    async def test_request_too_large(self, client, fast_config):
        with patch("gemini_proxy_service.config", replace(fast_config, max_request_bytes=100)):
            response = await client.post(ROUTE, json={"prompt": "x" * 500})
        assert response.status_code == 413
        assert "Request too large" in response.json()["error"]

    async def test_rate_limited(self, client, fast_config):
        with patch("gemini_proxy_service.rate_limiter", RateLimiter(600, 1)):
            first = await client.post(ROUTE, content="{", headers={"Content-Type": "application/json"})
            second = await client.post(ROUTE, content="{", headers={"Content-Type": "application/json"})
        assert first.status_code == 400
        assert second.status_code == 429
        data = second.json()
        assert data["error"] == "Rate limit exceeded"
        assert 1 <= data["retry_after_seconds"] <= 600


# ============================================================================
# Generation Tests
# ============================================================================

class TestGeneration:
    """Test the non-streaming JSON path."""

    async def test_fallback_to_second_model(self, client, upstream):
        with upstream({"P1": [500], "P2": ["hi"]}) as fake:
            response = await client.post(ROUTE, json={"prompt": "hello", "model": "auto"})

        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "hi"
        assert data["model"] == "P2"
        assert data["lang"] == "en"
        assert data["requestId"] == response.headers["x-request-id"]
        assert isinstance(data["took_ms"], int)
        assert fake.calls == ["P1", "P1", "P1", "P2"]

    async def test_request_id_echoed(self, client, upstream):
        with upstream({"P1": ["ok"]}):
            response = await client.post(ROUTE, json={"prompt": "hello"}, headers={"X-Request-ID": "abc-123"})

        assert response.headers["x-request-id"] == "abc-123"
        assert response.json()["requestId"] == "abc-123"

    async def test_explicit_model_first(self, client, upstream):
        with upstream({"gemini-x": [404], "P1": ["ok"]}) as fake:
            response = await client.post(ROUTE, json={"prompt": "hello", "model": "gemini-x"})

        assert response.json()["model"] == "P1"
        assert fake.calls == ["gemini-x", "P1"]

    async def test_guard_and_system_instruction_sent(self, client, upstream):
        with upstream({"P1": ["ok"]}) as fake:
            await client.post(ROUTE, json={"prompt": "hello", "system": "You are terse."})

        body = fake.bodies[0]
        first_text = body["contents"][0]["parts"][0]["text"]
        assert GUARD_HEADER in first_text
        assert first_text.endswith("hello")
        assert body["systemInstruction"]["parts"][0]["text"] == "You are terse."
        assert body["generationConfig"]["temperature"] == 0.6

    async def test_arabic_detected(self, client, upstream):
        with upstream({"P1": ["أهلاً بك"]}):
            response = await client.post(ROUTE, json={"messages": [{"role": "user", "content": "مرحبا"}]})

        data = response.json()
        assert data["lang"] == "ar"
        assert data["text"] == "أهلاً بك"

    async def test_plan_mode_returns_compact_json(self, client, upstream):
        with upstream({"P1": ['```json\n{"steps": [1, 2]}\n```']}) as fake:
            response = await client.post(ROUTE, json={"prompt": "plan it", "mode": "plan"})

        data = response.json()
        assert json.loads(data["text"]) == {"steps": [1, 2]}
        assert "json_extraction_failed" not in data
        assert fake.bodies[0]["generationConfig"]["responseMimeType"] == "application/json"

    async def test_json_extraction_failure_flagged(self, client, upstream):
        with upstream({"P1": ["sorry, no json"]}):
            response = await client.post(ROUTE, json={"prompt": "x", "expect": "json"})

        data = response.json()
        assert data["text"] == "sorry, no json"
        assert data["json_extraction_failed"] is True

    async def test_usage_reported(self, client, upstream):
        from conftest import gemini_body

        usage = {"promptTokenCount": 1, "candidatesTokenCount": 2, "totalTokenCount": 3}
        with upstream({"P1": [gemini_body("ok", usage)]}):
            response = await client.post(ROUTE, json={"prompt": "x"})

        assert response.json()["usage"] == usage

    async def test_rate_limited_upstream_maps_to_429(self, client, upstream):
        with upstream({"P1": [429], "P2": [429]}):
            response = await client.post(ROUTE, json={"prompt": "x"})

        assert response.status_code == 429
        data = response.json()
        assert data["error"] == "Upstream error"
        assert data["modelTried"] == "P2"

    async def test_blocked_maps_to_502(self, client, upstream):
        blocked = {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}
        with upstream({"P1": [blocked], "P2": [blocked]}):
            response = await client.post(ROUTE, json={"prompt": "x"})

        assert response.status_code == 502
        assert response.json()["upstream"]["safety"] == {"blockReason": "SAFETY"}


# ============================================================================
# Streaming Tests
# ============================================================================

class TestStreaming:
    """Test the SSE path."""

    async def test_event_order(self, client, upstream):
        raw = httpx.Response(200, content=b'[{"candidates": []}\n,{"candidates": []}\n]')
        with upstream({"P1": [raw]}):
            response = await client.post(ROUTE, json={"prompt": "hello", "stream": True})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache, no-transform"
        events = _events(response.text)
        names = [name for name, _ in events]
        assert names[0] == "meta"
        assert names[-1] == "end"
        assert names.count("chunk") == 3
        meta = json.loads(events[0][1])
        assert meta["model"] == "P1"
        assert meta["requestId"] == response.headers["x-request-id"]

    async def test_stream_open_fallback(self, client, upstream):
        with upstream({"P1": [503], "P2": ["streamed"]}) as fake:
            response = await client.post(ROUTE, json={"prompt": "hello", "stream": True})

        assert json.loads(_events(response.text)[0][1])["model"] == "P2"
        assert fake.calls[-1] == "P2"

    async def test_all_candidates_fail_returns_json_error(self, client, upstream):
        with upstream({"P1": [400], "P2": [400]}):
            response = await client.post(ROUTE, json={"prompt": "hello", "stream": True})

        assert response.status_code == 400
        data = response.json()
        assert data["modelTried"] == "P2"
        assert data["requestId"]
