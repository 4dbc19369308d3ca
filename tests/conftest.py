"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Fake upstream helpers built on httpx.MockTransport
- Test environment setup
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("LOG_PATH", "/tmp/gemini_proxy_test.log")
os.environ.setdefault("MODEL_POOL", "P1,P2")

from config import AppConfig  # noqa: E402
from models import (  # noqa: E402
    ConversationTurn,
    GenerationRequest,
    RequestContext,
    tune_generation,
)


def gemini_body(text: str, usage: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """Minimal generateContent success payload."""
    body: Dict[str, Any] = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
    if usage is not None:
        body["usageMetadata"] = usage
    return body


def model_of(request: httpx.Request) -> str:
    """Model id from a .../models/<id>:<method> URL."""
    return request.url.path.rsplit("/", 1)[-1].split(":", 1)[0]


class FakeGemini:
    """Scripted upstream: per-model queues of responses, with a call log."""

    def __init__(self, script: Dict[str, List[Any]]) -> None:
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: List[str] = []
        self.bodies: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        model = model_of(request)
        self.calls.append(model)
        self.bodies.append(json.loads(request.content or b"{}"))
        queue = self.script.get(model) or []
        item = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else 404)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        if isinstance(item, int):
            return httpx.Response(item, json={"error": {"message": f"status {item}"}})
        if isinstance(item, str):
            return httpx.Response(200, json=gemini_body(item))
        return httpx.Response(200, json=item)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def fake_gemini() -> Callable[[Dict[str, List[Any]]], FakeGemini]:
    return FakeGemini


@pytest.fixture
def test_config() -> AppConfig:
    """Create test configuration."""
    return AppConfig(
        gemini_base_url="https://gemini.test/v1beta/models",
        gemini_api_key="test-key",
        model_pool=("P1", "P2"),
        default_timeout_ms=28_000,
        min_timeout_ms=1_000,
        max_timeout_ms=29_000,
        max_tries=3,
        base_backoff_s=0.65,
        backoff_jitter_s=0.4,
        continue_margin_s=2.5,
        default_max_chunks=4,
        max_chunks_ceiling=12,
        stream_ping_s=5.0,
        max_messages=64,
        max_parts_per_message=16,
        max_text_chars=24_000,
        max_inline_bytes=15 * 1024 * 1024,
        rate_window_s=600.0,
        rate_max_requests=60,
        trusted_origins=(r"^https?://localhost(?::\d+)?$",),
        http_proxy="",
        https_proxy="",
        port=8000,
        log_level="INFO",
        max_request_bytes=2_000_000,
        log_path="/tmp/gemini_proxy_test.log",
        log_color=False,
        log_max_bytes=1_048_576,
        log_backup_count=3,
        user_agent="test-agent",
    )


@pytest.fixture
def make_request() -> Callable[..., GenerationRequest]:
    def _make(candidates=("P1", "P2"), mode="default", expect="", **kw: Any) -> GenerationRequest:
        return GenerationRequest(
            turns=(ConversationTurn.text("user", "hello"),),
            preferences=tune_generation(mode, expect),
            candidates=tuple(candidates),
            mode=mode,
            expect=expect,
            **kw,
        )

    return _make


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext.start(28.0, request_id="TESTREQ")


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset the process-wide rate limiter between tests to avoid order coupling."""
    import gemini_proxy_service

    gemini_proxy_service.rate_limiter.reset()
    yield
    gemini_proxy_service.rate_limiter.reset()
