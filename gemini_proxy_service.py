"""
Gemini proxy service (FastAPI) -> Gemini generateContent as upstream.

This service provides:
- Ranked model pool with fallback to the next model
- Retries with exponential backoff + jitter
- Auto-continuation for long answers (no repetition)
- SSE streaming with heartbeats
- JSON enforcement for plan/qa/expect=json
- Guardrails, media sanitizing and per-client rate limiting

Endpoint:
  POST /api/gemini   (OPTIONS preflight -> 204)
"""

from __future__ import annotations

import contextlib
import logging
import math
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from config import AppConfig, load_config
from errors import BrokerError, ClientInputError, ConfigurationError, RateLimitedError
from logger import setup_logging
from models import (
    GenerationRequest,
    ModelChoice,
    ModelSelector,
    RequestContext,
    build_safety,
    new_request_id,
    parse_model_choice,
    tune_generation,
)
from normalizer import RequestNormalizer, message_text, sanitize_messages
from orchestrator import GenerationOrchestrator
from postprocess import finalize
from prompts import build_guardrails, choose_lang
from ratelimit import RateLimiter, client_key
from retry import RetryController, RetryPolicy
from sse_handler import SSE_HEADERS, SSE_MEDIA_TYPE, StreamRelay
from upstream import UpstreamClient
from utils import dump_config, load_env_files

ROUTE = "/api/gemini"
MODES = ("default", "qa", "plan", "image_brief")

load_env_files()

config = load_config()
config.validate(require_api_key=False)

log: logging.Logger = setup_logging(config)
dump_config(config)

rate_limiter = RateLimiter(config.rate_window_s, config.rate_max_requests)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return max(lo, min(hi, int(value)))


@dataclass(frozen=True)
class ProxyRequest:
    """Inbound body after defaults and clamping."""

    messages: List[Dict[str, Any]]
    prompt: str
    system: str
    model: ModelChoice
    mode: str
    force_lang: Optional[str]
    guard_level: str
    stream: bool
    long: bool
    max_chunks: int
    timeout_ms: int
    include_raw: bool
    expect: str

    def sample(self) -> str:
        """Text used for language detection."""
        if self.messages:
            return "\n".join(m.get("content") or "" for m in self.messages)[:4000]
        return self.prompt[:4000]


def parse_body(body: Any, cfg: AppConfig) -> ProxyRequest:
    if not isinstance(body, dict):
        raise ClientInputError("Invalid JSON body: expected object")

    messages = sanitize_messages(
        body.get("messages"),
        max_messages=cfg.max_messages,
        max_text_chars=cfg.max_text_chars,
        max_parts_per_message=cfg.max_parts_per_message,
    )
    mode = body.get("mode") if body.get("mode") in MODES else "default"
    force_lang = body.get("force_lang") if body.get("force_lang") in ("ar", "en") else None
    long = body.get("long", True)

    return ProxyRequest(
        messages=messages,
        prompt=message_text(body.get("prompt"))[:cfg.max_text_chars],
        system=body.get("system") if isinstance(body.get("system"), str) else "",
        model=parse_model_choice(body.get("model")),
        mode=mode,
        force_lang=force_lang,
        guard_level="relaxed" if body.get("guard_level") == "relaxed" else "strict",
        stream=body.get("stream") is True,
        long=long if isinstance(long, bool) else True,
        max_chunks=_clamp_int(body.get("max_chunks"), 1, cfg.max_chunks_ceiling, cfg.default_max_chunks),
        timeout_ms=_clamp_int(
            body.get("timeout_ms"), cfg.min_timeout_ms, cfg.max_timeout_ms, cfg.default_timeout_ms
        ),
        include_raw=body.get("include_raw") is True,
        expect="json" if body.get("expect") == "json" else "",
    )


def build_generation_request(req: ProxyRequest, cfg: AppConfig) -> GenerationRequest:
    lang = choose_lang(req.force_lang, req.sample())
    guard = build_guardrails(lang, req.guard_level, image_mode=req.mode == "image_brief")
    normalizer = RequestNormalizer(max_text_chars=cfg.max_text_chars, max_inline_bytes=cfg.max_inline_bytes)
    if req.messages:
        turns = normalizer.normalize(req.messages, guard, req.system)
    else:
        turns = normalizer.normalize_prompt(req.prompt, guard, req.system)

    return GenerationRequest(
        turns=tuple(turns),
        preferences=tune_generation(req.mode, req.expect),
        candidates=ModelSelector(cfg.model_pool).choose_candidates(req.model),
        safety=tuple(build_safety(req.guard_level)),
        system_instruction=req.system.strip() or None,
        mode=req.mode,
        expect=req.expect,
        lang=lang,
        long=req.long,
        max_chunks=req.max_chunks,
        include_raw=req.include_raw,
    )


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------

def allow_origin(origin: Optional[str], trusted: tuple) -> str:
    if not origin or origin == "*":
        return "*"
    if any(re.match(rx, origin, re.I) for rx in trusted):
        return origin
    return "*"


def request_id_for(request: Request) -> str:
    """Inbound X-Request-ID when present, otherwise a fresh id."""
    return (request.headers.get("x-request-id") or "").strip()[:64] or new_request_id()


def base_headers(request: Request, req_id: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": allow_origin(request.headers.get("origin"), config.trusted_origins),
        "Access-Control-Allow-Headers": "Content-Type, X-Request-ID",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "X-Request-ID": req_id,
        "Vary": "Origin",
    }


def _new_http_client() -> httpx.AsyncClient:
    proxy_url = UpstreamClient(config).get_proxy_url()
    return httpx.AsyncClient(timeout=config.max_timeout_ms / 1000, proxy=proxy_url)


def build_orchestrator() -> GenerationOrchestrator:
    retry = RetryController(RetryPolicy(config.max_tries, config.base_backoff_s, config.backoff_jitter_s))
    return GenerationOrchestrator(UpstreamClient(config), retry, continue_margin_s=config.continue_margin_s)


def _check_content_length(request: Request) -> None:
    """Basic request size guard (prevents trivial DoS via huge JSON bodies)."""
    cl = request.headers.get("content-length")
    if not cl:
        return
    try:
        n = int(cl)
    except ValueError:
        raise ClientInputError(f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        raise ClientInputError("Invalid Content-Length: must be non-negative")
    if n > config.max_request_bytes:
        raise BrokerError(f"Request too large: {n} bytes (max {config.max_request_bytes})", status_code=413)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for FastAPI application."""
    if not config.gemini_api_key:
        log.warning("GEMINI_API_KEY is not set; requests will fail with 500 until it is configured")
    log.info("Gemini proxy ready route=%s pool=%s", ROUTE, list(config.model_pool))
    yield
    log.info("Gemini proxy shutting down")


app = FastAPI(
    title="gemini-proxy-service",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    req_id = getattr(request.state, "request_id", None) or request_id_for(request)
    if exc.status_code >= 500:
        log.warning("Request failed req_id=%s status=%s error=%s", req_id, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(req_id),
        headers=base_headers(request, req_id),
    )


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.options(ROUTE)
async def gemini_preflight(request: Request) -> Response:
    """CORS preflight."""
    return Response(status_code=204, headers=base_headers(request, request_id_for(request)))


@app.api_route(ROUTE, methods=["GET", "PUT", "PATCH", "DELETE"])
async def gemini_method_not_allowed(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "Method Not Allowed"},
        headers=base_headers(request, request_id_for(request)),
    )


@app.post(ROUTE)
async def gemini_proxy(request: Request) -> Response:
    """Handle generation requests (JSON or SSE)."""
    req_id = request_id_for(request)
    request.state.request_id = req_id
    headers = base_headers(request, req_id)

    client_ip = request.client.host if request.client else None
    retry_after = rate_limiter.check(client_key(request.headers, client_ip))
    if retry_after is not None:
        log.info("Rate limited req_id=%s from=%s retry_after=%ss", req_id, client_ip, retry_after)
        raise RateLimitedError(retry_after)

    if not config.gemini_api_key:
        raise ConfigurationError("Missing GEMINI_API_KEY")

    _check_content_length(request)
    try:
        body = await request.json()
    except ValueError:
        raise ClientInputError("Invalid JSON body")

    req = parse_body(body, config)
    gen_request = build_generation_request(req, config)
    ctx = RequestContext.start(req.timeout_ms / 1000, request_id=req_id)

    log.info(
        "Incoming req_id=%s from=%s model=%s mode=%s lang=%s stream=%s turns=%d timeout_ms=%d",
        req_id,
        client_ip,
        gen_request.candidates[0],
        req.mode,
        gen_request.lang,
        req.stream,
        len(gen_request.turns),
        req.timeout_ms,
    )

    client = _new_http_client()
    orchestrator = build_orchestrator()

    if req.stream:
        try:
            model_id, resp = await orchestrator.open_stream(client, gen_request, ctx)
        except BrokerError:
            with contextlib.suppress(Exception):
                await client.aclose()
            raise

        async def close_upstream() -> None:
            await resp.aclose()
            await client.aclose()

        relay = StreamRelay(config.stream_ping_s)
        return StreamingResponse(
            relay.relay(
                resp.aiter_bytes(),
                ctx=ctx,
                model_id=model_id,
                lang=gen_request.lang,
                on_close=close_upstream,
            ),
            media_type=SSE_MEDIA_TYPE,
            headers={**headers, **SSE_HEADERS},
        )

    try:
        result = await orchestrator.generate(client, gen_request, ctx)
    finally:
        with contextlib.suppress(Exception):
            await client.aclose()

    text, extraction_failed = finalize(result.text, gen_request.lang, req.expect, req.mode)
    payload: Dict[str, Any] = {
        "text": text,
        "model": result.model,
        "lang": gen_request.lang,
        "requestId": req_id,
        "took_ms": ctx.elapsed_ms(),
    }
    if result.usage:
        payload["usage"] = result.usage
    if extraction_failed:
        payload["json_extraction_failed"] = True
    log.info(
        "Completed req_id=%s model=%s chunks=%d ms=%d",
        req_id,
        result.model,
        result.chunks,
        payload["took_ms"],
    )
    return JSONResponse(payload, headers=headers)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
