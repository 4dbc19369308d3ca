"""Upstream Gemini API communication: one network call per invocation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import AppConfig
from models import AttemptOutcome, RetryableFailure, Success, TerminalFailure

log = logging.getLogger("gemini_proxy")


def _safe_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def collect_upstream(status: int, data: Any, raw_text: str, include_raw: bool) -> Dict[str, Any]:
    """Shape a rejected upstream response into error detail."""
    message = ""
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            message = str(err["message"])
        elif data.get("message"):
            message = str(data["message"])
    detail: Dict[str, Any] = {
        "error": "Upstream rejected",
        "status": status,
        "message": message or str(raw_text)[:1000],
    }
    if include_raw:
        detail["raw"] = data
    return detail


def classify_status(status: int, detail: Dict[str, Any]) -> AttemptOutcome:
    if status == 429:
        return RetryableFailure("rate_limited", detail, status)
    if 500 <= status <= 599:
        return RetryableFailure("server_error", detail, status)
    return TerminalFailure("client_error", detail, status)


def _first_candidate(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    candidates = data.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return {}


def extract_text(data: Any) -> str:
    """Join the first candidate's text parts in order, newline-separated, trimmed."""
    content = _first_candidate(data).get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    texts = [str(p.get("text") or "") for p in parts if isinstance(p, dict)]
    return "\n".join(texts).strip()


def extract_usage(data: Any) -> Optional[Dict[str, int]]:
    meta = data.get("usageMetadata") if isinstance(data, dict) else None
    if not isinstance(meta, dict):
        return None
    return {
        "promptTokenCount": meta.get("promptTokenCount"),
        "candidatesTokenCount": meta.get("candidatesTokenCount"),
        "totalTokenCount": meta.get("totalTokenCount"),
    }


def network_failure(exc: BaseException) -> RetryableFailure:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return RetryableFailure("timeout", {"error": "Network/timeout", "details": "upstream call exceeded time budget"})
    return RetryableFailure("network", {"error": "Network/timeout", "details": f"{type(exc).__name__}: {exc}"})


class UpstreamClient:
    """Handle communication with the Gemini generateContent endpoints."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        Returns HTTPS proxy if set (preferred for HTTPS API calls),
        otherwise HTTP proxy if set, or None if no proxy configured.
        """
        if self._config.https_proxy:
            log.debug("HTTPS proxy configured: %s", self._config.https_proxy)
            return self._config.https_proxy
        if self._config.http_proxy:
            log.debug("HTTP proxy configured: %s", self._config.http_proxy)
            return self._config.http_proxy
        return None

    def model_url(self, model_id: str, stream: bool) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self._config.gemini_base_url}/{quote(model_id, safe='')}:{method}"

    def _build_request(
        self, client: httpx.AsyncClient, model_id: str, body: Dict[str, Any], stream: bool, timeout_s: float
    ) -> httpx.Request:
        return client.build_request(
            "POST",
            self.model_url(model_id, stream),
            params={"key": self._config.gemini_api_key},
            headers=self.get_headers(),
            json=body,
            timeout=httpx.Timeout(timeout_s),
        )

    async def generate(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        body: Dict[str, Any],
        timeout_s: float,
        include_raw: bool = False,
    ) -> AttemptOutcome:
        """Unary generateContent call, classified into an attempt outcome."""
        t0 = time.time()
        try:
            req = self._build_request(client, model_id, body, False, timeout_s)
            resp = await asyncio.wait_for(client.send(req), timeout=timeout_s)
            raw_text = resp.text
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            log.warning("Upstream call failed model=%s err=%s", model_id, type(e).__name__)
            return network_failure(e)

        dt = (time.time() - t0) * 1000
        log.info("Upstream generate model=%s status=%s ms=%.1f", model_id, resp.status_code, dt)

        data = _safe_json(raw_text)
        if not resp.is_success:
            log.warning("Upstream generate error model=%s status=%s", model_id, resp.status_code)
            return classify_status(resp.status_code, collect_upstream(resp.status_code, data, raw_text, include_raw))

        text = extract_text(data)
        if not text:
            safety = data.get("promptFeedback") if isinstance(data, dict) else None
            safety = safety or _first_candidate(data).get("safetyRatings")
            detail: Dict[str, Any] = {"error": "Empty/blocked response", "safety": safety}
            if include_raw:
                detail["raw"] = data
            return TerminalFailure("empty_blocked", detail, resp.status_code)

        return Success(text=text, usage=extract_usage(data))

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        body: Dict[str, Any],
        timeout_s: float,
    ) -> AttemptOutcome:
        """
        streamGenerateContent call. On success the response is left open and
        returned in Success.stream; the caller owns closing it.
        """
        t0 = time.time()
        try:
            req = self._build_request(client, model_id, body, True, timeout_s)
            resp = await asyncio.wait_for(client.send(req, stream=True), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            log.warning("Upstream stream open failed model=%s err=%s", model_id, type(e).__name__)
            return network_failure(e)

        dt = (time.time() - t0) * 1000
        log.info("Upstream stream model=%s status=%s ms=%.1f", model_id, resp.status_code, dt)

        if not resp.is_success:
            snippet = await self.read_error_snippet(resp)
            await resp.aclose()
            return classify_status(resp.status_code, collect_upstream(resp.status_code, _safe_json(snippet), snippet, False))

        return Success(stream=resp)

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
