"""Caller-visible error types for the Gemini proxy."""

from __future__ import annotations

from typing import Any, Dict, Optional

from models import Failure, failure_http_status


class BrokerError(Exception):
    """Base error rendered as `{error, requestId, ...}` JSON."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message}

    def to_payload(self, request_id: str) -> Dict[str, Any]:
        body = self.payload()
        body["requestId"] = request_id
        return body


class ClientInputError(BrokerError):
    status_code = 400


class ConfigurationError(BrokerError):
    status_code = 500


class RateLimitedError(BrokerError):
    status_code = 429

    def __init__(self, retry_after_s: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_s = retry_after_s

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, "retry_after_seconds": self.retry_after_s}


class UpstreamError(BrokerError):
    """Every candidate failed; carries the last model and failure detail."""

    def __init__(self, failure: Failure, model_tried: Optional[str]) -> None:
        super().__init__("Upstream error", status_code=failure_http_status(failure))
        self.failure = failure
        self.model_tried = model_tried

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.model_tried:
            body["modelTried"] = self.model_tried
        body["upstream"] = {k: v for k, v in self.failure.detail.items() if v is not None}
        return body
