"""
Request orchestration: candidate fallback, strict recovery and auto-continuation.

All calls for one request are strictly sequential. Upstream failures travel as
AttemptOutcome values; only exhausting the candidate list raises UpstreamError.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from errors import UpstreamError
from models import (
    AttemptOutcome,
    ConversationTurn,
    Failure,
    GenerationRequest,
    GenerationResult,
    RequestContext,
    Success,
    TerminalFailure,
    merge_usage,
    strict_preferences,
)
from postprocess import TruncationPredicate, dedupe_continuation, looks_truncated
from prompts import continue_prompt
from retry import RetryController, budget_exhausted
from upstream import UpstreamClient

log = logging.getLogger("gemini_proxy")


class GenerationOrchestrator:
    def __init__(
        self,
        upstream: UpstreamClient,
        retry: RetryController,
        *,
        continue_margin_s: float = 2.5,
        is_truncated: TruncationPredicate = looks_truncated,
    ) -> None:
        self._upstream = upstream
        self._retry = retry
        self._continue_margin_s = continue_margin_s
        self._is_truncated = is_truncated

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        body: Dict[str, Any],
        ctx: RequestContext,
        include_raw: bool,
    ) -> AttemptOutcome:
        async def once(timeout_s: float) -> AttemptOutcome:
            return await self._upstream.generate(client, model_id, body, timeout_s, include_raw)

        return await self._retry.run(once, ctx, model_id=model_id)

    async def _strict_recovery(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        request: GenerationRequest,
        ctx: RequestContext,
    ) -> AttemptOutcome:
        """One extra call on the same model with lower-randomness preferences."""
        log.info("Strict recovery after empty/blocked req_id=%s model=%s", ctx.request_id, model_id)
        if ctx.expired():
            return budget_exhausted()
        body = request.with_preferences(strict_preferences()).to_wire()
        return await self._upstream.generate(client, model_id, body, ctx.remaining_s(), request.include_raw)

    async def generate(
        self,
        client: httpx.AsyncClient,
        request: GenerationRequest,
        ctx: RequestContext,
    ) -> GenerationResult:
        """Fallback across candidates, then auto-continue on the winner."""
        last_failure: Optional[Failure] = None
        last_model: Optional[str] = None
        body = request.to_wire()
        total = len(request.candidates)

        for i, model_id in enumerate(request.candidates, start=1):
            if ctx.expired():
                log.warning("Time budget exhausted before candidate %d/%d req_id=%s", i, total, ctx.request_id)
                break
            last_model = model_id
            log.info("Attempt candidate %d/%d -> %s req_id=%s", i, total, model_id, ctx.request_id)

            outcome = await self._attempt(client, model_id, body, ctx, request.include_raw)

            if (
                isinstance(outcome, TerminalFailure)
                and outcome.status_class == "empty_blocked"
                and request.structured
            ):
                recovered = await self._strict_recovery(client, model_id, request, ctx)
                if isinstance(recovered, Success):
                    log.info("Strict recovery succeeded req_id=%s model=%s", ctx.request_id, model_id)
                    return GenerationResult(text=recovered.text, model=model_id, usage=recovered.usage)
                outcome = recovered

            if isinstance(outcome, Success):
                return await self._continue(client, model_id, request, outcome, ctx)

            last_failure = outcome
            log.warning(
                "Candidate failed req_id=%s model=%s class=%s status=%s%s",
                ctx.request_id,
                model_id,
                outcome.status_class,
                outcome.status,
                "" if i == total else " (falling back)",
            )

        failure = last_failure if last_failure is not None else budget_exhausted()
        log.error("All candidates failed req_id=%s last_model=%s", ctx.request_id, last_model)
        raise UpstreamError(failure, last_model)

    async def _continue(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        request: GenerationRequest,
        first: Success,
        ctx: RequestContext,
    ) -> GenerationResult:
        """
        Extend a truncated answer on the same model.

        Stops when the text no longer looks truncated, the chunk cap is reached,
        or the remaining budget drops to the safety margin. A failed follow-up
        ends the loop and keeps what has been accumulated.
        """
        result = GenerationResult(text=first.text, model=model_id, usage=first.usage)
        turns = request.turns
        last_chunk = first.text

        while (
            request.long
            and result.chunks < request.max_chunks
            and self._is_truncated(result.text)
            and ctx.remaining_s() > self._continue_margin_s
        ):
            turns = turns + (
                ConversationTurn.text("assistant", last_chunk),
                ConversationTurn.text("user", continue_prompt(request.lang)),
            )
            log.info(
                "Auto-continue req_id=%s model=%s chunk=%d/%d",
                ctx.request_id,
                model_id,
                result.chunks + 1,
                request.max_chunks,
            )
            body = request.with_turns(turns).to_wire()
            nxt = await self._attempt(client, model_id, body, ctx, False)
            if not isinstance(nxt, Success):
                log.warning(
                    "Auto-continue stopped req_id=%s model=%s class=%s",
                    ctx.request_id,
                    model_id,
                    nxt.status_class,
                )
                break
            append = dedupe_continuation(result.text, nxt.text)
            if append:
                result.text += "\n" + append
            result.usage = merge_usage(result.usage, nxt.usage)
            result.chunks += 1
            last_chunk = nxt.text

        return result

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        request: GenerationRequest,
        ctx: RequestContext,
    ) -> Tuple[str, httpx.Response]:
        """Open an upstream stream on the first candidate that accepts it."""
        last_failure: Optional[Failure] = None
        last_model: Optional[str] = None
        body = request.to_wire()

        for model_id in request.candidates:
            if ctx.expired():
                break
            last_model = model_id

            async def once(timeout_s: float, model_id: str = model_id) -> AttemptOutcome:
                return await self._upstream.open_stream(client, model_id, body, timeout_s)

            outcome = await self._retry.run(once, ctx, model_id=model_id)
            if isinstance(outcome, Success):
                return model_id, outcome.stream
            last_failure = outcome
            log.warning(
                "Stream candidate failed req_id=%s model=%s class=%s status=%s",
                ctx.request_id,
                model_id,
                outcome.status_class,
                outcome.status,
            )

        failure = last_failure if last_failure is not None else budget_exhausted()
        raise UpstreamError(failure, last_model)
