"""Bounded retries with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from models import AttemptOutcome, RequestContext, RetryableFailure

log = logging.getLogger("gemini_proxy")

Attempt = Callable[[float], Awaitable[AttemptOutcome]]


@dataclass(frozen=True)
class RetryPolicy:
    max_tries: int = 3
    base_backoff_s: float = 0.65
    jitter_s: float = 0.4

    def delay_for(self, attempt: int, rand: float) -> float:
        """Delay after failed attempt `attempt` (1-based): base * 2^(attempt-1) + jitter."""
        return self.base_backoff_s * (2 ** (attempt - 1)) + rand * self.jitter_s


def budget_exhausted() -> RetryableFailure:
    return RetryableFailure("timeout", {"error": "Network/timeout", "details": "request time budget exhausted"})


class RetryController:
    """Run one candidate/call-shape up to `max_tries` times.

    Only retryable outcomes are retried. Terminal outcomes and the last
    retryable outcome are returned unchanged.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._rng = rng

    async def run(self, attempt: Attempt, ctx: RequestContext, *, model_id: str = "") -> AttemptOutcome:
        outcome: Optional[AttemptOutcome] = None
        for n in range(1, self.policy.max_tries + 1):
            remaining = ctx.remaining_s()
            if remaining <= 0:
                log.warning("Time budget exhausted before attempt %d req_id=%s model=%s", n, ctx.request_id, model_id)
                break

            outcome = await attempt(remaining)
            if not isinstance(outcome, RetryableFailure) or n >= self.policy.max_tries:
                break

            delay = self.policy.delay_for(n, self._rng())
            if delay >= ctx.remaining_s():
                log.warning(
                    "Skipping retry (backoff %.2fs exceeds budget) req_id=%s model=%s",
                    delay,
                    ctx.request_id,
                    model_id,
                )
                break
            log.info(
                "Retrying req_id=%s model=%s attempt=%d/%d class=%s delay=%.2fs",
                ctx.request_id,
                model_id,
                n + 1,
                self.policy.max_tries,
                outcome.status_class,
                delay,
            )
            await self._sleep(delay)
        return outcome if outcome is not None else budget_exhausted()
