"""
Retry/backoff policy shared by the fetch client and the uploader.

Delay before retry n (0-based) is ``d0 * 2**n * jitter``, jitter drawn uniformly from
[jitter_min, jitter_max], capped at ``d_max``. Only errors flagged ``retryable`` are
retried; the last error is re-raised once ``max_retries`` attempts are used up.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from vendor_ingestion.errors import PipelineError
from vendor_ingestion.pipeline_config import RetrySpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_min: float = 0.5
    jitter_max: float = 1.5

    @classmethod
    def from_spec(cls, spec: RetrySpec) -> "BackoffPolicy":
        return cls(
            max_retries=spec.max_retries,
            base_delay=spec.base_delay_seconds,
            max_delay=spec.max_delay_seconds,
            jitter_min=spec.jitter_min,
            jitter_max=spec.jitter_max,
        )

    def base_delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` ignoring jitter."""
        # 2**n overflows float math long before it matters; cap the exponent
        exponent = min(retry_number, 62)
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def delay_for(self, retry_number: int, rng: random.Random | None = None) -> float:
        jitter = (rng or random).uniform(self.jitter_min, self.jitter_max)
        exponent = min(retry_number, 62)
        return min(self.base_delay * (2 ** exponent) * jitter, self.max_delay)


class wait_exponential_jitter_capped(wait_base):
    """tenacity wait strategy applying BackoffPolicy.delay_for."""

    def __init__(self, policy: BackoffPolicy, rng: random.Random | None = None) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        # attempt_number is 1 after the first failure, i.e. before retry 0
        return self.policy.delay_for(retry_state.attempt_number - 1, self.rng)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.retryable


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def log_it(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed on attempt %s (%s: %s); retrying in %.2fs",
            operation,
            retry_state.attempt_number,
            getattr(exc, "kind", type(exc).__name__),
            exc,
            delay,
        )
    return log_it


def build_retrying(
    policy: BackoffPolicy,
    operation: str,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> AsyncRetrying:
    """
    A fresh AsyncRetrying per operation, so every page fetch and every upload has its
    own attempt counter. Usage:

        async for attempt in build_retrying(policy, "fetch"):
            with attempt:
                ...
    """
    return AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries),
        wait=wait_exponential_jitter_capped(policy, rng),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_before_sleep(operation),
        sleep=sleep,
        reraise=True,
    )
