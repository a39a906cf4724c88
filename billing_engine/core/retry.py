"""
Caller-side retry policy.

Adapters never retry. Lifecycle operations wrap provider calls with
``call_processor`` (bounded timeout + exponential backoff on transient
failures only) and local writes that follow a successful provider call with
``reconcile_write``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from billing_engine.core.errors import StoreWriteError
from billing_engine.features.billing.provider import ProcessorTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout: float = 20.0

    def backoff(self, attempt: int) -> float:
        """Exponential backoff for the given zero-based attempt, capped."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.PROCESSOR_MAX_ATTEMPTS,
            base_delay=cfg.PROCESSOR_BACKOFF_BASE_SECONDS,
            max_delay=cfg.PROCESSOR_BACKOFF_MAX_SECONDS,
            timeout=cfg.PROCESSOR_TIMEOUT_SECONDS,
        )


async def call_processor(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run a provider call with a bounded timeout and transient-only retries.

    A timeout counts as a ``ProcessorTransientError``, never as success.
    Auth and validation errors propagate on the first attempt.
    """
    attempts = max(1, policy.max_attempts)
    last_error = ProcessorTransientError(f"{operation} was not attempted")
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(call(), timeout=policy.timeout)
        except asyncio.TimeoutError:
            last_error = ProcessorTransientError(f"{operation} timed out after {policy.timeout}s")
        except ProcessorTransientError as exc:
            last_error = exc

        if attempt + 1 < attempts:
            delay = policy.backoff(attempt)
            logger.warning(
                "[billing] transient processor failure, retrying",
                extra={"operation": operation, "attempt": attempt + 1, "delay": delay, "error": str(last_error)},
            )
            await sleep(delay)

    logger.error(
        "[billing] processor call exhausted retries",
        extra={"operation": operation, "attempts": attempts, "error": str(last_error)},
    )
    raise last_error


async def reconcile_write(
    write: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 5,
    base_delay: float = 0.2,
    pending_fields: Optional[dict] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Retry a local write that must land because the provider already moved.

    Exhaustion is logged loudly and surfaced as ``StoreWriteError``; the
    provider-side action is never reversed here.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(max_attempts):
        try:
            return write()
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "[billing] local write failed after provider success, retrying",
                extra={"operation": operation, "attempt": attempt + 1, "error": str(exc)},
            )
            if attempt + 1 < max_attempts:
                await sleep(base_delay * (2 ** attempt))

    logger.error(
        "[billing] state_divergence: provider succeeded but local write failed",
        extra={"operation": operation, "attempts": max_attempts, "pending_fields": pending_fields, "error": str(last_exc)},
    )
    raise StoreWriteError(
        f"{operation}: local write failed after {max_attempts} attempts: {last_exc}",
        operation=operation,
        pending_fields=pending_fields,
    ) from last_exc
