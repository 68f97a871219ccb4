"""Capped exponential backoff for transient hypervisor errors."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from provisioner.config import settings
from provisioner.errors import TransientApiError
from provisioner.metrics import hypervisor_retries

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float | None = None, cap: float | None = None) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    if base is None:
        base = settings.retry_backoff_base
    if cap is None:
        cap = settings.retry_backoff_max
    return min(base * (2 ** attempt), cap)


async def with_retry(
    func: Callable[..., Any],
    *args,
    max_attempts: int | None = None,
    operation: str = "request",
    **kwargs,
) -> Any:
    """Execute an async function, retrying TransientApiError with backoff.

    Any other exception (FatalApiError included) propagates on the first
    occurrence. Cancellation interrupts the backoff sleep immediately.
    """
    if max_attempts is None:
        max_attempts = settings.retry_max_attempts
    max_attempts = max(1, max_attempts)

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except TransientApiError as e:
            if attempt + 1 >= max_attempts:
                logger.error(
                    f"{operation} failed after {max_attempts} attempts: {e.message}",
                    extra={"event": "retry_exhausted", "operation": operation,
                           "resource_id": e.resource_id},
                )
                raise
            delay = backoff_delay(attempt)
            hypervisor_retries.labels(operation=operation).inc()
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{max_attempts}), "
                f"retrying in {delay:.1f}s: {e.message}",
                extra={"event": "retry", "operation": operation,
                       "resource_id": e.resource_id, "attempt": attempt + 1},
            )
            await asyncio.sleep(delay)

    # Loop always returns or raises
    raise AssertionError("unreachable")
