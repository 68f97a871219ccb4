"""Per-target deadline for fleet runs.

`with_timeout()` bounds one reconciliation in the fleet driver and logs the
target that overran.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(aw: Awaitable[T], timeout: float, description: str = "operation") -> T:
    """Await `aw` for at most `timeout` seconds.

    On expiry the awaitable is cancelled, a warning naming `description` is
    logged and asyncio.TimeoutError is raised to the caller.
    """
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"{description} exceeded {timeout}s",
            extra={"event": "deadline_exceeded", "timeout": timeout},
        )
        raise
