"""Readiness detection for started resources.

The problem: a hypervisor reporting "running" doesn't mean the container is
reachable. Its init system still has to bring up networking and sshd.

Solution: poll a network endpoint on the resource at a fixed interval, for a
bounded number of attempts. `wait_ready()` never loops forever.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from provisioner.config import settings
from provisioner.metrics import readiness_timeouts
from provisioner.state import ProbeOutcome

logger = logging.getLogger(__name__)


class ReadinessProbe(ABC):
    """Base class for readiness probes."""

    @abstractmethod
    async def check(self, address: str, port: int) -> bool:
        """Make one attempt. Return True if the endpoint accepted it."""
        pass


class NoopProbe(ReadinessProbe):
    """Always ready. Used when probing is disabled."""

    async def check(self, address: str, port: int) -> bool:
        return True


class TcpProbe(ReadinessProbe):
    """Ready once a raw TCP connection is accepted."""

    def __init__(self, connect_timeout: float | None = None):
        self.connect_timeout = connect_timeout or settings.readiness_connect_timeout

    async def check(self, address: str, port: int) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"TCP probe {address}:{port} not ready: {e!r}")
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class HttpProbe(ReadinessProbe):
    """Ready once GET http://address:port/path answers with 2xx."""

    def __init__(self, path: str | None = None, connect_timeout: float | None = None):
        self.path = path or settings.readiness_path
        if not self.path.startswith("/"):
            self.path = f"/{self.path}"
        self.connect_timeout = connect_timeout or settings.readiness_connect_timeout

    async def check(self, address: str, port: int) -> bool:
        url = f"http://{address}:{port}{self.path}"
        try:
            async with httpx.AsyncClient(timeout=self.connect_timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug(f"HTTP probe {url} not ready: {e!r}")
            return False
        return response.is_success


def get_probe(kind: str | None = None) -> ReadinessProbe:
    """Build the probe named by `kind` (defaults to settings.readiness_probe)."""
    kind = (kind or settings.readiness_probe).lower()
    if kind == "tcp":
        return TcpProbe()
    if kind == "http":
        return HttpProbe()
    if kind in ("none", "noop"):
        return NoopProbe()
    raise ValueError(f"Unknown readiness probe: {kind}")


async def _check_once(probe: ReadinessProbe, address: str, port: int, budget: float) -> bool:
    """Run one check, treating a check slower than `budget` as not ready."""
    if budget <= 0:
        return await probe.check(address, port)
    try:
        return await asyncio.wait_for(probe.check(address, port), timeout=budget)
    except asyncio.TimeoutError:
        return False


async def wait_ready(
    address: str,
    port: int,
    interval: float | None = None,
    max_attempts: int | None = None,
    probe: ReadinessProbe | None = None,
) -> ProbeOutcome:
    """Poll until the endpoint is reachable or attempts run out.

    Makes at most `max_attempts` checks spaced `interval` seconds apart, with
    no sleep after the final check.
    """
    if interval is None:
        interval = settings.readiness_interval
    if max_attempts is None:
        max_attempts = settings.readiness_max_attempts
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    probe = probe or get_probe()
    loop = asyncio.get_running_loop()

    for attempt in range(1, max_attempts + 1):
        started = loop.time()
        if await _check_once(probe, address, port, interval):
            logger.info(
                f"{address}:{port} ready after {attempt} attempt(s)",
                extra={"event": "readiness_ready", "address": address, "port": port},
            )
            return ProbeOutcome.READY
        if attempt < max_attempts:
            # Attempts start one interval apart regardless of how long a check took
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    readiness_timeouts.inc()
    logger.warning(
        f"{address}:{port} not ready after {max_attempts} attempts",
        extra={"event": "readiness_timeout", "address": address, "port": port},
    )
    return ProbeOutcome.TIMED_OUT
