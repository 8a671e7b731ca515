"""Readiness polling with a mandatory deadline."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from pipewright.utils.logging import logger

Probe = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class HealthCheckSpec:
    """Health stage body: poll ``url`` until its body contains ``expect``."""

    url: str
    expect: str = "ok"
    timeout: float | None = None
    interval: float | None = None


class HttpProbe:
    """Readiness check over HTTP.

    Success means a 2xx response whose body contains the expected token.
    Transport errors propagate; the poller treats them as a failed attempt.
    """

    def __init__(
        self,
        url: str,
        expect: str = "ok",
        client: httpx.AsyncClient | None = None,
        request_timeout: float = 5.0,
    ):
        self.url = url
        self.expect = expect
        self.client = client
        self.request_timeout = request_timeout

    async def __call__(self) -> bool:
        if self.client is not None:
            resp = await self.client.get(self.url)
        else:
            async with httpx.AsyncClient(
                timeout=self.request_timeout, follow_redirects=True
            ) as client:
                resp = await client.get(self.url)

        if not resp.is_success:
            logger.debug("Probe {} returned HTTP {}", self.url, resp.status_code)
            return False
        return self.expect in resp.text


class HealthPoller:
    """Repeatedly invokes a probe until it succeeds or the deadline passes.

    ``clock`` and ``sleep`` are injectable so tests can drive time.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clock = clock
        self.sleep = sleep

    async def poll(self, probe: Probe, timeout: float, interval: float) -> bool:
        if timeout is None or timeout < 0:
            raise ValueError("health polling requires a non-negative timeout")
        if interval is None or interval <= 0:
            raise ValueError("health polling requires a positive interval")

        deadline = self.clock() + timeout
        attempts = 0

        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break

            attempts += 1
            try:
                # A hung probe must not outlive the deadline
                ok = await asyncio.wait_for(probe(), timeout=remaining)
            except Exception as e:
                logger.debug("Probe attempt {} failed: {}: {}", attempts, type(e).__name__, e)
                ok = False

            if ok:
                logger.info("Probe succeeded after {} attempt(s)", attempts)
                return True

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self.sleep(min(interval, remaining))

        logger.warning("Probe never succeeded within {}s ({} attempts)", timeout, attempts)
        return False
