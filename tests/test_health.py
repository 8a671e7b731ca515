"""Tests for readiness polling."""

import asyncio

import httpx
import pytest

from pipewright.health import HealthPoller, HttpProbe


class CountingProbe:
    def __init__(self, succeed_on: int | None = None, error: Exception | None = None):
        self.calls = 0
        self.succeed_on = succeed_on
        self.error = error

    async def __call__(self) -> bool:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.succeed_on is not None and self.calls >= self.succeed_on


class TestHealthPoller:
    """Deadline-bounded polling driven by a fake clock."""

    def test_always_failing_gives_up_at_deadline(self, clock):
        probe = CountingProbe()
        poller = HealthPoller(clock=clock, sleep=clock.sleep)

        assert asyncio.run(poller.poll(probe, timeout=5, interval=1)) is False
        assert clock.now == 5
        assert probe.calls >= 5

    def test_zero_timeout_never_probes(self, clock):
        probe = CountingProbe(succeed_on=1)
        poller = HealthPoller(clock=clock, sleep=clock.sleep)

        assert asyncio.run(poller.poll(probe, timeout=0, interval=1)) is False
        assert probe.calls == 0
        assert clock.now == 0

    def test_succeeds_on_later_attempt(self, clock):
        probe = CountingProbe(succeed_on=3)
        poller = HealthPoller(clock=clock, sleep=clock.sleep)

        assert asyncio.run(poller.poll(probe, timeout=10, interval=2)) is True
        assert probe.calls == 3
        assert clock.now == 4

    def test_probe_errors_are_transient(self, clock):
        probe = CountingProbe(error=httpx.ConnectError("refused"))
        poller = HealthPoller(clock=clock, sleep=clock.sleep)

        assert asyncio.run(poller.poll(probe, timeout=3, interval=1)) is False
        assert probe.calls == 3

    def test_last_sleep_is_clipped_to_deadline(self, clock):
        probe = CountingProbe()
        poller = HealthPoller(clock=clock, sleep=clock.sleep)

        asyncio.run(poller.poll(probe, timeout=5, interval=2))
        assert clock.now == 5
        assert probe.calls == 3

    @pytest.mark.parametrize("timeout", [None, -1])
    def test_deadline_is_mandatory(self, clock, timeout):
        poller = HealthPoller(clock=clock, sleep=clock.sleep)
        with pytest.raises(ValueError):
            asyncio.run(poller.poll(CountingProbe(), timeout=timeout, interval=1))

    def test_interval_must_be_positive(self, clock):
        poller = HealthPoller(clock=clock, sleep=clock.sleep)
        with pytest.raises(ValueError):
            asyncio.run(poller.poll(CountingProbe(), timeout=5, interval=0))


class TestHttpProbe:
    """HTTP probe against httpx.MockTransport."""

    @staticmethod
    def client_for(status: int, body: str) -> httpx.AsyncClient:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, text=body)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_ok_body(self):
        probe = HttpProbe("http://svc/health", "ok", client=self.client_for(200, '{"status":"ok"}'))
        assert asyncio.run(probe()) is True

    def test_missing_token(self):
        probe = HttpProbe("http://svc/health", "ok", client=self.client_for(200, '{"status":"starting"}'))
        assert asyncio.run(probe()) is False

    def test_error_status(self):
        probe = HttpProbe("http://svc/health", "ok", client=self.client_for(503, "ok"))
        assert asyncio.run(probe()) is False
