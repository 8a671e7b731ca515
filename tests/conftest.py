"""Pytest configuration and fixtures."""
import asyncio
import tempfile
from pathlib import Path

import pytest

from pipewright.executor import reset_stop_flag
from pipewright.pipeline.structures import RunContext
from pipewright.process import ProcessOutcome


class FakeRunner:
    """ProcessRunner double.

    ``outcomes`` maps a command (sequences joined with spaces) to an exit
    code, a ProcessOutcome, or a callable(command, env) returning either.
    Unknown commands succeed and echo themselves on stdout.
    """

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.calls: list[str] = []
        self.envs: list[dict] = []
        self.cwds: list[str | None] = []
        self.active = 0
        self.max_active = 0

    async def run(self, command, *, cwd=None, env=None, timeout=None, max_output_bytes=None):
        key = command if isinstance(command, str) else " ".join(command)
        self.calls.append(key)
        self.envs.append(dict(env or {}))
        self.cwds.append(cwd)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        outcome = self.outcomes.get(key, 0)
        if callable(outcome):
            outcome = outcome(key, env or {})
        if isinstance(outcome, ProcessOutcome):
            return outcome
        return ProcessOutcome(
            returncode=outcome,
            stdout=f"{key}\n",
            stderr="" if outcome == 0 else f"{key}: exit {outcome}\n",
            elapsed=self.delay,
        )


class FakeClock:
    """Manual clock; sleep() advances it instead of waiting."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context():
    """Run context on a feature branch."""
    return RunContext(job_name="api", branch="develop", build_number=7, commit="abc1234def")


@pytest.fixture
def main_context():
    return RunContext(job_name="api", branch="main", build_number=8, commit="0123456789")


@pytest.fixture
def project_dir():
    """Empty project directory with no config."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def clean_stop_flag():
    reset_stop_flag()
    yield
    reset_stop_flag()
