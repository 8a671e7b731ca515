"""Stage admission gates.

A stage may carry any number of gates; all of them must pass for the stage
to run. Gates are evaluated in declaration order with approval last, so a
branch mismatch never prompts anyone.

Unknown gate kinds fail closed: the stage is skipped and the problem is
reported as a configuration error instead of being ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from string import Template
from typing import Any, Protocol

from pipewright.pipeline.structures import RunContext
from pipewright.utils.logging import logger


def template_variables(text: str) -> set[str]:
    """Names referenced as ${NAME} or $NAME in text."""
    return set(Template(text).get_identifiers())


def interpolate(text: str, variables: Mapping[str, str]) -> str:
    """Substitute ${NAME} references; unknown names are left as-is."""
    return Template(text).safe_substitute(variables)


@dataclass(frozen=True)
class BranchGate:
    """Admit only when the run's branch equals ``branch``."""

    branch: str

    def variables(self) -> set[str]:
        return template_variables(self.branch)

    def describe(self) -> str:
        return f"branch == {self.branch}"


@dataclass(frozen=True)
class AnyBranchGate:
    """Admit when the run's branch is one of ``branches``."""

    branches: tuple[str, ...]

    def variables(self) -> set[str]:
        names: set[str] = set()
        for branch in self.branches:
            names |= template_variables(branch)
        return names

    def describe(self) -> str:
        return f"branch in [{', '.join(self.branches)}]"


@dataclass(frozen=True)
class EnvironmentGate:
    """Admit when every named variable has the expected value."""

    expected: tuple[tuple[str, str], ...]

    def variables(self) -> set[str]:
        names = {name for name, _ in self.expected}
        for _, value in self.expected:
            names |= template_variables(value)
        return names

    def describe(self) -> str:
        return " and ".join(f"{name} == {value}" for name, value in self.expected)


@dataclass(frozen=True)
class ApprovalGate:
    """Suspend the stage until someone confirms it."""

    message: str

    def variables(self) -> set[str]:
        return template_variables(self.message)

    def describe(self) -> str:
        return f"approval: {self.message}"


@dataclass(frozen=True)
class UnrecognizedGate:
    """Placeholder for a gate kind this engine does not understand."""

    kind: str
    value: Any = None

    def variables(self) -> set[str]:
        return set()

    def describe(self) -> str:
        return f"unrecognized gate '{self.kind}'"


Gate = BranchGate | AnyBranchGate | EnvironmentGate | ApprovalGate | UnrecognizedGate


@dataclass(frozen=True)
class GateDecision:
    """Outcome of admitting one stage."""

    admitted: bool
    reason: str = ""
    config_error: str | None = None


class Approver(Protocol):
    """Capability that answers manual-approval requests."""

    async def request(self, stage: str, message: str) -> bool:
        """Return True to let the stage run, False to skip it."""
        ...


class PresetApprover:
    """Answers approvals from a fixed list (non-interactive CI mode)."""

    def __init__(self, approved: Iterable[str] = (), approve_all: bool = False):
        self.approved = frozenset(approved)
        self.approve_all = approve_all

    async def request(self, stage: str, message: str) -> bool:
        return self.approve_all or stage in self.approved


class ApprovalBroker:
    """Event-driven approvals.

    ``request()`` parks the stage on a future until ``approve()`` or
    ``reject()`` is called for it. Decisions delivered before the stage asks
    are remembered and consumed by the next request. Both methods must be
    called on the event loop thread; use ``loop.call_soon_threadsafe`` from
    anywhere else.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[bool]] = {}
        self._decided: dict[str, bool] = {}

    async def request(self, stage: str, message: str) -> bool:
        if stage in self._decided:
            return self._decided.pop(stage)

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[stage] = future
        try:
            return await future
        finally:
            self._pending.pop(stage, None)

    def approve(self, stage: str) -> None:
        self._resolve(stage, True)

    def reject(self, stage: str) -> None:
        self._resolve(stage, False)

    def pending(self) -> list[str]:
        return sorted(self._pending)

    def _resolve(self, stage: str, decision: bool) -> None:
        future = self._pending.get(stage)
        if future is not None and not future.done():
            future.set_result(decision)
        else:
            self._decided[stage] = decision


class GateEvaluator:
    """Evaluates gate predicates against a run context."""

    def __init__(
        self,
        approver: Approver | None = None,
        approval_timeout: float | None = 3600,
        base_env: Mapping[str, str] | None = None,
        on_awaiting_approval: Callable[[str, str], None] | None = None,
    ):
        self.approver = approver or PresetApprover()
        # None or <= 0 waits without bound
        self.approval_timeout = approval_timeout
        self.base_env = dict(base_env or {})
        self.on_awaiting_approval = on_awaiting_approval

    async def evaluate(self, predicate: Gate, context: RunContext, stage: str = "") -> bool:
        passed, _ = await self._check(predicate, context, stage)
        return passed

    async def admit(self, stage, context: RunContext) -> GateDecision:
        """Decide whether ``stage`` may run in ``context``."""
        for gate in stage.gates:
            if isinstance(gate, UnrecognizedGate):
                msg = f"Stage '{stage.name}': {gate.describe()}"
                logger.error("Configuration error: {}", msg)
                return GateDecision(False, reason=gate.describe(), config_error=msg)

            passed, reason = await self._check(gate, context, stage.name)
            if not passed:
                return GateDecision(False, reason=reason)

        return GateDecision(True)

    async def _check(self, gate: Gate, context: RunContext, stage: str) -> tuple[bool, str]:
        variables = context.variables(self.base_env)

        if isinstance(gate, BranchGate):
            expected = interpolate(gate.branch, variables)
            if context.branch == expected:
                return True, ""
            return False, f"branch '{context.branch}' != '{expected}'"

        if isinstance(gate, AnyBranchGate):
            allowed = [interpolate(b, variables) for b in gate.branches]
            if context.branch in allowed:
                return True, ""
            return False, f"branch '{context.branch}' not in {allowed}"

        if isinstance(gate, EnvironmentGate):
            for name, value in gate.expected:
                wanted = interpolate(value, variables)
                actual = variables.get(name)
                if actual != wanted:
                    return False, f"{name}={actual!r} (wanted {wanted!r})"
            return True, ""

        if isinstance(gate, ApprovalGate):
            return await self._request_approval(stage, interpolate(gate.message, variables))

        logger.error("Stage '{}': cannot evaluate {}", stage, gate)
        return False, f"unrecognized gate {gate!r}"

    async def _request_approval(self, stage: str, message: str) -> tuple[bool, str]:
        if self.on_awaiting_approval:
            self.on_awaiting_approval(stage, message)
        logger.info("Stage '{}' awaiting approval: {}", stage, message)

        timeout = self.approval_timeout
        try:
            if timeout is not None and timeout > 0:
                approved = await asyncio.wait_for(
                    self.approver.request(stage, message), timeout=timeout
                )
            else:
                approved = await self.approver.request(stage, message)
        except TimeoutError:
            logger.warning("Approval for '{}' timed out after {}s", stage, timeout)
            return False, f"approval timed out after {timeout:g}s"

        if approved:
            logger.info("Stage '{}' approved", stage)
            return True, ""
        logger.info("Stage '{}' rejected", stage)
        return False, "approval rejected"
