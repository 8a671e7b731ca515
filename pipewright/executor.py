"""Pipeline executor.

- Stages run strictly in declared order
- Parallel groups fan out via asyncio.gather() and join before moving on
- No stage is left running past its group's join point

Capabilities (process runner, image builder, gate evaluator, health poller,
artifact collector) are injected so the engine can run without real tools.
"""

import asyncio
import copy
import dataclasses
import platform
import signal
import sys
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any

from pipewright.artifacts import ArtifactCollector
from pipewright.config_runtime import DEFAULTS, get_stage_timeout
from pipewright.errors import (
    GroupFailure,
    HealthCheckTimeout,
    MalformedSpec,
    ResourceUnavailable,
    StageExecutionError,
)
from pipewright.events import PipelineObserver
from pipewright.gates import GateEvaluator, interpolate
from pipewright.health import HealthPoller, HttpProbe, Probe
from pipewright.images import DockerImageBuilder, ImageBuilder
from pipewright.pipeline.structures import RunContext, RunResult, StageResult, TaskStatus
from pipewright.plan import ExecutionPlan, Resource, Stage
from pipewright.process import ProcessOutcome, ProcessRunner, SubprocessRunner
from pipewright.utils.logging import get_subprocess_env, logger

IS_WINDOWS = platform.system() == "Windows"


_stop_requested = False


def signal_handler(signum, frame):
    """Handle Ctrl+C by setting stop flag."""
    global _stop_requested
    print("\n[INFO] Interrupt received, stopping pipeline gracefully...", file=sys.stderr)
    _stop_requested = True


def is_stop_requested() -> bool:
    """Check if stop was requested (asyncio-safe)."""
    return _stop_requested


def request_stop() -> None:
    """Ask the running pipeline to stop admitting new stages."""
    global _stop_requested
    _stop_requested = True


def reset_stop_flag():
    """Reset stop flag for new pipeline run."""
    global _stop_requested
    _stop_requested = False


def install_signal_handlers() -> None:
    """Route SIGINT/SIGTERM to the graceful stop flag."""
    signal.signal(signal.SIGINT, signal_handler)
    if not IS_WINDOWS:
        signal.signal(signal.SIGTERM, signal_handler)


class Executor:
    """Runs an ExecutionPlan against a RunContext."""

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        image_builder: ImageBuilder | None = None,
        gates: GateEvaluator | None = None,
        poller: HealthPoller | None = None,
        probe_factory: Callable[[str, str], Probe] | None = None,
        artifacts: ArtifactCollector | None = None,
        observer: PipelineObserver | None = None,
        config: dict[str, Any] | None = None,
        root: str | Path = ".",
    ):
        self.config = config or copy.deepcopy(DEFAULTS)
        self.root = Path(root)
        self.observer = observer
        self.runner = runner or SubprocessRunner()
        self.image_builder = image_builder or DockerImageBuilder(self.runner)
        self.gates = gates or GateEvaluator(approval_timeout=self.config["timeouts"]["approval"])
        if self.gates.on_awaiting_approval is None and observer is not None:
            self.gates.on_awaiting_approval = observer.on_approval_requested
        self.poller = poller or HealthPoller()
        self.probe_factory = probe_factory or (lambda url, expect: HttpProbe(url, expect))
        self.artifacts = artifacts

        self._plan: ExecutionPlan | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._config_errors: list[str] = []
        self._index = 0
        self._total = 0

    @property
    def max_output_bytes(self) -> int | None:
        limit = self.config["limits"]["max_output_bytes"]
        return limit if limit and limit > 0 else None

    def _emit(self, event: str, *args: Any) -> None:
        if self.observer:
            getattr(self.observer, event)(*args)

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    async def run(self, plan: ExecutionPlan, context: RunContext) -> RunResult:
        """Execute every stage of ``plan``, then its post hooks."""
        run_start = time.time()
        self._plan = plan
        self._config_errors = []
        self._index = 0
        self._total = plan.stage_count()

        # Pipeline environment seeds the context; explicit overrides win
        seeded = {k: v for k, v in plan.environment.items() if k not in context.env}
        if seeded:
            context = context.with_env(**seeded)

        logger.info("Running {} #{} on branch '{}'", plan.name, context.build_number, context.branch)
        self._emit("on_section_start", "Stages", 1)

        results: list[StageResult] = []
        failed = False
        interrupted = False

        for stage in plan.stages:
            if not interrupted and is_stop_requested():
                interrupted = True
                logger.warning("Stop requested - remaining stages are skipped unless marked always")

            if (failed or interrupted) and not stage.always:
                reason = "interrupted" if interrupted else "skipped after earlier failure"
                results.append(self._skip(stage, reason))
                continue

            result, context = await self._run_node(stage, context)
            results.append(result)
            if result.failed:
                failed = True

        main_ok = not failed and not interrupted and not self._config_errors
        hooks: list[StageResult] = []
        section = 2
        for outcome in ("always", "success" if main_ok else "failure"):
            hook_stages = plan.hooks(outcome)
            if not hook_stages:
                continue
            self._emit("on_section_start", f"Post ({outcome})", section)
            section += 1
            for hook in hook_stages:
                result, context = await self._run_node(hook, context)
                hooks.append(result)

        run_result = RunResult(
            job_name=plan.name,
            stages=tuple(results),
            hooks=tuple(hooks),
            context=context,
            elapsed=time.time() - run_start,
            config_errors=tuple(self._config_errors),
            interrupted=interrupted,
        )
        logger.info(
            "{} #{} finished: {} ({:.1f}s)",
            plan.name,
            context.build_number,
            run_result.status.value,
            run_result.elapsed,
        )
        return run_result

    async def _run_node(self, stage: Stage, context: RunContext) -> tuple[StageResult, RunContext]:
        """Run one top-level stage or group; returns the context for the next one."""
        skipped = await self._admit(stage, context)
        if skipped is not None:
            return skipped, context

        if stage.is_group:
            return await self._run_group(stage, context), context

        result = await self._run_stage(stage, context)
        if result.success and stage.export:
            context = context.with_env(**{stage.export: result.stdout.strip()})
            logger.debug("Stage '{}' exported {}", stage.name, stage.export)
        return result, context

    async def _admit(self, stage: Stage, context: RunContext) -> StageResult | None:
        if not stage.gates:
            return None

        decision = await self.gates.admit(stage, context)
        if decision.admitted:
            return None

        failure = None
        if decision.config_error:
            self._config_errors.append(decision.config_error)
            failure = MalformedSpec(decision.config_error)
        return self._skip(stage, decision.reason, failure=failure)

    def _skip(self, stage: Stage, reason: str, failure: MalformedSpec | None = None) -> StageResult:
        self._emit("on_stage_skipped", stage.name, reason)
        logger.debug("Stage '{}' skipped: {}", stage.name, reason)
        children = tuple(
            StageResult(name=m.name, status=TaskStatus.SKIPPED, reason=reason) for m in stage.parallel
        )
        return StageResult(
            name=stage.name,
            status=TaskStatus.SKIPPED,
            reason=reason,
            failure=failure,
            children=children,
        )

    # ------------------------------------------------------------------
    # parallel groups
    # ------------------------------------------------------------------

    async def _run_group(self, group: Stage, context: RunContext) -> StageResult:
        members = [m.name for m in group.parallel]
        self._emit("on_parallel_group_start", group.name, members)
        start_time = time.time()

        # Every member sees the same frozen snapshot; nothing writes back.
        # A member that raises must not leave its siblings unawaited.
        outcomes = await asyncio.gather(
            *(self._run_member(member, context) for member in group.parallel),
            return_exceptions=True,
        )
        member_results = []
        for member, outcome in zip(group.parallel, outcomes):
            if isinstance(outcome, Exception):
                outcome = self._crashed(member, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            member_results.append(outcome)

        elapsed = time.time() - start_time
        failed = [r for r in member_results if r.failed]
        self._emit("on_parallel_group_complete", group.name, elapsed, not failed)

        if failed:
            return StageResult(
                name=group.name,
                status=TaskStatus.FAILED,
                elapsed=elapsed,
                exit_code=failed[0].exit_code,
                failure=GroupFailure(group.name, [r.name for r in failed]),
                children=tuple(member_results),
            )
        return StageResult(
            name=group.name,
            status=TaskStatus.SUCCESS,
            elapsed=elapsed,
            exit_code=0,
            children=tuple(member_results),
        )

    def _crashed(self, member: Stage, error: Exception) -> StageResult:
        logger.opt(exception=error).error("Stage '{}' crashed: {}", member.name, error)
        result = StageResult(
            name=member.name,
            status=TaskStatus.FAILED,
            failure=StageExecutionError(member.name, None, f"{type(error).__name__}: {error}"),
        )
        self._report(result)
        return result

    async def _run_member(self, member: Stage, context: RunContext) -> StageResult:
        skipped = await self._admit(member, context)
        if skipped is not None:
            return skipped
        return await self._run_stage(member, context)

    # ------------------------------------------------------------------
    # single stages
    # ------------------------------------------------------------------

    async def _run_stage(self, stage: Stage, context: RunContext) -> StageResult:
        self._index += 1
        self._emit("on_stage_start", stage.name, self._index, self._total)
        logger.debug("Stage '{}' started ({}/{})", stage.name, self._index, self._total)

        cwd = self.root / stage.workdir if stage.workdir else self.root
        variables = context.variables()
        env = get_subprocess_env()
        env.update(variables)
        env.update({k: interpolate(v, variables) for k, v in stage.environment.items()})
        timeout = get_stage_timeout(stage.name, stage.timeout, self.config)
        start_time = time.time()

        try:
            async with self._hold_resources(stage, str(cwd), env, timeout):
                if stage.health is not None:
                    result = await self._run_health(stage, variables)
                elif stage.image is not None:
                    tag = interpolate(stage.image.tag, variables)
                    spec = dataclasses.replace(
                        stage.image,
                        build_args=tuple((k, interpolate(v, variables)) for k, v in stage.image.build_args),
                    )
                    logger.info("Stage '{}': building image {}", stage.name, tag)
                    outcome = await self.image_builder.build(
                        spec,
                        tag=tag,
                        cwd=str(cwd),
                        env=env,
                        timeout=timeout,
                        max_output_bytes=self.max_output_bytes,
                    )
                    result = self._from_outcome(stage, outcome)
                else:
                    outcome = await self.runner.run(
                        stage.command,
                        cwd=str(cwd),
                        env=env,
                        timeout=timeout,
                        max_output_bytes=self.max_output_bytes,
                    )
                    result = self._from_outcome(stage, outcome)
        except StageExecutionError as e:
            result = StageResult(
                name=stage.name,
                status=TaskStatus.FAILED,
                elapsed=time.time() - start_time,
                exit_code=e.exit_code,
                failure=e,
            )
        except Exception as e:
            logger.opt(exception=True).error("Stage '{}' crashed: {}", stage.name, e)
            result = StageResult(
                name=stage.name,
                status=TaskStatus.FAILED,
                elapsed=time.time() - start_time,
                failure=StageExecutionError(stage.name, None, f"{type(e).__name__}: {e}"),
            )

        if result.success and stage.artifacts and self.artifacts is not None:
            result = self._collect_artifacts(stage, result, cwd)

        self._report(result)
        return result

    def _collect_artifacts(self, stage: Stage, result: StageResult, cwd: Path) -> StageResult:
        try:
            collected = self.artifacts.collect(stage.name, stage.artifacts, cwd)
        except Exception as e:
            logger.opt(exception=True).error("Stage '{}': artifact collection failed: {}", stage.name, e)
            return dataclasses.replace(
                result,
                status=TaskStatus.FAILED,
                failure=StageExecutionError(
                    stage.name, result.exit_code, f"artifact collection failed: {type(e).__name__}: {e}"
                ),
            )
        return dataclasses.replace(result, artifacts=tuple(collected))

    async def _run_health(self, stage: Stage, variables: dict[str, str]) -> StageResult:
        spec = stage.health
        timeouts = self.config["timeouts"]
        timeout = spec.timeout if spec.timeout is not None else timeouts["health"]
        interval = spec.interval if spec.interval is not None else timeouts["health_interval"]
        url = interpolate(spec.url, variables)

        start_time = time.time()
        healthy = await self.poller.poll(self.probe_factory(url, spec.expect), timeout, interval)
        elapsed = time.time() - start_time

        if healthy:
            return StageResult(
                name=stage.name,
                status=TaskStatus.SUCCESS,
                elapsed=elapsed,
                exit_code=0,
                stdout=f"{url} reported '{spec.expect}'",
            )
        return StageResult(
            name=stage.name,
            status=TaskStatus.FAILED,
            elapsed=elapsed,
            failure=HealthCheckTimeout(url, timeout),
        )

    def _from_outcome(self, stage: Stage, outcome: ProcessOutcome) -> StageResult:
        if outcome.success:
            return StageResult(
                name=stage.name,
                status=TaskStatus.SUCCESS,
                elapsed=outcome.elapsed,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                exit_code=outcome.returncode,
                truncated=outcome.truncated,
            )

        if outcome.timed_out:
            detail = "timed out"
        elif outcome.spawn_error:
            detail = outcome.spawn_error
        else:
            lines = outcome.stderr.strip().splitlines()
            detail = lines[-1] if lines else ""

        return StageResult(
            name=stage.name,
            status=TaskStatus.FAILED,
            elapsed=outcome.elapsed,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.returncode,
            truncated=outcome.truncated,
            failure=StageExecutionError(stage.name, outcome.returncode, detail),
        )

    def _report(self, result: StageResult) -> None:
        if result.success:
            self._emit("on_stage_complete", result.name, result.elapsed)
            logger.debug("Stage '{}' completed in {:.1f}s", result.name, result.elapsed)
            preview = self.config["limits"]["output_preview_lines"]
            if result.stdout and preview > 0:
                lines = result.stdout.strip().split("\n")
                for line in lines[:preview]:
                    self._emit("on_log", f"  {line}")
                if len(lines) > preview:
                    self._emit("on_log", f"  ... ({len(lines) - preview} more lines)")
        else:
            self._emit("on_stage_failed", result.name, result.stderr or result.error, result.exit_code)
            logger.error("{}", result.error)

    # ------------------------------------------------------------------
    # resources
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _hold_resources(
        self, stage: Stage, cwd: str, env: dict[str, str], timeout: float
    ) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for name in stage.resources:
                resource = self._plan.resources[name]
                await stack.enter_async_context(self._hold(resource, stage.name, cwd, env, timeout))
            yield

    @asynccontextmanager
    async def _hold(
        self, resource: Resource, stage_name: str, cwd: str, env: dict[str, str], timeout: float
    ) -> AsyncIterator[None]:
        lock = self._locks.setdefault(resource.name, asyncio.Lock())
        async with lock:
            try:
                if resource.acquire is not None:
                    logger.info("Stage '{}': acquiring {}", stage_name, resource.name)
                    acquired = await self.runner.run(
                        resource.acquire,
                        cwd=cwd,
                        env=env,
                        timeout=timeout,
                        max_output_bytes=self.max_output_bytes,
                    )
                    if not acquired.success:
                        lines = acquired.stderr.strip().splitlines()
                        raise ResourceUnavailable(
                            stage_name,
                            resource.name,
                            acquired.returncode,
                            lines[-1] if lines else "",
                        )
                yield
            finally:
                # Released even when acquire failed halfway or the stage was cancelled
                if resource.release is not None:
                    logger.info("Stage '{}': releasing {}", stage_name, resource.name)
                    released = await self.runner.run(
                        resource.release,
                        cwd=cwd,
                        env=env,
                        timeout=timeout,
                        max_output_bytes=self.max_output_bytes,
                    )
                    if not released.success:
                        msg = (
                            f"Release of '{resource.name}' after '{stage_name}' "
                            f"failed (exit code {released.returncode})"
                        )
                        logger.error(msg)
                        self._emit("on_log", msg, True)
