"""Pipeline execution module for pipewright.

Wires the runtime configuration, the pipeline file, the run context and the
executor together, then persists what happened:

    <state_dir>/runs/<build_number>/run_report.json   full structured result
    <state_dir>/artifacts/<build_number>/<stage>/     collected artifacts
    <state_dir>/error.log                             appended on failure
    <state_dir>/pipeline.log                          execution log (loguru file sink)

Notification happens last and is best-effort; it never changes the result.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any

from pipewright.artifacts import ArtifactCollector
from pipewright.config_runtime import load_runtime_config
from pipewright.context import resolve_run_context
from pipewright.events import PipelineObserver
from pipewright.executor import Executor, reset_stop_flag
from pipewright.gates import Approver, GateEvaluator, PresetApprover
from pipewright.images import ImageBuilder
from pipewright.notify import (
    LogNotifier,
    NotificationEvent,
    Notifier,
    WebhookNotifier,
    dispatch_notification,
)
from pipewright.pipeline.structures import RunResult
from pipewright.plan import ExecutionPlan, load_plan
from pipewright.process import ProcessRunner
from pipewright.utils.constants import (
    ARTIFACTS_DIR_NAME,
    ERROR_LOG_NAME,
    RUN_REPORT_NAME,
    RUNS_DIR_NAME,
)
from pipewright.utils.logging import configure_file_logging, logger


def state_dir_for(root: str | Path, config: dict[str, Any]) -> Path:
    state_dir = Path(config["paths"]["state_dir"])
    return state_dir if state_dir.is_absolute() else Path(root) / state_dir


def pipeline_file_for(root: str | Path, config: dict[str, Any], pipeline_file: str | Path | None = None) -> Path:
    path = Path(pipeline_file or config["paths"]["pipeline_file"])
    return path if path.is_absolute() else Path(root) / path


async def run_pipeline(
    root: str = ".",
    pipeline_file: str | Path | None = None,
    branch: str | None = None,
    commit: str | None = None,
    build_number: int | None = None,
    approver: Approver | None = None,
    notifier: Notifier | None = None,
    observer: PipelineObserver | None = None,
    notify: bool = True,
    config: dict[str, Any] | None = None,
    runner: ProcessRunner | None = None,
    image_builder: ImageBuilder | None = None,
) -> RunResult:
    """Load, execute and record one pipeline run.

    Args:
        root: Project directory; stage commands run relative to it
        pipeline_file: Pipeline description (default from config paths)
        branch, commit, build_number: Override the detected run context
        approver: Answers manual approvals (default: config approval section)
        notifier: Delivery channel override (default: webhook or log)
        observer: Receives progress events
        notify: Send the outcome notification when the plan asks for one
        config: Runtime configuration (default: load_runtime_config(root))
        runner, image_builder: Capability overrides

    Returns:
        The terminal RunResult.

    Raises:
        MalformedSpec: The pipeline file is unreadable or invalid. Nothing ran.
    """
    config = config or load_runtime_config(root)
    state_dir = state_dir_for(root, config)
    path = pipeline_file_for(root, config, pipeline_file)

    plan = load_plan(path)
    logger.info("Loaded pipeline '{}' from {} ({} stages)", plan.name, path, plan.stage_count())

    context = resolve_run_context(
        plan.name,
        root=root,
        state_dir=state_dir,
        branch=branch,
        commit=commit,
        build_number=build_number,
    )

    reset_stop_flag()
    file_handler = configure_file_logging(state_dir)

    try:
        if approver is None:
            approval = config["approval"]
            approver = PresetApprover(approval["approved_stages"], approve_all=approval["auto_approve"])

        executor = Executor(
            runner=runner,
            image_builder=image_builder,
            gates=GateEvaluator(approver, approval_timeout=config["timeouts"]["approval"]),
            artifacts=ArtifactCollector(state_dir / ARTIFACTS_DIR_NAME / str(context.build_number)),
            observer=observer,
            config=config,
            root=root,
        )
        result = await executor.run(plan, context)

        report_path = write_run_report(state_dir, result)
        logger.info("Run report saved to {}", report_path)
        if not result.success:
            append_error_log(state_dir / ERROR_LOG_NAME, result)

        if notify:
            await send_notification(plan, result, notifier, config["timeouts"]["notify"])
    finally:
        logger.remove(file_handler)

    return result


def write_run_report(state_dir: Path, result: RunResult) -> Path:
    """Persist the structured result of a run; returns the report path."""
    run_dir = state_dir / RUNS_DIR_NAME / str(result.context.build_number)
    run_dir.mkdir(parents=True, exist_ok=True)
    report_path = run_dir / RUN_REPORT_NAME
    with open(report_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)
    return report_path


def append_error_log(error_log_path: Path, result: RunResult) -> None:
    """Append every failure of ``result`` to error.log."""
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
    try:
        error_log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(error_log_path, "a", encoding="utf-8") as ef:
            ef.write(f"[{timestamp}] {result.job_name} #{result.context.build_number} FAILED\n")
            for problem in result.config_errors:
                ef.write(f"[CONFIG] {problem}\n")
            if result.interrupted:
                ef.write("[INTERRUPTED] remaining stages were skipped\n")
            for stage in result.all_results():
                for failed in (stage, *stage.children):
                    if not failed.failed or failed.is_group:
                        continue
                    ef.write(f"[FAILED] {failed.name} (Exit: {failed.exit_code})\n")
                    if failed.error:
                        ef.write(failed.error + "\n")
                    if failed.stderr:
                        ef.write(failed.stderr.rstrip() + "\n")
            ef.write("-" * 40 + "\n")
    except OSError as e:
        logger.warning("Could not write {}: {}", error_log_path, e)


def notification_event(result: RunResult) -> NotificationEvent:
    context = result.context
    return NotificationEvent(
        outcome="success" if result.success else "failure",
        job=result.job_name,
        build_number=context.build_number,
        branch=context.branch,
        commit=context.commit,
        duration=round(result.elapsed, 3),
        failed_stages=tuple(result.failed_stages()),
    )


async def send_notification(
    plan: ExecutionPlan,
    result: RunResult,
    notifier: Notifier | None = None,
    timeout: float = 10,
) -> bool:
    """Notify the plan's channel of the outcome.

    Returns:
        True if a notification was delivered. Never raises for delivery
        problems and never alters ``result``.
    """
    settings = plan.notify
    if settings is None:
        return False

    event = notification_event(result)
    if not settings.wants(event.outcome):
        logger.debug("Notification for {} outcome not requested", event.outcome)
        return False

    if notifier is None:
        if settings.webhook:
            notifier = WebhookNotifier(settings.webhook, timeout=timeout)
        else:
            notifier = LogNotifier()

    try:
        return await asyncio.wait_for(
            dispatch_notification(notifier, event, settings.channel),
            timeout=timeout if timeout and timeout > 0 else None,
        )
    except TimeoutError:
        logger.warning("Notification to {} timed out after {}s", settings.channel, timeout)
        return False
