"""Run a pipeline end to end."""

import asyncio
import sys

import click
from rich.panel import Panel
from rich.text import Text

from pipewright.errors import MalformedSpec
from pipewright.events import ConsoleLogger
from pipewright.gates import PresetApprover
from pipewright.pipeline.renderer import RichRenderer
from pipewright.pipeline.structures import RunResult
from pipewright.pipeline.ui import console, print_error, print_status_panel
from pipewright.utils.error_handler import handle_exceptions
from pipewright.utils.exit_codes import ExitCodes


class ConsoleApprover:
    """Asks the operator at the terminal.

    The prompt runs in a worker thread so parallel members keep running
    while one of them waits.
    """

    def __init__(self, renderer: RichRenderer | None = None):
        self.renderer = renderer
        self._prompt_lock = asyncio.Lock()

    async def request(self, stage: str, message: str) -> bool:
        # One prompt on the terminal at a time
        async with self._prompt_lock:
            if self.renderer:
                self.renderer.pause()
            try:
                return await asyncio.to_thread(
                    click.confirm, f"[{stage}] {message}", default=False
                )
            finally:
                if self.renderer:
                    self.renderer.resume()


def print_run_complete_panel(result: RunResult) -> None:
    """Print the RUN COMPLETE panel with styled border."""
    leaves = [c for r in result.all_results() for c in (r.children or (r,))]
    passed = sum(1 for r in leaves if r.success)
    skipped = sum(1 for r in leaves if r.skipped)
    failed = sum(1 for r in leaves if r.failed)
    minutes = result.elapsed / 60

    if result.success:
        title = "RUN COMPLETE"
        status_line = f"{passed} stages passed, {skipped} skipped"
        border_style = "green"
    elif result.interrupted:
        title = "RUN INTERRUPTED"
        status_line = f"{passed} stages passed before the interrupt"
        border_style = "yellow"
    else:
        title = "RUN FAILED"
        status_line = f"{failed} stages failed, {passed} passed, {skipped} skipped"
        border_style = "red"

    panel = Panel(
        Text.assemble(
            (status_line + "\n", "bold " + border_style),
            (f"Total time: {result.elapsed:.1f}s ({minutes:.1f} minutes)", "dim"),
        ),
        title=f"[bold]{title}[/bold]",
        border_style=border_style,
        expand=False,
    )
    console.print(panel)


@click.command()
@handle_exceptions
@click.option("--root", default=".", help="Project directory (stages run here)")
@click.option(
    "--file", "-f", "pipeline_file", default=None, help="Pipeline file (default: pipewright.yml)"
)
@click.option("--branch", default=None, help="Override the detected branch name")
@click.option("--commit", default=None, help="Override the detected commit")
@click.option("--build-number", type=int, default=None, help="Override the build counter")
@click.option(
    "--approve",
    "approved",
    multiple=True,
    metavar="STAGE",
    help="Pre-approve a manual stage (repeatable)",
)
@click.option("--auto-approve", is_flag=True, help="Approve every manual stage without asking")
@click.option("--no-notify", is_flag=True, help="Do not send the outcome notification")
@click.option("--plain", is_flag=True, help="ASCII progress lines instead of the live table")
@click.option("--quiet", is_flag=True, help="Minimal output")
def run(
    root,
    pipeline_file,
    branch,
    commit,
    build_number,
    approved,
    auto_approve,
    no_notify,
    plain,
    quiet,
):
    """Run every stage of the pipeline in order.

    Stages execute strictly in declaration order. A parallel group fans its
    members out and joins them before the next stage starts. After the
    first failure, stages that are not marked 'always' are skipped; post
    hooks run last.

    Manual approvals:
      Interactive terminals are prompted. Without a terminal, only stages
      named with --approve (or all, with --auto-approve) proceed; the rest
      are skipped.

    Examples:
      pipewright run
      pipewright run --branch main --approve Deploy
      pipewright run --file ci/release.yml --auto-approve --quiet

    Output Files:
      .pipewright/runs/<build>/run_report.json   # Structured result
      .pipewright/artifacts/<build>/             # Collected artifacts
      .pipewright/pipeline.log                   # Execution trace
      .pipewright/error.log                      # Failure details

    Exit Codes:
      0 = All stages passed
      1 = A stage failed (or a gate was misconfigured)
      2 = Pipeline description is malformed (nothing ran)
      130 = Interrupted"""
    from pipewright.config_runtime import load_runtime_config
    from pipewright.executor import install_signal_handlers
    from pipewright.pipelines import run_pipeline, state_dir_for

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    config = load_runtime_config(root)
    state_dir = state_dir_for(root, config)

    renderer = None
    if plain:
        observer = ConsoleLogger(quiet=quiet)
    else:
        renderer = RichRenderer(quiet=quiet)
        observer = renderer

    preset = set(approved) | set(config["approval"]["approved_stages"])
    approve_all = auto_approve or config["approval"]["auto_approve"]
    if approve_all or preset or not sys.stdin.isatty():
        approver = PresetApprover(preset, approve_all=approve_all)
    else:
        approver = ConsoleApprover(renderer)

    install_signal_handlers()
    if renderer:
        renderer.start()
    try:
        result = asyncio.run(
            run_pipeline(
                root=root,
                pipeline_file=pipeline_file,
                branch=branch,
                commit=commit,
                build_number=build_number,
                approver=approver,
                observer=observer,
                notify=not no_notify,
                config=config,
            )
        )
    except MalformedSpec as e:
        if renderer:
            renderer.stop()
        print_error(str(e))
        sys.exit(ExitCodes.MALFORMED_SPEC)
    except KeyboardInterrupt:
        if renderer:
            renderer.stop()
        console.print("\n[bold red][INFO] Pipeline stopped by user.[/bold red]")
        sys.exit(ExitCodes.INTERRUPTED)

    if renderer:
        renderer.stop()
        renderer.print_summary(result)

    console.print()
    print_run_complete_panel(result)

    if result.success:
        exit_code = ExitCodes.SUCCESS
        print_status_panel(
            "SUCCESS",
            f"{result.job_name} #{result.context.build_number} passed.",
            f"Branch {result.context.branch}",
            level="success",
        )
    elif result.interrupted:
        exit_code = ExitCodes.INTERRUPTED
        print_status_panel(
            "INTERRUPTED",
            "Stop requested; remaining stages were skipped.",
            "Post hooks marked always still ran.",
            level="warning",
        )
    else:
        exit_code = ExitCodes.PIPELINE_FAILED
        failed = result.failed_stages()
        failed_summary = ", ".join(failed[:3]) or "configuration"
        if len(failed) > 3:
            failed_summary += f" (+{len(failed) - 3} more)"
        detail = "; ".join(result.config_errors) or "Check errors above and .pipewright/error.log."
        print_status_panel("FAILED", f"Failed: {failed_summary}", detail, level="critical")

    console.print(
        f"\nRun report: [path]{state_dir}/runs/{result.context.build_number}/run_report.json[/path]"
    )
    console.rule()

    if exit_code != ExitCodes.SUCCESS:
        sys.exit(exit_code)
