"""Rich-based pipeline renderer with parallel group buffering."""
import sys
import time

from rich.console import Console, ConsoleOptions, RenderResult
from rich.live import Live
from rich.table import Table

from pipewright.utils.logging import restore_stderr_sink, swap_to_rich_sink

from .structures import RunResult, TaskStatus
from .ui import PIPEWRIGHT_THEME, STATUS_STYLES


class DynamicTable:
    """Wrapper that builds a fresh table on each Rich render cycle.

    Rich calls __rich_console__ on each refresh (4x/second), so running
    stages show a ticking timer.
    """

    def __init__(self, renderer: "RichRenderer"):
        self.renderer = renderer

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        yield self.renderer._build_live_table()


class RichRenderer:
    """Live dashboard using Rich library.

    Sequential stages: update table row immediately
    Parallel groups: buffer output, flush atomically when the group joins
    """

    MAX_BUFFER_LINES = 50

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

        self.is_tty = sys.stdout.isatty()
        self.console = Console(theme=PIPEWRIGHT_THEME, force_terminal=self.is_tty)

        # Parallel group buffering
        self._group_buffer: list[str] | None = None
        self._group_name: str | None = None

        # Stage tracking for table
        self._stages: dict[str, dict] = {}

        self._live: Live | None = None
        self._loguru_handler_id: int | None = None

    def _build_live_table(self) -> Table:
        table = Table(title="Pipeline Progress", expand=True)
        table.add_column("Stage", style="stage", no_wrap=True)
        table.add_column("Status", width=18)
        table.add_column("Time", justify="right", width=8)

        now = time.time()
        for name, info in self._stages.items():
            status = info.get('status', TaskStatus.PENDING.value)

            if status == TaskStatus.RUNNING.value:
                time_str = f"{now - info.get('start_time', now):.1f}s"
            elif info.get('elapsed', 0) > 0:
                time_str = f"{info['elapsed']:.1f}s"
            else:
                time_str = "-"

            style = STATUS_STYLES.get(status, "dim")
            table.add_row(name, f"[{style}]{status}[/{style}]", time_str)

        return table

    def _write(self, text: str, is_error: bool = False):
        """Central output handler."""
        if self.quiet and not is_error:
            return

        if self._group_buffer is not None:
            if len(self._group_buffer) < self.MAX_BUFFER_LINES:
                self._group_buffer.append(text)
            elif len(self._group_buffer) == self.MAX_BUFFER_LINES:
                self._group_buffer.append("... [truncated, see run_report.json for full output]")
        elif self._live:
            style = "bold red" if is_error else None
            self._live.console.print(text, style=style, markup=False)
        else:
            print(text, file=sys.stderr if is_error else sys.stdout, flush=True)

    def log_message(self, message) -> None:
        """Loguru sink that prints above the live table."""
        if self._live:
            self._live.console.print(str(message).rstrip("\n"), markup=False, highlight=False)
        else:
            sys.stderr.write(str(message))

    def start(self):
        """Start the live display (call before pipeline runs)."""
        if self.is_tty and not self.quiet:
            self._live = Live(DynamicTable(self), refresh_per_second=4, console=self.console)
            self._live.__enter__()
            self._loguru_handler_id = swap_to_rich_sink(self.log_message)

    def pause(self):
        """Suspend live refresh so an interactive prompt stays readable."""
        if self._live:
            self._live.stop()

    def resume(self):
        if self._live:
            self._live.start()

    def stop(self):
        """Stop the live display (call after pipeline completes)."""
        if self._live:
            restore_stderr_sink(self._loguru_handler_id)
            self._loguru_handler_id = None
            self._live.__exit__(None, None, None)
            self._live = None

    # PipelineObserver implementation

    def on_section_start(self, title: str, section_num: int) -> None:
        self._write(f"\n{'=' * 60}\n[SECTION {section_num}] {title}\n{'=' * 60}")

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        self._stages[name] = {'status': TaskStatus.RUNNING.value, 'start_time': time.time()}
        if not self._live:
            self._write(f"\n[Stage {index}/{total}] {name}")

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        self._stages[name] = {'status': TaskStatus.SUCCESS.value, 'elapsed': elapsed}
        if not self._live:
            self._write(f"[OK] {name} completed in {elapsed:.1f}s")

    def on_stage_failed(self, name: str, error: str, exit_code: int | None) -> None:
        previous = self._stages.get(name, {})
        elapsed = time.time() - previous['start_time'] if 'start_time' in previous else 0
        self._stages[name] = {'status': TaskStatus.FAILED.value, 'elapsed': elapsed}
        self._write(f"[FAILED] {name} (exit code {exit_code})", is_error=True)
        if error:
            truncated = error[:200] + "..." if len(error) > 200 else error
            self._write(f"  Error: {truncated}", is_error=True)

    def on_stage_skipped(self, name: str, reason: str) -> None:
        self._stages[name] = {'status': TaskStatus.SKIPPED.value}
        self._write(f"[SKIPPED] {name}: {reason}")

    def on_approval_requested(self, name: str, message: str) -> None:
        self._stages[name] = {'status': TaskStatus.AWAITING_APPROVAL.value}
        # Never buffered: someone has to act on it now
        text = f"[WAITING] {name} awaiting approval: {message}"
        if self._live:
            self._live.console.print(text, style="bold magenta", markup=False)
        else:
            print(text, flush=True)

    def on_log(self, message: str, is_error: bool = False) -> None:
        self._write(str(message) if message else "", is_error=is_error)

    def on_parallel_group_start(self, group_name: str, members: list[str]) -> None:
        self._group_name = group_name
        self._group_buffer = []
        self._stages[group_name] = {'status': TaskStatus.RUNNING.value, 'start_time': time.time()}

    def on_parallel_group_complete(self, group_name: str, elapsed: float, success: bool) -> None:
        status = TaskStatus.SUCCESS if success else TaskStatus.FAILED
        self._stages[group_name] = {'status': status.value, 'elapsed': elapsed}

        buffer = self._group_buffer or []
        self._group_buffer = None
        self._group_name = None

        header = f"\n{'=' * 60}\n[{group_name}] {status.value.upper()} ({elapsed:.1f}s)\n{'=' * 60}"
        if self.quiet and success:
            return
        if self._live:
            self._live.console.print(header, markup=False)
            for line in buffer:
                self._live.console.print(line, markup=False)
        else:
            print(header, flush=True)
            for line in buffer:
                print(line, flush=True)

    def print_summary(self, result: RunResult):
        """Print final per-stage breakdown after pipeline completion."""
        table = Table(title=f"{result.job_name} #{result.context.build_number}", expand=False)
        table.add_column("Stage", style="stage")
        table.add_column("Status")
        table.add_column("Exit", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Note")

        def add(stage_result, indent=""):
            style = STATUS_STYLES.get(stage_result.status.value, "dim")
            note = stage_result.reason or stage_result.error
            table.add_row(
                indent + stage_result.name,
                f"[{style}]{stage_result.status.value}[/{style}]",
                "-" if stage_result.exit_code is None else str(stage_result.exit_code),
                f"{stage_result.elapsed:.1f}s" if stage_result.elapsed else "-",
                note[:80],
            )
            for child in stage_result.children:
                add(child, indent + "  ")

        for stage_result in result.all_results():
            add(stage_result)

        self.console.print(table)
