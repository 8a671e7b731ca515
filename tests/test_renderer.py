"""Tests for observers: plain console logger and Rich renderer (non-TTY)."""

from pipewright.events import ConsoleLogger
from pipewright.pipeline.renderer import RichRenderer
from pipewright.pipeline.structures import RunContext, RunResult, StageResult, TaskStatus


class TestConsoleLogger:
    def test_quiet_still_reports_failures_and_approvals(self, capsys):
        logger = ConsoleLogger(quiet=True)
        logger.on_stage_start("Build", 1, 2)
        logger.on_stage_failed("Build", "compiler exploded", 2)
        logger.on_approval_requested("Deploy", "Ship it?")

        captured = capsys.readouterr()
        assert "[Stage 1/2]" not in captured.out
        assert "[FAILED] Build failed (exit code 2)" in captured.err
        assert "[WAITING] Deploy awaiting approval: Ship it?" in captured.out


class TestRichRenderer:
    def test_group_output_is_buffered_until_join(self, capsys):
        renderer = RichRenderer()
        renderer.start()

        renderer.on_parallel_group_start("Test", ["Unit", "E2E"])
        renderer.on_stage_start("Unit", 1, 2)
        renderer.on_stage_complete("Unit", 0.5)
        assert "[OK] Unit" not in capsys.readouterr().out

        renderer.on_parallel_group_complete("Test", 1.0, True)
        out = capsys.readouterr().out
        assert "[Test] SUCCESS" in out
        assert "[OK] Unit completed in 0.5s" in out

        renderer.stop()

    def test_buffer_is_bounded(self, capsys):
        renderer = RichRenderer()
        renderer.on_parallel_group_start("Test", ["A"])
        for i in range(RichRenderer.MAX_BUFFER_LINES + 20):
            renderer.on_log(f"line {i}")
        renderer.on_parallel_group_complete("Test", 1.0, False)

        out = capsys.readouterr().out
        assert "line 49" in out
        assert "line 50" not in out
        assert "truncated" in out

    def test_summary_lists_children(self, capsys):
        context = RunContext(job_name="api", branch="main", build_number=2)
        result = RunResult(
            job_name="api",
            stages=(
                StageResult(
                    name="Test",
                    status=TaskStatus.SUCCESS,
                    children=(StageResult(name="Unit", status=TaskStatus.SUCCESS, exit_code=0),),
                ),
            ),
            hooks=(),
            context=context,
            elapsed=1.0,
        )
        RichRenderer().print_summary(result)
        out = capsys.readouterr().out
        assert "api #2" in out
        assert "Unit" in out
