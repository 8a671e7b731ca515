"""Tests for stage ordering, parallel groups, failure handling and resources."""

import asyncio

import pytest
from conftest import FakeClock, FakeRunner

from pipewright.errors import GroupFailure, HealthCheckTimeout, MalformedSpec, ResourceUnavailable, StageExecutionError
from pipewright.executor import Executor, request_stop
from pipewright.gates import GateEvaluator, PresetApprover
from pipewright.health import HealthPoller
from pipewright.pipeline.structures import TaskStatus
from pipewright.plan import build_plan
from pipewright.process import ProcessOutcome


class RecordingObserver:
    """Collects observer events as (event, name) tuples."""

    def __init__(self):
        self.events = []

    def on_section_start(self, title, section_num):
        self.events.append(("section", title))

    def on_stage_start(self, name, index, total):
        self.events.append(("start", name))

    def on_stage_complete(self, name, elapsed):
        self.events.append(("complete", name))

    def on_stage_failed(self, name, error, exit_code):
        self.events.append(("failed", name))

    def on_stage_skipped(self, name, reason):
        self.events.append(("skipped", name))

    def on_approval_requested(self, name, message):
        self.events.append(("approval", name))

    def on_log(self, message, is_error=False):
        pass

    def on_parallel_group_start(self, group_name, members):
        self.events.append(("group_start", group_name))

    def on_parallel_group_complete(self, group_name, elapsed, success):
        self.events.append(("group_complete", group_name))


def execute(raw, context, runner=None, **kwargs):
    plan = build_plan(raw)
    executor = Executor(runner=runner or FakeRunner(), **kwargs)
    return asyncio.run(executor.run(plan, context))


class TestOrdering:
    """Stages run strictly in declared order."""

    def test_all_stages_succeed_in_order(self, runner, context):
        observer = RecordingObserver()
        result = execute(
            {"stages": [
                {"name": "Checkout", "run": "checkout"},
                {"name": "Install", "run": "install"},
                {"name": "Build", "run": "build"},
            ]},
            context,
            runner=runner,
            observer=observer,
        )

        assert result.success
        assert result.status == TaskStatus.SUCCESS
        assert runner.calls == ["checkout", "install", "build"]
        assert [r.name for r in result.stages] == ["Checkout", "Install", "Build"]
        starts = [name for event, name in observer.events if event == "start"]
        assert starts == ["Checkout", "Install", "Build"]

    def test_failure_skips_rest_but_always_runs(self, context):
        runner = FakeRunner({"a": 1})
        result = execute(
            {"stages": [
                {"name": "A", "run": "a"},
                {"name": "B", "run": "b"},
                {"name": "C", "run": "c", "always": True},
            ]},
            context,
            runner=runner,
        )

        assert not result.success
        assert runner.calls == ["a", "c"]
        a, b, c = result.stages
        assert a.status == TaskStatus.FAILED
        assert b.status == TaskStatus.SKIPPED
        assert b.reason == "skipped after earlier failure"
        assert c.status == TaskStatus.SUCCESS

    def test_exit_code_propagated_verbatim(self, context):
        result = execute({"stages": [{"name": "Lint", "run": "lint"}]}, context, runner=FakeRunner({"lint": 3}))
        lint = result.find("Lint")
        assert lint.exit_code == 3
        assert isinstance(lint.failure, StageExecutionError)
        with pytest.raises(StageExecutionError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.exit_code == 3

    def test_timeout_outcome_fails_stage(self, context):
        timed_out = ProcessOutcome(returncode=-9, stdout="", stderr="", elapsed=1.0, timed_out=True)
        result = execute({"stages": [{"name": "Slow", "run": "slow"}]}, context, runner=FakeRunner({"slow": timed_out}))
        slow = result.find("Slow")
        assert slow.failed
        assert "timed out" in slow.error


class TestParallelGroups:
    """Fan-out, join and failure dominance."""

    GROUP = {"stages": [
        {"name": "Test", "parallel": [
            {"name": "Unit", "run": "unit"},
            {"name": "Integration", "run": "integration"},
            {"name": "Lint", "run": "lint"},
        ]},
        {"name": "Build", "run": "build"},
    ]}

    def test_members_run_concurrently(self, context):
        runner = FakeRunner(delay=0.05)
        result = execute(self.GROUP, context, runner=runner)
        assert result.success
        assert runner.max_active == 3
        assert runner.calls[-1] == "build"

    def test_member_failure_fails_group_with_all_results(self, context):
        runner = FakeRunner({"integration": 2})
        result = execute(self.GROUP, context, runner=runner)

        group = result.find("Test")
        assert group.failed
        assert isinstance(group.failure, GroupFailure)
        assert group.failure.failed_members == ["Integration"]
        assert group.exit_code == 2
        assert [c.name for c in group.children] == ["Unit", "Integration", "Lint"]
        assert [c.status for c in group.children] == [TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.SUCCESS]
        assert result.find("Build").skipped
        assert "build" not in runner.calls

    def test_members_share_snapshot(self, context):
        runner = FakeRunner()
        result = execute(
            {"stages": [
                {"name": "Version", "run": "version", "export": "VERSION"},
                {"name": "Group", "parallel": [
                    {"name": "A", "run": "a"},
                    {"name": "B", "run": "b"},
                ]},
            ]},
            context,
            runner=runner,
        )
        assert result.success
        assert runner.envs[1]["VERSION"] == "version"
        assert runner.envs[2]["VERSION"] == "version"

    def test_skipped_group_reports_skipped_members(self, context):
        result = execute(
            {"stages": [
                {"name": "A", "run": "a"},
                {"name": "Group", "parallel": [{"name": "X", "run": "x"}, {"name": "Y", "run": "y"}]},
            ]},
            context,
            runner=FakeRunner({"a": 1}),
        )
        group = result.find("Group")
        assert group.skipped
        assert [c.status for c in group.children] == [TaskStatus.SKIPPED, TaskStatus.SKIPPED]


class TestGates:
    """Gated stages are skipped without affecting the run."""

    def test_branch_gate_on_other_branch_skips_stage(self, runner, context):
        result = execute(
            {"stages": [
                {"name": "Build", "run": "build"},
                {"name": "Deploy", "run": "deploy", "when": {"branch": "main"}},
            ]},
            context,
            runner=runner,
        )

        assert result.success
        assert result.find("Deploy").skipped
        assert "develop" in result.find("Deploy").reason
        assert runner.calls == ["build"]

    def test_branch_gate_on_matching_branch_runs(self, runner, main_context):
        result = execute(
            {"stages": [{"name": "Deploy", "run": "deploy", "when": {"branch": "main"}}]},
            main_context,
            runner=runner,
        )
        assert result.find("Deploy").success

    def test_unrecognized_gate_fails_run_closed(self, runner, context):
        result = execute(
            {"stages": [
                {"name": "Odd", "run": "odd", "when": {"moon_phase": "full"}},
                {"name": "Next", "run": "next"},
            ]},
            context,
            runner=runner,
        )

        assert not result.success
        assert result.find("Odd").skipped
        assert result.find("Next").success
        assert runner.calls == ["next"]
        assert len(result.config_errors) == 1
        assert "moon_phase" in result.config_errors[0]
        with pytest.raises(MalformedSpec):
            result.raise_for_status()

    def test_rejected_approval_skips_stage(self, runner, main_context):
        observer = RecordingObserver()
        result = execute(
            {"stages": [{"name": "Deploy", "run": "deploy", "approval": "Ship it?"}]},
            main_context,
            runner=runner,
            observer=observer,
            gates=GateEvaluator(PresetApprover()),
        )
        assert result.success
        assert result.find("Deploy").skipped
        assert result.find("Deploy").reason == "approval rejected"
        assert ("approval", "Deploy") in observer.events
        assert runner.calls == []

    def test_preset_approval_runs_stage(self, runner, main_context):
        result = execute(
            {"stages": [{"name": "Deploy", "run": "deploy", "approval": True}]},
            main_context,
            runner=runner,
            gates=GateEvaluator(PresetApprover(["Deploy"])),
        )
        assert result.find("Deploy").success


class TestContextFlow:
    """Exports, variables and per-stage environment."""

    def test_export_and_builtin_variables(self, context):
        runner = FakeRunner({"git rev-parse --short HEAD": ProcessOutcome(0, "abc1234\n", "", 0.0)})
        result = execute(
            {
                "environment": {"REGISTRY": "registry.local"},
                "stages": [
                    {"name": "Checkout", "run": "git rev-parse --short HEAD", "export": "SHORT_SHA"},
                    {"name": "Tag", "run": "tag", "environment": {"IMAGE": "${REGISTRY}/api:${SHORT_SHA}"}},
                ],
            },
            context,
            runner=runner,
        )

        env = runner.envs[1]
        assert env["SHORT_SHA"] == "abc1234"
        assert env["IMAGE"] == "registry.local/api:abc1234"
        assert env["BRANCH_NAME"] == "develop"
        assert env["BUILD_NUMBER"] == "7"
        assert env["BUILD_ID"] == "api-7"
        assert result.context.env["SHORT_SHA"] == "abc1234"
        assert context.env == {}

    def test_explicit_override_beats_pipeline_environment(self, context):
        runner = FakeRunner()
        execute(
            {"environment": {"NODE_ENV": "test"}, "stages": [{"name": "A", "run": "a"}]},
            context.with_env(NODE_ENV="production"),
            runner=runner,
        )
        assert runner.envs[0]["NODE_ENV"] == "production"

    def test_image_stage_interpolates_tag(self, context):
        runner = FakeRunner()
        result = execute(
            {
                "environment": {"REGISTRY": "registry.local"},
                "stages": [{
                    "name": "Containerize",
                    "image": {"tag": "${REGISTRY}/api:${BUILD_NUMBER}", "target": "production",
                              "build_args": {"COMMIT": "${GIT_COMMIT}"}},
                }],
            },
            context,
            runner=runner,
        )
        assert result.success
        assert runner.calls == [
            "docker build -t registry.local/api:7 --target production --build-arg COMMIT=abc1234def ."
        ]


class TestResources:
    """Acquire/release around stages, exclusive across parallel members."""

    PLAN = {
        "resources": {"test-env": {"acquire": "env up", "release": "env down"}},
        "stages": [{"name": "Test", "parallel": [
            {"name": "Unit", "run": "unit"},
            {"name": "E2E", "run": "e2e", "resources": ["test-env"]},
            {"name": "Contract", "run": "contract", "resources": ["test-env"]},
        ]}],
    }

    def test_release_runs_after_failure(self, context):
        runner = FakeRunner({"e2e": 1})
        result = execute(self.PLAN, context, runner=runner)
        assert not result.success
        assert runner.calls.count("env up") == 2
        assert runner.calls.count("env down") == 2

    def test_resource_holders_are_serialized(self, context):
        runner = FakeRunner(delay=0.02)
        execute(self.PLAN, context, runner=runner)
        holders = [c for c in runner.calls if c in ("env up", "e2e", "contract", "env down")]
        # Each holder's acquire/run/release block is contiguous
        assert holders in (
            ["env up", "e2e", "env down", "env up", "contract", "env down"],
            ["env up", "contract", "env down", "env up", "e2e", "env down"],
        )

    def test_failed_acquire_fails_stage_and_still_releases(self, context):
        runner = FakeRunner({"env up": 1})
        result = execute(
            {
                "resources": {"test-env": {"acquire": "env up", "release": "env down"}},
                "stages": [{"name": "E2E", "run": "e2e", "resources": ["test-env"]}],
            },
            context,
            runner=runner,
        )
        e2e = result.find("E2E")
        assert e2e.failed
        assert isinstance(e2e.failure, ResourceUnavailable)
        assert "e2e" not in runner.calls
        assert runner.calls == ["env up", "env down"]


class TestHealthStages:
    def test_health_stage_that_never_succeeds_fails(self, context):
        clock = FakeClock()

        async def never_ready():
            return False

        result = execute(
            {"stages": [{"name": "Health", "health": {"url": "http://svc/health", "timeout": 3, "interval": 1}}]},
            context,
            poller=HealthPoller(clock=clock, sleep=clock.sleep),
            probe_factory=lambda url, expect: never_ready,
        )
        health = result.find("Health")
        assert health.failed
        assert isinstance(health.failure, HealthCheckTimeout)
        assert isinstance(health.failure, TimeoutError)

    def test_health_url_is_interpolated(self, context):
        seen = []

        def factory(url, expect):
            seen.append((url, expect))

            async def ready():
                return True

            return ready

        result = execute(
            {
                "environment": {"HOST": "api.internal"},
                "stages": [{"name": "Health", "health": {"url": "http://${HOST}/health", "expect": "up"}}],
            },
            context,
            probe_factory=factory,
        )
        assert result.success
        assert seen == [("http://api.internal/health", "up")]


class TestPostHooks:
    """always hooks first, then success or failure hooks."""

    POST = {
        "always": [{"name": "Cleanup", "run": "cleanup"}],
        "success": [{"name": "Celebrate", "run": "celebrate"}],
        "failure": [{"name": "Page", "run": "page"}],
    }

    def test_success_hooks(self, runner, context):
        result = execute({"stages": [{"name": "A", "run": "a"}], "post": self.POST}, context, runner=runner)
        assert result.success
        assert runner.calls == ["a", "cleanup", "celebrate"]
        assert [h.name for h in result.hooks] == ["Cleanup", "Celebrate"]

    def test_failure_hooks(self, context):
        runner = FakeRunner({"a": 1})
        result = execute({"stages": [{"name": "A", "run": "a"}], "post": self.POST}, context, runner=runner)
        assert runner.calls == ["a", "cleanup", "page"]
        assert result.failed_stages() == ["A"]

    def test_failing_hook_fails_run(self, context):
        runner = FakeRunner({"cleanup": 1})
        result = execute({"stages": [{"name": "A", "run": "a"}], "post": self.POST}, context, runner=runner)
        assert not result.success
        assert runner.calls == ["a", "cleanup", "celebrate"]


class TestInterrupt:
    def test_stop_request_skips_remaining_but_runs_always(self, context):
        def stop_after_first(command, env):
            request_stop()
            return 0

        runner = FakeRunner({"a": stop_after_first})
        result = execute(
            {"stages": [
                {"name": "A", "run": "a"},
                {"name": "B", "run": "b"},
                {"name": "C", "run": "c", "always": True},
            ]},
            context,
            runner=runner,
        )

        assert result.interrupted
        assert not result.success
        assert runner.calls == ["a", "c"]
        assert result.find("B").reason == "interrupted"


class TestArtifacts:
    def test_successful_stage_collects_artifacts(self, context, tmp_path):
        from pipewright.artifacts import ArtifactCollector

        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "main.js").write_text("console.log(1)", encoding="utf-8")

        result = execute(
            {"stages": [{"name": "Build", "run": "build", "artifacts": ["dist"]}]},
            context,
            artifacts=ArtifactCollector(tmp_path / "out"),
            root=tmp_path,
        )

        assert result.find("Build").artifacts == ("build/dist/main.js",)
        assert (tmp_path / "out" / "build" / "dist" / "main.js").exists()

    def test_collection_error_fails_stage_and_always_still_runs(self, context, tmp_path):
        from pipewright.artifacts import ArtifactCollector

        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "main.js").write_text("console.log(1)", encoding="utf-8")
        # Destination is a regular file, so nothing can be copied under it
        (tmp_path / "out").write_text("", encoding="utf-8")
        runner = FakeRunner()

        result = execute(
            {"stages": [
                {"name": "Build", "run": "build", "artifacts": ["dist"]},
                {"name": "Publish", "run": "publish"},
                {"name": "Cleanup", "run": "cleanup", "always": True},
            ]},
            context,
            runner=runner,
            artifacts=ArtifactCollector(tmp_path / "out"),
            root=tmp_path,
        )

        build = result.find("Build")
        assert build.failed
        assert build.exit_code == 0
        assert isinstance(build.failure, StageExecutionError)
        assert "artifact collection failed" in build.error
        assert result.find("Publish").skipped
        assert result.find("Cleanup").success
        assert runner.calls == ["build", "cleanup"]
        assert not result.success

    def test_collection_error_in_group_member_keeps_siblings_joined(self, context, tmp_path):
        from pipewright.artifacts import ArtifactCollector

        (tmp_path / "coverage").mkdir()
        (tmp_path / "coverage" / "lcov.info").write_text("TN:", encoding="utf-8")
        (tmp_path / "out").write_text("", encoding="utf-8")
        runner = FakeRunner(delay=0.05)

        result = execute(
            {"stages": [
                {"name": "Test", "parallel": [
                    {"name": "Unit", "run": "unit", "artifacts": ["coverage"]},
                    {"name": "Lint", "run": "lint"},
                ]},
                {"name": "Cleanup", "run": "cleanup", "always": True},
            ]},
            context,
            runner=runner,
            artifacts=ArtifactCollector(tmp_path / "out"),
            root=tmp_path,
        )

        group = result.find("Test")
        assert group.failed
        assert [c.name for c in group.children] == ["Unit", "Lint"]
        assert [c.status for c in group.children] == [TaskStatus.FAILED, TaskStatus.SUCCESS]
        assert result.find("Cleanup").success


class ExplodingApprover:
    async def request(self, stage, message):
        raise RuntimeError("terminal went away")


class TestCrashingMember:
    def test_member_that_raises_is_recorded_and_siblings_finish(self, main_context):
        runner = FakeRunner(delay=0.05)
        result = execute(
            {"stages": [
                {"name": "Release", "parallel": [
                    {"name": "Deploy", "approval": "Ship?", "run": "deploy"},
                    {"name": "Docs", "run": "docs"},
                ]},
            ]},
            main_context,
            runner=runner,
            gates=GateEvaluator(ExplodingApprover()),
        )

        group = result.find("Release")
        assert group.failed
        deploy, docs = group.children
        assert deploy.failed
        assert "terminal went away" in deploy.error
        assert docs.success
        assert runner.calls == ["docs"]
