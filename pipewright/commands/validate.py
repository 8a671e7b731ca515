"""Validate a pipeline description without running it."""

import sys

import click
from rich.markup import escape
from rich.tree import Tree

from pipewright.errors import MalformedSpec
from pipewright.pipeline.ui import console, print_error, print_success
from pipewright.plan import ExecutionPlan, Stage
from pipewright.utils.error_handler import handle_exceptions
from pipewright.utils.exit_codes import ExitCodes


def _describe(stage: Stage) -> str:
    if stage.is_group:
        body = f"[dim]parallel x{len(stage.parallel)}[/dim]"
    elif stage.image is not None:
        body = f"[dim]image[/dim] {escape(stage.image.tag)}"
    elif stage.health is not None:
        body = f"[dim]health[/dim] {escape(stage.health.url)}"
    elif isinstance(stage.command, str):
        body = f"[dim]run[/dim] {escape(stage.command.strip().splitlines()[0])}"
    else:
        body = f"[dim]run[/dim] {escape(' '.join(stage.command))}"

    notes = [gate.describe() for gate in stage.gates]
    if stage.always:
        notes.append("always")
    if stage.export:
        notes.append(f"export {stage.export}")
    if stage.resources:
        notes.append(f"holds {', '.join(stage.resources)}")
    if stage.artifacts:
        notes.append(f"artifacts {', '.join(stage.artifacts)}")

    label = f"[stage]{escape(stage.name)}[/stage]  {body}"
    if notes:
        label += f"  [warning]({escape('; '.join(notes))})[/warning]"
    return label


def plan_tree(plan: ExecutionPlan) -> Tree:
    """Render a plan as a Rich tree."""
    tree = Tree(f"[bold]{escape(plan.name)}[/bold]  [dim]{escape(plan.source or '')}[/dim]")

    if plan.environment:
        env = tree.add("[bold]environment[/bold]")
        for key, value in plan.environment.items():
            env.add(escape(f"{key}={value}"))

    stages = tree.add("[bold]stages[/bold]")
    for stage in plan.stages:
        node = stages.add(_describe(stage))
        for member in stage.parallel:
            node.add(_describe(member))

    for outcome, hooks in plan.post.items():
        post = tree.add(f"[bold]post ({outcome})[/bold]")
        for hook in hooks:
            post.add(_describe(hook))

    if plan.notify:
        target = "webhook" if plan.notify.webhook else "log"
        tree.add(f"[bold]notify[/bold] {escape(plan.notify.channel)} via {target} on {', '.join(plan.notify.on)}")

    return tree


@click.command()
@handle_exceptions
@click.option("--root", default=".", help="Project directory")
@click.option(
    "--file", "-f", "pipeline_file", default=None, help="Pipeline file (default: pipewright.yml)"
)
@click.option("--quiet", is_flag=True, help="Only report problems")
def validate(root, pipeline_file, quiet):
    """Check a pipeline description and show the execution plan.

    Every structural problem is reported at once: unknown keys, duplicate
    stage names, stages without a body, nested parallel groups, exports
    from parallel members, undefined ${VAR} references and undeclared
    resources. Nothing is executed.

    Examples:
      pipewright validate
      pipewright validate --file ci/release.yml

    Exit Codes:
      0 = Pipeline is valid
      2 = Pipeline description is malformed"""
    from pipewright.config_runtime import load_runtime_config
    from pipewright.pipelines import pipeline_file_for
    from pipewright.plan import load_plan

    config = load_runtime_config(root)
    path = pipeline_file_for(root, config, pipeline_file)

    try:
        plan = load_plan(path)
    except MalformedSpec as e:
        print_error(f"{path} is not a valid pipeline ({len(e.problems)} problem(s))")
        for problem in e.problems:
            console.print(f"  - {problem}", markup=False)
        sys.exit(ExitCodes.MALFORMED_SPEC)

    if not quiet:
        console.print(plan_tree(plan))
    print_success(f"{path}: {plan.stage_count()} stages")
