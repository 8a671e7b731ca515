"""Write a starter pipeline description."""

import sys
from importlib import resources
from pathlib import Path

import click

from pipewright.pipeline.ui import console, print_error, print_success, print_warning
from pipewright.utils.constants import DEFAULT_PIPELINE_FILE
from pipewright.utils.error_handler import handle_exceptions
from pipewright.utils.exit_codes import ExitCodes

TEMPLATE_NAME = "default_pipeline.yml"


def default_template() -> str:
    return resources.files("pipewright.templates").joinpath(TEMPLATE_NAME).read_text(encoding="utf-8")


@click.command()
@handle_exceptions
@click.option("--root", default=".", help="Project directory")
@click.option("--name", default=None, help="Pipeline name (default: directory name)")
@click.option("--force", is_flag=True, help="Overwrite an existing pipeline file")
def init(root, name, force):
    """Create pipewright.yml from the starter template.

    The template describes a typical service pipeline: checkout, install,
    lint, parallel unit and integration tests against a disposable test
    environment, build, security scan, container image, approved deploy on
    main, health check, cleanup and notification. Edit it to taste, then
    run 'pipewright validate'.

    Examples:
      pipewright init
      pipewright init --name payments-api --force"""
    target = Path(root) / DEFAULT_PIPELINE_FILE
    if target.exists() and not force:
        print_error(f"{target} already exists (use --force to overwrite)")
        sys.exit(ExitCodes.PIPELINE_FAILED)
    if target.exists():
        print_warning(f"Overwriting {target}")

    pipeline_name = name or Path(root).resolve().name or "pipeline"
    text = default_template().replace("name: my-service", f"name: {pipeline_name}", 1)

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")

    print_success(f"Wrote {target}")
    console.print("Next: [cmd]pipewright validate[/cmd] then [cmd]pipewright run[/cmd]")
