"""pipewright CLI - Main entry point and command registration hub."""
# ruff: noqa: E402 - Intentional lazy loading: commands imported after cli group definition

import click
from rich.table import Table

from pipewright import __version__
from pipewright.pipeline.ui import console


class VerboseGroup(click.Group):
    """Help system that groups registered commands by category."""

    def format_commands(self, ctx, formatter):
        """Override to suppress default command listing (we use categorized format in format_help)."""
        pass

    COMMAND_CATEGORIES = {
        "PROJECT_SETUP": {
            "title": "PROJECT SETUP",
            "description": "Create and check pipeline descriptions",
            "commands": ["init", "validate"],
            "command_meta": {
                "init": {
                    "run_when": "Once per project, before the first run",
                },
                "validate": {
                    "use_when": "After editing pipewright.yml",
                },
            },
        },
        "EXECUTION": {
            "title": "EXECUTION",
            "description": "Run pipelines and readiness checks",
            "commands": ["run", "probe"],
            "command_meta": {
                "run": {
                    "use_when": "Build, test and deploy the current checkout",
                },
                "probe": {
                    "use_when": "Wait for a deployed service to report healthy",
                },
            },
        },
    }

    def format_help(self, ctx, formatter):
        """Generate Rich-styled categorized help."""
        super().format_help(ctx, formatter)

        registered = {
            name: cmd
            for name, cmd in self.commands.items()
            if not name.startswith("_") and not getattr(cmd, "hidden", False)
        }

        console.print()
        console.rule("[bold]COMMANDS[/bold]")

        for _category_id, category_data in self.COMMAND_CATEGORIES.items():
            console.print(f"\n[bold cyan]{category_data['title']}[/bold cyan]")
            console.print(f"[dim]{category_data['description']}[/dim]")

            table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
            table.add_column("Command", style="cmd", width=12)
            table.add_column("Description", style="white")
            table.add_column("When", style="dim", width=48)

            for cmd_name in category_data["commands"]:
                if cmd_name not in registered:
                    continue
                cmd = registered[cmd_name]

                first_line = (cmd.help or "").split("\n")[0].strip()
                period_idx = first_line.find(".")
                short_help = first_line[:period_idx] if period_idx > 0 else first_line
                if len(short_help) > 45:
                    short_help = short_help[:45].rsplit(" ", 1)[0] + "..."

                cmd_meta = category_data.get("command_meta", {}).get(cmd_name, {})
                hint = ""
                if "use_when" in cmd_meta:
                    hint = f"USE: {cmd_meta['use_when']}"
                elif "run_when" in cmd_meta:
                    hint = f"RUN: {cmd_meta['run_when']}"

                table.add_row(cmd_name, short_help, hint)

            console.print(table)

        console.print()
        console.rule()
        console.print("For detailed options: [cmd]pipewright <command> --help[/cmd]")


@click.group(cls=VerboseGroup)
@click.version_option(version=__version__, prog_name="pipewright")
@click.help_option("-h", "--help")
def cli():
    """pipewright - Declarative CI/CD pipeline runner

    \b
    QUICK START:
      pipewright init            # Write a starter pipewright.yml
      pipewright validate        # Check it without running anything
      pipewright run             # Execute every stage

    \b
    For detailed options: pipewright <command> --help"""
    pass


from pipewright.commands.init import init
from pipewright.commands.probe import probe
from pipewright.commands.run import run
from pipewright.commands.validate import validate

cli.add_command(init)
cli.add_command(validate)
cli.add_command(run)
cli.add_command(probe)


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
