"""Poll a health endpoint until it reports ready."""

import asyncio
import sys

import click

from pipewright.pipeline.ui import print_error, print_success
from pipewright.utils.error_handler import handle_exceptions
from pipewright.utils.exit_codes import ExitCodes


@click.command()
@handle_exceptions
@click.argument("url")
@click.option("--expect", default="ok", show_default=True, help="Token the response body must contain")
@click.option("--timeout", type=float, default=None, help="Seconds before giving up (default from config)")
@click.option("--interval", type=float, default=None, help="Seconds between attempts (default from config)")
@click.option("--root", default=".", help="Project directory (for .pipewright/config.json)")
def probe(url, expect, timeout, interval, root):
    """Wait until URL answers 2xx with EXPECT in its body.

    Uses the same poller as health stages: one attempt per interval, never
    past the deadline, a hung request counts as a failed attempt.

    Examples:
      pipewright probe http://localhost:3000/health
      pipewright probe https://api.example.com/health --expect '"status":"ok"' --timeout 120

    Exit Codes:
      0 = Endpoint became healthy
      1 = Deadline passed"""
    from pipewright.config_runtime import load_runtime_config
    from pipewright.health import HealthPoller, HttpProbe

    config = load_runtime_config(root)
    timeout = timeout if timeout is not None else config["timeouts"]["health"]
    interval = interval if interval is not None else config["timeouts"]["health_interval"]

    if timeout < 0 or interval <= 0:
        raise click.BadParameter("timeout must be >= 0 and interval > 0")

    healthy = asyncio.run(HealthPoller().poll(HttpProbe(url, expect), timeout, interval))

    if healthy:
        print_success(f"{url} is healthy")
        return
    print_error(f"{url} did not report '{expect}' within {timeout:g}s")
    sys.exit(ExitCodes.PIPELINE_FAILED)
