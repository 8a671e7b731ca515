"""Centralized exit codes for the pipewright CLI."""


class ExitCodes:
    """Standard exit codes for pipewright CLI commands."""

    SUCCESS = 0

    PIPELINE_FAILED = 1

    MALFORMED_SPEC = 2

    INTERRUPTED = 130
