"""Commands module for pipewright CLI."""
