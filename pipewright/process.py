"""External process execution for stages.

AsyncIO + memory pipes: no temp files for subprocess IPC. Output is read
incrementally so a chatty command can never block on a full pipe; bytes past
the per-stream cap are drained and dropped.
"""

import asyncio
import os
import platform
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from pipewright.utils.logging import logger

IS_WINDOWS = platform.system() == "Windows"

# Exit code reported when the command could not be started at all
SPAWN_FAILURE_EXIT_CODE = 127

READ_CHUNK_SIZE = 64 * 1024

# Grace period for reading what is left in the pipes once the command exits
PIPE_DRAIN_SECONDS = 0.5
EXIT_POLL_SECONDS = 0.05

Command = str | Sequence[str]


@dataclass(frozen=True)
class ProcessOutcome:
    """What one external command did."""

    returncode: int | None
    stdout: str
    stderr: str
    elapsed: float
    truncated: bool = False
    timed_out: bool = False
    spawn_error: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.spawn_error


class ProcessRunner(Protocol):
    """Capability that executes one external command."""

    async def run(
        self,
        command: Command,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessOutcome:
        ...


class _CappedBuffer:
    """Keeps the first ``limit`` bytes of a stream and counts the rest."""

    def __init__(self, limit: int | None):
        self.limit = limit
        self.chunks: list[bytes] = []
        self.kept = 0
        self.dropped = 0

    def feed(self, data: bytes) -> None:
        if self.limit is None:
            self.chunks.append(data)
            self.kept += len(data)
            return
        room = self.limit - self.kept
        if room > 0:
            self.chunks.append(data[:room])
            self.kept += min(room, len(data))
        self.dropped += max(0, len(data) - max(room, 0))

    def text(self) -> str:
        data = b"".join(self.chunks)
        if self.dropped:
            data = _trim_partial_utf8(data)
        return data.decode("utf-8", errors="replace")


def _trim_partial_utf8(data: bytes) -> bytes:
    """Drop a multi-byte UTF-8 sequence cut short at the end of ``data``."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            # continuation byte, keep looking for the lead byte
            continue
        if byte >= 0xC0:
            needed = 2 if byte < 0xE0 else 3 if byte < 0xF0 else 4
            if needed > back:
                return data[:-back]
        return data
    return data


async def _pump(stream: asyncio.StreamReader | None, buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        buffer.feed(data)


async def _wait_exit(process: asyncio.subprocess.Process) -> int:
    """Return once the command itself has exited.

    Process.wait() may also hold out for the pipes to close, which never
    happens while a backgrounded child keeps stdout open.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return process.returncode


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if IS_WINDOWS:
            process.kill()
        else:
            # Shell commands run in their own session; take down the whole group
            os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class SubprocessRunner:
    """Runs commands with asyncio subprocesses.

    A string command goes through the shell; a sequence is executed directly.
    Exit codes are reported exactly as the process returned them.
    """

    async def run(
        self,
        command: Command,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessOutcome:
        start_time = time.time()
        env_dict = dict(env) if env is not None else None

        try:
            if isinstance(command, str):
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env_dict,
                    start_new_session=not IS_WINDOWS,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env_dict,
                    start_new_session=not IS_WINDOWS,
                )
        except OSError as e:
            logger.error("Could not start {}: {}", _display(command), e)
            return ProcessOutcome(
                returncode=SPAWN_FAILURE_EXIT_CODE,
                stdout="",
                stderr=f"Subprocess error: {e}",
                elapsed=time.time() - start_time,
                spawn_error=str(e),
            )

        out_buf = _CappedBuffer(max_output_bytes)
        err_buf = _CappedBuffer(max_output_bytes)
        timed_out = False

        pumps = [
            asyncio.ensure_future(_pump(process.stdout, out_buf)),
            asyncio.ensure_future(_pump(process.stderr, err_buf)),
        ]

        try:
            await asyncio.wait_for(_wait_exit(process), timeout=timeout)
        except TimeoutError:
            timed_out = True
            logger.warning("Command timed out after {}s: {}", timeout, _display(command))
            _kill(process)
            await _wait_exit(process)
        except asyncio.CancelledError:
            _kill(process)
            await _wait_exit(process)
            for pump in pumps:
                pump.cancel()
            raise

        # A backgrounded child may still hold the pipes; read what is there and move on
        done, pending = await asyncio.wait(pumps, timeout=PIPE_DRAIN_SECONDS)
        for pump in pending:
            pump.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug("Output pipes of {} still open after exit; stopped reading", _display(command))
        for pump in done:
            pump.result()

        stderr = err_buf.text()
        if timed_out:
            stderr += f"\nCommand timed out after {timeout:g}s"

        truncated = bool(out_buf.dropped or err_buf.dropped)
        if truncated:
            logger.debug(
                "Output of {} truncated ({} stdout / {} stderr bytes dropped)",
                _display(command),
                out_buf.dropped,
                err_buf.dropped,
            )

        return ProcessOutcome(
            returncode=process.returncode,
            stdout=out_buf.text(),
            stderr=stderr,
            elapsed=time.time() - start_time,
            truncated=truncated,
            timed_out=timed_out,
        )


def _display(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(c) for c in command)
