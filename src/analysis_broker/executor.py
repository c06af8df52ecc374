"""Subprocess invocation of the external analysis tool.

Launch and collection are separate steps so the caller can account for a
launched process (quota) before waiting on it. Output is streamed chunk by
chunk to an observer; a timeout or cancellation kills the child process
rather than abandoning it.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import structlog

from analysis_broker.exceptions import (
    ToolExecutionError,
    ToolNotInstalledError,
    ToolTimeoutError,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_READ_CHUNK_BYTES = 4096

StreamName = Literal["stdout", "stderr"]
ChunkObserver = Callable[[StreamName, str], None]

_PHASE_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("formatting", ("format", "summary", "```", "{")),
    ("analyzing", ("analyz", "analys", "review", "inspect")),
    ("scanning", ("scan", "reading", "files", "loading")),
    ("preparing", ("prepar", "init", "start")),
]


@dataclass(frozen=True)
class ToolOutput:
    """Captured output of a finished tool process."""

    stdout: str
    stderr: str
    exit_code: int


def infer_phase(chunk: str, previous: str = "preparing") -> str:
    """Guess the tool's progress phase from an output chunk.

    Best effort only; returns ``previous`` when nothing matches.
    """
    lower = chunk.lower()
    for phase, markers in _PHASE_MARKERS:
        if any(marker in lower for marker in markers):
            return phase
    return previous


def find_binary(binary: str) -> str:
    """Resolve ``binary`` on PATH (or as a path) to an executable.

    Raises:
        ToolNotInstalledError: If no executable is found.
    """
    if Path(binary).name != binary:
        candidate = Path(binary)
        if candidate.is_file():
            return str(candidate)
        raise ToolNotInstalledError(binary)
    resolved = shutil.which(binary)
    if resolved is None:
        raise ToolNotInstalledError(binary)
    return resolved


async def spawn_tool(binary_path: str, args: list[str]) -> asyncio.subprocess.Process:
    """Launch the tool with piped stdout/stderr and no stdin.

    Raises:
        ToolNotInstalledError: If the executable disappeared.
        ToolExecutionError: If the OS refused to start it.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            binary_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolNotInstalledError(binary_path) from exc
    except OSError as exc:
        raise ToolExecutionError(f"Failed to execute command: {exc}") from exc

    logger.debug("tool_process_started", pid=process.pid, binary=binary_path)
    return process


async def _drain(
    stream: asyncio.StreamReader | None,
    name: StreamName,
    sink: list[str],
    on_chunk: ChunkObserver | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_CHUNK_BYTES)
        final = not data
        chunk = decoder.decode(data, final=final)
        if chunk:
            sink.append(chunk)
            if on_chunk is not None:
                on_chunk(name, chunk)
        if final:
            return


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
    logger.warning("tool_process_killed", pid=process.pid)


async def collect_output(
    process: asyncio.subprocess.Process,
    timeout_seconds: float,
    on_chunk: ChunkObserver | None = None,
) -> ToolOutput:
    """Stream the process's output until it exits or the timeout expires.

    Args:
        process: A process started by ``spawn_tool``.
        timeout_seconds: Wall-clock bound for the whole run.
        on_chunk: Called with each decoded stdout/stderr chunk.

    Returns:
        The captured output of a zero-exit run.

    Raises:
        ToolTimeoutError: The bound elapsed; the process was killed.
        ToolExecutionError: The process exited non-zero.
    """
    stdout: list[str] = []
    stderr: list[str] = []
    try:
        async with asyncio.timeout(timeout_seconds):
            await asyncio.gather(
                _drain(process.stdout, "stdout", stdout, on_chunk),
                _drain(process.stderr, "stderr", stderr, on_chunk),
            )
            exit_code = await process.wait()
    except TimeoutError as exc:
        await _kill(process)
        logger.warning("tool_process_timeout", pid=process.pid, timeout=timeout_seconds)
        raise ToolTimeoutError(timeout_seconds) from exc
    except asyncio.CancelledError:
        await _kill(process)
        raise

    output = ToolOutput(stdout="".join(stdout), stderr="".join(stderr), exit_code=exit_code)
    if exit_code != 0:
        stderr_text = output.stderr.strip()
        raise ToolExecutionError(
            f"Command failed with code {exit_code}: {stderr_text}",
            exit_code=exit_code,
            stderr=stderr_text,
        )
    return output


async def probe_version(binary: str, timeout_seconds: float = 10.0) -> str | None:
    """Return the first line of ``<binary> --version``, or None if unavailable."""
    try:
        process = await spawn_tool(find_binary(binary), ["--version"])
        output = await collect_output(process, timeout_seconds)
    except (ToolNotInstalledError, ToolExecutionError, ToolTimeoutError) as exc:
        logger.debug("tool_version_probe_failed", binary=binary, error=str(exc))
        return None
    first_line = output.stdout.strip().splitlines()
    return first_line[0] if first_line else None
