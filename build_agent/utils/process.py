"""Subprocess helpers: spawn in a process group, stream output, enforce timeouts."""

import asyncio
import contextlib
import logging
import os
import re
import signal
from collections.abc import Awaitable, Callable, Sequence

from build_agent.errors import SetupError, SubprocessTimeout

logger = logging.getLogger(__name__)

# CSI and friends, as emitted by yarn/npm/webpack progress output.
ANSI_ESCAPE = re.compile(
    r"[\x1b\x9b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"
)

MAX_LINE_BYTES = 1024 * 1024
# How long to keep reading pipes after the process exited. Grandchildren that
# inherited the pipes can otherwise hold them open forever.
DRAIN_TIMEOUT = 5.0

LineHandler = Callable[[str, str], Awaitable[None]]


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


async def pump_lines(
    stream: asyncio.StreamReader, level: str, on_line: LineHandler
) -> None:
    """Forward each line of stream to on_line, escape-stripped."""
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            logger.warning("Output line exceeded %d bytes, skipping", MAX_LINE_BYTES)
            continue
        if not raw:
            return
        line = strip_ansi(raw.decode("utf-8", errors="replace")).rstrip("\r\n")
        if line.strip():
            await on_line(line, level)


async def spawn_process(
    command: str | Sequence[str],
    *,
    cwd: str,
    env: dict[str, str] | None = None,
    shell: bool = False,
    pass_fds: Sequence[int] = (),
) -> asyncio.subprocess.Process:
    """Start command in its own process group with piped stdout/stderr."""
    kwargs = dict(
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=MAX_LINE_BYTES,
        start_new_session=True,
    )
    try:
        if shell:
            return await asyncio.create_subprocess_shell(command, **kwargs)
        return await asyncio.create_subprocess_exec(
            *command, pass_fds=tuple(pass_fds), **kwargs
        )
    except FileNotFoundError as e:
        name = command if isinstance(command, str) else command[0]
        raise SetupError(f"Cannot execute {name}: {e.strerror}") from e


async def terminate_process_group(
    proc: asyncio.subprocess.Process, grace: float
) -> None:
    """SIGTERM the process group, escalating to SIGKILL after grace seconds."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), grace)
    except asyncio.TimeoutError:
        logger.warning("Process group %d ignored SIGTERM, killing", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
        await proc.wait()


async def supervise(
    proc: asyncio.subprocess.Process,
    readers: Sequence[Awaitable[None]],
    *,
    timeout: float | None = None,
    kill_grace: float = 5.0,
) -> int:
    """Wait for proc to exit while readers consume its output.

    Returns the exit code. Raises SubprocessTimeout if timeout elapses; on
    timeout or cancellation the whole process group is terminated. Readers are
    always finished or cancelled before returning.
    """
    tasks = [asyncio.ensure_future(r) for r in readers]
    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            await terminate_process_group(proc, kill_grace)
            raise SubprocessTimeout(timeout) from None
        except asyncio.CancelledError:
            await terminate_process_group(proc, kill_grace)
            raise

        if tasks:
            await asyncio.wait(tasks, timeout=DRAIN_TIMEOUT)
        for task in tasks:
            if task.done() and not task.cancelled() and task.exception():
                raise task.exception()
        return proc.returncode
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def run_streaming(
    command: str | Sequence[str],
    *,
    cwd: str,
    on_line: LineHandler,
    env: dict[str, str] | None = None,
    shell: bool = False,
    timeout: float | None = None,
    kill_grace: float = 5.0,
) -> int:
    """Run command to completion, streaming stdout as info and stderr as error."""
    proc = await spawn_process(command, cwd=cwd, env=env, shell=shell)
    return await supervise(
        proc,
        [pump_lines(proc.stdout, "info", on_line), pump_lines(proc.stderr, "error", on_line)],
        timeout=timeout,
        kill_grace=kill_grace,
    )
