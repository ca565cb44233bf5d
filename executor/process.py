"""
Scoped subprocess execution for git and preflight commands.

Every child is spawned in its own session so that a timeout or a cancelled
worker can kill the whole process group (npm/pytest spawn grandchildren).
The child is always reaped before ``run_command`` returns or raises.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import structlog

logger = structlog.get_logger()

TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """stdout and stderr joined, the way a terminal would show them."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def tail(text: str, limit: int = 3000) -> str:
    """Keep the end of ``text``, where compilers and test runners put the verdict."""
    if len(text) <= limit:
        return text
    return "...(truncated)...\n" + text[-limit:]


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def _drain(stream: Optional[asyncio.StreamReader], sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.extend(chunk)


async def run_command(
    command: Union[str, Sequence[str]],
    cwd: Optional[str] = None,
    timeout: float = 120,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """Run ``command`` and capture its output.

    A string is run through the shell (preflight commands such as
    ``npm run lint && tsc``); a sequence is exec'd directly (git).
    On timeout the process group is killed and exit code 124 is returned
    along with whatever the command printed before it was killed.
    """
    start = time.monotonic()
    full_env = {**os.environ, **env} if env else None

    if isinstance(command, str):
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=full_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        label = command[:100]
    else:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=full_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        label = " ".join(command)[:100]

    # read incrementally so a timeout keeps the partial output
    stdout, stderr = bytearray(), bytearray()
    readers = asyncio.gather(_drain(proc.stdout, stdout), _drain(proc.stderr, stderr))
    try:
        await asyncio.wait_for(asyncio.gather(readers, proc.wait()), timeout=timeout)
    except asyncio.TimeoutError:
        await logger.awarning("Command timed out", command=label, timeout=timeout)
        partial = stderr.decode(errors="replace").rstrip()
        return CommandResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout.decode(errors="replace"),
            stderr=(partial + "\n" if partial else "") + f"Command timed out after {timeout}s",
            duration_seconds=time.monotonic() - start,
            timed_out=True,
        )
    finally:
        if proc.returncode is None:
            _kill_group(proc)
            await proc.wait()

    return CommandResult(
        exit_code=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        duration_seconds=time.monotonic() - start,
    )
