"""
Async subprocess execution with captured output, timeout and cancellation.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence, Type

from lambda_plugins.lib.errors import ProcessError

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Captured output of a finished process."""

    stdout: bytes
    stderr: bytes
    exit_code: int

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


async def run_process(
    cmd: str,
    args: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
    error_type: Type[ProcessError] = ProcessError,
) -> ProcessResult:
    """Run a command to completion and capture stdout/stderr.

    Args:
        cmd: Executable to run
        args: Arguments passed to the executable
        cwd: Working directory
        env: Environment for the child (inherits ours when None)
        timeout: Seconds before the process is killed
        cancel: Event that kills the process when set
        error_type: ProcessError subclass raised on failure

    Raises:
        error_type: On spawn failure, non-zero exit, timeout or cancellation.
            Partial output captured before a kill is attached.
    """
    args = list(args)
    try:
        proc = await asyncio.create_subprocess_exec(
            cmd, *args,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise error_type(cmd, args, None, reason=f"could not be started ({e})") from e

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future] = {communicate}
    cancel_wait: Optional[asyncio.Future] = None
    if cancel is not None:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if communicate not in done:
            reason = "was cancelled" if cancel is not None and cancel.is_set() else (
                f"timed out after {timeout}s"
            )
            logger.warning(f"Killing {cmd}: {reason}")
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            stdout, stderr = await communicate
            raise error_type(cmd, args, proc.returncode, stdout, stderr, reason=reason)
    except asyncio.CancelledError:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        communicate.cancel()
        raise
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()

    stdout, stderr = communicate.result()
    if proc.returncode != 0:
        raise error_type(cmd, args, proc.returncode, stdout, stderr)
    return ProcessResult(stdout=stdout, stderr=stderr, exit_code=proc.returncode)
