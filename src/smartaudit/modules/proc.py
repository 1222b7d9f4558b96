"""Async command execution shared by the stage collaborators.

:func:`run_cmd` runs a subprocess without a shell, captures its output and
kills it when the timeout expires.

Non-zero exit codes are returned, not raised: several analyzers exit
non-zero precisely when they found something.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from smartaudit.modules.redact import redact_secrets

logger = structlog.get_logger()


@dataclass(frozen=True)
class CmdResult:
    exit_code: int
    elapsed_seconds: float
    command_str: str
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def run_cmd(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> CmdResult:
    """Run *cmd* and capture stdout/stderr as text.

    Raises
    ------
    FileNotFoundError
        If the executable does not exist.
    TimeoutError
        If the process outlives *timeout_seconds* (it is killed first).
    """
    merged_env = None
    if env is not None:
        merged_env = os.environ.copy()
        merged_env.update(env)

    command_str = redact_secrets(" ".join(cmd))
    t0 = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        proc.kill()
        await proc.wait()
        logger.warning("command_killed", command=command_str, timeout=timeout_seconds)
        raise

    elapsed = time.monotonic() - t0
    result = CmdResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        elapsed_seconds=elapsed,
        command_str=command_str,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )
    logger.debug("command_finished", command=command_str, exit_code=result.exit_code, elapsed=round(elapsed, 2))
    return result
