"""Tests for smartaudit.modules.proc — async subprocess runner."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from smartaudit.modules.proc import run_cmd


def test_captures_output_and_exit_code(tmp_path: Path) -> None:
    result = asyncio.run(
        run_cmd([sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"], cwd=tmp_path)
    )
    assert result.exit_code == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


def test_env_is_merged() -> None:
    result = asyncio.run(
        run_cmd([sys.executable, "-c", "import os; print(os.environ['SMARTAUDIT_CHILD_ENV'])"], env={"SMARTAUDIT_CHILD_ENV": "42"})
    )
    assert result.ok
    assert result.stdout.strip() == "42"


def test_command_str_is_redacted() -> None:
    token = "ghp_" + "x" * 36
    result = asyncio.run(run_cmd([sys.executable, "-c", "pass", token]))
    assert token not in result.command_str


def test_missing_executable() -> None:
    with pytest.raises(FileNotFoundError):
        asyncio.run(run_cmd(["definitely-not-a-real-binary-smartaudit"]))


def test_timeout_kills_process() -> None:
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run_cmd([sys.executable, "-c", "import time; time.sleep(30)"], timeout_seconds=0.5))
