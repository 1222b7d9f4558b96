"""Source acquisition + content validation.

* :class:`GitSourceAcquirer` shallow-clones a remote into the clones
  directory (``<repo-name>-<epoch-ms>``) or uses a local directory in place.
* :class:`SolidityContentValidator` checks the checkout holds at least one
  ``.sol`` file.

Both are hard stages: they raise :class:`AcquisitionError` /
:class:`ValidationError` and the coordinator fails the run.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import structlog

from smartaudit.core.contracts import AcquiredSource, ValidationSummary
from smartaudit.core.errors import AcquisitionError, ValidationError
from smartaudit.modules.proc import run_cmd
from smartaudit.modules.redact import is_local_ref, redact_secrets, repo_name

logger = structlog.get_logger()

_SKIP_DIRS = frozenset({"node_modules", ".git"})


def find_solidity_files(root: Path) -> list[Path]:
    """Recursively list ``.sol`` files, skipping dependency/build directories."""
    found: list[Path] = []
    for path in sorted(root.rglob("*.sol")):
        rel_parts = path.relative_to(root).parts[:-1]
        if any(part in _SKIP_DIRS for part in rel_parts):
            continue
        if path.is_file():
            found.append(path)
    return found


class GitSourceAcquirer:
    """Fetch a repository with the ``git`` CLI."""

    def __init__(self, clones_dir: Path, *, timeout_seconds: float = 300.0) -> None:
        self.clones_dir = clones_dir
        self.timeout_seconds = timeout_seconds

    async def acquire(self, repo_ref: str, branch: str) -> AcquiredSource:
        if is_local_ref(repo_ref):
            local = Path(repo_ref).resolve()
            logger.info("source_local", path=str(local))
            return AcquiredSource(local_path=local, commit=await self._head(local), cloned=False)

        target = self.clones_dir / f"{repo_name(repo_ref)}-{int(time.time() * 1000)}"
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info("clone_started", repo=repo_ref, branch=branch, target=str(target))

        try:
            result = await run_cmd(
                ["git", "clone", "--depth", "1", "--branch", branch, repo_ref, str(target)],
                env={"GIT_TERMINAL_PROMPT": "0"},
                timeout_seconds=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise AcquisitionError("git executable not found on PATH") from exc
        except asyncio.TimeoutError as exc:
            raise AcquisitionError(f"git clone timed out after {self.timeout_seconds:g}s") from exc

        if not result.ok:
            detail = redact_secrets(result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "")
            raise AcquisitionError(f"Clone failed (exit {result.exit_code}): {detail}")

        commit = await self._head(target)
        logger.info("clone_complete", repo=repo_ref, commit=commit)
        return AcquiredSource(local_path=target, commit=commit, cloned=True)

    async def _head(self, path: Path) -> str:
        try:
            result = await run_cmd(["git", "rev-parse", "HEAD"], cwd=path, timeout_seconds=30)
        except (FileNotFoundError, asyncio.TimeoutError):
            return "unknown"
        return result.stdout.strip() if result.ok and result.stdout.strip() else "unknown"


class SolidityContentValidator:
    """Require at least one Solidity source file."""

    async def validate(self, local_path: Path) -> ValidationSummary:
        if not local_path.is_dir():
            raise ValidationError(f"Checkout is not a directory: {local_path}")
        try:
            files = await asyncio.to_thread(find_solidity_files, local_path)
        except OSError as exc:
            raise ValidationError(f"Could not scan checkout: {exc}") from exc
        if not files:
            raise ValidationError("No Solidity (.sol) files found in repository")
        rel = [str(p.relative_to(local_path)) for p in files]
        logger.info("content_validated", file_count=len(rel))
        return ValidationSummary(file_count=len(rel), files=rel)
