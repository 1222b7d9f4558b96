"""Collaborator contracts consumed by the pipeline coordinator.

Each stage collaborator is a structural :class:`~typing.Protocol`, so the
shipped implementations in :mod:`smartaudit.modules` and the fakes used in
tests are interchangeable without a common base class.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from smartaudit.core.models import Finding, Fix
from smartaudit.core.normalizer import SourceOutput


# ── Stage payloads ──────────────────────────────────────────
@dataclass(frozen=True)
class AcquiredSource:
    local_path: Path
    commit: str = "unknown"
    cloned: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"local_path": str(self.local_path), "commit": self.commit, "cloned": self.cloned}


@dataclass(frozen=True)
class ValidationSummary:
    file_count: int
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DynamicTestSummary:
    deployed_count: int
    tx_count: int
    successful_tx: int = 0
    failed_tx: int = 0
    rpc_url: str = ""
    chain_id: int = 0
    deployments: list[dict[str, Any]] = field(default_factory=list)
    transactions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Percentage of successful test transactions (0 when none ran)."""
        if self.tx_count <= 0:
            return 0.0
        return self.successful_tx / self.tx_count * 100

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "success_rate": round(self.success_rate, 1)}


@dataclass(frozen=True)
class FixBatch:
    """Fixes produced so far plus the per-item errors that were skipped."""

    fixes: list[Fix] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"fixes": [f.to_dict() for f in self.fixes], "errors": list(self.errors)}


@dataclass(frozen=True)
class Publication:
    url: str
    branch: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Protocols ───────────────────────────────────────────────
@runtime_checkable
class SourceAcquirer(Protocol):
    async def acquire(self, repo_ref: str, branch: str) -> AcquiredSource: ...


@runtime_checkable
class ContentValidator(Protocol):
    async def validate(self, local_path: Path) -> ValidationSummary: ...


@runtime_checkable
class StaticAnalyzer(Protocol):
    name: str

    async def analyze(self, local_path: Path) -> SourceOutput: ...


@runtime_checkable
class DynamicTestRunner(Protocol):
    async def run(self, local_path: Path) -> DynamicTestSummary: ...


@runtime_checkable
class FixGenerator(Protocol):
    async def generate(self, findings: list[Finding], local_path: Path) -> FixBatch: ...


@runtime_checkable
class Publisher(Protocol):
    async def publish(
        self,
        *,
        run_id: str,
        repo_ref: str,
        branch: str,
        local_path: Path,
        findings: list[Finding],
        fixes: list[Fix],
        dynamic_summary: DynamicTestSummary | None,
    ) -> Publication: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Must swallow its own delivery errors."""

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None: ...
