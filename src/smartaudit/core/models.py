"""SmartAudit domain models — enums and core value objects."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from smartaudit.modules.redact import validate_branch


class Severity(str, Enum):
    """Finding severity, ordered from least to most severe by :attr:`rank`."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_ORDER.index(self)


_SEVERITY_ORDER = [Severity.INFO, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
_CONFIDENCE_ORDER = [Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH]


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class StageOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    ACQUISITION = "acquisition"
    VALIDATION = "validation"
    ANALYSIS = "analysis"
    DYNAMIC_TEST = "dynamic_test"
    FIXES = "fixes"
    PUBLICATION = "publication"


# ── Findings ────────────────────────────────────────────────
@dataclass(frozen=True)
class Finding:
    """One normalized analyzer observation."""

    id: str
    file: str
    line: int
    title: str
    description: str
    severity: Severity
    confidence: Confidence
    recommendation: str
    source: str
    category: str

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line else self.file

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["severity"] = self.severity.value
        d["confidence"] = self.confidence.value
        return d


@dataclass(frozen=True)
class Summary:
    """Finding counts per severity bucket.

    ``total`` always equals the sum of the buckets.
    """

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.info

    def to_dict(self) -> dict[str, int]:
        return {**asdict(self), "total": self.total}


@dataclass(frozen=True)
class Fix:
    """A remediation suggestion for one finding."""

    finding_id: str
    file: str
    line: int
    title: str
    explanation: str
    patch: str = ""
    generator: str = "template"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Run record ──────────────────────────────────────────────
class AuditOptions(BaseModel):
    """Per-request options accepted by ``start_audit``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    branch: str = "main"
    run_dynamic_tests: bool = True
    create_publication: bool = True

    @field_validator("branch")
    @classmethod
    def _branch_safe(cls, v: str) -> str:
        return validate_branch(v)


@dataclass
class StageResult:
    """Outcome of a single stage for one run."""

    stage: str
    outcome: StageOutcome
    payload: Any = None
    error: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "outcome": self.outcome.value,
            "payload": self.payload,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class AuditRun:
    """One execution of the pipeline against a repository reference.

    Mutated only by the coordinator that owns it.  ``summary`` is derived
    from ``findings`` on every access and never stored.
    """

    id: str
    repo_ref: str
    options: AuditOptions
    started_at: str
    status: RunStatus = RunStatus.QUEUED
    stage_results: dict[str, StageResult] = field(default_factory=dict)
    findings: list[Finding] = field(default_factory=list)
    fixes: list[Fix] = field(default_factory=list)
    completed_at: str | None = None
    error: str | None = None
    report_path: str | None = None
    report_error: str | None = None

    @property
    def summary(self) -> Summary:
        from smartaudit.core.normalizer import summarize

        return summarize(self.findings)

    @property
    def degraded(self) -> bool:
        """True when any stage failed without failing the run."""
        return any(r.outcome is StageOutcome.FAILED for r in self.stage_results.values())

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the run (what the control surface returns)."""
        return {
            "id": self.id,
            "repo_ref": self.repo_ref,
            "branch": self.options.branch,
            "options": self.options.model_dump(),
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "summary": self.summary.to_dict(),
            "stage_results": {name: r.to_dict() for name, r in self.stage_results.items()},
            "findings": [f.to_dict() for f in self.findings],
            "fixes": [f.to_dict() for f in self.fixes],
            "report_path": self.report_path,
            "report_error": self.report_error,
        }
