"""SmartAudit domain exceptions.

Every stage raises typed exceptions so the coordinator can decide
explicitly whether a failure aborts the run (hard) or is recorded and
skipped over (soft), instead of catching bare RuntimeError.
"""

from __future__ import annotations


# ── Base ────────────────────────────────────────────────────
class SmartAuditError(Exception):
    """Root exception for all SmartAudit errors."""


# ── Repo / filesystem ──────────────────────────────────────
class RepoRootNotFound(SmartAuditError):
    """Could not locate the project root (pyproject.toml marker)."""

    def __init__(self, start_path: str | None = None) -> None:
        where = f" (searched from {start_path})" if start_path else ""
        super().__init__(f"Project root not found{where}: no pyproject.toml in parent chain")
        self.start_path = start_path


class ConfigurationError(SmartAuditError):
    """A required credential or setting is absent.

    Disables an optional stage; aborts the run only when the stage is
    hard-required.
    """


# ── Pipeline stages ─────────────────────────────────────────
class StageError(SmartAuditError):
    """Base for failures raised by a pipeline stage collaborator."""


class AcquisitionError(StageError):
    """Source could not be fetched (hard: aborts the run)."""


class ValidationError(StageError):
    """No analyzable content was found (hard: aborts the run)."""


class AnalyzerError(StageError):
    """A single static analyzer failed (soft: that source yields nothing)."""

    def __init__(self, analyzer: str, message: str) -> None:
        super().__init__(f"{analyzer}: {message}")
        self.analyzer = analyzer


class DynamicTestError(StageError):
    """Deployment or test transactions failed (soft)."""


class FixGenerationError(StageError):
    """A fix could not be produced for one finding (soft, per item)."""


class PublicationError(StageError):
    """The report could not be published (soft)."""


class NotificationError(SmartAuditError):
    """A notification could not be delivered (always swallowed)."""


class StageTimeout(StageError):
    """A stage exceeded its time budget."""

    def __init__(self, stage: str, seconds: float) -> None:
        super().__init__(f"Stage '{stage}' timed out after {seconds:g}s")
        self.stage = stage
        self.seconds = seconds


# ── Run state machine / registry ────────────────────────────
class StateTransitionInvalid(SmartAuditError):
    """An illegal run status transition was attempted."""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Invalid transition: {from_status} → {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class RunNotFound(SmartAuditError):
    """No run is registered under the requested id."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Audit run not found: {run_id}")
        self.run_id = run_id


# ── Pattern rules ───────────────────────────────────────────
class RulesNotFound(SmartAuditError):
    """The pattern-rules YAML file does not exist at the expected path."""


class RulesInvalid(SmartAuditError):
    """The pattern-rules file failed schema validation or safe-load."""


class RulesTooLarge(RulesInvalid):
    """The pattern-rules file exceeds the allowed size limit."""


# ── Report artifacts ────────────────────────────────────────
class ReportWriteFailed(SmartAuditError):
    """The report artifact could not be written."""


class ReportIntegrityError(SmartAuditError):
    """A stored report does not match its integrity digest."""


class ReportPathTraversal(ReportWriteFailed):
    """A run id resolved to a path outside the reports directory."""

    def __init__(self, component: str, reports_root: str) -> None:
        super().__init__(f"Path escapes reports root {reports_root}: {component!r}")
        self.component = component
        self.reports_root = reports_root
