"""Report artifacts — one immutable JSON report per terminal run.

Layout: ``<reports_dir>/<run_id>/audit-report.json``.

Write strategy
--------------
* The artifact is derived purely from the run snapshot plus raw stage
  payloads, so writing it again for the same run simply overwrites it.
* The file is written to a temp file in the same directory, fsync'd and
  moved into place with ``os.replace()``: readers see the old report or
  the new one, never a half-written file.
* Run ids are whitelisted and the resolved path is checked against the
  reports root before any file operation.

Integrity
---------
``digest`` is the SHA-256 of the canonical JSON (sorted keys, no spaces)
of everything except the digest itself.  :func:`verify_report`
recomputes it; a mismatch raises :class:`ReportIntegrityError`.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

import structlog

from smartaudit.core.errors import ReportIntegrityError, ReportPathTraversal, ReportWriteFailed
from smartaudit.core.models import AuditRun, Finding, Severity
from smartaudit.core.normalizer import rank
from smartaudit.core.state import utc_now
from smartaudit.modules.redact import validate_run_id

logger = structlog.get_logger()

REPORT_FILENAME = "audit-report.json"
SCHEMA_VERSION = 1


def report_path(reports_dir: Path, run_id: str) -> Path:
    """Resolve the artifact path for *run_id*, anchored inside *reports_dir*.

    Raises
    ------
    ReportPathTraversal
        If the id is unsafe or resolves outside the reports root.
    """
    root = reports_dir.resolve()
    try:
        run_id = validate_run_id(run_id)
    except ValueError as exc:
        raise ReportPathTraversal(component=run_id, reports_root=str(root)) from exc
    target = root.joinpath(run_id, REPORT_FILENAME).resolve()
    if not target.is_relative_to(root):
        raise ReportPathTraversal(component=run_id, reports_root=str(root))
    return target


def build_report(run: AuditRun, payloads: dict[str, Any] | None = None) -> dict[str, Any]:
    """Assemble the artifact body (without digest)."""
    return {
        "schema_version": SCHEMA_VERSION,
        "run": run.snapshot(),
        "payloads": payloads or {},
        "written_at": utc_now(),
    }


def compute_digest(body: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of *body* minus any ``digest`` key."""
    content = {k: v for k, v in body.items() if k != "digest"}
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def write_report(reports_dir: Path, run: AuditRun, payloads: dict[str, Any] | None = None) -> Path:
    """Write (or overwrite) the report artifact for *run*.

    Returns
    -------
    Path
        Where the artifact now lives.

    Raises
    ------
    ReportWriteFailed
        If the directory or file cannot be written.
    """
    target = report_path(reports_dir, run.id)
    body = build_report(run, payloads)
    body["digest"] = compute_digest(body)
    data = json.dumps(body, indent=2, default=str).encode("utf-8")

    fd: int | None = None
    tmp_path: str | None = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".report_", suffix=".tmp")
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        fd = None
        os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
        os.replace(tmp_path, str(target))
        tmp_path = None
    except OSError as exc:
        raise ReportWriteFailed(f"Failed to write report for {run.id}: {exc}") from exc
    finally:
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    logger.info("report_written", run_id=run.id, path=str(target), digest=body["digest"][:12])
    return target


def load_report(reports_dir: Path, run_id: str) -> dict[str, Any]:
    """Read a stored report.

    Raises
    ------
    FileNotFoundError
        If no report exists for *run_id*.
    """
    target = report_path(reports_dir, run_id)
    if not target.exists():
        raise FileNotFoundError(f"Report not found: {target}")
    return json.loads(target.read_text(encoding="utf-8"))


def verify_report(reports_dir: Path, run_id: str) -> str:
    """Recompute the digest of a stored report and return it.

    Raises
    ------
    ReportIntegrityError
        If the stored digest is missing or does not match.
    """
    body = load_report(reports_dir, run_id)
    stored = body.get("digest")
    recomputed = compute_digest(body)
    if stored != recomputed:
        raise ReportIntegrityError(
            f"Report {run_id} digest mismatch: stored={str(stored)[:12]}... "
            f"recomputed={recomputed[:12]}..."
        )
    return recomputed


def list_reports(reports_dir: Path) -> list[dict[str, Any]]:
    """Run snapshots of every stored report, most recently started first.

    Unreadable report files are skipped with a warning.
    """
    if not reports_dir.is_dir():
        return []
    runs: list[dict[str, Any]] = []
    for path in reports_dir.glob(f"*/{REPORT_FILENAME}"):
        try:
            runs.append(json.loads(path.read_text(encoding="utf-8"))["run"])
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("report_unreadable", path=str(path), error=str(exc))
    return sorted(runs, key=lambda r: r.get("started_at") or "", reverse=True)


# ── Markdown rendering (used by the publisher) ─────────────
_SEVERITY_LABEL = {
    Severity.CRITICAL: "🔴 Critical",
    Severity.HIGH: "🟠 High",
    Severity.MEDIUM: "🟡 Medium",
    Severity.LOW: "🔵 Low",
    Severity.INFO: "⚪ Info",
}


def render_markdown(run: AuditRun, *, dynamic: dict[str, Any] | None = None) -> str:
    """Render *run* as a Markdown security report."""
    summary = run.summary
    lines = [
        "# Security Audit Report",
        "",
        f"- **Audit ID:** `{run.id}`",
        f"- **Repository:** `{run.repo_ref}` (branch `{run.options.branch}`)",
        f"- **Started:** {run.started_at}",
        "",
        "## Summary",
        "",
        "| Severity | Count |",
        "| --- | --- |",
    ]
    for sev in reversed(list(Severity)):
        lines.append(f"| {_SEVERITY_LABEL[sev]} | {getattr(summary, sev.value)} |")
    lines.append(f"| **Total** | {summary.total} |")

    if dynamic:
        lines += [
            "",
            "## Dynamic testing",
            "",
            f"- Contracts deployed: {dynamic.get('deployed_count', 0)}",
            f"- Transactions executed: {dynamic.get('tx_count', 0)}",
            f"- Success rate: {dynamic.get('success_rate', 0.0)}%",
        ]

    lines += ["", "## Findings", ""]
    if not run.findings:
        lines.append("No findings.")
    for f in rank(run.findings):
        lines += _finding_block(f)

    if run.fixes:
        lines += ["", "## Suggested fixes", ""]
        for fix in run.fixes:
            lines.append(f"### {fix.finding_id}: {fix.title}")
            lines.append("")
            lines.append(fix.explanation)
            if fix.patch:
                lines += ["", "```solidity", fix.patch, "```"]
            lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def _finding_block(f: Finding) -> list[str]:
    return [
        f"### {f.id}: {f.title}",
        "",
        f"- **Severity:** {_SEVERITY_LABEL[f.severity]} (confidence: {f.confidence.value})",
        f"- **Location:** `{f.location}`",
        f"- **Source:** {f.source} / {f.category}",
        "",
        f.description or "_No description._",
        "",
        f"**Recommendation:** {f.recommendation}",
        "",
    ]
