"""Tests for smartaudit.cli — command surface (no real audits)."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterator

import pytest
from typer.testing import CliRunner

from smartaudit.cli import app
from smartaudit.core.models import AuditOptions, AuditRun, RunStatus
from smartaudit.core.reports import report_path, write_report
from smartaudit.rules import DEFAULT_RULES

runner = CliRunner()


@pytest.fixture(autouse=True)
def _project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """A throwaway repo root, a clean environment and restored log handlers."""
    for key in list(os.environ):
        if key.startswith("SMARTAUDIT_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("COLUMNS", "200")
    (tmp_path / "pyproject.toml").touch()
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    saved = list(root.handlers)
    yield
    root.handlers[:] = saved


def _stored_run(reports_dir: Path, run_id: str = "audit-1") -> AuditRun:
    run = AuditRun(
        id=run_id,
        repo_ref="https://github.com/acme/vault.git",
        options=AuditOptions(),
        started_at="2026-01-01T00:00:00+00:00",
        status=RunStatus.COMPLETED,
    )
    write_report(reports_dir, run)
    return run


def test_no_command_prints_help() -> None:
    result = runner.invoke(app, [])
    assert result.exit_code == 0
    assert "audit" in result.output


def test_status_without_credentials(tmp_path: Path) -> None:
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "SmartAudit Ops" in result.output
    assert "SMARTAUDIT_GITHUB_TOKEN not set" in result.output


def test_status_invalid_when_static_analysis_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SMARTAUDIT_ENABLE_STATIC_ANALYSIS", "false")
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "MISSING" in result.output


def test_rules_validate_lists_builtins() -> None:
    result = runner.invoke(app, ["rules-validate"])
    assert result.exit_code == 0
    assert f"({len(DEFAULT_RULES)} rules)" in result.output


def test_rules_validate_file(tmp_path: Path) -> None:
    (tmp_path / "rules.yaml").write_text("- id: a\n  regex: foo\n  title: Foo\n", encoding="utf-8")
    result = runner.invoke(app, ["rules-validate", "--rules", "rules.yaml"])
    assert result.exit_code == 0
    assert "1 rules" in result.output


def test_rules_validate_bad_file(tmp_path: Path) -> None:
    (tmp_path / "rules.yaml").write_text("- id: a\n  regex: '('\n  title: Foo\n", encoding="utf-8")
    result = runner.invoke(app, ["rules-validate", "--rules", "rules.yaml"])
    assert result.exit_code == 1


def test_runs_empty() -> None:
    result = runner.invoke(app, ["runs"])
    assert result.exit_code == 0
    assert "No audits yet" in result.output


def test_runs_lists_reports(tmp_path: Path) -> None:
    _stored_run(tmp_path / "reports")
    result = runner.invoke(app, ["runs"])
    assert result.exit_code == 0
    assert "audit-1" in result.output


def test_show_json(tmp_path: Path) -> None:
    _stored_run(tmp_path / "reports")
    result = runner.invoke(app, ["show", "audit-1", "--json"])
    assert result.exit_code == 0
    body = json.loads(result.stdout)
    assert body["run"]["id"] == "audit-1"


def test_show_missing() -> None:
    result = runner.invoke(app, ["show", "audit-404"])
    assert result.exit_code == 1
    assert "No report" in result.output


def test_verify_report_ok_and_tampered(tmp_path: Path) -> None:
    reports = tmp_path / "reports"
    _stored_run(reports)
    ok = runner.invoke(app, ["verify-report", "audit-1"])
    assert ok.exit_code == 0
    assert "Report OK" in ok.output

    target = report_path(reports, "audit-1")
    body = json.loads(target.read_text(encoding="utf-8"))
    body["run"]["status"] = "failed"
    target.chmod(0o600)
    target.write_text(json.dumps(body), encoding="utf-8")

    bad = runner.invoke(app, ["verify-report", "audit-1"])
    assert bad.exit_code == 1
    assert "INTEGRITY FAILURE" in bad.output


def test_audit_rejects_bad_ref() -> None:
    result = runner.invoke(app, ["audit", "not a repository", "--no-dynamic", "--no-publish"])
    assert result.exit_code == 1
    assert "ERROR" in result.output


def test_serve_runs_uvicorn_with_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr("smartaudit.cli.uvicorn.run", lambda api, **kw: calls.append({"api": api, **kw}))

    result = runner.invoke(app, ["serve", "--host", "0.0.0.0", "--port", "8081"])

    assert result.exit_code == 0
    assert "http://0.0.0.0:8081" in result.output
    [call] = calls
    assert call["host"] == "0.0.0.0"
    assert call["port"] == 8081
    assert {route.path for route in call["api"].routes} >= {"/health", "/api/audit/start", "/api/audits"}


def test_serve_bad_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SMARTAUDIT_PATTERN_RULES_PATH", "missing.yaml")
    monkeypatch.setattr("smartaudit.cli.uvicorn.run", lambda *a, **kw: pytest.fail("server started"))

    result = runner.invoke(app, ["serve"])

    assert result.exit_code == 1
    assert "pattern rules" in result.output
