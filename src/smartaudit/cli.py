"""SmartAudit CLI — presentation layer.

Thin adapter: the pipeline lives in core / modules.  The CLI maps user
intents to coordinator and report-store calls and formats output.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog
import typer
import uvicorn
from rich import print
from rich.table import Table

from smartaudit.app import build_api, build_coordinator
from smartaudit.core.errors import (
    ReportIntegrityError,
    RepoRootNotFound,
    RulesInvalid,
    RulesNotFound,
    SmartAuditError,
)
from smartaudit.core.logging import configure_logging
from smartaudit.core.models import AuditOptions
from smartaudit.core.reports import list_reports, load_report, verify_report
from smartaudit.core.settings import Settings
from smartaudit.rules import DEFAULT_RULES, load_pattern_rules

logger = structlog.get_logger()

app = typer.Typer(help="SmartAudit Ops — multi-stage smart-contract security audits.")

_STATUS_COLOR = {"queued": "white", "running": "yellow", "completed": "green", "failed": "red"}
_OUTCOME_COLOR = {"success": "green", "skipped": "yellow", "failed": "red"}


# ── Callback (runs before every command) ────────────────────
@app.callback(invoke_without_command=True)
def _main_callback(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    log_level: str = typer.Option("INFO", "--log-level", envvar="SMARTAUDIT_LOG_LEVEL", help="Log level."),
    log_json: bool = typer.Option(
        True, "--log-json/--log-text", envvar="SMARTAUDIT_LOG_JSON", help="JSON or human logs."
    ),
) -> None:
    """Configure logging + settings, then store in context for sub-commands."""
    configure_logging(level=log_level, json_output=log_json)
    try:
        settings = Settings(log_level=log_level, log_json=log_json)
    except RepoRootNotFound:
        print("[red]ERROR:[/red] could not find repo root (pyproject.toml not found in parents).")
        raise typer.Exit(code=2)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings

    if ctx.invoked_subcommand is None:
        print(ctx.get_help())


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _reports_dir(ctx: typer.Context) -> Path:
    s = _settings(ctx)
    assert s.reports_dir is not None  # guaranteed by model_validator
    return s.reports_dir


def _flag(on: bool) -> str:
    return "[green]ENABLED[/green]" if on else "[yellow]DISABLED[/yellow]"


# ── Commands ────────────────────────────────────────────────
@app.command()
def status(ctx: typer.Context) -> None:
    """Show configuration health and which stages are available."""
    s = _settings(ctx)
    report = s.config_report()

    print("[bold]SmartAudit Ops[/bold]  v0.1.0")
    print(f"  Repo root        : {s.repo_root}")
    print(f"  Clones           : {s.clones_dir}")
    print(f"  Reports          : {s.reports_dir}")
    print(f"  Static analysis  : {_flag(s.enable_static_analysis)}")
    print(f"  Dynamic testing  : {_flag(s.dynamic_testing_available)}")
    print(f"  Pull requests    : {_flag(s.publication_available)}")
    print(f"  Telegram         : {_flag(s.notifications_available)}")
    print(f"  Fix generator    : {'gemini (' + s.llm_model + ')' if s.gemini_api_key else 'template'}")
    print(f"  Stage timeout    : {s.stage_timeout_seconds:g}s (dynamic {s.dynamic_test_timeout_seconds:g}s)")

    for warning in report.warnings:
        print(f"  [yellow]WARN:[/yellow] {warning}")
    for missing in report.missing:
        print(f"  [red]MISSING:[/red] {missing}")

    logger.info("status_checked", repo_root=str(s.repo_root), valid=report.is_valid)
    if not report.is_valid:
        raise typer.Exit(code=1)


@app.command()
def audit(
    ctx: typer.Context,
    repo_ref: str = typer.Argument(help="Git URL (https/ssh) or local directory to audit."),
    branch: str = typer.Option(None, "--branch", "-b", help="Branch to audit (default: settings.default_branch)."),
    dynamic: bool = typer.Option(True, "--dynamic/--no-dynamic", help="Run dynamic tests on the testnet."),
    publish: bool = typer.Option(True, "--publish/--no-publish", help="Open a pull request with the report."),
    as_json: bool = typer.Option(False, "--json", help="Print the full run snapshot as JSON."),
) -> None:
    """Run a complete audit and print the result."""
    s = _settings(ctx)
    try:
        options = AuditOptions(
            branch=branch or s.default_branch,
            run_dynamic_tests=dynamic,
            create_publication=publish,
        )
        coordinator = build_coordinator(s)
        run = asyncio.run(coordinator.run_audit(repo_ref, options))
    except ValueError as exc:
        print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1)
    except (RulesNotFound, RulesInvalid) as exc:
        print(f"[red]ERROR:[/red] pattern rules: {exc}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(run.snapshot(), indent=2, default=str))
    else:
        _print_run(run.snapshot())

    if run.report_error:
        print(f"[yellow]WARN:[/yellow] report not saved: {run.report_error}")
    if run.status.value != "completed":
        raise typer.Exit(code=1)


def _print_run(snap: dict) -> None:
    color = _STATUS_COLOR.get(snap["status"], "white")
    print(f"[bold]{snap['id']}[/bold]  [{color}]{snap['status']}[/{color}]  {snap['repo_ref']} ({snap['branch']})")
    if snap.get("error"):
        print(f"  [red]Error:[/red] {snap['error']}")

    stages = Table(title="Stages", show_lines=False)
    stages.add_column("Stage", style="bold")
    stages.add_column("Outcome")
    stages.add_column("Duration")
    stages.add_column("Detail")
    for name, result in snap["stage_results"].items():
        oc = _OUTCOME_COLOR.get(result["outcome"], "white")
        payload = result.get("payload") or {}
        detail = result.get("error") or (payload.get("reason", "") if isinstance(payload, dict) else "")
        stages.add_row(name, f"[{oc}]{result['outcome']}[/{oc}]", f"{result['duration_seconds']:.2f}s", detail)
    print(stages)

    summary = snap["summary"]
    print(
        f"  Findings: {summary['total']} total  "
        f"[red]{summary['critical']} critical[/red]  {summary['high']} high  "
        f"{summary['medium']} medium  {summary['low']} low  {summary['info']} info"
    )
    if snap["findings"]:
        findings = Table(title="Findings", show_lines=False)
        findings.add_column("ID", style="bold")
        findings.add_column("Severity")
        findings.add_column("Confidence")
        findings.add_column("Location")
        findings.add_column("Title")
        for f in snap["findings"]:
            location = f"{f['file']}:{f['line']}" if f["line"] else f["file"]
            findings.add_row(f["id"], f["severity"], f["confidence"], location, f["title"])
        print(findings)
    if snap.get("report_path"):
        print(f"  Report: {snap['report_path']}")


@app.command()
def runs(ctx: typer.Context) -> None:
    """List persisted audit reports, most recent first."""
    rows = list_reports(_reports_dir(ctx))
    if not rows:
        print("[yellow]No audits yet.[/yellow] Run [bold]smartaudit audit[/bold] to start.")
        return

    table = Table(title="Audit runs", show_lines=False)
    table.add_column("ID", style="bold")
    table.add_column("Status")
    table.add_column("Repository")
    table.add_column("Findings")
    table.add_column("Started")
    for r in rows:
        color = _STATUS_COLOR.get(r.get("status", ""), "white")
        total = (r.get("summary") or {}).get("total", 0)
        table.add_row(
            r.get("id", "?"),
            f"[{color}]{r.get('status', '?')}[/{color}]",
            r.get("repo_ref", ""),
            str(total),
            r.get("started_at", ""),
        )
    print(table)


@app.command()
def show(
    ctx: typer.Context,
    run_id: str = typer.Argument(help="Audit run id (audit-<epoch-ms>)."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw report artifact."),
) -> None:
    """Show a persisted audit report."""
    try:
        body = load_report(_reports_dir(ctx), run_id)
    except FileNotFoundError:
        print(f"[red]ERROR:[/red] No report for '{run_id}'.")
        raise typer.Exit(code=1)
    except (ValueError, SmartAuditError) as exc:
        print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(body, indent=2, default=str))
    else:
        _print_run(body["run"])


@app.command(name="verify-report")
def verify_report_cmd(
    ctx: typer.Context,
    run_id: str = typer.Argument(help="Audit run id to verify."),
) -> None:
    """Verify a stored report against its integrity digest."""
    try:
        digest = verify_report(_reports_dir(ctx), run_id)
    except FileNotFoundError:
        print(f"[red]ERROR:[/red] No report for '{run_id}'.")
        raise typer.Exit(code=1)
    except ReportIntegrityError as exc:
        print(f"[red bold]INTEGRITY FAILURE:[/red bold] {exc}")
        raise typer.Exit(code=1)
    except (ValueError, SmartAuditError) as exc:
        print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1)

    print(f"[green]Report OK[/green] {run_id} digest {digest[:12]}…")


@app.command(name="rules-validate")
def rules_validate(
    ctx: typer.Context,
    rules: Path = typer.Option(
        None,
        "--rules",
        help="Path to pattern-rules YAML (relative to repo root unless absolute).",
    ),
) -> None:
    """Validate a pattern-rules file (or list the built-in rules)."""
    s = _settings(ctx)
    rules_path = rules if rules else s.pattern_rules_path
    if rules_path is None:
        print(f"[bold]Built-in rules[/bold]  ({len(DEFAULT_RULES)} rules)")
        for r in DEFAULT_RULES:
            print(f"  • {r.id}  [{r.severity.value}] {r.title}")
        return
    if not rules_path.is_absolute():
        assert s.repo_root is not None  # guaranteed by model_validator
        rules_path = (s.repo_root / rules_path).resolve()

    try:
        loaded = load_pattern_rules(rules_path, max_size_bytes=s.rules_max_size_kb * 1024)
    except (RulesNotFound, RulesInvalid) as exc:
        print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1)

    print(f"[green]OK[/green] rules valid: {rules_path} ({len(loaded)} rules)")


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option(None, "--host", help="Bind address (default: settings.server_host)."),
    port: int = typer.Option(None, "--port", "-p", help="Port (default: settings.server_port)."),
) -> None:
    """Serve the HTTP API (and the Telegram webhook) until interrupted."""
    s = _settings(ctx)
    if host:
        s.server_host = host
    if port:
        s.server_port = port
    try:
        api = build_api(s)
    except (RulesNotFound, RulesInvalid) as exc:
        print(f"[red]ERROR:[/red] pattern rules: {exc}")
        raise typer.Exit(code=1)

    print(f"[bold]SmartAudit API[/bold] listening on {s.api_url}")
    uvicorn.run(api, host=s.server_host, port=s.server_port, log_config=None)


# ── Entrypoint ──────────────────────────────────────────────
def main() -> None:  # noqa: D103
    app()
