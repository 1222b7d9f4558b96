"""Static analyzers.

Each analyzer returns a :class:`SourceOutput` holding its *native* items
untouched (apart from flattening); mapping into ``Finding`` is the
normalizer's job.  An analyzer that cannot run raises
:class:`AnalyzerError`; the coordinator records it and carries on with
the other sources.
"""

from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path
from typing import Any

import structlog

from smartaudit.core.errors import AnalyzerError
from smartaudit.core.normalizer import SourceOutput
from smartaudit.modules.acquisition import find_solidity_files
from smartaudit.modules.proc import run_cmd
from smartaudit.rules import DEFAULT_RULES, PatternRule

logger = structlog.get_logger()


class SlitherAnalyzer:
    """Trail of Bits Slither, via its JSON report."""

    name = "slither"

    def __init__(self, *, binary: str = "slither", timeout_seconds: float = 600.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    async def analyze(self, local_path: Path) -> SourceOutput:
        with tempfile.TemporaryDirectory(prefix="smartaudit-slither-") as tmp:
            out_file = Path(tmp) / "slither-report.json"
            try:
                # Slither exits non-zero whenever detectors fire; judge by the report.
                result = await run_cmd(
                    [self.binary, ".", "--json", str(out_file)],
                    cwd=local_path,
                    timeout_seconds=self.timeout_seconds,
                )
            except FileNotFoundError as exc:
                raise AnalyzerError(self.name, "slither not available") from exc
            except asyncio.TimeoutError as exc:
                raise AnalyzerError(self.name, f"timed out after {self.timeout_seconds:g}s") from exc

            if not out_file.exists():
                tail = result.stderr.strip().splitlines()[-1:] or ["no report produced"]
                raise AnalyzerError(self.name, tail[0])
            try:
                report = json.loads(out_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise AnalyzerError(self.name, f"unreadable report: {exc}") from exc

        return SourceOutput(source=self.name, items=parse_slither_report(report))


def parse_slither_report(report: Any) -> list[Any]:
    """Extract ``results.detectors`` from a Slither JSON report.

    Raises
    ------
    AnalyzerError
        If Slither reported its own failure and produced no results.
    """
    if not isinstance(report, dict):
        raise AnalyzerError("slither", "report is not a JSON object")
    results = report.get("results") or {}
    detectors = results.get("detectors") if isinstance(results, dict) else None
    if detectors is None and report.get("success") is False:
        raise AnalyzerError("slither", str(report.get("error") or "analysis failed"))
    return list(detectors) if isinstance(detectors, list) else []


class SolhintAnalyzer:
    """Solhint linter, via ``npx`` and its JSON formatter."""

    name = "solhint"

    def __init__(self, *, command: list[str] | None = None, timeout_seconds: float = 300.0) -> None:
        self.command = command or ["npx", "--yes", "solhint"]
        self.timeout_seconds = timeout_seconds

    async def analyze(self, local_path: Path) -> SourceOutput:
        try:
            result = await run_cmd(
                [*self.command, "**/*.sol", "--formatter", "json"],
                cwd=local_path,
                timeout_seconds=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise AnalyzerError(self.name, "npx/solhint not available") from exc
        except asyncio.TimeoutError as exc:
            raise AnalyzerError(self.name, f"timed out after {self.timeout_seconds:g}s") from exc

        output = result.stdout.strip()
        if not output:
            if result.ok:
                return SourceOutput(source=self.name, items=[])
            raise AnalyzerError(self.name, result.stderr.strip()[:200] or f"exit {result.exit_code}")
        return SourceOutput(source=self.name, items=parse_solhint_output(output))


def parse_solhint_output(output: str) -> list[dict[str, Any]]:
    """Flatten Solhint JSON into one dict per issue, each carrying ``filePath``.

    Accepts both the per-file shape (``[{filePath, reports: [...]}]``) and
    the flat shape (``[{filePath, ruleId, ...}]``).
    """
    try:
        data = json.loads(output)
    except ValueError as exc:
        raise AnalyzerError("solhint", f"unparsable JSON output: {exc}") from exc
    if not isinstance(data, list):
        raise AnalyzerError("solhint", "expected a JSON list")

    issues: list[dict[str, Any]] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        if isinstance(entry.get("reports"), list):
            for issue in entry["reports"]:
                if isinstance(issue, dict):
                    issues.append({"filePath": entry.get("filePath"), **issue})
        elif "ruleId" in entry:
            issues.append(entry)
    return issues


class PatternAnalyzer:
    """Line-by-line regex checks for well-known risky constructs."""

    name = "pattern"

    def __init__(self, rules: list[PatternRule] | None = None) -> None:
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    async def analyze(self, local_path: Path) -> SourceOutput:
        try:
            items = await asyncio.to_thread(self.scan, local_path)
        except OSError as exc:
            raise AnalyzerError(self.name, str(exc)) from exc
        logger.info("pattern_scan_complete", findings=len(items), rules=len(self.rules))
        return SourceOutput(source=self.name, items=items)

    def scan(self, root: Path) -> list[dict[str, Any]]:
        compiled = [(rule, rule.compiled()) for rule in self.rules]
        items: list[dict[str, Any]] = []
        for path in find_solidity_files(root):
            rel = str(path.relative_to(root))
            text = path.read_text(encoding="utf-8", errors="replace")
            for rule, pattern in compiled:
                for lineno, line in enumerate(text.splitlines(), start=1):
                    if not pattern.search(line):
                        continue
                    items.append(
                        {
                            "file": rel,
                            "line": lineno,
                            "title": rule.title,
                            "description": f"Found suspicious pattern: {line.strip()[:100]}",
                            "severity": rule.severity.value,
                            "confidence": rule.confidence.value,
                            "recommendation": rule.recommendation,
                            "category": rule.category,
                            "rule_id": rule.id,
                        }
                    )
        return items
