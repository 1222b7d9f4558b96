"""Fix generation.

* :class:`TemplateFixGenerator` turns each finding's recommendation into a
  fix suggestion.  No network, never fails.
* :class:`GeminiFixGenerator` asks a Gemini model for a patch for the
  highest-priority high/critical findings and falls back to templates for
  the rest (and for any finding the model call fails on).

Generators never raise for a single finding: failures are collected in
:attr:`FixBatch.errors` and the batch carries whatever succeeded.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any

import requests
import structlog

from smartaudit.core.contracts import FixBatch
from smartaudit.core.errors import ConfigurationError, FixGenerationError
from smartaudit.core.models import Finding, Fix, Severity
from smartaudit.core.normalizer import rank
from smartaudit.modules.redact import redact_secrets

logger = structlog.get_logger()

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_CONTEXT_LINES = 10
_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


def read_snippet(local_path: Path, finding: Finding, *, context: int = _CONTEXT_LINES) -> str:
    """Source lines around the finding, or ``""`` when unavailable."""
    if not finding.line or finding.file in ("", "unknown"):
        return ""
    root = local_path.resolve()
    path = (root / finding.file).resolve()
    if not path.is_relative_to(root) or not path.is_file():
        return ""
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    start = max(finding.line - 1 - context, 0)
    return "\n".join(lines[start : finding.line + context])


class TemplateFixGenerator:
    """Recommendation-based fixes for every non-informational finding."""

    name = "template"

    async def generate(self, findings: list[Finding], local_path: Path) -> FixBatch:
        fixes = [self.fix_for(f) for f in rank(findings) if f.severity is not Severity.INFO]
        return FixBatch(fixes=fixes)

    def fix_for(self, finding: Finding) -> Fix:
        return Fix(
            finding_id=finding.id,
            file=finding.file,
            line=finding.line,
            title=finding.title,
            explanation=finding.recommendation,
            generator=self.name,
        )


class GeminiFixGenerator:
    """Model-backed fixes via the Gemini ``generateContent`` REST API."""

    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.5-flash",
        max_fixes: int = 10,
        timeout_seconds: float = 60.0,
        fallback: TemplateFixGenerator | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("a Gemini API key is required for model-backed fixes")
        self.api_key = api_key
        self.model = model
        self.max_fixes = max_fixes
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback or TemplateFixGenerator()
        self.session = session or requests.Session()

    async def generate(self, findings: list[Finding], local_path: Path) -> FixBatch:
        ranked = [f for f in rank(findings) if f.severity is not Severity.INFO]
        eligible = [f for f in ranked if f.severity in (Severity.HIGH, Severity.CRITICAL)][: self.max_fixes]
        eligible_ids = {f.id for f in eligible}

        fixes: list[Fix] = []
        errors: list[str] = []
        for finding in ranked:
            if finding.id not in eligible_ids:
                fixes.append(self.fallback.fix_for(finding))
                continue
            try:
                fixes.append(await asyncio.to_thread(self._fix_with_model, finding, local_path))
            except FixGenerationError as exc:
                errors.append(f"{finding.id}: {exc}")
                logger.warning("model_fix_failed", finding_id=finding.id, error=str(exc))
                fixes.append(self.fallback.fix_for(finding))

        logger.info("fixes_generated", fixes=len(fixes), model_fixes=len(eligible) - len(errors), errors=len(errors))
        return FixBatch(fixes=fixes, errors=errors)

    def _fix_with_model(self, finding: Finding, local_path: Path) -> Fix:
        try:
            snippet = read_snippet(local_path, finding)
        except OSError:
            snippet = ""
        prompt = build_prompt(finding, snippet)
        try:
            resp = self.session.post(
                GEMINI_ENDPOINT.format(model=self.model),
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                json={"contents": [{"parts": [{"text": prompt}]}]},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            text = extract_text(resp.json())
        except (requests.RequestException, ValueError) as exc:
            raise FixGenerationError(redact_secrets(str(exc))) from exc

        explanation, patch = parse_model_answer(text)
        return Fix(
            finding_id=finding.id,
            file=finding.file,
            line=finding.line,
            title=finding.title,
            explanation=explanation or finding.recommendation,
            patch=patch,
            generator=self.name,
        )


def build_prompt(finding: Finding, snippet: str) -> str:
    return (
        "You are a smart contract security engineer. Propose a minimal fix.\n"
        'Answer with JSON only: {"explanation": "...", "patch": "..."} where patch is the '
        "corrected Solidity code for the snippet.\n\n"
        f"Issue: {finding.title} ({finding.severity.value}, confidence {finding.confidence.value})\n"
        f"Location: {finding.location}\n"
        f"Description: {finding.description}\n"
        f"Recommendation: {finding.recommendation}\n\n"
        f"Code:\n```solidity\n{snippet}\n```\n"
    )


def extract_text(body: Any) -> str:
    """Pull the first candidate's text out of a ``generateContent`` response."""
    try:
        parts = body["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    except (KeyError, IndexError, TypeError) as exc:
        raise ValueError(f"unexpected model response shape: {exc}") from exc


def parse_model_answer(text: str) -> tuple[str, str]:
    """Return ``(explanation, patch)``; free text becomes the explanation."""
    match = _JSON_BLOCK_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except ValueError:
            data = None
        if isinstance(data, dict):
            return str(data.get("explanation", "")).strip(), str(data.get("patch", "")).strip()
    return text.strip(), ""
