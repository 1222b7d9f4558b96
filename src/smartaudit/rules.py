"""Pattern-rule loader for the regex analyzer.

The pattern analyzer ships with built-in rules; a project can replace them
with a YAML file (``SMARTAUDIT_PATTERN_RULES_PATH``) loaded with safety
guards:

* Size limit (default 256 KB): oversized files are rejected.
* ``yaml.safe_load`` only, so no arbitrary Python objects.
* Every rule validated by Pydantic, including that its regex compiles.
* Typed exceptions (:class:`RulesNotFound`, :class:`RulesInvalid`,
  :class:`RulesTooLarge`).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from smartaudit.core.errors import RulesInvalid, RulesNotFound, RulesTooLarge
from smartaudit.core.models import Confidence, Severity

_DEFAULT_MAX_SIZE_BYTES = 256 * 1024


class PatternRule(BaseModel):
    """A single regex rule applied line by line."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    regex: str
    title: str
    severity: Severity = Severity.MEDIUM
    confidence: Confidence = Confidence.MEDIUM
    recommendation: str = "Review the flagged code"
    category: str = "security"
    ignore_case: bool = True

    @field_validator("id", "title")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("regex")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid regex: {exc}") from exc
        return v

    def compiled(self) -> re.Pattern[str]:
        return re.compile(self.regex, re.IGNORECASE if self.ignore_case else 0)


DEFAULT_RULES: list[PatternRule] = [
    PatternRule(
        id="low-level-call",
        regex=r"\.call\{value:",
        title="Low-level call detected",
        severity=Severity.MEDIUM,
        recommendation="Check the return value and follow checks-effects-interactions",
    ),
    PatternRule(
        id="tx-origin",
        regex=r"tx\.origin",
        title="tx.origin usage detected",
        severity=Severity.HIGH,
        recommendation="Use msg.sender instead of tx.origin to prevent phishing attacks",
    ),
    PatternRule(
        id="selfdestruct",
        regex=r"selfdestruct",
        title="selfdestruct usage detected",
        severity=Severity.MEDIUM,
        recommendation="Ensure selfdestruct is properly protected and necessary",
    ),
    PatternRule(
        id="delegatecall",
        regex=r"delegatecall",
        title="delegatecall usage detected",
        severity=Severity.HIGH,
        recommendation="Ensure delegatecall target is trusted and immutable",
    ),
]


def load_pattern_rules(
    path: Path,
    *,
    max_size_bytes: int = _DEFAULT_MAX_SIZE_BYTES,
) -> list[PatternRule]:
    """Load and validate a pattern-rules YAML file.

    Accepts ``{"rules": [...]}`` or a bare list.

    Raises
    ------
    RulesNotFound
        File does not exist.
    RulesTooLarge
        File exceeds *max_size_bytes*.
    RulesInvalid
        YAML parse error, wrong shape, or a rule failing validation.
    """
    if not path.exists():
        raise RulesNotFound(f"pattern rules not found: {path}")

    size = path.stat().st_size
    if size > max_size_bytes:
        raise RulesTooLarge(f"rules file {path.name} is {size:,} bytes (limit {max_size_bytes:,})")

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise RulesInvalid(f"rules file is not valid UTF-8: {exc}") from exc

    try:
        raw: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RulesInvalid(f"YAML parse error: {exc}") from exc

    if raw is None:
        return []

    if isinstance(raw, dict) and "rules" in raw:
        items = raw["rules"]
    elif isinstance(raw, list):
        items = raw
    else:
        raise RulesInvalid("rules schema invalid: expected list or {'rules': list}")

    if not isinstance(items, list):
        raise RulesInvalid("rules 'rules' key must contain a list")

    out: list[PatternRule] = []
    seen: set[str] = set()
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise RulesInvalid(f"rule #{i} must be a mapping")
        try:
            rule = PatternRule.model_validate(item)
        except ValidationError as exc:
            raise RulesInvalid(f"rule #{i}: {exc}") from exc
        if rule.id in seen:
            raise RulesInvalid(f"rule #{i}: duplicate id {rule.id!r}")
        seen.add(rule.id)
        out.append(rule)
    return out
