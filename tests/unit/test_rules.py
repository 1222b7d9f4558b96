"""Tests for smartaudit.rules — pattern-rule loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from smartaudit.core.errors import RulesInvalid, RulesNotFound, RulesTooLarge
from smartaudit.core.models import Confidence, Severity
from smartaudit.rules import DEFAULT_RULES, PatternRule, load_pattern_rules


# ── Happy path ──────────────────────────────────────────────
def test_load_valid_rules(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text(
        "rules:\n"
        "  - id: block-timestamp\n"
        "    regex: 'block\\.timestamp'\n"
        "    title: Timestamp dependence\n"
        "    severity: low\n"
        "    confidence: high\n",
        encoding="utf-8",
    )
    [rule] = load_pattern_rules(p)
    assert rule.id == "block-timestamp"
    assert rule.severity is Severity.LOW
    assert rule.confidence is Confidence.HIGH
    assert rule.compiled().search("uint t = block.timestamp;")


def test_load_bare_list(tmp_path: Path) -> None:
    """Bare YAML list (no 'rules' key) is accepted."""
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: foo\n  title: Foo\n", encoding="utf-8")
    [rule] = load_pattern_rules(p)
    assert rule.severity is Severity.MEDIUM
    assert rule.category == "security"


def test_load_empty_yaml(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text("", encoding="utf-8")
    assert load_pattern_rules(p) == []


# ── Error cases ─────────────────────────────────────────────
def test_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(RulesNotFound):
        load_pattern_rules(tmp_path / "nope.yaml")


def test_size_limit(tmp_path: Path) -> None:
    p = tmp_path / "big.yaml"
    p.write_text("x" * 2000, encoding="utf-8")
    with pytest.raises(RulesTooLarge):
        load_pattern_rules(p, max_size_bytes=1024)


def test_invalid_yaml(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("{{{{not yaml", encoding="utf-8")
    with pytest.raises(RulesInvalid, match="YAML parse error"):
        load_pattern_rules(p)


def test_wrong_shape(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("just: a mapping\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


def test_schema_violation_extra_field(tmp_path: Path) -> None:
    """extra=forbid rejects unknown keys."""
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: foo\n  title: Foo\n  unknown_field: bad\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


def test_bad_regex_rejected(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: '(unclosed'\n  title: Foo\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


def test_unknown_severity_rejected(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: foo\n  title: Foo\n  severity: apocalyptic\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


def test_duplicate_ids_rejected(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: foo\n  title: Foo\n- id: a\n  regex: bar\n  title: Bar\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


def test_blank_title_rejected(tmp_path: Path) -> None:
    p = tmp_path / "rules.yaml"
    p.write_text("- id: a\n  regex: foo\n  title: '  '\n", encoding="utf-8")
    with pytest.raises(RulesInvalid):
        load_pattern_rules(p)


# ── Built-in rules ──────────────────────────────────────────
def test_default_rules_match_known_constructs() -> None:
    by_id = {r.id: r.compiled() for r in DEFAULT_RULES}
    assert by_id["tx-origin"].search("require(tx.origin == owner);")
    assert by_id["low-level-call"].search('(bool ok, ) = to.call{value: amount}("");')
    assert by_id["selfdestruct"].search("selfdestruct(payable(owner));")
    assert by_id["delegatecall"].search("impl.delegatecall(data);")


def test_rule_is_frozen() -> None:
    rule = PatternRule(id="a", regex="foo", title="Foo")
    with pytest.raises(Exception):  # ValidationError for frozen model
        rule.title = "Modified"  # type: ignore[misc]
