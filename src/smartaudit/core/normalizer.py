"""Findings normalizer / scorer.

Merges the raw output of N analyzers into one ``Finding`` list and ranks it.

How it works
------------
1. Each :class:`SourceOutput` carries a ``source`` tag and a list of
   native items (whatever shape that analyzer emits).
2. ``normalize()`` looks the tag up in the adapter registry and lets the
   adapter map every item into a :class:`Finding`.  Severity and
   confidence go through fixed lookup tables; unknown values fall back to
   ``info`` / ``medium``.  Malformed items, and outputs whose tag is not
   a string or whose items are not a list, are logged and skipped.
3. Results are concatenated in input order.  Nothing is deduplicated:
   two analyzers reporting the same line is signal, and every finding
   keeps its source-prefixed id.

Ranking
-------
``priority = severity_weight × confidence_weight``.  ``top_k()`` is a
stable descending sort, so ties keep the order the analyzers reported in.

Adding an analyzer means registering an adapter with
:func:`register_adapter`; ``normalize()`` never branches on source names.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from smartaudit.core.models import Confidence, Finding, Severity, Summary

logger = structlog.get_logger()

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.INFO: 1,
    Severity.LOW: 2,
    Severity.MEDIUM: 4,
    Severity.HIGH: 7,
    Severity.CRITICAL: 10,
}

CONFIDENCE_WEIGHTS: dict[Confidence, int] = {
    Confidence.LOW: 1,
    Confidence.MEDIUM: 2,
    Confidence.HIGH: 3,
}

FALLBACK_SEVERITY = Severity.INFO
FALLBACK_CONFIDENCE = Confidence.MEDIUM


@dataclass(frozen=True)
class SourceOutput:
    """Raw, source-tagged output of one analyzer."""

    source: str
    items: list[Any] = field(default_factory=list)


def is_well_formed(output: Any) -> bool:
    """True when *output* is a ``SourceOutput`` with a string tag and a list of items."""
    return (
        isinstance(output, SourceOutput)
        and isinstance(output.source, str)
        and isinstance(output.items, (list, tuple))
    )


# ── Adapters ────────────────────────────────────────────────
@dataclass(frozen=True)
class SourceAdapter:
    """Maps one analyzer's native vocabulary into :class:`Finding`.

    ``extract`` pulls plain fields out of a native item; the lookup tables
    translate the analyzer's severity / confidence words.
    """

    source: str
    id_prefix: str
    severity_map: Mapping[str, Severity]
    confidence_map: Mapping[str, Confidence]
    extract: Callable[[Any], dict[str, Any]]
    default_confidence: Confidence = FALLBACK_CONFIDENCE

    def severity(self, native: Any) -> Severity:
        return self.severity_map.get(_key(native), FALLBACK_SEVERITY)

    def confidence(self, native: Any) -> Confidence:
        if native is None or native == "":
            return self.default_confidence
        return self.confidence_map.get(_key(native), FALLBACK_CONFIDENCE)

    def to_finding(self, item: Any, index: int) -> Finding:
        fields = self.extract(item)
        category = _text(fields.get("category")) or "general"
        return Finding(
            id=f"{self.id_prefix}-{index:03d}",
            file=_text(fields.get("file")) or "unknown",
            line=_line(fields.get("line")),
            title=_text(fields.get("title")) or "Unknown Issue",
            description=_text(fields.get("description")),
            severity=self.severity(fields.get("severity")),
            confidence=self.confidence(fields.get("confidence")),
            recommendation=_text(fields.get("recommendation")) or "Review the code carefully",
            source=self.source,
            category=category,
        )


def _key(native: Any) -> str:
    return str(native).strip().lower()


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _line(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int) and value > 0:
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


_CANONICAL_SEVERITY = {s.value: s for s in Severity}
_CANONICAL_CONFIDENCE = {c.value: c for c in Confidence}


def _extract_slither(item: Mapping[str, Any]) -> dict[str, Any]:
    elements = item.get("elements") or [{}]
    first = elements[0] if isinstance(elements, list) and elements and isinstance(elements[0], dict) else {}
    mapping = first.get("source_mapping") or {}
    lines = mapping.get("lines") or []
    return {
        "file": mapping.get("filename_relative"),
        "line": lines[0] if isinstance(lines, list) and lines else 0,
        "title": item.get("check"),
        "description": item.get("description"),
        "severity": item.get("impact"),
        "confidence": item.get("confidence"),
        "recommendation": item.get("markdown"),
        "category": item.get("check"),
    }


def _extract_solhint(item: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "file": item.get("filePath"),
        "line": item.get("line"),
        "title": item.get("ruleId") or "Style Issue",
        "description": item.get("message"),
        "severity": item.get("severity"),
        "confidence": None,
        "recommendation": "Follow Solidity best practices",
        "category": item.get("ruleId") or "style",
    }


def _extract_canonical(item: Mapping[str, Any]) -> dict[str, Any]:
    return dict(item)


_ADAPTERS: dict[str, SourceAdapter] = {}


def register_adapter(adapter: SourceAdapter) -> None:
    """Register (or replace) the adapter for ``adapter.source``."""
    _ADAPTERS[adapter.source.lower()] = adapter


def get_adapter(source: str) -> SourceAdapter:
    """Adapter for *source*; unknown sources get a canonical-vocabulary adapter."""
    adapter = _ADAPTERS.get(source.lower())
    if adapter is not None:
        return adapter
    return SourceAdapter(
        source=source,
        id_prefix=(source[:4] or "GEN").upper(),
        severity_map=_CANONICAL_SEVERITY,
        confidence_map=_CANONICAL_CONFIDENCE,
        extract=_extract_canonical,
    )


register_adapter(
    SourceAdapter(
        source="slither",
        id_prefix="SLTH",
        severity_map={
            "high": Severity.HIGH,
            "medium": Severity.MEDIUM,
            "low": Severity.LOW,
            "informational": Severity.INFO,
            "optimization": Severity.INFO,
        },
        confidence_map=_CANONICAL_CONFIDENCE,
        extract=_extract_slither,
    )
)
register_adapter(
    SourceAdapter(
        source="solhint",
        id_prefix="SLNT",
        severity_map={
            "error": Severity.HIGH,
            "2": Severity.HIGH,
            "warning": Severity.MEDIUM,
            "1": Severity.MEDIUM,
            "info": Severity.INFO,
        },
        confidence_map=_CANONICAL_CONFIDENCE,
        extract=_extract_solhint,
    )
)
register_adapter(
    SourceAdapter(
        source="pattern",
        id_prefix="PTRN",
        severity_map=_CANONICAL_SEVERITY,
        confidence_map=_CANONICAL_CONFIDENCE,
        extract=_extract_canonical,
    )
)


# ── Public API ──────────────────────────────────────────────
def normalize(raw_outputs: Sequence[SourceOutput]) -> list[Finding]:
    """Merge every analyzer's native items into one ``Finding`` list.

    Never raises on analyzer content: unmapped levels fall back and items
    that cannot be read at all are skipped with a warning.
    """
    findings: list[Finding] = []
    # Ids stay unique when one source appears more than once.
    counters: dict[str, int] = {}
    for output in raw_outputs:
        if not is_well_formed(output):
            logger.warning(
                "source_output_skipped",
                output_type=type(output).__name__,
                source=repr(getattr(output, "source", None)),
                reason="malformed output",
            )
            continue
        adapter = get_adapter(output.source)
        start = index = counters.get(adapter.id_prefix, 0)
        for item in output.items:
            if not isinstance(item, Mapping):
                logger.warning("finding_item_skipped", source=output.source, reason="not a mapping")
                continue
            try:
                finding = adapter.to_finding(item, index + 1)
            except (AttributeError, IndexError, KeyError, TypeError, ValueError) as exc:
                logger.warning("finding_item_skipped", source=output.source, reason=str(exc))
                continue
            index += 1
            findings.append(finding)
        counters[adapter.id_prefix] = index
        logger.debug("source_normalized", source=output.source, findings=index - start)
    return findings


def summarize(findings: Sequence[Finding]) -> Summary:
    """Count findings per severity bucket."""
    counts = {s: 0 for s in Severity}
    for f in findings:
        counts[f.severity] += 1
    return Summary(
        critical=counts[Severity.CRITICAL],
        high=counts[Severity.HIGH],
        medium=counts[Severity.MEDIUM],
        low=counts[Severity.LOW],
        info=counts[Severity.INFO],
    )


def priority(finding: Finding) -> int:
    """Severity weight times confidence weight."""
    return SEVERITY_WEIGHTS[finding.severity] * CONFIDENCE_WEIGHTS[finding.confidence]


def rank(findings: Sequence[Finding]) -> list[Finding]:
    """All findings, highest priority first; ties keep input order."""
    return sorted(findings, key=priority, reverse=True)


def top_k(findings: Sequence[Finding], k: int) -> list[Finding]:
    """The *k* highest-priority findings (stable on ties)."""
    if k <= 0:
        return []
    return rank(findings)[:k]
