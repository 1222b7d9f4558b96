"""Audit registry: keyed store of run records.

The coordinator receives a store instead of reaching for module-level
state.  The store owns retention: :class:`InMemoryAuditStore` keeps every
run for the process lifetime unless ``max_runs`` is set, in which case the
oldest *terminal* runs are evicted first.  Runs still in flight are never
evicted.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Protocol

import structlog

from smartaudit.core.errors import RunNotFound
from smartaudit.core.models import AuditRun

logger = structlog.get_logger()


class AuditStore(Protocol):
    def get(self, run_id: str) -> AuditRun: ...

    def set(self, run: AuditRun) -> None: ...

    def list(self) -> list[AuditRun]: ...


class InMemoryAuditStore:
    """Volatile run registry (process-lifetime only)."""

    def __init__(self, *, max_runs: int = 0) -> None:
        self._runs: OrderedDict[str, AuditRun] = OrderedDict()
        self.max_runs = max_runs

    def get(self, run_id: str) -> AuditRun:
        """Return the run registered under *run_id*.

        Raises
        ------
        RunNotFound
            If no such run exists (or it was evicted).
        """
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def set(self, run: AuditRun) -> None:
        self._runs[run.id] = run
        self._evict()

    def list(self) -> list[AuditRun]:
        """All runs, most recently started first (ties: latest registered first)."""
        ordered = sorted(enumerate(self._runs.values()), key=lambda p: (p[1].started_at, p[0]), reverse=True)
        return [run for _, run in ordered]

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def _evict(self) -> None:
        if self.max_runs <= 0:
            return
        overflow = len(self._runs) - self.max_runs
        if overflow <= 0:
            return
        for run_id in [rid for rid, r in self._runs.items() if r.status.is_terminal][:overflow]:
            del self._runs[run_id]
            logger.debug("run_evicted", run_id=run_id)
