from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from smartaudit.core.errors import StateTransitionInvalid
from smartaudit.core.models import AuditRun, RunStatus


# Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


@dataclass(frozen=True)
class TransitionEvent:
    run_id: str
    from_status: RunStatus
    to_status: RunStatus
    at_utc: str  # ISO string


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def can_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def transition(run: AuditRun, to_status: RunStatus, *, error: str | None = None) -> TransitionEvent:
    """Move *run* to *to_status*, stamping ``completed_at`` on terminal states.

    Raises
    ------
    StateTransitionInvalid
        If the edge is not in :data:`ALLOWED_TRANSITIONS`.
    """
    from_status = run.status
    if not can_transition(from_status, to_status):
        raise StateTransitionInvalid(from_status.value, to_status.value)

    ts = utc_now()
    run.status = to_status
    if to_status.is_terminal:
        run.completed_at = ts
    if to_status is RunStatus.FAILED:
        run.error = error or "audit failed"
    return TransitionEvent(run_id=run.id, from_status=from_status, to_status=to_status, at_utc=ts)
