from __future__ import annotations

from purgegate.domain.models import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_FAILED,
    JOB_STATUS_LOCAL_CLEANUP,
    JOB_STATUS_PENDING,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
    TERMINAL_JOB_STATUSES,
)


GATE_SNAPSHOT_READY = "snapshot_ready"
GATE_SNAPSHOT_DOWNLOADED = "snapshot_downloaded"
GATE_SNAPSHOT_ACKNOWLEDGED = "snapshot_acknowledged"

PHASE_EXTERNAL = "external"
PHASE_LOCAL = "local"
CLEANUP_PHASES = (PHASE_EXTERNAL, PHASE_LOCAL)

# Forward order of the non-failed stages; failed sits outside the sequence.
STATUS_SEQUENCE = (
    JOB_STATUS_PENDING,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_LOCAL_CLEANUP,
    JOB_STATUS_COMPLETED,
)

TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_STATUS_PENDING: frozenset({JOB_STATUS_SNAPSHOT}),
    JOB_STATUS_SNAPSHOT: frozenset({JOB_STATUS_SNAPSHOT_READY, JOB_STATUS_FAILED}),
    JOB_STATUS_SNAPSHOT_READY: frozenset({JOB_STATUS_EXTERNAL_CLEANUP}),
    JOB_STATUS_EXTERNAL_CLEANUP: frozenset({JOB_STATUS_LOCAL_CLEANUP, JOB_STATUS_FAILED}),
    JOB_STATUS_LOCAL_CLEANUP: frozenset({JOB_STATUS_COMPLETED, JOB_STATUS_FAILED}),
    JOB_STATUS_COMPLETED: frozenset(),
    JOB_STATUS_FAILED: frozenset(),
}

# Edges only the abandonment sweep may take.
SWEEP_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_STATUS_PENDING: frozenset({JOB_STATUS_FAILED}),
    JOB_STATUS_SNAPSHOT: frozenset({JOB_STATUS_FAILED}),
    JOB_STATUS_SNAPSHOT_READY: frozenset({JOB_STATUS_FAILED}),
}
ABANDONABLE_STATUSES = tuple(SWEEP_TRANSITIONS)
CLEANUP_STATUSES = (JOB_STATUS_EXTERNAL_CLEANUP, JOB_STATUS_LOCAL_CLEANUP)

PHASE_STATUS = {
    PHASE_EXTERNAL: JOB_STATUS_EXTERNAL_CLEANUP,
    PHASE_LOCAL: JOB_STATUS_LOCAL_CLEANUP,
}
PHASE_NEXT_STATUS = {
    PHASE_EXTERNAL: JOB_STATUS_LOCAL_CLEANUP,
    PHASE_LOCAL: JOB_STATUS_COMPLETED,
}
STATUS_PHASE = {status: phase for phase, status in PHASE_STATUS.items()}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_JOB_STATUSES


def can_transition(current: str, target: str, *, sweep: bool = False) -> bool:
    if target in TRANSITIONS.get(current, frozenset()):
        return True
    return sweep and target in SWEEP_TRANSITIONS.get(current, frozenset())


def stage_index(status: str) -> int:
    # Failed has no position; callers check terminal states first.
    return STATUS_SEQUENCE.index(status)
