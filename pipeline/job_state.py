"""
Asset/Job Lifecycle State Machine - the allowed status changes in one place.

Both the assets table and the transcode_jobs table carry a status column. The
asset walks the full lifecycle; the job row is created at UPLOADED and follows
the asset from there. The processor and the operator retry path check every
status change against this table before writing it.

State Transition Diagram:
    DRAFT ──> UPLOADED ──> TRANSCODING ──> READY
                  ^             │
                  │             v
                  └───────── FAILED   (operator retry only)

Usage:
    from pipeline.job_state import can_transition, validate_transition

    validate_transition(job["status"], JobStatus.TRANSCODING)  # raises InvalidTransition

Note: These checks are point-in-time. The processor's claim re-reads the row
under FOR UPDATE inside a transaction so two workers cannot both move the
same job out of UPLOADED.
"""

import logging
from typing import Dict, FrozenSet, Union

from pipeline.enums import AssetStatus, JobStatus
from pipeline.errors import InvalidTransition

logger = logging.getLogger(__name__)

StatusLike = Union[str, AssetStatus, JobStatus]

# Allowed transitions, keyed by current status
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    AssetStatus.DRAFT.value: frozenset({AssetStatus.UPLOADED.value}),
    AssetStatus.UPLOADED.value: frozenset({AssetStatus.TRANSCODING.value}),
    AssetStatus.TRANSCODING.value: frozenset({AssetStatus.READY.value, AssetStatus.FAILED.value}),
    AssetStatus.READY.value: frozenset(),
    # FAILED -> UPLOADED only through an explicit operator retry
    AssetStatus.FAILED.value: frozenset({AssetStatus.UPLOADED.value}),
}

# States the processor never mutates
TERMINAL_STATES: FrozenSet[str] = frozenset({AssetStatus.READY.value, AssetStatus.FAILED.value})


def _value(status: StatusLike) -> str:
    if isinstance(status, (AssetStatus, JobStatus)):
        return status.value
    return str(status)


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    """Return True if moving from current to target is allowed."""
    return _value(target) in TRANSITIONS.get(_value(current), frozenset())


def validate_transition(current: StatusLike, target: StatusLike) -> None:
    """
    Raise InvalidTransition if the status change is not allowed.

    Unknown statuses are rejected the same way as disallowed edges.
    """
    src = _value(current)
    dst = _value(target)
    if src not in TRANSITIONS:
        raise InvalidTransition(src, dst, f"Unknown status: {src}")
    if not can_transition(src, dst):
        raise InvalidTransition(src, dst)


def is_terminal(status: StatusLike) -> bool:
    """READY and FAILED are terminal for the processor (FAILED can still be retried by an operator)."""
    return _value(status) in TERMINAL_STATES
