"""
Batch status transitions.

PENDING_REVIEW -> REVIEWED | COMMITTED | REJECTED
REVIEWED       -> PENDING_REVIEW | COMMITTED | REJECTED
COMMITTED, REJECTED are terminal; a COMMITTED batch can only be deleted.
"""

from app.models.enums import BatchStatus

TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING_REVIEW: frozenset({BatchStatus.REVIEWED, BatchStatus.COMMITTED, BatchStatus.REJECTED}),
    BatchStatus.REVIEWED: frozenset({BatchStatus.PENDING_REVIEW, BatchStatus.COMMITTED, BatchStatus.REJECTED}),
    BatchStatus.COMMITTED: frozenset(),
    BatchStatus.REJECTED: frozenset(),
}

EDITABLE_STATUSES = frozenset({BatchStatus.PENDING_REVIEW, BatchStatus.REVIEWED})


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in TRANSITIONS[current]


def is_editable(status: BatchStatus) -> bool:
    return status in EDITABLE_STATUSES
