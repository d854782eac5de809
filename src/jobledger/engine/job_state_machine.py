"""Job state machine — the single table of legal job transitions.

Job lifecycle:
    DRAFT → POSTED → IN_PROGRESS → AWAITING_FINAL_PRICE_CONFIRMATION → COMPLETED
    AWAITING_FINAL_PRICE_CONFIRMATION → IN_PROGRESS (customer rejects price)
    DRAFT | POSTED | IN_PROGRESS | AWAITING_* → CANCELLED
    IN_PROGRESS | AWAITING_* → DISPUTED
    DISPUTED → IN_PROGRESS | AWAITING_* | COMPLETED (dispute outcome only)

Transitions are keyed by (status, event) so that the same target state can
be legal for one caller and illegal for another: only the dispute engine
emits the DISPUTE_* events, so DISPUTED is left only through it.

Fail-closed: any (status, event) pair not in the table raises
InvalidStateError and the job is untouched.
"""

from __future__ import annotations

import enum

from jobledger.errors import InvalidStateError
from jobledger.models.job import Job, JobStatus


class JobEvent(str, enum.Enum):
    POST = "POST"
    ASSIGN = "ASSIGN"
    PROPOSE_FINAL_PRICE = "PROPOSE_FINAL_PRICE"
    CONFIRM_FINAL_PRICE = "CONFIRM_FINAL_PRICE"
    REJECT_FINAL_PRICE = "REJECT_FINAL_PRICE"
    ADMIN_COMPLETE = "ADMIN_COMPLETE"
    OPEN_DISPUTE = "OPEN_DISPUTE"
    DISPUTE_COMPLETE = "DISPUTE_COMPLETE"
    DISPUTE_RETURN_TO_WORK = "DISPUTE_RETURN_TO_WORK"
    DISPUTE_RETURN_TO_CONFIRMATION = "DISPUTE_RETURN_TO_CONFIRMATION"
    CANCEL = "CANCEL"


_AWAITING = JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION

_TRANSITIONS: dict[tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.DRAFT, JobEvent.POST): JobStatus.POSTED,
    (JobStatus.POSTED, JobEvent.ASSIGN): JobStatus.IN_PROGRESS,
    (JobStatus.IN_PROGRESS, JobEvent.PROPOSE_FINAL_PRICE): _AWAITING,
    (_AWAITING, JobEvent.CONFIRM_FINAL_PRICE): JobStatus.COMPLETED,
    (_AWAITING, JobEvent.REJECT_FINAL_PRICE): JobStatus.IN_PROGRESS,
    (JobStatus.IN_PROGRESS, JobEvent.ADMIN_COMPLETE): JobStatus.COMPLETED,
    (_AWAITING, JobEvent.ADMIN_COMPLETE): JobStatus.COMPLETED,
    (JobStatus.IN_PROGRESS, JobEvent.OPEN_DISPUTE): JobStatus.DISPUTED,
    (_AWAITING, JobEvent.OPEN_DISPUTE): JobStatus.DISPUTED,
    (JobStatus.DISPUTED, JobEvent.DISPUTE_COMPLETE): JobStatus.COMPLETED,
    (JobStatus.DISPUTED, JobEvent.DISPUTE_RETURN_TO_WORK): JobStatus.IN_PROGRESS,
    (JobStatus.DISPUTED, JobEvent.DISPUTE_RETURN_TO_CONFIRMATION): _AWAITING,
    (JobStatus.DRAFT, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.POSTED, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.IN_PROGRESS, JobEvent.CANCEL): JobStatus.CANCELLED,
    (_AWAITING, JobEvent.CANCEL): JobStatus.CANCELLED,
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


class JobStateMachine:
    """Validates and applies job state transitions.

    Pure computation. Locking, persistence and side effects belong to the
    lifecycle controller and the dispute engine.
    """

    @staticmethod
    def next_status(status: JobStatus, event: JobEvent) -> JobStatus:
        """Return the target status, or raise InvalidStateError."""
        target = _TRANSITIONS.get((status, event))
        if target is None:
            allowed = sorted(e.value for (s, e) in _TRANSITIONS if s == status)
            raise InvalidStateError(
                f"Invalid job transition: {event.value} from {status.value}. "
                f"Allowed from {status.value}: [{', '.join(allowed)}]"
            )
        return target

    @staticmethod
    def apply(job: Job, event: JobEvent) -> JobStatus:
        """Validate and apply. Mutates job.status only on success."""
        previous = job.status
        job.status = JobStateMachine.next_status(previous, event)
        return previous

    @staticmethod
    def can_apply(status: JobStatus, event: JobEvent) -> bool:
        return (status, event) in _TRANSITIONS

    @staticmethod
    def is_terminal(status: JobStatus) -> bool:
        return status in TERMINAL_STATES

    @staticmethod
    def valid_events(status: JobStatus) -> set[JobEvent]:
        return {e for (s, e) in _TRANSITIONS if s == status}
