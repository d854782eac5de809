"""Dispute state machine.

    OPEN → UNDER_REVIEW → RESOLVED | CLOSED
    OPEN → RESOLVED | CLOSED

RESOLVED and CLOSED are terminal.
"""

from __future__ import annotations

from jobledger.errors import InvalidStateError
from jobledger.models.dispute import Dispute, DisputeStatus


_TRANSITIONS: dict[DisputeStatus, set[DisputeStatus]] = {
    DisputeStatus.OPEN: {
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    },
    DisputeStatus.UNDER_REVIEW: {DisputeStatus.RESOLVED, DisputeStatus.CLOSED},
    DisputeStatus.RESOLVED: set(),
    DisputeStatus.CLOSED: set(),
}


class DisputeStateMachine:

    @staticmethod
    def validate_transition(dispute: Dispute, target: DisputeStatus) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = dispute.status
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid dispute transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(dispute: Dispute, target: DisputeStatus) -> None:
        """Validate and apply, raising InvalidStateError on an illegal move."""
        errors = DisputeStateMachine.validate_transition(dispute, target)
        if errors:
            raise InvalidStateError(errors[0])
        dispute.status = target

    @staticmethod
    def is_terminal(status: DisputeStatus) -> bool:
        return status in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED)
