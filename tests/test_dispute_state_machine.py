"""Tests for the dispute state machine."""

import pytest

from jobledger.engine.dispute_state_machine import DisputeStateMachine
from jobledger.errors import InvalidStateError
from jobledger.models.dispute import Dispute, DisputeStatus, DisputeType, PartyRole


def _dispute(status: DisputeStatus) -> Dispute:
    return Dispute(
        dispute_id="dsp_1",
        job_id="job_1",
        raised_by_user_id="customer_1",
        raised_by_role=PartyRole.CUSTOMER,
        type=DisputeType.WORK_QUALITY,
        title="Leaking tap",
        description="Still leaks",
        status=status,
    )


class TestDisputeTransitions:
    def test_open_to_under_review(self) -> None:
        d = _dispute(DisputeStatus.OPEN)
        DisputeStateMachine.apply_transition(d, DisputeStatus.UNDER_REVIEW)
        assert d.status == DisputeStatus.UNDER_REVIEW

    def test_open_can_resolve_directly(self) -> None:
        d = _dispute(DisputeStatus.OPEN)
        assert DisputeStateMachine.validate_transition(d, DisputeStatus.RESOLVED) == []

    def test_under_review_cannot_reopen(self) -> None:
        d = _dispute(DisputeStatus.UNDER_REVIEW)
        errors = DisputeStateMachine.validate_transition(d, DisputeStatus.OPEN)
        assert len(errors) == 1
        assert "UNDER_REVIEW" in errors[0]

    @pytest.mark.parametrize("status", [DisputeStatus.RESOLVED, DisputeStatus.CLOSED])
    def test_terminal(self, status: DisputeStatus) -> None:
        d = _dispute(status)
        assert DisputeStateMachine.is_terminal(status)
        with pytest.raises(InvalidStateError):
            DisputeStateMachine.apply_transition(d, DisputeStatus.RESOLVED)
        assert d.status == status
