"""Tests for the job state machine — proves only legal transitions apply."""

import pytest

from jobledger.engine.job_state_machine import JobEvent, JobStateMachine
from jobledger.errors import InvalidStateError
from jobledger.models.job import Job, JobStatus


def _job(status: JobStatus) -> Job:
    return Job(job_id="job_1", customer_id="customer_1", title="Fit kitchen", status=status)


class TestHappyPath:
    def test_full_lifecycle(self) -> None:
        job = _job(JobStatus.DRAFT)
        for event, expected in [
            (JobEvent.POST, JobStatus.POSTED),
            (JobEvent.ASSIGN, JobStatus.IN_PROGRESS),
            (JobEvent.PROPOSE_FINAL_PRICE, JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION),
            (JobEvent.CONFIRM_FINAL_PRICE, JobStatus.COMPLETED),
        ]:
            JobStateMachine.apply(job, event)
            assert job.status == expected

    def test_apply_returns_previous_status(self) -> None:
        job = _job(JobStatus.POSTED)
        assert JobStateMachine.apply(job, JobEvent.ASSIGN) == JobStatus.POSTED

    def test_rejection_returns_to_work(self) -> None:
        assert JobStateMachine.next_status(
            JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION, JobEvent.REJECT_FINAL_PRICE
        ) == JobStatus.IN_PROGRESS


class TestIllegalTransitions:
    def test_illegal_event_leaves_job_untouched(self) -> None:
        job = _job(JobStatus.POSTED)
        with pytest.raises(InvalidStateError, match="Allowed from POSTED"):
            JobStateMachine.apply(job, JobEvent.CONFIRM_FINAL_PRICE)
        assert job.status == JobStatus.POSTED

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, status: JobStatus) -> None:
        assert JobStateMachine.is_terminal(status)
        assert JobStateMachine.valid_events(status) == set()

    def test_disputed_cannot_be_cancelled(self) -> None:
        assert not JobStateMachine.can_apply(JobStatus.DISPUTED, JobEvent.CANCEL)

    def test_disputed_left_only_by_dispute_events(self) -> None:
        assert JobStateMachine.valid_events(JobStatus.DISPUTED) == {
            JobEvent.DISPUTE_COMPLETE,
            JobEvent.DISPUTE_RETURN_TO_WORK,
            JobEvent.DISPUTE_RETURN_TO_CONFIRMATION,
        }

    def test_cannot_dispute_posted_job(self) -> None:
        assert not JobStateMachine.can_apply(JobStatus.POSTED, JobEvent.OPEN_DISPUTE)

    def test_admin_complete_from_awaiting(self) -> None:
        assert JobStateMachine.next_status(
            JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION, JobEvent.ADMIN_COMPLETE
        ) == JobStatus.COMPLETED
