"""State machines for jobs and disputes."""

from jobledger.engine.dispute_state_machine import DisputeStateMachine
from jobledger.engine.job_state_machine import JobEvent, JobStateMachine

__all__ = ["DisputeStateMachine", "JobEvent", "JobStateMachine"]
