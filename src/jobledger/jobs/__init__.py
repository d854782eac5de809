"""Job lifecycle and lead access."""

from jobledger.jobs.access import LeadAccessService
from jobledger.jobs.lifecycle import JobLifecycleController

__all__ = ["JobLifecycleController", "LeadAccessService"]
