from jobledger.scheduler.timeouts import PassReport, TimeoutScheduler

__all__ = ["PassReport", "TimeoutScheduler"]
