"""Compensation subsystem — commission obligations on completed jobs."""

from jobledger.compensation.commission import CommissionSettlement

__all__ = ["CommissionSettlement"]
