from jobledger.disputes.engine import DisputeResolutionEngine

__all__ = ["DisputeResolutionEngine"]
