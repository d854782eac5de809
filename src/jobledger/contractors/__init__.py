from jobledger.contractors.onboarding import ContractorOnboarding

__all__ = ["ContractorOnboarding"]
