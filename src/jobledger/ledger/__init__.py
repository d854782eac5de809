from jobledger.ledger.credit_ledger import CreditLedger

__all__ = ["CreditLedger"]
