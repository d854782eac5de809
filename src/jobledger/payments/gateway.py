"""Payment gateway port.

The engine never speaks a gateway's wire protocol. Adapters implement
PaymentGateway and raise ExternalDependencyError when the gateway cannot
be reached. Gateway calls are always made outside a unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable
from uuid import uuid4

from jobledger.errors import ExternalDependencyError


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    succeeded: bool
    amount: Decimal
    customer_ref: Optional[str] = None


@runtime_checkable
class PaymentGateway(Protocol):

    def verify_payment(self, reference: str) -> PaymentVerification:
        """Look up a payment by reference. Raises ExternalDependencyError."""
        ...

    def create_charge(self, customer_ref: str, amount: Decimal, description: str) -> str:
        """Create a charge and return its reference. Raises ExternalDependencyError."""
        ...


class InMemoryGateway:
    """Deterministic gateway for tests and local runs.

    Usage:
        gateway = InMemoryGateway()
        gateway.record_payment("pi_1", Decimal("12.00"))
        gateway.verify_payment("pi_1").succeeded  # True
    """

    def __init__(self) -> None:
        self._payments: dict[str, PaymentVerification] = {}
        self.available = True

    def record_payment(
        self,
        reference: str,
        amount: Decimal,
        succeeded: bool = True,
        customer_ref: Optional[str] = None,
    ) -> None:
        self._payments[reference] = PaymentVerification(
            reference=reference,
            succeeded=succeeded,
            amount=amount,
            customer_ref=customer_ref,
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        self._check_available()
        found = self._payments.get(reference)
        if found is None:
            return PaymentVerification(reference=reference, succeeded=False, amount=Decimal("0"))
        return found

    def create_charge(self, customer_ref: str, amount: Decimal, description: str) -> str:
        self._check_available()
        reference = f"pay_{uuid4().hex[:12]}"
        self.record_payment(reference, amount, customer_ref=customer_ref)
        return reference

    def _check_available(self) -> None:
        if not self.available:
            raise ExternalDependencyError("Payment gateway unavailable")
