"""Typed failure taxonomy for the engine.

Every rejection the engine produces is one of these classes. The service
facade maps them onto ServiceResult error codes; callers never see a raw
exception string for an expected failure.

Categories:
- validation: malformed input, rejected before any transaction opens
- forbidden: the actor is not a party to the record
- not_found: unknown job/dispute/contractor/commission id
- conflict: the current state forbids the operation
- external: a collaborator (payment gateway, lock manager) failed; retryable
- fatal: configuration is unusable; aborts startup
"""

from __future__ import annotations


class PlatformError(Exception):
    """Base class for all engine failures."""
    code = "platform_error"
    category = "internal"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PlatformError):
    code = "validation_error"
    category = "validation"


class NotPartyError(PlatformError):
    """The actor does not own or participate in the record."""
    code = "not_party"
    category = "forbidden"


class NotFoundError(PlatformError):
    code = "not_found"
    category = "not_found"


class ConflictError(PlatformError):
    code = "conflict"
    category = "conflict"


class InvalidStateError(ConflictError):
    """Illegal state transition for a job, dispute or commission."""
    code = "invalid_state"


class InsufficientCreditsError(ConflictError):
    code = "insufficient_credits"


class DuplicateDisputeError(ConflictError):
    """The job already has an OPEN or UNDER_REVIEW dispute."""
    code = "duplicate_dispute"


class AlreadySettledError(ConflictError):
    """The commission payment is no longer PENDING or OVERDUE."""
    code = "already_settled"


class DuplicateAccessError(ConflictError):
    code = "duplicate_access"


class CapacityExceededError(ConflictError):
    code = "capacity_exceeded"


class SubscriptionInactiveError(ConflictError):
    code = "subscription_inactive"


class UniqueConstraintError(ConflictError):
    code = "unique_constraint"


class ExternalDependencyError(PlatformError):
    """Payment gateway unreachable or webhook rejected. Safe to retry."""
    code = "external_dependency"
    category = "external"
    retryable = True


class LockTimeoutError(PlatformError):
    code = "lock_timeout"
    category = "external"
    retryable = True


class PersistenceError(PlatformError):
    code = "persistence_error"
    category = "internal"


class ConfigurationError(PlatformError):
    code = "configuration_error"
    category = "fatal"
