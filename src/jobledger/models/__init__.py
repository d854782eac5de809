"""Core data models for jobledger."""

from jobledger.models.commission import CommissionPayment, CommissionStatus
from jobledger.models.dispute import (
    Dispute,
    DisputePriority,
    DisputeResolution,
    DisputeResponse,
    DisputeStatus,
    DisputeType,
    PartyRole,
    ResolutionActions,
)
from jobledger.models.job import AccessMethod, Job, JobAccess, JobStatus
from jobledger.models.ledger import (
    AccountStatus,
    ContractorAccount,
    CreditKind,
    CreditTransaction,
    KycStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from jobledger.models.notification import Notification, NotificationKind, WebhookReceipt

__all__ = [
    "AccessMethod",
    "AccountStatus",
    "CommissionPayment",
    "CommissionStatus",
    "ContractorAccount",
    "CreditKind",
    "CreditTransaction",
    "Dispute",
    "DisputePriority",
    "DisputeResolution",
    "DisputeResponse",
    "DisputeStatus",
    "DisputeType",
    "Job",
    "JobAccess",
    "JobStatus",
    "KycStatus",
    "Notification",
    "NotificationKind",
    "PartyRole",
    "ResolutionActions",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "WebhookReceipt",
]
