"""Notification and webhook receipt models."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class NotificationKind(str, enum.Enum):
    INFO = "INFO"
    FINAL_PRICE_PROPOSED = "FINAL_PRICE_PROPOSED"
    FINAL_PRICE_CONFIRMED = "FINAL_PRICE_CONFIRMED"
    FINAL_PRICE_REJECTED = "FINAL_PRICE_REJECTED"
    FINAL_PRICE_REMINDER = "FINAL_PRICE_REMINDER"
    JOB_ASSIGNED = "JOB_ASSIGNED"
    JOB_CANCELLED = "JOB_CANCELLED"
    JOB_COMPLETED = "JOB_COMPLETED"
    COMMISSION_DUE = "COMMISSION_DUE"
    COMMISSION_OVERDUE = "COMMISSION_OVERDUE"
    DISPUTE_CREATED = "DISPUTE_CREATED"
    DISPUTE_RESPONSE = "DISPUTE_RESPONSE"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    DISPUTE_CLOSED = "DISPUTE_CLOSED"
    KYC_OVERDUE = "KYC_OVERDUE"
    PAYMENT_FAILED = "PAYMENT_FAILED"


@dataclass(frozen=True)
class Notification:
    """A persisted in-app notification.

    Written in the same unit of work as the state change that caused it;
    delivered to the external sink through the outbox after commit.
    """
    notification_id: str
    user_id: str
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime
    action_link: Optional[str] = None
    job_id: Optional[str] = None
    commission_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookReceipt:
    """Marks a gateway webhook as processed. Keyed by type and object id."""
    receipt_id: str
    event_type: str
    object_id: str
    received_at: datetime
    outcome: str
