"""Outbound notifications — outbox, sinks and reminder windows."""

from jobledger.notifications.outbox import LoggingSink, NotificationOutbox, NotificationSink

__all__ = ["LoggingSink", "NotificationOutbox", "NotificationSink"]
