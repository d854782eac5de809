"""Notification outbox — at-least-once delivery after commit.

Components never call the external sink directly. They call
NotificationOutbox.notify(uow, ...), which stages a Notification row in
the caller's unit of work and registers an after-commit hook that queues
the outbound task. A rolled-back transaction therefore neither persists
the notification nor sends it.

flush() delivers queued tasks. A sink failure keeps the task for retry up
to max_attempts, after which it is dead-lettered. Delivery failure never
reverses committed state.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable
from uuid import uuid4

import structlog

from jobledger.models.notification import Notification, NotificationKind
from jobledger.persistence.store import UnitOfWork

logger = structlog.get_logger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """External delivery channel (email, push, in-app feed)."""

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> None:
        ...


class LoggingSink:
    """Sink that writes notifications to the structured log."""

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> None:
        logger.info(
            "Notification delivered",
            user_id=user_id,
            title=title,
            action_link=action_link,
        )


@dataclass
class OutboxTask:
    task_id: str
    user_id: str
    title: str
    message: str
    action_link: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class FlushReport:
    delivered: int
    retrying: int
    dead_lettered: int


class NotificationOutbox:
    """Usage:
        outbox = NotificationOutbox(sink, max_attempts=5)
        with store.transaction() as uow:
            ...
            outbox.notify(uow, customer_id, NotificationKind.INFO, "Title", "Body")
        outbox.flush()
    """

    def __init__(self, sink: NotificationSink, max_attempts: int = 5) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sink = sink
        self._max_attempts = max_attempts
        self._pending: list[OutboxTask] = []
        self._dead: list[OutboxTask] = []
        self._lock = threading.Lock()

    def notify(
        self,
        uow: UnitOfWork,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_link: Optional[str] = None,
        job_id: Optional[str] = None,
        commission_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Persist an in-app notification and queue delivery after commit."""
        if now is None:
            now = datetime.now(timezone.utc)
        notification = Notification(
            notification_id=f"ntf_{uuid4().hex[:12]}",
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            created_at=now,
            action_link=action_link,
            job_id=job_id,
            commission_id=commission_id,
        )
        uow.put("notifications", notification)
        uow.after_commit(
            lambda: self.enqueue(user_id, title, message, action_link)
        )
        return notification

    def enqueue(
        self,
        user_id: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> OutboxTask:
        task = OutboxTask(
            task_id=f"out_{uuid4().hex[:12]}",
            user_id=user_id,
            title=title,
            message=message,
            action_link=action_link,
        )
        with self._lock:
            self._pending.append(task)
        return task

    def flush(self) -> FlushReport:
        """Attempt delivery of every pending task once."""
        with self._lock:
            batch, self._pending = self._pending, []

        delivered = 0
        retry: list[OutboxTask] = []
        dead: list[OutboxTask] = []
        for task in batch:
            task.attempts += 1
            try:
                self._sink.notify(task.user_id, task.title, task.message, task.action_link)
                delivered += 1
            except Exception as e:
                task.last_error = str(e)
                if task.attempts >= self._max_attempts:
                    logger.error(
                        "Notification dead-lettered",
                        task_id=task.task_id,
                        user_id=task.user_id,
                        attempts=task.attempts,
                        error=task.last_error,
                    )
                    dead.append(task)
                else:
                    logger.warning(
                        "Notification delivery failed",
                        task_id=task.task_id,
                        user_id=task.user_id,
                        attempts=task.attempts,
                        error=task.last_error,
                    )
                    retry.append(task)

        with self._lock:
            self._pending = retry + self._pending
            self._dead.extend(dead)
        return FlushReport(delivered=delivered, retrying=len(retry), dead_lettered=len(dead))

    @property
    def pending(self) -> list[OutboxTask]:
        with self._lock:
            return list(self._pending)

    @property
    def dead_letters(self) -> list[OutboxTask]:
        with self._lock:
            return list(self._dead)
