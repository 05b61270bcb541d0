"""
Notifications -- fire-and-forget messages to the parties of a connection.

Responsibility:
    Defines the ``Notifier`` port and a dispatcher that delivers
    notifications on a background worker after the unit of work that
    produced them has committed.

Architecture position:
    Services -- outer shell.  The kernel never notifies; LeadPayPlatform
    dispatches after commit.

Failure modes:
    Delivery failures are logged with ``exc_info`` and never propagate to
    the operation that triggered them.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from leadpay_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class NotificationKind(str, Enum):
    REQUEST_RECEIVED = "request_received"
    TERMS_PROPOSED = "terms_proposed"
    TERMS_ACCEPTED = "terms_accepted"
    TERMS_DECLINED = "terms_declined"
    REQUEST_REJECTED = "request_rejected"
    TERMS_UPDATED = "terms_updated"
    CONNECTION_TERMINATED = "connection_terminated"
    CAP_REACHED = "cap_reached"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    recipient_id: UUID
    subject_id: UUID
    details: dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """Delivery port (email, push, webhook...)."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        ...


class LoggingNotifier(Notifier):
    """Notifier that only records the notification in the structured log."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification_sent",
            extra={
                "kind": notification.kind.value,
                "recipient_id": str(notification.recipient_id),
                "subject_id": str(notification.subject_id),
                "details": notification.details,
            },
        )


class NotificationDispatcher:
    """
    Hands notifications to a ``Notifier`` on a single background worker.

    Contract:
        ``dispatch`` returns immediately.  ``flush`` blocks until every
        notification dispatched so far has been attempted.

    Non-goals:
        - No retry and no persistence; a failed delivery is logged and
          dropped.
    """

    def __init__(self, notifier: Notifier | None = None, max_workers: int = 1):
        self._notifier = notifier or LoggingNotifier()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="leadpay-notify"
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def dispatch(self, notification: Notification) -> None:
        future = self._executor.submit(self._deliver, notification)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def flush(self, timeout: float | None = 10.0) -> None:
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.exception(timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _deliver(self, notification: Notification) -> None:
        try:
            self._notifier.send(notification)
        except Exception:
            logger.error(
                "notification_failed",
                extra={
                    "kind": notification.kind.value,
                    "recipient_id": str(notification.recipient_id),
                },
                exc_info=True,
            )

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
