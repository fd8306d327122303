"""
Notification Dispatcher.

``enqueue`` commits the notification row in its own transaction (the durable
outbox) and returns; delivery through the configured channel happens on a
worker pool. Delivery failures are retried with exponential backoff and end up
in ``delivery_status`` / ``last_error``; nothing is raised back to the caller.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from app.examflow.errors import NotFound
from app.examflow.models import User
from app.examflow.utils import SystemClock

from .channels import Channel, NotificationDeliveryFailure, channel_from_config
from .models import DeliveryStatus, Notification, NotificationType

logger = logging.getLogger(__name__)


def _log_worker_failure(notification_id: int, future: Future) -> None:
    if future.cancelled():
        logger.warning("Delivery of notification id=%s was cancelled before it ran", notification_id)
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            "Delivery worker crashed for notification id=%s; row stays for redelivery",
            notification_id,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        channel: Channel,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 60.0,
        run_async: bool = True,
        workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
        clock: SystemClock | None = None,
    ) -> None:
        self._sessions = session_factory
        self.channel = channel
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._clock = clock or SystemClock()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") if run_async else None

    # --- outbox ---

    def enqueue(
        self,
        recipient_id: int,
        type: NotificationType,
        document_id: int | None,
        message: str,
        *,
        title: str = "",
    ) -> int:
        s: Session = self._sessions()
        try:
            n = Notification(
                recipient_id=recipient_id,
                type=type,
                document_id=document_id,
                title=title,
                message=message,
                created_at=self._clock.now(),
            )
            s.add(n)
            s.commit()
            notification_id = n.id
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

        logger.debug("Enqueued notification id=%s recipient=%s type=%s", notification_id, recipient_id, type.value)
        self._schedule(notification_id)
        return notification_id

    def _schedule(self, notification_id: int) -> None:
        if self._executor is None:
            self.deliver(notification_id)
        else:
            future = self._executor.submit(self.deliver, notification_id)
            future.add_done_callback(partial(_log_worker_failure, notification_id))

    def backoff_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def deliver(self, notification_id: int) -> bool:
        """Attempt delivery until it succeeds or attempts are exhausted. Returns True on success."""
        while True:
            s: Session = self._sessions()
            try:
                n = s.get(Notification, notification_id)
                if n is None:
                    logger.warning("Notification id=%s vanished before delivery", notification_id)
                    return False
                if n.delivery_status == DeliveryStatus.DELIVERED:
                    return True

                recipient = s.get(User, n.recipient_id)
                n.attempts += 1
                try:
                    self.channel.send(n, recipient_email=recipient.email if recipient else None)
                except Exception as e:
                    failure = e if isinstance(e, NotificationDeliveryFailure) else NotificationDeliveryFailure(str(e))
                    n.last_error = str(failure)[:512]
                    attempt = n.attempts
                    if attempt >= self.max_attempts:
                        n.delivery_status = DeliveryStatus.FAILED
                        s.commit()
                        logger.error(
                            "Notification id=%s delivery failed permanently after %s attempts: %s",
                            notification_id,
                            attempt,
                            failure,
                        )
                        return False
                    s.commit()
                    delay = self.backoff_for(attempt)
                    logger.warning(
                        "Notification id=%s delivery attempt %s/%s failed (%s); retrying in %.1fs",
                        notification_id,
                        attempt,
                        self.max_attempts,
                        failure,
                        delay,
                    )
                else:
                    n.delivery_status = DeliveryStatus.DELIVERED
                    n.delivered_at = self._clock.now()
                    n.last_error = None
                    s.commit()
                    return True
            finally:
                s.close()
            self._sleep(delay)

    def redeliver_pending(self, *, include_failed: bool = False) -> int:
        """Out-of-band sweep: reschedule rows that never reached the channel."""
        statuses = [DeliveryStatus.PENDING]
        if include_failed:
            statuses.append(DeliveryStatus.FAILED)
        s: Session = self._sessions()
        try:
            ids = list(
                s.scalars(
                    select(Notification.id)
                    .where(Notification.delivery_status.in_(statuses))
                    .order_by(Notification.id.asc())
                ).all()
            )
            if include_failed and ids:
                # Failed rows get a fresh attempt budget.
                s.execute(
                    update(Notification)
                    .where(Notification.id.in_(ids), Notification.delivery_status == DeliveryStatus.FAILED)
                    .values(delivery_status=DeliveryStatus.PENDING, attempts=0)
                )
                s.commit()
        finally:
            s.close()
        for nid in ids:
            self._schedule(nid)
        logger.info("Rescheduled %d undelivered notifications", len(ids))
        return len(ids)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    # --- inbox ---

    def mark_read(self, notification_id: int, *, recipient_id: int | None = None) -> Notification:
        s: Session = self._sessions()
        try:
            n = s.get(Notification, notification_id)
            if n is None or (recipient_id is not None and n.recipient_id != recipient_id):
                raise NotFound(f"Notification {notification_id} not found.", notification_id=notification_id)
            if not n.read:
                n.read = True
                n.read_at = self._clock.now()
                s.commit()
            return n
        finally:
            s.close()

    def mark_all_read(self, recipient_id: int) -> int:
        s: Session = self._sessions()
        try:
            res = s.execute(
                update(Notification)
                .where(Notification.recipient_id == recipient_id, Notification.read.is_(False))
                .values(read=True, read_at=self._clock.now())
            )
            s.commit()
            return res.rowcount or 0
        finally:
            s.close()

    def list_unread(self, recipient_id: int) -> int:
        s: Session = self._sessions()
        try:
            return s.scalar(
                select(func.count(Notification.id)).where(
                    Notification.recipient_id == recipient_id,
                    Notification.read.is_(False),
                )
            ) or 0
        finally:
            s.close()

    def list_for_recipient(self, recipient_id: int, *, limit: int = 50) -> list[Notification]:
        s: Session = self._sessions()
        try:
            stmt = (
                select(Notification)
                .where(Notification.recipient_id == recipient_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
            )
            return list(s.scalars(stmt).all())
        finally:
            s.close()


def dispatcher_from_config(config: dict, session_factory: sessionmaker) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory,
        channel_from_config(config),
        max_attempts=int(config.get("NOTIFY_MAX_ATTEMPTS") or 5),
        backoff_seconds=float(config.get("NOTIFY_BACKOFF_SECONDS") or 0.0),
        backoff_max_seconds=float(config.get("NOTIFY_BACKOFF_MAX_SECONDS") or 60.0),
        run_async=bool(config.get("NOTIFY_ASYNC", True)),
        workers=int(config.get("NOTIFY_WORKERS") or 2),
    )
