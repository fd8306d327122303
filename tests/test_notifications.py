import logging
import smtplib

import pytest

from app.examflow import create_app
from app.examflow.db import session_scope
from app.examflow.errors import NotFound
from app.examflow.models import Base, User, UserRole
from app.examflow.modules.notifications.channels import (
    Channel,
    LogChannel,
    NotificationDeliveryFailure,
    SmtpChannel,
    channel_from_config,
)
from app.examflow.modules.notifications.dispatcher import NotificationDispatcher, dispatcher_from_config
from app.examflow.modules.notifications.models import DeliveryStatus, Notification, NotificationType


class FlakyChannel(Channel):
    name = "flaky"

    def __init__(self, failures: int):
        self.failures = failures
        self.sent = []

    def send(self, notification, *, recipient_email):
        if self.failures > 0:
            self.failures -= 1
            raise NotificationDeliveryFailure("mail relay unavailable")
        self.sent.append((notification.id, recipient_email))


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFY_CHANNEL", "log")
    monkeypatch.setenv("NOTIFY_ASYNC", "0")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    yield app
    app.extensions["notification_dispatcher"].shutdown()


@pytest.fixture()
def recipient_id(app):
    with session_scope(app) as s:
        u = User(email="owner@example.edu", display_name="Olive Owner", role=UserRole.ORIGINATOR)
        s.add(u)
        s.flush()
        return u.id


def _dispatcher(app, channel, sleeps, **kwargs):
    opts = {"max_attempts": 4, "backoff_seconds": 1.0, "backoff_max_seconds": 3.0, "run_async": False}
    opts.update(kwargs)
    return NotificationDispatcher(
        app.extensions["sqlalchemy_sessionmaker"],
        channel,
        sleep=sleeps.append,
        **opts,
    )


def _row(app, notification_id):
    with session_scope(app) as s:
        return s.get(Notification, notification_id)


def test_backoff_doubles_and_is_capped(app):
    d = _dispatcher(app, LogChannel(), [], backoff_seconds=0.5, backoff_max_seconds=3.0)
    assert [d.backoff_for(n) for n in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_transient_failures_are_retried_with_backoff(app, recipient_id):
    sleeps = []
    channel = FlakyChannel(failures=2)
    d = _dispatcher(app, channel, sleeps)

    nid = d.enqueue(recipient_id, NotificationType.APPROVAL, 7, "Your document was approved", title="Document Approved")

    n = _row(app, nid)
    assert n.delivery_status == DeliveryStatus.DELIVERED
    assert n.attempts == 3
    assert n.last_error is None
    assert n.delivered_at is not None
    assert sleeps == [1.0, 2.0]
    assert channel.sent == [(nid, "owner@example.edu")]


def test_exhausted_attempts_mark_failed_without_raising(app, recipient_id):
    sleeps = []
    d = _dispatcher(app, FlakyChannel(failures=100), sleeps)

    nid = d.enqueue(recipient_id, NotificationType.REJECTION, 7, "Needs revision")

    n = _row(app, nid)
    assert n.delivery_status == DeliveryStatus.FAILED
    assert n.attempts == 4
    assert "mail relay unavailable" in n.last_error
    # No sleep after the last attempt; the cap applies to the third wait.
    assert sleeps == [1.0, 2.0, 3.0]
    # The row itself is durable and visible to the recipient.
    assert d.list_unread(recipient_id) == 1


def test_unexpected_channel_errors_are_treated_as_delivery_failures(app, recipient_id):
    class ExplodingChannel(Channel):
        def send(self, notification, *, recipient_email):
            raise ValueError("boom")

    d = _dispatcher(app, ExplodingChannel(), [], max_attempts=1)
    nid = d.enqueue(recipient_id, NotificationType.INFO, None, "hello")

    n = _row(app, nid)
    assert n.delivery_status == DeliveryStatus.FAILED
    assert n.last_error == "boom"


def test_redeliver_pending_retries_failed_rows_with_fresh_budget(app, recipient_id):
    channel = FlakyChannel(failures=1)
    d = _dispatcher(app, channel, [], max_attempts=1)
    nid = d.enqueue(recipient_id, NotificationType.REVIEW_REQUEST, 3, "Please review")
    assert _row(app, nid).delivery_status == DeliveryStatus.FAILED

    assert d.redeliver_pending() == 0
    assert d.redeliver_pending(include_failed=True) == 1

    n = _row(app, nid)
    assert n.delivery_status == DeliveryStatus.DELIVERED
    assert n.attempts == 1


def test_inbox_read_flags(app, recipient_id):
    d = _dispatcher(app, LogChannel(), [])
    first = d.enqueue(recipient_id, NotificationType.APPROVAL, 1, "one")
    d.enqueue(recipient_id, NotificationType.APPROVAL, 2, "two")
    d.enqueue(recipient_id, NotificationType.APPROVAL, 3, "three")
    assert d.list_unread(recipient_id) == 3

    n = d.mark_read(first, recipient_id=recipient_id)
    assert n.read is True
    assert n.read_at is not None
    assert d.list_unread(recipient_id) == 2

    # Idempotent.
    d.mark_read(first, recipient_id=recipient_id)
    assert d.list_unread(recipient_id) == 2

    assert d.mark_all_read(recipient_id) == 2
    assert d.list_unread(recipient_id) == 0

    items = d.list_for_recipient(recipient_id)
    assert [i.message for i in items] == ["three", "two", "one"]
    assert len(d.list_for_recipient(recipient_id, limit=1)) == 1


def test_mark_read_rejects_unknown_or_foreign_notifications(app, recipient_id):
    d = _dispatcher(app, LogChannel(), [])
    nid = d.enqueue(recipient_id, NotificationType.INFO, None, "private")

    with pytest.raises(NotFound):
        d.mark_read(nid + 100)
    with pytest.raises(NotFound):
        d.mark_read(nid, recipient_id=recipient_id + 1)
    assert d.list_unread(recipient_id) == 1


def test_async_delivery_runs_on_worker_pool(app, recipient_id):
    channel = FlakyChannel(failures=0)
    d = _dispatcher(app, channel, [], run_async=True, workers=1)

    nid = d.enqueue(recipient_id, NotificationType.INFO, None, "background")
    d.shutdown(wait=True)

    assert _row(app, nid).delivery_status == DeliveryStatus.DELIVERED
    assert channel.sent == [(nid, "owner@example.edu")]


def test_worker_crash_is_logged_and_row_stays_pending(app, recipient_id, monkeypatch, caplog):
    d = _dispatcher(app, FlakyChannel(failures=0), [], run_async=True, workers=1)

    def _db_down(notification_id):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(d, "deliver", _db_down)
    with caplog.at_level(logging.ERROR, logger="app.examflow.modules.notifications.dispatcher"):
        nid = d.enqueue(recipient_id, NotificationType.INFO, None, "background")
        d.shutdown(wait=True)

    crashes = [r for r in caplog.records if "Delivery worker crashed" in r.getMessage()]
    assert len(crashes) == 1
    assert f"id={nid}" in crashes[0].getMessage()
    assert crashes[0].exc_info[0] is RuntimeError
    assert _row(app, nid).delivery_status == DeliveryStatus.PENDING


def test_channel_from_config():
    assert isinstance(channel_from_config({"NOTIFY_CHANNEL": "log"}), LogChannel)
    assert isinstance(channel_from_config({}), LogChannel)

    smtp = channel_from_config(
        {"NOTIFY_CHANNEL": "smtp", "SMTP_SERVER": "smtp.example.edu", "SMTP_PORT": 587, "EMAIL_FROM": "exams@example.edu"}
    )
    assert isinstance(smtp, SmtpChannel)
    assert smtp.port == 587

    with pytest.raises(RuntimeError):
        channel_from_config({"NOTIFY_CHANNEL": "smtp"})
    with pytest.raises(RuntimeError):
        channel_from_config({"NOTIFY_CHANNEL": "pager"})


def test_smtp_channel_wraps_transport_errors(monkeypatch):
    def _refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", _refuse)
    channel = SmtpChannel(
        server="smtp.example.edu", port=25, use_tls=False, username="", password="", email_from="exams@example.edu"
    )
    n = Notification(id=1, recipient_id=1, type=NotificationType.INFO, title="t", message="m")

    with pytest.raises(NotificationDeliveryFailure):
        channel.send(n, recipient_email="owner@example.edu")
    with pytest.raises(NotificationDeliveryFailure):
        channel.send(n, recipient_email=None)


def test_dispatcher_from_config_reads_settings(app):
    d = dispatcher_from_config(
        {"NOTIFY_MAX_ATTEMPTS": 3, "NOTIFY_BACKOFF_SECONDS": 2.0, "NOTIFY_BACKOFF_MAX_SECONDS": 5.0, "NOTIFY_ASYNC": False},
        app.extensions["sqlalchemy_sessionmaker"],
    )
    assert d.max_attempts == 3
    assert d.backoff_for(3) == 5.0
    assert isinstance(d.channel, LogChannel)
