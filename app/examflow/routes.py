from flask import Blueprint, current_app
from sqlalchemy import text

from app.examflow.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Readiness: database reachable and the notification channel configured."""
    try:
        db_session().execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        current_app.logger.error("Health check DB error: %s", e)
        db_ok = False
    dispatcher = current_app.extensions.get("notification_dispatcher")
    body = {
        "ok": db_ok,
        "database": "ok" if db_ok else "unavailable",
        "notify_channel": dispatcher.channel.name if dispatcher else None,
    }
    return body, (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """Liveness only; no DB access."""
    return "ok", 200
