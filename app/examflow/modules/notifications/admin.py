from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.examflow.rbac import current_user, require_user
from app.examflow.utils import parse_int
from app.examflow.modules.notifications.dispatcher import NotificationDispatcher
from app.examflow.modules.notifications.models import Notification

bp = Blueprint("notifications", __name__)


def _dispatcher() -> NotificationDispatcher:
    return current_app.extensions["notification_dispatcher"]


def _view(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type.value,
        "document_id": n.document_id,
        "title": n.title,
        "message": n.message,
        "read": n.read,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


@bp.get("/notifications")
@require_user
def list_notifications():
    u = current_user()
    limit = parse_int(request.args.get("limit")) or 50
    items = _dispatcher().list_for_recipient(u.id, limit=max(1, min(limit, 200)))
    return jsonify([_view(n) for n in items])


@bp.get("/notifications/unread-count")
@require_user
def unread_count():
    u = current_user()
    return jsonify({"unread": _dispatcher().list_unread(u.id)})


@bp.post("/notifications/<int:notification_id>/read")
@require_user
def mark_read(notification_id: int):
    u = current_user()
    n = _dispatcher().mark_read(notification_id, recipient_id=u.id)
    return jsonify(_view(n))


@bp.post("/notifications/read-all")
@require_user
def mark_all_read():
    u = current_user()
    return jsonify({"marked": _dispatcher().mark_all_read(u.id)})
