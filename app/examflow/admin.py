from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.examflow.audit import record_event
from app.examflow.db import db_session
from app.examflow.directory import RoleDirectory
from app.examflow.errors import NotFound, ValidationError
from app.examflow.models import Department, User, UserRole
from app.examflow.rbac import current_user, require_role
from app.examflow.utils import parse_int

# Directory administration belongs to the exam unit (the final approver).
bp = Blueprint("admin", __name__)


def _user_view(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "display_name": u.display_name,
        "role": u.role.value,
        "department_id": u.department_id,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


def _department_view(d: Department) -> dict:
    return {
        "id": d.id,
        "code": d.code,
        "name": d.name,
        "approver_id": d.approver_id,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _parse_role(raw: object) -> UserRole:
    try:
        return UserRole(raw)
    except ValueError:
        raise ValidationError(f"Unknown role: {raw!r}.", field="role", allowed=[r.value for r in UserRole]) from None


def _get_user(s, user_id: int | None) -> User:
    u = s.get(User, user_id) if user_id is not None else None
    if u is None:
        raise NotFound(f"User {user_id} not found.", user_id=user_id)
    return u


@bp.get("/users")
@require_role(UserRole.FINAL_APPROVER)
def list_users():
    raw_role = (request.args.get("role") or "").strip()
    role = _parse_role(raw_role) if raw_role else None
    users = RoleDirectory(db_session()).list_users(role)
    return jsonify([_user_view(u) for u in users])


@bp.get("/users/pending")
@require_role(UserRole.FINAL_APPROVER)
def list_pending_users():
    """Accounts that registered but have no role yet."""
    users = RoleDirectory(db_session()).list_users(UserRole.PENDING)
    return jsonify([_user_view(u) for u in users])


@bp.post("/users/<int:user_id>/role")
@require_role(UserRole.FINAL_APPROVER)
def assign_role(user_id: int):
    actor = current_user()
    payload = _json_body()
    s = db_session()
    directory = RoleDirectory(s)

    user = _get_user(s, user_id)
    if user.id == actor.id:
        raise ValidationError("You cannot change your own role.", field="user_id")
    role = _parse_role(payload.get("role"))
    department_id = parse_int(payload.get("department_id"))
    if department_id is not None:
        directory.get_department(department_id)

    before = user.role.value
    directory.assign_role(user, role, department_id=department_id)
    record_event(
        s,
        actor_id=actor.id,
        action="directory.assign_role",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"from": before, "to": role.value, "department_id": user.department_id},
    )
    s.commit()
    return jsonify(_user_view(user))


@bp.get("/departments")
@require_role(UserRole.FINAL_APPROVER)
def list_departments():
    return jsonify([_department_view(d) for d in RoleDirectory(db_session()).list_departments()])


@bp.post("/departments")
@require_role(UserRole.FINAL_APPROVER)
def create_department():
    actor = current_user()
    payload = _json_body()
    s = db_session()
    directory = RoleDirectory(s)

    approver_id = parse_int(payload.get("approver_id"))
    approver = _get_user(s, approver_id) if approver_id is not None else None
    if approver is not None and approver.id == actor.id:
        raise ValidationError("The final approver cannot also approve for a department.", field="approver_id")
    code = payload.get("code")
    name = payload.get("name")
    if not isinstance(code, str) or not isinstance(name, str):
        raise ValidationError("code and name must be strings.", field="code")

    d = directory.create_department(code, name, approver=approver)
    record_event(
        s,
        actor_id=actor.id,
        action="directory.create_department",
        entity_type="Department",
        entity_id=str(d.id),
        metadata={"code": d.code, "name": d.name, "approver_id": d.approver_id},
    )
    s.commit()
    return jsonify(_department_view(d)), 201


@bp.post("/departments/<int:department_id>/approver")
@require_role(UserRole.FINAL_APPROVER)
def bind_approver(department_id: int):
    actor = current_user()
    payload = _json_body()
    s = db_session()
    directory = RoleDirectory(s)

    d = directory.get_department(department_id)
    user_id = parse_int(payload.get("user_id"))
    if user_id is None:
        raise ValidationError("user_id is required.", field="user_id")
    user = _get_user(s, user_id)
    if user.id == actor.id:
        raise ValidationError("The final approver cannot also approve for a department.", field="user_id")

    previous = d.approver_id
    directory.bind_approver(d, user)
    record_event(
        s,
        actor_id=actor.id,
        action="directory.bind_approver",
        entity_type="Department",
        entity_id=str(d.id),
        metadata={"from": previous, "to": user.id},
    )
    s.commit()
    return jsonify(_department_view(d))
