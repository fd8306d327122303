from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.examflow.models import User, UserRole


def user_has_role(user: User | None, *roles: UserRole) -> bool:
    if not user or not user.is_active:
        return False
    return user.role in roles


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def require_user(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "unauthenticated", "message": "A known, active user is required."}), 401
        return fn(*args, **kwargs)

    return wrapped


def require_role(*roles: UserRole) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        @require_user
        def wrapped(*args: Any, **kwargs: Any):
            if not user_has_role(g.current_user, *roles):
                g.missing_role = ",".join(r.value for r in roles)
                return jsonify({"error": "unauthorized", "message": "Your role does not allow this action."}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
