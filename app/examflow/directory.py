"""
Role Directory backed by the ``users`` and ``departments`` tables.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.examflow.errors import NotFound, ValidationError
from app.examflow.models import Department, User, UserRole


class RoleDirectory:
    def __init__(self, s: Session) -> None:
        self.s = s

    def get_user(self, user_id: int) -> User | None:
        u = self.s.get(User, user_id)
        if u is None or not u.is_active:
            return None
        return u

    def role_of(self, user_id: int) -> UserRole:
        """Inactive and unknown users resolve to PENDING (authorized for nothing)."""
        u = self.get_user(user_id)
        if u is None:
            return UserRole.PENDING
        return u.role

    def department_of(self, user_id: int) -> int | None:
        u = self.get_user(user_id)
        return u.department_id if u else None

    def get_department(self, department_id: int) -> Department:
        d = self.s.get(Department, department_id)
        if d is None:
            raise NotFound(f"Department {department_id} not found.", department_id=department_id)
        return d

    def approver_for(self, department_id: int | None) -> int | None:
        if department_id is None:
            return None
        d = self.s.get(Department, department_id)
        return d.approver_id if d else None

    def is_department_approver(self, user_id: int, department_id: int | None) -> bool:
        if self.role_of(user_id) != UserRole.DEPARTMENT_APPROVER:
            return False
        return department_id is not None and self.approver_for(department_id) == user_id

    def is_final_approver(self, user_id: int) -> bool:
        return self.role_of(user_id) == UserRole.FINAL_APPROVER

    # --- administration ---

    def list_users(self, role: UserRole | None = None) -> list[User]:
        stmt = select(User)
        if role is not None:
            stmt = stmt.where(User.role == role)
        return list(self.s.scalars(stmt.order_by(User.id.asc())).all())

    def list_departments(self) -> list[Department]:
        return list(self.s.scalars(select(Department).order_by(Department.code.asc())).all())

    def create_department(self, code: str, name: str, *, approver: User | None = None) -> Department:
        code = (code or "").strip().upper()
        name = (name or "").strip()
        if not code or not name:
            raise ValidationError("A department needs a code and a name.", field="code" if not code else "name")
        if self.s.scalar(select(Department.id).where(Department.code == code)) is not None:
            raise ValidationError(f"Department code {code} is already in use.", field="code", code=code)
        d = Department(code=code, name=name)
        self.s.add(d)
        self.s.flush()
        if approver is not None:
            self.bind_approver(d, approver)
        return d

    def assign_role(self, user: User, role: UserRole, *, department_id: int | None = None) -> User:
        """A user leaving the department approver role is unbound from every department they approved."""
        if user.role == UserRole.DEPARTMENT_APPROVER and role != UserRole.DEPARTMENT_APPROVER and user.id is not None:
            for d in self.s.scalars(select(Department).where(Department.approver_id == user.id)).all():
                d.approver_id = None
        user.role = role
        if department_id is not None:
            user.department_id = department_id
        return user

    def bind_approver(self, department: Department, user: User) -> Department:
        """Bind a department approver; the user is promoted and moved into the department."""
        if not user.is_active:
            raise ValidationError("An inactive user cannot approve for a department.", field="user_id", user_id=user.id)
        self.assign_role(user, UserRole.DEPARTMENT_APPROVER, department_id=department.id)
        department.approver_id = user.id
        return department
