"""
Seed departments, approvers and the final approver in an idempotent way.

Environment:
  FINAL_APPROVER_EMAIL   institutional approver (default exam.unit@example.edu)
  SEED_DEPARTMENTS       "CODE:Name:approver@email;CODE2:Name 2:other@email"

Existing users keep their display names; roles and department bindings are
brought in line with the seed.
"""
import sys
from pathlib import Path
import os

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.orm import Session

from app.examflow.db import build_engine, make_sessionmaker, transaction
from app.examflow.directory import RoleDirectory
from app.examflow.models import Department, User, UserRole


def parse_departments(raw: str) -> list[tuple[str, str, str]]:
    out: list[tuple[str, str, str]] = []
    for chunk in (raw or "").split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":")]
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid SEED_DEPARTMENTS entry: {chunk!r} (expected CODE:Name:approver@email)")
        code, name, email = parts
        out.append((code.upper(), name, email.lower()))
    return out


def _ensure_user(s: Session, email: str) -> User:
    u = s.query(User).filter(User.email == email).one_or_none()
    if not u:
        u = User(email=email, display_name=email.split("@")[0], role=UserRole.PENDING, is_active=True)
        s.add(u)
        s.flush()
    return u


def seed(s: Session, *, final_approver_email: str, departments: list[tuple[str, str, str]]) -> None:
    directory = RoleDirectory(s)

    final = _ensure_user(s, final_approver_email)
    directory.assign_role(final, UserRole.FINAL_APPROVER)

    for code, name, approver_email in departments:
        d = s.query(Department).filter(Department.code == code).one_or_none()
        if not d:
            d = Department(code=code, name=name)
            s.add(d)
            s.flush()
        approver = _ensure_user(s, approver_email)
        directory.bind_approver(d, approver)


def seed_only(*, database_url: str | None = None) -> None:
    final_email = (os.environ.get("FINAL_APPROVER_EMAIL") or "exam.unit@example.edu").strip().lower()
    departments = parse_departments(os.environ.get("SEED_DEPARTMENTS") or "")
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///examflow.db").strip()

    engine = build_engine(db_url)
    try:
        with transaction(make_sessionmaker(engine)) as s:
            seed(s, final_approver_email=final_email, departments=departments)
    finally:
        engine.dispose()

    print("Initialized database (seed_only).")
    print(f"Final approver: {final_email}")
    print(f"Departments: {', '.join(code for code, _, _ in departments) or '(none)'}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
