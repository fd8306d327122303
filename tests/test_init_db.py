import pytest

from app.examflow import create_app
from app.examflow.db import session_scope
from app.examflow.models import Base, Department, User, UserRole
from scripts.init_db import parse_departments, seed


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFY_ASYNC", "0")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    yield app
    app.extensions["notification_dispatcher"].shutdown()


def test_parse_departments():
    assert parse_departments("") == []
    assert parse_departments("cs:Computer Science:Head@Example.edu; MATH : Mathematics : m@example.edu ;") == [
        ("CS", "Computer Science", "head@example.edu"),
        ("MATH", "Mathematics", "m@example.edu"),
    ]
    with pytest.raises(ValueError):
        parse_departments("CS:Computer Science")
    with pytest.raises(ValueError):
        parse_departments("CS::head@example.edu")


def test_seed_binds_approvers_and_is_idempotent(app):
    departments = [("CS", "Computer Science", "cs.head@example.edu")]
    for _ in range(2):
        with session_scope(app) as s:
            seed(s, final_approver_email="exam.unit@example.edu", departments=departments)

    with session_scope(app) as s:
        depts = s.query(Department).all()
        assert len(depts) == 1
        head = s.query(User).filter(User.email == "cs.head@example.edu").one()
        final = s.query(User).filter(User.email == "exam.unit@example.edu").one()
        assert depts[0].approver_id == head.id
        assert head.role == UserRole.DEPARTMENT_APPROVER
        assert head.department_id == depts[0].id
        assert final.role == UserRole.FINAL_APPROVER
        assert s.query(User).count() == 2


def test_seed_rebinds_department_to_new_approver(app):
    with session_scope(app) as s:
        seed(s, final_approver_email="exam.unit@example.edu", departments=[("CS", "Computer Science", "old@example.edu")])
    with session_scope(app) as s:
        seed(s, final_approver_email="exam.unit@example.edu", departments=[("CS", "Computer Science", "new@example.edu")])

    with session_scope(app) as s:
        cs = s.query(Department).filter(Department.code == "CS").one()
        new = s.query(User).filter(User.email == "new@example.edu").one()
        assert cs.approver_id == new.id


def test_release_migrates_verifies_and_seeds(tmp_path, monkeypatch):
    from sqlalchemy import create_engine, inspect, text

    from scripts.release import REQUIRED_TABLES, run_release

    db_url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FINAL_APPROVER_EMAIL", "exam.unit@example.edu")
    monkeypatch.setenv("SEED_DEPARTMENTS", "CS:Computer Science:cs.head@example.edu")

    run_release()
    # Second run is a no-op.
    run_release()

    engine = create_engine(db_url)
    try:
        assert set(REQUIRED_TABLES) <= set(inspect(engine).get_table_names())
        with engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT u.role FROM departments d JOIN users u ON u.id = d.approver_id WHERE d.code = 'CS'"
                )
            ).one()
            assert row.role == "department_approver"
            assert conn.execute(text("SELECT COUNT(*) FROM users")).scalar() == 2
    finally:
        engine.dispose()


def test_release_refuses_sqlite_in_production(tmp_path, monkeypatch):
    from scripts.release import run_release

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError):
        run_release()
