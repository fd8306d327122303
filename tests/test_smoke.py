import pytest

from app.examflow import create_app
from app.examflow.db import session_scope
from app.examflow.models import Base, User, UserRole


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("NOTIFY_ASYNC", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(id=1, email="owner@example.edu", display_name="Olive Owner", role=UserRole.ORIGINATOR, is_active=True))
        s.add(User(id=2, email="gone@example.edu", display_name="Gone", role=UserRole.ORIGINATOR, is_active=False))

    yield app.test_client()
    app.extensions["notification_dispatcher"].shutdown()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["database"] == "ok"
    assert r.json["notify_channel"] == "log"

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_identity_header_gates_api_access(client):
    # Anonymous is rejected
    r = client.get("/api/notifications")
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"

    # Deactivated users count as anonymous
    r = client.get("/api/notifications", headers={"X-User-Id": "2"})
    assert r.status_code == 401

    r = client.get("/api/notifications", headers={"X-User-Id": "1"})
    assert r.status_code == 200
    assert r.json == []


def test_unknown_routes_return_json(client):
    r = client.get("/api/nope", headers={"X-User-Id": "1"})
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError):
        create_app()
