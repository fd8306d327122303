import json

import pytest

from app.examflow import create_app
from app.examflow.db import session_scope
from app.examflow.models import AuditEvent, Base, Department, User, UserRole


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("NOTIFY_CHANNEL", "log")
    monkeypatch.setenv("NOTIFY_ASYNC", "0")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        cs = Department(code="CS", name="Computer Science")
        s.add(cs)
        s.flush()
        s.add_all(
            [
                User(id=1, email="owner@example.edu", display_name="Olive Owner", role=UserRole.ORIGINATOR, department_id=cs.id),
                User(id=2, email="cs.head@example.edu", display_name="Dana Head", role=UserRole.DEPARTMENT_APPROVER, department_id=cs.id),
                User(id=3, email="exam.unit@example.edu", display_name="Exam Unit", role=UserRole.FINAL_APPROVER),
                User(id=4, email="other@example.edu", display_name="Otto Other", role=UserRole.ORIGINATOR, department_id=cs.id),
                User(id=5, email="new@example.edu", display_name="New Person", role=UserRole.PENDING),
            ]
        )
        s.flush()
        cs.approver_id = 2

    yield app.test_client()
    app.extensions["notification_dispatcher"].shutdown()


OWNER = {"X-User-Id": "1"}
DEPT = {"X-User-Id": "2"}
ADMIN = {"X-User-Id": "3"}
OTHER = {"X-User-Id": "4"}
NEWCOMER = {"X-User-Id": "5"}


def _audit(client, action):
    with session_scope(client.application) as s:
        events = s.query(AuditEvent).filter(AuditEvent.action == action).order_by(AuditEvent.id.asc()).all()
        return [(e.actor_user_id, e.entity_id, json.loads(e.metadata_json or "{}")) for e in events]


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/admin/users"),
        ("get", "/api/admin/users/pending"),
        ("post", "/api/admin/users/5/role"),
        ("get", "/api/admin/departments"),
        ("post", "/api/admin/departments"),
        ("post", "/api/admin/departments/1/approver"),
    ],
)
def test_directory_admin_is_final_approver_only(client, method, path):
    for headers in (OWNER, DEPT, NEWCOMER):
        r = getattr(client, method)(path, json={}, headers=headers)
        assert r.status_code == 403
    assert getattr(client, method)(path, json={}).status_code == 401


def test_list_pending_and_role_filtered_users(client):
    r = client.get("/api/admin/users/pending", headers=ADMIN)
    assert [u["id"] for u in r.get_json()] == [5]

    r = client.get("/api/admin/users?role=originator", headers=ADMIN)
    assert [u["id"] for u in r.get_json()] == [1, 4]
    assert len(client.get("/api/admin/users", headers=ADMIN).get_json()) == 5

    r = client.get("/api/admin/users?role=dean", headers=ADMIN)
    assert r.status_code == 400


def test_assign_role_promotes_a_pending_user(client):
    # Pending accounts may do nothing yet.
    r = client.post("/api/documents", json={"title": "Quiz", "content_locator": "l", "key_handle": "k"}, headers=NEWCOMER)
    assert r.status_code == 403

    r = client.post("/api/admin/users/5/role", json={"role": "originator", "department_id": 1}, headers=ADMIN)
    assert r.status_code == 200
    body = r.get_json()
    assert body["role"] == "originator"
    assert body["department_id"] == 1

    r = client.post("/api/documents", json={"title": "Quiz", "content_locator": "l", "key_handle": "k"}, headers=NEWCOMER)
    assert r.status_code == 201
    assert client.get("/api/admin/users/pending", headers=ADMIN).get_json() == []

    assert _audit(client, "directory.assign_role") == [
        (3, "5", {"from": "pending", "to": "originator", "department_id": 1})
    ]


def test_assign_role_rejects_bad_input(client):
    assert client.post("/api/admin/users/99/role", json={"role": "originator"}, headers=ADMIN).status_code == 404
    assert client.post("/api/admin/users/5/role", json={"role": "dean"}, headers=ADMIN).status_code == 400
    assert client.post("/api/admin/users/5/role", json={}, headers=ADMIN).status_code == 400
    r = client.post("/api/admin/users/5/role", json={"role": "originator", "department_id": 42}, headers=ADMIN)
    assert r.status_code == 404
    r = client.post("/api/admin/users/3/role", json={"role": "originator"}, headers=ADMIN)
    assert r.status_code == 400
    assert _audit(client, "directory.assign_role") == []


def test_demoting_a_department_approver_unbinds_their_department(client):
    r = client.post("/api/admin/users/2/role", json={"role": "originator"}, headers=ADMIN)
    assert r.status_code == 200

    depts = client.get("/api/admin/departments", headers=ADMIN).get_json()
    assert depts[0]["approver_id"] is None


def test_create_and_list_departments(client):
    r = client.post("/api/admin/departments", json={"code": "math", "name": "Mathematics", "approver_id": 4}, headers=ADMIN)
    assert r.status_code == 201
    math = r.get_json()
    assert math["code"] == "MATH"
    assert math["approver_id"] == 4

    r = client.get("/api/admin/departments", headers=ADMIN)
    assert [(d["code"], d["approver_id"]) for d in r.get_json()] == [("CS", 2), ("MATH", 4)]

    users = {u["id"]: u for u in client.get("/api/admin/users", headers=ADMIN).get_json()}
    assert users[4]["role"] == "department_approver"
    assert users[4]["department_id"] == math["id"]

    r = client.post("/api/admin/departments", json={"code": "CS", "name": "Again"}, headers=ADMIN)
    assert r.status_code == 400
    assert r.get_json()["details"]["field"] == "code"
    assert client.post("/api/admin/departments", json={"code": "PHY", "name": " "}, headers=ADMIN).status_code == 400
    assert client.post("/api/admin/departments", json={"code": 7, "name": "Physics"}, headers=ADMIN).status_code == 400
    assert client.post("/api/admin/departments", json={"code": "PHY", "name": "Physics", "approver_id": 3}, headers=ADMIN).status_code == 400

    assert [(actor, meta["code"]) for actor, _, meta in _audit(client, "directory.create_department")] == [(3, "MATH")]


def test_bind_approver_moves_review_authority(client):
    doc = client.post("/api/documents", json={"title": "Quiz", "content_locator": "l", "key_handle": "k"}, headers=OWNER).get_json()
    client.post(f"/api/documents/{doc['id']}/transitions", json={"action": "submitForReview", "expected_revision": 0}, headers=OWNER)

    r = client.post("/api/admin/departments/1/approver", json={"user_id": 4}, headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json()["approver_id"] == 4

    # The previous approver no longer reviews for CS.
    r = client.post(f"/api/documents/{doc['id']}/transitions", json={"action": "deptApprove", "expected_revision": 1}, headers=DEPT)
    assert r.status_code == 403
    assert client.get("/api/reviews/pending", headers=DEPT).status_code == 403

    assert [d["id"] for d in client.get("/api/reviews/pending", headers=OTHER).get_json()] == [doc["id"]]
    r = client.post(f"/api/documents/{doc['id']}/transitions", json={"action": "deptApprove", "expected_revision": 1}, headers=OTHER)
    assert r.status_code == 200

    assert _audit(client, "directory.bind_approver") == [(3, "1", {"from": 2, "to": 4})]


def test_bind_approver_rejects_bad_input(client):
    assert client.post("/api/admin/departments/9/approver", json={"user_id": 4}, headers=ADMIN).status_code == 404
    assert client.post("/api/admin/departments/1/approver", json={}, headers=ADMIN).status_code == 400
    assert client.post("/api/admin/departments/1/approver", json={"user_id": 99}, headers=ADMIN).status_code == 404
    assert client.post("/api/admin/departments/1/approver", json={"user_id": 3}, headers=ADMIN).status_code == 400

    with session_scope(client.application) as s:
        s.get(User, 4).is_active = False
    r = client.post("/api/admin/departments/1/approver", json={"user_id": 4}, headers=ADMIN)
    assert r.status_code == 400
    assert _audit(client, "directory.bind_approver") == []
