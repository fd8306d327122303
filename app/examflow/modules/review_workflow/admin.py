from __future__ import annotations

import io

from flask import Blueprint, current_app, jsonify, request, send_file

from app.examflow.audit import record_event
from app.examflow.db import db_session
from app.examflow.errors import Unauthorized, ValidationError, WorkflowError
from app.examflow.models import UserRole
from app.examflow.rbac import current_user, require_role, require_user
from app.examflow.storage import storage_from_config
from app.examflow.utils import file_digest_and_bytes, parse_int, sanitize_upload_filename
from app.examflow.modules.review_workflow.engine import (
    Action,
    NewVersionPayload,
    TransitionRequest,
    WorkflowEngine,
    parse_action,
)
from app.examflow.modules.review_workflow.serializers import (
    document_view,
    feedback_view,
    transition_view,
    version_view,
)

bp = Blueprint("review_workflow", __name__)


def _engine() -> WorkflowEngine:
    return WorkflowEngine(db_session(), dispatcher=current_app.extensions.get("notification_dispatcher"))


def _required_revision(raw: object) -> int:
    rev = parse_int(raw)
    if rev is None:
        raise ValidationError("expected_revision is required and must be an integer.", field="expected_revision")
    return rev


def _text(payload: dict, key: str) -> str | None:
    raw = payload.get(key)
    if raw is not None and not isinstance(raw, str):
        raise ValidationError(f"{key} must be a string.", field=key)
    return raw


def _discard_blob(locator: str) -> None:
    try:
        storage_from_config(current_app.config).delete(locator)
    except Exception:
        current_app.logger.exception("Could not remove orphaned blob locator=%s", locator)


def _store_upload(prefix: str) -> tuple[str, str, dict]:
    """Push the uploaded (already encrypted) file to the blob store."""
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload.", field="file")
    key_handle = (request.form.get("key_handle") or "").strip()
    if not key_handle:
        raise ValidationError("A key handle is required for encrypted uploads.", field="key_handle")

    filename = sanitize_upload_filename(f.filename)
    data = f.read()
    sha256, size_bytes = file_digest_and_bytes(data)
    storage = storage_from_config(current_app.config)
    locator = storage.put(data, key_handle, prefix=prefix, filename=filename)
    meta = {
        "filename": filename,
        "content_type": (f.mimetype or "application/octet-stream").strip(),
        "size_bytes": size_bytes,
        "sha256": sha256,
    }
    return locator, key_handle, meta


@bp.post("/documents")
@require_user
def create_document():
    u = current_user()
    if request.is_json:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            payload = {}
        locator = (_text(payload, "content_locator") or "").strip()
        key_handle = (_text(payload, "key_handle") or "").strip()
        meta: dict = {}
        title = _text(payload, "title") or ""
        department_id = parse_int(payload.get("department_id"))
        description = (_text(payload, "description") or "").strip()
    else:
        if u.role != UserRole.ORIGINATOR:
            raise Unauthorized("Only originators may create exam documents.", actor_id=u.id, required_role=UserRole.ORIGINATOR.value)
        locator, key_handle, meta = _store_upload(f"documents/{u.id}")
        title = request.form.get("title") or meta["filename"]
        department_id = parse_int(request.form.get("department_id"))
        description = (request.form.get("description") or "").strip()

    try:
        doc = _engine().create_document(
            actor_id=u.id,
            title=title,
            content_locator=locator,
            key_handle=key_handle,
            department_id=department_id,
            description=description,
            **meta,
        )
    except WorkflowError:
        if meta:
            _discard_blob(locator)
        raise
    return jsonify(document_view(doc)), 201


@bp.get("/documents/<int:doc_id>")
@require_user
def get_document(doc_id: int):
    return jsonify(document_view(_engine().get_document(doc_id)))


@bp.post("/documents/<int:doc_id>/transitions")
@require_user
def transition(doc_id: int):
    u = current_user()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}

    new_version = None
    nv = payload.get("new_version")
    if isinstance(nv, dict):
        new_version = NewVersionPayload(
            content_locator=(_text(nv, "content_locator") or "").strip(),
            key_handle=(_text(nv, "key_handle") or "").strip(),
            description=(_text(nv, "description") or "").strip(),
        )

    req = TransitionRequest(
        document_id=doc_id,
        action=parse_action(payload.get("action")),
        actor_id=u.id,
        expected_revision=_required_revision(payload.get("expected_revision")),
        comments=_text(payload, "comments"),
        new_version=new_version,
    )
    result = _engine().transition(req)
    return jsonify(transition_view(result))


@bp.post("/documents/<int:doc_id>/versions")
@require_user
def upload_new_version(doc_id: int):
    u = current_user()
    engine = _engine()
    expected_revision = _required_revision(request.form.get("expected_revision"))

    # Owner, state and revision are checked before anything reaches the blob store.
    doc = engine.precheck(doc_id, Action.UPLOAD_NEW_VERSION, u.id, expected_revision)

    locator, key_handle, meta = _store_upload(f"documents/{doc.owner_id}/{doc.id}")
    req = TransitionRequest(
        document_id=doc_id,
        action=Action.UPLOAD_NEW_VERSION,
        actor_id=u.id,
        expected_revision=expected_revision,
        new_version=NewVersionPayload(
            content_locator=locator,
            key_handle=key_handle,
            description=(request.form.get("description") or "").strip(),
            **meta,
        ),
    )
    try:
        result = engine.transition(req)
    except WorkflowError:
        # Lost a race after the precheck; the stored blob belongs to no version.
        _discard_blob(locator)
        raise
    return jsonify(transition_view(result)), 201


@bp.get("/documents/<int:doc_id>/versions")
@require_user
def version_history(doc_id: int):
    return jsonify([version_view(v) for v in _engine().get_version_history(doc_id)])


@bp.get("/documents/<int:doc_id>/versions/latest")
@require_user
def latest_version(doc_id: int):
    return jsonify(version_view(_engine().get_latest_version(doc_id)))


@bp.get("/documents/<int:doc_id>/versions/<int:version_number>")
@require_user
def version_detail(doc_id: int, version_number: int):
    return jsonify(version_view(_engine().get_version(doc_id, version_number)))


@bp.get("/documents/<int:doc_id>/versions/<int:version_number>/content")
@require_user
def version_content(doc_id: int, version_number: int):
    u = current_user()
    engine = _engine()
    doc = engine.get_document(doc_id)
    allowed = (
        doc.owner_id == u.id
        or engine.directory.is_department_approver(u.id, doc.department_id)
        or engine.directory.is_final_approver(u.id)
    )
    if not allowed:
        raise Unauthorized("Only the owner and the document's reviewers may download content.", actor_id=u.id)

    v = engine.get_version(doc_id, version_number)
    data = storage_from_config(current_app.config).get(v.content_locator)

    s = db_session()
    record_event(
        s,
        actor_id=u.id,
        action="review.download",
        entity_type="DocumentVersion",
        entity_id=f"{doc.id}:{v.version_number}",
        metadata={"locator": v.content_locator},
    )
    s.commit()

    return send_file(
        io.BytesIO(data),
        mimetype="application/octet-stream",
        as_attachment=True,
        download_name=f"{v.filename or 'document'}.enc",
        max_age=0,
    )


@bp.get("/documents/<int:doc_id>/feedback")
@require_user
def document_feedback(doc_id: int):
    return jsonify([feedback_view(f) for f in _engine().get_feedback(doc_id)])


@bp.get("/reviews/pending")
@require_role(UserRole.ORIGINATOR, UserRole.DEPARTMENT_APPROVER, UserRole.FINAL_APPROVER)
def pending_reviews():
    """The caller's own queue; ``role`` and ``department_id`` may only narrow to what the caller holds."""
    u = current_user()
    engine = _engine()

    raw_role = (request.args.get("role") or "").strip()
    if raw_role:
        try:
            requested = UserRole(raw_role)
        except ValueError:
            raise ValidationError(f"Unknown role: {raw_role!r}.", field="role", allowed=[r.value for r in UserRole]) from None
        if requested != u.role:
            raise Unauthorized("You may only list the queue for your own role.", actor_id=u.id, role=u.role.value)

    department_id = parse_int(request.args.get("department_id"))
    owner_id = None
    if u.role == UserRole.DEPARTMENT_APPROVER:
        if department_id is None:
            department_id = u.department_id
        if not engine.directory.is_department_approver(u.id, department_id):
            raise Unauthorized("You are not the approver of that department.", actor_id=u.id, department_id=department_id)
    elif u.role == UserRole.ORIGINATOR:
        owner_id = u.id

    docs = engine.list_pending_for(u.role, department_id, owner_id=owner_id)
    return jsonify([document_view(d) for d in docs])
