from __future__ import annotations

from datetime import datetime
from typing import Any

from .engine import TransitionResult
from .models import Document, DocumentVersion, Feedback


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def document_view(d: Document) -> dict[str, Any]:
    return {
        "id": d.id,
        "title": d.title,
        "state": d.state.value,
        "current_version": d.current_version,
        "revision": d.revision,
        "owner_id": d.owner_id,
        "department_id": d.department_id,
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
        "submitted_at": _iso(d.submitted_at),
    }


def version_view(v: DocumentVersion) -> dict[str, Any]:
    return {
        "document_id": v.document_id,
        "version_number": v.version_number,
        "content_locator": v.content_locator,
        "key_handle": v.key_handle,
        "filename": v.filename,
        "content_type": v.content_type,
        "size_bytes": v.size_bytes,
        "sha256": v.sha256,
        "description": v.description,
        "uploaded_by": v.uploaded_by,
        "created_at": _iso(v.created_at),
    }


def feedback_view(f: Feedback) -> dict[str, Any]:
    return {
        "id": f.id,
        "document_id": f.document_id,
        "version_number": f.version_number,
        "reviewer_id": f.reviewer_id,
        "reviewer_role": f.reviewer_role.value,
        "action": f.action.value,
        "comments": f.comments,
        "created_at": _iso(f.created_at),
    }


def transition_view(r: TransitionResult) -> dict[str, Any]:
    out: dict[str, Any] = {
        "document_id": r.document_id,
        "action": r.action.value,
        "new_state": r.new_state.value,
        "new_revision": r.new_revision,
    }
    if r.version_number is not None:
        out["version_number"] = r.version_number
    if r.feedback_id is not None:
        out["feedback_id"] = r.feedback_id
    return out
