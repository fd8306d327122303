"""
Version Manager: ordered, immutable version history of a document.

``create_version`` only stages the row in the caller's session; the workflow
engine commits it together with the document state reset.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.examflow.errors import NotFound

from .models import DocumentVersion


def create_version(
    s: Session,
    *,
    document_id: int,
    version_number: int,
    actor_id: int,
    content_locator: str,
    key_handle: str,
    description: str = "",
    filename: str | None = None,
    content_type: str | None = None,
    size_bytes: int | None = None,
    sha256: str | None = None,
    created_at: datetime | None = None,
) -> int:
    v = DocumentVersion(
        document_id=document_id,
        version_number=version_number,
        content_locator=content_locator,
        key_handle=key_handle,
        description=description or f"Version {version_number}",
        filename=filename,
        content_type=content_type,
        size_bytes=size_bytes,
        sha256=sha256,
        uploaded_by=actor_id,
    )
    if created_at is not None:
        v.created_at = created_at
    s.add(v)
    s.flush()
    return v.version_number


def list_versions(s: Session, document_id: int) -> list[DocumentVersion]:
    """Oldest first."""
    stmt = (
        select(DocumentVersion)
        .where(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.version_number.asc())
    )
    return list(s.scalars(stmt).all())


def get_version(s: Session, document_id: int, version_number: int) -> DocumentVersion:
    stmt = select(DocumentVersion).where(
        DocumentVersion.document_id == document_id,
        DocumentVersion.version_number == version_number,
    )
    v = s.scalars(stmt).one_or_none()
    if v is None:
        raise NotFound(
            f"Version {version_number} of document {document_id} not found.",
            document_id=document_id,
            version_number=version_number,
        )
    return v


def latest_version(s: Session, document_id: int) -> DocumentVersion | None:
    stmt = (
        select(DocumentVersion)
        .where(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.version_number.desc())
        .limit(1)
    )
    return s.scalars(stmt).first()
