"""
Feedback Ledger. Append-only; corrections are new entries.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.examflow.models import UserRole

from .models import Feedback, FeedbackAction


def append_feedback(
    s: Session,
    *,
    document_id: int,
    version_number: int,
    reviewer_id: int,
    reviewer_role: UserRole,
    action: FeedbackAction,
    comments: str,
    created_at: datetime | None = None,
) -> int:
    fb = Feedback(
        document_id=document_id,
        version_number=version_number,
        reviewer_id=reviewer_id,
        reviewer_role=reviewer_role,
        action=action,
        comments=(comments or "").strip(),
    )
    if created_at is not None:
        fb.created_at = created_at
    s.add(fb)
    s.flush()
    return fb.id


def list_for_document(s: Session, document_id: int) -> list[Feedback]:
    """Newest first."""
    stmt = (
        select(Feedback)
        .where(Feedback.document_id == document_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
    )
    return list(s.scalars(stmt).all())
