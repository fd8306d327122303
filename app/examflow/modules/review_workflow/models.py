from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.examflow.models import Base, UserRole, enum_column
from app.examflow.utils import utcnow


class WorkflowState(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_DEPT_REVIEW = "PENDING_DEPT_REVIEW"
    NEEDS_REVISION = "NEEDS_REVISION"
    PENDING_FINAL_REVIEW = "PENDING_FINAL_REVIEW"
    APPROVED = "APPROVED"


class FeedbackAction(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_state_department", "state", "department_id"),
        Index("idx_documents_owner", "owner_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False)

    # DRAFT -> PENDING_DEPT_REVIEW -> PENDING_FINAL_REVIEW -> APPROVED (rejects go to NEEDS_REVISION)
    state: Mapped[WorkflowState] = mapped_column(enum_column(WorkflowState), nullable=False, default=WorkflowState.DRAFT)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Optimistic concurrency token; bumped by exactly one on every committed transition.
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        order_by="DocumentVersion.version_number",
        lazy="selectin",
    )


class DocumentVersion(Base):
    """Immutable snapshot of a document's encrypted content."""

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    content_locator: Mapped[str] = mapped_column(String(512), nullable=False)
    key_handle: Mapped[str] = mapped_column(String(512), nullable=False)

    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    description: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    uploaded_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


class Feedback(Base):
    """Append-only reviewer decision. Corrections are new rows."""

    __tablename__ = "feedback"
    __table_args__ = (
        Index("idx_feedback_document", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    reviewer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    reviewer_role: Mapped[UserRole] = mapped_column(enum_column(UserRole), nullable=False)
    action: Mapped[FeedbackAction] = mapped_column(enum_column(FeedbackAction, length=16), nullable=False)
    comments: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
