from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.examflow.models import Base, enum_column
from app.examflow.utils import utcnow


class NotificationType(str, enum.Enum):
    REVIEW_REQUEST = "review_request"
    APPROVAL = "approval"
    REJECTION = "rejection"
    INFO = "info"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Notification(Base):
    """
    Outbox row and inbox entry in one.

    The row is committed on enqueue (durable); delivery bookkeeping is updated by
    the dispatcher's workers. Recipients only ever flip ``read``.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_recipient_read", "recipient_id", "read"),
        Index("idx_notifications_delivery_status", "delivery_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(enum_column(NotificationType), nullable=False)
    # No FK: notifications are decoupled from the document lifecycle.
    document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        enum_column(DeliveryStatus, length=16), nullable=False, default=DeliveryStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(512), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
