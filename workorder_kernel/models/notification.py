"""
Module: workorder_kernel.models.notification
Responsibility: In-app notification rows. Written after the originating
    transition has committed, in a separate session, so a failure here never
    touches the transition itself.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import Base, UUIDString


class Notification(Base):
    __tablename__ = "notifications"

    __table_args__ = (
        Index("idx_notification_recipient", "recipient_id", "is_read"),
        Index("idx_notification_role", "recipient_role", "is_read"),
    )

    event: Mapped[str] = mapped_column(String(60), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_role: Mapped[str | None] = mapped_column(String(30), nullable=True)
    recipient_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")
    subject_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    subject_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
