"""
Module: workorder_kernel.models.staff
Responsibility: Staff directory used to validate assignees and route
    notifications. Identity verification itself is external; this table only
    records who exists and which role they hold.
"""

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from workorder_kernel.db.base import TrackedBase
from workorder_kernel.domain.roles import Actor, Role


class StaffMember(TrackedBase):
    __tablename__ = "staff_members"

    __table_args__ = (
        Index("idx_staff_role_active", "role", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role_enum, name=self.name)

    def __repr__(self) -> str:
        return f"<StaffMember {self.name} ({self.role})>"
