"""
StaffService -- maintenance of the staff directory and assignee checks.

Identity verification is external. The directory only answers whether a
person exists, is active, and holds a role that may carry allocations.
"""

from uuid import UUID

from sqlalchemy import select

from workorder_kernel.domain.roles import ASSIGNABLE_ROLES, Actor, Role
from workorder_kernel.exceptions import NotFoundError, ValidationFailedError
from workorder_kernel.logging_config import get_logger
from workorder_kernel.models.staff import StaffMember
from workorder_kernel.services.base import BaseService

logger = get_logger("services.staff")


class StaffService(BaseService):
    def add_member(
        self,
        name: str,
        email: str,
        role: Role | str,
        created_by_id: UUID,
    ) -> StaffMember:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise ValidationFailedError("name", "must not be empty")
        if "@" not in email:
            raise ValidationFailedError("email", f"not an email address: {email!r}")
        try:
            role = Role(role)
        except ValueError as exc:
            raise ValidationFailedError("role", f"unknown role: {role!r}") from exc

        existing = self.session.execute(
            select(StaffMember).where(StaffMember.email == email)
        ).scalar_one_or_none()
        if existing is not None:
            raise ValidationFailedError("email", f"already registered: {email}")

        member = StaffMember(
            name=name,
            email=email,
            role=role.value,
            is_active=True,
            created_by_id=created_by_id,
        )
        self.session.add(member)
        self.session.flush()
        logger.info(
            "staff_member_added",
            extra={"staff_id": str(member.id), "role": role.value},
        )
        return member

    def deactivate(self, staff_id: UUID, actor: Actor) -> StaffMember:
        member = self._lock(StaffMember, staff_id)
        member.is_active = False
        self._touch(member, actor)
        self.session.flush()
        logger.info("staff_member_deactivated", extra={"staff_id": str(staff_id)})
        return member

    def require_active(self, staff_id: UUID, field: str = "staff_id") -> StaffMember:
        member = self.session.get(StaffMember, staff_id)
        if member is None:
            raise NotFoundError("StaffMember", str(staff_id))
        if not member.is_active:
            raise ValidationFailedError(field, f"staff member {staff_id} is inactive")
        return member

    def require_assignable(self, staff_id: UUID, field: str = "assignee_id") -> StaffMember:
        """An assignee must be an active designer or design lead."""
        member = self.session.get(StaffMember, staff_id)
        if member is None or not member.is_active:
            raise ValidationFailedError(field, f"unknown or inactive staff member {staff_id}")
        if member.role_enum not in ASSIGNABLE_ROLES:
            raise ValidationFailedError(
                field, f"{member.name} is a {member.role}, not a designer or design lead"
            )
        return member
