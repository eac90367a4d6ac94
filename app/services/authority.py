"""
Role Authority Resolver.

Each role carries a numeric authority level; higher means more senior.
Used for skip logic: if the creator's authority >= a level's required
authority, that level is skipped when the file's workflow is instantiated.

Admin holds management authority, not workflow authority, so it ranks 0.
Unknown role names also rank 0 and are logged as a configuration warning;
an unmapped role must never block file creation.
"""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import select

from app.models import db
from app.models.organization import UserDepartmentRole

logger = logging.getLogger(__name__)

LOWEST_AUTHORITY = 0


class Role(str, Enum):
    CLERK = "Clerk"
    SECTION_OFFICER = "Section Officer"
    UNDER_SECRETARY = "Under Secretary"
    DEPUTY_SECRETARY = "Deputy Secretary"
    JOINT_SECRETARY = "Joint Secretary"
    ADDITIONAL_SECRETARY = "Additional Secretary"
    SECRETARY = "Secretary"
    ADMIN = "Admin"

    @property
    def authority(self) -> int:
        return ROLE_AUTHORITY[self]

    @property
    def label(self) -> str:
        return "Administrator" if self is Role.ADMIN else self.value


ROLE_AUTHORITY: dict[Role, int] = {
    Role.CLERK: 1,
    Role.SECTION_OFFICER: 2,
    Role.UNDER_SECRETARY: 3,
    Role.DEPUTY_SECRETARY: 4,
    Role.JOINT_SECRETARY: 5,
    Role.ADDITIONAL_SECRETARY: 6,
    Role.SECRETARY: 7,
    Role.ADMIN: LOWEST_AUTHORITY,
}

# All roles that may appear on an approval level
WORKFLOW_ROLES = tuple(r for r in Role if r is not Role.ADMIN)


def parse_role(name: str | Role | None) -> Role | None:
    """Map a stored role name to the Role enum.

    Accepts the display value ("Section Officer") as well as the legacy
    underscore spelling ("Section_Officer"). Returns None when unmapped.
    """
    if isinstance(name, Role):
        return name
    if not name:
        return None
    normalized = str(name).strip().replace("_", " ")
    for role in Role:
        if role.value.lower() == normalized.lower():
            return role
    return None


def authority_of(role: str | Role | None) -> int:
    """Return the authority rank of *role*. Total: never raises."""
    parsed = parse_role(role)
    if parsed is None:
        logger.warning(
            "Unmapped role %r, treating as lowest authority (%d)", role, LOWEST_AUTHORITY,
            extra={"event_type": "config_warning"},
        )
        return LOWEST_AUTHORITY
    return ROLE_AUTHORITY[parsed]


def role_label(role: str | Role | None) -> str:
    parsed = parse_role(role)
    if parsed is None:
        return str(role) if role else "No role"
    return parsed.label


def has_higher_or_equal_authority(role_a: str | Role, role_b: str | Role) -> bool:
    return authority_of(role_a) >= authority_of(role_b)


# ── Storage-backed lookups ───────────────────────────────────────────────────


def department_roles(user_id: int, department_id: int) -> list[str]:
    """Role names *user_id* holds in *department_id*, in insertion order."""
    return list(
        db.session.execute(
            select(UserDepartmentRole.role)
            .where(
                UserDepartmentRole.user_id == user_id,
                UserDepartmentRole.department_id == department_id,
            )
            .order_by(UserDepartmentRole.id.asc())
        ).scalars().all()
    )


def creator_authority(user_id: int, department_id: int) -> tuple[str | None, int]:
    """Return the (driving role, authority) of a user within a department.

    The driving role is the highest-ranked role the user holds there; ties
    keep the earliest binding. Returns (None, 0) when the user holds no role.
    """
    best_role: str | None = None
    best_authority = LOWEST_AUTHORITY
    for role in department_roles(user_id, department_id):
        rank = authority_of(role)
        if best_role is None or rank > best_authority:
            best_role, best_authority = role, rank
    return best_role, best_authority


def admin_department_ids(user_id: int) -> set[int]:
    """Departments in which *user_id* holds the Admin role."""
    rows = db.session.execute(
        select(UserDepartmentRole.department_id, UserDepartmentRole.role)
        .where(UserDepartmentRole.user_id == user_id)
    ).all()
    return {dept_id for dept_id, role in rows if parse_role(role) is Role.ADMIN}
