"""
Canonical roles and plans for Ascent access control.

IMPORTANT: This is the single source of truth for role names.
Roles are stored in Clerk public metadata and mapped here.
UI role gating is UX only - server-side guard evaluation is security.

Role Hierarchy:
- Platform roles: SUPER_ADMIN > ADMIN (may impersonate other roles)
- Internal roles: STAFF
- University roles: UNIVERSITY_ADMIN > ADVISOR > STUDENT (require a university)
- Consumer roles: INDIVIDUAL
"""

from enum import Enum
from typing import FrozenSet, Optional


class Role(str, Enum):
    """
    User roles from Clerk public metadata.

    Keep in sync with the Clerk role sync job.
    """
    INDIVIDUAL = "individual"
    STUDENT = "student"
    ADVISOR = "advisor"
    STAFF = "staff"
    UNIVERSITY_ADMIN = "university_admin"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Plan(str, Enum):
    """Subscription tiers a caller can be treated as."""
    FREE = "free"
    PREMIUM = "premium"
    UNIVERSITY = "university"


# Roles allowed to start an impersonation. Checked against the real identity only.
ADMIN_ROLES: FrozenSet[Role] = frozenset([Role.ADMIN, Role.SUPER_ADMIN])

# Roles an administrator may view the product as
IMPERSONATABLE_ROLES: FrozenSet[Role] = frozenset([
    Role.INDIVIDUAL,
    Role.STUDENT,
    Role.ADVISOR,
    Role.UNIVERSITY_ADMIN,
    Role.STAFF,
])

# Roles that are meaningless without a university affiliation
ROLES_REQUIRING_ORGANIZATION: FrozenSet[Role] = frozenset([
    Role.STUDENT,
    Role.ADVISOR,
    Role.UNIVERSITY_ADMIN,
])

DEFAULT_PLAN_FOR_ROLE = {
    Role.INDIVIDUAL: Plan.FREE,
    Role.STUDENT: Plan.UNIVERSITY,
    Role.ADVISOR: Plan.UNIVERSITY,
    Role.UNIVERSITY_ADMIN: Plan.UNIVERSITY,
    Role.STAFF: Plan.FREE,
    Role.ADMIN: Plan.FREE,
    Role.SUPER_ADMIN: Plan.FREE,
}

# Old Clerk metadata values still seen on accounts created before the role split
LEGACY_ROLE_ALIASES = {
    "user": Role.INDIVIDUAL,
}


def parse_role(value: Optional[str]) -> Role:
    """
    Parse a role string from Clerk metadata.

    Args:
        value: Raw role string (case-insensitive)

    Returns:
        The matching Role

    Raises:
        ValueError: If the value is empty or not a known role
    """
    if not value:
        raise ValueError("Role is required")
    normalized = value.strip().lower()
    if normalized in LEGACY_ROLE_ALIASES:
        return LEGACY_ROLE_ALIASES[normalized]
    return Role(normalized)


def is_admin_role(role: Role) -> bool:
    """Check if a role is an administrative (impersonation-capable) role."""
    return role in ADMIN_ROLES


def requires_organization(role: Role) -> bool:
    """Check if a role needs a university affiliation."""
    return role in ROLES_REQUIRING_ORGANIZATION


def default_plan_for(role: Role) -> Plan:
    """Get the plan a role is shown with when no plan is chosen."""
    return DEFAULT_PLAN_FOR_ROLE.get(role, Plan.FREE)
