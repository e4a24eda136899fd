"""
Effective identity resolution.

Merges the real identity snapshot with an optional impersonation overlay.
Every overlaid field fully replaces the snapshot's value; fields the overlay
leaves empty fall back to the snapshot.

The result is derived, never stored: it is recomputed on each guard
evaluation so that a started or stopped impersonation is picked up on the
next call.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

from ascent_access.auth.identity import IdentitySnapshot
from ascent_access.constants.roles import Plan, Role

if TYPE_CHECKING:
    from ascent_access.platform.impersonation import ImpersonationOverlay


@dataclass(frozen=True)
class EffectiveIdentity:
    """The role/organization/plan a caller is treated as."""

    subject_id: str
    role: Role
    organization_id: Optional[str]
    plan: Optional[Plan]
    is_impersonating: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "role": self.role.value,
            "organization_id": self.organization_id,
            "plan": self.plan.value if self.plan else None,
            "is_impersonating": self.is_impersonating,
        }


def resolve(
    snapshot: IdentitySnapshot,
    overlay: Optional["ImpersonationOverlay"] = None,
    real_plan: Optional[Plan] = None,
) -> EffectiveIdentity:
    """
    Resolve the effective identity.

    Args:
        snapshot: Real identity snapshot; must be READY
        overlay: Active impersonation overlay for this session, if any
        real_plan: The caller's real plan from the billing source

    Returns:
        EffectiveIdentity

    Raises:
        ValueError: If the snapshot is not READY. Callers must map loading
            and absent identities to a decision before resolving.
    """
    if not snapshot.is_ready:
        raise ValueError(f"Cannot resolve identity in status {snapshot.status.value}")

    if overlay is None or not overlay.active:
        return EffectiveIdentity(
            subject_id=snapshot.subject_id,
            role=snapshot.role,
            organization_id=snapshot.organization_id,
            plan=real_plan,
            is_impersonating=False,
        )

    return EffectiveIdentity(
        subject_id=snapshot.subject_id,
        role=overlay.impersonated_role or snapshot.role,
        organization_id=(
            overlay.impersonated_organization_id
            if overlay.impersonated_organization_id is not None
            else snapshot.organization_id
        ),
        plan=overlay.impersonated_plan if overlay.impersonated_plan is not None else real_plan,
        is_impersonating=True,
    )
