"""
Access policy evaluation for protected views.

The decision function is pure: it takes one consistent snapshot of every
input and returns a Decision. Navigation is performed by the caller
(see ascent_access.api.dependencies.guards).

Check order is significant and MUST be preserved:
1. identity loading                          -> Pending
2. signed out                                 -> Deny /sign-in
   required flag unknown                      -> Pending
3. role not allowed                           -> Deny guard override or role fallback path
4. required flag disabled                     -> Deny /dashboard
5. onboarding required                        -> Deny /onboarding
6. otherwise                                  -> Allow

The most actionable redirect always wins: sign-in beats a role bounce,
which beats a generic dashboard bounce.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from ascent_access.auth.effective_identity import EffectiveIdentity
from ascent_access.auth.identity import IdentityStatus
from ascent_access.constants.roles import Role, parse_role
from ascent_access.platform.feature_flags import FlagState

logger = logging.getLogger(__name__)

SIGN_IN_PATH = "/sign-in"
DASHBOARD_PATH = "/dashboard"
ONBOARDING_PATH = "/onboarding"


class DecisionOutcome(str, Enum):
    ALLOW = "allow"
    PENDING = "pending"
    DENY = "deny"


class DecisionReason(str, Enum):
    """Why a decision was reached. For logs and audit only."""
    ALLOWED = "allowed"
    IDENTITY_LOADING = "identity_loading"
    FLAG_UNKNOWN = "flag_unknown"
    SOURCE_UNAVAILABLE = "source_unavailable"
    SESSION_ENDED = "session_ended"
    UNAUTHENTICATED = "unauthenticated"
    ROLE_NOT_ALLOWED = "role_not_allowed"
    FLAG_DISABLED = "flag_disabled"
    ONBOARDING_REQUIRED = "onboarding_required"


@dataclass(frozen=True)
class Decision:
    """Allow, Pending, or Deny with a redirect path. No other states exist."""

    outcome: DecisionOutcome
    redirect_path: Optional[str] = None
    reason: DecisionReason = DecisionReason.ALLOWED

    @classmethod
    def allow(cls) -> "Decision":
        return cls(outcome=DecisionOutcome.ALLOW)

    @classmethod
    def pending(cls, reason: DecisionReason = DecisionReason.IDENTITY_LOADING) -> "Decision":
        return cls(outcome=DecisionOutcome.PENDING, reason=reason)

    @classmethod
    def deny(cls, redirect_path: str, reason: DecisionReason) -> "Decision":
        if not redirect_path:
            raise ValueError("A deny decision requires a redirect path")
        return cls(outcome=DecisionOutcome.DENY, redirect_path=redirect_path, reason=reason)

    @property
    def is_allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    @property
    def is_pending(self) -> bool:
        return self.outcome == DecisionOutcome.PENDING

    @property
    def is_denied(self) -> bool:
        return self.outcome == DecisionOutcome.DENY

    def to_dict(self) -> dict:
        return {
            "decision": self.outcome.value,
            "redirect_path": self.redirect_path,
            "reason": self.reason.value,
        }


@dataclass(frozen=True)
class RouteGuardSpec:
    """Declared access requirement of one protected view."""

    allowed_roles: FrozenSet[Role]
    required_flag: Optional[str] = None
    requires_onboarding_check: bool = False
    name: Optional[str] = None
    # Replaces the role fallback table on role mismatch for this guard only
    role_redirect_path: Optional[str] = None

    @classmethod
    def build(
        cls,
        allowed_roles: Iterable,
        required_flag: Optional[str] = None,
        requires_onboarding_check: bool = False,
        name: Optional[str] = None,
        role_redirect_path: Optional[str] = None,
    ) -> "RouteGuardSpec":
        """Build a spec from role names or Role members."""
        roles = frozenset(
            r if isinstance(r, Role) else parse_role(r) for r in allowed_roles
        )
        return cls(
            allowed_roles=roles,
            required_flag=required_flag or None,
            requires_onboarding_check=requires_onboarding_check,
            name=name,
            role_redirect_path=role_redirect_path or None,
        )


# Role fallback table used on role mismatch. STUDENT is resolved separately
# because its target depends on university affiliation.
ROLE_REDIRECTS = {
    Role.SUPER_ADMIN: "/admin",
    Role.ADMIN: "/admin",
    Role.UNIVERSITY_ADMIN: "/university",
    Role.STAFF: "/staff",
}

STUDENT_PORTAL_PATH = "/university/student"


def redirect_for(role: Optional[Role], organization_id: Optional[str] = None) -> str:
    """
    Canonical fallback path for a caller whose role is not allowed.

    Total over every role value; anything not listed goes to the dashboard.
    """
    if role == Role.STUDENT:
        return STUDENT_PORTAL_PATH if organization_id else DASHBOARD_PATH
    return ROLE_REDIRECTS.get(role, DASHBOARD_PATH)


def decide(
    spec: RouteGuardSpec,
    status: IdentityStatus,
    identity: Optional[EffectiveIdentity],
    onboarding_required: bool,
    flag: FlagState,
) -> Decision:
    """
    Evaluate a guard against one consistent snapshot of inputs.

    Args:
        spec: The route's guard spec
        status: Status of the underlying (real) identity snapshot
        identity: Effective identity; may be None unless status is READY
        onboarding_required: Result of the onboarding evaluator
        flag: State of spec.required_flag; ignored when no flag is required

    Returns:
        The Decision
    """
    if not spec.required_flag:
        flag = FlagState.ENABLED

    if status == IdentityStatus.LOADING:
        return Decision.pending(DecisionReason.IDENTITY_LOADING)

    # Signed-out callers are denied even while a flag is still resolving
    if status == IdentityStatus.ABSENT or identity is None:
        return Decision.deny(SIGN_IN_PATH, DecisionReason.UNAUTHENTICATED)

    if flag == FlagState.UNKNOWN:
        return Decision.pending(DecisionReason.FLAG_UNKNOWN)

    if identity.role not in spec.allowed_roles:
        return Decision.deny(
            spec.role_redirect_path or redirect_for(identity.role, identity.organization_id),
            DecisionReason.ROLE_NOT_ALLOWED,
        )

    if flag == FlagState.DISABLED:
        return Decision.deny(DASHBOARD_PATH, DecisionReason.FLAG_DISABLED)

    if spec.requires_onboarding_check and onboarding_required:
        return Decision.deny(ONBOARDING_PATH, DecisionReason.ONBOARDING_REQUIRED)

    return Decision.allow()
