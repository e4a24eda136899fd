"""
Onboarding status evaluation.

Onboarding is decided from the REAL identity snapshot only. Impersonation
must never trigger or suppress onboarding for the administrator's own account,
so the effective identity is accepted for signature symmetry but not consulted.

An account skips onboarding when any of these holds:
- its role is administrative
- onboarding was explicitly completed
- it belongs to a university
- it was created by an administrator
- it is older than the grace window (default 5 minutes)
- its creation time is unknown

The grace window is a best-effort UX heuristic: accounts older than the
window are assumed to be pre-existing even if never explicitly marked
complete. It is NOT an access guarantee. A slow sign-up that crosses the
boundary will skip onboarding; this is known and kept deliberately.

An account whose provider reports no creation time cannot be placed inside
the window, so it is treated as pre-existing. Forcing it into onboarding
would loop an old account there on every sign-in.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ascent_access.auth.effective_identity import EffectiveIdentity
from ascent_access.auth.identity import IdentitySnapshot
from ascent_access.constants.roles import is_admin_role

logger = logging.getLogger(__name__)

DEFAULT_ONBOARDING_GRACE = timedelta(minutes=5)


def requires_onboarding(
    identity: Optional[EffectiveIdentity],
    raw_snapshot: IdentitySnapshot,
    now: Optional[datetime] = None,
    grace: timedelta = DEFAULT_ONBOARDING_GRACE,
) -> bool:
    """
    Decide whether onboarding must be enforced.

    Args:
        identity: Effective identity (not consulted, see module docstring)
        raw_snapshot: Real, un-overlaid identity snapshot
        now: Current time, for tests
        grace: Age after which an account is treated as pre-existing

    Returns:
        True if the caller must complete onboarding
    """
    if not raw_snapshot.is_ready:
        return False

    if is_admin_role(raw_snapshot.role):
        return False
    if raw_snapshot.onboarding_completed:
        return False
    if raw_snapshot.organization_id is not None:
        return False
    if raw_snapshot.created_by_admin:
        return False

    if raw_snapshot.created_at is None:
        logger.debug(
            "Onboarding skipped - account creation time unknown",
            extra={"subject_id": raw_snapshot.subject_id},
        )
        return False

    now = now or datetime.now(timezone.utc)
    if now - raw_snapshot.created_at > grace:
        logger.debug(
            "Onboarding skipped for pre-existing account",
            extra={"subject_id": raw_snapshot.subject_id},
        )
        return False

    return True
