"""
Impersonation overlay store.

CRITICAL SECURITY REQUIREMENTS:
- Only callers whose REAL role is admin or super_admin may impersonate.
  The check runs against the un-overlaid identity snapshot, never against a
  prior overlay, so impersonation cannot be chained into an escalation.
- At most one active overlay per administrator session. Starting a second
  one without stopping the first is rejected and the first stays in place.
- Overlays are scoped to the admin session that created them. One admin's
  overlay is never visible to another session.
- Overlays live in process memory only and are dropped when the owning
  session ends.

Overlays are immutable. start/stop replace the session's slot under a lock,
so a reader sees either the previous overlay or the new one, never a mix.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from ascent_access.audit.impersonation_events import ImpersonationAuditEmitter
from ascent_access.auth.identity import IdentitySnapshot
from ascent_access.constants.roles import (
    IMPERSONATABLE_ROLES,
    Plan,
    Role,
    default_plan_for,
    is_admin_role,
    requires_organization,
)
from ascent_access.platform.errors import (
    ImpersonationAlreadyActiveError,
    ImpersonationSessionRequiredError,
    ImpersonationUnauthorizedError,
    InvalidImpersonationTargetError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImpersonationTarget:
    """What an administrator wants to view the product as."""

    role: Role
    organization_id: Optional[str] = None
    plan: Optional[Plan] = None


@dataclass(frozen=True)
class ImpersonationOverlay:
    """An active impersonation for one admin session."""

    acting_admin_id: str
    impersonated_role: Role
    session_key: str
    impersonated_organization_id: Optional[str] = None
    impersonated_plan: Optional[Plan] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    active: bool = True

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "acting_admin_id": self.acting_admin_id,
            "impersonated_role": self.impersonated_role.value,
            "impersonated_organization_id": self.impersonated_organization_id,
            "impersonated_plan": self.impersonated_plan.value if self.impersonated_plan else None,
            "started_at": self.started_at.isoformat(),
        }


class ImpersonationStore:
    """
    Session-scoped, single-slot impersonation state.

    Pass one instance into the AccessEngine; do not reach for it as a global.
    """

    def __init__(self, audit_emitter: Optional[ImpersonationAuditEmitter] = None):
        self._lock = threading.Lock()
        self._slots: Dict[str, ImpersonationOverlay] = {}
        self._audit = audit_emitter or ImpersonationAuditEmitter()

    def _validate_target(self, target: ImpersonationTarget) -> ImpersonationTarget:
        if target.role not in IMPERSONATABLE_ROLES:
            raise InvalidImpersonationTargetError(
                f"Role '{target.role.value}' cannot be impersonated",
                role=target.role.value,
            )
        if requires_organization(target.role) and not target.organization_id:
            raise InvalidImpersonationTargetError(
                f"Role '{target.role.value}' requires a university",
                role=target.role.value,
            )
        if target.plan is None:
            return ImpersonationTarget(
                role=target.role,
                organization_id=target.organization_id,
                plan=default_plan_for(target.role),
            )
        return target

    def start_impersonation(
        self,
        acting_admin: IdentitySnapshot,
        target: ImpersonationTarget,
    ) -> ImpersonationOverlay:
        """
        Start impersonating for the acting admin's session.

        Args:
            acting_admin: The REAL identity snapshot of the caller
            target: Role, organization and plan to view as

        Returns:
            The new overlay

        Raises:
            ImpersonationUnauthorizedError: Caller is not a ready admin
            ImpersonationSessionRequiredError: Caller has no session id
            ImpersonationAlreadyActiveError: Session already has an overlay
            InvalidImpersonationTargetError: Target cannot be shown
        """
        if not acting_admin.is_ready or not is_admin_role(acting_admin.role):
            self._audit.emit_denied(
                acting_admin.subject_id,
                "unauthorized",
                requested_role=target.role.value,
            )
            raise ImpersonationUnauthorizedError(acting_admin.subject_id)

        session_key = acting_admin.session_key
        # An overlay must belong to a provider session
        if session_key is None:
            self._audit.emit_denied(
                acting_admin.subject_id,
                "no_session",
                requested_role=target.role.value,
            )
            raise ImpersonationSessionRequiredError()

        try:
            target = self._validate_target(target)
        except InvalidImpersonationTargetError:
            self._audit.emit_denied(
                acting_admin.subject_id,
                "invalid_target",
                requested_role=target.role.value,
            )
            raise

        with self._lock:
            existing = self._slots.get(session_key)
            if existing is not None:
                self._audit.emit_denied(
                    acting_admin.subject_id,
                    "already_active",
                    requested_role=target.role.value,
                )
                raise ImpersonationAlreadyActiveError(existing.impersonated_role.value)

            overlay = ImpersonationOverlay(
                acting_admin_id=acting_admin.subject_id,
                impersonated_role=target.role,
                session_key=session_key,
                impersonated_organization_id=target.organization_id,
                impersonated_plan=target.plan,
            )
            self._slots[session_key] = overlay

        logger.warning(
            "Impersonation started",
            extra={
                "acting_admin_id": overlay.acting_admin_id,
                "impersonated_role": overlay.impersonated_role.value,
                "impersonated_organization_id": overlay.impersonated_organization_id,
            },
        )
        self._audit.emit_started(
            acting_admin_id=overlay.acting_admin_id,
            impersonated_role=overlay.impersonated_role.value,
            impersonated_organization_id=overlay.impersonated_organization_id,
            impersonated_plan=overlay.impersonated_plan.value if overlay.impersonated_plan else None,
        )
        return overlay

    def stop_impersonation(self, acting_admin: IdentitySnapshot) -> None:
        """Stop the session's impersonation. A no-op when none is active."""
        session_key = acting_admin.session_key
        if session_key is None:
            return
        with self._lock:
            removed = self._slots.pop(session_key, None)
        if removed is None:
            return
        logger.info(
            "Impersonation stopped",
            extra={
                "acting_admin_id": removed.acting_admin_id,
                "impersonated_role": removed.impersonated_role.value,
            },
        )
        self._audit.emit_stopped(removed.acting_admin_id, removed.impersonated_role.value)

    def current_overlay(self, acting_admin: IdentitySnapshot) -> Optional[ImpersonationOverlay]:
        """Return the session's overlay, if any."""
        session_key = acting_admin.session_key
        if session_key is None:
            return None
        with self._lock:
            overlay = self._slots.get(session_key)
        # A stale overlay never outlives a demoted admin
        if overlay is not None and not is_admin_role(acting_admin.role):
            return None
        return overlay

    def end_session(self, session_key: str) -> None:
        """Drop any overlay owned by a session that has ended."""
        with self._lock:
            removed = self._slots.pop(session_key, None)
        if removed is not None:
            logger.info(
                "Impersonation ended with session",
                extra={"acting_admin_id": removed.acting_admin_id},
            )
            self._audit.emit_ended(removed.acting_admin_id, session_key)

    def active_count(self) -> int:
        with self._lock:
            return len(self._slots)
