"""
Impersonation audit events.

Emits one structured audit record per impersonation lifecycle change to the
"ascent_access.audit" logger. Log shipping turns these into the append-only
audit trail.

SECURITY REQUIREMENTS:
- NEVER include email or other PII in metadata - use subject ids only
- ALL events MUST include correlation_id for request tracing

Events emitted:
- impersonation.started: an administrator began viewing as another role
- impersonation.stopped: the overlay was removed by the administrator
- impersonation.ended: the owning session ended with an overlay active
- impersonation.denied: a start attempt was rejected
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("ascent_access.audit")


class ImpersonationAuditAction(str, Enum):
    STARTED = "impersonation.started"
    STOPPED = "impersonation.stopped"
    ENDED = "impersonation.ended"
    DENIED = "impersonation.denied"


class ImpersonationAuditEmitter:
    """
    Emits impersonation audit events.

    Usage:
        emitter = ImpersonationAuditEmitter(correlation_id="abc-123")
        emitter.emit_started(acting_admin_id="user_xyz", impersonated_role="student")
    """

    REASONS_DENIED = frozenset({"unauthorized", "no_session", "already_active", "invalid_target"})

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def _emit(
        self,
        action: ImpersonationAuditAction,
        acting_admin_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        record = {
            "action": action.value,
            "acting_admin_id": acting_admin_id,
            "correlation_id": self.correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **metadata,
        }
        audit_logger.warning(action.value, extra={"audit": record})
        return record

    def emit_started(
        self,
        acting_admin_id: str,
        impersonated_role: str,
        impersonated_organization_id: Optional[str] = None,
        impersonated_plan: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._emit(
            ImpersonationAuditAction.STARTED,
            acting_admin_id,
            {
                "impersonated_role": impersonated_role,
                "impersonated_organization_id": impersonated_organization_id,
                "impersonated_plan": impersonated_plan,
            },
        )

    def emit_stopped(self, acting_admin_id: str, impersonated_role: str) -> Dict[str, Any]:
        return self._emit(
            ImpersonationAuditAction.STOPPED,
            acting_admin_id,
            {"impersonated_role": impersonated_role},
        )

    def emit_ended(self, acting_admin_id: str, session_key: str) -> Dict[str, Any]:
        return self._emit(
            ImpersonationAuditAction.ENDED,
            acting_admin_id,
            {"session_key": session_key},
        )

    def emit_denied(
        self,
        acting_subject_id: Optional[str],
        reason: str,
        requested_role: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Emit a rejected start attempt.

        Raises:
            ValueError: If reason is not a known denial reason
        """
        if reason not in self.REASONS_DENIED:
            raise ValueError(f"Invalid denial reason: {reason}")
        return self._emit(
            ImpersonationAuditAction.DENIED,
            acting_subject_id,
            {"reason": reason, "requested_role": requested_role},
        )
