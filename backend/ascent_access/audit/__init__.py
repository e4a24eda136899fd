"""Audit event emitters."""

from ascent_access.audit.impersonation_events import (
    ImpersonationAuditAction,
    ImpersonationAuditEmitter,
)

__all__ = [
    "ImpersonationAuditAction",
    "ImpersonationAuditEmitter",
]
