"""
Identity handling for Clerk-authenticated callers.

This module provides:
- Identity snapshots built from verified Clerk session claims
- Identity provider adapters
- Effective identity resolution (real identity + impersonation overlay)

SECURITY NOTES:
- Clerk is the ONLY authentication authority
- NO tokens are issued or verified here
"""

from ascent_access.auth.identity import (
    ClaimsIdentityProvider,
    IdentityProvider,
    IdentitySnapshot,
    IdentityStatus,
    SessionClaims,
    StaticIdentityProvider,
    snapshot_from_claims,
)
from ascent_access.auth.effective_identity import EffectiveIdentity, resolve

__all__ = [
    # Snapshots
    "IdentitySnapshot",
    "IdentityStatus",
    # Providers
    "IdentityProvider",
    "StaticIdentityProvider",
    "ClaimsIdentityProvider",
    # Claims
    "SessionClaims",
    "snapshot_from_claims",
    # Effective identity
    "EffectiveIdentity",
    "resolve",
]
