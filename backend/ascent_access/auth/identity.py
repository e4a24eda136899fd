"""
Identity snapshots supplied by the identity provider adapter.

IMPORTANT: Clerk is the authentication authority.
This module does NOT issue or verify tokens - it only turns an already
verified Clerk session into an immutable IdentitySnapshot.

Snapshot states:
- LOADING: the adapter has not finished its handshake. Blocks every decision.
- READY: a signed-in caller. Subject and role are always populated; the
  session id and account creation time are set when the provider reports them.
- ABSENT: nobody is signed in. A definitive deny.

Clerk claims used (public metadata is copied into the session token):
- sub: clerk user id
- sid: session id
- org_id: Clerk organization (fallback for university id)
- public_metadata.role
- public_metadata.university_id
- public_metadata.onboarding_completed
- public_metadata.created_by_admin
- created_at: account creation (Unix seconds or milliseconds)
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ascent_access.constants.roles import Role, parse_role

logger = logging.getLogger(__name__)


class IdentityStatus(str, Enum):
    """Tri-state status of the identity provider handshake."""
    LOADING = "loading"
    READY = "ready"
    ABSENT = "absent"


@dataclass(frozen=True)
class IdentitySnapshot:
    """
    The authenticated caller as supplied by the identity provider.

    Immutable. A new snapshot is produced for every authentication session
    and the engine never mutates it.
    """

    status: IdentityStatus
    subject_id: Optional[str] = None
    role: Optional[Role] = None
    organization_id: Optional[str] = None
    onboarding_completed: bool = False
    created_at: Optional[datetime] = None
    created_by_admin: bool = False
    session_id: Optional[str] = None

    @classmethod
    def loading(cls) -> "IdentitySnapshot":
        return cls(status=IdentityStatus.LOADING)

    @classmethod
    def absent(cls) -> "IdentitySnapshot":
        return cls(status=IdentityStatus.ABSENT)

    @classmethod
    def ready(
        cls,
        subject_id: str,
        role: Role,
        organization_id: Optional[str] = None,
        onboarding_completed: bool = False,
        created_at: Optional[datetime] = None,
        created_by_admin: bool = False,
        session_id: Optional[str] = None,
    ) -> "IdentitySnapshot":
        if not subject_id:
            raise ValueError("subject_id is required for a ready identity")
        # created_at stays None when the provider did not report it; the
        # onboarding evaluator decides what an unknown account age means
        return cls(
            status=IdentityStatus.READY,
            subject_id=subject_id,
            role=role,
            organization_id=organization_id,
            onboarding_completed=onboarding_completed,
            created_at=created_at,
            created_by_admin=created_by_admin,
            session_id=session_id,
        )

    @property
    def is_ready(self) -> bool:
        return self.status == IdentityStatus.READY

    @property
    def session_key(self) -> Optional[str]:
        """
        Key identifying the session this snapshot belongs to.

        None unless the snapshot is READY and carries a session id. Callers
        without a session id share no session state, in particular no
        impersonation overlay.
        """
        if not self.is_ready or not self.session_id:
            return None
        return session_key_for(self.subject_id, self.session_id)


def session_key_for(subject_id: str, session_id: str) -> str:
    """Build the session key for a subject's identity-provider session."""
    return f"{subject_id}:{session_id}"


SessionEndListener = Callable[[IdentitySnapshot], None]


class IdentityProvider(ABC):
    """
    Identity provider adapter contract.

    current_identity() must never block: it returns a LOADING snapshot until
    the underlying provider has answered.
    """

    @abstractmethod
    def current_identity(self) -> IdentitySnapshot:
        """Return the current identity snapshot."""

    def on_session_end(self, listener: SessionEndListener) -> None:
        """
        Register listener(snapshot) for sessions that end in this provider.

        Providers whose sessions end elsewhere (Clerk, via webhook) ignore it.
        """


class StaticIdentityProvider(IdentityProvider):
    """
    In-process identity provider.

    Used by background jobs and tests. Every sign-in starts a new session id
    so that overlays and in-flight decisions bound to a previous session can
    be told apart. Signing out, or signing in over another session, ends the
    previous session and notifies the session-end listeners.
    """

    def __init__(self, snapshot: Optional[IdentitySnapshot] = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot or IdentitySnapshot.loading()
        self._listeners: List[SessionEndListener] = []

    def current_identity(self) -> IdentitySnapshot:
        with self._lock:
            return self._snapshot

    def on_session_end(self, listener: SessionEndListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def sign_in(self, snapshot: IdentitySnapshot) -> IdentitySnapshot:
        """Replace the current identity with a ready snapshot on a new session."""
        if not snapshot.is_ready:
            raise ValueError("sign_in requires a ready snapshot")
        if snapshot.session_id is None:
            snapshot = replace(snapshot, session_id=f"sess_{uuid.uuid4().hex[:16]}")
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
        logger.info(
            "Identity signed in",
            extra={"subject_id": snapshot.subject_id, "session_id": snapshot.session_id},
        )
        if previous.session_key and previous.session_key != snapshot.session_key:
            self._notify_session_end(previous)
        return snapshot

    def sign_out(self) -> None:
        with self._lock:
            previous = self._snapshot
            self._snapshot = IdentitySnapshot.absent()
        logger.info(
            "Identity signed out",
            extra={"subject_id": previous.subject_id, "session_id": previous.session_id},
        )
        if previous.is_ready:
            self._notify_session_end(previous)

    def set_loading(self) -> None:
        with self._lock:
            self._snapshot = IdentitySnapshot.loading()

    def _notify_session_end(self, snapshot: IdentitySnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snapshot)


# ============================================================================
# Clerk session claims
# ============================================================================


class PublicMetadata(BaseModel):
    """Subset of Clerk public metadata used for access decisions."""

    role: Optional[str] = None
    university_id: Optional[str] = None
    onboarding_completed: bool = False
    created_by_admin: bool = False

    model_config = ConfigDict(extra="allow")


class SessionClaims(BaseModel):
    """
    Verified Clerk session claims.

    Verification happens upstream; this model only gives type-safe access.
    """

    sub: str = Field(..., description="Clerk user ID")
    sid: Optional[str] = Field(None, description="Session ID")
    org_id: Optional[str] = Field(None, description="Clerk organization ID")
    created_at: Optional[int] = Field(None, description="Account creation timestamp")
    public_metadata: PublicMetadata = Field(default_factory=PublicMetadata)

    model_config = ConfigDict(extra="allow")

    @property
    def created_at_datetime(self) -> Optional[datetime]:
        if self.created_at is None:
            return None
        seconds = self.created_at
        # Clerk reports milliseconds; accept seconds as well
        if seconds > 10_000_000_000:
            seconds = seconds / 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)


def snapshot_from_claims(claims: Optional[Dict[str, Any]]) -> IdentitySnapshot:
    """
    Build an IdentitySnapshot from verified Clerk claims.

    Missing claims, or claims without a recognised role, produce an ABSENT
    snapshot. An unknown role never grants access.

    Args:
        claims: Claims dict from the upstream verifier, or None

    Returns:
        READY or ABSENT snapshot
    """
    if not claims:
        return IdentitySnapshot.absent()

    try:
        parsed = SessionClaims.model_validate(claims)
    except ValidationError as e:
        logger.warning("Invalid session claims", extra={"error": str(e)})
        return IdentitySnapshot.absent()

    try:
        role = parse_role(parsed.public_metadata.role)
    except ValueError:
        logger.warning(
            "Session claims carry no recognised role",
            extra={"subject_id": parsed.sub, "role": parsed.public_metadata.role},
        )
        return IdentitySnapshot.absent()

    return IdentitySnapshot.ready(
        subject_id=parsed.sub,
        role=role,
        organization_id=parsed.public_metadata.university_id or parsed.org_id,
        onboarding_completed=parsed.public_metadata.onboarding_completed,
        created_at=parsed.created_at_datetime,
        created_by_admin=parsed.public_metadata.created_by_admin,
        session_id=parsed.sid,
    )


@dataclass
class ClaimsIdentityProvider(IdentityProvider):
    """
    Identity provider backed by a request's verified Clerk claims.

    loading=True represents a request whose verifier has not completed
    (for example while Clerk JWKS are still being fetched).
    """

    claims: Optional[Dict[str, Any]] = None
    loading: bool = False
    _snapshot: Optional[IdentitySnapshot] = field(default=None, init=False, repr=False)

    def current_identity(self) -> IdentitySnapshot:
        if self.loading:
            return IdentitySnapshot.loading()
        if self._snapshot is None:
            self._snapshot = snapshot_from_claims(self.claims)
        return self._snapshot
