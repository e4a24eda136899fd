"""
Guard dependencies for protected views.

This is the thin, effectful adapter on top of the pure decision function:
- Allow   -> the route runs
- Deny    -> 303 redirect to the decision's path, no body from the route
- Pending -> 503 with Retry-After, no body from the route

Usage:
    @router.get("/advisor/dashboard")
    async def advisor_dashboard(
        session: AccessSession = Depends(require_guard("advisor_dashboard")),
    ):
        ...
"""

import logging
from typing import Callable, Union

from fastapi import Depends, HTTPException, Request, status

from ascent_access.auth.identity import ClaimsIdentityProvider, IdentityProvider
from ascent_access.platform.access_policy import RouteGuardSpec
from ascent_access.platform.guard import AccessEngine, AccessSession

logger = logging.getLogger(__name__)

DEFAULT_PENDING_RETRY_AFTER_SECONDS = 2


def get_access_engine(request: Request) -> AccessEngine:
    """Get the AccessEngine installed on the app."""
    engine = getattr(request.app.state, "access_engine", None)
    if engine is None:
        raise RuntimeError("AccessEngine not configured on app.state.access_engine")
    return engine


def get_identity_provider(request: Request) -> IdentityProvider:
    """
    Identity provider for the current request.

    The upstream Clerk verifier places verified claims on
    request.state.clerk_claims, or sets request.state.identity_loading while
    its handshake is incomplete.
    """
    return ClaimsIdentityProvider(
        claims=getattr(request.state, "clerk_claims", None),
        loading=bool(getattr(request.state, "identity_loading", False)),
    )


def get_access_session(
    engine: AccessEngine = Depends(get_access_engine),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
) -> AccessSession:
    """Access session for the current caller."""
    return engine.session(identity_provider)


def require_guard(guard: Union[RouteGuardSpec, str]) -> Callable:
    """
    Factory for a guard-enforcing dependency.

    Args:
        guard: A RouteGuardSpec, or the name of a guard from access_policy.yml

    Returns:
        A FastAPI dependency returning the caller's AccessSession on Allow
    """

    async def check_guard(
        request: Request,
        engine: AccessEngine = Depends(get_access_engine),
        session: AccessSession = Depends(get_access_session),
    ) -> AccessSession:
        spec = engine.guard(guard) if isinstance(guard, str) else guard
        decision = await session.evaluate_guard(spec)

        if decision.is_allowed:
            return session

        if decision.is_denied:
            logger.info(
                "Guard redirected request",
                extra={
                    "guard": spec.name,
                    "path": request.url.path,
                    "redirect_path": decision.redirect_path,
                    "reason": decision.reason.value,
                },
            )
            raise HTTPException(
                status_code=status.HTTP_303_SEE_OTHER,
                detail=decision.to_dict(),
                headers={"Location": decision.redirect_path},
            )

        retry_after = getattr(
            request.app.state, "pending_retry_after_seconds", DEFAULT_PENDING_RETRY_AFTER_SECONDS
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=decision.to_dict(),
            headers={"Retry-After": str(retry_after)},
        )

    return check_guard
