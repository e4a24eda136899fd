"""
Access API Routes - guard evaluation, effective identity and impersonation.

Provides endpoints for:
- Evaluating a guard (inline spec or named guard) for the caller
- Reading the caller's effective identity
- Starting, reading and stopping an impersonation (administrators)

SECURITY:
- Identity comes only from verified Clerk claims on request.state
- Impersonation rights are checked against the caller's REAL role
- Guard evaluation never raises for unresolved inputs; it reports Pending
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, model_validator

from ascent_access.api.dependencies.guards import get_access_engine, get_access_session
from ascent_access.auth.identity import IdentityStatus
from ascent_access.constants.roles import Plan, Role
from ascent_access.platform.access_policy import RouteGuardSpec
from ascent_access.platform.guard import AccessEngine, AccessSession
from ascent_access.platform.impersonation import ImpersonationTarget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access"])


# --- Request/Response Models ---


class EvaluateGuardBody(BaseModel):
    """Either a named guard or an inline guard spec."""
    guard: Optional[str] = Field(None, description="Name of a guard from access_policy.yml")
    allowed_roles: Optional[List[Role]] = Field(None, description="Inline spec: allowed roles")
    required_flag: Optional[str] = Field(None, description="Inline spec: required feature flag")
    requires_onboarding_check: bool = Field(False, description="Inline spec: enforce onboarding")

    @model_validator(mode="after")
    def _exactly_one_spec(self):
        if (self.guard is None) == (self.allowed_roles is None):
            raise ValueError("Provide either 'guard' or 'allowed_roles'")
        return self


class DecisionResponse(BaseModel):
    """Result of a guard evaluation."""
    decision: str
    redirect_path: Optional[str] = None
    reason: str


class EffectiveIdentityResponse(BaseModel):
    """The caller's effective identity."""
    status: str
    subject_id: Optional[str] = None
    role: Optional[str] = None
    organization_id: Optional[str] = None
    plan: Optional[str] = None
    is_impersonating: bool = False


class StartImpersonationBody(BaseModel):
    """Request body for starting an impersonation."""
    role: Role = Field(..., description="Role to view the product as")
    organization_id: Optional[str] = Field(None, description="University to view as")
    plan: Optional[Plan] = Field(None, description="Plan to view as (defaults per role)")


class ImpersonationResponse(BaseModel):
    """Current impersonation state."""
    active: bool
    acting_admin_id: Optional[str] = None
    impersonated_role: Optional[str] = None
    impersonated_organization_id: Optional[str] = None
    impersonated_plan: Optional[str] = None
    started_at: Optional[str] = None


def _impersonation_response(overlay) -> ImpersonationResponse:
    if overlay is None:
        return ImpersonationResponse(active=False)
    return ImpersonationResponse(**overlay.to_dict())


# --- API Endpoints ---


@router.post("/evaluate", response_model=DecisionResponse)
async def evaluate_guard(
    body: EvaluateGuardBody,
    engine: AccessEngine = Depends(get_access_engine),
    session: AccessSession = Depends(get_access_session),
):
    """
    Evaluate a guard for the caller.

    Always 200: the decision (allow / pending / deny + redirect path) is the
    payload. Unknown named guards are 404.
    """
    if body.guard is not None:
        spec = engine.guard(body.guard)
    else:
        spec = RouteGuardSpec.build(
            allowed_roles=body.allowed_roles,
            required_flag=body.required_flag,
            requires_onboarding_check=body.requires_onboarding_check,
        )

    decision = await session.evaluate_guard(spec)
    return DecisionResponse(**decision.to_dict())


@router.get("/me", response_model=EffectiveIdentityResponse)
async def get_effective_identity(
    response: Response,
    session: AccessSession = Depends(get_access_session),
):
    """
    Return the caller's effective identity.

    202 while the identity provider is still loading, 401 when signed out,
    503 when the billing source is unavailable.
    """
    snapshot_status = session.identity_status()
    if snapshot_status == IdentityStatus.ABSENT:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    if snapshot_status == IdentityStatus.LOADING:
        response.status_code = status.HTTP_202_ACCEPTED
        return EffectiveIdentityResponse(status="pending")

    identity = await session.effective_identity()
    return EffectiveIdentityResponse(status="ready", **identity.to_dict())


@router.get("/impersonation", response_model=ImpersonationResponse)
async def get_impersonation(session: AccessSession = Depends(get_access_session)):
    """Return the caller's active impersonation, if any."""
    return _impersonation_response(session.current_impersonation())


@router.post(
    "/impersonation",
    response_model=ImpersonationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_impersonation(
    body: StartImpersonationBody,
    session: AccessSession = Depends(get_access_session),
):
    """
    Start an impersonation.

    403 for non-administrators or a caller without a session id, 409 if one
    is already active, 422 for an invalid target.
    """
    overlay = session.start_impersonation(
        ImpersonationTarget(
            role=body.role,
            organization_id=body.organization_id,
            plan=body.plan,
        )
    )
    return _impersonation_response(overlay)


@router.delete("/impersonation", status_code=status.HTTP_204_NO_CONTENT)
async def stop_impersonation(session: AccessSession = Depends(get_access_session)):
    """Stop the caller's impersonation. Idempotent."""
    session.stop_impersonation()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
