"""
Guard pipeline for protected views.

Runs, for one guard check:
    identity snapshot -> impersonation overlay -> effective identity
    -> (onboarding evaluator, feature flag evaluator)
    -> access policy decision -> (on deny) redirect target

CRITICAL REQUIREMENTS:
- Every input is read exactly once per evaluation. The decision is computed
  from that single logical snapshot even if a source changes meanwhile.
- A loading identity or an unresolved flag is Pending, never Allow.
- Source failures are Pending (retryable), never Deny - no false lockouts.
- If the caller's session ends while the evaluation is suspended, the
  result is discarded: the call returns Pending and the next call sees the
  signed-out identity.
- Nothing raised while reading the identity provider or the flag source
  escapes evaluate_guard: failures there are Pending.

Usage:
    engine = AccessEngine(flag_evaluator, ImpersonationStore(), plan_source)
    session = engine.session(identity_provider)
    decision = await session.evaluate_guard(engine.guard("advisor_dashboard"))
"""

import logging
import os
from datetime import timedelta
from typing import Dict, Optional

from ascent_access.auth.effective_identity import EffectiveIdentity, resolve
from ascent_access.auth.identity import (
    IdentityProvider,
    IdentitySnapshot,
    IdentityStatus,
    session_key_for,
)
from ascent_access.config.access_policy import AccessPolicyLoader
from ascent_access.constants.roles import Plan, Role
from ascent_access.platform.access_policy import (
    Decision,
    DecisionReason,
    RouteGuardSpec,
    decide,
)
from ascent_access.platform.errors import SourceUnavailableError, UnknownGuardError
from ascent_access.platform.feature_flags import (
    FeatureFlagEvaluator,
    FeatureFlagSource,
    FlagState,
    LaunchDarklyFlagSource,
    TenantFlagSource,
)
from ascent_access.platform.impersonation import (
    ImpersonationOverlay,
    ImpersonationStore,
    ImpersonationTarget,
)
from ascent_access.services.onboarding import DEFAULT_ONBOARDING_GRACE, requires_onboarding
from ascent_access.services.plan_source import (
    BillingPlanSource,
    HttpBillingPlanSource,
    StaticPlanSource,
)

logger = logging.getLogger(__name__)


class AccessEngine:
    """
    Holds the collaborators shared by every session.

    The impersonation store is the only mutable shared state and is passed
    in explicitly.
    """

    def __init__(
        self,
        flag_evaluator: FeatureFlagEvaluator,
        impersonation_store: ImpersonationStore,
        plan_source: BillingPlanSource,
        onboarding_grace: timedelta = DEFAULT_ONBOARDING_GRACE,
        guards: Optional[Dict[str, RouteGuardSpec]] = None,
    ):
        self.flags = flag_evaluator
        self.impersonation = impersonation_store
        self.plans = plan_source
        self.onboarding_grace = onboarding_grace
        self._guards = dict(guards or {})

    @classmethod
    def from_config(
        cls,
        loader: AccessPolicyLoader,
        flag_source: Optional[FeatureFlagSource] = None,
        plan_source: Optional[BillingPlanSource] = None,
    ) -> "AccessEngine":
        """
        Build an engine from policy config and the environment.

        LaunchDarkly is used when LAUNCHDARKLY_SDK_KEY is set, tenant
        overrides otherwise. The HTTP billing source is used when
        BILLING_API_URL is set, a static source otherwise.
        """
        if flag_source is None:
            if os.getenv("LAUNCHDARKLY_SDK_KEY"):
                flag_source = LaunchDarklyFlagSource(platform_defaults=loader.get_flag_defaults())
            else:
                flag_source = TenantFlagSource(platform_defaults=loader.get_flag_defaults())
        if plan_source is None:
            if os.getenv("BILLING_API_URL"):
                plan_source = HttpBillingPlanSource()
            else:
                plan_source = StaticPlanSource()

        return cls(
            flag_evaluator=FeatureFlagEvaluator(flag_source),
            impersonation_store=ImpersonationStore(),
            plan_source=plan_source,
            onboarding_grace=loader.get_onboarding_grace(),
            guards=loader.get_guards(),
        )

    def session(self, identity_provider: IdentityProvider) -> "AccessSession":
        """
        Bind the engine to one caller's identity provider.

        The engine subscribes to the provider's session-end notifications so
        that signing out drops the session's impersonation overlay.
        """
        identity_provider.on_session_end(self.end_session)
        return AccessSession(self, identity_provider)

    def guard(self, name: str) -> RouteGuardSpec:
        """
        Look up a named guard.

        Raises:
            UnknownGuardError: If the guard is not configured
        """
        spec = self._guards.get(name)
        if spec is None:
            raise UnknownGuardError(name)
        return spec

    def end_session(self, snapshot: IdentitySnapshot) -> None:
        """Sign-out hook: drop the session's impersonation overlay."""
        if snapshot.session_key:
            self.impersonation.end_session(snapshot.session_key)

    def end_session_for(self, subject_id: str, session_id: str) -> None:
        """Drop the overlay of a session the identity provider reports as ended."""
        self.impersonation.end_session(session_key_for(subject_id, session_id))


class AccessSession:
    """
    Access surface exposed to protected views for one caller.

    evaluate_guard, the impersonation controls and the effective identity
    accessors all read the identity provider fresh on every call.
    """

    def __init__(self, engine: AccessEngine, identity_provider: IdentityProvider):
        self._engine = engine
        self._identity = identity_provider

    # ------------------------------------------------------------------
    # Guard evaluation
    # ------------------------------------------------------------------

    async def evaluate_guard(self, spec: RouteGuardSpec) -> Decision:
        """
        Compute the access decision for a guard.

        Never raises for resolution problems: they come back as Pending.
        """
        try:
            decision = await self._evaluate(spec)
        except SourceUnavailableError as e:
            logger.warning(
                "Guard evaluation pending - source unavailable",
                extra={"guard": spec.name, "source": e.source, "reason": e.reason},
            )
            decision = Decision.pending(DecisionReason.SOURCE_UNAVAILABLE)

        log = logger.info if decision.is_denied else logger.debug
        log(
            "Guard evaluated",
            extra={
                "guard": spec.name,
                "decision": decision.outcome.value,
                "reason": decision.reason.value,
                "redirect_path": decision.redirect_path,
            },
        )
        return decision

    async def _evaluate(self, spec: RouteGuardSpec) -> Decision:
        try:
            snapshot = self._identity.current_identity()
        except Exception as e:
            logger.error(
                "Identity provider failed",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            raise SourceUnavailableError("identity", reason=str(e)) from e

        if snapshot.status != IdentityStatus.READY:
            return decide(spec, snapshot.status, None, False, FlagState.UNKNOWN)

        overlay = self._engine.impersonation.current_overlay(snapshot)
        # Decisions never depend on plan; billing is not consulted here
        identity = resolve(snapshot, overlay)

        flag = FlagState.ENABLED
        if spec.required_flag:
            flags = await self._engine.flags.resolve(
                [spec.required_flag], tenant_id=identity.organization_id
            )
            flag = flags.get(spec.required_flag)

        if self._session_ended(snapshot):
            return Decision.pending(DecisionReason.SESSION_ENDED)

        onboarding_required = requires_onboarding(
            identity, snapshot, grace=self._engine.onboarding_grace
        )
        return decide(spec, snapshot.status, identity, onboarding_required, flag)

    def _session_ended(self, snapshot: IdentitySnapshot) -> bool:
        """Check whether the caller's session changed while we were suspended."""
        current = self._identity.current_identity()
        if current.is_ready and current.session_key == snapshot.session_key:
            return False
        logger.info(
            "Session changed during guard evaluation - discarding decision",
            extra={"subject_id": snapshot.subject_id},
        )
        if current.status == IdentityStatus.ABSENT or (
            current.is_ready and current.session_key != snapshot.session_key
        ):
            self._engine.end_session(snapshot)
        return True

    # ------------------------------------------------------------------
    # Effective identity accessors
    # ------------------------------------------------------------------

    def identity_status(self) -> IdentityStatus:
        """Status of the caller's real identity snapshot."""
        return self._identity.current_identity().status

    async def effective_identity(self) -> Optional[EffectiveIdentity]:
        """
        Resolve the full effective identity, including plan.

        Returns:
            EffectiveIdentity, or None while the identity is not ready

        Raises:
            SourceUnavailableError: If the plan is needed and billing failed
        """
        snapshot = self._identity.current_identity()
        if not snapshot.is_ready:
            return None

        overlay = self._engine.impersonation.current_overlay(snapshot)
        real_plan = None
        if overlay is None or overlay.impersonated_plan is None:
            real_plan = await self._engine.plans.get_plan(snapshot)
        return resolve(snapshot, overlay, real_plan)

    async def effective_role(self) -> Optional[Role]:
        snapshot = self._identity.current_identity()
        if not snapshot.is_ready:
            return None
        return resolve(snapshot, self._engine.impersonation.current_overlay(snapshot)).role

    async def effective_plan(self) -> Optional[Plan]:
        identity = await self.effective_identity()
        return identity.plan if identity else None

    # ------------------------------------------------------------------
    # Impersonation controls
    # ------------------------------------------------------------------

    def start_impersonation(self, target: ImpersonationTarget) -> ImpersonationOverlay:
        """
        Start impersonating as the current (real) identity.

        Raises:
            ImpersonationUnauthorizedError, ImpersonationSessionRequiredError,
            ImpersonationAlreadyActiveError, InvalidImpersonationTargetError
        """
        return self._engine.impersonation.start_impersonation(
            self._identity.current_identity(), target
        )

    def stop_impersonation(self) -> None:
        self._engine.impersonation.stop_impersonation(self._identity.current_identity())

    def current_impersonation(self) -> Optional[ImpersonationOverlay]:
        return self._engine.impersonation.current_overlay(self._identity.current_identity())
