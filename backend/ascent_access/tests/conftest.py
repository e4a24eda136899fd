"""
Root test configuration and fixtures.

Shared fixtures:
- make_snapshot: factory for READY identity snapshots
- flag_source / flag_evaluator: in-process flags with advisor.dashboard on
- engine: AccessEngine wired to in-process collaborators
- make_yaml_config: factory for writing access policy YAML to a temp dir
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from ascent_access.auth.identity import IdentitySnapshot, StaticIdentityProvider
from ascent_access.config.access_policy import AccessPolicyLoader
from ascent_access.constants.roles import Role
from ascent_access.platform.access_policy import RouteGuardSpec
from ascent_access.platform.feature_flags import FeatureFlagEvaluator, TenantFlagSource
from ascent_access.platform.guard import AccessEngine
from ascent_access.platform.impersonation import ImpersonationStore
from ascent_access.services.plan_source import StaticPlanSource

# Set test environment
os.environ.setdefault("ENV", "test")

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

ADVISOR_DASHBOARD = RouteGuardSpec.build(
    allowed_roles=["advisor", "university_admin", "super_admin"],
    required_flag="advisor.dashboard",
    name="advisor_dashboard",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """No flag overrides or external collaborators leak in from the shell."""
    for name in list(os.environ):
        if name.startswith("FEATURE_FLAG_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("LAUNCHDARKLY_SDK_KEY", raising=False)
    monkeypatch.delenv("BILLING_API_URL", raising=False)
    monkeypatch.delenv("ACCESS_POLICY_CONFIG", raising=False)
    monkeypatch.delenv("CLERK_WEBHOOK_SECRET", raising=False)
    AccessPolicyLoader.reset_instance()
    yield
    AccessPolicyLoader.reset_instance()


@pytest.fixture
def make_snapshot():
    """Factory for READY snapshots. Accounts default to 1 hour old and onboarded."""

    def _make(
        role: Role = Role.INDIVIDUAL,
        subject_id: str = "user_123",
        organization_id=None,
        onboarding_completed: bool = True,
        created_at=None,
        created_by_admin: bool = False,
        session_id: str = "sess_1",
    ) -> IdentitySnapshot:
        return IdentitySnapshot.ready(
            subject_id=subject_id,
            role=role,
            organization_id=organization_id,
            onboarding_completed=onboarding_completed,
            created_at=created_at or (NOW - timedelta(hours=1)),
            created_by_admin=created_by_admin,
            session_id=session_id,
        )

    return _make


@pytest.fixture
def admin_snapshot(make_snapshot):
    return make_snapshot(role=Role.ADMIN, subject_id="admin_1", session_id="sess_admin_1")


@pytest.fixture
def flag_source():
    return TenantFlagSource(platform_defaults={"advisor.dashboard": True})


@pytest.fixture
def flag_evaluator(flag_source):
    return FeatureFlagEvaluator(flag_source)


@pytest.fixture
def plan_source():
    return StaticPlanSource()


@pytest.fixture
def engine(flag_evaluator, plan_source):
    return AccessEngine(
        flag_evaluator=flag_evaluator,
        impersonation_store=ImpersonationStore(),
        plan_source=plan_source,
        guards={"advisor_dashboard": ADVISOR_DASHBOARD},
    )


@pytest.fixture
def identity_provider():
    return StaticIdentityProvider()


@pytest.fixture
def make_yaml_config(tmp_path):
    """Write an access policy YAML file and return its path."""

    def _write(data: dict, filename: str = "access_policy.yml") -> Path:
        path = tmp_path / filename
        path.write_text(yaml.safe_dump(data))
        return path

    return _write
