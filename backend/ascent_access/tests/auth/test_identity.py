"""
Identity snapshot and effective identity tests.

SECURITY: claims without a recognised role never produce a READY identity,
and an impersonation overlay never changes the real subject.
"""

from datetime import datetime, timezone

import pytest

from ascent_access.auth.effective_identity import resolve
from ascent_access.auth.identity import (
    ClaimsIdentityProvider,
    IdentitySnapshot,
    IdentityStatus,
    SessionClaims,
    StaticIdentityProvider,
    snapshot_from_claims,
)
from ascent_access.constants.roles import Plan, Role, parse_role
from ascent_access.platform.impersonation import ImpersonationOverlay


def _claims(**metadata):
    return {
        "sub": "user_abc",
        "sid": "sess_xyz",
        "org_id": "org_clerk",
        "created_at": 1_700_000_000_000,
        "public_metadata": metadata,
    }


# ============================================================================
# TEST SUITE: ROLE PARSING
# ============================================================================

class TestParseRole:

    def test_case_insensitive(self):
        assert parse_role(" Super_Admin ") == Role.SUPER_ADMIN

    def test_legacy_user_alias(self):
        assert parse_role("user") == Role.INDIVIDUAL

    @pytest.mark.parametrize("value", [None, "", "wizard"])
    def test_rejects_missing_and_unknown(self, value):
        with pytest.raises(ValueError):
            parse_role(value)


# ============================================================================
# TEST SUITE: CLAIMS -> SNAPSHOT
# ============================================================================

class TestSnapshotFromClaims:

    def test_ready_snapshot(self):
        snapshot = snapshot_from_claims(
            _claims(role="student", university_id="uni_1", onboarding_completed=True)
        )

        assert snapshot.status == IdentityStatus.READY
        assert snapshot.subject_id == "user_abc"
        assert snapshot.role == Role.STUDENT
        assert snapshot.organization_id == "uni_1"
        assert snapshot.onboarding_completed is True
        assert snapshot.session_id == "sess_xyz"
        assert snapshot.session_key == "user_abc:sess_xyz"

    def test_org_id_is_fallback_for_university(self):
        snapshot = snapshot_from_claims(_claims(role="advisor"))

        assert snapshot.organization_id == "org_clerk"

    def test_created_at_milliseconds(self):
        snapshot = snapshot_from_claims(_claims(role="individual"))

        assert snapshot.created_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_created_at_seconds(self):
        claims = SessionClaims.model_validate({"sub": "u", "created_at": 1_700_000_000})

        assert claims.created_at_datetime.year == 2023

    @pytest.mark.parametrize("claims", [None, {}, {"sid": "no-sub"}])
    def test_missing_claims_are_absent(self, claims):
        assert snapshot_from_claims(claims).status == IdentityStatus.ABSENT

    def test_unknown_role_is_absent(self):
        assert snapshot_from_claims(_claims(role="root")).status == IdentityStatus.ABSENT

    def test_missing_role_is_absent(self):
        assert snapshot_from_claims(_claims()).status == IdentityStatus.ABSENT


# ============================================================================
# TEST SUITE: PROVIDERS
# ============================================================================

class TestIdentityProviders:

    def test_static_provider_starts_loading(self):
        assert StaticIdentityProvider().current_identity().status == IdentityStatus.LOADING

    def test_sign_in_assigns_new_session(self, make_snapshot):
        provider = StaticIdentityProvider()
        base = IdentitySnapshot.ready(subject_id="user_1", role=Role.INDIVIDUAL)

        first = provider.sign_in(base)
        second = provider.sign_in(base)

        assert first.session_id and second.session_id
        assert first.session_id != second.session_id
        assert provider.current_identity() == second

    def test_sign_in_requires_ready(self):
        with pytest.raises(ValueError):
            StaticIdentityProvider().sign_in(IdentitySnapshot.absent())

    def test_sign_out(self, make_snapshot):
        provider = StaticIdentityProvider(make_snapshot())

        provider.sign_out()

        assert provider.current_identity().status == IdentityStatus.ABSENT

    def test_set_loading(self, make_snapshot):
        provider = StaticIdentityProvider(make_snapshot())

        provider.set_loading()

        assert provider.current_identity().status == IdentityStatus.LOADING

    def test_claims_provider_loading(self):
        provider = ClaimsIdentityProvider(claims=_claims(role="staff"), loading=True)

        assert provider.current_identity().status == IdentityStatus.LOADING

    def test_claims_provider_ready(self):
        provider = ClaimsIdentityProvider(claims=_claims(role="staff"))

        assert provider.current_identity().role == Role.STAFF

    def test_ready_requires_subject(self):
        with pytest.raises(ValueError):
            IdentitySnapshot.ready(subject_id="", role=Role.STAFF)

    def test_ready_keeps_unknown_created_at(self):
        snapshot = IdentitySnapshot.ready(subject_id="user_1", role=Role.INDIVIDUAL)

        assert snapshot.created_at is None

    def test_session_key_requires_session_id(self):
        snapshot = IdentitySnapshot.ready(subject_id="user_1", role=Role.ADMIN)

        assert snapshot.session_key is None
        assert IdentitySnapshot.absent().session_key is None


# ============================================================================
# TEST SUITE: SESSION END NOTIFICATIONS
# ============================================================================

class TestSessionEndListeners:

    def test_sign_out_notifies_with_previous_snapshot(self, make_snapshot):
        provider = StaticIdentityProvider()
        ended = []
        provider.on_session_end(ended.append)
        signed_in = provider.sign_in(make_snapshot())

        provider.sign_out()

        assert ended == [signed_in]

    def test_sign_out_while_signed_out_does_not_notify(self):
        provider = StaticIdentityProvider(IdentitySnapshot.absent())
        ended = []
        provider.on_session_end(ended.append)

        provider.sign_out()

        assert ended == []

    def test_sign_in_over_other_session_ends_it(self, make_snapshot):
        provider = StaticIdentityProvider()
        ended = []
        provider.on_session_end(ended.append)
        first = provider.sign_in(make_snapshot(session_id="sess_a"))

        provider.sign_in(make_snapshot(session_id="sess_b"))
        provider.sign_in(make_snapshot(session_id="sess_b"))

        assert ended == [first]

    def test_listener_registered_once(self, make_snapshot):
        provider = StaticIdentityProvider(make_snapshot())
        ended = []
        provider.on_session_end(ended.append)
        provider.on_session_end(ended.append)

        provider.sign_out()

        assert len(ended) == 1

    def test_claims_provider_ignores_listeners(self):
        provider = ClaimsIdentityProvider(claims=_claims(role="staff"))

        provider.on_session_end(lambda snapshot: None)

        assert provider.current_identity().role == Role.STAFF


# ============================================================================
# TEST SUITE: EFFECTIVE IDENTITY
# ============================================================================

class TestResolveEffectiveIdentity:

    def test_without_overlay_uses_snapshot(self, make_snapshot):
        snapshot = make_snapshot(role=Role.STUDENT, organization_id="uni_1")

        identity = resolve(snapshot, None, real_plan=Plan.UNIVERSITY)

        assert identity.role == Role.STUDENT
        assert identity.organization_id == "uni_1"
        assert identity.plan == Plan.UNIVERSITY
        assert identity.is_impersonating is False

    def test_overlay_replaces_fields(self, admin_snapshot):
        overlay = ImpersonationOverlay(
            acting_admin_id=admin_snapshot.subject_id,
            impersonated_role=Role.ADVISOR,
            session_key=admin_snapshot.session_key,
            impersonated_organization_id="uni_7",
            impersonated_plan=Plan.PREMIUM,
        )

        identity = resolve(admin_snapshot, overlay, real_plan=Plan.FREE)

        assert identity.role == Role.ADVISOR
        assert identity.organization_id == "uni_7"
        assert identity.plan == Plan.PREMIUM
        assert identity.subject_id == admin_snapshot.subject_id

    def test_overlay_gaps_fall_back_to_snapshot(self, make_snapshot):
        snapshot = make_snapshot(role=Role.ADMIN, organization_id="org_home")
        overlay = ImpersonationOverlay(
            acting_admin_id=snapshot.subject_id,
            impersonated_role=Role.INDIVIDUAL,
            session_key=snapshot.session_key,
        )

        identity = resolve(snapshot, overlay, real_plan=Plan.FREE)

        assert identity.organization_id == "org_home"
        assert identity.plan == Plan.FREE

    def test_identical_overlay_still_impersonating(self, make_snapshot):
        snapshot = make_snapshot(role=Role.ADMIN)
        overlay = ImpersonationOverlay(
            acting_admin_id=snapshot.subject_id,
            impersonated_role=Role.ADMIN,
            session_key=snapshot.session_key,
        )

        assert resolve(snapshot, overlay).is_impersonating is True

    def test_inactive_overlay_is_ignored(self, admin_snapshot):
        overlay = ImpersonationOverlay(
            acting_admin_id=admin_snapshot.subject_id,
            impersonated_role=Role.STUDENT,
            session_key=admin_snapshot.session_key,
            active=False,
        )

        identity = resolve(admin_snapshot, overlay)

        assert identity.role == Role.ADMIN
        assert identity.is_impersonating is False

    @pytest.mark.parametrize("snapshot", [IdentitySnapshot.loading(), IdentitySnapshot.absent()])
    def test_unresolved_snapshot_raises(self, snapshot):
        with pytest.raises(ValueError):
            resolve(snapshot)

    def test_to_dict(self, make_snapshot):
        identity = resolve(make_snapshot(role=Role.STAFF), real_plan=Plan.FREE)

        assert identity.to_dict() == {
            "subject_id": "user_123",
            "role": "staff",
            "organization_id": None,
            "plan": "free",
            "is_impersonating": False,
        }
