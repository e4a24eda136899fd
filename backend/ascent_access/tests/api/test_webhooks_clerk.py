"""
Clerk session webhook tests.

SECURITY: unsigned or badly signed deliveries never touch impersonation
state; a verified session end drops that session's overlay.
"""

import base64
import json
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from svix.webhooks import Webhook

from ascent_access.api.routes import webhooks_clerk
from ascent_access.auth.identity import IdentitySnapshot
from ascent_access.constants.roles import Role
from ascent_access.platform.feature_flags import FeatureFlagEvaluator, TenantFlagSource
from ascent_access.platform.guard import AccessEngine
from ascent_access.platform.impersonation import ImpersonationStore, ImpersonationTarget
from ascent_access.services.plan_source import StaticPlanSource

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"clerk-test-signing-secret").decode()


def _signed(payload: dict, secret: str = WEBHOOK_SECRET, msg_id: str = "msg_1"):
    """Body and Svix headers for a delivery signed with secret."""
    body = json.dumps(payload)
    now = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, now, body)
    headers = {
        "svix-id": msg_id,
        "svix-timestamp": str(int(now.timestamp())),
        "svix-signature": signature,
        "content-type": "application/json",
    }
    return body, headers


def _session_event(event_type="session.ended", user_id="admin_1", session_id="sess_admin_1"):
    return {
        "type": event_type,
        "object": "event",
        "data": {"id": session_id, "user_id": user_id, "status": "ended"},
    }


@pytest.fixture
def engine():
    return AccessEngine(
        flag_evaluator=FeatureFlagEvaluator(TenantFlagSource()),
        impersonation_store=ImpersonationStore(),
        plan_source=StaticPlanSource(),
    )


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setenv("CLERK_WEBHOOK_SECRET", WEBHOOK_SECRET)
    app = FastAPI()
    app.include_router(webhooks_clerk.router)
    app.state.access_engine = engine
    return TestClient(app)


@pytest.fixture
def impersonating_admin(engine):
    admin = IdentitySnapshot.ready(subject_id="admin_1", role=Role.ADMIN, session_id="sess_admin_1")
    engine.impersonation.start_impersonation(admin, ImpersonationTarget(role=Role.STAFF))
    return admin


# ============================================================================
# TEST SUITE: SESSION END EVENTS
# ============================================================================

class TestSessionEndEvents:

    @pytest.mark.parametrize("event_type", ["session.ended", "session.removed", "session.revoked"])
    def test_session_end_drops_overlay(self, client, engine, impersonating_admin, event_type):
        body, headers = _signed(_session_event(event_type))

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert engine.impersonation.current_overlay(impersonating_admin) is None
        assert engine.impersonation.active_count() == 0

    def test_other_session_is_untouched(self, client, engine, impersonating_admin):
        body, headers = _signed(_session_event(session_id="sess_other_device"))

        client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert engine.impersonation.current_overlay(impersonating_admin) is not None

    def test_unrelated_event_is_ignored(self, client, engine, impersonating_admin):
        body, headers = _signed({"type": "user.updated", "data": {"id": "admin_1"}})

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert engine.impersonation.active_count() == 1

    def test_session_event_without_ids_is_400(self, client):
        body, headers = _signed({"type": "session.ended", "data": {}})

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 400


# ============================================================================
# TEST SUITE: SIGNATURE VERIFICATION
# ============================================================================

class TestSignatureVerification:

    def test_wrong_secret_is_401(self, client, engine, impersonating_admin):
        other_secret = "whsec_" + base64.b64encode(b"someone-else").decode()
        body, headers = _signed(_session_event(), secret=other_secret)

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 401
        assert engine.impersonation.active_count() == 1

    def test_tampered_body_is_401(self, client, engine, impersonating_admin):
        _, headers = _signed(_session_event(session_id="sess_other"))
        body = json.dumps(_session_event())

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 401
        assert engine.impersonation.active_count() == 1

    def test_missing_headers_is_401(self, client):
        response = client.post("/api/webhooks/clerk", content=json.dumps(_session_event()))

        assert response.status_code == 401

    def test_missing_secret_is_503(self, client, monkeypatch):
        monkeypatch.delenv("CLERK_WEBHOOK_SECRET")
        body, headers = _signed(_session_event())

        response = client.post("/api/webhooks/clerk", content=body, headers=headers)

        assert response.status_code == 503
