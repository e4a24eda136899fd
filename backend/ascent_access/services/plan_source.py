"""
Billing plan sources.

Supplies the caller's REAL subscription tier, used as the plan of the
effective identity when no impersonation overlay is active.

Sources:
- StaticPlanSource: in-process mapping (tests, local development)
- HttpBillingPlanSource: billing service over HTTP

A source that cannot answer raises SourceUnavailableError; the guard
pipeline turns that into a Pending decision rather than a deny.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from ascent_access.auth.identity import IdentitySnapshot
from ascent_access.constants.roles import Plan, requires_organization
from ascent_access.platform.errors import SourceUnavailableError

logger = logging.getLogger(__name__)


def fallback_plan(snapshot: IdentitySnapshot) -> Plan:
    """Plan for callers without a subscription record."""
    if requires_organization(snapshot.role) and snapshot.organization_id:
        return Plan.UNIVERSITY
    return Plan.FREE


class BillingPlanSource(ABC):
    """Billing/plan collaborator contract."""

    @abstractmethod
    async def get_plan(self, snapshot: IdentitySnapshot) -> Plan:
        """Return the caller's real plan."""

    async def close(self) -> None:
        """Release source resources."""


class StaticPlanSource(BillingPlanSource):
    """Plan source backed by an in-memory subject -> plan mapping."""

    def __init__(self, plans: Optional[Dict[str, Plan]] = None):
        self._plans = dict(plans or {})

    def set_plan(self, subject_id: str, plan: Plan) -> None:
        self._plans[subject_id] = plan

    async def get_plan(self, snapshot: IdentitySnapshot) -> Plan:
        return self._plans.get(snapshot.subject_id) or fallback_plan(snapshot)


class HttpBillingPlanSource(BillingPlanSource):
    """
    Plan source backed by the billing service.

    GET {base_url}/subscriptions/{subject_id} -> {"plan": "premium", ...}
    A 404 means no subscription and resolves to the fallback plan.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = base_url or os.getenv("BILLING_API_URL")
        if not base_url:
            raise ValueError("base_url is required (or set BILLING_API_URL)")

        api_token = api_token or os.getenv("BILLING_API_TOKEN")
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"

        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=2.0),
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def get_plan(self, snapshot: IdentitySnapshot) -> Plan:
        """
        Fetch the caller's plan from the billing service.

        Raises:
            SourceUnavailableError: On transport errors, 5xx, or malformed bodies
        """
        try:
            response = await self._client.get(f"/subscriptions/{snapshot.subject_id}")
        except httpx.HTTPError as e:
            logger.warning(
                "Billing service request failed",
                extra={"subject_id": snapshot.subject_id, "error": str(e)},
            )
            raise SourceUnavailableError("billing", reason=str(e)) from e

        if response.status_code == 404:
            return fallback_plan(snapshot)

        if response.status_code >= 400:
            logger.warning(
                "Billing service returned error",
                extra={"subject_id": snapshot.subject_id, "status_code": response.status_code},
            )
            raise SourceUnavailableError("billing", reason=f"HTTP {response.status_code}")

        try:
            plan_value = response.json().get("plan")
            return Plan(plan_value) if plan_value else fallback_plan(snapshot)
        except (ValueError, AttributeError) as e:
            logger.error(
                "Billing service returned malformed plan",
                extra={"subject_id": snapshot.subject_id, "error": str(e)},
            )
            raise SourceUnavailableError("billing", reason="malformed response") from e
