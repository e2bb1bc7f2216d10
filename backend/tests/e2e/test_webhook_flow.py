"""End-to-end tests for the billing flow.

Tests complete billing flows over HTTP:
- Checkout links a Stripe customer
- Signed webhooks grant, extend and revoke entitlements
- Premium routes follow the entitlement
- Redelivery, bad signatures and store outages
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from entitlement_sync.core.database import Database
from entitlement_sync.core.errors import ProviderUnavailableError, StoreUnavailableError
from entitlement_sync.main import create_app
from entitlement_sync.modules.billing.stripe_client import CheckoutSessionData, StripeCustomerData

from factories import (
    checkout_object,
    delivery,
    invoice_object,
    make_settings,
    sign,
    stripe_event,
    subscription_object,
)

PREFIX = "/api/v1"
WEBHOOK = f"{PREFIX}/billing/webhook"


class FakeGateway:
    """Stands in for Stripe's customer and checkout APIs."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.customers: list[str] = []
        self.sessions: list[tuple] = []

    async def create_customer(self, email: str, user_id: str) -> StripeCustomerData:
        if self.fail:
            raise ProviderUnavailableError("Stripe request failed")
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append(user_id)
        return StripeCustomerData(id=customer_id, email=email)

    async def create_checkout_session(self, customer_id, user_id, tier, success_url=None, cancel_url=None):
        self.sessions.append((customer_id, user_id, tier))
        return CheckoutSessionData(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    settings = make_settings()
    app = create_app(settings, Database(settings.DATABASE_URL))
    app.state.stripe_gateway = gateway
    with TestClient(app) as test_client:
        yield test_client


def now() -> datetime:
    return datetime.now(timezone.utc)


def signup(client: TestClient, username: str = "alice") -> tuple[str, dict]:
    response = client.post(
        f"{PREFIX}/auth/register",
        json={"username": username, "email": f"{username}@example.com", "password": "SecurePass123"},
    )
    assert response.status_code == 201, response.text
    body = response.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['accessToken']}"}


def post_event(client: TestClient, event: dict):
    body, header = delivery(event)
    return client.post(WEBHOOK, content=body, headers={"stripe-signature": header})


def entitlement(client: TestClient, headers: dict) -> dict:
    response = client.get(f"{PREFIX}/billing/entitlement", headers=headers)
    assert response.status_code == 200
    return response.json()


class TestSubscriptionLifecycle:
    """Checkout, activation, renewal and cancellation."""

    def test_full_lifecycle(self, client, gateway) -> None:
        user_id, headers = signup(client)
        assert client.get(f"{PREFIX}/premium/saved-channels", headers=headers).status_code == 403

        checkout = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "monthly"}, headers=headers)
        assert checkout.status_code == 200
        assert checkout.json()["sessionId"] == "cs_test_1"
        assert gateway.sessions == [("cus_1", user_id, "monthly")]

        created = stripe_event(
            "customer.subscription.created",
            subscription_object("cus_1", "sub_1", "price_monthly", period_end=now() + timedelta(days=30)),
            created=now() - timedelta(seconds=30),
        )
        response = post_event(client, created)
        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "applied", "eventId": created["id"]}

        view = entitlement(client, headers)
        assert view["planTier"] == "monthly"
        assert view["status"] == "active"
        assert view["hasAccess"] is True
        assert view["paymentFailed"] is False

        saved = client.put(
            f"{PREFIX}/premium/saved-channels",
            json={"channels": ["UC1", " UC1 ", "UC2", ""]},
            headers=headers,
        )
        assert saved.status_code == 200
        assert saved.json() == {"channels": ["UC1", "UC2"]}
        assert client.get(f"{PREFIX}/premium/saved-channels", headers=headers).json() == {
            "channels": ["UC1", "UC2"]
        }

        redelivered = post_event(client, created)
        assert redelivered.status_code == 200
        assert redelivered.json()["outcome"] == "ignored-duplicate"

        failed = stripe_event(
            "invoice.payment_failed",
            invoice_object("cus_1", "sub_1"),
            created=now() - timedelta(seconds=20),
        )
        assert post_event(client, failed).json()["outcome"] == "applied"
        assert entitlement(client, headers)["paymentFailed"] is True

        deleted = stripe_event(
            "customer.subscription.deleted",
            subscription_object("cus_1", "sub_1", "price_monthly", status="canceled"),
            created=now() - timedelta(seconds=10),
        )
        assert post_event(client, deleted).json()["outcome"] == "applied"

        view = entitlement(client, headers)
        assert view["status"] == "canceled"
        assert view["planTier"] == "monthly"
        assert view["hasAccess"] is False
        assert client.get(f"{PREFIX}/premium/saved-channels", headers=headers).status_code == 403

        profile = client.get(f"{PREFIX}/auth/me", headers=headers).json()
        assert profile["subscriptionStatus"] == "canceled"

    def test_late_cancel_does_not_revoke(self, client) -> None:
        _, headers = signup(client)
        client.post(f"{PREFIX}/billing/checkout", json={"planTier": "yearly"}, headers=headers)

        activated = stripe_event(
            "customer.subscription.created",
            subscription_object("cus_1", "sub_1", "price_yearly", period_end=now() + timedelta(days=365)),
            created=now() - timedelta(seconds=5),
        )
        canceled = stripe_event(
            "customer.subscription.deleted",
            subscription_object("cus_1", "sub_1", "price_yearly", status="canceled"),
            created=now() - timedelta(seconds=50),
        )
        assert post_event(client, activated).json()["outcome"] == "applied"
        assert post_event(client, canceled).json()["outcome"] == "ignored-stale"
        assert entitlement(client, headers)["hasAccess"] is True

    def test_lapsed_period_reads_as_expired(self, client) -> None:
        _, headers = signup(client)
        client.post(f"{PREFIX}/billing/checkout", json={"planTier": "monthly"}, headers=headers)
        event = stripe_event(
            "customer.subscription.created",
            subscription_object("cus_1", "sub_1", "price_monthly", period_end=now() - timedelta(days=1)),
            created=now() - timedelta(days=31),
        )
        assert post_event(client, event).json()["outcome"] == "applied"

        view = entitlement(client, headers)
        assert view["status"] == "active"
        assert view["effectiveStatus"] == "expired"
        assert view["hasAccess"] is False

    def test_lifetime_checkout_without_linked_customer(self, client) -> None:
        user_id, headers = signup(client)
        event = stripe_event(
            "checkout.session.completed",
            checkout_object("cus_lifetime", None, "price_lifetime", user_id=uuid.UUID(user_id)),
        )
        assert post_event(client, event).json()["outcome"] == "applied"

        view = entitlement(client, headers)
        assert view["planTier"] == "lifetime"
        assert view["periodEnd"] is None
        assert view["hasAccess"] is True


class TestWebhookRejections:
    """What the provider is told when a delivery cannot be applied."""

    def test_invalid_signature_is_400(self, client) -> None:
        body = json.dumps(stripe_event("invoice.paid", invoice_object("cus_1")))
        response = client.post(
            WEBHOOK, content=body, headers={"stripe-signature": sign(body, secret="whsec_wrong")}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_missing_signature_is_400(self, client) -> None:
        response = client.post(WEBHOOK, content=b"{}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_signed_garbage_is_malformed(self, client) -> None:
        body = "definitely not json"
        response = client.post(WEBHOOK, content=body, headers={"stripe-signature": sign(body)})
        assert response.status_code == 400
        assert response.json()["detail"] == "Malformed event"

    def test_unhandled_type_is_acknowledged(self, client) -> None:
        response = post_event(client, stripe_event("customer.created", {"id": "cus_x"}))
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_unknown_customer_is_acknowledged(self, client) -> None:
        response = post_event(
            client, stripe_event("customer.subscription.created", subscription_object("cus_nobody"))
        )
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored-unknown-account"

    def test_store_outage_asks_for_redelivery(self, client) -> None:
        async def down(customer_ref):
            raise StoreUnavailableError("database is down")

        client.app.state.webhook_service.engine.store.get_by_customer_ref = down
        response = post_event(
            client, stripe_event("customer.subscription.created", subscription_object("cus_1"))
        )
        assert response.status_code == 503
        assert response.json()["outcome"] == "unavailable"

    def test_webhook_outcomes_are_counted(self, client) -> None:
        post_event(client, stripe_event("customer.created", {"id": "cus_x"}))
        metrics = client.get("/metrics").text
        assert 'webhook_events_total{outcome="ignored"}' in metrics


class TestCheckout:
    """Checkout session creation."""

    def test_customer_is_created_once(self, client, gateway) -> None:
        _, headers = signup(client)
        for _ in range(2):
            response = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "monthly"}, headers=headers)
            assert response.status_code == 200
        assert len(gateway.customers) == 1
        assert [customer for customer, _, _ in gateway.sessions] == ["cus_1", "cus_1"]

    def test_none_tier_is_rejected(self, client) -> None:
        _, headers = signup(client)
        response = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "none"}, headers=headers)
        assert response.status_code == 400

    def test_unknown_tier_is_unprocessable(self, client) -> None:
        _, headers = signup(client)
        response = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "platinum"}, headers=headers)
        assert response.status_code == 422

    def test_provider_outage_is_503(self, client) -> None:
        _, headers = signup(client)
        client.app.state.stripe_gateway = FakeGateway(fail=True)
        response = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "monthly"}, headers=headers)
        assert response.status_code == 503

    def test_checkout_requires_authentication(self, client) -> None:
        response = client.post(f"{PREFIX}/billing/checkout", json={"planTier": "monthly"})
        assert response.status_code == 401
