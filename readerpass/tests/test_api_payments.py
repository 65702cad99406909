"""HTTP tests for plans, payments, subscription and content routes."""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from readerpass.core.config import settings
from readerpass.features.access.evaluator import InMemoryContentSource
from readerpass.features.billing.paystack_provider import PaystackProvider
from readerpass.features.billing.provider import WebhookAction, WebhookEvent
from readerpass.features.billing.registry import set_gateway
from readerpass.main import app
from readerpass.models.plan import Region
from readerpass.tests.fakes import FAKE_SIGNATURE_HEADER, FakeGateway


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "REGION_DEFAULT", "international")
    return TestClient(app)


@pytest.fixture
def paypal():
    gateway = FakeGateway("international")
    set_gateway(Region.INTERNATIONAL, gateway)
    return gateway


def test_plans_priced_for_region(client, monkeypatch):
    body = client.get("/api/plans").json()
    assert body["region_code"] == "international"
    prices = {p["name"]: p["display_price"] for p in body["plans"]}
    assert prices == {"Member": "$1.99", "Day Pass": "$4.99"}

    monkeypatch.setattr(settings, "REGION_DEFAULT", "domestic")
    body = client.get("/api/plans").json()
    assert {p["name"]: p["display_price"] for p in body["plans"]} == {"Member": "₦1,000", "Day Pass": "₦5,000"}


def test_geo_detect_with_dev_override(client, monkeypatch):
    monkeypatch.setattr(settings, "DEV_COUNTRY_CODE", "NG")
    body = client.get("/api/geo/detect", headers={"x-forwarded-for": "10.0.0.7"}).json()
    assert body == {"region_code": "domestic", "country_code": "NG", "is_domestic": True, "source": "dev_override"}


def test_anonymous_purchase_flow(client, paypal):
    started = client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"})
    assert started.status_code == 200
    body = started.json()
    assert body["provider"] == "international"
    assert body["display_price"] == "$4.99"
    assert body["authorization_url"].startswith("https://gateway.test/")
    assert settings.SESSION_COOKIE_NAME in started.headers["set-cookie"]

    assert client.get("/api/subscription/check-anonymous").json()["has_access"] is False

    redirect = client.get(
        f"/api/payments/callback/international?intent={body['reference']}&token=ORDER-1",
        follow_redirects=False,
    )
    assert redirect.status_code == 303
    location = urlparse(redirect.headers["location"])
    assert location.path == "/comics"
    assert parse_qs(location.query)["anonymous"] == ["true"]
    assert settings.SESSION_COOKIE_NAME in redirect.headers["set-cookie"]

    status = client.get("/api/subscription/check-anonymous").json()
    assert status["has_access"] is True
    assert status["tier"] == "daypass"


def test_session_cookie_reused_across_purchases(client, paypal):
    client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"})
    first = client.cookies.get(settings.SESSION_COOKIE_NAME)
    client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"})
    assert client.cookies.get(settings.SESSION_COOKIE_NAME) == first


def test_merge_after_login(client, paypal):
    ref = client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"}).json()["reference"]
    client.get(f"/api/payments/callback/international?intent={ref}", follow_redirects=False)

    merged = client.post("/api/subscription/merge", headers={"X-User-Id": "user_alice"})
    assert merged.status_code == 200
    assert merged.json()["result"] == "merged"
    assert merged.json()["entitlement"]["has_access"] is True

    again = client.post("/api/subscription/merge", headers={"X-User-Id": "user_alice"})
    assert again.json()["result"] == "already_merged"

    me = client.get("/api/subscription/me", headers={"X-User-Id": "user_alice"}).json()
    assert me["has_access"] is True
    assert me["tier"] == "daypass"


def test_anonymous_member_purchase_rejected(client, paypal):
    resp = client.post("/api/payments/initialize-anonymous", json={"plan_name": "Member"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_authenticated_purchase(client, paypal):
    assert client.post("/api/payments/initialize", json={"plan_name": "Member"}).status_code == 401

    resp = client.post(
        "/api/payments/initialize",
        json={"plan_name": "Member"},
        headers={"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"},
    )
    assert resp.status_code == 200
    assert resp.json()["authorization_url"] == "https://gateway.test/subscribe/I-SUB-1"


def test_callback_failure_redirects_with_reason(client, paypal):
    resp = client.get("/api/payments/callback/international", follow_redirects=False)
    assert resp.status_code == 303
    location = urlparse(resp.headers["location"])
    assert location.path == "/subscription"
    assert parse_qs(location.query) == {"error": ["no_reference"]}


def test_unreadable_gateway_reply_redirects_pending(client, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/transaction/initialize":
            reference = json.loads(request.content)["reference"]
            return httpx.Response(200, json={
                "status": True,
                "data": {"reference": reference, "authorization_url": f"https://checkout.paystack.test/{reference}"},
            })
        return httpx.Response(200, text="<html>gateway maintenance</html>")

    monkeypatch.setattr(settings, "REGION_DEFAULT", "domestic")
    transport = httpx.Client(transport=httpx.MockTransport(handler))
    set_gateway(Region.DOMESTIC, PaystackProvider(secret_key="sk_test", base_url="https://api.paystack.test", client=transport))

    ref = client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"}).json()["reference"]
    resp = client.get(f"/api/payments/callback/domestic?reference={ref}", follow_redirects=False)

    assert resp.status_code == 303
    assert parse_qs(urlparse(resp.headers["location"]).query) == {"error": ["verification_pending"]}
    assert client.get("/api/subscription/check-anonymous").json()["has_access"] is False


def test_unconfigured_gateway_is_503(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", None)
    resp = client.post("/api/payments/initialize-anonymous", json={"plan_name": "Day Pass"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "payment_unavailable"


def test_webhook_route(client, paypal):
    paypal.webhook_event = WebhookEvent(event_id="WH-1", event_type="CHECKOUT.ORDER.APPROVED", action=WebhookAction.IGNORED)

    rejected = client.post("/api/payments/webhook/international", content=b"{}")
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "invalid_signature"

    accepted = client.post("/api/payments/webhook/international", content=b"{}", headers={FAKE_SIGNATURE_HEADER: "valid"})
    assert accepted.status_code == 200
    assert accepted.json() == {"received": True, "event_id": "WH-1"}


def test_unknown_provider_rejected(client):
    assert client.post("/api/payments/webhook/mars", content=b"{}").status_code == 400


def test_content_units_gated(client, monkeypatch):
    source = InMemoryContentSource({"issue-1": [{"id": f"p{i}"} for i in range(6)]})
    monkeypatch.setattr(app.state, "content_source", source)

    body = client.get("/api/content/issue-1/units").json()
    assert body["has_access"] is False
    assert body["preview_limit"] == settings.FREE_PREVIEW_LIMIT
    assert [u["unlocked"] for u in body["units"]] == [True, True, True, True, False, False]
    assert body["units"][4]["data"] is None

    missing = client.get("/api/content/issue-404/units")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


def test_health(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYSTACK_SECRET_KEY", "sk_test")
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", None)
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {
        "status": "ok",
        "gateways": {"domestic": True, "international": False},
    }
