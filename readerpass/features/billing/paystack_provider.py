"""
Paystack gateway implementation (domestic rail, NGN).

Implements GatewayProvider over the Paystack REST API.
Paystack captures on its own; "capture" here is a transaction verify.
The local intent reference is sent as the Paystack transaction reference,
so callbacks and webhooks both carry it back unchanged.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from readerpass.core.config import settings
from readerpass.core.errors import ConfigurationError, ProviderRejected, WebhookSignatureError
from readerpass.features.billing.provider import (
    CaptureResult,
    IntentResult,
    SubscriptionState,
    WebhookAction,
    WebhookEvent,
    gateway_json,
    raise_for_gateway_status,
    response_message,
    send_gateway_request,
)
from readerpass.models.payment import IntentKind

logger = logging.getLogger("readerpass")

SIGNATURE_HEADER = "x-paystack-signature"

# Paystack plan intervals keyed by catalog cadence
PLAN_INTERVALS = {
    "weekly": "weekly",
}

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "non-renewing", "attention"}
# Transaction statuses Paystack reports before a charge settles
IN_FLIGHT_STATUSES = {"ongoing", "pending", "processing", "queued"}


class PaystackProvider:
    """Paystack implementation of GatewayProvider protocol."""

    name = "domestic"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Paystack provider.

        Args:
            secret_key: Paystack secret key (defaults to PAYSTACK_SECRET_KEY)
            base_url: API root (defaults to PAYSTACK_BASE_URL)
            client: Preconfigured httpx client (tests inject a MockTransport here)
            timeout: Request timeout in seconds (defaults to GATEWAY_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not self.secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")
        self.base_url = (base_url or settings.PAYSTACK_BASE_URL).rstrip("/")
        self.client = client or httpx.Client(timeout=timeout or settings.GATEWAY_TIMEOUT_SECONDS)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        return send_gateway_request(
            self.client,
            method,
            f"{self.base_url}{path}",
            "paystack",
            operation,
            headers=self._headers(),
            **kwargs,
        )

    def _data(self, response: httpx.Response, operation: str) -> Any:
        raise_for_gateway_status(response, "paystack", operation)
        payload = gateway_json(response, "paystack", operation)
        if not payload.get("status"):
            raise ProviderRejected(f"paystack {operation} failed: {payload.get('message')}")
        return payload.get("data")

    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        """Create a Paystack customer, or return the existing one for this email."""
        first_name, _, last_name = (name or "").partition(" ")
        body = {"email": email}
        if first_name:
            body["first_name"] = first_name
        if last_name:
            body["last_name"] = last_name

        response = self._call("POST", "/customer", "create_customer", json=body)
        if response.status_code == 400 and "already exists" in response_message(response).lower():
            existing = self._call("GET", f"/customer/{email}", "fetch_customer")
            return self._data(existing, "fetch_customer")["customer_code"]
        return self._data(response, "create_customer")["customer_code"]

    def create_one_time_intent(
        self,
        customer: str,
        amount: int,
        currency: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        body = {
            "email": customer,
            "amount": amount,
            "currency": currency,
            "reference": metadata.get("reference"),
            "callback_url": return_url,
            "metadata": {**metadata, "cancel_action": cancel_url},
        }
        data = self._data(self._call("POST", "/transaction/initialize", "initialize_transaction", json=body), "initialize_transaction")
        return IntentResult(reference=data["reference"], redirect_url=data["authorization_url"])

    def _list_plans(self) -> List[Dict[str, Any]]:
        data = self._data(self._call("GET", "/plan", "list_plans"), "list_plans")
        # Paystack has returned both a bare list and a nested {"data": [...]}
        if isinstance(data, dict):
            data = data.get("data") or []
        return data or []

    def _find_plan(self, name: str, amount: int, currency: str, interval: str) -> Optional[str]:
        for plan in self._list_plans():
            if (
                plan.get("name") == name
                and plan.get("amount") == amount
                and plan.get("interval") == interval
                and plan.get("currency") == currency
            ):
                return plan.get("plan_code")
        return None

    def create_recurring_plan(self, name: str, amount: int, currency: str, cadence: str) -> str:
        interval = PLAN_INTERVALS.get(cadence)
        if interval is None:
            raise ValueError(f"Unsupported cadence for Paystack plan: {cadence}")

        existing = self._find_plan(name, amount, currency, interval)
        if existing:
            return existing

        response = self._call(
            "POST",
            "/plan",
            "create_plan",
            json={"name": name, "amount": amount, "interval": interval, "currency": currency},
        )
        message = response_message(response).lower()
        if response.status_code == 409 or "already exists" in message or "duplicate" in message:
            found = self._find_plan(name, amount, currency, interval)
            if found:
                logger.info(f"Recovered existing Paystack plan after duplicate error: {found}")
                return found
        return self._data(response, "create_plan")["plan_code"]

    def create_subscription_intent(
        self,
        plan_ref: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        # Paystack starts a subscription from a first transaction carrying the plan
        body = {
            "email": metadata.get("email"),
            "amount": metadata.get("amount"),
            "plan": plan_ref,
            "reference": metadata.get("reference"),
            "callback_url": return_url,
            "metadata": {**metadata, "cancel_action": cancel_url},
        }
        data = self._data(self._call("POST", "/transaction/initialize", "initialize_subscription", json=body), "initialize_subscription")
        return IntentResult(reference=data["reference"], redirect_url=data["authorization_url"])

    def capture_or_verify(self, reference: str, kind: IntentKind) -> CaptureResult:
        data = self._data(self._call("GET", f"/transaction/verify/{reference}", "verify_transaction"), "verify_transaction")
        raw_status = str(data.get("status") or "unknown")
        if raw_status in IN_FLIGHT_STATUSES:
            return CaptureResult(succeeded=False, raw_status=raw_status, in_flight=True)
        succeeded = raw_status == "success"
        state = None
        if kind == IntentKind.RECURRING:
            state = SubscriptionState.ACTIVE if succeeded else SubscriptionState.INACTIVE
        return CaptureResult(succeeded=succeeded, raw_status=raw_status, state=state)

    def get_subscription_status(self, reference: str) -> SubscriptionState:
        data = self._data(self._call("GET", f"/subscription/{reference}", "get_subscription"), "get_subscription")
        if (data.get("status") or "").lower() in ACTIVE_SUBSCRIPTION_STATUSES:
            return SubscriptionState.ACTIVE
        return SubscriptionState.INACTIVE

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """Verify x-paystack-signature (HMAC-SHA512 of the raw body) and normalize."""
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            raise WebhookSignatureError("Missing x-paystack-signature header")
        if not self.verify_signature(body, signature):
            raise WebhookSignatureError("Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")

        return self._parse_event(payload)

    def _parse_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_type = payload.get("event") or "unknown"
        data = payload.get("data") or {}
        customer = data.get("customer") or {}
        customer_ref = customer.get("customer_code") if isinstance(customer, dict) else None
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

        identity = data.get("id") or data.get("reference") or data.get("subscription_code") or ""
        event = WebhookEvent(
            event_id=f"{event_type}:{identity}",
            event_type=event_type,
            action=WebhookAction.IGNORED,
            customer_ref=customer_ref,
            metadata=metadata,
        )

        if event_type == "charge.success":
            event.action = WebhookAction.PAYMENT_SUCCEEDED
            event.reference = data.get("reference")
            event.provider_reference = data.get("reference")
            plan = data.get("plan")
            # Renewal charges carry the plan; plain one-time charges carry {} or nothing
            event.metadata = {**metadata, "recurring": bool(plan)}
        elif event_type in ("subscription.create", "subscription.enable"):
            event.action = WebhookAction.SUBSCRIPTION_ACTIVATED
            event.subscription_ref = data.get("subscription_code")
        elif event_type == "subscription.disable":
            event.action = WebhookAction.SUBSCRIPTION_CANCELLED
            event.subscription_ref = data.get("subscription_code")
        elif event_type == "invoice.payment_failed":
            event.action = WebhookAction.PAYMENT_FAILED
            subscription = data.get("subscription") or {}
            event.subscription_ref = subscription.get("subscription_code") if isinstance(subscription, dict) else None

        return event
