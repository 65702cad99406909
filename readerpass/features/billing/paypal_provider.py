"""
PayPal gateway implementation (international rail, USD).

Implements GatewayProvider over the PayPal REST API (orders v2, billing v1).
Amounts cross this boundary in minor units and are sent to PayPal as
two-decimal major-unit strings.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from readerpass.core.config import settings, is_production
from readerpass.core.errors import ConfigurationError, ProviderRejected, ProviderUnreachable, WebhookSignatureError
from readerpass.features.billing.provider import (
    CaptureResult,
    IntentResult,
    SubscriptionState,
    WebhookAction,
    WebhookEvent,
    gateway_json,
    raise_for_gateway_status,
    send_gateway_request,
)
from readerpass.features.plans.catalog import to_major_units
from readerpass.models.payment import IntentKind

logger = logging.getLogger("readerpass")

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# Refresh tokens this many seconds before PayPal says they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 300

PLAN_INTERVAL_UNITS = {
    "weekly": "WEEK",
}

SIGNATURE_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

SUBSCRIPTION_EVENT_ACTIONS = {
    "BILLING.SUBSCRIPTION.CREATED": WebhookAction.SUBSCRIPTION_ACTIVATED,
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookAction.SUBSCRIPTION_ACTIVATED,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookAction.SUBSCRIPTION_CANCELLED,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookAction.SUBSCRIPTION_CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": WebhookAction.SUBSCRIPTION_EXPIRED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": WebhookAction.PAYMENT_FAILED,
}


class PayPalProvider:
    """PayPal implementation of GatewayProvider protocol."""

    name = "international"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        mode: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize PayPal provider.

        Args:
            client_id / client_secret: REST app credentials (default PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET)
            mode: "sandbox" or "live" (default PAYPAL_MODE)
            client: Preconfigured httpx client (tests inject a MockTransport here)
            time_fn: Clock for OAuth token expiry
        """
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET not configured")
        self.mode = mode or settings.PAYPAL_MODE
        if self.mode not in PAYPAL_BASE_URLS:
            raise ConfigurationError(f"Unknown PAYPAL_MODE: {self.mode}")
        self.base_url = PAYPAL_BASE_URLS[self.mode]
        self.client = client or httpx.Client(timeout=timeout or settings.GATEWAY_TIMEOUT_SECONDS)
        self.time_fn = time_fn
        self.product_id = settings.PAYPAL_PRODUCT_ID
        self.webhook_id = settings.PAYPAL_WEBHOOK_ID

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and self.time_fn() < self._token_expires_at:
                return self._token

        response = send_gateway_request(
            self.client,
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            "paypal",
            "oauth_token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        raise_for_gateway_status(response, "paypal", "oauth_token")
        payload = gateway_json(response, "paypal", "oauth_token")
        token = payload.get("access_token")
        if not token:
            raise ConfigurationError("PayPal did not return an access token")
        expires_in = int(payload.get("expires_in") or 0)

        with self._token_lock:
            self._token = token
            self._token_expires_at = self.time_fn() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        return token

    def _call(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        headers.update(kwargs.pop("headers", {}))
        return send_gateway_request(self.client, method, f"{self.base_url}{path}", "paypal", operation, headers=headers, **kwargs)

    def _json(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        raise_for_gateway_status(response, "paypal", operation)
        return gateway_json(response, "paypal", operation)

    @staticmethod
    def _approval_url(payload: Dict[str, Any]) -> str:
        for link in payload.get("links") or []:
            if link.get("rel") in ("approve", "approval_url"):
                return link["href"]
        raise ProviderUnreachable("PayPal response carried no approval link")

    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        # PayPal identifies payers at approval time; the email is the only handle we keep
        return email

    def create_one_time_intent(
        self,
        customer: str,
        amount: int,
        currency: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        order = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {"currency_code": currency, "value": to_major_units(amount)},
                    "custom_id": metadata.get("reference", ""),
                    "description": metadata.get("plan_name", "Payment"),
                }
            ],
            "application_context": {
                "brand_name": settings.BRAND_NAME,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        payload = self._json(self._call("POST", "/v2/checkout/orders", "create_order", json=order), "create_order")
        return IntentResult(reference=payload["id"], redirect_url=self._approval_url(payload))

    def _ensure_product(self) -> str:
        if self.product_id:
            return self.product_id
        product = {
            "name": f"{settings.BRAND_NAME} Subscription",
            "description": f"{settings.BRAND_NAME} comic subscription",
            "type": "SERVICE",
            "category": "SOFTWARE",
        }
        payload = self._json(self._call("POST", "/v1/catalogs/products", "create_product", json=product), "create_product")
        self.product_id = payload["id"]
        logger.info(f"Created PayPal product {self.product_id}; set PAYPAL_PRODUCT_ID to reuse it")
        return self.product_id

    def _plan_matches(self, plan_id: str, amount: int, currency: str, interval_unit: str) -> bool:
        detail = self._json(self._call("GET", f"/v1/billing/plans/{plan_id}", "get_plan"), "get_plan")
        for cycle in detail.get("billing_cycles") or []:
            if cycle.get("tenure_type") != "REGULAR":
                continue
            price = ((cycle.get("pricing_scheme") or {}).get("fixed_price") or {})
            frequency = cycle.get("frequency") or {}
            if (
                price.get("value") == to_major_units(amount)
                and price.get("currency_code") == currency
                and frequency.get("interval_unit") == interval_unit
            ):
                return True
        return False

    def _find_plan(self, name: str, amount: int, currency: str, interval_unit: str) -> Optional[str]:
        product_id = self._ensure_product()
        listing = self._json(
            self._call("GET", "/v1/billing/plans", "list_plans", params={"product_id": product_id, "page_size": 20}),
            "list_plans",
        )
        for plan in listing.get("plans") or []:
            if plan.get("name") != name or plan.get("status") not in (None, "ACTIVE"):
                continue
            if self._plan_matches(plan["id"], amount, currency, interval_unit):
                return plan["id"]
        return None

    def create_recurring_plan(self, name: str, amount: int, currency: str, cadence: str) -> str:
        interval_unit = PLAN_INTERVAL_UNITS.get(cadence)
        if interval_unit is None:
            raise ValueError(f"Unsupported cadence for PayPal plan: {cadence}")

        existing = self._find_plan(name, amount, currency, interval_unit)
        if existing:
            return existing

        plan = {
            "product_id": self._ensure_product(),
            "name": name,
            "description": f"{name} - {cadence} subscription",
            "billing_cycles": [
                {
                    "frequency": {"interval_unit": interval_unit, "interval_count": 1},
                    "tenure_type": "REGULAR",
                    "sequence": 1,
                    "total_cycles": 0,
                    "pricing_scheme": {"fixed_price": {"value": to_major_units(amount), "currency_code": currency}},
                }
            ],
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee": {"value": "0", "currency_code": currency},
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }
        response = self._call("POST", "/v1/billing/plans", "create_plan", json=plan)
        if response.status_code in (409, 422) and "DUPLICATE" in response.text.upper():
            found = self._find_plan(name, amount, currency, interval_unit)
            if found:
                logger.info(f"Recovered existing PayPal plan after duplicate error: {found}")
                return found
        return self._json(response, "create_plan")["id"]

    def create_subscription_intent(
        self,
        plan_ref: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        body: Dict[str, Any] = {
            "plan_id": plan_ref,
            "custom_id": metadata.get("reference", ""),
            "application_context": {
                "brand_name": settings.BRAND_NAME,
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        if metadata.get("email"):
            body["subscriber"] = {"email_address": metadata["email"]}
        payload = self._json(self._call("POST", "/v1/billing/subscriptions", "create_subscription", json=body), "create_subscription")
        return IntentResult(reference=payload["id"], redirect_url=self._approval_url(payload))

    def _capture_order(self, order_id: str) -> CaptureResult:
        response = self._call("POST", f"/v2/checkout/orders/{order_id}/capture", "capture_order", json={})
        if response.status_code == 422:
            issue = _first_issue(response)
            if issue == "ORDER_ALREADY_CAPTURED":
                order = self._json(self._call("GET", f"/v2/checkout/orders/{order_id}", "get_order"), "get_order")
                status = str(order.get("status") or "unknown")
                return CaptureResult(succeeded=status == "COMPLETED", raw_status=status)
            # Declined instrument, unapproved order and similar are final outcomes
            return CaptureResult(succeeded=False, raw_status=issue or "UNPROCESSABLE")
        payload = self._json(response, "capture_order")
        status = str(payload.get("status") or "unknown")
        return CaptureResult(succeeded=status == "COMPLETED", raw_status=status)

    def capture_or_verify(self, reference: str, kind: IntentKind) -> CaptureResult:
        if kind == IntentKind.ONE_TIME:
            return self._capture_order(reference)
        state = self.get_subscription_status(reference)
        return CaptureResult(
            succeeded=state in (SubscriptionState.ACTIVE, SubscriptionState.PENDING_APPROVAL),
            raw_status=state.value,
            state=state,
        )

    def get_subscription_status(self, reference: str) -> SubscriptionState:
        payload = self._json(self._call("GET", f"/v1/billing/subscriptions/{reference}", "get_subscription"), "get_subscription")
        status = (payload.get("status") or "").upper()
        if status == "ACTIVE":
            return SubscriptionState.ACTIVE
        if status in ("APPROVAL_PENDING", "APPROVED"):
            return SubscriptionState.PENDING_APPROVAL
        return SubscriptionState.INACTIVE

    def _verify_signature(self, headers: Mapping[str, str], event: Dict[str, Any]) -> None:
        missing = [h for h in SIGNATURE_HEADERS if not headers.get(h)]
        if missing:
            raise WebhookSignatureError(f"Missing PayPal signature headers: {', '.join(missing)}")

        if not self.webhook_id:
            if is_production():
                raise WebhookSignatureError("PAYPAL_WEBHOOK_ID not configured")
            logger.warning("PAYPAL_WEBHOOK_ID not set; accepting PayPal webhook without verification")
            return

        body = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_url": headers.get("paypal-cert-url"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        try:
            result = self._json(
                self._call("POST", "/v1/notifications/verify-webhook-signature", "verify_webhook", json=body),
                "verify_webhook",
            )
        except ProviderRejected as e:
            raise WebhookSignatureError(f"Signature verification rejected: {e.message}")
        if result.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError("Invalid signature")

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")

        self._verify_signature(headers, payload)
        return self._parse_event(payload)

    def _parse_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_type = payload.get("event_type") or "unknown"
        resource = payload.get("resource") or {}
        event = WebhookEvent(
            event_id=str(payload.get("id") or f"{event_type}:{resource.get('id', '')}"),
            event_type=event_type,
            action=WebhookAction.IGNORED,
        )

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            related = ((resource.get("supplementary_data") or {}).get("related_ids") or {})
            event.action = WebhookAction.PAYMENT_SUCCEEDED
            event.reference = resource.get("custom_id") or None
            event.provider_reference = related.get("order_id") or resource.get("id")
        elif event_type == "PAYMENT.SALE.COMPLETED":
            event.action = WebhookAction.RENEWAL_SUCCEEDED
            event.provider_reference = resource.get("id")
            event.subscription_ref = resource.get("billing_agreement_id")
        elif event_type in SUBSCRIPTION_EVENT_ACTIONS:
            event.action = SUBSCRIPTION_EVENT_ACTIONS[event_type]
            event.subscription_ref = resource.get("id") or resource.get("billing_agreement_id")
            event.reference = resource.get("custom_id") or None

        return event


def _first_issue(response: httpx.Response) -> Optional[str]:
    try:
        details = response.json().get("details") or []
    except ValueError:
        return None
    for detail in details:
        if detail.get("issue"):
            return detail["issue"]
    return None
