"""
Payment gateway protocol.

Defines the interface every gateway adapter implements (Paystack, PayPal).
Reconciliation and initiation only talk to this interface, so a gateway
can be swapped or faked without touching business logic.

Failure semantics (all adapters):
- transport error, timeout, provider 5xx  -> ProviderUnreachable
- provider 401/403, missing credentials    -> ConfigurationError
- explicit decline                         -> ProviderRejected
- undecodable or non-object JSON body      -> ProviderUnreachable
- payment still settling at the gateway    -> CaptureResult.in_flight
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from readerpass.core.errors import ConfigurationError, ProviderRejected, ProviderUnreachable
from readerpass.models.payment import IntentKind


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    INACTIVE = "inactive"


class WebhookAction(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"


@dataclass
class IntentResult:
    """A created payment intent: where to send the caller, and the gateway's id for it."""
    reference: str
    redirect_url: str


@dataclass
class CaptureResult:
    succeeded: bool
    raw_status: str
    state: Optional[SubscriptionState] = None
    in_flight: bool = False  # gateway has not settled the payment yet; neither success nor failure


@dataclass
class WebhookEvent:
    """Provider webhook normalized to the actions reconciliation understands."""
    event_id: str
    event_type: str
    action: WebhookAction
    reference: Optional[str] = None  # local payment intent reference, when the gateway echoes it
    provider_reference: Optional[str] = None  # order / transaction / sale id
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class GatewayProvider(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Customer creation (idempotent)
    - One-time and recurring intents
    - Capture / verification of a completed intent
    - Webhook signature verification and parsing
    """

    name: str

    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        """
        Ensure a customer exists at the gateway.

        Returns:
            Provider customer reference. "Already exists" resolves to the existing one.
        """
        ...

    def create_one_time_intent(
        self,
        customer: str,
        amount: int,
        currency: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        """
        Start a one-time payment. Amount is in minor units.

        Returns:
            IntentResult with the gateway reference and the approval/checkout URL
        """
        ...

    def create_recurring_plan(self, name: str, amount: int, currency: str, cadence: str) -> str:
        """Find a plan matching (name, amount, currency, cadence) or create it."""
        ...

    def create_subscription_intent(
        self,
        plan_ref: str,
        return_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> IntentResult:
        ...

    def capture_or_verify(self, reference: str, kind: IntentKind) -> CaptureResult:
        """
        Fetch the authoritative outcome of an intent.

        One-time intents are captured (or verified, where the gateway
        captures on its own); recurring intents return subscription status.
        """
        ...

    def get_subscription_status(self, reference: str) -> SubscriptionState:
        ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """
        Verify webhook signature and normalize the event.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid
        """
        ...


def send_gateway_request(client: httpx.Client, method: str, url: str, gateway: str, operation: str, **kwargs) -> httpx.Response:
    """Issue a gateway call, converting transport failures to ProviderUnreachable."""
    try:
        return client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderUnreachable(f"{gateway} timed out during {operation}: {e}")
    except httpx.HTTPError as e:
        raise ProviderUnreachable(f"{gateway} unreachable during {operation}: {e}")


def raise_for_gateway_status(response: httpx.Response, gateway: str, operation: str) -> None:
    """Map a gateway HTTP response onto the shared failure taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise ConfigurationError(f"{gateway} rejected credentials during {operation}")
    if status >= 500:
        raise ProviderUnreachable(f"{gateway} returned {status} during {operation}")
    raise ProviderRejected(f"{gateway} declined {operation} ({status})")


def response_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error_description") or data.get("name") or "")
    return ""


def gateway_json(response: httpx.Response, gateway: str, operation: str) -> Dict[str, Any]:
    """Decode a gateway JSON object. A maintenance page or truncated body is treated as unreachable."""
    try:
        payload = response.json()
    except ValueError as e:
        raise ProviderUnreachable(f"{gateway} returned an undecodable body during {operation}: {e}")
    if not isinstance(payload, dict):
        raise ProviderUnreachable(f"{gateway} returned a non-object body during {operation}")
    return payload
