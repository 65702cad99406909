"""
Gateway registry.

One adapter per region, built lazily on first use so a missing credential
surfaces as ConfigurationError on the request that needs it, not at import.
"""
import threading
from typing import Dict, Optional, Union

from readerpass.features.billing.provider import GatewayProvider
from readerpass.models.plan import Region

_gateways: Dict[Region, GatewayProvider] = {}
_lock = threading.Lock()


def _build(region: Region) -> GatewayProvider:
    if region == Region.DOMESTIC:
        from readerpass.features.billing.paystack_provider import PaystackProvider
        return PaystackProvider()
    from readerpass.features.billing.paypal_provider import PayPalProvider
    return PayPalProvider()


def get_gateway(region: Union[Region, str]) -> GatewayProvider:
    """Return the adapter for a region.

    Raises:
        ConfigurationError: gateway credentials are missing
        ValueError: unknown region name
    """
    key = Region(region)
    with _lock:
        gateway = _gateways.get(key)
        if gateway is None:
            gateway = _build(key)
            _gateways[key] = gateway
        return gateway


def set_gateway(region: Union[Region, str], gateway: Optional[GatewayProvider]) -> None:
    """Install (or with None, drop) an adapter for a region."""
    key = Region(region)
    with _lock:
        if gateway is None:
            _gateways.pop(key, None)
        else:
            _gateways[key] = gateway


def reset_gateways() -> None:
    with _lock:
        _gateways.clear()
