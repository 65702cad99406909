"""
Region resolver.

Maps a request origin to a pricing region. Lookup order:
1. Origin IP from X-Forwarded-For (first hop), X-Real-IP, CF-Connecting-IP, socket peer
2. Non-public or missing address -> configured default (DEV_COUNTRY_CODE outside production)
3. ip-api.com, then ipapi.co
4. Anything failing -> configured default

resolve() never raises: a broken geo service must not block checkout.
"""
import ipaddress
import logging
from typing import Callable, Mapping, Optional

import httpx

from readerpass.core.cache import ExpiringCache
from readerpass.core.config import settings, is_production
from readerpass.core.logging import log_event
from readerpass.models.plan import Region
from readerpass.models.region import RegionResult

logger = logging.getLogger("readerpass")

IP_API_URL = "http://ip-api.com/json/{ip}?fields=status,country,countryCode"
IPAPI_CO_URL = "https://ipapi.co/{ip}/json/"

_cache: Optional[ExpiringCache] = None


def _get_cache() -> ExpiringCache:
    global _cache
    if _cache is None:
        _cache = ExpiringCache(ttl_seconds=settings.GEO_CACHE_TTL_SECONDS)
    return _cache


def reset_cache() -> None:
    global _cache
    _cache = None


def extract_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """Pick the origin address from proxy headers, falling back to the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    return peer or None


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved or addr.is_unspecified or addr.is_multicast)


def default_region(settings_obj=None) -> Region:
    """Region used whenever the caller's country cannot be established.

    REGION_DEFAULT wins when set. Otherwise development defaults to the
    domestic rail and every other environment to the international one,
    so a production lookup failure never prices in the cheaper currency.
    """
    cfg = settings_obj or settings
    if cfg.REGION_DEFAULT:
        return Region(cfg.REGION_DEFAULT)
    if (cfg.ENV or "").lower() == "development":
        return Region.DOMESTIC
    return Region.INTERNATIONAL


def _from_country(country_code: str, source: str) -> RegionResult:
    code = country_code.upper()
    is_domestic = code == settings.DOMESTIC_COUNTRY_CODE.upper()
    return RegionResult(
        region_code=Region.DOMESTIC if is_domestic else Region.INTERNATIONAL,
        country_code=code,
        is_domestic=is_domestic,
        source=source,
    )


def _fallback() -> RegionResult:
    region = default_region()
    return RegionResult(
        region_code=region,
        country_code=settings.DOMESTIC_COUNTRY_CODE if region == Region.DOMESTIC else None,
        is_domestic=region == Region.DOMESTIC,
        source="default",
    )


def _lookup_ip_api(client: httpx.Client, ip: str) -> Optional[str]:
    response = client.get(IP_API_URL.format(ip=ip), headers={"Accept": "application/json"})
    if response.status_code != 200:
        return None
    data = response.json()
    if data.get("status") == "success" and data.get("countryCode"):
        return data["countryCode"]
    return None


def _lookup_ipapi_co(client: httpx.Client, ip: str) -> Optional[str]:
    params = {"key": settings.IPAPI_KEY} if settings.IPAPI_KEY else None
    response = client.get(IPAPI_CO_URL.format(ip=ip), params=params, headers={"Accept": "application/json"})
    if response.status_code != 200:
        return None
    data = response.json()
    return data.get("country_code") or None


def lookup_country(ip: str, client: Optional[httpx.Client] = None) -> Optional[str]:
    """Query the geo services in order. Returns None when none answers."""
    owns_client = client is None
    http = client or httpx.Client(timeout=settings.GEO_LOOKUP_TIMEOUT_SECONDS)
    try:
        for name, fn in (("ip-api", _lookup_ip_api), ("ipapi.co", _lookup_ipapi_co)):
            try:
                country = fn(http, ip)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Geo lookup via {name} failed: {e}")
                continue
            if country:
                return country
        return None
    finally:
        if owns_client:
            http.close()


def resolve(
    headers: Mapping[str, str],
    peer: Optional[str] = None,
    *,
    client: Optional[httpx.Client] = None,
    lookup: Optional[Callable[[str], Optional[str]]] = None,
) -> RegionResult:
    """Resolve the pricing region for a request origin."""
    ip = extract_client_ip(headers, peer)
    if not ip:
        return _fallback()

    if not _is_public(ip):
        if settings.DEV_COUNTRY_CODE and not is_production():
            return _from_country(settings.DEV_COUNTRY_CODE, "dev_override")
        return _fallback()

    cache = _get_cache()
    cached = cache.get(ip)
    if cached is not None:
        return cached

    try:
        if lookup is not None:
            country = lookup(ip)
        else:
            country = lookup_country(ip, client=client)
    except Exception as e:
        # Geo is advisory; any failure falls through to the default region
        logger.warning(f"Geo lookup raised: {e}")
        country = None

    if country:
        result = _from_country(country, "lookup")
    else:
        result = _fallback()
        log_event("info", "region.lookup_fallback", event_type="region.fallback", extra={"region": result.region_code.value})

    cache.set(ip, result)
    return result
