from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

IP_API_URL = "http://ip-api.com/json/{ip}"
IP_API_FIELDS = "status,message,country,countryCode,region,regionName,city,zip,lat,lon,timezone,isp,org,as,query"
IPAPI_CO_URL = "https://ipapi.co/{ip}/json/"
IP_API_IO_URL = "https://ip-api.io/json/{ip}"
GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class GeoProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class LocationRecord:
    ip: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    region_code: Optional[str] = None
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    isp: Optional[str] = None
    org: Optional[str] = None
    asn: Optional[str] = None
    source: str = ""

    @property
    def location_string(self) -> str:
        parts = [p for p in (self.city, self.region, self.country) if p]
        return ", ".join(parts) if parts else "Unknown"

    @property
    def has_coordinates(self) -> bool:
        return bool(self.latitude) and bool(self.longitude)

    @property
    def map_url(self) -> Optional[str]:
        if not self.has_coordinates:
            return None
        return f"https://www.google.com/maps?q={self.latitude},{self.longitude}&z=10"

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["location_string"] = self.location_string
        return out


def format_location(location: Optional[LocationRecord]) -> str:
    return location.location_string if location else "Unknown"


def is_public_ip(ip: Optional[str]) -> bool:
    """
    False for empty/"unknown"/garbage and for loopback, private, link-local,
    reserved and unspecified ranges. Those never leave the process.
    """
    raw = (ip or "").strip()
    if not raw or raw.lower() == "unknown":
        return False
    try:
        addr = ipaddress.ip_address(raw)
    except ValueError:
        return False
    return not (
        addr.is_loopback
        or addr.is_private
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_unspecified
        or addr.is_multicast
    )


def _num(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class GeoResolver:
    """
    IP -> LocationRecord with ordered provider fallback.

    1) ip-api.com (+ Google reverse-geocode refinement when a key is set)
    2) ipapi.co
    3) ip-api.io
    No retries inside a provider; any failure falls through to the next.
    All down -> None. Never raises.
    """

    def __init__(
        self,
        google_api_key: str = "",
        timeout: float = 5.0,
        cache_ttl: int = 600,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.google_api_key = (google_api_key or "").strip()
        self.timeout = timeout
        self.cache_ttl = max(0, int(cache_ttl))
        self._session = session or requests.Session()
        self._clock = clock
        self._cache: Dict[str, Tuple[float, LocationRecord]] = {}
        self._lock = threading.Lock()

        self.providers: List[Tuple[str, Callable[[str], LocationRecord]]] = [
            ("ip-api.com", self._lookup_ip_api),
            ("ipapi.co", self._lookup_ipapi_co),
            ("ip-api.io", self._lookup_ip_api_io),
        ]

    # -------------------------
    # Public
    # -------------------------
    def resolve(self, ip: Optional[str]) -> Optional[LocationRecord]:
        if not is_public_ip(ip):
            return None
        ip = (ip or "").strip()

        cached = self._cache_get(ip)
        if cached is not None:
            return cached

        for name, lookup in self.providers:
            try:
                record = lookup(ip)
            except (requests.RequestException, ValueError, GeoProviderError) as e:
                logger.warning("Geolocation provider %s failed for %s: %s", name, ip, e)
                continue
            self._cache_set(ip, record)
            return record

        logger.warning("All geolocation providers failed for %s", ip)
        return None

    def close(self) -> None:
        self._session.close()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # -------------------------
    # Cache (TTL, per instance)
    # -------------------------
    def _cache_get(self, ip: str) -> Optional[LocationRecord]:
        if not self.cache_ttl:
            return None
        with self._lock:
            item = self._cache.get(ip)
            if not item:
                return None
            ts, record = item
            if self._clock() - ts > self.cache_ttl:
                self._cache.pop(ip, None)
                return None
            return record

    def _cache_set(self, ip: str, record: LocationRecord) -> None:
        if not self.cache_ttl:
            return
        with self._lock:
            self._cache[ip] = (self._clock(), record)

    # -------------------------
    # Providers
    # -------------------------
    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = self._session.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if not resp.ok:
            raise GeoProviderError(f"HTTP {resp.status_code}")
        data = resp.json()
        if not isinstance(data, dict):
            raise GeoProviderError("unexpected payload")
        return data

    def _lookup_ip_api(self, ip: str) -> LocationRecord:
        data = self._get_json(IP_API_URL.format(ip=ip), params={"fields": IP_API_FIELDS})
        if data.get("status") != "success":
            raise GeoProviderError(data.get("message") or "status=fail")

        record = LocationRecord(
            ip=data.get("query") or ip,
            country=data.get("country") or None,
            country_code=data.get("countryCode") or None,
            city=data.get("city") or None,
            region=data.get("regionName") or data.get("region") or None,
            region_code=data.get("region") or None,
            timezone=data.get("timezone") or None,
            latitude=_num(data.get("lat")),
            longitude=_num(data.get("lon")),
            isp=data.get("isp") or None,
            org=data.get("org") or None,
            asn=data.get("as") or None,
            source="ip-api.com",
        )

        if self.google_api_key and record.has_coordinates:
            record = self._refine_with_google(record)
        return record

    def _lookup_ipapi_co(self, ip: str) -> LocationRecord:
        data = self._get_json(IPAPI_CO_URL.format(ip=ip))
        if data.get("error"):
            raise GeoProviderError(data.get("reason") or "error")
        return LocationRecord(
            ip=data.get("ip") or ip,
            country=data.get("country_name") or None,
            country_code=data.get("country_code") or None,
            city=data.get("city") or None,
            region=data.get("region") or None,
            region_code=data.get("region_code") or None,
            timezone=data.get("timezone") or None,
            latitude=_num(data.get("latitude")),
            longitude=_num(data.get("longitude")),
            org=data.get("org") or None,
            asn=data.get("asn") or None,
            source="ipapi.co",
        )

    def _lookup_ip_api_io(self, ip: str) -> LocationRecord:
        data = self._get_json(IP_API_IO_URL.format(ip=ip))
        if data.get("status") not in (None, "success"):
            raise GeoProviderError(str(data.get("status")))
        if not (data.get("country_name") or data.get("city")):
            raise GeoProviderError("empty payload")
        tz = data.get("time_zone")
        return LocationRecord(
            ip=ip,
            country=data.get("country_name") or None,
            country_code=data.get("country_code") or None,
            city=data.get("city") or None,
            region=data.get("region_name") or None,
            region_code=data.get("region_code") or None,
            timezone=(tz.get("name") if isinstance(tz, dict) else tz) or None,
            latitude=_num(data.get("latitude")),
            longitude=_num(data.get("longitude")),
            source="ip-api.io",
        )

    def _refine_with_google(self, record: LocationRecord) -> LocationRecord:
        """
        Reverse-geocode the coordinates and overwrite country/city/region
        with Google's components. Any failure keeps the ip-api data.
        """
        try:
            data = self._get_json(
                GOOGLE_GEOCODE_URL,
                params={"latlng": f"{record.latitude},{record.longitude}", "key": self.google_api_key},
            )
        except (requests.RequestException, ValueError, GeoProviderError) as e:
            logger.info("Google geocoding refinement failed, keeping ip-api data: %s", e)
            return record

        results = data.get("results")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return record
        components = results[0].get("address_components")
        if not isinstance(components, list):
            return record

        changes: Dict[str, Any] = {}
        for component in components:
            if not isinstance(component, dict):
                continue
            types = component.get("types")
            if not isinstance(types, list):
                continue
            if "country" in types:
                changes["country"] = component.get("long_name")
                changes["country_code"] = component.get("short_name")
            if "locality" in types:
                changes["city"] = component.get("long_name")
            if "administrative_area_level_1" in types:
                changes["region"] = component.get("long_name")
                changes["region_code"] = component.get("short_name")

        changes = {k: v for k, v in changes.items() if isinstance(v, str) and v}
        if not changes:
            return record
        return replace(record, source="ip-api.com+google", **changes)
