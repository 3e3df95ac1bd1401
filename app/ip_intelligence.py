from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, field, replace

import httpx

logger = logging.getLogger(__name__)

DEFAULT_IP_INTEL_BASE_URL = "http://ip-api.com/json"
DEFAULT_IP_INTEL_TIMEOUT_SECONDS = 2.5
IP_INTEL_FIELDS = "status,message,country,countryCode,city,lat,lon,isp,org,as,proxy,hosting"

HOSTING_KEYWORDS = (
    "amazon", "aws", "google cloud", "microsoft azure", "digitalocean",
    "linode", "vultr", "ovh", "hetzner", "cloudflare", "oracle cloud",
    "hostinger", "godaddy", "bluehost", "contabo", "kamatera",
    "upcloud", "rackspace", "ibm cloud", "alibaba cloud",
)

VPN_KEYWORDS = (
    "nordvpn", "expressvpn", "surfshark", "cyberghost", "proton",
    "private internet access", "mullvad", "windscribe", "tunnelbear",
    "ipvanish", "hotspot shield", "hide.me", "torguard", "astrill",
)


@dataclass(frozen=True)
class IPIntelligenceSettings:
    base_url: str = DEFAULT_IP_INTEL_BASE_URL
    timeout_seconds: float = DEFAULT_IP_INTEL_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("IP_INTEL_BASE_URL must not be empty.")
        if not 0 < self.timeout_seconds <= 5:
            raise ValueError("IP_INTEL_TIMEOUT_SECONDS must be between 0 and 5.")

    @classmethod
    def from_env(cls) -> "IPIntelligenceSettings":
        base_url = os.getenv("IP_INTEL_BASE_URL", DEFAULT_IP_INTEL_BASE_URL).strip().rstrip("/")
        raw_timeout = os.getenv("IP_INTEL_TIMEOUT_SECONDS", str(DEFAULT_IP_INTEL_TIMEOUT_SECONDS)).strip()
        try:
            timeout_seconds = float(raw_timeout)
        except ValueError as exc:
            raise ValueError("IP_INTEL_TIMEOUT_SECONDS must be numeric.") from exc
        return cls(base_url=base_url or DEFAULT_IP_INTEL_BASE_URL, timeout_seconds=timeout_seconds)


@dataclass(frozen=True)
class IPIntelligenceResult:
    is_proxy: bool = False
    is_vpn: bool = False
    is_hosting: bool = False
    isp: str = "unknown"
    org: str = "unknown"
    country: str = "unknown"
    country_code: str = ""
    city: str = "unknown"
    lat: float = 0.0
    lon: float = 0.0
    asn: str = ""
    threat: str = "NONE"
    details: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_location(self) -> bool:
        return self.country != "unknown"


NO_SIGNAL = IPIntelligenceResult()


def classify_threat(*, is_proxy: bool, is_vpn: bool, is_hosting: bool) -> str:
    if is_proxy and is_vpn:
        return "HIGH"
    if is_vpn or (is_proxy and is_hosting):
        return "MEDIUM"
    if is_proxy or is_hosting:
        return "LOW"
    return "NONE"


def _matches_any(keywords: tuple[str, ...], *values: str) -> bool:
    return any(keyword in value for keyword in keywords for value in values)


def is_non_routable(ip_address: str) -> bool:
    try:
        parsed = ipaddress.ip_address(ip_address)
    except ValueError:
        return True
    return parsed.is_private or parsed.is_loopback or parsed.is_link_local or parsed.is_unspecified or parsed.is_reserved


def interpret_provider_payload(data: dict) -> IPIntelligenceResult:
    """Turn an ip-api style payload into flags, preferring provider flags over keyword heuristics."""
    isp = str(data.get("isp") or "unknown")
    org = str(data.get("org") or "unknown")
    isp_lower = isp.lower()
    org_lower = org.lower()
    details: list[str] = []

    is_proxy = bool(data.get("proxy"))
    if is_proxy:
        details.append("Proxy detected by IP intelligence")

    is_hosting = bool(data.get("hosting"))
    if not is_hosting:
        is_hosting = _matches_any(HOSTING_KEYWORDS, isp_lower, org_lower)
    if is_hosting:
        details.append(f"Hosting/datacenter: {isp}")

    is_vpn = False
    if _matches_any(VPN_KEYWORDS, isp_lower, org_lower):
        is_vpn = True
        details.append(f"Known VPN provider: {isp}")
    elif is_hosting and is_proxy:
        is_vpn = True
        details.append("Likely VPN (hosting + proxy flags)")

    return IPIntelligenceResult(
        is_proxy=is_proxy,
        is_vpn=is_vpn,
        is_hosting=is_hosting,
        isp=isp,
        org=org,
        country=str(data.get("country") or "unknown"),
        country_code=str(data.get("countryCode") or ""),
        city=str(data.get("city") or "unknown"),
        lat=float(data.get("lat") or 0.0),
        lon=float(data.get("lon") or 0.0),
        asn=str(data.get("as") or ""),
        threat=classify_threat(is_proxy=is_proxy, is_vpn=is_vpn, is_hosting=is_hosting),
        details=tuple(details),
    )


class IPIntelligenceClient:
    def __init__(self, settings: IPIntelligenceSettings, http_client: httpx.Client) -> None:
        self._settings = settings
        self._http_client = http_client

    def check(self, ip_address: str | None) -> IPIntelligenceResult:
        if not ip_address or ip_address == "unknown" or is_non_routable(ip_address):
            return replace(NO_SIGNAL, details=("Private/local IP",))

        try:
            response = self._http_client.get(
                f"{self._settings.base_url}/{ip_address}",
                params={"fields": IP_INTEL_FIELDS},
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("ip_intel_timeout ip=%s", ip_address)
            return replace(NO_SIGNAL, details=("IP intelligence check timed out",))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("ip_intel_failed ip=%s error=%s", ip_address, str(exc))
            return replace(NO_SIGNAL, details=("IP intelligence check failed",))

        if not isinstance(data, dict) or data.get("status") != "success":
            message = data.get("message") if isinstance(data, dict) else "malformed response"
            logger.warning("ip_intel_api_error ip=%s message=%s", ip_address, message)
            return replace(NO_SIGNAL, details=(f"API error: {message}",))

        try:
            return interpret_provider_payload(data)
        except (TypeError, ValueError) as exc:
            logger.warning("ip_intel_malformed ip=%s error=%s", ip_address, str(exc))
            return replace(NO_SIGNAL, details=("IP intelligence response malformed",))
