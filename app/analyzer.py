import asyncio
import ipaddress
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx

from app.config import (
    GOOGLE_SAFE_BROWSING_API_KEY,
    PHISHTANK_API_KEY,
    HTTP_TIMEOUT_SECONDS,
    RDAP_BASE_URL,
    RDAP_ENABLED,
)
from app.schemas import DomainSignals, ThreatVerdict
from app.urls import registrable_domain

logger = logging.getLogger(__name__)

USER_AGENT = "url-trust-score/1.0"
ESTABLISHED_DOMAIN_AGE_DAYS = 365 * 10

# Major platforms assumed to be 10+ years old when no registry data is available
KNOWN_DOMAINS = {
    "google.com", "youtube.com", "facebook.com", "twitter.com", "x.com",
    "instagram.com", "linkedin.com", "github.com", "stackoverflow.com",
    "wikipedia.org", "reddit.com", "medium.com", "amazon.com", "apple.com",
    "microsoft.com", "netflix.com", "spotify.com",
}

INSTITUTIONAL_TLDS = (".edu", ".gov", ".mil")

# Free or cheap TLDs commonly abused for throwaway sites
SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf", ".gq", ".xyz", ".top", ".zip", ".mov")

LURE_WORDS = ("login", "verify", "secure", "account", "update", "wallet", "signin")

# Safety score per verdict, used for the combined threat score (100 = clean)
VERDICT_SAFETY_SCORES: Dict[ThreatVerdict, float] = {
    ThreatVerdict.SAFE: 100,
    ThreatVerdict.SUSPICIOUS: 50,
    ThreatVerdict.UNWANTED: 40,
    ThreatVerdict.PHISHING: 10,
    ThreatVerdict.MALICIOUS: 0,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def heuristic_verdict(domain: str) -> ThreatVerdict:
    """Verdict used when no threat-list provider is configured."""
    if domain in KNOWN_DOMAINS:
        return ThreatVerdict.SAFE

    try:
        ipaddress.ip_address(domain)
        return ThreatVerdict.SUSPICIOUS
    except ValueError:
        pass

    if "xn--" in domain or domain.endswith(SUSPICIOUS_TLDS):
        return ThreatVerdict.SUSPICIOUS
    if domain.count("-") >= 3:
        return ThreatVerdict.SUSPICIOUS
    if "-" in domain and any(word in domain for word in LURE_WORDS):
        return ThreatVerdict.SUSPICIOUS

    return ThreatVerdict.UNKNOWN


def heuristic_age_days(domain: str) -> Optional[int]:
    if domain in KNOWN_DOMAINS or registrable_domain(domain) in KNOWN_DOMAINS:
        return ESTABLISHED_DOMAIN_AGE_DAYS
    if domain.endswith(INSTITUTIONAL_TLDS):
        return ESTABLISHED_DOMAIN_AGE_DAYS
    return None


def combined_threat_score(verdicts: Dict[str, ThreatVerdict]) -> Optional[float]:
    """
    Mean safety score over providers that returned a usable verdict.
    None means no provider had data, which is not the same as "safe".
    """
    scores = [VERDICT_SAFETY_SCORES[v] for v in verdicts.values() if v in VERDICT_SAFETY_SCORES]
    if not scores:
        return None
    return round(sum(scores) / len(scores), 2)


def parse_registration_date(rdap: dict) -> Optional[datetime]:
    for event in rdap.get("events", []):
        if event.get("eventAction") == "registration" and event.get("eventDate"):
            value = event["eventDate"].replace("Z", "+00:00")
            parsed = datetime.fromisoformat(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    return None


# ---------------------------------------------------------------------------
# Threat-list providers: subclass ThreatProvider to add a new one
# ---------------------------------------------------------------------------

class ThreatProvider(ABC):
    """
    Abstract base class for threat-list lookups.
    A provider without credentials reports itself as unconfigured and is skipped.
    """
    name: str  # key used in DomainCache.threat_verdicts and the penalty tables

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def check(self, client: httpx.AsyncClient, domain: str) -> ThreatVerdict:
        """Look the domain up. May raise; the analyzer maps failures to UNKNOWN."""
        pass


class GoogleSafeBrowsingProvider(ThreatProvider):
    name = "google_safe_browsing"
    endpoint = "https://safebrowsing.googleapis.com/v4/threatMatches:find"

    THREAT_TYPES = {
        "MALWARE": ThreatVerdict.MALICIOUS,
        "SOCIAL_ENGINEERING": ThreatVerdict.PHISHING,
        "UNWANTED_SOFTWARE": ThreatVerdict.UNWANTED,
    }

    def __init__(self, api_key: Optional[str] = GOOGLE_SAFE_BROWSING_API_KEY):
        self.api_key = api_key

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def check(self, client: httpx.AsyncClient, domain: str) -> ThreatVerdict:
        response = await client.post(
            self.endpoint,
            params={"key": self.api_key},
            json={
                "client": {"clientId": "url-trust-score", "clientVersion": "1.0.0"},
                "threatInfo": {
                    "threatTypes": list(self.THREAT_TYPES),
                    "platformTypes": ["ANY_PLATFORM"],
                    "threatEntryTypes": ["URL"],
                    "threatEntries": [
                        {"url": f"http://{domain}/"},
                        {"url": f"https://{domain}/"},
                    ],
                },
            },
        )
        response.raise_for_status()
        matches = response.json().get("matches") or []
        if not matches:
            return ThreatVerdict.SAFE

        verdicts = [self.THREAT_TYPES.get(m.get("threatType"), ThreatVerdict.SUSPICIOUS) for m in matches]
        # Report the most severe match
        return min(verdicts, key=lambda v: VERDICT_SAFETY_SCORES[v])


class PhishTankProvider(ThreatProvider):
    name = "phishtank"
    endpoint = "https://checkurl.phishtank.com/checkurl/"

    def __init__(self, api_key: Optional[str] = PHISHTANK_API_KEY):
        self.api_key = api_key

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def check(self, client: httpx.AsyncClient, domain: str) -> ThreatVerdict:
        response = await client.post(
            self.endpoint,
            data={"url": f"https://{domain}", "format": "json", "app_key": self.api_key},
        )
        response.raise_for_status()
        results = response.json().get("results") or {}
        if results.get("in_database"):
            return ThreatVerdict.PHISHING if results.get("valid") else ThreatVerdict.SUSPICIOUS
        return ThreatVerdict.SAFE


def default_providers() -> List[ThreatProvider]:
    return [GoogleSafeBrowsingProvider(), PhishTankProvider()]


# ---------------------------------------------------------------------------
# Domain analyzer
# ---------------------------------------------------------------------------

class DomainAnalyzer:
    """
    Collects external signals for one domain: reachability and TLS, age, threat-list verdicts.

    Each check runs independently and degrades to a default on failure, so analyze()
    only raises for programming errors, never for network trouble.
    """

    def __init__(
        self,
        providers: Optional[List[ThreatProvider]] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        rdap_enabled: bool = RDAP_ENABLED,
        rdap_base_url: str = RDAP_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.providers = default_providers() if providers is None else providers
        self.timeout = timeout
        self.rdap_enabled = rdap_enabled
        self.rdap_base_url = rdap_base_url.rstrip("/")
        self.transport = transport  # injectable for tests

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self.transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def analyze(self, domain: str) -> DomainSignals:
        async with self._client() as client:
            (http_status, ssl_valid), (age_days, age_source), verdicts = await asyncio.gather(
                self.check_reachability(client, domain),
                self.estimate_age(client, domain),
                self.check_threats(client, domain),
            )

        signals = DomainSignals(
            domain=domain,
            domain_age_days=age_days,
            age_source=age_source,
            http_status=http_status,
            ssl_valid=ssl_valid,
            threat_verdicts=verdicts,
            threat_score=combined_threat_score(verdicts),
        )
        verdict_str = ", ".join(f"{name}={verdict.value}" for name, verdict in verdicts.items())
        logger.info(
            f"[{domain}] status={http_status} ssl={ssl_valid} age={age_days} ({age_source}) "
            f"verdicts=[{verdict_str}] threat_score={signals.threat_score}"
        )
        return signals

    async def _head(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        response = await client.head(url)
        if response.status_code in (405, 501):
            # Some servers refuse HEAD; fall back to GET without reading the body
            async with client.stream("GET", url) as streamed:
                return streamed
        return response

    async def check_reachability(self, client: httpx.AsyncClient, domain: str) -> tuple[int, bool]:
        """
        HTTPS first, HTTP as fallback. Returns (http_status, ssl_valid); (0, False) when unreachable.
        A timeout counts as unreachable.
        """
        try:
            response = await self._head(client, f"https://{domain}")
            return response.status_code, response.url.scheme == "https"
        except httpx.HTTPError as e:
            logger.debug(f"[{domain}] HTTPS request failed: {e!r}")

        try:
            response = await self._head(client, f"http://{domain}")
            return response.status_code, False
        except httpx.HTTPError as e:
            logger.warning(f"[{domain}] Unreachable over HTTPS and HTTP: {e!r}")
            return 0, False

    async def estimate_age(self, client: httpx.AsyncClient, domain: str) -> tuple[Optional[int], Optional[str]]:
        """Registration date from RDAP when available, else the known-domain/TLD heuristic."""
        if self.rdap_enabled:
            target = registrable_domain(domain)
            try:
                response = await client.get(f"{self.rdap_base_url}/domain/{target}")
                if response.status_code == 200:
                    registered = parse_registration_date(response.json())
                    if registered is not None:
                        age = (datetime.now(timezone.utc) - registered).days
                        return max(0, age), "registry"
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[{domain}] Registration lookup failed: {e!r}")

        age = heuristic_age_days(domain)
        return age, ("heuristic" if age is not None else None)

    async def _check_one(self, provider: ThreatProvider, client: httpx.AsyncClient, domain: str) -> ThreatVerdict:
        try:
            return await provider.check(client, domain)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning(f"[{domain}] {provider.name} lookup failed: {e!r}")
            return ThreatVerdict.UNKNOWN

    async def check_threats(self, client: httpx.AsyncClient, domain: str) -> Dict[str, ThreatVerdict]:
        configured = [p for p in self.providers if p.is_configured()]
        if not configured:
            return {"heuristic": heuristic_verdict(domain)}

        verdicts = await asyncio.gather(*(self._check_one(p, client, domain) for p in configured))
        return {p.name: v for p, v in zip(configured, verdicts)}
