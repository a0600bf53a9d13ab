"""
Gateway endpoint resolution.

Endpoint templates may contain a placeholder (``https://gateway/graphql``).
The placeholder is replaced by a domain chosen once per session:

- the candidate domain derived from the page hostname (``map.example.com``
  -> ``example.com``) when both connectivity probes succeed against it;
- the fixed fallback domain otherwise, or immediately when the candidate
  belongs to a known indexing-network suffix that is never worth probing.

Probe failures never raise; they only select the fallback.
"""
import asyncio
import re
import ssl
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import certifi

from deradar import constants
from deradar.config.config import GatewayConfig, HistoricalConfig
from deradar.domain.models import Decision, GatewayInfo, ProbeResult, ResolutionDecision
from deradar.exceptions import ResolutionError
from deradar.monitoring.logger import get_logger

logger = get_logger(__name__)

PROBE_QUERY = "query { transactions(first: 1) { edges { node { id } } } }"

_LABEL = r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
_DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*$")
_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")


@lru_cache(maxsize=64)
def extract_gateway_domain(hostname: str) -> str:
    """
    Strip the leftmost label of a multi-label hostname.

    ``a.b.c`` -> ``b.c``; two labels or fewer are returned unchanged.
    """
    parts = hostname.split(".")
    if len(parts) <= 2:
        return hostname
    return ".".join(parts[1:])


def gateway_info(hostname: str) -> GatewayInfo:
    parts = hostname.split(".")
    return GatewayInfo(
        hostname=hostname,
        gateway_domain=extract_gateway_domain(hostname),
        is_subdomain=len(parts) > 2,
        subdomain_level=max(0, len(parts) - 2),
    )


def validate_gateway_domain(domain: str) -> Tuple[bool, List[str]]:
    """Check a domain for obvious problems. Returns (is_valid, issues)."""
    issues: List[str] = []
    if not domain or not domain.strip():
        issues.append("Domain is empty")
    elif not _DOMAIN_RE.match(domain):
        issues.append("Invalid domain format")

    if domain == "localhost" or _IPV4_RE.match(domain or ""):
        issues.append("Using localhost or IP address (development mode?)")

    return (not issues, issues)


class EndpointResolver:
    """
    Resolves endpoint templates to concrete URLs, probing at most once.

    The decision and the resolved URLs are cached on the instance for its
    lifetime; ``reset()`` clears them.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        historical: Optional[HistoricalConfig] = None,
        *,
        hostname: Optional[str] = None,
        scheme: str = "https",
    ):
        self.config = config or GatewayConfig()
        self.historical = historical or HistoricalConfig()
        self.hostname = hostname or self.config.hostname or constants.DEFAULT_HOSTNAME
        self.scheme = scheme

        self._decision: Optional[ResolutionDecision] = None
        self._resolved: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._probe_count = 0
        self._ssl_context: Optional[ssl.SSLContext] = None

    # -- Pure helpers --

    def extract_candidate_domain(self, hostname: Optional[str] = None) -> str:
        return extract_gateway_domain(hostname or self.hostname)

    def is_known_unprobable(self, domain: str) -> bool:
        """True for domains under a suffix that is never worth probing."""
        domain = domain.lower().rstrip(".")
        for suffix in self.config.unprobable_suffixes:
            suffix = suffix.lower().lstrip(".")
            if domain == suffix or domain.endswith("." + suffix):
                return True
        return False

    # -- Probing --

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    def _session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.config.probe_timeout_seconds)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    async def _probe_query(self, domain: str) -> bool:
        """Minimal index query against ``{domain}/graphql``; HTTP 2xx = reachable."""
        url = f"{self.scheme}://{domain}/graphql"
        async with self._session() as session:
            async with session.post(url, json={"query": PROBE_QUERY}) as response:
                if not 200 <= response.status < 300:
                    raise ResolutionError(f"Query probe returned HTTP {response.status}")
                return True

    async def _probe_payload(self, domain: str) -> bool:
        """Existence check against ``{domain}/``; any non-5xx status = reachable."""
        url = f"{self.scheme}://{domain}/"
        async with self._session() as session:
            async with session.head(url, allow_redirects=True) as response:
                if response.status >= 500:
                    raise ResolutionError(f"Payload probe returned HTTP {response.status}")
                return True

    async def _safe_probe(self, name: str, probe, domain: str) -> bool:
        try:
            return bool(await probe(domain))
        except (ResolutionError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.info("Gateway probe failed", probe=name, domain=domain, error=str(e) or type(e).__name__)
            return False

    async def probe(self, domain: str) -> ProbeResult:
        """Run both connectivity probes concurrently. Never raises."""
        self._probe_count += 1
        query_ok, payload_ok = await asyncio.gather(
            self._safe_probe("query", self._probe_query, domain),
            self._safe_probe("payload", self._probe_payload, domain),
        )
        result = ProbeResult(query_ok=query_ok, payload_ok=payload_ok)
        logger.debug("Gateway probe finished", domain=domain, query_ok=query_ok, payload_ok=payload_ok)
        return result

    @property
    def probe_count(self) -> int:
        """Number of probe rounds run since construction or reset."""
        return self._probe_count

    # -- Decision --

    @property
    def decision(self) -> Optional[ResolutionDecision]:
        return self._decision

    async def decide(self) -> ResolutionDecision:
        """Return the session decision, computing it on first call."""
        if self._decision is not None:
            return self._decision

        async with self._lock:
            if self._decision is not None:
                return self._decision

            candidate = self.extract_candidate_domain()
            fallback = self.config.fallback_domain

            if self.is_known_unprobable(candidate):
                decision = ResolutionDecision(
                    candidate_domain=candidate,
                    fallback_domain=fallback,
                    decision=Decision.FALLBACK,
                    reason="unprobable_suffix",
                )
            else:
                result = await self.probe(candidate)
                decision = ResolutionDecision(
                    candidate_domain=candidate,
                    fallback_domain=fallback,
                    decision=Decision.GATEWAY if result.ok else Decision.FALLBACK,
                    probe=result,
                    reason="probe_ok" if result.ok else "probe_failed",
                )

            self._decision = decision
            logger.info(
                "Gateway resolved",
                hostname=self.hostname,
                candidate=candidate,
                decision=decision.decision.value,
                domain=decision.domain,
                reason=decision.reason,
            )
            return decision

    async def resolve(self, url_template: str) -> str:
        """Substitute the placeholder in ``url_template`` with the session domain."""
        placeholder = self.config.placeholder
        if placeholder not in url_template:
            return url_template

        cached = self._resolved.get(url_template)
        if cached is not None:
            return cached

        decision = await self.decide()
        resolved = url_template.replace(placeholder, decision.domain)
        self._resolved[url_template] = resolved
        logger.debug("Resolved endpoint", template=url_template, url=resolved)
        return resolved

    async def resolve_endpoints(self) -> Tuple[str, str]:
        """Concrete (query_url, payload_url) for the configured templates."""
        query_url = await self.resolve(self.historical.graphql_url)
        payload_url = await self.resolve(self.historical.data_url)
        return query_url, payload_url.rstrip("/")

    def reset(self) -> None:
        """Forget the session decision and all resolved URLs."""
        self._decision = None
        self._resolved.clear()
        self._probe_count = 0

    async def status(self) -> Dict[str, Any]:
        """Resolution details for diagnostics."""
        info = gateway_info(self.hostname)
        decision = await self.decide()
        query_url, payload_url = await self.resolve_endpoints()
        is_valid, issues = validate_gateway_domain(info.gateway_domain)
        return {
            "info": {
                "hostname": info.hostname,
                "gateway_domain": info.gateway_domain,
                "is_subdomain": info.is_subdomain,
                "subdomain_level": info.subdomain_level,
                "valid": is_valid,
                "issues": issues,
            },
            "decision": decision.to_dict(),
            "resolved_urls": {"graphql": query_url, "data": payload_url},
        }
