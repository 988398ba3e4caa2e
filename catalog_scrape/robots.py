# robots.py
"""
Host policy: allow-list matching plus robots.txt compliance.

Robots decisions are cached per origin for `ttl` seconds and replaced
wholesale on expiry. An unreachable or unreadable robots.txt is treated
as "allow everything" and that outcome is cached too, so a broken origin
isn't asked again on every call.
"""
import logging
import time
from typing import Callable, List, Optional
from urllib.parse import urlsplit

import requests

from .cache import TTLStore
from .errors import HostNotAllowed, RobotsDisallowed, UnsupportedScheme
from .host_config import AllowedHosts
from .schema import HostPolicyDecision
from .variants import DEFAULT_PROFILES, headers_for, origin_of

logger = logging.getLogger(__name__)

UA = "CatalogScrapeBot"
SCHEMES = ("http", "https")


def host_matches(host: str, pattern: str) -> bool:
    host = (host or "").strip().rstrip(".").lower()
    pattern = (pattern or "").strip().lower()
    if not host or not pattern:
        return False
    if pattern == "*":
        return True
    if pattern.startswith("*."):
        base = pattern[2:]
        return host == base or host.endswith("." + base)
    if pattern.startswith("*"):
        return host.endswith(pattern[1:])
    return host == pattern


def parse_robots(text: str, agent: str = UA) -> List[str]:
    """
    Collect Disallow prefixes from groups addressed to `*` or to `agent`.

    Consecutive User-agent lines share a group. A trailing `*` is dropped
    (prefix match) and an empty Disallow adds no rule.
    """
    agent = agent.lower()
    disallowed: List[str] = []
    group_agents: List[str] = []
    in_rules = False

    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        field, value = line.split(":", 1)
        field, value = field.strip().lower(), value.strip()

        if field == "user-agent":
            if in_rules:
                group_agents = []
                in_rules = False
            group_agents.append(value.lower())
            continue

        if field in ("allow", "disallow", "crawl-delay"):
            in_rules = True
        if field != "disallow":
            continue
        if not any(a == "*" or a == agent for a in group_agents):
            continue
        rule = value.rstrip("*")
        if value and not rule:
            rule = "/"
        if rule and rule not in disallowed:
            disallowed.append(rule)

    return disallowed


def path_of(url: str) -> str:
    parts = urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def is_path_disallowed(path: str, prefixes) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


class HostPolicy:
    def __init__(
        self,
        allowed_hosts: Optional[AllowedHosts] = None,
        session: Optional[requests.Session] = None,
        ttl: float = 600.0,
        timeout: float = 5.0,
        agent: str = UA,
        store: Optional[TTLStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.allowed_hosts = allowed_hosts or AllowedHosts()
        self.session = session or requests.Session()
        self.ttl = max(60.0, ttl)
        self.timeout = timeout
        self.agent = agent
        self.clock = clock
        self.store: TTLStore[HostPolicyDecision] = store if store is not None else TTLStore(self.ttl, clock)

    def check_host(self, url: str) -> str:
        try:
            parts = urlsplit(url)
            parts.port  # raises for out-of-range or non-numeric ports
        except ValueError as e:
            raise UnsupportedScheme(f"Invalid URL {url!r}: {e}") from e
        if parts.scheme.lower() not in SCHEMES:
            raise UnsupportedScheme(f"Only HTTP(S) URLs can be scraped, got {parts.scheme or 'none'!r}: {url}")
        host = parts.hostname or ""
        if not host:
            raise UnsupportedScheme(f"URL has no host: {url}")
        patterns = self.allowed_hosts.patterns()
        if not any(host_matches(host, p) for p in patterns):
            raise HostNotAllowed(f"Scraping blocked for host: {host}")
        return host

    def decision_for(self, url: str) -> HostPolicyDecision:
        origin = origin_of(url)
        decision = self.store.get(origin)
        if decision is None:
            decision = self._fetch_decision(origin)
            self.store.set(origin, decision, expires_at=decision.expires_at)
        return decision

    def check_allowed(self, url: str) -> HostPolicyDecision:
        self.check_host(url)
        decision = self.decision_for(url)
        path = path_of(url)
        if not decision.allowed or is_path_disallowed(path, decision.disallowed_paths):
            raise RobotsDisallowed(f"robots.txt disallows {path} on {origin_of(url)}")
        return decision

    def _fetch_decision(self, origin: str) -> HostPolicyDecision:
        robots_url = f"{origin}/robots.txt"
        expires_at = self.clock() + self.ttl
        try:
            r = self.session.get(
                robots_url,
                headers=headers_for(robots_url, DEFAULT_PROFILES[0]),
                timeout=self.timeout,
            )
            r.raise_for_status()
            rules = parse_robots(r.text, self.agent)
        except (requests.RequestException, UnicodeDecodeError) as e:
            # Soft-fail open; cached like any other decision.
            logger.warning("robots.txt unavailable for %s, allowing: %s", origin, e)
            return HostPolicyDecision(allowed=True, disallowed_paths=(), expires_at=expires_at)

        logger.debug("robots.txt for %s: %d disallowed prefixes", origin, len(rules))
        return HostPolicyDecision(
            allowed="/" not in rules,
            disallowed_paths=tuple(rules),
            expires_at=expires_at,
        )
