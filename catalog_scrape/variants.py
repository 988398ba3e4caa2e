# variants.py
import ipaddress
import random
from typing import Iterable, List, NamedTuple, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from .schema import RequestAttempt

ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"


class HeaderProfile(NamedTuple):
    user_agent: str
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE


DEFAULT_PROFILES = (
    HeaderProfile(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36",
        "en-US,en;q=0.9",
    ),
    HeaderProfile(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
        "Version/17.4 Safari/605.1.15",
        "en-GB,en;q=0.8",
    ),
    HeaderProfile(
        "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
        "en-US,en;q=0.7,de;q=0.3",
    ),
)


def header_profiles(extra_user_agents: Iterable[str] = ()) -> List[HeaderProfile]:
    profiles = list(DEFAULT_PROFILES)
    for ua in extra_user_agents:
        ua = ua.strip()
        if ua and all(p.user_agent != ua for p in profiles):
            profiles.append(HeaderProfile(ua))
    return profiles


def _netloc(host: str, port: Optional[int]) -> str:
    if ":" in host:  # IPv6 literal
        host = f"[{host}]"
    return f"{host}:{port}" if port else host


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


def canonical_url(url: str) -> str:
    """Cache key for a page: lower-cased scheme/host, no fragment, "/" for an empty path."""
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").rstrip(".")
    return urlunsplit((parts.scheme.lower(), _netloc(host, parts.port), parts.path or "/", parts.query, ""))


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{_netloc(parts.hostname or '', parts.port)}"


def toggle_www(url: str) -> Optional[str]:
    parts = urlsplit(url)
    host = parts.hostname or ""
    if not host or "." not in host or _is_ip(host):
        return None
    host = host[4:] if host.startswith("www.") else f"www.{host}"
    return urlunsplit((parts.scheme, _netloc(host, parts.port), parts.path, parts.query, parts.fragment))


def build_url_variants(url: str) -> List[str]:
    """
    The exact input URL, the same URL with `www.` toggled, and (when there
    is a query string) the input URL without it. Duplicates are dropped.
    """
    variants = [url]
    www = toggle_www(url)
    if www:
        variants.append(www)
    parts = urlsplit(url)
    if parts.query:
        variants.append(urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")))
    return list(dict.fromkeys(variants))


def shuffle_profiles(profiles: Sequence[HeaderProfile], rng: Optional[random.Random] = None) -> List[HeaderProfile]:
    rng = rng or random.Random()
    shuffled = list(profiles)
    rng.shuffle(shuffled)
    return shuffled


def headers_for(url: str, profile: HeaderProfile) -> dict:
    return {
        "User-Agent": profile.user_agent,
        "Accept": ACCEPT_HTML,
        "Accept-Language": profile.accept_language,
        "Referer": f"{origin_of(url)}/",
    }


def build_attempts(
    url: str,
    profiles: Sequence[HeaderProfile] = DEFAULT_PROFILES,
    max_attempts: int = 4,
    rng: Optional[random.Random] = None,
) -> List[RequestAttempt]:
    # URL-major, header-minor: every profile is tried on the primary URL form first.
    shuffled = shuffle_profiles(profiles, rng)
    attempts: List[RequestAttempt] = []
    for variant in build_url_variants(url):
        for profile in shuffled:
            if len(attempts) >= max_attempts:
                return attempts
            attempts.append(RequestAttempt(url=variant, headers=headers_for(variant, profile)))
    return attempts
