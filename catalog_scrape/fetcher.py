import logging
import random
import re
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests

from .cache import ResponseCache
from .errors import EmptyResponse, FetchTimeout, ScrapeFailed
from .robots import HostPolicy
from .schema import RequestAttempt
from .variants import DEFAULT_PROFILES, HeaderProfile, build_attempts, canonical_url

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({403, 407, 408, 425, 429, 500, 502, 503, 504})
CHUNK_SIZE = 64 * 1024
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
MAX_REDIRECTS = 10

_BROWSER_RE = re.compile(r"(Firefox|Edg|Chrome|Version)/[\d.]+")


class AttemptOutcome(Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptResult:
    outcome: AttemptOutcome
    html: Optional[str] = None
    final_url: Optional[str] = None
    diagnostic: Optional[str] = None


@dataclass(frozen=True)
class FetchedPage:
    url: str                          # URL that served the page, after redirects (canonical URL on cache hit)
    html: str
    final_url: str                    # base for relative links
    from_cache: bool = False
    diagnostics: Tuple[str, ...] = ()


def classify_status(status: int) -> AttemptOutcome:
    if 200 <= status < 300:
        return AttemptOutcome.SUCCESS
    if status in RETRYABLE_STATUSES:
        return AttemptOutcome.RETRY
    return AttemptOutcome.FATAL


def _label(attempt: RequestAttempt) -> str:
    ua = attempt.headers.get("User-Agent", "")
    m = _BROWSER_RE.search(ua)
    return f"{attempt.url} [{m.group(0) if m else ua[:24] or 'no UA'}]"


def _decode(resp, body: bytes) -> str:
    content_type = (resp.headers.get("Content-Type") or "").lower()
    encoding = resp.encoding if "charset=" in content_type else None
    try:
        return body.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _socket_of(resp) -> Optional[socket.socket]:
    raw = getattr(resp, "raw", None)
    sock = getattr(getattr(raw, "connection", None), "sock", None)
    if sock is None:
        # http.client drops conn.sock on "Connection: close"; the body reader keeps it.
        reader = getattr(getattr(raw, "_fp", None), "fp", None)
        sock = getattr(getattr(reader, "raw", None), "_sock", None)
    return sock


def _abort(resp) -> None:
    """Unblock a body read running on another thread."""
    sock = _socket_of(resp)
    if sock is None:
        resp.close()
        return
    try:
        # Plain shutdown, so an SSL wrapper sees EOF instead of a torn-down context.
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Socket already closed: %s", e)


class FetchExecutor:
    """
    Runs the ordered attempt list for a page until one returns a non-empty
    2xx body.

    Retryable statuses, network errors, timeouts and empty bodies move on
    to the next attempt after a linear delay (`retry_delay * n` after the
    n-th attempt). Any other status stops the loop. Host policy is checked
    for the page before the cache, again for every attempt URL and for
    every redirect hop, which is followed by hand.
    """

    def __init__(
        self,
        policy: HostPolicy,
        cache: Optional[ResponseCache] = None,
        session: Optional[requests.Session] = None,
        profiles: Sequence[HeaderProfile] = DEFAULT_PROFILES,
        max_attempts: int = 4,
        timeout: float = 8.0,
        retry_delay: float = 0.5,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy
        self.cache = cache if cache is not None else ResponseCache()
        self.session = session or requests.Session()
        self.profiles = list(profiles)
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.clock = clock

    def fetch(self, url: str) -> FetchedPage:
        self.policy.check_allowed(url)

        key = canonical_url(url)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return FetchedPage(url=key, html=cached, final_url=key, from_cache=True)

        attempts = build_attempts(url, self.profiles, self.max_attempts, self.rng)
        diagnostics = []
        for n, attempt in enumerate(attempts, start=1):
            self.policy.check_allowed(attempt.url)
            logger.debug("Attempt %d/%d: %s", n, len(attempts), _label(attempt))
            result = self._run_attempt(attempt)

            if result.outcome is AttemptOutcome.SUCCESS:
                self.cache.set(key, result.html)
                logger.info("Fetched %s on attempt %d", attempt.url, n)
                return FetchedPage(
                    url=result.final_url or attempt.url,
                    html=result.html,
                    final_url=result.final_url or attempt.url,
                    diagnostics=tuple(diagnostics),
                )

            diagnostics.append(f"#{n} {result.diagnostic}")
            if result.outcome is AttemptOutcome.FATAL:
                logger.warning("Giving up on %s: %s", url, result.diagnostic)
                break
            logger.warning("Attempt %d failed: %s", n, result.diagnostic)
            if n < len(attempts):
                self.sleep(self.retry_delay * n)

        raise ScrapeFailed(url, diagnostics)

    def _run_attempt(self, attempt: RequestAttempt) -> AttemptResult:
        label = _label(attempt)
        try:
            status, html, final_url = self._request(attempt)
        except (FetchTimeout, requests.Timeout):
            return AttemptResult(
                AttemptOutcome.RETRY,
                diagnostic=f"{label}: {FetchTimeout.kind} after {int(self.timeout * 1000)}ms",
            )
        except requests.RequestException as e:
            return AttemptResult(AttemptOutcome.RETRY, diagnostic=f"{label}: {type(e).__name__}: {e}")

        outcome = classify_status(status)
        if outcome is AttemptOutcome.SUCCESS:
            if not html.strip():
                return AttemptResult(
                    AttemptOutcome.RETRY, diagnostic=f"{label}: {EmptyResponse.kind} (HTTP {status})"
                )
            return AttemptResult(outcome, html=html, final_url=final_url)
        if outcome is AttemptOutcome.RETRY:
            return AttemptResult(outcome, diagnostic=f"{label}: HTTP {status}")
        return AttemptResult(outcome, diagnostic=f"{label}: HTTP {status} (not retryable)")

    def _request(self, attempt: RequestAttempt) -> Tuple[int, str, str]:
        deadline = self.clock() + self.timeout
        url = attempt.url
        headers = dict(attempt.headers)
        for _ in range(MAX_REDIRECTS + 1):
            with self.session.get(
                url,
                headers=headers,
                timeout=self._remaining(deadline),
                stream=True,
                allow_redirects=False,
            ) as resp:
                location = resp.headers.get("Location")
                if resp.status_code in REDIRECT_STATUSES and location:
                    next_url = urljoin(url, location)
                    # Policy errors on a hop are fatal, same as on an attempt URL.
                    self.policy.check_allowed(next_url)
                    logger.debug("Redirect %d %s -> %s", resp.status_code, url, next_url)
                    url = next_url
                    continue
                if not 200 <= resp.status_code < 300:
                    return resp.status_code, "", url
                return resp.status_code, self._read_body(resp, url, deadline), url
        raise requests.TooManyRedirects(f"Exceeded {MAX_REDIRECTS} redirects from {attempt.url}")

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise FetchTimeout(f"attempt deadline passed after {self.timeout}s")
        return remaining

    def _read_body(self, resp, url: str, deadline: float) -> str:
        # Read timeouts reset on every byte; the watchdog bounds the whole body.
        expired = threading.Event()

        def _expire():
            expired.set()
            _abort(resp)

        watchdog = threading.Timer(self._remaining(deadline), _expire)
        watchdog.daemon = True
        watchdog.start()
        chunks = []
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if expired.is_set() or self.clock() > deadline:
                    raise FetchTimeout(f"{url} exceeded {self.timeout}s")
                chunks.append(chunk)
        except (requests.RequestException, OSError) as e:
            if expired.is_set():
                raise FetchTimeout(f"{url} exceeded {self.timeout}s") from e
            raise
        finally:
            watchdog.cancel()
        if expired.is_set():
            raise FetchTimeout(f"{url} exceeded {self.timeout}s")
        return _decode(resp, b"".join(chunks))
