# host_config.py
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

TABLE = "scrape_allowed_hosts"


def parse_host_patterns(raw: str) -> List[str]:
    return [p.strip().lower() for p in (raw or "").split(",") if p.strip()]


def fetch_database_patterns(client=None) -> List[str]:
    """
    Fetch enabled hostname patterns from the `scrape_allowed_hosts` table.

    Returns an empty list (and logs) when the table can't be read, so a
    database outage never widens or breaks the static allow-list.
    """
    try:
        if client is None:
            from .supabase_client import get_supabase
            client = get_supabase()
        resp = (
            client.table(TABLE)
            .select("hostname_pattern")
            .eq("is_enabled", True)
            .order("hostname_pattern")
            .execute()
        )
    except Exception as e:
        logger.warning("Allowed-host fetch from %s failed: %s", TABLE, e)
        return []

    data = getattr(resp, "data", None) or []
    patterns: List[str] = []
    for row in data:
        value = (row.get("hostname_pattern") or "").strip().lower()
        if value:
            patterns.append(value)
    logger.debug("Loaded %d allowed host patterns from %s", len(patterns), TABLE)
    return patterns


class AllowedHosts:
    """
    Static allow-list merged with a periodically refreshed external list.

    The external source is read at most once per `ttl` seconds; the merge
    keeps static patterns first and drops duplicates.
    """

    def __init__(
        self,
        static: Iterable[str] = ("*",),
        fetch_extra: Optional[Callable[[], List[str]]] = None,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.static = [p.strip().lower() for p in static if p and p.strip()]
        self.fetch_extra = fetch_extra
        self.ttl = ttl
        self.clock = clock
        self._merged: Optional[List[str]] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def patterns(self) -> List[str]:
        if self.fetch_extra is None:
            return list(self.static)
        with self._lock:
            now = self.clock()
            if self._merged is not None and now < self._expires_at:
                return list(self._merged)
            try:
                extra = self.fetch_extra()
            except Exception as e:
                logger.warning("Allowed-host source failed, using static list only: %s", e)
                extra = []
            merged = list(dict.fromkeys(self.static + [p.lower() for p in extra]))
            self._merged = merged
            self._expires_at = now + self.ttl
            return list(merged)

    def invalidate(self) -> None:
        with self._lock:
            self._merged = None
            self._expires_at = 0.0
