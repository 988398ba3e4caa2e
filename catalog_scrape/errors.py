from typing import List, Optional


class ScrapeError(Exception):
    """Base class for every terminal failure of a product scrape."""

    kind = "ScrapeError"


class UnsupportedScheme(ScrapeError):
    kind = "UnsupportedScheme"


class HostNotAllowed(ScrapeError):
    kind = "HostNotAllowed"


class RobotsDisallowed(ScrapeError):
    kind = "RobotsDisallowed"


class MetaRobotsBlocked(ScrapeError):
    kind = "MetaRobotsBlocked"


class FetchTimeout(ScrapeError):
    kind = "Timeout"


class EmptyResponse(ScrapeError):
    kind = "EmptyResponse"


class ScrapeFailed(ScrapeError):
    """All attempts failed (or one failed fatally). Keeps every attempt's diagnostic."""

    kind = "ScrapeFailed"

    def __init__(self, url: str, diagnostics: Optional[List[str]] = None):
        self.url = url
        self.diagnostics = list(diagnostics or [])
        trail = "; ".join(self.diagnostics) or "no attempts made"
        super().__init__(f"Failed to scrape product page {url}: {trail}")

