import json
import random
from typing import Dict, List, Optional, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from catalog_scrape.cache import ResponseCache
from catalog_scrape.config import Settings
from catalog_scrape.host_config import AllowedHosts
from catalog_scrape.robots import HostPolicy
from catalog_scrape.scrape import ProductScraper

OPEN_ROBOTS = "User-agent: *\nDisallow:\n"


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeResponse:
    """Just enough of requests.Response for the robots and page fetch paths."""

    def __init__(
        self,
        status_code: int = 200,
        text: str = "",
        url: str = "",
        headers: Optional[Dict[str, str]] = None,
        chunks: Optional[List[bytes]] = None,
        on_chunk=None,
    ):
        self.status_code = status_code
        self.text = text
        self.url = url
        self.headers = CaseInsensitiveDict(headers or {"Content-Type": "text/html; charset=utf-8"})
        self.encoding = "utf-8"
        self._chunks = chunks if chunks is not None else [text.encode("utf-8")]
        self._on_chunk = on_chunk
        self.closed = False

    def iter_content(self, chunk_size=1, decode_unicode=False):
        for chunk in self._chunks:
            if self._on_chunk:
                self._on_chunk()
            yield chunk

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


Item = Union[FakeResponse, Exception, int, str]


class FakeSession:
    """
    Serves robots.txt per origin and product pages from a queue.

    Queue items may be a FakeResponse, an exception to raise, a bare status
    code, or an HTML string (served as 200).
    """

    def __init__(self, pages: Optional[List[Item]] = None, robots: Optional[Dict[str, Item]] = None):
        self.pages: List[Item] = list(pages or [])
        self.robots = dict(robots or {})
        self.calls: List[dict] = []

    def queue(self, *items: Item) -> None:
        self.pages.extend(items)

    @property
    def page_calls(self) -> List[dict]:
        return [c for c in self.calls if not c["url"].endswith("/robots.txt")]

    @property
    def robots_calls(self) -> List[dict]:
        return [c for c in self.calls if c["url"].endswith("/robots.txt")]

    def get(self, url, headers=None, timeout=None, stream=False, allow_redirects=True):
        self.calls.append({"url": url, "headers": dict(headers or {}), "timeout": timeout})
        if url.endswith("/robots.txt"):
            origin = url[: -len("/robots.txt")]
            item = self.robots.get(origin, OPEN_ROBOTS)
        elif self.pages:
            item = self.pages.pop(0)
        else:
            raise AssertionError(f"unexpected page request: {url}")
        return self._materialize(item, url)

    @staticmethod
    def _materialize(item: Item, url: str) -> FakeResponse:
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            item = FakeResponse(item, text="blocked" if item >= 400 else "")
        elif isinstance(item, str):
            item = FakeResponse(200, text=item)
        if not item.url:
            item.url = url
        return item


def product_html(ld: Optional[dict] = None, head: str = "", body: str = "") -> str:
    script = f'<script type="application/ld+json">{json.dumps(ld)}</script>' if ld is not None else ""
    return f"<html><head>{head}{script}</head><body>{body}</body></html>"


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def policy(session, clock):
    return HostPolicy(AllowedHosts(["*"]), session=session, ttl=600, timeout=5, clock=clock)


@pytest.fixture
def settings():
    return Settings(retry_delay_ms=500, max_attempts=4, timeout_ms=8000, cache_ttl_ms=300_000)


@pytest.fixture
def make_scraper(session, clock, sleeper, settings):
    def _make(**overrides):
        opts = dict(
            settings=settings,
            session=session,
            rng=random.Random(42),
            sleep=sleeper,
            clock=clock,
        )
        opts.update(overrides)
        return ProductScraper(**opts)

    return _make


@pytest.fixture
def response_cache(clock):
    return ResponseCache(300, clock)
