import asyncio
import logging
import random
import sys
import threading
import time
from functools import lru_cache
from typing import Callable, List, Optional

import orjson
import requests

from .cache import ResponseCache, TTLStore, append_jsonl
from .config import Settings, get_settings
from .errors import ScrapeError
from .fetcher import FetchExecutor
from .host_config import AllowedHosts, fetch_database_patterns
from .normalizer import normalize
from .parser_generic import extract_generic
from .robots import HostPolicy
from .schema import ProductExtractionResult
from .variants import header_profiles

logger = logging.getLogger(__name__)

OUT = "items.jsonl"


class PerThreadSession:
    """
    Hands each worker thread its own requests.Session.

    One scraper is shared by the FastAPI threadpool and the batch CLI's
    `to_thread` jobs; Session is not safe to share between threads.
    """

    def __init__(self, factory: Callable[[], requests.Session] = requests.Session):
        self._factory = factory
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = self._factory()
        return session

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.session.get(url, **kwargs)



class ProductScraper:
    """
    Single-URL product extraction: host policy, retrying fetch (with the
    response cache), structured extraction and price normalization.

    Caches live on the instance and are safe to share across threads.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        allowed_hosts: Optional[AllowedHosts] = None,
        cache: Optional[ResponseCache] = None,
        robots_store: Optional[TTLStore] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.session = session or PerThreadSession()

        if allowed_hosts is None:
            allowed_hosts = AllowedHosts(
                settings.allowed_host_patterns,
                fetch_extra=fetch_database_patterns if settings.database_enabled else None,
                ttl=settings.host_cache_ttl_ms / 1000,
                clock=clock,
            )
        self.policy = HostPolicy(
            allowed_hosts,
            session=self.session,
            ttl=settings.robots_cache_ttl_ms / 1000,
            timeout=settings.robots_timeout_ms / 1000,
            store=robots_store,
            clock=clock,
        )
        self.cache = cache if cache is not None else ResponseCache(settings.cache_ttl_ms / 1000, clock)
        self.fetcher = FetchExecutor(
            self.policy,
            self.cache,
            session=self.session,
            profiles=header_profiles(settings.extra_user_agent_list),
            max_attempts=settings.max_attempts,
            timeout=settings.timeout_ms / 1000,
            retry_delay=settings.retry_delay_ms / 1000,
            rng=rng,
            sleep=sleep,
            clock=clock,
        )

    def scrape(self, url: str) -> ProductExtractionResult:
        url = (url or "").strip()
        page = self.fetcher.fetch(url)
        fields = extract_generic(page.html, page.final_url)
        logger.info("Extracted %s (cached=%s, missing=%s)", page.url, page.from_cache, fields.missing())
        return normalize(page.url, fields)


@lru_cache()
def get_scraper() -> ProductScraper:
    return ProductScraper(get_settings())


def scrape_product_page(url: str) -> str:
    """JSON payload for the catalog-ingestion step."""
    result = get_scraper().scrape(url)
    return orjson.dumps(result.to_payload(), option=orjson.OPT_INDENT_2).decode()


async def main(urls: List[str], concurrency: int = 3, scraper: Optional[ProductScraper] = None):
    print(f"[INIT] Starting scrape run for {len(urls)} URLs", file=sys.stderr)
    scraper = scraper or get_scraper()

    sem = asyncio.Semaphore(concurrency)
    print(f"[INIT] Concurrency limit set to {concurrency} pages", file=sys.stderr)

    async def safe_process(url: str):
        async with sem:
            print(f"[JOB] FETCH → {url}", file=sys.stderr)
            try:
                prod = await asyncio.to_thread(scraper.scrape, url)
            except ScrapeError as e:
                print(f"[JOB] ERR  → {url} | {e.kind}: {e}", file=sys.stderr)
                return {"url": url, "error": e.kind, "message": str(e)}
            payload = prod.to_payload()
            append_jsonl(OUT, payload)
            print(f"[JOB] OK   → {prod.id} | {prod.domain} | {prod.title} | {prod.price_number}", file=sys.stderr)
            return payload

    results = await asyncio.gather(*(safe_process(u) for u in urls))
    for payload in results:
        sys.stdout.write(orjson.dumps(payload).decode() + "\n")
    print("[DONE] Scrape run finished.", file=sys.stderr)
    return results


if __name__ == "__main__":
    #   python -m catalog_scrape.scrape https://example.com/p/1 [more URLs...]
    if len(sys.argv) < 2:
        print("usage: python -m catalog_scrape.scrape URL [URL ...]", file=sys.stderr)
        sys.exit(2)
    logging.basicConfig(level=get_settings().log_level.upper())
    asyncio.run(main(sys.argv[1:]))
