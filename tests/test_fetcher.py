import random
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from catalog_scrape.errors import HostNotAllowed, RobotsDisallowed, ScrapeFailed
from catalog_scrape.fetcher import AttemptOutcome, FetchExecutor, classify_status
from catalog_scrape.host_config import AllowedHosts
from catalog_scrape.robots import HostPolicy
from catalog_scrape.variants import canonical_url
from conftest import FakeResponse, FakeSession

URL = "https://example.com/products/widget"
BODY = "<html><body><h1>Widget</h1></body></html>"


@pytest.fixture
def make_executor(session, policy, response_cache, sleeper, clock):
    def _make(**overrides):
        opts = dict(
            cache=response_cache,
            session=session,
            max_attempts=4,
            timeout=8.0,
            retry_delay=0.5,
            rng=random.Random(7),
            sleep=sleeper,
            clock=clock,
        )
        opts.update(overrides)
        return FetchExecutor(policy, **opts)

    return _make


@pytest.mark.parametrize("status", [403, 407, 408, 425, 429, 500, 502, 503, 504])
def test_retryable_statuses(status):
    assert classify_status(status) is AttemptOutcome.RETRY


@pytest.mark.parametrize("status", [301, 400, 401, 404, 410, 451, 501])
def test_other_failures_are_fatal(status):
    assert classify_status(status) is AttemptOutcome.FATAL


def test_retries_until_a_body_arrives(make_executor, session, sleeper):
    session.queue(503, 503, BODY)

    page = make_executor().fetch(URL)

    assert page.html == BODY
    assert page.url == URL
    assert not page.from_cache
    assert len(page.diagnostics) == 2
    assert all("HTTP 503" in d for d in page.diagnostics)
    assert len(session.page_calls) == 3
    assert sleeper.calls == [0.5, 1.0]


def test_not_found_stops_without_trying_other_variants(make_executor, session, sleeper):
    session.queue(404, BODY, BODY)

    with pytest.raises(ScrapeFailed) as excinfo:
        make_executor().fetch(URL)

    assert len(session.page_calls) == 1
    assert len(excinfo.value.diagnostics) == 1
    assert "HTTP 404 (not retryable)" in excinfo.value.diagnostics[0]
    assert sleeper.calls == []
    assert len(session.pages) == 2


def test_exhaustion_reports_every_attempt(make_executor, session, sleeper):
    session.queue(403, 429, 503, 502)

    with pytest.raises(ScrapeFailed) as excinfo:
        make_executor().fetch(URL)

    err = excinfo.value
    assert len(err.diagnostics) == 4
    assert [d.split(" ", 1)[0] for d in err.diagnostics] == ["#1", "#2", "#3", "#4"]
    assert "www.example.com" in err.diagnostics[3]
    assert "; " in str(err)
    # linear backoff, only between attempts
    assert sleeper.calls == [0.5, 1.0, 1.5]


def test_empty_body_is_retried(make_executor, session):
    session.queue(FakeResponse(200, text="   \n"), BODY)

    page = make_executor().fetch(URL)

    assert page.html == BODY
    assert "EmptyResponse" in page.diagnostics[0]


def test_network_errors_and_timeouts_are_retried(make_executor, session):
    session.queue(requests.ConnectionError("reset by peer"), requests.Timeout("read timed out"), BODY)

    page = make_executor().fetch(URL)

    assert page.html == BODY
    assert "ConnectionError" in page.diagnostics[0]
    assert "Timeout after 8000ms" in page.diagnostics[1]


def test_slow_body_is_aborted_at_the_attempt_deadline(make_executor, session, clock):
    slow = FakeResponse(200, chunks=[b"<html>", b"</html>"], on_chunk=lambda: clock.advance(5))
    session.queue(slow, BODY)

    page = make_executor().fetch(URL)

    assert slow.closed
    assert "Timeout" in page.diagnostics[0]
    assert page.html == BODY


def test_success_populates_cache_under_the_original_url(make_executor, session, response_cache):
    session.queue(503, 503, 503, BODY)  # fourth attempt is the www variant

    page = make_executor().fetch(URL)

    assert page.url == "https://www.example.com/products/widget"
    assert response_cache.get(canonical_url(URL)) == BODY
    assert response_cache.get(canonical_url(page.url)) is None


def test_cache_hit_skips_the_network_but_not_the_policy(make_executor, session, policy):
    executor = make_executor()
    session.queue(BODY)
    executor.fetch(URL)

    page = executor.fetch(URL + "#reviews")
    assert page.from_cache
    assert page.html == BODY
    assert len(session.page_calls) == 1

    policy.allowed_hosts = AllowedHosts(["shop.other.net"])
    with pytest.raises(HostNotAllowed):
        executor.fetch(URL)


def test_robots_is_checked_before_any_page_request(make_executor, session):
    session.robots["https://example.com"] = "User-agent: *\nDisallow: /products\n"
    session.queue(BODY)

    with pytest.raises(RobotsDisallowed):
        make_executor().fetch(URL)
    assert session.page_calls == []


def test_policy_failure_on_a_variant_is_fatal(session, clock, sleeper, response_cache):
    policy = HostPolicy(AllowedHosts(["example.com"]), session=session, clock=clock)
    executor = FetchExecutor(
        policy, response_cache, session=session, max_attempts=4, retry_delay=0.5,
        rng=random.Random(1), sleep=sleeper, clock=clock,
    )
    session.queue(503, 503, 503, BODY)

    with pytest.raises(HostNotAllowed):
        executor.fetch(URL)
    assert len(session.page_calls) == 3
    assert len(session.pages) == 1


def test_every_attempt_sends_browser_headers(make_executor, session):
    session.queue(503, BODY)
    make_executor().fetch(URL)

    for call in session.page_calls:
        assert call["timeout"] == 8.0
        assert set(call["headers"]) >= {"User-Agent", "Accept", "Accept-Language", "Referer"}
    assert session.page_calls[0]["headers"]["User-Agent"] != session.page_calls[1]["headers"]["User-Agent"]


def test_charset_from_content_type_is_honoured(make_executor, session):
    body = "<html><body>Café</body></html>"
    resp = FakeResponse(200, chunks=[body.encode("latin-1")], headers={"Content-Type": "text/html; charset=ISO-8859-1"})
    resp.encoding = "ISO-8859-1"
    session.queue(resp)

    assert "Café" in make_executor().fetch(URL).html


def _redirect(location, status=302):
    return FakeResponse(status, headers={"Location": location})


def test_redirect_to_host_outside_allow_list_is_refused(session, clock, sleeper, response_cache):
    policy = HostPolicy(AllowedHosts(["example.com"]), session=session, clock=clock)
    executor = FetchExecutor(policy, response_cache, session=session, rng=random.Random(1), sleep=sleeper, clock=clock)
    session.queue(_redirect("https://other.test/secret"), BODY)

    with pytest.raises(HostNotAllowed):
        executor.fetch(URL)
    assert [c["url"] for c in session.page_calls] == [URL]
    assert sleeper.calls == []
    assert response_cache.get(canonical_url(URL)) is None


def test_redirect_to_robots_disallowed_path_is_refused(make_executor, session):
    session.robots["https://example.com"] = "User-agent: *\nDisallow: /secret\n"
    session.queue(_redirect("/secret/page", status=301), BODY)

    with pytest.raises(RobotsDisallowed):
        make_executor().fetch(URL)
    assert len(session.page_calls) == 1


def test_allowed_redirect_is_followed_and_reported(make_executor, session, response_cache):
    session.queue(_redirect("https://shop.example.com/p/new"), BODY)

    page = make_executor().fetch(URL)

    assert [c["url"] for c in session.page_calls] == [URL, "https://shop.example.com/p/new"]
    assert "https://shop.example.com/robots.txt" in [c["url"] for c in session.robots_calls]
    assert page.url == "https://shop.example.com/p/new"
    assert page.final_url == page.url
    assert response_cache.get(canonical_url(URL)) == BODY


def test_redirect_loop_fails_the_attempt(make_executor, session):
    session.queue(*[_redirect("/loop") for _ in range(11)])

    with pytest.raises(ScrapeFailed) as excinfo:
        make_executor(max_attempts=1).fetch(URL)
    assert "TooManyRedirects" in excinfo.value.diagnostics[0]
    assert session.pages == []


class _TrickleHandler(BaseHTTPRequestHandler):
    body = b"<p>slow</p>"

    def do_GET(self):
        if self.path == "/robots.txt":
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        try:
            for i in range(len(self.body)):
                self.wfile.write(self.body[i : i + 1])
                self.wfile.flush()
                time.sleep(0.5)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickle_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TrickleHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_trickled_body_is_cut_off_at_the_attempt_deadline(trickle_server):
    session = requests.Session()
    session.trust_env = False
    policy = HostPolicy(AllowedHosts(["127.0.0.1"]), session=session, timeout=2)
    executor = FetchExecutor(policy, session=session, max_attempts=1, timeout=1.0)

    started = time.monotonic()
    with pytest.raises(ScrapeFailed) as excinfo:
        executor.fetch(f"{trickle_server}/product")
    elapsed = time.monotonic() - started

    assert "Timeout after 1000ms" in excinfo.value.diagnostics[0]
    assert elapsed < 2.5
