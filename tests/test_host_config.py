from types import SimpleNamespace

from catalog_scrape.host_config import AllowedHosts, fetch_database_patterns, parse_host_patterns
from conftest import FakeClock


class FakeQuery:
    def __init__(self, rows, calls):
        self.rows = rows
        self.calls = calls

    def select(self, *cols):
        self.calls.append(("select", cols))
        return self

    def eq(self, col, value):
        self.calls.append(("eq", col, value))
        return self

    def order(self, col):
        self.calls.append(("order", col))
        return self

    def execute(self):
        return SimpleNamespace(data=self.rows)


class FakeSupabase:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.calls = []

    def table(self, name):
        if self.error:
            raise self.error
        self.calls.append(("table", name))
        return FakeQuery(self.rows, self.calls)


def test_parse_host_patterns_trims_lowercases_and_drops_blanks():
    assert parse_host_patterns(" Amazon.com, ,*.Example.com ,") == ["amazon.com", "*.example.com"]
    assert parse_host_patterns("") == []


def test_database_patterns_read_enabled_rows():
    client = FakeSupabase(rows=[{"hostname_pattern": "Shop.Example.com"}, {"hostname_pattern": " "}, {}])

    assert fetch_database_patterns(client) == ["shop.example.com"]
    assert ("table", "scrape_allowed_hosts") in client.calls
    assert ("eq", "is_enabled", True) in client.calls


def test_database_failure_yields_no_patterns():
    client = FakeSupabase(error=RuntimeError("connection refused"))
    assert fetch_database_patterns(client) == []


def test_static_only_list_is_returned_as_is():
    hosts = AllowedHosts(["Example.com", "*.shop.test"])
    assert hosts.patterns() == ["example.com", "*.shop.test"]


def test_external_patterns_are_merged_and_cached_until_ttl():
    clock = FakeClock()
    fetched = []

    def source():
        fetched.append(clock())
        return ["extra.com", "example.com"]

    hosts = AllowedHosts(["example.com"], fetch_extra=source, ttl=300, clock=clock)

    assert hosts.patterns() == ["example.com", "extra.com"]
    clock.advance(299)
    hosts.patterns()
    assert len(fetched) == 1

    clock.advance(2)
    hosts.patterns()
    assert len(fetched) == 2


def test_invalidate_forces_a_refresh():
    calls = []
    hosts = AllowedHosts(["a.com"], fetch_extra=lambda: calls.append(1) or ["b.com"], ttl=300, clock=FakeClock())
    hosts.patterns()
    hosts.invalidate()
    hosts.patterns()
    assert len(calls) == 2


def test_failing_source_falls_back_to_static_list():
    def broken():
        raise ConnectionError("db down")

    hosts = AllowedHosts(["example.com"], fetch_extra=broken, ttl=300, clock=FakeClock())
    assert hosts.patterns() == ["example.com"]
