"""
Shared fakes for the sitescan tests. Nothing here touches the network.
"""
from __future__ import annotations

import time

import pytest

from sitescan.clients import PageResponse, SignalClients, SignalError, SiteUnreachableError
from sitescan.config import ScanConfig
from sitescan.models import ScanTarget
from sitescan.probes import Probe
from sitescan.storage import SqliteScanStore


class FakeFetcher:
    def __init__(self, pages=None):
        # url -> PageResponse | Exception; HEAD requests use ("HEAD", url)
        self.pages = pages or {}
        self.calls = []

    def _lookup(self, key, url):
        self.calls.append(key)
        page = self.pages.get(key)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return PageResponse(status_code=404, headers={}, text="Not Found", url=url)
        return page

    def get(self, url, timeout=None, follow_redirects=True):
        return self._lookup(url, url)

    def head(self, url, timeout=None, max_redirects=3):
        return self._lookup(("HEAD", url), url)


class FakeBlacklist:
    def __init__(self, listed=(), failing=()):
        self.listed = set(listed)
        self.failing = set(failing)

    def is_listed(self, domain, zone):
        if zone in self.failing:
            raise SignalError(f"timeout resolving {domain}.{zone}")
        return zone in self.listed


class FakeCertificates:
    def __init__(self, report=None, error=None):
        self.report = report
        self.error = error

    def grade(self, hostname):
        if self.error:
            raise self.error
        return self.report


class FakeUpdates:
    def __init__(self, feed=None, error=None):
        self.feed = feed
        self.error = error
        self.calls = []

    def get_updates(self, base_url, api_key):
        self.calls.append((base_url, api_key))
        if self.error:
            raise self.error
        return self.feed


class FakeVulnerabilities:
    def __init__(self, plugins=None, themes=None, core=None, failing=()):
        self.plugins = plugins or {}
        self.themes = themes or {}
        self.core = core or {}
        self.failing = set(failing)

    def _get(self, table, key):
        if key in self.failing:
            raise SignalError("vulnerability database quota exceeded")
        return table.get(key, [])

    def plugin_vulnerabilities(self, slug):
        return self._get(self.plugins, slug)

    def theme_vulnerabilities(self, slug):
        return self._get(self.themes, slug)

    def core_vulnerabilities(self, version):
        return self._get(self.core, version)


class FakeMalware:
    def __init__(self, verdict=None, error=None):
        self.verdict = verdict
        self.error = error

    def lookup(self, url):
        if self.error:
            raise self.error
        return self.verdict


def no_handshake(hostname, port=443, timeout=8.0):
    raise SignalError("handshake disabled in tests")


def page(text="", status_code=200, headers=None, url="https://example.com"):
    return PageResponse(status_code=status_code, headers=headers or {}, text=text, url=url)


def unreachable(url="https://example.com"):
    return SiteUnreachableError(f"GET {url} failed: connection refused")


def build_clients(**overrides):
    values = {
        "fetcher": FakeFetcher(),
        "blacklist": FakeBlacklist(),
        "certificates": FakeCertificates(),
        "updates": FakeUpdates(error=SignalError("no feed")),
        "malware": None,
        "vulnerabilities": None,
        "tls": no_handshake,
    }
    values.update(overrides)
    return SignalClients(**values)


class StaticProbe(Probe):
    """Returns a prepared outcome, optionally after a delay."""

    def __init__(self, outcome, delay=0.0):
        super().__init__(build_clients(), ScanConfig())
        self.outcome_type = type(outcome)
        self._outcome = outcome
        self._delay = delay

    def inspect(self, target):
        if self._delay:
            time.sleep(self._delay)
        return self._outcome


class ExplodingProbe(Probe):
    def __init__(self, outcome_type):
        super().__init__(build_clients(), ScanConfig())
        self.outcome_type = outcome_type

    def inspect(self, target):
        raise RuntimeError(f"{self.name} exploded")


@pytest.fixture
def config():
    return ScanConfig(malware_report_wait=0, ssl_poll_interval=0)


@pytest.fixture
def target():
    return ScanTarget(website_id=1, user_id=7, url="https://example.com")


@pytest.fixture
def store(tmp_path):
    return SqliteScanStore(str(tmp_path / "sitescan.db"))


@pytest.fixture
def website_id(store):
    return store.register_website(7, "Example", "https://example.com", api_key=None)
