from __future__ import annotations

import socket
import ssl
import time

import dns.exception
import dns.resolver
import httpx
import pytest

from sitescan.clients import (
    BlacklistResolver,
    CertificateGradeClient,
    MalwareVerdictClient,
    SignalError,
    SiteFetcher,
    SiteUnreachableError,
    UpdatesFeed,
    UpdatesFeedClient,
    VulnerabilityDatabaseClient,
)


def no_sleep(_seconds):
    return None


def test_fetcher_lowercases_headers():
    def handler(request):
        assert request.headers["User-Agent"] == "TestAgent"
        return httpx.Response(200, headers={"X-Frame-Options": "DENY"}, text="<html></html>")

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    response = fetcher.get("https://example.com")
    assert response.ok
    assert response.headers["x-frame-options"] == "DENY"
    assert response.text == "<html></html>"


def test_fetcher_does_not_follow_redirects_when_asked():
    def handler(request):
        if request.url.path == "/wp-admin/":
            return httpx.Response(302, headers={"Location": "https://example.com/wp-login.php"})
        return httpx.Response(200, text="login")

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    assert fetcher.get("https://example.com/wp-admin/", follow_redirects=False).status_code == 302
    assert fetcher.get("https://example.com/wp-admin/").status_code == 200


def test_fetcher_maps_refused_connections_to_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request) from ConnectionRefusedError(111, "Connection refused")

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    with pytest.raises(SiteUnreachableError):
        fetcher.get("https://example.com")


def test_fetcher_maps_name_resolution_failures_to_unreachable():
    def handler(request):
        raise httpx.ConnectError("name not known", request=request) from socket.gaierror(-2, "Name or service not known")

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    with pytest.raises(SiteUnreachableError):
        fetcher.get("https://missing.example")


def test_fetcher_certificate_failures_are_not_unreachable():
    def handler(request):
        cause = ssl.SSLCertVerificationError(1, "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
        raise httpx.ConnectError(str(cause), request=request) from cause

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    with pytest.raises(SignalError) as excinfo:
        fetcher.get("https://self-signed.example")
    assert not isinstance(excinfo.value, SiteUnreachableError)


def test_fetcher_maps_timeouts_to_signal_error():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    fetcher = SiteFetcher("TestAgent", transport=httpx.MockTransport(handler))
    with pytest.raises(SignalError) as excinfo:
        fetcher.head("https://example.com")
    assert not isinstance(excinfo.value, SiteUnreachableError)


def test_malware_verdict_submit_then_report():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path.endswith("/url/scan"):
            return httpx.Response(200, json={"resource": "abc", "response_code": 1})
        assert request.url.params["resource"] == "abc"
        return httpx.Response(200, json={"response_code": 1, "positives": 3, "total": 70})

    client = MalwareVerdictClient("token", transport=httpx.MockTransport(handler), sleep=no_sleep)
    verdict = client.lookup("https://example.com")
    assert (verdict.positives, verdict.total) == (3, 70)
    assert seen == ["/vtapi/v2/url/scan", "/vtapi/v2/url/report"]


def test_malware_verdict_not_ready_is_none():
    def handler(request):
        if request.url.path.endswith("/url/scan"):
            return httpx.Response(200, json={"resource": "abc"})
        return httpx.Response(200, json={"response_code": -2})

    client = MalwareVerdictClient("token", transport=httpx.MockTransport(handler), sleep=no_sleep)
    assert client.lookup("https://example.com") is None


def test_vulnerability_database_lookup_and_cache(tmp_path):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        assert request.headers["Authorization"] == "Token secret"
        return httpx.Response(
            200,
            json={"akismet": {"vulnerabilities": [{"title": "XSS", "fixed_in": "5.1", "published_date": "2024-01-01"}]}},
        )

    client = VulnerabilityDatabaseClient(
        "secret", cache_dir=str(tmp_path / "cache"), transport=httpx.MockTransport(handler)
    )
    first = client.plugin_vulnerabilities("akismet")
    second = client.plugin_vulnerabilities("akismet")

    assert first == second == [{"title": "XSS", "severity": "medium", "published": "2024-01-01", "fixed_in": "5.1"}]
    assert calls == ["/api/v3/plugins/akismet"]


def test_vulnerability_database_status_handling():
    def handler(request):
        if "missing" in request.url.path:
            return httpx.Response(404)
        if "wordpresses" in request.url.path:
            assert request.url.path.endswith("/wordpresses/642")
            return httpx.Response(200, json={"6.4.2": {"vulnerabilities": []}})
        return httpx.Response(429)

    client = VulnerabilityDatabaseClient("secret", transport=httpx.MockTransport(handler))
    assert client.theme_vulnerabilities("missing") == []
    assert client.core_vulnerabilities("6.4.2") == []
    with pytest.raises(SignalError):
        client.plugin_vulnerabilities("popular")


def test_certificate_grade_ready():
    not_after_ms = (time.time() + 45 * 86400 + 3600) * 1000

    def handler(request):
        if request.url.params.get("startNew") == "on":
            return httpx.Response(200, json={"status": "IN_PROGRESS"})
        return httpx.Response(
            200,
            json={
                "status": "READY",
                "endpoints": [
                    {
                        "grade": "A",
                        "hasWarnings": False,
                        "details": {
                            "cert": {"subject": "CN=example.com", "notAfter": not_after_ms},
                            "protocols": [{"name": "TLS", "version": "1.3"}],
                            "key": {"alg": "EC", "strength": 256},
                        },
                    }
                ],
            },
        )

    client = CertificateGradeClient(transport=httpx.MockTransport(handler), sleep=no_sleep)
    report = client.grade("example.com")
    assert report.grade == "A"
    assert report.cert_expiry_days == 45
    assert report.protocols == ["TLS 1.3"]
    assert report.cipher_strength == "256 bits"
    assert report.key_exchange == "EC"


def test_certificate_grade_incomplete_is_none():
    def handler(request):
        return httpx.Response(200, json={"status": "IN_PROGRESS"})

    client = CertificateGradeClient(transport=httpx.MockTransport(handler), sleep=no_sleep)
    assert client.grade("example.com") is None


class StubResolver:
    answers = {}

    def __init__(self):
        self.timeout = None
        self.lifetime = None

    def resolve(self, name, rdtype):
        result = self.answers.get(name)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise dns.resolver.NXDOMAIN()
        return result


def test_blacklist_resolver():
    StubResolver.answers = {
        "bad.example.multi.surbl.org": ["127.0.0.2"],
        "slow.example.multi.surbl.org": dns.exception.Timeout(),
    }
    resolver = BlacklistResolver(timeout=1.0, resolver_factory=StubResolver)
    assert resolver.is_listed("bad.example", "multi.surbl.org") is True
    assert resolver.is_listed("good.example", "multi.surbl.org") is False
    with pytest.raises(SignalError):
        resolver.is_listed("slow.example", "multi.surbl.org")


def test_updates_feed_falls_back_to_legacy_namespace():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        assert request.headers["X-WRMS-API-Key"] == "key"
        if request.url.path.startswith("/wp-json/wrms/"):
            return httpx.Response(404)
        return httpx.Response(
            200,
            json={
                "success": True,
                "updates": {
                    "wordpress": {"update_available": True, "current_version": "6.4", "new_version": "6.8.2"},
                    "plugins": [{"name": "Akismet Anti-spam", "plugin": "akismet/akismet.php", "current_version": "5.0", "new_version": "5.3"}],
                    "themes": [{"name": "Astra", "theme": "astra", "current_version": "4.0", "new_version": "4.6"}],
                },
            },
        )

    client = UpdatesFeedClient(transport=httpx.MockTransport(handler))
    feed = client.get_updates("https://example.com/", "key")

    assert seen == ["/wp-json/wrms/v1/updates", "/wp-json/wrm/v1/updates"]
    assert feed.core.current_version == "6.4"
    assert [plugin.slug for plugin in feed.plugins] == ["akismet"]
    assert [theme.slug for theme in feed.themes] == ["astra"]


def test_updates_feed_rejected_key():
    client = UpdatesFeedClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    with pytest.raises(SignalError):
        client.get_updates("https://example.com", "wrong")


def test_updates_feed_accepts_direct_payload():
    feed = UpdatesFeed.from_payload(
        {"wordpress": {"update_available": False}, "plugins": [{"name": "Yoast SEO", "current_version": "1", "new_version": "2"}]}
    )
    assert feed.core is None
    assert feed.plugins[0].slug == "yoast-seo"


@pytest.mark.parametrize("body", ["[]", "null", '"busy"', '{"status": "READY", "endpoints": ["oops"]}'])
def test_certificate_grade_unexpected_shapes_are_none(body):
    client = CertificateGradeClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body.encode())),
        sleep=no_sleep,
    )
    assert client.grade("example.com") is None


@pytest.mark.parametrize("body", ["[]", "null", '[{"positives": 3}]'])
def test_malware_verdict_unexpected_shapes_raise_signal_error(body):
    client = MalwareVerdictClient(
        "vt-token",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body.encode())),
        sleep=no_sleep,
    )
    with pytest.raises(SignalError):
        client.lookup("https://example.com")


def test_malware_verdict_non_numeric_counts_raise_signal_error():
    def handler(request):
        if request.url.path.endswith("/url/scan"):
            return httpx.Response(200, json={"resource": "abc"})
        return httpx.Response(200, json={"response_code": 1, "positives": "many", "total": 70})

    client = MalwareVerdictClient("vt-token", transport=httpx.MockTransport(handler), sleep=no_sleep)
    with pytest.raises(SignalError):
        client.lookup("https://example.com")


@pytest.mark.parametrize("body", ["[]", "null", '{"success": true, "updates": ["akismet"]}'])
def test_updates_feed_unexpected_shapes_raise_signal_error(body):
    client = UpdatesFeedClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body.encode())))
    with pytest.raises(SignalError):
        client.get_updates("https://example.com", "key")


def test_updates_feed_skips_malformed_items():
    feed = UpdatesFeed.from_payload(
        {"wordpress": "6.4", "plugins": ["akismet", {"name": "Akismet", "plugin": "akismet/akismet.php"}], "themes": {"x": 1}}
    )
    assert feed.core is None
    assert [plugin.slug for plugin in feed.plugins] == ["akismet"]
    assert feed.themes == []


def test_vulnerability_database_ignores_malformed_entries():
    def handler(request):
        return httpx.Response(
            200,
            json={"akismet": {"vulnerabilities": [{"title": "XSS", "cvss": "high"}, "junk"]}},
        )

    client = VulnerabilityDatabaseClient("token", transport=httpx.MockTransport(handler))
    vulnerabilities = client.plugin_vulnerabilities("akismet")
    assert [item["title"] for item in vulnerabilities] == ["XSS"]
    assert vulnerabilities[0]["severity"] == "medium"
