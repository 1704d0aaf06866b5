from __future__ import annotations

import logging
import re
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import dns.exception
import dns.resolver
import httpx

from sitescan.cache import build_cache_key, load_cached_payload, store_cached_payload
from sitescan.config import ScanConfig

LOGGER = logging.getLogger(__name__)

VIRUSTOTAL_API = "https://www.virustotal.com/vtapi/v2"
WPSCAN_API = "https://wpscan.com/api/v3"
SSLLABS_API = "https://api.ssllabs.com/api/v3/analyze"
UPDATES_FEED_PREFIXES = ("/wp-json/wrms/v1", "/wp-json/wrm/v1")


class SignalError(RuntimeError):
    pass


class SiteUnreachableError(SignalError):
    """The target refused the connection or its name did not resolve."""


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", name.lower())


@dataclass
class PageResponse:
    status_code: int
    headers: dict[str, str]
    text: str
    url: str

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def _is_unreachable(exc: BaseException) -> bool:
    """True when the failure chain ends in a DNS failure or a refused connection."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return False
        if isinstance(current, (socket.gaierror, ConnectionRefusedError)):
            return True
        current = current.__cause__ or current.__context__
    return False


class SiteFetcher:
    """Plain GET/HEAD access to the scanned website."""

    def __init__(
        self,
        user_agent: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport

    def _request(
        self,
        method: str,
        url: str,
        timeout: float | None,
        follow_redirects: bool,
        max_redirects: int,
    ) -> PageResponse:
        try:
            with httpx.Client(
                timeout=timeout or self.timeout,
                follow_redirects=follow_redirects,
                max_redirects=max_redirects,
                headers={"User-Agent": self.user_agent},
                transport=self.transport,
            ) as client:
                response = client.request(method, url)
        except httpx.ConnectError as exc:
            if _is_unreachable(exc):
                raise SiteUnreachableError(f"{method} {url} failed: {exc}") from exc
            raise SignalError(f"{method} {url} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SignalError(f"{method} {url} failed: {exc}") from exc
        return PageResponse(
            status_code=response.status_code,
            headers={key.lower(): value for key, value in response.headers.items()},
            text=response.text if method != "HEAD" else "",
            url=str(response.url),
        )

    def get(self, url: str, timeout: float | None = None, follow_redirects: bool = True) -> PageResponse:
        return self._request("GET", url, timeout, follow_redirects, max_redirects=5)

    def head(self, url: str, timeout: float | None = None, max_redirects: int = 3) -> PageResponse:
        return self._request("HEAD", url, timeout, True, max_redirects=max_redirects)


@dataclass
class MalwareVerdict:
    positives: int
    total: int
    permalink: str | None = None


class MalwareVerdictClient:
    """URL verdicts from the VirusTotal v2 API (submit, wait, fetch report)."""

    def __init__(
        self,
        token: str,
        timeout: float = 10.0,
        report_wait: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token = token
        self.timeout = timeout
        self.report_wait = report_wait
        self.transport = transport
        self._sleep = sleep

    def lookup(self, url: str) -> MalwareVerdict | None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                submit = client.post(f"{VIRUSTOTAL_API}/url/scan", data={"apikey": self.token, "url": url})
                submit.raise_for_status()
                body = submit.json()
                if not isinstance(body, dict):
                    raise SignalError("malware verdict submission returned an unexpected payload")
                resource = body.get("resource") or body.get("scan_id") or url

                self._sleep(self.report_wait)

                report = client.get(
                    f"{VIRUSTOTAL_API}/url/report",
                    params={"apikey": self.token, "resource": resource},
                )
                report.raise_for_status()
                data = report.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SignalError(f"malware verdict lookup failed: {exc}") from exc

        if not isinstance(data, dict):
            raise SignalError("malware verdict report returned an unexpected payload")
        if data.get("response_code") != 1:
            return None
        try:
            positives = int(data.get("positives") or 0)
            total = int(data.get("total") or 0)
        except (TypeError, ValueError) as exc:
            raise SignalError(f"malformed malware verdict counts: {exc}") from exc
        return MalwareVerdict(positives=positives, total=total, permalink=data.get("permalink"))


class VulnerabilityDatabaseClient:
    """Known-vulnerability lookups against the WPScan v3 API."""

    def __init__(
        self,
        token: str,
        timeout: float = 5.0,
        cache_dir: str | None = None,
        cache_ttl_seconds: int = 86400,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.token = token
        self.timeout = timeout
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.cache_ttl_seconds = cache_ttl_seconds
        self.transport = transport

    def plugin_vulnerabilities(self, slug: str) -> list[dict[str, Any]]:
        return self._lookup("plugins", slug)

    def theme_vulnerabilities(self, slug: str) -> list[dict[str, Any]]:
        return self._lookup("themes", slug)

    def core_vulnerabilities(self, version: str) -> list[dict[str, Any]]:
        return self._lookup("wordpresses", version.replace(".", ""))

    def _lookup(self, kind: str, subject: str) -> list[dict[str, Any]]:
        cache_key = build_cache_key("wpscan", f"{kind}/{subject}")
        if self.cache_dir is not None:
            cached = load_cached_payload(self.cache_dir, cache_key, self.cache_ttl_seconds)
            if isinstance(cached, list):
                return cached

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(
                    f"{WPSCAN_API}/{kind}/{subject}",
                    headers={"Authorization": f"Token {self.token}"},
                )
        except httpx.HTTPError as exc:
            raise SignalError(f"vulnerability lookup {kind}/{subject} failed: {exc}") from exc

        if response.status_code == 404:
            vulnerabilities: list[dict[str, Any]] = []
        elif response.status_code == 429:
            raise SignalError("vulnerability database quota exceeded")
        elif response.status_code >= 400:
            raise SignalError(f"vulnerability lookup {kind}/{subject} returned HTTP {response.status_code}")
        else:
            try:
                vulnerabilities = _normalize_vulnerabilities(response.json())
            except ValueError as exc:
                raise SignalError(f"malformed vulnerability response for {kind}/{subject}") from exc

        if self.cache_dir is not None:
            store_cached_payload(self.cache_dir, cache_key, vulnerabilities)
        return vulnerabilities


def _normalize_vulnerabilities(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    entries = data.get("vulnerabilities")
    if entries is None:
        # responses are keyed by slug or version: {"akismet": {"vulnerabilities": [...]}}
        for value in data.values():
            if isinstance(value, dict) and "vulnerabilities" in value:
                entries = value["vulnerabilities"]
                break
    if not isinstance(entries, list):
        return []
    return [
        {
            "title": item.get("title") or "Unknown vulnerability",
            "severity": item.get("severity") or _mapping(item.get("cvss")).get("severity") or "medium",
            "published": item.get("published_date") or item.get("created_at"),
            "fixed_in": item.get("fixed_in"),
        }
        for item in entries
        if isinstance(item, dict)
    ]


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class CertificateReport:
    grade: str
    has_warnings: bool
    cert_expiry_days: int
    protocols: list[str] = field(default_factory=list)
    cipher_strength: str = "Unknown"
    key_exchange: str = "Unknown"
    certificate: dict[str, str] = field(default_factory=dict)


def _days_until(timestamp_ms: Any) -> int:
    try:
        seconds = float(timestamp_ms) / 1000
    except (TypeError, ValueError):
        return 0
    return int((seconds - time.time()) // 86400)


class CertificateGradeClient:
    """TLS grading through the SSL Labs v3 API: submit, wait, fetch."""

    def __init__(
        self,
        timeout: float = 10.0,
        poll_interval: float = 10.0,
        max_polls: int = 1,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_polls = max(1, max_polls)
        self.transport = transport
        self._sleep = sleep

    def grade(self, hostname: str) -> CertificateReport | None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                start = client.get(SSLLABS_API, params={"host": hostname, "startNew": "on"})
                start.raise_for_status()
                started = start.json()
                if not isinstance(started, dict) or started.get("status") == "ERROR":
                    return None

                data: Any = {}
                for _ in range(self.max_polls):
                    self._sleep(self.poll_interval)
                    result = client.get(SSLLABS_API, params={"host": hostname, "all": "done"})
                    result.raise_for_status()
                    data = result.json()
                    if not isinstance(data, dict) or data.get("status") in {"READY", "ERROR"}:
                        break
        except (httpx.HTTPError, ValueError) as exc:
            raise SignalError(f"certificate grading for {hostname} failed: {exc}") from exc

        if not isinstance(data, dict) or data.get("status") != "READY":
            return None
        endpoints = data.get("endpoints")
        if not isinstance(endpoints, list) or not endpoints or not isinstance(endpoints[0], dict):
            return None

        endpoint = endpoints[0]
        details = _mapping(endpoint.get("details"))
        certs = data.get("certs") if isinstance(data.get("certs"), list) else []
        cert = _mapping(details.get("cert") or next(iter(certs), None))
        key = _mapping(details.get("key"))
        protocols = details.get("protocols") if isinstance(details.get("protocols"), list) else []
        return CertificateReport(
            grade=str(endpoint.get("grade") or "T"),
            has_warnings=bool(endpoint.get("hasWarnings")),
            cert_expiry_days=_days_until(cert.get("notAfter")),
            protocols=[f"{item.get('name')} {item.get('version')}" for item in protocols if isinstance(item, dict)],
            cipher_strength=f"{key['strength']} bits" if key.get("strength") else "Unknown",
            key_exchange=key.get("alg") or "Unknown",
            certificate={
                "subject": str(cert.get("subject") or "Unknown"),
                "issuer": str(cert.get("issuerSubject") or cert.get("issuer") or "Unknown"),
                "valid_from": str(cert.get("notBefore") or "Unknown"),
                "valid_to": str(cert.get("notAfter") or "Unknown"),
                "signature_algorithm": str(cert.get("sigAlg") or "Unknown"),
            },
        )


class BlacklistResolver:
    """DNS reputation lookups: ``<domain>.<zone>`` resolving means listed."""

    def __init__(self, timeout: float = 5.0, resolver_factory: Callable[[], Any] | None = None) -> None:
        self.timeout = timeout
        self._resolver_factory = resolver_factory or dns.resolver.Resolver

    def is_listed(self, domain: str, zone: str) -> bool:
        resolver = self._resolver_factory()
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout * 2
        query = f"{domain}.{zone}"
        try:
            answer = resolver.resolve(query, "A")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False
        except dns.exception.DNSException as exc:
            raise SignalError(f"DNS lookup for {query} failed: {exc}") from exc
        return len(answer) > 0


@dataclass
class SoftwareUpdate:
    kind: str
    name: str
    slug: str
    current_version: str | None
    new_version: str | None

    def describe(self) -> str:
        if self.kind == "core":
            return f"WordPress {self.current_version} (latest: {self.new_version})"
        return f"{self.kind.capitalize()}: {self.name} {self.current_version} (latest: {self.new_version})"


@dataclass
class UpdatesFeed:
    core: SoftwareUpdate | None = None
    plugins: list[SoftwareUpdate] = field(default_factory=list)
    themes: list[SoftwareUpdate] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Any) -> "UpdatesFeed":
        if not isinstance(data, dict):
            raise SignalError("updates feed returned an unexpected payload")
        updates = data.get("updates") if data.get("success") and data.get("updates") else data
        if not isinstance(updates, dict):
            raise SignalError("updates feed returned an unexpected payload")
        wordpress = _mapping(updates.get("wordpress"))
        core = None
        if wordpress.get("update_available"):
            core = SoftwareUpdate(
                kind="core",
                name="WordPress",
                slug="wordpress",
                current_version=wordpress.get("current_version"),
                new_version=wordpress.get("new_version"),
            )

        plugins = []
        for item in _items(updates.get("plugins")):
            name = str(item.get("name") or item.get("plugin") or "")
            plugin_file = str(item.get("plugin_file") or item.get("plugin") or "")
            slug = plugin_file.split("/", 1)[0] if "/" in plugin_file else slugify(name)
            plugins.append(SoftwareUpdate("plugin", name, slug, item.get("current_version"), item.get("new_version")))

        themes = []
        for item in _items(updates.get("themes")):
            name = str(item.get("name") or item.get("theme") or "")
            slug = str(item.get("theme") or slugify(name))
            themes.append(SoftwareUpdate("theme", name, slug, item.get("current_version"), item.get("new_version")))
        return cls(core=core, plugins=plugins, themes=themes)


def _items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class UpdatesFeedClient:
    """Pending core/plugin/theme updates reported by the WP Remote Manager plugin."""

    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    def get_updates(self, base_url: str, api_key: str) -> UpdatesFeed:
        headers = {"X-WRMS-API-Key": api_key, "X-WRM-API-Key": api_key}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                for prefix in UPDATES_FEED_PREFIXES:
                    response = client.get(f"{base_url.rstrip('/')}{prefix}/updates", headers=headers)
                    if response.status_code == 404:
                        LOGGER.info("Updates endpoint %s not found on %s, trying next", prefix, base_url)
                        continue
                    if response.status_code in (401, 403):
                        raise SignalError("updates feed rejected the API key")
                    response.raise_for_status()
                    return UpdatesFeed.from_payload(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            raise SignalError(f"updates feed request failed: {exc}") from exc
        raise SignalError("updates feed endpoint not found; plugin not installed")


@dataclass
class TLSHandshake:
    protocol: str | None
    cipher: str | None
    not_after: datetime | None
    subject: str
    issuer: str

    @property
    def expiry_days(self) -> int | None:
        if self.not_after is None:
            return None
        return (self.not_after - datetime.now(timezone.utc)).days


def _common_name(name: Any) -> str:
    for rdn in name or ():
        for key, value in rdn:
            if key == "commonName":
                return value
    return "Unknown"


def probe_tls(hostname: str, port: int = 443, timeout: float = 8.0) -> TLSHandshake:
    context = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as tls:
                cert = tls.getpeercert() or {}
                cipher = tls.cipher()
                protocol = tls.version()
    except (OSError, ssl.SSLError) as exc:
        raise SignalError(f"TLS handshake with {hostname}:{port} failed: {exc}") from exc

    not_after = None
    if cert.get("notAfter"):
        not_after = datetime.fromtimestamp(ssl.cert_time_to_seconds(cert["notAfter"]), tz=timezone.utc)
    return TLSHandshake(
        protocol=protocol,
        cipher=cipher[0] if cipher else None,
        not_after=not_after,
        subject=_common_name(cert.get("subject")),
        issuer=_common_name(cert.get("issuer")),
    )


@dataclass
class SignalClients:
    """Every outbound capability a probe may use, bundled so tests can swap fakes in."""

    fetcher: SiteFetcher
    blacklist: BlacklistResolver
    certificates: CertificateGradeClient
    updates: UpdatesFeedClient
    malware: MalwareVerdictClient | None = None
    vulnerabilities: VulnerabilityDatabaseClient | None = None
    tls: Callable[..., TLSHandshake] = probe_tls

    @classmethod
    def from_config(cls, config: ScanConfig) -> "SignalClients":
        malware = None
        if config.malware_verdict_token:
            malware = MalwareVerdictClient(
                config.malware_verdict_token,
                timeout=config.http_timeout,
                report_wait=config.malware_report_wait,
            )
        else:
            LOGGER.info("No malware verdict token configured; malware probe uses signatures only")

        vulnerabilities = None
        if config.vulnerability_db_token:
            vulnerabilities = VulnerabilityDatabaseClient(
                config.vulnerability_db_token,
                timeout=config.path_timeout,
                cache_dir=config.cache_dir,
                cache_ttl_seconds=config.cache_ttl_seconds,
            )
        else:
            LOGGER.info("No vulnerability database token configured; vulnerability counts stay at zero")

        return cls(
            fetcher=SiteFetcher(config.user_agent, timeout=config.http_timeout),
            blacklist=BlacklistResolver(timeout=config.dns_timeout),
            certificates=CertificateGradeClient(timeout=config.http_timeout, poll_interval=config.ssl_poll_interval),
            updates=UpdatesFeedClient(timeout=config.http_timeout),
            malware=malware,
            vulnerabilities=vulnerabilities,
        )
