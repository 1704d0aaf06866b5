"""Security probes run against a single website.

Each probe inspects one dimension of the target and returns its typed
outcome. ``Probe.run`` never raises: any failure inside ``inspect`` becomes
the outcome's error-fallback value so the scan can still be scored.
"""

from __future__ import annotations

import logging
import re
import time
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from sitescan.clients import SignalClients, SignalError, SiteUnreachableError
from sitescan.config import ScanConfig
from sitescan.models import (
    BasicHardeningOutcome,
    BlacklistOutcome,
    BlacklistStatus,
    FileIntegrityOutcome,
    HeaderOutcome,
    MalwareOutcome,
    MalwareStatus,
    ProbeOutcome,
    ScanTarget,
    SSLOutcome,
    VulnerabilityOutcome,
)

LOGGER = logging.getLogger(__name__)

SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf", ".click", ".download", ".top")

MALWARE_SIGNATURES = [
    # obfuscated PHP
    re.compile(r"eval\s*\(\s*base64_decode\s*\([^)]+\)\s*\)", re.IGNORECASE),
    re.compile(r"gzinflate\s*\(\s*base64_decode\s*\([^)]+\)\s*\)", re.IGNORECASE),
    re.compile(r"str_rot13\s*\(\s*base64_decode\s*\([^)]+\)\s*\)", re.IGNORECASE),
    re.compile(r"\$[a-zA-Z_][a-zA-Z0-9_]*\s*=\s*base64_decode\s*\(\s*[\"'][A-Za-z0-9+/=]{100,}[\"']\s*\)", re.IGNORECASE),
    # injected javascript
    re.compile(r"<script[^>]*>[^<]*?(?:document\.write|eval|unescape)[^<]*?</script>", re.IGNORECASE),
    re.compile(r"javascript:\s*(?:eval|unescape|document\.write)", re.IGNORECASE),
    # spam iframes and redirects
    re.compile(r"<iframe[^>]*src=[\"'][^\"']*(?:pharmacy|casino|poker|loan|mortgage|viagra)", re.IGNORECASE),
    re.compile(r"<meta[^>]*http-equiv=[\"']refresh[\"'][^>]*url=[^>]*(?:pharmacy|casino|poker)", re.IGNORECASE),
    # backdoors
    re.compile(r"wp-config\.php.*?(?:eval|base64_decode|gzinflate)", re.IGNORECASE),
    re.compile(r"\$_(?:POST|GET|REQUEST)\[.*?\].*?(?:eval|system|exec|shell_exec)", re.IGNORECASE),
    re.compile(r"<link[^>]*href=[\"'][^\"']*(?:\.tk|\.ml|\.ga|\.cf)/[^\"']*[\"']", re.IGNORECASE),
]

WARNING_HEADERS = ("x-security-warning", "x-malware-warning", "x-phishing-warning")
WARNING_MARKERS = (
    "This site may be hacked",
    "Warning: Suspected phishing site",
    "malware detected",
    "This site has been reported as unsafe",
)

SENSITIVE_FILES = (
    "/wp-config.php",
    "/wp-config-sample.php",
    "/.htaccess",
    "/wp-admin/install.php",
    "/readme.html",
    "/license.txt",
)
VERSION_DISCLOSURE_FILES = ("/readme.html", "/license.txt")
LISTING_DIRECTORIES = (
    "/wp-content/",
    "/wp-content/uploads/",
    "/wp-content/plugins/",
    "/wp-content/themes/",
    "/wp-includes/",
)
LISTING_MARKERS = ("Index of", "Directory Listing")
BACKDOOR_PATTERNS = (
    (re.compile(r"wp-admin/[a-z0-9]{8,}\.php", re.IGNORECASE), "Suspicious admin files"),
    (re.compile(r"wp-includes/[a-z0-9]{8,}\.php", re.IGNORECASE), "Suspicious include files"),
    (re.compile(r"wp-content/uploads/[^\s\"'<>]*\.php", re.IGNORECASE), "PHP files in uploads directory"),
    (re.compile(r"eval\s*\(\s*\$_(?:POST|GET|REQUEST)", re.IGNORECASE), "Potential backdoor code"),
)

SECURITY_PLUGIN_FINGERPRINTS = (
    ("Wordfence", ("wordfence", "wflogs")),
    ("Sucuri Security", ("sucuri", "sitecheck")),
    ("iThemes Security", ("ithemes", "better-wp-security")),
    ("All In One WP Security", ("aiowps", "wp-security")),
    ("Jetpack", ("jetpack",)),
    ("WP Security Audit Log", ("wp-security-audit-log",)),
    ("Shield Security", ("wp-simple-firewall",)),
)
RATE_LIMIT_MARKERS = ("login-attempt", "rate-limit", "too-many-requests")

PLUGIN_PATH = re.compile(r"wp-content/plugins/([A-Za-z0-9_.-]+)")
THEME_PATH = re.compile(r"wp-content/themes/([A-Za-z0-9_.-]+)")
WORDPRESS_GENERATOR = re.compile(r"WordPress\s+([\d.]+)", re.IGNORECASE)
README_VERSION = re.compile(r"Version\s+([\d.]+)", re.IGNORECASE)


def compare_versions(left: str, right: str) -> int:
    def parts(version: str) -> list[int]:
        return [int(piece) if piece.isdigit() else 0 for piece in version.split(".")]

    left_parts, right_parts = parts(left), parts(right)
    width = max(len(left_parts), len(right_parts))
    left_parts += [0] * (width - len(left_parts))
    right_parts += [0] * (width - len(right_parts))
    return (left_parts > right_parts) - (left_parts < right_parts)


def generator_tag(soup: BeautifulSoup) -> str | None:
    meta = soup.find("meta", attrs={"name": "generator"})
    if meta is None:
        return None
    return meta.get("content")


def _require_ok(page, what: str) -> None:
    if page.status_code >= 400:
        raise SignalError(f"{what} returned HTTP {page.status_code}")


class Probe:
    outcome_type: type[ProbeOutcome] = ProbeOutcome

    def __init__(self, clients: SignalClients, config: ScanConfig) -> None:
        self.clients = clients
        self.config = config

    @property
    def name(self) -> str:
        return self.outcome_type.probe

    def inspect(self, target: ScanTarget) -> ProbeOutcome:
        raise NotImplementedError

    def run(self, target: ScanTarget) -> ProbeOutcome:
        started = time.monotonic()
        try:
            outcome = self.inspect(target)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Probe %s failed for %s", self.name, target.url)
            return self.outcome_type.fallback_for(str(exc) or exc.__class__.__name__)
        LOGGER.info("Probe %s finished for %s in %.1fs", self.name, target.url, time.monotonic() - started)
        return outcome


class MalwareProbe(Probe):
    outcome_type = MalwareOutcome

    def inspect(self, target: ScanTarget) -> MalwareOutcome:
        threats = 0
        evidence: list[str] = []
        engines_detected = 0
        total_engines = 0

        if self.clients.malware is not None:
            try:
                verdict = self.clients.malware.lookup(target.url)
            except SignalError as exc:
                LOGGER.warning("Malware verdict service failed for %s: %s", target.url, exc)
                verdict = None
            if verdict is not None:
                engines_detected = verdict.positives
                total_engines = verdict.total
                if verdict.positives > 0:
                    threats += verdict.positives
                    evidence.append(f"{verdict.positives}/{verdict.total} engines flagged this URL")

        page = self.clients.fetcher.get(target.url, timeout=self.config.page_timeout)
        _require_ok(page, "homepage")
        content = page.text

        for signature in MALWARE_SIGNATURES:
            matches = signature.findall(content)
            if matches:
                threats += len(matches)
                evidence.append(f"Malware signature detected: {len(matches)} instances")

        soup = BeautifulSoup(content, "html.parser")
        for script in soup.find_all("script", src=True):
            host = urlparse(script["src"]).hostname or ""
            if host.endswith(SUSPICIOUS_TLDS):
                threats += 1
                evidence.append(f"Suspicious external script: {script['src']}")

        if threats == 0:
            status = MalwareStatus.CLEAN
        elif threats >= 3 or engines_detected >= 2:
            status = MalwareStatus.INFECTED
        else:
            status = MalwareStatus.SUSPICIOUS

        return MalwareOutcome(
            status=status,
            threats_detected=threats,
            evidence=evidence,
            engines_detected=engines_detected,
            total_engines=total_engines,
        )


class BlacklistProbe(Probe):
    outcome_type = BlacklistOutcome

    def inspect(self, target: ScanTarget) -> BlacklistOutcome:
        domain = target.hostname
        services_checked: list[str] = []
        flagged_by: list[str] = []

        for zone in self.config.dnsbl_zones:
            services_checked.append(zone)
            try:
                if self.clients.blacklist.is_listed(domain, zone):
                    flagged_by.append(zone)
            except SignalError as exc:
                LOGGER.warning("Blacklist zone %s unavailable for %s: %s", zone, domain, exc)

        try:
            page = self.clients.fetcher.get(target.url, timeout=self.config.http_timeout)
        except SiteUnreachableError as exc:
            # refused connections and unresolvable names are how blocked hosts look
            LOGGER.warning("Homepage unreachable for %s: %s", domain, exc)
            services_checked.append("Connection Test")
            flagged_by.append("Connection Blocked")
        except SignalError as exc:
            LOGGER.warning("Homepage unavailable for blacklist markers on %s: %s", domain, exc)
            services_checked.append("Connection Test")
        else:
            services_checked.append("HTTP Security Headers")
            if any(header in page.headers for header in WARNING_HEADERS):
                flagged_by.append("HTTP Security Headers")
            services_checked.append("Content Analysis")
            if any(marker in page.text for marker in WARNING_MARKERS):
                flagged_by.append("Content Security Warning")

        services_checked.append("TLD Analysis")
        if domain.endswith(SUSPICIOUS_TLDS):
            flagged_by.append("Suspicious TLD Detection")

        return BlacklistOutcome(
            status=BlacklistStatus.BLACKLISTED if flagged_by else BlacklistStatus.CLEAN,
            services_checked=services_checked,
            flagged_by=flagged_by,
        )


class VulnerabilityProbe(Probe):
    outcome_type = VulnerabilityOutcome

    def inspect(self, target: ScanTarget) -> VulnerabilityOutcome:
        outcome = VulnerabilityOutcome()
        feed = None
        if target.api_key:
            try:
                feed = self.clients.updates.get_updates(target.base_url, target.api_key)
            except SignalError as exc:
                LOGGER.warning("Updates feed failed for %s, falling back to content analysis: %s", target.url, exc)
        else:
            LOGGER.info("No updates feed credentials for %s, using content analysis", target.url)

        if feed is not None:
            self._from_updates_feed(feed, outcome)
        else:
            self._from_page_content(target, outcome)

        database = self.clients.vulnerabilities
        if database is not None and outcome.wordpress_version:
            outcome.core_vulnerabilities += self._lookup(
                outcome, database.core_vulnerabilities, "core", "wordpress", outcome.wordpress_version
            )
        LOGGER.info(
            "Vulnerability probe for %s: %s outdated, %s known vulnerabilities (approximate=%s)",
            target.url,
            len(outcome.outdated_software),
            outcome.total,
            outcome.approximate,
        )
        return outcome

    def _from_updates_feed(self, feed, outcome: VulnerabilityOutcome) -> None:
        if feed.core is not None:
            outcome.outdated_software.append(feed.core.describe())
            outcome.wordpress_version = feed.core.current_version or None

        database = self.clients.vulnerabilities
        for plugin in feed.plugins:
            outcome.outdated_software.append(plugin.describe())
            if database is not None and plugin.slug:
                outcome.plugin_vulnerabilities += self._lookup(
                    outcome, database.plugin_vulnerabilities, "plugin", plugin.slug, plugin.current_version, plugin.name
                )
        for theme in feed.themes:
            outcome.outdated_software.append(theme.describe())
            if database is not None and theme.slug:
                outcome.theme_vulnerabilities += self._lookup(
                    outcome, database.theme_vulnerabilities, "theme", theme.slug, theme.current_version, theme.name
                )

    def _from_page_content(self, target: ScanTarget, outcome: VulnerabilityOutcome) -> None:
        outcome.approximate = True
        page = self.clients.fetcher.get(target.url, timeout=self.config.page_timeout)
        _require_ok(page, "homepage")
        content = page.text

        generator = generator_tag(BeautifulSoup(content, "html.parser"))
        match = WORDPRESS_GENERATOR.search(generator or "")
        if match:
            outcome.wordpress_version = match.group(1)

        if not outcome.wordpress_version:
            try:
                readme = self.clients.fetcher.get(f"{target.base_url}/readme.html", timeout=self.config.path_timeout)
            except SignalError:
                readme = None
            if readme is not None and readme.ok:
                match = README_VERSION.search(readme.text)
                if match:
                    outcome.wordpress_version = match.group(1)

        latest = self.config.latest_wordpress_version
        if outcome.wordpress_version and compare_versions(outcome.wordpress_version, latest) < 0:
            outcome.outdated_software.append(f"WordPress {outcome.wordpress_version} (latest: {latest})")

        database = self.clients.vulnerabilities
        if database is None:
            return
        for slug in dict.fromkeys(PLUGIN_PATH.findall(content)):
            outcome.plugin_vulnerabilities += self._lookup(outcome, database.plugin_vulnerabilities, "plugin", slug, None)
        for slug in dict.fromkeys(THEME_PATH.findall(content)):
            outcome.theme_vulnerabilities += self._lookup(outcome, database.theme_vulnerabilities, "theme", slug, None)

    def _lookup(self, outcome, lookup, kind: str, slug: str, version: str | None, name: str | None = None) -> int:
        try:
            vulnerabilities = lookup(version if kind == "core" else slug)
        except SignalError as exc:
            LOGGER.warning("Vulnerability lookup for %s %s failed: %s", kind, slug, exc)
            return 0
        if vulnerabilities:
            outcome.vulnerable_components.append(
                {
                    "type": kind,
                    "name": name or slug,
                    "slug": slug,
                    "version": version or "Unknown",
                    "vulnerabilities": vulnerabilities,
                }
            )
        return len(vulnerabilities)


class HeaderProbe(Probe):
    outcome_type = HeaderOutcome

    def inspect(self, target: ScanTarget) -> HeaderOutcome:
        headers = self.clients.fetcher.head(target.url, timeout=self.config.http_timeout, max_redirects=3).headers
        return HeaderOutcome(
            frame_options="x-frame-options" in headers,
            content_type_options="x-content-type-options" in headers,
            xss_protection="x-xss-protection" in headers,
            hsts="strict-transport-security" in headers,
            csp="content-security-policy" in headers or "content-security-policy-report-only" in headers,
            referrer_policy="referrer-policy" in headers,
            permissions_policy="permissions-policy" in headers or "feature-policy" in headers,
        )


class SSLProbe(Probe):
    outcome_type = SSLOutcome

    def inspect(self, target: ScanTarget) -> SSLOutcome:
        if not target.is_https:
            return SSLOutcome(
                grade="F",
                cert_expiry_days=0,
                warnings=True,
                protocols=[],
                cipher_strength="None",
                key_exchange="None",
                certificate={
                    "subject": "No SSL Certificate",
                    "issuer": "None",
                    "valid_from": "N/A",
                    "valid_to": "N/A",
                    "signature_algorithm": "None",
                },
            )

        try:
            report = self.clients.certificates.grade(target.hostname)
        except SignalError as exc:
            LOGGER.warning("Certificate grading unavailable for %s: %s", target.hostname, exc)
            report = None

        if report is not None and report.grade and report.grade != "T":
            return SSLOutcome(
                grade=report.grade,
                cert_expiry_days=report.cert_expiry_days,
                warnings=report.has_warnings,
                protocols=report.protocols,
                cipher_strength=report.cipher_strength,
                key_exchange=report.key_exchange,
                certificate=report.certificate,
            )
        return self._reachability_grade(target)

    def _reachability_grade(self, target: ScanTarget) -> SSLOutcome:
        # HTTPS answers but no detailed grade: conservative mid-grade
        self.clients.fetcher.get(target.url, timeout=self.config.http_timeout)
        port = urlparse(target.url).port or 443
        try:
            handshake = self.clients.tls(target.hostname, port, self.config.http_timeout)
        except SignalError as exc:
            LOGGER.info("TLS handshake details unavailable for %s: %s", target.hostname, exc)
            handshake = None

        if handshake is None:
            return SSLOutcome(
                grade="C",
                cert_expiry_days=90,
                warnings=False,
                protocols=["TLS 1.2"],
                cipher_strength="Unknown",
                key_exchange="Unknown",
            )

        expiry_days = handshake.expiry_days
        return SSLOutcome(
            grade="C",
            cert_expiry_days=expiry_days if expiry_days is not None else 90,
            warnings=expiry_days is not None and expiry_days < 0,
            protocols=[handshake.protocol] if handshake.protocol else ["TLS 1.2"],
            cipher_strength=handshake.cipher or "Unknown",
            key_exchange="Unknown",
            certificate={
                "subject": handshake.subject,
                "issuer": handshake.issuer,
                "valid_from": "Unknown",
                "valid_to": handshake.not_after.isoformat() if handshake.not_after else "Unknown",
                "signature_algorithm": "Unknown",
            },
        )


class FileIntegrityProbe(Probe):
    outcome_type = FileIntegrityOutcome

    def inspect(self, target: ScanTarget) -> FileIntegrityOutcome:
        outcome = FileIntegrityOutcome()
        fetcher = self.clients.fetcher

        for path in SENSITIVE_FILES:
            try:
                response = fetcher.get(f"{target.base_url}{path}", timeout=self.config.path_timeout, follow_redirects=False)
            except SignalError:
                continue
            if response.status_code != 200:
                continue
            if path == "/wp-config.php":
                outcome.config_files_accessible = True
                outcome.permission_issues.append("wp-config.php is publicly accessible")
            elif path in VERSION_DISCLOSURE_FILES:
                outcome.suspicious_files.append(f"{path} exposes WordPress version information")
            else:
                outcome.permission_issues.append(f"{path} is publicly accessible")

        for directory in LISTING_DIRECTORIES:
            try:
                response = fetcher.get(f"{target.base_url}{directory}", timeout=self.config.path_timeout)
            except SignalError:
                continue
            if response.status_code == 200 and any(marker in response.text for marker in LISTING_MARKERS):
                outcome.directory_listings_exposed = True
                outcome.permission_issues.append(f"Directory listing enabled for {directory}")

        page = fetcher.get(target.url, timeout=self.config.http_timeout)
        _require_ok(page, "homepage")
        for pattern, description in BACKDOOR_PATTERNS:
            for match in pattern.findall(page.text):
                outcome.suspicious_files.append(f"{description}: {match}")
                outcome.core_files_modified += 1
        return outcome


class HardeningProbe(Probe):
    outcome_type = BasicHardeningOutcome

    def inspect(self, target: ScanTarget) -> BasicHardeningOutcome:
        page = self.clients.fetcher.get(target.url, timeout=self.config.page_timeout)
        _require_ok(page, "homepage")
        content = page.text.lower()

        generator = generator_tag(BeautifulSoup(page.text, "html.parser"))
        version_hidden = not (generator and "wordpress" in generator.lower())

        plugins = [
            name
            for name, fingerprints in SECURITY_PLUGIN_FINGERPRINTS
            if any(fingerprint in content for fingerprint in fingerprints)
        ]
        login_rate_limited = any(marker in content for marker in RATE_LIMIT_MARKERS) or bool(plugins)

        admin_user_secure = True
        try:
            admin = self.clients.fetcher.get(
                f"{target.base_url}/wp-admin/", timeout=self.config.path_timeout, follow_redirects=False
            )
        except SignalError as exc:
            LOGGER.info("Admin path not reachable on %s: %s", target.url, exc)
        else:
            if admin.status_code == 200 and not self._has_login_form(admin.text):
                admin_user_secure = False

        return BasicHardeningOutcome(
            admin_user_secure=admin_user_secure,
            version_hidden=version_hidden,
            login_rate_limited=login_rate_limited,
            active_security_plugins=plugins,
        )

    @staticmethod
    def _has_login_form(markup: str) -> bool:
        if "log in" in markup.lower():
            return True
        soup = BeautifulSoup(markup, "html.parser")
        return soup.find("form", id="loginform") is not None or soup.find("input", attrs={"type": "password"}) is not None


def default_probes(clients: SignalClients, config: ScanConfig) -> list[Probe]:
    return [
        MalwareProbe(clients, config),
        BlacklistProbe(clients, config),
        VulnerabilityProbe(clients, config),
        HeaderProbe(clients, config),
        SSLProbe(clients, config),
        FileIntegrityProbe(clients, config),
        HardeningProbe(clients, config),
    ]
