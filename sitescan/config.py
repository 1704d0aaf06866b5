from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_DNSBL_ZONES = (
    "multi.uribl.com",
    "black.uribl.com",
    "grey.uribl.com",
    "multi.surbl.org",
)

# Last WordPress release known to the scraping fallback; only used when the
# updates feed is unavailable.
LATEST_WORDPRESS_VERSION = "6.8.2"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_yaml(path: str) -> dict[str, Any]:
    if not path or not Path(path).exists():
        LOGGER.info("Settings file %s not found, using defaults", path)
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _env_float(name: str, default: str | None) -> float | None:
    value = os.getenv(name, default)
    if value in (None, ""):
        return None
    return float(value)


def resolve_settings(path: str) -> dict[str, Any]:
    settings = load_yaml(path)
    settings.setdefault("paths", {})
    settings.setdefault("credentials", {})
    settings.setdefault("execution", {})
    settings.setdefault("probes", {})
    settings.setdefault("cache", {})
    settings.setdefault("retention", {})
    settings["paths"].setdefault("db_path", os.getenv("SITESCAN_DB_PATH", "/data/sitescan.db"))
    settings["credentials"].setdefault("vulnerability_db_token", os.getenv("WPSCAN_API_KEY") or None)
    settings["credentials"].setdefault("malware_verdict_token", os.getenv("VIRUSTOTAL_API_KEY") or None)
    settings["execution"].setdefault("scan_deadline_seconds", _env_float("SITESCAN_SCAN_DEADLINE_SECONDS", "150"))
    settings["execution"].setdefault("stale_scan_seconds", int(os.getenv("SITESCAN_STALE_SCAN_SECONDS", "180")))
    settings["execution"].setdefault("max_concurrent_scans", int(os.getenv("SITESCAN_MAX_CONCURRENT_SCANS", "2")))
    settings["probes"].setdefault("dnsbl_zones", list(DEFAULT_DNSBL_ZONES))
    settings["probes"].setdefault("latest_wordpress_version", LATEST_WORDPRESS_VERSION)
    settings["cache"].setdefault("enabled", os.getenv("SITESCAN_CACHE_ENABLED", "true").lower() in {"1", "true", "yes", "on"})
    settings["cache"].setdefault("ttl_seconds", int(os.getenv("SITESCAN_CACHE_TTL_SECONDS", "86400")))
    settings["cache"].setdefault("dir", os.getenv("SITESCAN_CACHE_DIR", "/data/cache/sitescan"))
    settings["retention"].setdefault("enabled", os.getenv("SITESCAN_RETENTION_ENABLED", "false").lower() in {"1", "true", "yes", "on"})
    settings["retention"].setdefault("scans_days", int(os.getenv("SITESCAN_RETENTION_SCANS_DAYS", "90")))
    settings["retention"].setdefault("cache_days", int(os.getenv("SITESCAN_RETENTION_CACHE_DAYS", "7")))
    return settings


@dataclass(frozen=True)
class ScanConfig:
    """Read-only configuration shared by every probe of a scan."""

    vulnerability_db_token: str | None = None
    malware_verdict_token: str | None = None
    http_timeout: float = 10.0
    page_timeout: float = 30.0
    path_timeout: float = 5.0
    dns_timeout: float = 5.0
    malware_report_wait: float = 5.0
    ssl_poll_interval: float = 10.0
    scan_deadline_seconds: float | None = None
    stale_scan_seconds: int = 180
    latest_wordpress_version: str = LATEST_WORDPRESS_VERSION
    user_agent: str = "Mozilla/5.0 (compatible; SiteScan/2.0)"
    dnsbl_zones: tuple[str, ...] = DEFAULT_DNSBL_ZONES
    cache_dir: str | None = None
    cache_ttl_seconds: int = 86400

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ScanConfig":
        credentials = settings.get("credentials", {})
        execution = settings.get("execution", {})
        probes = settings.get("probes", {})
        cache = settings.get("cache", {})
        timeouts = probes.get("timeouts", {})
        deadline = execution.get("scan_deadline_seconds")
        return cls(
            vulnerability_db_token=credentials.get("vulnerability_db_token") or None,
            malware_verdict_token=credentials.get("malware_verdict_token") or None,
            http_timeout=float(timeouts.get("http", cls.http_timeout)),
            page_timeout=float(timeouts.get("page", cls.page_timeout)),
            path_timeout=float(timeouts.get("path", cls.path_timeout)),
            dns_timeout=float(timeouts.get("dns", cls.dns_timeout)),
            malware_report_wait=float(probes.get("malware_report_wait", cls.malware_report_wait)),
            ssl_poll_interval=float(probes.get("ssl_poll_interval", cls.ssl_poll_interval)),
            scan_deadline_seconds=float(deadline) if deadline else None,
            stale_scan_seconds=int(execution.get("stale_scan_seconds", cls.stale_scan_seconds)),
            latest_wordpress_version=str(probes.get("latest_wordpress_version", LATEST_WORDPRESS_VERSION)),
            dnsbl_zones=tuple(probes.get("dnsbl_zones") or DEFAULT_DNSBL_ZONES),
            cache_dir=str(cache["dir"]) if cache.get("enabled") and cache.get("dir") else None,
            cache_ttl_seconds=int(cache.get("ttl_seconds", cls.cache_ttl_seconds)),
        )
