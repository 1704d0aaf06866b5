from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union
from urllib.parse import urlparse


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class ScanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ScanStatus.COMPLETED, ScanStatus.FAILED}

    def can_transition(self, target: "ScanStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[ScanStatus, set[ScanStatus]] = {
    ScanStatus.PENDING: {ScanStatus.RUNNING, ScanStatus.FAILED},
    ScanStatus.RUNNING: {ScanStatus.COMPLETED, ScanStatus.FAILED},
    ScanStatus.COMPLETED: set(),
    ScanStatus.FAILED: set(),
}


class ThreatLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(ThreatLevel).index(self)


class MalwareStatus(str, Enum):
    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    INFECTED = "infected"
    ERROR = "error"


class BlacklistStatus(str, Enum):
    CLEAN = "clean"
    BLACKLISTED = "blacklisted"
    ERROR = "error"


@dataclass
class ScanTarget:
    website_id: int
    user_id: int
    url: str
    api_key: str | None = None

    @property
    def hostname(self) -> str:
        return (urlparse(self.url).hostname or "").lower()

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")

    @property
    def is_https(self) -> bool:
        return urlparse(self.url).scheme == "https"


def _unique(items) -> list[str]:
    return list(dict.fromkeys(str(item) for item in items or []))


@dataclass
class ProbeOutcome:
    """Base for the typed result of one probe.

    ``fallback`` marks the error-fallback variant: a fully populated value a
    probe returns in place of raising. ``error`` carries the reason.
    """

    probe: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Enum):
                payload[key] = value.value
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def fallback_for(cls, reason: str):
        raise NotImplementedError


@dataclass
class MalwareOutcome(ProbeOutcome):
    probe: ClassVar[str] = "malware"

    status: MalwareStatus = MalwareStatus.CLEAN
    threats_detected: int = 0
    evidence: list[str] = field(default_factory=list)
    engines_detected: int | None = None
    total_engines: int | None = None
    fallback: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        self.status = MalwareStatus(self.status)

    @classmethod
    def fallback_for(cls, reason: str) -> "MalwareOutcome":
        return cls(
            status=MalwareStatus.ERROR,
            threats_detected=0,
            evidence=[],
            engines_detected=0,
            total_engines=0,
            fallback=True,
            error=reason,
        )


@dataclass
class BlacklistOutcome(ProbeOutcome):
    probe: ClassVar[str] = "blacklist"

    status: BlacklistStatus = BlacklistStatus.CLEAN
    services_checked: list[str] = field(default_factory=list)
    flagged_by: list[str] = field(default_factory=list)
    fallback: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        self.status = BlacklistStatus(self.status)
        self.services_checked = _unique(self.services_checked)
        self.flagged_by = _unique(self.flagged_by)

    @classmethod
    def fallback_for(cls, reason: str) -> "BlacklistOutcome":
        return cls(
            status=BlacklistStatus.ERROR,
            services_checked=["Connection Test"],
            flagged_by=[],
            fallback=True,
            error=reason,
        )


@dataclass
class VulnerabilityOutcome(ProbeOutcome):
    probe: ClassVar[str] = "vulnerability"

    core_vulnerabilities: int = 0
    plugin_vulnerabilities: int = 0
    theme_vulnerabilities: int = 0
    outdated_software: list[str] = field(default_factory=list)
    wordpress_version: str | None = None
    vulnerable_components: list[dict[str, Any]] = field(default_factory=list)
    # True when versions were scraped from page markup instead of the updates feed
    approximate: bool = False
    fallback: bool = False
    error: str | None = None

    @property
    def total(self) -> int:
        return self.core_vulnerabilities + self.plugin_vulnerabilities + self.theme_vulnerabilities

    @classmethod
    def fallback_for(cls, reason: str) -> "VulnerabilityOutcome":
        return cls(approximate=True, fallback=True, error=reason)


@dataclass
class HeaderOutcome(ProbeOutcome):
    probe: ClassVar[str] = "headers"
    HEADER_FIELDS: ClassVar[tuple[str, ...]] = (
        "frame_options",
        "content_type_options",
        "xss_protection",
        "hsts",
        "csp",
        "referrer_policy",
        "permissions_policy",
    )

    frame_options: bool = False
    content_type_options: bool = False
    xss_protection: bool = False
    hsts: bool = False
    csp: bool = False
    referrer_policy: bool = False
    permissions_policy: bool = False
    fallback: bool = False
    error: str | None = None

    @property
    def present_count(self) -> int:
        return sum(1 for name in self.HEADER_FIELDS if getattr(self, name))

    @property
    def total_headers(self) -> int:
        return len(self.HEADER_FIELDS)

    @classmethod
    def fallback_for(cls, reason: str) -> "HeaderOutcome":
        return cls(fallback=True, error=reason)


def _unknown_certificate(label: str = "Unknown") -> dict[str, str]:
    return {
        "subject": label,
        "issuer": label,
        "valid_from": label,
        "valid_to": label,
        "signature_algorithm": label,
    }


@dataclass
class SSLOutcome(ProbeOutcome):
    probe: ClassVar[str] = "ssl"

    grade: str = "T"
    cert_expiry_days: int = 0
    warnings: bool = False
    protocols: list[str] = field(default_factory=list)
    cipher_strength: str = "Unknown"
    key_exchange: str = "Unknown"
    certificate: dict[str, str] = field(default_factory=_unknown_certificate)
    fallback: bool = False
    error: str | None = None

    @classmethod
    def fallback_for(cls, reason: str) -> "SSLOutcome":
        return cls(
            grade="T",
            cert_expiry_days=0,
            warnings=True,
            protocols=[],
            certificate=_unknown_certificate("Error"),
            fallback=True,
            error=reason,
        )


@dataclass
class FileIntegrityOutcome(ProbeOutcome):
    probe: ClassVar[str] = "file_integrity"

    core_files_modified: int = 0
    suspicious_files: list[str] = field(default_factory=list)
    permission_issues: list[str] = field(default_factory=list)
    directory_listings_exposed: bool = False
    config_files_accessible: bool = False
    fallback: bool = False
    error: str | None = None

    @classmethod
    def fallback_for(cls, reason: str) -> "FileIntegrityOutcome":
        return cls(fallback=True, error=reason)


@dataclass
class BasicHardeningOutcome(ProbeOutcome):
    probe: ClassVar[str] = "hardening"

    admin_user_secure: bool = False
    version_hidden: bool = False
    login_rate_limited: bool = False
    active_security_plugins: list[str] = field(default_factory=list)
    fallback: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        self.active_security_plugins = _unique(self.active_security_plugins)

    @classmethod
    def fallback_for(cls, reason: str) -> "BasicHardeningOutcome":
        return cls(fallback=True, error=reason)


AnyOutcome = Union[
    MalwareOutcome,
    BlacklistOutcome,
    VulnerabilityOutcome,
    HeaderOutcome,
    SSLOutcome,
    FileIntegrityOutcome,
    BasicHardeningOutcome,
]

OUTCOME_TYPES: dict[str, type[ProbeOutcome]] = {
    cls.probe: cls
    for cls in (
        MalwareOutcome,
        BlacklistOutcome,
        VulnerabilityOutcome,
        HeaderOutcome,
        SSLOutcome,
        FileIntegrityOutcome,
        BasicHardeningOutcome,
    )
}


def outcome_from_dict(probe: str, data: dict[str, Any]) -> ProbeOutcome:
    try:
        outcome_type = OUTCOME_TYPES[probe]
    except KeyError:
        raise ValueError(f"Unknown probe: {probe}") from None
    return outcome_type.from_dict(data)


@dataclass
class ScanRecord:
    id: str
    website_id: int
    user_id: int
    url: str
    status: ScanStatus = ScanStatus.PENDING
    trigger: str = "manual"
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    duration_seconds: int | None = None
    overall_score: int | None = None
    threat_level: ThreatLevel | None = None
    probe_results: dict[str, ProbeOutcome] = field(default_factory=dict)
    error_message: str | None = None

    def __post_init__(self) -> None:
        self.status = ScanStatus(self.status)
        if self.threat_level is not None:
            self.threat_level = ThreatLevel(self.threat_level)

    @classmethod
    def new(cls, target: ScanTarget, trigger: str = "manual") -> "ScanRecord":
        return cls(
            id=uuid.uuid4().hex,
            website_id=target.website_id,
            user_id=target.user_id,
            url=target.url,
            trigger=trigger,
        )

    def outcome(self, outcome_type: type[ProbeOutcome]) -> ProbeOutcome | None:
        return self.probe_results.get(outcome_type.probe)

    @property
    def total_vulnerabilities(self) -> int:
        vulnerability = self.outcome(VulnerabilityOutcome)
        return vulnerability.total if vulnerability else 0

    @property
    def threats_detected(self) -> int:
        malware = self.outcome(MalwareOutcome)
        blacklist = self.outcome(BlacklistOutcome)
        count = malware.threats_detected if malware else 0
        if blacklist and blacklist.flagged_by:
            count += 1
        return count

    def apply(self, patch: dict[str, Any]) -> None:
        for key, value in patch.items():
            if not hasattr(self, key):
                raise AttributeError(f"ScanRecord has no field {key!r}")
            setattr(self, key, value)
        self.__post_init__()

    def summary(self) -> dict[str, Any]:
        malware = self.outcome(MalwareOutcome)
        blacklist = self.outcome(BlacklistOutcome)
        ssl = self.outcome(SSLOutcome)
        headers = self.outcome(HeaderOutcome)
        return {
            "scan_id": self.id,
            "website_id": self.website_id,
            "status": self.status.value,
            "overall_score": self.overall_score,
            "threat_level": self.threat_level.value if self.threat_level else None,
            "duration_seconds": self.duration_seconds,
            "completed_at": self.completed_at,
            "malware_status": malware.status.value if malware else None,
            "malware_threats": malware.threats_detected if malware else 0,
            "blacklist_status": blacklist.status.value if blacklist else None,
            "vulnerabilities": self.total_vulnerabilities,
            "ssl_enabled": bool(ssl and ssl.grade != "F"),
            "security_headers_present": headers.present_count if headers else 0,
            "error_message": self.error_message,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "website_id": self.website_id,
            "user_id": self.user_id,
            "url": self.url,
            "status": self.status.value,
            "trigger": self.trigger,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "overall_score": self.overall_score,
            "threat_level": self.threat_level.value if self.threat_level else None,
            "probe_results": {name: outcome.to_dict() for name, outcome in self.probe_results.items()},
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScanRecord":
        return cls(
            id=data["id"],
            website_id=int(data["website_id"]),
            user_id=int(data["user_id"]),
            url=data.get("url") or "",
            status=data.get("status") or ScanStatus.PENDING,
            trigger=data.get("trigger") or "manual",
            created_at=data.get("created_at") or utc_now_iso(),
            completed_at=data.get("completed_at"),
            duration_seconds=data.get("duration_seconds"),
            overall_score=data.get("overall_score"),
            threat_level=data.get("threat_level"),
            probe_results={
                name: outcome_from_dict(name, payload)
                for name, payload in (data.get("probe_results") or {}).items()
            },
            error_message=data.get("error_message"),
        )
