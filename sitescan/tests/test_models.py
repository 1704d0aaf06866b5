from __future__ import annotations

import pytest

from sitescan.models import (
    OUTCOME_TYPES,
    BlacklistOutcome,
    BlacklistStatus,
    HeaderOutcome,
    MalwareOutcome,
    MalwareStatus,
    ScanRecord,
    ScanStatus,
    ScanTarget,
    SSLOutcome,
    ThreatLevel,
    VulnerabilityOutcome,
    outcome_from_dict,
)


def test_status_transitions_only_move_forward():
    assert ScanStatus.PENDING.can_transition(ScanStatus.RUNNING)
    assert ScanStatus.PENDING.can_transition(ScanStatus.FAILED)
    assert ScanStatus.RUNNING.can_transition(ScanStatus.COMPLETED)
    assert ScanStatus.RUNNING.can_transition(ScanStatus.FAILED)
    assert not ScanStatus.RUNNING.can_transition(ScanStatus.PENDING)
    assert not ScanStatus.COMPLETED.can_transition(ScanStatus.RUNNING)
    assert not ScanStatus.FAILED.can_transition(ScanStatus.COMPLETED)
    assert ScanStatus.COMPLETED.is_terminal and ScanStatus.FAILED.is_terminal


def test_threat_levels_are_ordered():
    ranks = [level.rank for level in (ThreatLevel.LOW, ThreatLevel.MEDIUM, ThreatLevel.HIGH, ThreatLevel.CRITICAL)]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == 4


def test_scan_target_derived_fields():
    target = ScanTarget(website_id=1, user_id=2, url="https://Example.COM/blog/")
    assert target.hostname == "example.com"
    assert target.base_url == "https://Example.COM/blog"
    assert target.is_https
    assert not ScanTarget(1, 2, "http://example.com").is_https


@pytest.mark.parametrize("outcome_type", list(OUTCOME_TYPES.values()))
def test_every_fallback_is_fully_populated(outcome_type):
    outcome = outcome_type.fallback_for("boom")
    payload = outcome.to_dict()
    assert outcome.fallback is True
    assert outcome.error == "boom"
    assert all(value is not None for key, value in payload.items() if key != "wordpress_version")


def test_fallback_values_match_documented_defaults():
    malware = MalwareOutcome.fallback_for("x")
    assert malware.status == MalwareStatus.ERROR
    assert (malware.threats_detected, malware.engines_detected, malware.total_engines) == (0, 0, 0)

    blacklist = BlacklistOutcome.fallback_for("x")
    assert blacklist.status == BlacklistStatus.ERROR
    assert blacklist.services_checked == ["Connection Test"]

    ssl = SSLOutcome.fallback_for("x")
    assert ssl.grade == "T" and ssl.cert_expiry_days == 0 and ssl.warnings is True

    assert VulnerabilityOutcome.fallback_for("x").approximate is True
    assert HeaderOutcome.fallback_for("x").present_count == 0


def test_blacklist_sources_are_deduplicated_in_order():
    outcome = BlacklistOutcome(
        status="blacklisted",
        services_checked=["multi.uribl.com", "TLD Analysis", "multi.uribl.com"],
        flagged_by=["TLD Analysis", "TLD Analysis"],
    )
    assert outcome.status == BlacklistStatus.BLACKLISTED
    assert outcome.services_checked == ["multi.uribl.com", "TLD Analysis"]
    assert outcome.flagged_by == ["TLD Analysis"]


def test_outcome_from_dict_dispatches_and_ignores_unknown_keys():
    outcome = outcome_from_dict("headers", {"hsts": True, "csp": True, "legacy": 1})
    assert isinstance(outcome, HeaderOutcome)
    assert outcome.present_count == 2

    with pytest.raises(ValueError):
        outcome_from_dict("screenshots", {})


def test_record_round_trips_through_dict():
    record = ScanRecord.new(ScanTarget(3, 4, "https://example.com"), trigger="scheduled")
    record.apply(
        {
            "status": "completed",
            "overall_score": 64,
            "threat_level": "medium",
            "probe_results": {
                "malware": MalwareOutcome(status="suspicious", threats_detected=1, evidence=["sig"]),
                "blacklist": BlacklistOutcome(status="blacklisted", flagged_by=["multi.surbl.org"]),
                "vulnerability": VulnerabilityOutcome(core_vulnerabilities=2, plugin_vulnerabilities=1),
            },
        }
    )

    restored = ScanRecord.from_dict(record.to_dict())

    assert restored.status == ScanStatus.COMPLETED
    assert restored.threat_level == ThreatLevel.MEDIUM
    assert restored.overall_score == 64
    assert restored.probe_results["malware"] == record.probe_results["malware"]
    assert restored.total_vulnerabilities == 3
    assert restored.threats_detected == 2
    assert restored.trigger == "scheduled"


def test_apply_rejects_unknown_fields():
    record = ScanRecord.new(ScanTarget(1, 1, "https://example.com"))
    with pytest.raises(AttributeError):
        record.apply({"score": 10})


def test_summary_reports_headline_fields():
    record = ScanRecord.new(ScanTarget(1, 1, "https://example.com"))
    record.probe_results = {
        "ssl": SSLOutcome(grade="A"),
        "headers": HeaderOutcome(hsts=True, csp=True, frame_options=True),
    }
    summary = record.summary()
    assert summary["ssl_enabled"] is True
    assert summary["security_headers_present"] == 3
    assert summary["malware_status"] is None
    assert summary["status"] == "pending"
