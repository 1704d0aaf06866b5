from __future__ import annotations

import math
from typing import Mapping

from sitescan.models import (
    BlacklistOutcome,
    BlacklistStatus,
    HeaderOutcome,
    MalwareOutcome,
    MalwareStatus,
    ProbeOutcome,
    SSLOutcome,
    ThreatLevel,
    VulnerabilityOutcome,
)

MALWARE_DEDUCTIONS = {
    MalwareStatus.INFECTED: 30,
    MalwareStatus.SUSPICIOUS: 15,
    MalwareStatus.ERROR: 5,
    MalwareStatus.CLEAN: 0,
}
BLACKLIST_DEDUCTIONS = {
    BlacklistStatus.BLACKLISTED: 25,
    BlacklistStatus.ERROR: 3,
    BlacklistStatus.CLEAN: 0,
}
HEADER_WEIGHT = 10
# Only F, D, C and B deduct. The A range, T (trust issue), E and M (name mismatch) score 0.
SSL_GRADE_DEDUCTIONS = {"F": 10, "D": 7, "C": 7, "B": 3}


def _outcome(results: Mapping[str, ProbeOutcome], outcome_type):
    outcome = results.get(outcome_type.probe)
    if isinstance(outcome, outcome_type):
        return outcome
    return outcome_type.fallback_for("probe result missing")


def vulnerability_deduction(total: int) -> int:
    if total > 10:
        return 25
    if total > 5:
        return 20
    if total > 0:
        return 15
    return 0


def score_breakdown(results: Mapping[str, ProbeOutcome]) -> dict[str, float]:
    """Points deducted from 100 per probe. Missing outcomes count as their fallback."""
    malware = _outcome(results, MalwareOutcome)
    blacklist = _outcome(results, BlacklistOutcome)
    vulnerability = _outcome(results, VulnerabilityOutcome)
    headers = _outcome(results, HeaderOutcome)
    ssl = _outcome(results, SSLOutcome)
    return {
        MalwareOutcome.probe: MALWARE_DEDUCTIONS[malware.status],
        BlacklistOutcome.probe: BLACKLIST_DEDUCTIONS[blacklist.status],
        VulnerabilityOutcome.probe: vulnerability_deduction(vulnerability.total),
        HeaderOutcome.probe: HEADER_WEIGHT * (1 - headers.present_count / headers.total_headers),
        SSLOutcome.probe: SSL_GRADE_DEDUCTIONS.get(ssl.grade.upper(), 0),
    }


def compute_score(results: Mapping[str, ProbeOutcome]) -> int:
    raw = 100 - sum(score_breakdown(results).values())
    clamped = min(100.0, max(0.0, raw))
    # round half up, not banker's rounding
    return int(math.floor(clamped + 0.5))


def classify_threat(results: Mapping[str, ProbeOutcome], score: int) -> ThreatLevel:
    malware = _outcome(results, MalwareOutcome)
    blacklist = _outcome(results, BlacklistOutcome)
    vulnerability = _outcome(results, VulnerabilityOutcome)

    if malware.status == MalwareStatus.INFECTED or blacklist.status == BlacklistStatus.BLACKLISTED:
        return ThreatLevel.CRITICAL
    if score < 50 or malware.status == MalwareStatus.SUSPICIOUS:
        return ThreatLevel.HIGH
    if score < 75 or vulnerability.total > 5:
        return ThreatLevel.MEDIUM
    return ThreatLevel.LOW
