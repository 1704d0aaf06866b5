"""Runs every probe against one website and records the scan lifecycle.

A scan moves pending -> running -> completed|failed. Probe failures only
degrade their own slot to the fallback outcome; ``failed`` is reserved for
errors in the orchestration itself, such as the store refusing a write.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol
from urllib.parse import urlparse

from sitescan.clients import SignalClients
from sitescan.config import ScanConfig
from sitescan.models import ProbeOutcome, ScanRecord, ScanStatus, ScanTarget, utc_now_iso
from sitescan.probes import Probe, default_probes
from sitescan.scoring import classify_threat, compute_score

LOGGER = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "scan deadline exceeded"
STALE_SCAN_MESSAGE = "Scan timeout - exceeded maximum duration"
MANUALLY_CLEARED = "Manually cleared"
CLEAR_BATCH_SIZE = 100


class ScanRequestError(ValueError):
    """The caller asked for something that cannot be scanned."""


class InvalidTargetError(ScanRequestError):
    pass


class UnknownWebsiteError(ScanRequestError):
    pass


class ScanInProgressError(RuntimeError):
    def __init__(self, scan_id: str) -> None:
        super().__init__(f"Scan {scan_id} is already running for this website")
        self.scan_id = scan_id


class ScanStore(Protocol):
    def get_website(self, website_id: int, user_id: int) -> dict[str, Any] | None: ...

    def create_scan_record(self, record: ScanRecord) -> None: ...

    def update_scan_record(self, scan_id: str, patch: dict[str, Any]) -> ScanRecord: ...

    def latest_scan_record(self, website_id: int, user_id: int) -> ScanRecord | None: ...

    def list_scan_records(self, website_id: int, user_id: int, limit: int = 20, status=None) -> list[ScanRecord]: ...


@dataclass
class ScanRequest:
    website_id: int
    user_id: int
    url: str | None = None
    credentials: dict[str, str] | None = None
    trigger: str = "scheduled"


def validate_url(url: str | None) -> str:
    if not url or not isinstance(url, str):
        raise InvalidTargetError("A website URL is required")
    parsed = urlparse(url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise InvalidTargetError(f"Invalid website URL: {url}")
    return url.strip()


def _age_seconds(timestamp: str) -> float:
    created = datetime.fromisoformat(timestamp)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - created).total_seconds()


class ScanOrchestrator:
    def __init__(
        self,
        store: ScanStore,
        clients: SignalClients | None = None,
        config: ScanConfig | None = None,
        probes: list[Probe] | None = None,
    ) -> None:
        self.store = store
        self.config = config or ScanConfig()
        self.clients = clients or SignalClients.from_config(self.config)
        self.probes = probes if probes is not None else default_probes(self.clients, self.config)

    def resolve_target(
        self,
        website_id: int,
        url: str | None,
        user_id: int,
        credentials: dict[str, str] | None = None,
    ) -> ScanTarget:
        website = self.store.get_website(website_id, user_id)
        if website is None:
            raise UnknownWebsiteError(f"Website {website_id} not found")
        api_key = (credentials or {}).get("api_key") or website.get("api_key")
        return ScanTarget(
            website_id=website_id,
            user_id=user_id,
            url=validate_url(url or website.get("url")),
            api_key=api_key or None,
        )

    def scan(
        self,
        website_id: int,
        url: str | None,
        user_id: int,
        credentials: dict[str, str] | None = None,
        trigger: str = "manual",
    ) -> ScanRecord:
        """Scan one website and return its terminal record.

        Raises ``ScanRequestError`` for bad input before any record exists;
        after that point it always returns a completed or failed record.
        """
        target = self.resolve_target(website_id, url, user_id, credentials)
        record = ScanRecord.new(target, trigger=trigger)
        gathered: dict[str, ProbeOutcome] = {}
        started = time.monotonic()
        LOGGER.info("Starting scan %s for website=%s url=%s", record.id, website_id, target.url)

        try:
            self.store.create_scan_record(record)
            record = self.store.update_scan_record(record.id, {"status": ScanStatus.RUNNING})

            self._run_probes(target, gathered)
            score = compute_score(gathered)
            threat_level = classify_threat(gathered, score)

            record = self.store.update_scan_record(
                record.id,
                {
                    "status": ScanStatus.COMPLETED,
                    "completed_at": utc_now_iso(),
                    "duration_seconds": round(time.monotonic() - started),
                    "overall_score": score,
                    "threat_level": threat_level,
                    "probe_results": dict(gathered),
                },
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Scan %s failed for website=%s", record.id, website_id)
            return self._mark_failed(record, str(exc) or exc.__class__.__name__, started, gathered)

        LOGGER.info(
            "Scan %s completed: score=%s threat=%s duration=%ss",
            record.id,
            record.overall_score,
            record.threat_level.value if record.threat_level else None,
            record.duration_seconds,
        )
        return record

    def _run_probes(self, target: ScanTarget, gathered: dict[str, ProbeOutcome]) -> dict[str, ProbeOutcome]:
        deadline = self.config.scan_deadline_seconds
        executor = ThreadPoolExecutor(max_workers=max(1, len(self.probes)), thread_name_prefix="scan-probe")
        try:
            futures = {executor.submit(probe.run, target): probe for probe in self.probes}
            _, not_done = wait(futures, timeout=deadline)
            for future, probe in futures.items():
                if future in not_done:
                    LOGGER.warning("Probe %s did not finish before the scan deadline for %s", probe.name, target.url)
                    gathered[probe.name] = probe.outcome_type.fallback_for(DEADLINE_EXCEEDED)
                    continue
                try:
                    gathered[probe.name] = future.result()
                except Exception as exc:  # noqa: BLE001
                    LOGGER.exception("Probe %s crashed for %s", probe.name, target.url)
                    gathered[probe.name] = probe.outcome_type.fallback_for(str(exc) or exc.__class__.__name__)
        finally:
            # late probes keep their threads until their own timeouts fire
            executor.shutdown(wait=False, cancel_futures=True)
        return gathered

    def _mark_failed(
        self,
        record: ScanRecord,
        message: str,
        started: float,
        gathered: dict[str, ProbeOutcome],
    ) -> ScanRecord:
        patch = {
            "status": ScanStatus.FAILED,
            "completed_at": utc_now_iso(),
            "duration_seconds": round(time.monotonic() - started),
            "probe_results": dict(gathered),
            "error_message": message,
        }
        try:
            return self.store.update_scan_record(record.id, patch)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not persist failure of scan %s", record.id)
        record.apply(patch)
        return record

    def ensure_no_running_scan(self, website_id: int, user_id: int) -> None:
        latest = self.store.latest_scan_record(website_id, user_id)
        if latest is None or latest.status.is_terminal:
            return
        age = _age_seconds(latest.created_at)
        if age < self.config.stale_scan_seconds:
            raise ScanInProgressError(latest.id)
        LOGGER.warning("Marking stale scan %s as failed after %.0fs", latest.id, age)
        self.store.update_scan_record(
            latest.id,
            {"status": ScanStatus.FAILED, "completed_at": utc_now_iso(), "error_message": STALE_SCAN_MESSAGE},
        )

    def clear_running_scans(self, website_id: int, user_id: int) -> list[str]:
        cleared = []
        for status in (ScanStatus.RUNNING, ScanStatus.PENDING):
            # cleared records drop out of the status filter, so each pass shrinks the listing
            while True:
                batch = self.store.list_scan_records(website_id, user_id, limit=CLEAR_BATCH_SIZE, status=status)
                if not batch:
                    break
                for record in batch:
                    self.store.update_scan_record(
                        record.id,
                        {"status": ScanStatus.FAILED, "completed_at": utc_now_iso(), "error_message": MANUALLY_CLEARED},
                    )
                    cleared.append(record.id)
        if cleared:
            LOGGER.info("Cleared %s unfinished scans for website=%s", len(cleared), website_id)
        return cleared

    def scan_many(self, requests: Iterable[ScanRequest], max_workers: int = 2) -> list[ScanRecord]:
        """Scan several websites concurrently. Rejected requests are logged and skipped."""

        def _scan_request(request: ScanRequest) -> ScanRecord | None:
            try:
                self.ensure_no_running_scan(request.website_id, request.user_id)
                return self.scan(
                    request.website_id,
                    request.url,
                    request.user_id,
                    credentials=request.credentials,
                    trigger=request.trigger,
                )
            except (ScanRequestError, ScanInProgressError) as exc:
                LOGGER.error("Skipping scan for website=%s: %s", request.website_id, exc)
                return None

        with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="site-scan") as executor:
            futures = [executor.submit(_scan_request, request) for request in requests]
            results = [future.result() for future in futures]
        return [record for record in results if record is not None]
