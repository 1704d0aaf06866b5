from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from sitescan.models import (
    BlacklistOutcome,
    MalwareOutcome,
    ScanRecord,
    ScanStatus,
    utc_now_iso,
)

LOGGER = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    pass


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS websites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    api_key TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_records (
    id TEXT PRIMARY KEY,
    website_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    url TEXT NOT NULL,
    status TEXT NOT NULL,
    trigger TEXT NOT NULL DEFAULT 'manual',
    created_at TEXT NOT NULL,
    completed_at TEXT,
    duration_seconds INTEGER,
    overall_score INTEGER,
    threat_level TEXT,
    malware_status TEXT,
    blacklist_status TEXT,
    threats_detected INTEGER NOT NULL DEFAULT 0,
    vulnerabilities_count INTEGER NOT NULL DEFAULT 0,
    probe_results_json TEXT NOT NULL DEFAULT '{}',
    error_message TEXT,
    FOREIGN KEY (website_id) REFERENCES websites(id)
);

CREATE INDEX IF NOT EXISTS idx_scan_records_website ON scan_records(website_id, user_id);
CREATE INDEX IF NOT EXISTS idx_scan_records_status ON scan_records(status);
CREATE INDEX IF NOT EXISTS idx_scan_records_created_at ON scan_records(created_at);
"""

RECORD_COLUMNS = (
    "id",
    "website_id",
    "user_id",
    "url",
    "status",
    "trigger",
    "created_at",
    "completed_at",
    "duration_seconds",
    "overall_score",
    "threat_level",
    "malware_status",
    "blacklist_status",
    "threats_detected",
    "vulnerabilities_count",
    "probe_results_json",
    "error_message",
)


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    LOGGER.info("SQLite initialized at %s", db_path)


def _record_row(record: ScanRecord) -> tuple:
    malware = record.outcome(MalwareOutcome)
    blacklist = record.outcome(BlacklistOutcome)
    payload = record.to_dict()
    return (
        record.id,
        record.website_id,
        record.user_id,
        record.url,
        record.status.value,
        record.trigger,
        record.created_at,
        record.completed_at,
        record.duration_seconds,
        record.overall_score,
        payload["threat_level"],
        malware.status.value if malware else None,
        blacklist.status.value if blacklist else None,
        record.threats_detected,
        record.total_vulnerabilities,
        json.dumps(payload["probe_results"], ensure_ascii=False),
        record.error_message,
    )


def _row_to_record(row: sqlite3.Row) -> ScanRecord:
    data = dict(row)
    data["probe_results"] = json.loads(data.pop("probe_results_json") or "{}")
    return ScanRecord.from_dict(data)


def _insert_record(conn: sqlite3.Connection, record: ScanRecord) -> None:
    placeholders = ", ".join("?" for _ in RECORD_COLUMNS)
    conn.execute(
        f"INSERT INTO scan_records ({', '.join(RECORD_COLUMNS)}) VALUES ({placeholders})",
        _record_row(record),
    )


def _rewrite_record(conn: sqlite3.Connection, record: ScanRecord) -> None:
    # rowid must stay stable: listings break created_at ties with it.
    row = _record_row(record)
    assignments = ", ".join(f"{column} = ?" for column in RECORD_COLUMNS[1:])
    conn.execute(f"UPDATE scan_records SET {assignments} WHERE id = ?", (*row[1:], row[0]))


def register_website(db_path: str, user_id: int, name: str, url: str, api_key: str | None = None) -> int:
    with connect(db_path) as conn:
        cursor = conn.execute(
            "INSERT INTO websites (user_id, name, url, api_key, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, name, url, api_key, utc_now_iso()),
        )
        conn.commit()
        website_id = int(cursor.lastrowid)
    LOGGER.info("Registered website %s (%s) for user %s", website_id, url, user_id)
    return website_id


def get_website(db_path: str, website_id: int, user_id: int) -> dict[str, Any] | None:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM websites WHERE id = ? AND user_id = ?",
            (website_id, user_id),
        ).fetchone()
    return dict(row) if row else None


def create_scan_record(db_path: str, record: ScanRecord) -> None:
    with connect(db_path) as conn:
        existing = conn.execute("SELECT 1 FROM scan_records WHERE id = ?", (record.id,)).fetchone()
        if existing:
            raise ValueError(f"Scan record {record.id} already exists")
        _insert_record(conn, record)
        conn.commit()
    LOGGER.info("Created scan record %s for website %s", record.id, record.website_id)


def update_scan_record(db_path: str, scan_id: str, patch: dict[str, Any]) -> ScanRecord:
    """Apply ``patch`` to a stored record in one transaction.

    Status changes must move forward (pending -> running -> completed|failed);
    terminal records are never rewritten.
    """
    with connect(db_path) as conn:
        row = conn.execute("SELECT * FROM scan_records WHERE id = ?", (scan_id,)).fetchone()
        if row is None:
            raise KeyError(scan_id)
        record = _row_to_record(row)
        if record.status.is_terminal:
            raise InvalidTransitionError(f"Scan {scan_id} is already {record.status.value}")
        if "status" in patch:
            target = ScanStatus(patch["status"])
            if target != record.status and not record.status.can_transition(target):
                raise InvalidTransitionError(
                    f"Scan {scan_id} cannot move from {record.status.value} to {target.value}"
                )
        record.apply(patch)
        _rewrite_record(conn, record)
        conn.commit()
    LOGGER.info("Updated scan record %s -> %s", scan_id, record.status.value)
    return record


def get_scan_record(db_path: str, scan_id: str, user_id: int | None = None) -> ScanRecord | None:
    query = "SELECT * FROM scan_records WHERE id = ?"
    params: list[Any] = [scan_id]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    with connect(db_path) as conn:
        row = conn.execute(query, params).fetchone()
    return _row_to_record(row) if row else None


def list_scan_records(
    db_path: str,
    website_id: int,
    user_id: int,
    limit: int = 20,
    status: ScanStatus | str | None = None,
) -> list[ScanRecord]:
    query = "SELECT * FROM scan_records WHERE website_id = ? AND user_id = ?"
    params: list[Any] = [website_id, user_id]
    if status is not None:
        query += " AND status = ?"
        params.append(ScanStatus(status).value)
    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(limit)
    with connect(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_record(row) for row in rows]


def latest_scan_record(db_path: str, website_id: int, user_id: int) -> ScanRecord | None:
    records = list_scan_records(db_path, website_id, user_id, limit=1)
    return records[0] if records else None


def scan_stats(db_path: str, user_id: int | None = None) -> dict[str, int]:
    query = """
        SELECT
            COUNT(*) AS total_scans,
            COALESCE(SUM(CASE WHEN malware_status = 'clean' AND blacklist_status = 'clean' THEN 1 ELSE 0 END), 0) AS clean_sites,
            COALESCE(SUM(threats_detected), 0) AS threats_detected,
            COALESCE(SUM(CASE WHEN threat_level = 'critical' THEN 1 ELSE 0 END), 0) AS critical_issues
        FROM scan_records
        WHERE status = 'completed'
    """
    params: list[Any] = []
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    with connect(db_path) as conn:
        row = conn.execute(query, params).fetchone()
    return {key: int(row[key]) for key in ("total_scans", "clean_sites", "threats_detected", "critical_issues")}


def delete_scan_records_before(db_path: str, cutoff_iso: str, dry_run: bool = False) -> int:
    """Remove finished scan records created before ``cutoff_iso``. Running scans are kept."""
    where = "created_at < ? AND status IN ('completed', 'failed')"
    with connect(db_path) as conn:
        if dry_run:
            row = conn.execute(f"SELECT COUNT(*) FROM scan_records WHERE {where}", (cutoff_iso,)).fetchone()
            return int(row[0])
        cursor = conn.execute(f"DELETE FROM scan_records WHERE {where}", (cutoff_iso,))
        conn.commit()
        removed = cursor.rowcount
    LOGGER.info("Removed %s scan records older than %s", removed, cutoff_iso)
    return removed


class SqliteScanStore:
    """Scan record store backed by one SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    def register_website(self, user_id: int, name: str, url: str, api_key: str | None = None) -> int:
        return register_website(self.db_path, user_id, name, url, api_key)

    def get_website(self, website_id: int, user_id: int) -> dict[str, Any] | None:
        return get_website(self.db_path, website_id, user_id)

    def create_scan_record(self, record: ScanRecord) -> None:
        create_scan_record(self.db_path, record)

    def update_scan_record(self, scan_id: str, patch: dict[str, Any]) -> ScanRecord:
        return update_scan_record(self.db_path, scan_id, patch)

    def get_scan_record(self, scan_id: str, user_id: int | None = None) -> ScanRecord | None:
        return get_scan_record(self.db_path, scan_id, user_id)

    def list_scan_records(self, website_id: int, user_id: int, limit: int = 20, status=None) -> list[ScanRecord]:
        return list_scan_records(self.db_path, website_id, user_id, limit=limit, status=status)

    def latest_scan_record(self, website_id: int, user_id: int) -> ScanRecord | None:
        return latest_scan_record(self.db_path, website_id, user_id)

    def scan_stats(self, user_id: int | None = None) -> dict[str, int]:
        return scan_stats(self.db_path, user_id)


def write_json_file(path: str | Path, payload: dict | list) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
