from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sitescan.storage import delete_scan_records_before, init_db

LOGGER = logging.getLogger(__name__)


def prune_cache_dir(cache_dir: Path, max_age_seconds: float, dry_run: bool = False) -> int:
    """Remove cached lookup payloads last written more than ``max_age_seconds`` ago."""
    if not cache_dir.is_dir():
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    for entry in cache_dir.glob("*.json"):
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
            if not dry_run:
                entry.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not prune cache entry %s: %s", entry, exc)
            continue
        removed += 1
    return removed


def apply_retention(settings: dict[str, Any], dry_run: bool = False) -> dict[str, int | bool]:
    retention = settings.get("retention", {})
    if not bool(retention.get("enabled", False)):
        return {"scans_removed": 0, "cache_removed": 0, "dry_run": dry_run}

    scans_days = int(retention.get("scans_days", 90))
    cache_days = int(retention.get("cache_days", 7))

    db_path = str(settings.get("paths", {}).get("db_path", "/data/sitescan.db"))
    cache_dir = Path(str(settings.get("cache", {}).get("dir", "/data/cache/sitescan")))

    cutoff = (datetime.now(timezone.utc) - timedelta(days=scans_days)).replace(microsecond=0).isoformat()
    init_db(db_path)
    scans_removed = delete_scan_records_before(db_path, cutoff, dry_run=dry_run)
    cache_removed = prune_cache_dir(cache_dir, cache_days * 86400, dry_run=dry_run)

    LOGGER.info(
        "Retention %s: %s scan records, %s cache entries",
        "dry run" if dry_run else "applied",
        scans_removed,
        cache_removed,
    )
    return {"scans_removed": scans_removed, "cache_removed": cache_removed, "dry_run": dry_run}
