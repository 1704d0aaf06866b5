from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


def build_cache_key(signal: str, subject: str, context: dict[str, Any] | None = None) -> str:
    payload = {
        "signal": signal,
        "subject": subject,
        "context": context or {},
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _cache_file(cache_dir: Path, cache_key: str) -> Path:
    return cache_dir / f"{cache_key}.json"


def load_cached_payload(cache_dir: Path, cache_key: str, ttl_seconds: int) -> Any | None:
    cache_file = _cache_file(cache_dir, cache_key)
    if not cache_file.exists():
        return None

    age = time.time() - cache_file.stat().st_mtime
    if age > ttl_seconds:
        return None

    try:
        with cache_file.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable cache entry %s: %s", cache_file, exc)
        return None


def store_cached_payload(cache_dir: Path, cache_key: str, payload: Any) -> None:
    cache_dir.mkdir(parents=True, exist_ok=True)
    cache_file = _cache_file(cache_dir, cache_key)
    with cache_file.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False)
