from __future__ import annotations

import os
import time

from sitescan.cache import build_cache_key, load_cached_payload, store_cached_payload


def test_build_cache_key_stable():
    k1 = build_cache_key("wpscan", "plugins/akismet", {"v": 3})
    k2 = build_cache_key("wpscan", "plugins/akismet", {"v": 3})
    assert k1 == k2


def test_build_cache_key_changes_with_subject():
    assert build_cache_key("wpscan", "plugins/akismet") != build_cache_key("wpscan", "themes/akismet")


def test_store_and_load_cached_payload(tmp_path):
    cache_dir = tmp_path / "cache"
    key = build_cache_key("wpscan", "plugins/akismet")
    store_cached_payload(cache_dir, key, [{"title": "XSS"}])

    assert load_cached_payload(cache_dir, key, ttl_seconds=60) == [{"title": "XSS"}]


def test_cache_miss_and_expiry(tmp_path):
    cache_dir = tmp_path / "cache"
    key = build_cache_key("wpscan", "themes/astra")
    assert load_cached_payload(cache_dir, key, ttl_seconds=60) is None

    store_cached_payload(cache_dir, key, [])
    stale = time.time() - 120
    os.utime(cache_dir / f"{key}.json", (stale, stale))
    assert load_cached_payload(cache_dir, key, ttl_seconds=60) is None


def test_unreadable_entry_is_ignored(tmp_path):
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    key = build_cache_key("wpscan", "wordpresses/642")
    (cache_dir / f"{key}.json").write_text("{not json", encoding="utf-8")
    assert load_cached_payload(cache_dir, key, ttl_seconds=60) is None
