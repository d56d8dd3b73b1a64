from __future__ import annotations

import os
from pathlib import Path

from dmagent.cache import TTLCache
from dmagent.llm.cache import DecisionCache, decision_cache_key
from dmagent.llm.client import AskOptions
from dmagent.llm.decision import Decision
from dmagent.units.cache import CatalogCache, Fingerprint
from dmagent.units.models import Entry


def test_ttl_cache_expires_after_ttl() -> None:
    cache: TTLCache[str] = TTLCache(10.0)
    cache.set("k", "v", now=100.0)

    assert cache.get("k", now=110.0) == ("v", True)
    assert cache.get("k", now=110.5) == (None, False)
    assert len(cache) == 0


def test_ttl_cache_reads_do_not_extend_lifetime() -> None:
    cache: TTLCache[str] = TTLCache(10.0)
    cache.set("k", "v", now=0.0)

    cache.get("k", now=9.0)

    assert cache.get("k", now=11.0) == (None, False)


def test_ttl_cache_evicts_least_recently_used() -> None:
    cache: TTLCache[int] = TTLCache(60.0, max_entries=2)
    cache.set("a", 1, now=0.0)
    cache.set("b", 2, now=0.0)
    cache.get("a", now=1.0)

    cache.set("c", 3, now=2.0)

    assert cache.get("a", now=3.0) == (1, True)
    assert cache.get("b", now=3.0) == (None, False)
    assert cache.get("c", now=3.0) == (3, True)


def test_ttl_cache_uses_injected_clock() -> None:
    now = {"value": 0.0}
    cache: TTLCache[str] = TTLCache(5.0, clock=lambda: now["value"])
    cache.set("k", "v")

    now["value"] = 6.0

    assert cache.get("k") == (None, False)


def test_decision_cache_key_ignores_whitespace_and_case() -> None:
    first = decision_cache_key(
        "list   files\n", "- a", "- b", AskOptions(provider="OpenAI", model="GPT-4o", base_url="https://x/v1/")
    )
    second = decision_cache_key(
        "list files", "- a", "- b", AskOptions(provider="openai", model="gpt-4o", base_url="https://X/v1")
    )

    assert first == second


def test_decision_cache_key_changes_with_catalog() -> None:
    options = AskOptions(provider="openai")

    assert decision_cache_key("q", "- a", "", options) != decision_cache_key("q", "- b", "", options)


def test_decision_cache_round_trip_and_expiry() -> None:
    cache = DecisionCache(ttl=30.0)
    decision = Decision(action="answer", answer="hi")
    cache.set("k", decision, now=0.0)

    assert cache.get("k", now=30.0) == (decision, True)
    assert cache.get("k", now=31.0) == (None, False)


def test_catalog_cache_invalidates_when_file_changes(tmp_path: Path) -> None:
    source = tmp_path / "unit.sh"
    source.write_text("echo hi\n", encoding="utf-8")
    cache = CatalogCache()
    entries = [Entry(name="unit", path=str(source))]
    cache.set_entries("k", entries, Fingerprint.capture(tmp_path, [source]))

    assert cache.get_entries("k") == entries

    stamp = source.stat().st_mtime_ns + 5_000_000_000
    os.utime(source, ns=(stamp, stamp))

    assert cache.get_entries("k") is None


def test_catalog_cache_invalidate_by_base_dir(tmp_path: Path) -> None:
    cache = CatalogCache()
    fingerprint = Fingerprint.capture(tmp_path, [])
    cache.set_entries("one|with-functions", [], fingerprint)
    cache.set_entries("two|with-functions", [], fingerprint)

    cache.invalidate("one")

    assert cache.get_entries("one|with-functions") is None
    assert cache.get_entries("two|with-functions") == []
