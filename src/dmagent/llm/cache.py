"""Short-lived memoization of planner decisions."""

from __future__ import annotations

import hashlib
import json
import time
from typing import TYPE_CHECKING

from dmagent.cache import Clock, TTLCache

if TYPE_CHECKING:
    from dmagent.llm.client import AskOptions
    from dmagent.llm.decision import Decision

DECISION_CACHE_TTL = 180.0
DECISION_CACHE_MAX_ENTRIES = 64


def _collapse(text: str) -> str:
    return " ".join(text.split())


def decision_cache_key(
    prompt: str,
    unit_catalog: str,
    tool_catalog: str,
    options: AskOptions,
    env_context: str = "",
) -> str:
    """Hash the decision inputs so whitespace-only differences share one entry."""
    serialized_options = json.dumps(
        {
            "provider": options.provider.strip().lower(),
            "model": options.model.strip().lower(),
            "base_url": options.base_url.strip().rstrip("/").lower(),
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "json_mode": options.json_mode,
        },
        sort_keys=True,
    )
    digest = hashlib.sha256()
    for part in (
        _collapse(prompt),
        _collapse(unit_catalog),
        _collapse(tool_catalog),
        serialized_options,
        _collapse(env_context),
    ):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class DecisionCache:
    """TTL-bounded decision store keyed by :func:`decision_cache_key`."""

    def __init__(
        self,
        ttl: float = DECISION_CACHE_TTL,
        *,
        max_entries: int = DECISION_CACHE_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self._store: TTLCache[Decision] = TTLCache(ttl, max_entries=max_entries, clock=clock)

    @property
    def ttl(self) -> float:
        return self._store.ttl

    def get(self, key: str, now: float | None = None) -> tuple[Decision | None, bool]:
        return self._store.get(key, now)

    def set(self, key: str, value: Decision, now: float | None = None) -> None:
        self._store.set(key, value, now)

    def clear(self) -> None:
        self._store.clear()
