from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

LOGGER = logging.getLogger(__name__)

DEFAULT_VALIDITY = "6 hours"
DEFAULT_VALIDITY_MS = 6 * 3_600_000
INTERVAL_RE = re.compile(r"^(\d+)\s+(\w+)$")
UNIT_MS = {
    "minute": 60_000,
    "minutes": 60_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "day": 86_400_000,
    "days": 86_400_000,
    "week": 604_800_000,
    "weeks": 604_800_000,
}


def parse_interval_to_ms(interval: Optional[str]) -> int:
    match = INTERVAL_RE.match(str(interval or "").strip())
    if not match:
        return DEFAULT_VALIDITY_MS
    unit_ms = UNIT_MS.get(match.group(2).lower())
    if unit_ms is None:
        return DEFAULT_VALIDITY_MS
    return int(match.group(1)) * unit_ms


def validity_to_ms(validity: Union[str, int, float, None]) -> int:
    if validity is None or validity == "":
        return DEFAULT_VALIDITY_MS
    if isinstance(validity, bool):
        return DEFAULT_VALIDITY_MS
    if isinstance(validity, (int, float)):
        # Bare numbers are hours.
        return int(validity * 3_600_000)
    return parse_interval_to_ms(validity)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_fresh(
    last_updated: Union[str, datetime, None],
    validity: Union[str, int, float, None] = DEFAULT_VALIDITY,
    *,
    now: Optional[datetime] = None,
) -> bool:
    updated_at = parse_timestamp(last_updated)
    if updated_at is None:
        return False
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    age_ms = (current - updated_at).total_seconds() * 1000
    return age_ms < validity_to_ms(validity)


@dataclass
class _CacheEntry:
    stored_at: float
    products: list[Any]


class SearchResultCache:
    """In-process TTL cache for retailer search results."""

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, _CacheEntry] = {}

    @staticmethod
    def make_key(search_term: str, tier: str) -> str:
        return f"{search_term or 'default'}_{tier}"

    def get(self, key: str) -> Optional[list[Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = time.time() - entry.stored_at
        if age >= self.ttl_seconds:
            del self._entries[key]
            return None
        LOGGER.info("Search cache hit | key=%s age=%ss", key, round(age))
        return list(entry.products)

    def put(self, key: str, products: list[Any], *, half_expired: bool = False) -> None:
        now = time.time()
        self._prune(now)
        stored_at = now
        if half_expired:
            stored_at -= self.ttl_seconds / 2
        self._entries[key] = _CacheEntry(stored_at=stored_at, products=list(products))

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


__all__ = [
    "DEFAULT_VALIDITY",
    "DEFAULT_VALIDITY_MS",
    "SearchResultCache",
    "is_fresh",
    "parse_interval_to_ms",
    "parse_timestamp",
    "validity_to_ms",
]
