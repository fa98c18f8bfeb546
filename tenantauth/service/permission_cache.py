from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

PERMISSION_PREFIX = "perm"
TENANT_SLUG_PREFIX = "tenant:slug"
ALL_PERMISSIONS_PATTERN = f"{PERMISSION_PREFIX}:*"


def permission_key(tenant_id: str, user_id: str) -> str:
    return f"{PERMISSION_PREFIX}:{tenant_id}:{user_id}"


def tenant_permissions_pattern(tenant_id: str) -> str:
    return f"{PERMISSION_PREFIX}:{tenant_id}:*"


def user_permissions_pattern(user_id: str) -> str:
    return f"{PERMISSION_PREFIX}:*:{user_id}"


def tenant_slug_key(slug: str) -> str:
    return f"{TENANT_SLUG_PREFIX}:{slug.lower()}"


def pattern_may_match(pattern: str, prefix: str) -> bool:
    """True when a glob pattern can match some key that starts with ``prefix``."""
    literal = re.split(r"[*?\[]", pattern, maxsplit=1)[0]
    return literal.startswith(prefix) or prefix.startswith(literal)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    # When the computation that produced ``value`` started reading the store
    filled_at: datetime
    expires_at: datetime


class LocalCache:
    """Per-instance cache of derived state, evicted by invalidation messages.

    Reads never take the lock: every write swaps a whole ``CacheEntry`` into
    the dict instead of mutating one in place. Writers (fills and evictions)
    serialize on ``_write_lock``.

    Each applied invalidation leaves a timestamp behind (per key and per
    pattern). A fill whose computation started before a recorded
    invalidation for that key is refused, and an invalidation only evicts
    entries filled before its own timestamp, so replaying an old message
    never discards fresher data.
    """

    def __init__(
        self,
        ttl: timedelta,
        *,
        name: str = "cache",
        max_entries: int = 10_000,
    ) -> None:
        self.ttl = ttl
        self.name = name
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}
        self._key_marks: Dict[str, datetime] = {}
        self._pattern_marks: Dict[str, datetime] = {}
        self._write_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def keys(self) -> List[str]:
        return list(self._entries)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._now():
            return None
        return entry

    def get(self, key: str) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def fill(self, key: str, value: Any, *, started_at: datetime) -> bool:
        """Store ``value`` unless an invalidation newer than ``started_at`` was applied."""
        with self._write_lock:
            mark = self._latest_mark(key)
            if mark is not None and mark >= started_at:
                logger.debug(
                    "cache_fill_discarded",
                    cache=self.name,
                    key=key,
                    started_at=started_at.isoformat(),
                    invalidated_at=mark.isoformat(),
                )
                return False
            if len(self._entries) >= self.max_entries and key not in self._entries:
                self._drop_expired()
                if len(self._entries) >= self.max_entries:
                    # Oldest fill goes first
                    oldest = min(self._entries, key=lambda k: self._entries[k].filled_at)
                    self._entries.pop(oldest, None)
            self._entries[key] = CacheEntry(
                value=value,
                filled_at=started_at,
                expires_at=self._now() + self.ttl,
            )
            return True

    def invalidate_keys(self, keys: Iterable[str], timestamp: datetime) -> int:
        """Apply a key invalidation; returns how many keys were not stale."""
        applied = 0
        with self._write_lock:
            for key in keys:
                previous = self._key_marks.get(key)
                self._evict_if_older(key, timestamp)
                if previous is not None and previous >= timestamp:
                    continue
                self._key_marks[key] = timestamp
                applied += 1
            self._prune_marks()
        return applied

    def invalidate_pattern(self, pattern: str, timestamp: datetime) -> bool:
        """Apply a glob-pattern invalidation; False when a newer one was already applied."""
        with self._write_lock:
            for key in [k for k in self._entries if fnmatchcase(k, pattern)]:
                self._evict_if_older(key, timestamp)
            previous = self._pattern_marks.get(pattern)
            if previous is not None and previous >= timestamp:
                return False
            self._pattern_marks[pattern] = timestamp
            self._prune_marks()
            return True

    def clear(self) -> None:
        with self._write_lock:
            self._entries = {}
            self._key_marks = {}
            self._pattern_marks = {}

    def _evict_if_older(self, key: str, timestamp: datetime) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.filled_at < timestamp:
            self._entries.pop(key, None)

    def _latest_mark(self, key: str) -> Optional[datetime]:
        marks = [
            ts
            for pattern, ts in self._pattern_marks.items()
            if fnmatchcase(key, pattern)
        ]
        key_mark = self._key_marks.get(key)
        if key_mark is not None:
            marks.append(key_mark)
        return max(marks) if marks else None

    def _drop_expired(self) -> None:
        now = self._now()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            self._entries.pop(key, None)

    def _prune_marks(self) -> None:
        # A mark only matters while a computation that started before it can
        # still try to fill, which is bounded well below the entry TTL.
        cutoff = self._now() - self.ttl
        for marks in (self._key_marks, self._pattern_marks):
            for key in [k for k, ts in marks.items() if ts < cutoff]:
                marks.pop(key, None)
