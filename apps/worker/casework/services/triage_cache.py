"""Bounded in-memory cache of triage results.

Entries expire after a fixed TTL. When full, the oldest *inserted* entry is
evicted; reads do not refresh position. One lock guards every read and
mutation because the cache is shared by concurrently running triage jobs and
by API-layer reads.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

from casework.core.identifiers import OfficeId
from casework.schemas.triage import TriageCacheEntry

_Key = tuple[str, str]


class TriageCache:
    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1000,
        *,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[_Key, tuple[float, TriageCacheEntry]] = OrderedDict()

    @staticmethod
    def _key(office: OfficeId | str, email_id: str) -> _Key:
        return (str(office), str(email_id))

    def get(self, office: OfficeId | str, email_id: str) -> TriageCacheEntry | None:
        key = self._key(office, email_id)
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            inserted_at, entry = item
            if self._clock() - inserted_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return entry

    def set(self, entry: TriageCacheEntry) -> None:
        key = self._key(entry.office_id, entry.email_id)
        with self._lock:
            # Re-inserting counts as a new insertion.
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._logger.debug("Triage cache full; evicted email %s", evicted[1])
            self._entries[key] = (self._clock(), entry)

    def delete(self, office: OfficeId | str, email_id: str) -> bool:
        with self._lock:
            return self._entries.pop(self._key(office, email_id), None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (inserted_at, _) in self._entries.items() if now - inserted_at > self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
