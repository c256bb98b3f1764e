"""
In-memory TTL cache of call results, keyed by call id.

The webhook handler writes here and pollers read from here. The store lives
in one process; running several workers needs an external store instead.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from concierge.logging_config import get_logger
from concierge.metrics import result_cache_entries
from concierge.models import CallResult, DataStatus

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_SWEEP_SECONDS = 5 * 60


@dataclass
class CacheEntry:
    value: CallResult
    inserted_at: float
    expires_at: float


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ResultCache:
    """
    TTL map of call id -> CallResult.

    One live entry per key; `set` replaces the entry and restarts its TTL.
    Entries leave only through `delete`, `clear`, or expiry. An expired entry
    is indistinguishable from a missing one.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # -- helpers (caller holds the lock) ------------------------------------

    def _live_entry(self, key: str, now: float) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _publish_size(self) -> None:
        result_cache_entries.set(len(self._entries))

    # -- public API ---------------------------------------------------------

    def set(self, key: str, value: CallResult, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, inserted_at=now, expires_at=now + ttl)
            self._publish_size()
        logger.debug("result_cached", call_id=key, ttl_seconds=ttl, data_status=value.data_status)

    def get(self, key: str) -> Optional[CallResult]:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            self._publish_size()
            return entry.value if entry else None

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            self._publish_size()
        if removed:
            logger.info("result_cache_deleted", call_id=key)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._publish_size()
        logger.info("result_cache_cleared", removed=count)
        return count

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            self._publish_size()
        if expired:
            logger.info("result_cache_swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def call_ids(self) -> list[str]:
        now = self._clock()
        with self._lock:
            return [key for key, entry in self._entries.items() if now < entry.expires_at]

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            live = [(key, entry) for key, entry in self._entries.items() if now < entry.expires_at]
        return {
            "size": len(live),
            "entries": [
                {
                    "callId": key,
                    "insertedAt": _iso(entry.inserted_at),
                    "expiresAt": _iso(entry.expires_at),
                    "dataStatus": entry.value.data_status.value if entry.value.data_status else None,
                }
                for key, entry in live
            ],
        }

    def update_fetch_status(self, key: str, status: DataStatus, error: Optional[str] = None) -> bool:
        """Record background-fetch progress on an entry without touching its expiry."""
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None:
                return False
            update = {"data_status": status}
            if status == DataStatus.FETCHING:
                update["fetch_attempts"] = entry.value.fetch_attempts + 1
            if error is not None:
                update["fetch_error"] = error
            entry.value = entry.value.model_copy(update=update)
            return True

    def merge_enriched(self, key: str, enriched: CallResult) -> Optional[CallResult]:
        """
        Merge data fetched from the vendor API into a cached webhook result.

        The longer transcript wins; structured data fields present in
        `enriched` override the cached ones. The entry is marked complete and
        keeps its original expiry. Returns None if there was nothing to merge
        into.
        """
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None:
                return None
            current = entry.value

            structured = current.structured.model_dump()
            structured.update(enriched.structured.model_dump(exclude_unset=True))
            transcript = current.transcript
            if len(enriched.transcript) > len(transcript):
                transcript = enriched.transcript

            merged = current.model_copy(update={
                "status": enriched.status,
                "transcript": transcript,
                "analysis": current.analysis.model_copy(update={
                    "summary": enriched.analysis.summary or current.analysis.summary,
                    "success_evaluation": enriched.analysis.success_evaluation or current.analysis.success_evaluation,
                    "structured_data": type(current.structured).model_validate(structured),
                }),
                "duration": enriched.duration or current.duration,
                "ended_reason": enriched.ended_reason if enriched.ended_reason != "unknown" else current.ended_reason,
                "cost": enriched.cost if enriched.cost is not None else current.cost,
                "messages": enriched.messages or current.messages,
                "data_status": DataStatus.COMPLETE,
                "fetched_at": datetime.now(timezone.utc),
                "fetch_error": None,
            })
            entry.value = merged
            return merged

    # -- expiry sweeper -----------------------------------------------------

    async def run_sweeper(self) -> None:
        while True:
            await self._sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())
            logger.info("result_cache_sweeper_started", interval_seconds=self.sweep_interval)

    async def shutdown(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("result_cache_sweeper_stopped")
