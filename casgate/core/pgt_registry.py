import asyncio
import threading
import time
from collections import OrderedDict
from typing import Optional


class PGTRegistry:
    """
    Maps a proxy-granting-ticket IOU to the PGT ID the CAS server delivers
    out of band on the /pgtCallback endpoint.

    The callback is unauthenticated, so entries expire after `ttl` seconds
    and the oldest ones are evicted once `max_entries` is exceeded.
    A missing IOU means "not delivered yet", never an error.
    """

    def __init__(self, ttl: float = 300.0, max_entries: int = 10000, clock=time.monotonic):
        if ttl <= 0 or max_entries < 1:
            raise ValueError("PGTRegistry needs a positive ttl and max_entries")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        # pgt_iou -> (pgt_id, recorded_at), oldest first
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def record(self, pgt_iou: str, pgt_id: str) -> None:
        """Upsert; the last write for an IOU wins."""
        now = self._clock()
        with self._lock:
            self._entries.pop(pgt_iou, None)
            self._entries[pgt_iou] = (pgt_id, now)
            self._purge(now)

    def lookup(self, pgt_iou: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(pgt_iou)
            if entry is None:
                return None
            pgt_id, recorded_at = entry
            if now - recorded_at >= self.ttl:
                del self._entries[pgt_iou]
                return None
            return pgt_id

    def discard(self, pgt_iou: str) -> None:
        with self._lock:
            self._entries.pop(pgt_iou, None)

    async def wait_for(self, pgt_iou: str, timeout: float = 5.0, interval: float = 0.1) -> Optional[str]:
        """Poll until the PGT for `pgt_iou` arrives or `timeout` seconds pass."""
        deadline = self._clock() + timeout
        while True:
            pgt_id = self.lookup(pgt_iou)
            if pgt_id is not None or self._clock() >= deadline:
                return pgt_id
            await asyncio.sleep(interval)

    def _purge(self, now: float) -> None:
        # Caller holds the lock. Insertion order is recording order.
        while self._entries:
            oldest_iou, (_, recorded_at) = next(iter(self._entries.items()))
            if now - recorded_at < self.ttl and len(self._entries) <= self.max_entries:
                break
            del self._entries[oldest_iou]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, pgt_iou: str) -> bool:
        return self.lookup(pgt_iou) is not None
