"""
QR Cache Module - School Photo QR Pipeline

In-memory store of rendered QR codes keyed by subject. Entries live for a
fixed TTL; an entry past its expiry is never served, whether or not the
background sweep has removed it yet.
"""

import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    """Rendered QR code plus access bookkeeping."""
    data_url: str
    token: str
    portal_url: str
    subject_name: str
    generated_at: float
    expires_at: float
    access_count: int = 0
    last_accessed: Optional[float] = None

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QRCache:
    """
    TTL cache for rendered QR codes.
    Construct one per process and pass it to the services that use it.
    """

    def __init__(self, default_ttl: float = 3600, sweep_interval: float = 300,
                 clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None when absent or expired."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if not entry.is_valid(now):
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self._hits += 1
            return entry

    def set(self, key: str, value, ttl: Optional[float] = None) -> CacheEntry:
        """
        Store a rendered QR code.

        Args:
            key (str): Cache key
            value: CacheEntry, or a mapping with data_url, token, portal_url
                   and subject_name
            ttl (float): Seconds to live, defaults to the cache TTL

        Returns:
            CacheEntry: The stored entry
        """
        now = self.clock()
        ttl = self.default_ttl if ttl is None else ttl
        if isinstance(value, CacheEntry):
            entry = CacheEntry(**{**asdict(value), 'generated_at': now, 'expires_at': now + ttl})
        else:
            entry = CacheEntry(
                data_url=value['data_url'],
                token=value['token'],
                portal_url=value['portal_url'],
                subject_name=value.get('subject_name', ''),
                generated_at=now,
                expires_at=now + ttl
            )
        with self._lock:
            self._entries[key] = entry
            self._sets += 1
        return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        self.logger.info(f"QR cache cleared ({count} entries)")
        return count

    def purge_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        if expired:
            self.logger.debug(f"QR cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                'size': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': (self._hits / lookups) if lookups else 0.0,
                'sets': self._sets,
                'evictions': self._evictions,
                'sweeper_running': self.is_sweeping(),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Background sweep

    def start(self) -> None:
        """Start the periodic expiry sweep in a daemon thread."""
        if self.is_sweeping():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name='qr-cache-sweeper', daemon=True)
        self._sweeper.start()
        self.logger.info(f"QR cache sweeper started (every {self.sweep_interval}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper and self._sweeper.is_alive():
            self._sweeper.join(timeout=5)
        self._sweeper = None

    def is_sweeping(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.purge_expired()
            except Exception as e:
                self.logger.error(f"QR cache sweep failed: {str(e)}")
