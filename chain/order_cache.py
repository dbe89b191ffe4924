# chain_sync/chain/order_cache.py
"""
Read-through cache over the full ledger order list.

One immutable snapshot is held at a time; a refresh builds a new snapshot
and swaps it in with a single assignment, so readers holding the old one
keep a consistent view.
"""

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from config import CHAIN_ORDER_CACHE_TTL_MS, CHAIN_ORDER_MAX_CACHE_AGE_MS, now_ms
from logger import get_logger
from models import ChainOrder

log = get_logger("order_cache")


@dataclass(frozen=True)
class CacheEntry:
    orders: Tuple[ChainOrder, ...]
    by_id: Mapping[str, ChainOrder]
    fetched_at: int


class OrderCache:
    def __init__(
        self,
        fetch_all: Callable[[], List[ChainOrder]],
        ttl_ms: int = CHAIN_ORDER_CACHE_TTL_MS,
        max_age_ms: int = CHAIN_ORDER_MAX_CACHE_AGE_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self._fetch_all = fetch_all
        self.ttl_ms = ttl_ms
        self.max_age_ms = max_age_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: Optional[CacheEntry] = None
        self._reset_stats()

    def _reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._last_fetch_at: Optional[int] = None
        self._stale_served = 0
        self._last_error: Optional[str] = None
        self._degraded = False

    # ---------- Snapshot ----------
    def _snapshot(self, force_refresh: bool = False) -> CacheEntry:
        now = self._clock()
        with self._lock:
            entry = self._entry
            if not force_refresh and entry is not None and now - entry.fetched_at < self.ttl_ms:
                self._hits += 1
                return entry
            self._misses += 1

        # fetch outside the lock; concurrent refreshes are allowed, last one wins
        log.info(f"Refreshing ledger order cache (force={force_refresh})")
        started = self._clock()
        try:
            orders = self._fetch_all()
        except Exception as e:
            now = self._clock()
            with self._lock:
                self._last_error = str(e)
                entry = self._entry
                if entry is not None and now - entry.fetched_at <= self.max_age_ms:
                    self._stale_served += 1
                    self._degraded = True
                    log.warning(
                        f"Cache refresh failed, serving stale snapshot "
                        f"(age={now - entry.fetched_at}ms, orders={len(entry.orders)}): {e}"
                    )
                    return entry
            log.error(f"Cache refresh failed with no usable snapshot: {e}")
            raise

        fetched_at = self._clock()
        by_id: Dict[str, ChainOrder] = {}
        for o in orders:
            by_id.setdefault(o.order_id, o)
        entry = CacheEntry(
            orders=tuple(orders),
            by_id=MappingProxyType(by_id),
            fetched_at=fetched_at,
        )
        with self._lock:
            self._entry = entry
            self._last_fetch_at = fetched_at
            self._last_error = None
            self._degraded = False
        log.info(f"Cache refreshed: {len(entry.orders)} order(s) in {fetched_at - started}ms")
        return entry

    # ---------- Reads ----------
    def get_all(self, force_refresh: bool = False) -> List[ChainOrder]:
        return list(self._snapshot(force_refresh).orders)

    def get_by_id(self, order_id: str, force_refresh: bool = False) -> Optional[ChainOrder]:
        entry = self._snapshot(force_refresh)
        order = entry.by_id.get(order_id)
        if order is None:
            log.debug(f"Order {order_id} not in cache snapshot ({len(entry.orders)} orders)")
        return order

    def get_many(self, order_ids: Iterable[str], force_refresh: bool = False) -> Dict[str, Optional[ChainOrder]]:
        entry = self._snapshot(force_refresh)
        return {oid: entry.by_id.get(oid) for oid in order_ids}

    def exists(self, order_id: str, force_refresh: bool = False) -> bool:
        return order_id in self._snapshot(force_refresh).by_id

    def summary(self, force_refresh: bool = False) -> dict:
        entry = self._snapshot(force_refresh)
        by_status: Dict[int, int] = {}
        for o in entry.orders:
            by_status[o.status] = by_status.get(o.status, 0) + 1
        return {
            "total": len(entry.orders),
            "by_status": by_status,
            "recent": list(entry.orders[:10]),
            "oldest": entry.orders[-1] if entry.orders else None,
            "newest": entry.orders[0] if entry.orders else None,
        }

    # ---------- Introspection ----------
    def get_stats(self) -> dict:
        now = self._clock()
        with self._lock:
            entry = self._entry
            return {
                "hits": self._hits,
                "misses": self._misses,
                "last_fetch_at": self._last_fetch_at,
                "age_ms": now - entry.fetched_at if entry is not None else None,
                "order_count": len(entry.orders) if entry is not None else 0,
                "stale_served": self._stale_served,
                "last_error": self._last_error,
                "degraded": self._degraded,
            }

    def clear(self) -> None:
        with self._lock:
            count = len(self._entry.orders) if self._entry is not None else 0
            self._entry = None
            self._reset_stats()
        log.info(f"Cache cleared ({count} order(s) dropped)")
