# chain_sync/chain/auto_finalize.py
"""
Settlement sweeps:
  auto-complete  DEPOSITED orders whose companion finished service long enough ago
  auto-finalize  COMPLETED orders whose dispute window has closed
"""

from typing import Callable, Dict, Iterable, List, Optional

from chain.auto_cancel import HOUR_MS, apply_to_targets, parse_ts, resolve_limit
from chain.order_cache import OrderCache
from chain.order_store import OrderStore
from chain.status import DEPOSITED, COMPLETED
from config import (
    CHAIN_ORDER_AUTO_COMPLETE_HOURS,
    CHAIN_ORDER_AUTO_COMPLETE_MAX,
    CHAIN_ORDER_AUTO_FINALIZE_MAX,
    now_ms,
)
from logger import get_logger
from models import ChainOrder, LocalOrder, PolicyResult

log = get_logger("auto_finalize")


# ---------------- Auto-complete ----------------
def companion_ended_at_map(local_orders: Iterable[LocalOrder]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for o in local_orders:
        if o.source != "chain" and o.chain_status is None:
            continue
        ended = o.meta.companion_ended_at or 0
        if ended > 0:
            out[o.id] = ended
    return out


def is_auto_completable(order: ChainOrder, ended_at: int, now: int, threshold_ms: int) -> bool:
    if order.status != DEPOSITED:
        return False
    if parse_ts(order.finish_at) > 0:
        return False
    if ended_at <= 0:
        return False
    return now - ended_at >= threshold_ms


def pick_auto_complete(
    orders: Iterable[ChainOrder],
    ended_at: Dict[str, int],
    now: int,
    threshold_ms: int,
    limit: int,
) -> List[ChainOrder]:
    targets = [o for o in orders if is_auto_completable(o, ended_at.get(o.order_id, 0), now, threshold_ms)]
    targets.sort(key=lambda o: ended_at.get(o.order_id, 0))
    return targets[:limit] if limit > 0 else targets


def run_auto_complete(
    cache: OrderCache,
    store: OrderStore,
    mark_completed: Callable[[str], object],
    resync: Callable[[str], object],
    dry_run: bool = False,
    limit: Optional[int] = None,
    hours: float = CHAIN_ORDER_AUTO_COMPLETE_HOURS,
    max_batch: int = CHAIN_ORDER_AUTO_COMPLETE_MAX,
    clock: Callable[[], int] = now_ms,
) -> PolicyResult:
    if hours <= 0:
        return PolicyResult(policy="auto_complete", enabled=False, threshold_hours=hours, dry_run=dry_run)

    threshold_ms = int(hours * HOUR_MS)
    now = clock()
    orders = cache.get_all()
    ended_at = companion_ended_at_map(store.list_orders())
    targets = pick_auto_complete(orders, ended_at, now, threshold_ms, resolve_limit(limit, max_batch))
    result = PolicyResult(
        policy="auto_complete",
        enabled=True,
        threshold_hours=hours,
        total=len(orders),
        candidates=len(targets),
        dry_run=dry_run,
    )
    log.info(f"[auto_complete] {len(targets)} candidate(s) of {len(orders)} (threshold={hours}h, dry_run={dry_run})")

    if dry_run:
        result.skipped = len(targets)
        return result
    return apply_to_targets(result, targets, mark_completed, resync)


# ---------------- Auto-finalize ----------------
def is_auto_finalizable(order: ChainOrder, now: int) -> bool:
    if order.status != COMPLETED:
        return False
    deadline = parse_ts(order.dispute_deadline)
    return deadline > 0 and now > deadline


def pick_auto_finalize(orders: Iterable[ChainOrder], now: int, limit: int) -> List[ChainOrder]:
    targets = [o for o in orders if is_auto_finalizable(o, now)]
    targets.sort(key=lambda o: parse_ts(o.dispute_deadline))
    return targets[:limit] if limit > 0 else targets


def run_auto_finalize(
    cache: OrderCache,
    finalize: Callable[[str], object],
    resync: Callable[[str], object],
    dry_run: bool = False,
    limit: Optional[int] = None,
    max_batch: int = CHAIN_ORDER_AUTO_FINALIZE_MAX,
    clock: Callable[[], int] = now_ms,
) -> PolicyResult:
    if max_batch <= 0:
        return PolicyResult(policy="auto_finalize", enabled=False, dry_run=dry_run)

    now = clock()
    orders = cache.get_all(force_refresh=True)
    targets = pick_auto_finalize(orders, now, resolve_limit(limit, max_batch))
    result = PolicyResult(
        policy="auto_finalize",
        enabled=True,
        total=len(orders),
        candidates=len(targets),
        dry_run=dry_run,
    )
    log.info(f"[auto_finalize] {len(targets)} candidate(s) of {len(orders)} (dry_run={dry_run})")

    if dry_run:
        result.skipped = len(targets)
        return result
    return apply_to_targets(result, targets, finalize, resync)
