# chain_sync/chain/auto_cancel.py
"""
Cancels ledger orders that were created (or paid) but never moved on.

Predicates and pickers are pure so they can be checked without a ledger;
`run_auto_cancel` does the I/O.
"""

from typing import Callable, Iterable, List, Optional

from chain.order_cache import OrderCache
from chain.status import is_cancelable
from config import CHAIN_ORDER_AUTO_CANCEL_HOURS, CHAIN_ORDER_AUTO_CANCEL_MAX, now_ms
from exceptions import NotFoundError
from logger import get_logger
from models import ChainOrder, PolicyResult

log = get_logger("auto_cancel")

HOUR_MS = 60 * 60 * 1000


def parse_ts(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def resolve_limit(limit: Optional[int], configured_max: int) -> int:
    if limit is not None and limit > 0:
        return int(limit)
    return configured_max


def is_auto_cancelable(order: Optional[ChainOrder], now: int, threshold_ms: int) -> bool:
    if order is None or now <= 0 or threshold_ms <= 0:
        return False
    created_at = parse_ts(order.created_at)
    if created_at <= 0:
        return False
    return is_cancelable(order.status) and now - created_at >= threshold_ms


def pick_auto_cancelable(
    orders: Iterable[ChainOrder], now: int, threshold_ms: int, limit: int
) -> List[ChainOrder]:
    targets = [o for o in orders if is_auto_cancelable(o, now, threshold_ms)]
    targets.sort(key=lambda o: parse_ts(o.created_at))
    return targets[:limit] if limit > 0 else targets


def apply_to_targets(
    result: PolicyResult,
    targets: List[ChainOrder],
    action: Callable[[str], object],
    resync: Callable[[str], object],
    recheck: Optional[Callable[[ChainOrder], bool]] = None,
) -> PolicyResult:
    """Admin call then forced resync for each target, collecting per-order outcomes."""
    for order in targets:
        oid = order.order_id
        try:
            # the recheck may refresh the cache, so a ledger outage here is a per-order failure
            if recheck is not None and not recheck(order):
                log.info(f"[{result.policy}] order {oid} no longer eligible, skipping")
                result.skipped += 1
                continue
            action(oid)
            resync(oid)
        except NotFoundError as e:
            log.warning(f"[{result.policy}] order {oid}: {e}; skipping")
            result.skipped += 1
            continue
        except Exception as e:
            log.error(f"[{result.policy}] order {oid} failed: {e}")
            result.failures.append({"order_id": oid, "error": str(e) or type(e).__name__})
            continue
        result.succeeded += 1
        result.succeeded_ids.append(oid)

    log.info(
        f"[{result.policy}] done | candidates={result.candidates}, succeeded={result.succeeded}, "
        f"skipped={result.skipped}, failed={len(result.failures)}"
    )
    return result


def run_auto_cancel(
    cache: OrderCache,
    cancel: Callable[[str], object],
    resync: Callable[[str], object],
    dry_run: bool = False,
    limit: Optional[int] = None,
    hours: float = CHAIN_ORDER_AUTO_CANCEL_HOURS,
    max_batch: int = CHAIN_ORDER_AUTO_CANCEL_MAX,
    clock: Callable[[], int] = now_ms,
) -> PolicyResult:
    threshold_ms = int(hours * HOUR_MS)
    if hours <= 0:
        return PolicyResult(policy="auto_cancel", enabled=False, threshold_hours=hours, dry_run=dry_run)

    now = clock()
    orders = cache.get_all(force_refresh=True)
    targets = pick_auto_cancelable(orders, now, threshold_ms, resolve_limit(limit, max_batch))
    result = PolicyResult(
        policy="auto_cancel",
        enabled=True,
        threshold_hours=hours,
        total=len(orders),
        candidates=len(targets),
        dry_run=dry_run,
    )
    log.info(f"[auto_cancel] {len(targets)} candidate(s) of {len(orders)} (threshold={hours}h, dry_run={dry_run})")

    if dry_run:
        result.skipped = len(targets)
        return result

    def recheck(order: ChainOrder) -> bool:
        latest = cache.get_by_id(order.order_id) or order
        return is_auto_cancelable(latest, clock(), threshold_ms)

    return apply_to_targets(result, targets, cancel, resync, recheck)
