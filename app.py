# chain_sync/app.py

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

# ---------------- CONFIG / CORE ----------------
from config import ENV, STATE_DB_PATH, utc_now_iso, now_ms
from logger import get_logger, RecentLogBuffer, attach_log_buffer
from emailer import send_sync_failure_alert
from exceptions import ValidationError

# ---------------- STATE DB ----------------
from db import mark_run, close_run

# ---------------- LEDGER ----------------
from api import LedgerRpcClient
from chain.retry import RetryPolicy
from chain.ledger_reader import LedgerReader, ASCENDING, DESCENDING
from chain.admin_actions import LedgerAdminClient
from chain.sync_cursor import SyncCursorStore, DEFAULT_STREAM_ID
from chain.order_cache import OrderCache

# ---------------- LOCAL ORDERS ----------------
from chain.order_store import OrderStore, SqlOrderStore
from chain.reconcile import OrderReconciler
from chain.status import is_terminal

# ---------------- SWEEPS ----------------
from chain.auto_cancel import run_auto_cancel
from chain.auto_finalize import run_auto_complete, run_auto_finalize

from models import AdminReceipt, ChainOrder, LocalOrder, PolicyResult, SyncResult


log = get_logger("app")

REPAIR_ACTIONS = ("sync_missing", "fix_status", "sync_all")
REPORT_DETAIL_LIMIT = 50


def _is_chain_order(order: LocalOrder) -> bool:
    return order.source == "chain" or order.chain_status is not None


class ChainSyncService:
    def __init__(
        self,
        store: OrderStore,
        reader: LedgerReader,
        admin: LedgerAdminClient,
        cursor_store: SyncCursorStore,
        cache: Optional[OrderCache] = None,
        reconciler: Optional[OrderReconciler] = None,
        log_buffer: Optional[RecentLogBuffer] = None,
        stream_id: str = DEFAULT_STREAM_ID,
        state_db_path: Optional[str] = None,
        alert: Callable[[str, BaseException], None] = send_sync_failure_alert,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.reader = reader
        self.admin = admin
        self.cursor_store = cursor_store
        self.cache = cache or OrderCache(reader.fetch_all, clock=clock)
        self.reconciler = reconciler or OrderReconciler(store)
        self.log_buffer = attach_log_buffer(log_buffer) if log_buffer is not None else None
        self.stream_id = stream_id
        self.state_db_path = state_db_path or cursor_store.path
        self.alert = alert
        self.clock = clock

    # ------------------------------------------------------------
    # SYNC
    # ------------------------------------------------------------
    def sync_once(self) -> SyncResult:
        """
        One pass over new ledger events. The first run (no stored cursor)
        reads newest-first; later runs read forward from the stored cursor.
        """
        run_id = str(uuid.uuid4())
        start_ts = datetime.now(timezone.utc).isoformat()
        mark_run(run_id, start_ts, ENV, path=self.state_db_path)

        started = time.monotonic()
        mode = None
        total = created = updated = 0

        try:
            state = self.cursor_store.get(self.stream_id)
            cursor = state.cursor if state else None
            mode = "incremental" if cursor is not None else "bootstrap"
            log.info(f"Sync {run_id} started | mode={mode}, cursor={cursor}")

            read = self.reader.read_events(
                cursor=cursor,
                direction=ASCENDING if cursor is not None else DESCENDING,
            )
            total = len(read.orders)

            for chain in read.orders:
                _, was_created = self.reconciler.reconcile_order(chain)
                if was_created:
                    created += 1
                else:
                    updated += 1

            # only after every order of the batch landed
            if read.furthest_cursor is not None and read.furthest_cursor != cursor:
                self.cursor_store.update(self.stream_id, read.furthest_cursor, read.furthest_event_time)

        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error(f"Sync {run_id} FAILED after {duration_ms}ms: {e}", exc_info=True)
            close_run(
                run_id, datetime.now(timezone.utc).isoformat(), mode, total, created, updated,
                duration_ms, "FAILED", str(e)[:500], path=self.state_db_path,
            )
            try:
                self.alert(run_id, e)
            except Exception as alert_err:
                log.error(f"Sync {run_id}: failure alert could not be sent: {alert_err}")
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        close_run(
            run_id, datetime.now(timezone.utc).isoformat(), mode, total, created, updated,
            duration_ms, "COMPLETE", path=self.state_db_path,
        )
        log.info(
            f"Sync {run_id} finished | mode={mode}, total={total}, "
            f"created={created}, updated={updated}, duration={duration_ms}ms"
        )
        return SyncResult(mode=mode, total=total, created=created, updated=updated, duration_ms=duration_ms)

    def sync_one(self, order_id: str, force_refresh: bool = True) -> Optional[LocalOrder]:
        chain = self.cache.get_by_id(order_id, force_refresh=force_refresh)
        if chain is None:
            log.warning(f"Order {order_id} not found on ledger; nothing to sync")
            return None
        return self.reconciler.upsert(chain)

    def _resync(self, order_id: str) -> Optional[LocalOrder]:
        return self.sync_one(order_id, force_refresh=True)

    # ------------------------------------------------------------
    # SWEEPS
    # ------------------------------------------------------------
    def run_auto_cancel(self, dry_run: bool = False, limit: Optional[int] = None, **settings) -> PolicyResult:
        return run_auto_cancel(
            self.cache, self.admin.cancel, self._resync,
            dry_run=dry_run, limit=limit, clock=self.clock, **settings,
        )

    def run_auto_complete(self, dry_run: bool = False, limit: Optional[int] = None, **settings) -> PolicyResult:
        return run_auto_complete(
            self.cache, self.store, self.admin.mark_completed, self._resync,
            dry_run=dry_run, limit=limit, clock=self.clock, **settings,
        )

    def run_auto_finalize(self, dry_run: bool = False, limit: Optional[int] = None, **settings) -> PolicyResult:
        return run_auto_finalize(
            self.cache, self.admin.finalize_without_dispute, self._resync,
            dry_run=dry_run, limit=limit, clock=self.clock, **settings,
        )

    # ------------------------------------------------------------
    # ADMIN ACTIONS
    # ------------------------------------------------------------
    def resolve_dispute(self, order_id: str, service_refund_bps: int, deposit_slash_bps: int) -> AdminReceipt:
        return self.admin.resolve_dispute(order_id, service_refund_bps, deposit_slash_bps)

    def cancel(self, order_id: str) -> AdminReceipt:
        return self.admin.cancel(order_id)

    def mark_completed(self, order_id: str) -> AdminReceipt:
        return self.admin.mark_completed(order_id)

    def finalize(self, order_id: str) -> AdminReceipt:
        return self.admin.finalize_without_dispute(order_id)

    # ------------------------------------------------------------
    # INTROSPECTION
    # ------------------------------------------------------------
    def get_cache_stats(self) -> dict:
        return self.cache.get_stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_recent_logs(
        self,
        level: Optional[str] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        if self.log_buffer is None:
            return []
        return self.log_buffer.get_logs(level=level, operation=operation, limit=limit)

    def find_order_from_transaction(self, digest: str) -> Optional[ChainOrder]:
        return self.reader.order_from_transaction(digest)

    # ------------------------------------------------------------
    # RECONCILIATION REPORT / REPAIR
    # ------------------------------------------------------------
    def reconcile_report(self, force_refresh: bool = False, detailed: bool = False) -> Dict[str, Any]:
        chain_orders = self.cache.get_all(force_refresh=force_refresh)
        chain_by_id = {o.order_id: o for o in chain_orders}
        local_orders = [o for o in self.store.list_orders() if _is_chain_order(o)]
        local_by_id = {o.id: o for o in local_orders}

        missing_in_local: List[str] = []
        missing_in_chain: List[str] = []
        status_mismatch: List[dict] = []
        needs_sync: List[dict] = []

        for chain in chain_orders:
            local = local_by_id.get(chain.order_id)
            if local is None:
                missing_in_local.append(chain.order_id)
                needs_sync.append({"order_id": chain.order_id, "reason": "not synced locally"})
            elif chain.status != local.chain_status:
                status_mismatch.append({
                    "order_id": chain.order_id,
                    "chain_status": chain.status,
                    "local_status": local.chain_status,
                })
                needs_sync.append({
                    "order_id": chain.order_id,
                    "reason": f"status mismatch: ledger={chain.status}, local={local.chain_status}",
                })

        for local in local_orders:
            if local.source == "chain" and local.id not in chain_by_id:
                missing_in_chain.append(local.id)

        by_source: Dict[str, int] = {}
        for o in local_orders:
            src = o.source or "unknown"
            by_source[src] = by_source.get(src, 0) + 1

        issues: List[str] = []
        if missing_in_local:
            issues.append(f"{len(missing_in_local)} ledger order(s) not synced locally")
        if missing_in_chain:
            issues.append(f"{len(missing_in_chain)} local chain order(s) not found on ledger")
        if status_mismatch:
            issues.append(f"{len(status_mismatch)} order(s) with mismatched status")

        summary = self.cache.summary()
        report: Dict[str, Any] = {
            "timestamp": utc_now_iso(),
            "chain_orders": {"total": len(chain_orders), "by_status": summary["by_status"]},
            "local_orders": {"total": len(local_orders), "by_source": by_source},
            "discrepancies": {
                "missing_in_local": len(missing_in_local),
                "missing_in_chain": len(missing_in_chain),
                "status_mismatch": len(status_mismatch),
                "needs_sync": len(needs_sync),
            },
            "cache": self.cache.get_stats(),
            "health": {
                "status": "healthy" if not missing_in_local and not status_mismatch else "needs_attention",
                "issues": issues,
            },
        }
        if detailed:
            report["details"] = {
                "missing_in_local": missing_in_local[:REPORT_DETAIL_LIMIT],
                "missing_in_chain": missing_in_chain[:REPORT_DETAIL_LIMIT],
                "status_mismatch": status_mismatch[:REPORT_DETAIL_LIMIT],
                "needs_sync": needs_sync[:REPORT_DETAIL_LIMIT],
            }
        return report

    def repair(self, action: str) -> Dict[str, Any]:
        if action not in REPAIR_ACTIONS:
            raise ValidationError(f"action must be one of {REPAIR_ACTIONS}, got {action!r}")

        started = time.monotonic()
        chain_orders = self.cache.get_all(force_refresh=True)
        local_by_id = {o.id: o for o in self.store.list_orders() if _is_chain_order(o)}

        synced = 0
        fixed = 0
        skipped = 0
        errors: List[str] = []

        if action in ("sync_missing", "sync_all"):
            for chain in chain_orders:
                if chain.order_id in local_by_id:
                    continue
                try:
                    self.reconciler.upsert(chain)
                    synced += 1
                except Exception as e:
                    log.error(f"repair sync {chain.order_id} failed: {e}")
                    errors.append(f"sync {chain.order_id}: {e}")

        if action in ("fix_status", "sync_all"):
            for chain in chain_orders:
                local = local_by_id.get(chain.order_id)
                if local is None or chain.status == local.chain_status:
                    continue
                if local.chain_status is not None and is_terminal(local.chain_status):
                    # a settled or cancelled record cannot be moved by an upsert
                    log.warning(
                        f"repair fix {chain.order_id}: local status {local.chain_status} is terminal, "
                        f"ledger reads {chain.status}; leaving it"
                    )
                    skipped += 1
                    continue
                try:
                    self.reconciler.upsert(chain)
                    fixed += 1
                except Exception as e:
                    log.error(f"repair fix {chain.order_id} failed: {e}")
                    errors.append(f"fix {chain.order_id}: {e}")

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info(
            f"Repair {action} | synced={synced}, fixed={fixed}, skipped={skipped}, "
            f"errors={len(errors)}, duration={duration_ms}ms"
        )
        return {
            "action": action,
            "synced": synced,
            "fixed": fixed,
            "skipped": skipped,
            "errors": len(errors),
            "error_details": errors[:20],
            "duration_ms": duration_ms,
        }


def build_service(state_db_path: Optional[str] = None) -> ChainSyncService:
    client = LedgerRpcClient()
    retry = RetryPolicy()
    reader = LedgerReader(client, retry=retry)
    store = SqlOrderStore()
    return ChainSyncService(
        store=store,
        reader=reader,
        admin=LedgerAdminClient(client, retry=retry),
        cursor_store=SyncCursorStore(state_db_path or STATE_DB_PATH),
        log_buffer=RecentLogBuffer(),
    )


# ------------------------------------------------------------
# RUN ONCE (called by the scheduler)
# ------------------------------------------------------------
def run_once() -> SyncResult:
    log.info(f"===== SYNC RUN START: {utc_now_iso()} ({ENV}) =====")
    try:
        service = build_service()
        result = service.sync_once()

        for sweep in (service.run_auto_cancel, service.run_auto_complete, service.run_auto_finalize):
            try:
                outcome = sweep()
            except Exception as e:
                log.error(f"{sweep.__name__} failed: {e}", exc_info=True)
                continue
            if outcome.failures:
                log.warning(f"{outcome.policy} failures: {outcome.failures}")

        return result
    finally:
        log.info(f"===== SYNC RUN END: {utc_now_iso()} =====")


if __name__ == "__main__":
    run_once()
