from dataclasses import replace

import pytest

from chain.auto_cancel import is_auto_cancelable, pick_auto_cancelable, run_auto_cancel
from chain.auto_finalize import (
    companion_ended_at_map,
    is_auto_finalizable,
    pick_auto_complete,
    run_auto_complete,
    run_auto_finalize,
)
from chain.order_cache import OrderCache
from exceptions import LedgerRpcError, NotFoundError, TransientLedgerError
from models import LocalOrder, OrderMeta
from conftest import HOUR_MS, FakeStore, make_chain_order

T0 = 1_700_000_000_000


class Ledger:
    """Order list the cache reads from; admin calls mutate it."""

    def __init__(self, orders):
        self.orders = {o.order_id: o for o in orders}
        self.calls = []

    def fetch_all(self):
        return list(self.orders.values())

    def set_status(self, status):
        def action(order_id):
            self.calls.append(order_id)
            self.orders[order_id] = replace(self.orders[order_id], status=status)
        return action


def _cache(ledger, now):
    return OrderCache(ledger.fetch_all, ttl_ms=60_000, clock=lambda: now)


def test_auto_cancel_predicate_excludes_later_statuses():
    now = T0 + 25 * HOUR_MS
    for status in range(7):
        order = make_chain_order(status=status, created_at=str(T0))
        assert is_auto_cancelable(order, now, 24 * HOUR_MS) == (status in (0, 1))


def test_auto_cancel_predicate_edges():
    threshold = 24 * HOUR_MS
    assert not is_auto_cancelable(make_chain_order(created_at="0"), T0, threshold)
    assert not is_auto_cancelable(make_chain_order(created_at=str(T0)), T0 + threshold - 1, threshold)
    assert is_auto_cancelable(make_chain_order(created_at=str(T0)), T0 + threshold, threshold)
    assert not is_auto_cancelable(make_chain_order(created_at=str(T0)), T0 + threshold, 0)
    assert not is_auto_cancelable(None, T0, threshold)


def test_pick_sorts_oldest_first_and_truncates():
    orders = [make_chain_order(order_id=str(i), created_at=str(T0 - i * HOUR_MS)) for i in range(1, 6)]
    picked = pick_auto_cancelable(orders, T0 + 24 * HOUR_MS, 24 * HOUR_MS, 2)
    assert [o.order_id for o in picked] == ["5", "4"]


def test_auto_cancel_scenario():
    ledger = Ledger([
        make_chain_order(order_id="1", status=0, created_at=str(T0)),
        make_chain_order(order_id="2", status=2, created_at=str(T0)),
    ])
    now = T0 + 25 * HOUR_MS
    cache = _cache(ledger, now)
    resynced = []

    def resync(order_id):
        resynced.append(cache.get_by_id(order_id, force_refresh=True).status)

    result = run_auto_cancel(cache, ledger.set_status(6), resync, hours=24, max_batch=10, clock=lambda: now)

    assert result.enabled is True
    assert result.total == 2
    assert result.candidates == 1
    assert result.succeeded == 1
    assert result.succeeded_ids == ["1"]
    assert ledger.calls == ["1"]
    assert resynced == [6]


def test_auto_cancel_dry_run_does_not_mutate():
    ledger = Ledger([make_chain_order(order_id="1", status=0, created_at=str(T0))])
    now = T0 + 25 * HOUR_MS
    result = run_auto_cancel(
        _cache(ledger, now), ledger.set_status(6), lambda oid: None,
        dry_run=True, hours=24, max_batch=10, clock=lambda: now,
    )
    assert result.candidates == 1
    assert result.skipped == result.candidates
    assert result.succeeded == 0
    assert ledger.calls == []


def test_disabled_policy_touches_nothing():
    def explode():
        raise AssertionError("ledger must not be read")

    cache = OrderCache(explode)
    result = run_auto_cancel(cache, explode, explode, hours=0)
    assert result.enabled is False
    assert run_auto_complete(cache, FakeStore(), explode, explode, hours=0).enabled is False
    assert run_auto_finalize(cache, explode, explode, max_batch=0).enabled is False


def test_failures_and_not_found_are_collected():
    ledger = Ledger([
        make_chain_order(order_id="1", status=0, created_at=str(T0)),
        make_chain_order(order_id="2", status=1, created_at=str(T0 + 1)),
        make_chain_order(order_id="3", status=1, created_at=str(T0 + 2)),
    ])
    now = T0 + 48 * HOUR_MS

    def cancel(order_id):
        if order_id == "2":
            raise LedgerRpcError("MoveAbort in order_system", code=-32000)

    def resync(order_id):
        if order_id == "3":
            raise NotFoundError(order_id)

    result = run_auto_cancel(_cache(ledger, now), cancel, resync, hours=24, max_batch=10, clock=lambda: now)
    assert result.succeeded_ids == ["1"]
    assert result.skipped == 1
    assert result.failures == [{"order_id": "2", "error": "MoveAbort in order_system"}]


def test_auto_cancel_rechecks_before_cancelling():
    ledger = Ledger([make_chain_order(order_id="1", status=0, created_at=str(T0))])
    now = T0 + 25 * HOUR_MS
    cache = _cache(ledger, now)
    cancelled = []

    # someone paid the deposit between picking and cancelling
    cached_get_by_id = cache.get_by_id

    def get_by_id(order_id, force_refresh=False):
        return replace(cached_get_by_id(order_id), status=2)

    cache.get_by_id = get_by_id
    result = run_auto_cancel(cache, cancelled.append, lambda oid: None, hours=24, max_batch=10, clock=lambda: now)
    assert cancelled == []
    assert result.skipped == 1


def test_auto_cancel_survives_ledger_outage_during_sweep():
    orders = [make_chain_order(order_id=str(i), status=0, created_at=str(T0 + i)) for i in (1, 2, 3)]
    now = [T0 + 25 * HOUR_MS]
    fetches = []

    def fetch_all():
        fetches.append(now[0])
        if len(fetches) > 1:
            raise TransientLedgerError("node down", status_code=503)
        return list(orders)

    def cancel(order_id):
        # each failed cancel burns its retry budget
        now[0] += 6 * 60 * 1000
        raise TransientLedgerError("node down", status_code=503)

    cache = OrderCache(fetch_all, ttl_ms=60_000, max_age_ms=5 * 60_000, clock=lambda: now[0])
    result = run_auto_cancel(cache, cancel, lambda oid: None, hours=24, max_batch=10, clock=lambda: now[0])

    assert result.candidates == 3
    assert result.succeeded == 0
    assert [f["order_id"] for f in result.failures] == ["1", "2", "3"]
    assert all(f["error"] == "node down" for f in result.failures)


def test_limit_argument_overrides_configured_max():
    ledger = Ledger([make_chain_order(order_id=str(i), created_at=str(T0 + i)) for i in range(5)])
    now = T0 + 25 * HOUR_MS
    result = run_auto_cancel(
        _cache(ledger, now), ledger.set_status(6), lambda oid: None,
        limit=2, hours=24, max_batch=10, clock=lambda: now,
    )
    assert result.candidates == 2
    assert ledger.calls == ["0", "1"]


def _local(order_id, ended_at, source="chain"):
    return LocalOrder(id=order_id, source=source, meta=OrderMeta(companion_ended_at=ended_at))


def test_companion_ended_at_only_from_chain_orders():
    got = companion_ended_at_map([_local("1", 10), _local("2", 20, source="web"), _local("3", None)])
    assert got == {"1": 10}


def test_auto_complete_predicate_and_order():
    threshold = 24 * HOUR_MS
    now = T0 + 30 * HOUR_MS
    orders = [
        make_chain_order(order_id="1", status=2),
        make_chain_order(order_id="2", status=2),
        make_chain_order(order_id="3", status=2, finish_at="5"),
        make_chain_order(order_id="4", status=3),
        make_chain_order(order_id="5", status=2),
    ]
    ended = {"1": T0 + 2 * HOUR_MS, "2": T0, "3": T0, "4": T0, "5": T0 + 10 * HOUR_MS}
    picked = pick_auto_complete(orders, ended, now, threshold, 10)
    assert [o.order_id for o in picked] == ["2", "1"]


def test_auto_complete_run():
    ledger = Ledger([make_chain_order(order_id="1", status=2)])
    store = FakeStore([_local("1", T0)])
    now = T0 + 25 * HOUR_MS
    result = run_auto_complete(
        _cache(ledger, now), store, ledger.set_status(3), lambda oid: None,
        hours=24, max_batch=10, clock=lambda: now,
    )
    assert result.policy == "auto_complete"
    assert result.succeeded_ids == ["1"]
    assert ledger.orders["1"].status == 3


@pytest.mark.parametrize(
    "status,deadline,expected",
    [(3, str(T0 - 1), True), (3, str(T0), False), (3, "0", False), (4, str(T0 - 1), False)],
)
def test_auto_finalize_predicate(status, deadline, expected):
    assert is_auto_finalizable(make_chain_order(status=status, dispute_deadline=deadline), T0) == expected


def test_auto_finalize_run_sorts_by_deadline():
    ledger = Ledger([
        make_chain_order(order_id="1", status=3, dispute_deadline=str(T0 - 10)),
        make_chain_order(order_id="2", status=3, dispute_deadline=str(T0 - 20)),
        make_chain_order(order_id="3", status=3, dispute_deadline=str(T0 + 20)),
    ])
    result = run_auto_finalize(_cache(ledger, T0), ledger.set_status(5), lambda oid: None, max_batch=10, clock=lambda: T0)
    assert result.candidates == 2
    assert ledger.calls == ["2", "1"]
    assert result.threshold_hours is None
