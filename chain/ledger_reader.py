# chain_sync/chain/ledger_reader.py

import threading
from dataclasses import replace
from typing import Dict, List, Optional

from api import LedgerRpcClient
from chain.decoder import ZERO_ADDRESS, decode_order, normalize_address
from chain.retry import RetryPolicy
from config import PACKAGE_ID, DAPP_HUB_ID, CHAIN_EVENT_LIMIT, CHAIN_EVENT_PAGE_SIZE
from exceptions import ConfigError, DecodeError, LedgerRpcError
from logger import get_logger
from models import ChainOrder, EventCursor, ReadResult

log = get_logger("ledger_reader")

ORDER_TABLE_ID = "order"
ASCENDING = "ascending"
DESCENDING = "descending"


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def normalize_dapp_key(value: str) -> str:
    return strip_0x((value or "").strip().lower())


def require_deployment(package_id: str, dapp_hub_id: str) -> None:
    if not package_id or package_id == "0x0":
        raise ConfigError("Missing PACKAGE_ID for the deployed order contract")
    if not dapp_hub_id or dapp_hub_id == "0x0":
        raise ConfigError("Missing DAPP_HUB_ID for the deployed order contract")


class LedgerReader:
    def __init__(
        self,
        client: LedgerRpcClient,
        package_id: str = PACKAGE_ID,
        dapp_hub_id: str = DAPP_HUB_ID,
        retry: Optional[RetryPolicy] = None,
        page_size: int = CHAIN_EVENT_PAGE_SIZE,
        default_limit: int = CHAIN_EVENT_LIMIT,
    ):
        self.client = client
        self.package_id = package_id
        self.dapp_hub_id = dapp_hub_id
        self.retry = retry or RetryPolicy()
        self.page_size = page_size
        self.default_limit = default_limit if default_limit > 0 else 200
        self._framework_package: Optional[str] = None
        self._framework_lock = threading.Lock()

    @property
    def target_dapp_key(self) -> str:
        return normalize_dapp_key(f"{strip_0x(self.package_id)}::dapp_key::DappKey")

    def framework_package_id(self) -> str:
        """Package of the Dubhe framework, read from the DappHub object's type."""
        with self._framework_lock:
            if self._framework_package is None:
                require_deployment(self.package_id, self.dapp_hub_id)
                obj_type = self.retry.call(
                    lambda: self.client.get_object_type(self.dapp_hub_id),
                    label="sui_getObject",
                )
                if not obj_type:
                    raise LedgerRpcError(f"Cannot read type of DappHub {self.dapp_hub_id}")
                self._framework_package = obj_type.split("::")[0]
            return self._framework_package

    def event_type(self) -> str:
        return f"{self.framework_package_id()}::dubhe_events::Dubhe_Store_SetRecord"

    def _order_from_event(self, event: dict) -> Optional[ChainOrder]:
        parsed = event.get("parsedJson") or {}
        if parsed.get("table_id") != ORDER_TABLE_ID:
            return None
        if normalize_dapp_key(parsed.get("dapp_key") or "") != self.target_dapp_key:
            return None
        order = decode_order(parsed.get("key_tuple") or [], parsed.get("value_tuple") or [])
        ts = int(event.get("timestampMs") or 0)
        if ts:
            order = replace(order, last_updated_ms=ts)
        return order

    def read_events(
        self,
        cursor: Optional[EventCursor] = None,
        limit: Optional[int] = None,
        direction: str = DESCENDING,
    ) -> ReadResult:
        if direction not in (ASCENDING, DESCENDING):
            raise ValueError(f"direction must be {ASCENDING!r} or {DESCENDING!r}")

        event_type = self.event_type()
        descending = direction == DESCENDING
        remaining = limit if limit and limit > 0 else self.default_limit

        orders: Dict[str, ChainOrder] = {}
        furthest: Optional[EventCursor] = None
        furthest_ms: Optional[int] = None
        page_cursor = cursor
        pages = 0
        skipped = 0

        while remaining > 0:
            batch = min(self.page_size, remaining)
            rpc_cursor = page_cursor.to_rpc() if page_cursor else None
            page = self.retry.call(
                lambda: self.client.query_events(event_type, rpc_cursor, batch, descending),
                label="suix_queryEvents",
            )
            data: List[dict] = page.get("data") or []
            pages += 1

            if data:
                if descending:
                    if furthest is None:
                        furthest = EventCursor.from_rpc(data[0].get("id"))
                        furthest_ms = int(data[0].get("timestampMs") or 0) or None
                else:
                    last = data[-1]
                    furthest = EventCursor.from_rpc(last.get("id")) or furthest
                    ts = int(last.get("timestampMs") or 0)
                    if ts:
                        furthest_ms = ts

            for event in data:
                try:
                    order = self._order_from_event(event)
                except DecodeError as e:
                    skipped += 1
                    log.warning(f"Skipping malformed order event {event.get('id')}: {e}")
                    continue
                if order is None:
                    continue
                if not descending or order.order_id not in orders:
                    orders[order.order_id] = order

            remaining -= len(data)
            if not page.get("hasNextPage") or not data:
                break
            page_cursor = EventCursor.from_rpc(page.get("nextCursor"))
            if page_cursor is None:
                break

        log.info(
            f"Read {len(orders)} order(s) from {pages} page(s) "
            f"| direction={direction}, skipped={skipped}, furthest={furthest}"
        )
        out = sorted(orders.values(), key=lambda o: int(o.created_at or 0), reverse=True)
        return ReadResult(orders=out, furthest_cursor=furthest, furthest_event_time=furthest_ms)

    def fetch_all(self, limit: Optional[int] = None) -> List[ChainOrder]:
        """Newest state of the most recently touched orders (bootstrap-style read)."""
        return self.read_events(cursor=None, limit=limit, direction=DESCENDING).orders

    # ---------- Single transaction lookup ----------
    def order_from_transaction(self, digest: str) -> Optional[ChainOrder]:
        """
        Best-effort snapshot of the order touched by one transaction, folded
        from its lifecycle events. Used when the event index lags behind a
        transaction we already know the digest of.
        """
        require_deployment(self.package_id, self.dapp_hub_id)
        if not digest:
            return None
        tx = self.retry.call(lambda: self.client.get_transaction(digest), label="sui_getTransactionBlock")
        prefix = f"{self.package_id}::events::"
        by_name: Dict[str, dict] = {}
        for event in tx.get("events") or []:
            etype = event.get("type") or ""
            if etype.startswith(prefix):
                by_name.setdefault(etype[len(prefix):], event.get("parsedJson") or {})

        found = [by_name.get(name) for name in _LIFECYCLE_EVENTS if name in by_name]
        if not found:
            return None

        order_id = next((_field(p, "order_id", "") for p in found if _field(p, "order_id", "")), "")
        if not order_id:
            return None

        created = by_name.get("OrderCreated")
        paid = by_name.get("OrderPaid")
        locked = by_name.get("DepositLocked")
        claimed = by_name.get("OrderClaimed")
        completed = by_name.get("OrderCompleted")
        disputed = by_name.get("OrderDisputed")
        resolved = by_name.get("OrderResolved")
        finalized = by_name.get("OrderFinalized")
        tx_ms = str(tx.get("timestampMs") or 0)

        service_fee = _first(created, paid, locked, key="service_fee") or "0"
        deposit = _first(created, locked, key="deposit") or "0"
        user = _address(_first(created, paid, completed, key="user"))
        companion = _address(_first(created, claimed, locked, key="companion"))

        fields = dict(
            order_id=order_id,
            user=user,
            companion=companion,
            rule_set_id=_field(created, "rule_set_id", "0"),
            service_fee=service_fee,
            deposit=deposit,
            platform_fee_bps="0",
            status=0,
            created_at=tx_ms,
            finish_at="0",
            dispute_deadline="0",
            vault_service="0",
            vault_deposit="0",
            evidence_hash="0x",
            dispute_status=0,
            resolved_by=ZERO_ADDRESS,
            resolved_at="0",
        )
        if paid is not None:
            fields.update(status=1, vault_service=service_fee)
        if locked is not None:
            fields.update(status=2, vault_service=service_fee, vault_deposit=deposit)
        if completed is not None:
            fields.update(
                status=3,
                finish_at=_field(completed, "finish_at", "0"),
                dispute_deadline=_field(completed, "dispute_deadline", "0"),
                vault_service=service_fee,
                vault_deposit=deposit if locked is not None else "0",
            )
        if disputed is not None:
            fields.update(status=4, dispute_status=1, evidence_hash=_hex(disputed.get("evidence_hash")))
        if resolved is not None:
            fields.update(
                status=5,
                dispute_status=2,
                resolved_by=_address(_field(resolved, "resolved_by", "")),
                resolved_at=tx_ms,
                vault_service="0",
                vault_deposit="0",
            )
        if finalized is not None:
            fields.update(status=5, vault_service="0", vault_deposit="0")
        return ChainOrder(**fields)


_LIFECYCLE_EVENTS = (
    "OrderCreated",
    "OrderClaimed",
    "OrderPaid",
    "DepositLocked",
    "OrderCompleted",
    "OrderDisputed",
    "OrderResolved",
    "OrderFinalized",
)


def _field(parsed: Optional[dict], key: str, default: str) -> str:
    if not parsed:
        return default
    value = parsed.get(key)
    return default if value is None else str(value)


def _first(*parsed: Optional[dict], key: str) -> str:
    for p in parsed:
        value = _field(p, key, "")
        if value:
            return value
    return ""


def _address(value: str) -> str:
    return normalize_address(value) if value else ZERO_ADDRESS


def _hex(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(b, int) and 0 <= b < 256 for b in value):
        return "0x" + bytes(value).hex()
    return "0x"
