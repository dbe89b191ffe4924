import copy
import os
import tempfile
from typing import List, Tuple, Union

# keep log files and the state db out of the working tree
_TMP = tempfile.mkdtemp(prefix="chain_sync_tests_")
os.environ.setdefault("LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("STATE_DB_PATH", os.path.join(_TMP, "state.db"))

import pytest

from chain.decoder import normalize_address
from chain.retry import RetryPolicy
from models import ChainOrder, LocalOrder

PACKAGE_ID = "0x" + "ab" * 32
DAPP_HUB_ID = "0x" + "cd" * 32
FRAMEWORK_PKG = "0x" + "ef" * 32
EVENT_TYPE = f"{FRAMEWORK_PKG}::dubhe_events::Dubhe_Store_SetRecord"
DAPP_KEY = f"{PACKAGE_ID[2:]}::dapp_key::DappKey"

USER = normalize_address("0x11")
COMPANION = normalize_address("0x22")
OTHER_COMPANION = normalize_address("0x33")
ZERO = normalize_address("0x0")

HOUR_MS = 60 * 60 * 1000


# ---------- BCS encoders for ledger event fixtures ----------
def encode_u64(value: Union[int, str]) -> bytes:
    return int(value).to_bytes(8, "little")


def encode_u8(value: int) -> bytes:
    return int(value).to_bytes(1, "little")


def encode_address(value: str) -> bytes:
    return bytes.fromhex(normalize_address(value)[2:])


def encode_vec_u8(value: str) -> bytes:
    body = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    n = len(body)
    prefix = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            prefix.append(b | 0x80)
        else:
            prefix.append(b)
            break
    return bytes(prefix) + body


def encode_order(order: ChainOrder) -> Tuple[List[bytes], List[bytes]]:
    """Inverse of decode_order (last_updated_ms is not part of the record)."""
    key = [encode_u64(order.order_id)]
    value = [
        encode_address(order.user),
        encode_address(order.companion),
        encode_u64(order.rule_set_id),
        encode_u64(order.service_fee),
        encode_u64(order.deposit),
        encode_u64(order.platform_fee_bps),
        encode_u8(order.status),
        encode_u64(order.created_at),
        encode_u64(order.finish_at),
        encode_u64(order.dispute_deadline),
        encode_u64(order.vault_service),
        encode_u64(order.vault_deposit),
        encode_vec_u8(order.evidence_hash),
        encode_u8(order.dispute_status),
        encode_address(order.resolved_by),
        encode_u64(order.resolved_at),
    ]
    return key, value


def make_chain_order(**overrides) -> ChainOrder:
    fields = dict(
        order_id="1",
        user=USER,
        companion=COMPANION,
        rule_set_id="1",
        service_fee="1000",
        deposit="5000",
        platform_fee_bps="500",
        status=0,
        created_at="1700000000000",
        finish_at="0",
        dispute_deadline="0",
        vault_service="0",
        vault_deposit="0",
        evidence_hash="0x",
        dispute_status=0,
        resolved_by=ZERO,
        resolved_at="0",
    )
    fields.update(overrides)
    return ChainOrder(**fields)


def make_event(order: ChainOrder, digest: str, seq: int = 0, ts: int = 0,
               table_id: str = "order", dapp_key: str = DAPP_KEY) -> dict:
    key, value = encode_order(order)
    return {
        "id": {"txDigest": digest, "eventSeq": str(seq)},
        "type": EVENT_TYPE,
        "timestampMs": str(ts),
        "parsedJson": {
            "dapp_key": dapp_key,
            "table_id": table_id,
            "key_tuple": [list(k) for k in key],
            "value_tuple": [list(v) for v in value],
        },
    }


class FakeRpcClient:
    """Serves queued suix_queryEvents pages and records every call."""

    def __init__(self, pages=None, object_type=f"{FRAMEWORK_PKG}::dapp_service::DappHub"):
        self.pages = list(pages or [])
        self.object_type = object_type
        self.queries = []
        self.moves = []
        self.executed = []
        self.transactions = {}

    def get_object_type(self, object_id):
        return self.object_type

    def query_events(self, move_event_type, cursor, limit, descending):
        self.queries.append({"type": move_event_type, "cursor": cursor, "limit": limit, "descending": descending})
        if not self.pages:
            return {"data": [], "nextCursor": None, "hasNextPage": False}
        page = self.pages.pop(0)
        return page(cursor, limit, descending) if callable(page) else page

    def get_transaction(self, digest, show_events=True, show_effects=False):
        return self.transactions.get(digest, {})

    def build_move_call(self, signer, package_id, module, function, arguments, gas_budget):
        self.moves.append({"signer": signer, "module": module, "function": function, "arguments": arguments})
        return "dHhieXRlcw=="  # b"txbytes"

    def execute_transaction(self, tx_bytes, signature):
        self.executed.append((tx_bytes, signature))
        return {"digest": f"digest-{len(self.executed)}", "effects": {"status": {"status": "success"}}}


def page(events, next_cursor=None, has_next=False) -> dict:
    return {"data": events, "nextCursor": next_cursor, "hasNextPage": has_next}


class FakeStore:
    """In-memory order store with the same contract as SqlOrderStore."""

    def __init__(self, orders=None):
        self.orders = {o.id: copy.deepcopy(o) for o in (orders or [])}
        self.rewards = []
        self.updates = []
        self.reward_error = None

    def get_order_by_id(self, order_id):
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    def add_order(self, order):
        self.orders[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    def update_order(self, order_id, patch):
        self.updates.append((order_id, dict(patch)))
        order = self.orders.get(order_id)
        if order is None:
            return None
        for k, v in patch.items():
            setattr(order, k, copy.deepcopy(v))
        return copy.deepcopy(order)

    def process_referral_reward(self, order_id, payer_address, amount):
        if self.reward_error is not None:
            raise self.reward_error
        self.rewards.append((order_id, payer_address, amount))
        return True

    def list_orders(self, source=None):
        return [copy.deepcopy(o) for o in self.orders.values() if source is None or o.source == source]


@pytest.fixture
def no_sleep_retry():
    sleeps = []
    return RetryPolicy(attempts=5, base_delay=0.8, max_delay=8.0, jitter=0.25, sleep=sleeps.append), sleeps


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def local_order():
    def _make(**overrides) -> LocalOrder:
        fields = dict(id="1", user=USER, user_address=USER, source="chain", amount=60.0)
        fields.update(overrides)
        return LocalOrder(**fields)
    return _make
