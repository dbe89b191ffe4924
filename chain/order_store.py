# chain_sync/chain/order_store.py

import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Protocol

import pyodbc

from config import get_db_conn, ORDER_TABLE, now_ms
from db import rquery, rexec
from exceptions import PersistenceError
from logger import get_logger
from models import LocalOrder, OrderMeta

log = get_logger("order_store")

DRIVER_ERRORS = (pyodbc.Error, sqlite3.Error)
INTEGRITY_ERRORS = (pyodbc.IntegrityError, sqlite3.IntegrityError)

# LocalOrder field -> column
_COLUMNS = {
    "id": "id",
    "user": "user_name",
    "user_address": "user_address",
    "companion_address": "companion_address",
    "item": "item",
    "amount": "amount",
    "currency": "currency",
    "stage": "stage",
    "payment_status": "payment_status",
    "display_status": "display_status",
    "chain_status": "chain_status",
    "note": "note",
    "source": "source",
    "service_fee": "service_fee",
    "deposit": "deposit",
    "assigned_to": "assigned_to",
    "meta": "meta",
    "created_at": "created_at",
    "updated_at": "updated_at",
}


class OrderStore(Protocol):
    """What the reconciler and the sweeps need from the order database."""

    def get_order_by_id(self, order_id: str) -> Optional[LocalOrder]: ...

    def add_order(self, order: LocalOrder) -> LocalOrder: ...

    def update_order(self, order_id: str, patch: Dict[str, Any]) -> Optional[LocalOrder]: ...

    def process_referral_reward(self, order_id: str, payer_address: str, amount: float) -> bool: ...

    def list_orders(self, source: Optional[str] = None) -> List[LocalOrder]: ...


def _to_db(field: str, value: Any) -> Any:
    if field == "meta":
        meta = value if isinstance(value, OrderMeta) else OrderMeta.from_dict(value)
        return json.dumps(meta.to_dict())
    return value


def _row_to_order(row: Dict[str, Any]) -> LocalOrder:
    raw_meta = row.get("meta")
    try:
        meta = json.loads(raw_meta) if raw_meta else {}
    except ValueError:
        log.warning(f"Order {row.get('id')}: meta column is not valid JSON, ignoring")
        meta = {}
    values = {f: row.get(col) for f, col in _COLUMNS.items() if f != "meta"}
    values["id"] = str(values["id"])
    values["meta"] = OrderMeta.from_dict(meta if isinstance(meta, dict) else {})
    return LocalOrder(**values)


class SqlOrderStore:
    def __init__(self, conn_factory: Callable[[], Any] = get_db_conn, table: str = ORDER_TABLE):
        self.conn_factory = conn_factory
        self.table = table

    @contextmanager
    def _conn(self, op: str):
        try:
            conn = self.conn_factory()
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"{op}: cannot connect to order DB: {e}") from e
        try:
            yield conn
            conn.commit()
        except DRIVER_ERRORS as e:
            conn.rollback()
            raise PersistenceError(f"{op}: {e}") from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._conn("ensure_schema") as conn:
            rexec(conn, f"""
            CREATE TABLE IF NOT EXISTS "{self.table}" (
                id TEXT PRIMARY KEY,
                user_name TEXT,
                user_address TEXT,
                companion_address TEXT,
                item TEXT,
                amount REAL,
                currency TEXT,
                stage TEXT,
                payment_status TEXT,
                display_status TEXT,
                chain_status INTEGER,
                note TEXT,
                source TEXT,
                service_fee REAL,
                deposit REAL,
                assigned_to TEXT,
                meta TEXT,
                created_at INTEGER,
                updated_at INTEGER
            )
            """)
            rexec(conn, """
            CREATE TABLE IF NOT EXISTS referral_rewards (
                order_id TEXT PRIMARY KEY,
                payer_address TEXT,
                amount REAL,
                created_at INTEGER
            )
            """)

    def get_order_by_id(self, order_id: str) -> Optional[LocalOrder]:
        with self._conn("get_order_by_id") as conn:
            rows = rquery(conn, f'SELECT * FROM "{self.table}" WHERE id = ?', (order_id,))
        return _row_to_order(rows[0]) if rows else None

    def list_orders(self, source: Optional[str] = None) -> List[LocalOrder]:
        sql = f'SELECT * FROM "{self.table}"'
        params: tuple = ()
        if source is not None:
            sql += " WHERE source = ?"
            params = (source,)
        sql += " ORDER BY created_at DESC"
        with self._conn("list_orders") as conn:
            rows = rquery(conn, sql, params)
        return [_row_to_order(r) for r in rows]

    def add_order(self, order: LocalOrder) -> LocalOrder:
        now = now_ms()
        if order.created_at is None:
            order.created_at = now
        order.updated_at = now

        cols = list(_COLUMNS.values())
        params = tuple(_to_db(f, getattr(order, f)) for f in _COLUMNS)
        placeholders = ", ".join("?" for _ in cols)
        with self._conn("add_order") as conn:
            rexec(conn, f'INSERT INTO "{self.table}" ({", ".join(cols)}) VALUES ({placeholders})', params)
        log.info(f"Order {order.id} inserted (stage={order.stage}, chain_status={order.chain_status})")
        return order

    def update_order(self, order_id: str, patch: Dict[str, Any]) -> Optional[LocalOrder]:
        unknown = set(patch) - set(_COLUMNS)
        if unknown or "id" in patch:
            raise ValueError(f"Cannot update order fields: {sorted(unknown | ({'id'} & set(patch)))}")

        fields = dict(patch)
        fields["updated_at"] = now_ms()
        sets = ", ".join(f"{_COLUMNS[f]} = ?" for f in fields)
        params = tuple(_to_db(f, v) for f, v in fields.items()) + (order_id,)
        with self._conn("update_order") as conn:
            count = rexec(conn, f'UPDATE "{self.table}" SET {sets} WHERE id = ?', params)
            if count == 0:
                return None
            rows = rquery(conn, f'SELECT * FROM "{self.table}" WHERE id = ?', (order_id,))
        return _row_to_order(rows[0]) if rows else None

    def process_referral_reward(self, order_id: str, payer_address: str, amount: float) -> bool:
        """Records the reward once per order; returns False when it was already recorded."""
        with self._conn("process_referral_reward") as conn:
            rows = rquery(conn, "SELECT order_id FROM referral_rewards WHERE order_id = ?", (order_id,))
            if rows:
                return False
            try:
                rexec(
                    conn,
                    "INSERT INTO referral_rewards (order_id, payer_address, amount, created_at) VALUES (?, ?, ?, ?)",
                    (order_id, payer_address, amount, now_ms()),
                )
            except INTEGRITY_ERRORS:
                # another writer recorded it between the SELECT and the INSERT
                conn.rollback()
                log.info(f"Referral reward for order {order_id} already recorded")
                return False
        log.info(f"Referral reward recorded for order {order_id} (payer={payer_address}, amount={amount})")
        return True
