#api.py
"""
JSON-RPC transport for the Sui full node.

Failures are classified here, once: anything worth retrying comes out as
TransientLedgerError, node-reported errors as LedgerRpcError.
"""
import itertools
from typing import Any, Dict, List, Optional

import requests

from config import SUI_RPC_URL, SESSION, RPC_TIMEOUT_SECONDS
from exceptions import TransientLedgerError, LedgerRpcError
from logger import get_logger

log = get_logger("api")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class LedgerRpcClient:
    def __init__(
        self,
        url: str = SUI_RPC_URL,
        session: Optional[requests.Session] = None,
        timeout: float = RPC_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.session = session or SESSION
        self.timeout = timeout
        self._ids = itertools.count(1)

    def call(self, method: str, params: List[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        log.debug(f"RPC -> {method} {params}")
        try:
            resp = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientLedgerError(f"{method}: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            raise TransientLedgerError(
                f"{method}: HTTP {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise LedgerRpcError(f"{method}: HTTP {resp.status_code} {resp.text[:200]}", method=method)

        try:
            payload = resp.json()
        except ValueError as e:
            raise LedgerRpcError(f"{method}: response is not JSON ({e})", method=method) from e

        err = payload.get("error")
        if err:
            raise LedgerRpcError(
                f"{method}: {err.get('message', 'rpc error')}",
                method=method,
                code=err.get("code"),
                data=err.get("data"),
            )
        return payload.get("result")

    # ---------- Sui methods used by this package ----------
    def get_object_type(self, object_id: str) -> Optional[str]:
        res = self.call("sui_getObject", [object_id, {"showType": True}]) or {}
        return (res.get("data") or {}).get("type")

    def query_events(
        self,
        move_event_type: str,
        cursor: Optional[Dict[str, str]],
        limit: int,
        descending: bool,
    ) -> Dict[str, Any]:
        return self.call(
            "suix_queryEvents",
            [{"MoveEventType": move_event_type}, cursor, limit, descending],
        ) or {}

    def get_transaction(self, digest: str, show_events: bool = True, show_effects: bool = False) -> Dict[str, Any]:
        return self.call(
            "sui_getTransactionBlock",
            [digest, {"showEvents": show_events, "showEffects": show_effects}],
        ) or {}

    def build_move_call(
        self,
        signer: str,
        package_id: str,
        module: str,
        function: str,
        arguments: List[Any],
        gas_budget: int,
    ) -> str:
        """Node-side transaction assembly; returns base64 transaction bytes."""
        res = self.call(
            "unsafe_moveCall",
            [signer, package_id, module, function, [], arguments, None, str(gas_budget), None],
        ) or {}
        tx_bytes = res.get("txBytes")
        if not tx_bytes:
            raise LedgerRpcError(f"unsafe_moveCall {module}::{function}: no txBytes in response")
        return tx_bytes

    def execute_transaction(self, tx_bytes: str, signature: str) -> Dict[str, Any]:
        return self.call(
            "sui_executeTransactionBlock",
            [tx_bytes, [signature], {"showEffects": True}, "WaitForLocalExecution"],
        ) or {}
