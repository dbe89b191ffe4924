# chain_sync/chain/admin_actions.py
"""
The only ledger writes this package performs: four admin calls into the
order_system module, each signed with the platform admin key.
"""

import base64
import hashlib
import re
from typing import Any, List, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from api import LedgerRpcClient
from chain.retry import RetryPolicy
from chain.ledger_reader import require_deployment
from config import PACKAGE_ID, DAPP_HUB_ID, SUI_ADMIN_PRIVATE_KEY, GAS_BUDGET
from exceptions import ConfigError, ValidationError
from logger import get_logger
from models import AdminReceipt

log = get_logger("admin_actions")

ORDER_MODULE = "order_system"
CLOCK_OBJECT_ID = "0x6"
ED25519_FLAG = 0x00
# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TX_INTENT = bytes([0, 0, 0])
MAX_BPS = 10_000

_ORDER_ID_RE = re.compile(r"[0-9]+")


# ---------- Validation ----------
def validate_order_id(order_id: str) -> str:
    if not isinstance(order_id, str) or not _ORDER_ID_RE.fullmatch(order_id):
        raise ValidationError(f"orderId must be a numeric string, got {order_id!r}")
    return order_id


def validate_bps(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value < 0 or value > MAX_BPS:
        raise ValidationError(f"{name} out of range [0, {MAX_BPS}]: {value}")
    return value


# ---------- Signer ----------
class AdminSigner:
    def __init__(self, private_key: Ed25519PrivateKey):
        self._key = private_key
        self.public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.address = "0x" + hashlib.blake2b(bytes([ED25519_FLAG]) + self.public_key, digest_size=32).hexdigest()

    @classmethod
    def from_secret(cls, secret: str) -> "AdminSigner":
        """
        Accepts the keystore form (base64 of flag byte + 32-byte seed) or a
        raw 32-byte seed as hex / base64.
        """
        secret = (secret or "").strip()
        if not secret:
            raise ConfigError("Missing SUI_ADMIN_PRIVATE_KEY")
        if secret.startswith("suiprivkey"):
            raise ConfigError("Bech32 'suiprivkey' keys are not supported; export the key as base64")

        raw: Optional[bytes] = None
        hex_body = secret[2:] if secret.startswith("0x") else secret
        if len(hex_body) == 64:
            try:
                raw = bytes.fromhex(hex_body)
            except ValueError:
                raw = None
        if raw is None:
            try:
                raw = base64.b64decode(secret, validate=True)
            except ValueError as e:
                raise ConfigError(f"SUI_ADMIN_PRIVATE_KEY is neither hex nor base64: {e}") from e

        if len(raw) == 33:
            if raw[0] != ED25519_FLAG:
                raise ConfigError(f"Unsupported key scheme flag {raw[0]}; only Ed25519 is supported")
            raw = raw[1:]
        if len(raw) != 32:
            raise ConfigError(f"Invalid Ed25519 private key length {len(raw)}")
        return cls(Ed25519PrivateKey.from_private_bytes(raw))

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        tx_bytes = base64.b64decode(tx_bytes_b64)
        digest = hashlib.blake2b(TX_INTENT + tx_bytes, digest_size=32).digest()
        signature = self._key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode("ascii")


# ---------- Client ----------
class LedgerAdminClient:
    def __init__(
        self,
        client: LedgerRpcClient,
        signer: Optional[AdminSigner] = None,
        package_id: str = PACKAGE_ID,
        dapp_hub_id: str = DAPP_HUB_ID,
        retry: Optional[RetryPolicy] = None,
        gas_budget: int = GAS_BUDGET,
    ):
        self.client = client
        self._signer = signer
        self.package_id = package_id
        self.dapp_hub_id = dapp_hub_id
        self.retry = retry or RetryPolicy()
        self.gas_budget = gas_budget

    @property
    def signer(self) -> AdminSigner:
        # loaded lazily so read-only deployments need no admin key
        if self._signer is None:
            self._signer = AdminSigner.from_secret(SUI_ADMIN_PRIVATE_KEY)
        return self._signer

    def _submit(self, function: str, arguments: List[Any], order_id: str) -> AdminReceipt:
        require_deployment(self.package_id, self.dapp_hub_id)
        signer = self.signer
        label = f"{ORDER_MODULE}::{function}"

        def attempt() -> dict:
            tx_bytes = self.client.build_move_call(
                signer.address, self.package_id, ORDER_MODULE, function, arguments, self.gas_budget
            )
            return self.client.execute_transaction(tx_bytes, signer.sign_transaction(tx_bytes))

        log.info(f"Submitting {label} for order {order_id}")
        result = self.retry.call(attempt, label=label)
        receipt = AdminReceipt(tx_id=result.get("digest", ""), effects=result.get("effects"))

        status = ((receipt.effects or {}).get("status") or {}).get("status")
        log.info(f"{label} order {order_id} -> tx {receipt.tx_id} (status={status})")
        return receipt

    def resolve_dispute(self, order_id: str, service_refund_bps: int, deposit_slash_bps: int) -> AdminReceipt:
        validate_order_id(order_id)
        validate_bps("serviceRefundBps", service_refund_bps)
        validate_bps("depositSlashBps", deposit_slash_bps)
        return self._submit(
            "resolve_dispute",
            [self.dapp_hub_id, order_id, str(service_refund_bps), str(deposit_slash_bps), CLOCK_OBJECT_ID],
            order_id,
        )

    def cancel(self, order_id: str) -> AdminReceipt:
        validate_order_id(order_id)
        return self._submit("admin_cancel_order", [self.dapp_hub_id, order_id], order_id)

    def mark_completed(self, order_id: str) -> AdminReceipt:
        validate_order_id(order_id)
        return self._submit("admin_mark_completed", [self.dapp_hub_id, order_id, CLOCK_OBJECT_ID], order_id)

    def finalize_without_dispute(self, order_id: str) -> AdminReceipt:
        validate_order_id(order_id)
        return self._submit("finalize_no_dispute", [self.dapp_hub_id, order_id, CLOCK_OBJECT_ID], order_id)
