#models.py
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class EventCursor:
    """Ledger event id: position of one event in the stream."""
    tx_digest: str
    event_seq: str

    def to_rpc(self) -> Dict[str, str]:
        return {"txDigest": self.tx_digest, "eventSeq": self.event_seq}

    @classmethod
    def from_rpc(cls, value: Any) -> Optional["EventCursor"]:
        if not isinstance(value, dict):
            return None
        digest = value.get("txDigest")
        seq = value.get("eventSeq")
        if not isinstance(digest, str) or seq is None:
            return None
        return cls(digest, str(seq))


@dataclass(frozen=True)
class ChainOrder:
    order_id: str
    user: str
    companion: str
    rule_set_id: str
    service_fee: str
    deposit: str
    platform_fee_bps: str
    status: int
    created_at: str
    finish_at: str
    dispute_deadline: str
    vault_service: str
    vault_deposit: str
    evidence_hash: str
    dispute_status: int
    resolved_by: str
    resolved_at: str
    last_updated_ms: Optional[int] = None


@dataclass
class ChainMeta:
    status: int
    dispute_deadline: str = "0"
    last_updated_ms: Optional[int] = None
    rule_set_id: str = "0"
    evidence_hash: str = "0x"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "disputeDeadline": self.dispute_deadline,
            "lastUpdatedMs": self.last_updated_ms,
            "ruleSetId": self.rule_set_id,
            "evidenceHash": self.evidence_hash,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["ChainMeta"]:
        status = d.get("status")
        if not isinstance(status, int) or isinstance(status, bool):
            return None
        return cls(
            status=status,
            dispute_deadline=str(d.get("disputeDeadline", "0")),
            last_updated_ms=d.get("lastUpdatedMs"),
            rule_set_id=str(d.get("ruleSetId", "0")),
            evidence_hash=str(d.get("evidenceHash", "0x")),
        )


_META_KEYS = ("paymentMode", "publicPool", "companionEndedAt", "chain")


@dataclass
class OrderMeta:
    """
    Typed view of the order's JSON metadata bag.
    Keys this package does not own are kept untouched in ``extra``.
    """
    payment_mode: Optional[str] = None
    public_pool: Optional[bool] = None
    companion_ended_at: Optional[int] = None
    chain: Optional[ChainMeta] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        if self.payment_mode is not None:
            out["paymentMode"] = self.payment_mode
        if self.public_pool is not None:
            out["publicPool"] = self.public_pool
        if self.companion_ended_at is not None:
            out["companionEndedAt"] = self.companion_ended_at
        if self.chain is not None:
            out["chain"] = self.chain.to_dict()
        return out

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "OrderMeta":
        d = d or {}
        ended = d.get("companionEndedAt")
        try:
            ended = int(ended) if ended is not None else None
        except (TypeError, ValueError):
            ended = None
        chain_raw = d.get("chain")
        public_pool = d.get("publicPool")
        return cls(
            payment_mode=d.get("paymentMode"),
            public_pool=public_pool if isinstance(public_pool, bool) else None,
            companion_ended_at=ended,
            chain=ChainMeta.from_dict(chain_raw) if isinstance(chain_raw, dict) else None,
            extra={k: v for k, v in d.items() if k not in _META_KEYS},
        )


@dataclass
class LocalOrder:
    id: str
    user: str = ""
    user_address: Optional[str] = None
    companion_address: Optional[str] = None
    item: str = ""
    amount: float = 0.0
    currency: str = "CNY"
    stage: str = "pending"
    payment_status: Optional[str] = None
    display_status: Optional[str] = None
    chain_status: Optional[int] = None
    note: Optional[str] = None
    source: Optional[str] = None
    service_fee: Optional[float] = None
    deposit: Optional[float] = None
    assigned_to: Optional[str] = None
    meta: OrderMeta = field(default_factory=OrderMeta)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass(frozen=True)
class SyncCursor:
    id: str
    cursor: Optional[EventCursor]
    last_event_at: Optional[int]
    updated_at: Optional[str] = None


@dataclass
class ReadResult:
    orders: List[ChainOrder]
    furthest_cursor: Optional[EventCursor]
    furthest_event_time: Optional[int]


@dataclass
class AdminReceipt:
    tx_id: str
    effects: Optional[Dict[str, Any]] = None


@dataclass
class SyncResult:
    mode: str               # bootstrap / incremental
    total: int
    created: int
    updated: int
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PolicyResult:
    policy: str             # auto_cancel / auto_complete / auto_finalize
    enabled: bool
    threshold_hours: Optional[float] = None
    total: int = 0
    candidates: int = 0
    succeeded: int = 0
    skipped: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    succeeded_ids: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
