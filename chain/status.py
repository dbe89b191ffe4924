# chain_sync/chain/status.py
"""
Ledger order status codes and everything derived from them.

The ledger status is the source of truth; stage / payment status on the
local record are always derived from the *effective* status, which never
moves backwards.
"""

from typing import Dict, Optional

from models import LocalOrder

CREATED = 0
PAID = 1
DEPOSITED = 2
COMPLETED = 3
DISPUTED = 4
RESOLVED = 5
CANCELLED = 6

STATUS_NAMES = {
    CREATED: "CREATED",
    PAID: "PAID",
    DEPOSITED: "DEPOSITED",
    COMPLETED: "COMPLETED",
    DISPUTED: "DISPUTED",
    RESOLVED: "RESOLVED",
    CANCELLED: "CANCELLED",
}

STAGE_PENDING = "pending"
STAGE_CONFIRMED = "confirmed"
STAGE_IN_PROGRESS = "in-progress"
STAGE_COMPLETED = "completed"
STAGE_CANCELLED = "cancelled"
UNKNOWN = "unknown"

PAYMENT_STATUS = {
    CREATED: "unpaid",
    PAID: "service fee paid",
    DEPOSITED: "deposit locked",
    COMPLETED: "awaiting settlement",
    DISPUTED: "in dispute",
    RESOLVED: "settled",
    CANCELLED: "cancelled",
}

TRANSITIONS = {
    CREATED: {PAID, CANCELLED},
    PAID: {DEPOSITED, CANCELLED},
    DEPOSITED: {COMPLETED},
    COMPLETED: {DISPUTED, RESOLVED},
    DISPUTED: {RESOLVED},
    RESOLVED: set(),
    CANCELLED: set(),
}


def is_known(status: int) -> bool:
    return status in STATUS_NAMES


def map_stage(status: int) -> str:
    if not is_known(status):
        return UNKNOWN
    if status == CANCELLED:
        return STAGE_CANCELLED
    if status == RESOLVED:
        return STAGE_COMPLETED
    if status >= DEPOSITED:
        return STAGE_IN_PROGRESS
    if status == PAID:
        return STAGE_CONFIRMED
    return STAGE_PENDING


def map_payment_status(status: int) -> str:
    return PAYMENT_STATUS.get(status, UNKNOWN)


def is_terminal(status: int) -> bool:
    return status in (RESOLVED, CANCELLED)


def is_cancelable(status: int) -> bool:
    return status in (CREATED, PAID)


def can_transition(src: int, dst: int) -> bool:
    return dst in TRANSITIONS.get(src, set())


def effective_status(local: Optional[int], remote: int) -> int:
    """The status never regresses: max of what we recorded and what we just read."""
    if local is None:
        return remote
    return max(local, remote)


def local_chain_status(order: Optional[LocalOrder]) -> Optional[int]:
    """Recorded ledger status of a local order: column first, then meta.chain.status."""
    if order is None:
        return None
    if order.chain_status is not None:
        return order.chain_status
    if order.meta.chain is not None:
        return order.meta.chain.status
    return None


def derive_status_fields(status: int) -> Dict[str, object]:
    payment_status = map_payment_status(status)
    return {
        "chain_status": status,
        "payment_status": payment_status,
        "display_status": payment_status,
        "stage": map_stage(status),
    }
