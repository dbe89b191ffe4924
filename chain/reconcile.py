# chain_sync/chain/reconcile.py
"""
Merge of one ledger order into the local order store.

Rules, in order of precedence:
  * the recorded status never moves backwards (stale reads are ignored)
  * an unassigned companion on the ledger never clears a local assignment
  * orders settled on another rail keep their local fee / deposit
"""

import math
from dataclasses import replace
from typing import Iterable, Optional, Tuple

from chain.decoder import ZERO_ADDRESS, is_valid_address, normalize_address
from chain.order_store import OrderStore
from chain.status import (
    STAGE_COMPLETED,
    can_transition,
    derive_status_fields,
    effective_status,
    local_chain_status,
)
from config import SENTINEL_COMPANIONS, ALT_SETTLEMENT_MODES, ORDER_CURRENCY, now_ms
from exceptions import NotFoundError
from logger import get_logger
from models import ChainMeta, ChainOrder, LocalOrder, OrderMeta

log = get_logger("reconcile")


def to_display_amount(value) -> float:
    """Ledger base units (1/100) -> display units, rounded to 2 decimals."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(num):
        return 0.0
    return round(num / 100, 2)


def chain_meta_from(chain: ChainOrder) -> ChainMeta:
    return ChainMeta(
        status=chain.status,
        dispute_deadline=chain.dispute_deadline,
        last_updated_ms=chain.last_updated_ms,
        rule_set_id=chain.rule_set_id,
        evidence_hash=chain.evidence_hash,
    )


class OrderReconciler:
    def __init__(
        self,
        store: OrderStore,
        sentinel_companions: Iterable[str] = SENTINEL_COMPANIONS,
        alt_settlement_modes: Iterable[str] = ALT_SETTLEMENT_MODES,
        currency: str = ORDER_CURRENCY,
    ):
        self.store = store
        self.sentinels = {ZERO_ADDRESS}
        for s in sentinel_companions:
            if s:
                self.sentinels.add(normalize_address(s))
        self.alt_settlement_modes = set(alt_settlement_modes)
        self.currency = currency

    def assigned_companion(self, value: Optional[str]) -> Optional[str]:
        """Normalized address, or None when it means "nobody assigned"."""
        if not value:
            return None
        normalized = normalize_address(value)
        if not is_valid_address(normalized) or normalized in self.sentinels:
            return None
        return normalized

    def upsert(self, chain: ChainOrder) -> LocalOrder:
        order, _ = self.reconcile_order(chain)
        return order

    def reconcile_order(self, chain: ChainOrder) -> Tuple[LocalOrder, bool]:
        """Returns (local order, created)."""
        order_id = chain.order_id
        existing = self.store.get_order_by_id(order_id)

        service_fee = to_display_amount(chain.service_fee)
        deposit = to_display_amount(chain.deposit)
        if existing is not None and existing.amount is not None:
            amount = existing.amount
        else:
            amount = round(service_fee + deposit, 2)

        local_status = local_chain_status(existing)
        effective = effective_status(local_status, chain.status)

        # work on a copy; the stored record is only touched through the store
        old_meta = existing.meta if existing is not None else OrderMeta()
        meta = replace(old_meta, extra=dict(old_meta.extra))
        if effective > chain.status:
            log.info(
                f"Order {order_id}: ledger read status {chain.status} is behind "
                f"recorded {local_status}; keeping {effective}"
            )
            kept = old_meta.chain or chain_meta_from(chain)
            meta.chain = replace(kept, status=effective)
        else:
            meta.chain = chain_meta_from(chain)
            if local_status is not None and effective != local_status and not can_transition(local_status, effective):
                log.info(f"Order {order_id}: status jumped {local_status} -> {effective}, intermediate events missed")

        preserve_amounts = meta.payment_mode in self.alt_settlement_modes
        companion = self.assigned_companion(chain.companion)
        local_companion = self.assigned_companion(existing.companion_address) if existing is not None else None
        preserve_companion = local_companion is not None and companion is None
        meta.public_pool = companion is None and local_companion is None

        fields = derive_status_fields(effective)

        if existing is not None:
            patch = {"user_address": chain.user, **fields, "meta": meta}
            if not preserve_companion:
                patch["companion_address"] = companion
            if not preserve_amounts:
                patch["service_fee"] = service_fee
                patch["deposit"] = deposit

            updated = self.store.update_order(order_id, patch)
            if updated is None:
                raise NotFoundError(order_id)

            if updated.stage == STAGE_COMPLETED and existing.stage != STAGE_COMPLETED:
                self._reward(order_id, chain.user, amount)
            log.debug(f"Order {order_id} updated -> status={effective}, stage={updated.stage}")
            return updated, False

        created_at = int(chain.created_at) if str(chain.created_at).isdigit() else 0
        order = LocalOrder(
            id=order_id,
            user=chain.user,
            user_address=chain.user,
            companion_address=companion,
            item=f"Chain order #{order_id}",
            amount=amount,
            currency=self.currency,
            stage=fields["stage"],
            payment_status=fields["payment_status"],
            display_status=fields["display_status"],
            chain_status=fields["chain_status"],
            note="chain sync",
            source="chain",
            service_fee=service_fee,
            deposit=deposit,
            meta=meta,
            created_at=created_at or now_ms(),
        )
        added = self.store.add_order(order)
        log.info(f"Order {order_id} created from ledger (status={effective}, stage={order.stage})")
        return added, True

    def _reward(self, order_id: str, user: str, amount: float) -> None:
        try:
            self.store.process_referral_reward(order_id, user, amount)
        except Exception as e:
            # reward bookkeeping must never fail the status merge
            log.error(f"Referral reward failed for order {order_id}: {e}", exc_info=True)
