"""Exactly-once application of payment gateway notifications.

The gateway retries a notification until it is acknowledged, so every
delivery after the first successful one must short-circuit. The check
"is this order still pending" and the effect (credit grant or origin
rebind) commit together in ``LedgerStore.settle_order``; an order that
is already paid is acknowledged without touching the ledger again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from tokengate.config import GateConfig
from tokengate.constants import OrderKind, OrderStatus
from tokengate.epay_client import NOTIFY_SIGN_FIELDS, format_price, verify_sign
from tokengate.models import EntitlementRecord, PaymentOrder, utcnow
from tokengate.notifier import NullNotifier, PaymentNotifier
from tokengate.orders import parse_param
from tokengate.store import LedgerStore, Rebinding, SettleOutcome, StoreError
from tokengate.verification import InvalidOriginError, VerificationService

logger = logging.getLogger(__name__)

REQUIRED_NOTIFY_FIELDS = ("mchId", "orderId", "type", "price", "reallyPrice", "sign")


class ReconcileReason(str, Enum):
    APPLIED = "applied"
    ALREADY_PAID = "already_paid"
    MISSING_FIELD = "missing_field"
    MERCHANT_MISMATCH = "merchant_mismatch"
    SIGNATURE_MISMATCH = "signature_mismatch"
    MALFORMED_AMOUNT = "malformed_amount"
    ORDER_NOT_FOUND = "order_not_found"
    PRICE_MISMATCH = "price_mismatch"
    ORDER_NOT_PENDING = "order_not_pending"
    APPLY_FAILED = "apply_failed"


@dataclass(frozen=True)
class ReconcileResult:
    """``ack`` tells the gateway to stop retrying."""

    ack: bool
    reason: ReconcileReason
    order: PaymentOrder | None = None


def _reject(reason: ReconcileReason, order: PaymentOrder | None = None) -> ReconcileResult:
    return ReconcileResult(ack=False, reason=reason, order=order)


class WebhookReconciler:
    """Validates gateway notifications and settles the matching order once."""

    def __init__(
        self,
        store: LedgerStore,
        config: GateConfig,
        verification: VerificationService,
        notifier: PaymentNotifier | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._verification = verification
        self._notifier = notifier or NullNotifier()
        self._tasks: set[asyncio.Task[None]] = set()

    async def reconcile(self, params: Mapping[str, str]) -> ReconcileResult:
        missing = [name for name in REQUIRED_NOTIFY_FIELDS if name not in params]
        if missing:
            logger.warning("Notification missing fields: %s", ", ".join(missing))
            return _reject(ReconcileReason.MISSING_FIELD)

        if params["mchId"] != self._config.payment_mch_id:
            logger.warning("Notification for unknown merchant %s", params["mchId"])
            return _reject(ReconcileReason.MERCHANT_MISMATCH)

        signed = dict(params)
        signed.setdefault("param", "")
        if not verify_sign(NOTIFY_SIGN_FIELDS, signed, self._config.payment_secret or "", params["sign"]):
            logger.warning("Notification signature mismatch for gateway order %s", params["orderId"])
            return _reject(ReconcileReason.SIGNATURE_MISMATCH)

        try:
            price = Decimal(params["price"])
            really_paid = Decimal(params["reallyPrice"])
            pay_method = int(params["type"])
            if not (price.is_finite() and really_paid.is_finite()):
                raise ValueError("non-finite amount")
            signed_price = format_price(price)
        except (InvalidOperation, ValueError) as e:
            logger.warning("Notification with unparseable amounts: %s", e)
            return _reject(ReconcileReason.MALFORMED_AMOUNT)

        gateway_order_id = params["orderId"]
        identity, param_origin = parse_param(signed["param"])
        order = await self._resolve_order(identity, gateway_order_id)
        if order is None:
            logger.warning(
                "No order for notification: param=%s orderId=%s", signed["param"], gateway_order_id
            )
            return ReconcileResult(ack=False, reason=ReconcileReason.ORDER_NOT_FOUND)

        if order.status is OrderStatus.PAID:
            logger.info("Order %s already settled, acknowledging replay", order.pay_id)
            return ReconcileResult(ack=True, reason=ReconcileReason.ALREADY_PAID, order=order)
        if order.status is not OrderStatus.PENDING:
            logger.error(
                "CRITICAL: payment received for %s order %s (identity=%s, paid=%s). "
                "Needs manual review.",
                order.status.value, order.pay_id, order.identity, really_paid,
            )
            return _reject(ReconcileReason.ORDER_NOT_PENDING, order)

        if signed_price != format_price(order.price):
            logger.warning(
                "Notification price %s does not match order %s price %s",
                price, order.pay_id, order.price,
            )
            return _reject(ReconcileReason.PRICE_MISMATCH, order)

        rebinding: Rebinding | None = None
        if order.kind is OrderKind.ORIGIN_REBIND:
            new_origin = order.new_origin or param_origin
            if param_origin and order.new_origin and param_origin != order.new_origin:
                logger.warning(
                    "Notification origin %s differs from order %s target %s; using the order's",
                    param_origin, order.pay_id, order.new_origin,
                )
            try:
                rebinding = self._verification.prepare_rebinding(order.identity, new_origin or "")
            except InvalidOriginError:
                logger.error(
                    "CRITICAL: rebind order %s has no usable target origin (%r)",
                    order.pay_id, new_origin,
                )
                return _reject(ReconcileReason.APPLY_FAILED, order)

        try:
            settlement = await self._store.settle_order(
                order.pay_id,
                really_paid_price=really_paid,
                pay_method=pay_method,
                paid_at=utcnow(),
                rebinding=rebinding,
            )
        except StoreError:
            # Nothing committed; the gateway will retry.
            logger.error(
                "CRITICAL: failed to settle order %s for %s (paid=%s)",
                order.pay_id, order.identity, really_paid, exc_info=True,
            )
            return _reject(ReconcileReason.APPLY_FAILED, order)

        if settlement.outcome is SettleOutcome.APPLIED:
            logger.info(
                "Settled %s order %s for %s (paid=%s)",
                order.kind.value, order.pay_id, order.identity, really_paid,
            )
            if settlement.record is not None:
                self._schedule_notification(settlement.order, settlement.record)
            return ReconcileResult(ack=True, reason=ReconcileReason.APPLIED, order=settlement.order)
        if settlement.outcome is SettleOutcome.ALREADY_PAID:
            logger.info("Order %s settled concurrently, acknowledging", order.pay_id)
            return ReconcileResult(
                ack=True, reason=ReconcileReason.ALREADY_PAID, order=settlement.order
            )
        if settlement.outcome is SettleOutcome.NOT_FOUND:
            return _reject(ReconcileReason.ORDER_NOT_FOUND)
        return _reject(ReconcileReason.ORDER_NOT_PENDING, settlement.order)

    async def _resolve_order(self, identity: str, gateway_order_id: str) -> PaymentOrder | None:
        """Find the order a notification refers to.

        An exact gateway order id match wins. Otherwise the identity's most
        recent pending order is used, but only if it has no gateway id of
        its own (its creation response was lost).
        """
        order = await self._store.get_order_by_gateway_id(gateway_order_id)
        if order is not None:
            if identity and order.identity != identity:
                logger.warning(
                    "Gateway order %s belongs to %s, notification names %s",
                    gateway_order_id, order.identity, identity,
                )
                return None
            return order
        if not identity:
            return None
        pending = await self._store.list_pending_orders(identity)
        if pending and pending[0].gateway_order_id is None:
            return pending[0]
        return None

    # -- notifications --------------------------------------------------------

    def _schedule_notification(self, order: PaymentOrder, record: EntitlementRecord) -> None:
        task = asyncio.create_task(self._notify(order, record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _notify(self, order: PaymentOrder, record: EntitlementRecord) -> None:
        try:
            await self._notifier.payment_settled(order, record)
        except Exception:
            logger.warning("Settlement notice for order %s failed", order.pay_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight notifications. Call before shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
