"""In-process LedgerStore backed by dicts and per-key asyncio locks.

Records are held as serialized dicts (like a vault holds JSON), so callers
always receive fresh copies. Each critical section takes the lock of the
record it mutates; lock order is order → entitlement → origin index.
Suitable for tests and single-process deployments.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from tokengate.constants import OrderKind, OrderStatus
from tokengate.models import CreditCode, EntitlementRecord, PaymentOrder
from tokengate.store import (
    CodeRedemption,
    CreditDebit,
    DuplicateCodeError,
    DuplicateOrderError,
    IdentityExistsError,
    OriginInUseError,
    Rebinding,
    RecordNotFoundError,
    RedeemOutcome,
    Settlement,
    SettleOutcome,
    TransientStoreError,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MemoryStore:
    """LedgerStore implementation with per-record asyncio locks."""

    def __init__(self, timeout_secs: float = 5.0) -> None:
        self._timeout = timeout_secs
        self._entitlements: dict[str, dict[str, Any]] = {}
        self._origins: dict[str, str] = {}  # bound_origin -> identity
        self._codes: dict[str, dict[str, Any]] = {}
        self._orders: dict[str, dict[str, Any]] = {}
        self._gateway_ids: dict[str, str] = {}  # gateway_order_id -> pay_id
        self._locks: dict[str, asyncio.Lock] = {}
        self._index_lock = asyncio.Lock()

    def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create a per-record lock."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    @asynccontextmanager
    async def _locked(self, *keys: str) -> AsyncIterator[None]:
        """Hold the given record locks, in order, within the store timeout."""
        acquired: list[asyncio.Lock] = []
        try:
            async with asyncio.timeout(self._timeout):
                for key in keys:
                    lock = self._get_lock(key)
                    await lock.acquire()
                    acquired.append(lock)
        except TimeoutError as e:
            for lock in reversed(acquired):
                lock.release()
            raise TransientStoreError(f"timed out waiting for {', '.join(keys)}") from e
        try:
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # -- entitlements ---------------------------------------------------------

    async def insert_entitlement(self, record: EntitlementRecord) -> None:
        async with self._locked(f"ent:{record.identity}"):
            async with self._index_lock:
                if record.identity in self._entitlements:
                    raise IdentityExistsError(f"identity {record.identity} already has a record")
                if record.bound_origin in self._origins:
                    raise OriginInUseError(f"origin {record.bound_origin} is already bound")
                self._entitlements[record.identity] = record.to_dict()
                self._origins[record.bound_origin] = record.identity

    async def get_entitlement(self, identity: str) -> EntitlementRecord | None:
        data = self._entitlements.get(identity)
        return EntitlementRecord.from_dict(data) if data else None

    async def get_entitlement_by_origin(self, origin: str) -> EntitlementRecord | None:
        identity = self._origins.get(origin)
        if identity is None:
            return None
        return await self.get_entitlement(identity)

    async def consume_credit(self, identity: str, issuance_time: int) -> CreditDebit:
        async with self._locked(f"ent:{identity}"):
            data = self._entitlements.get(identity)
            if data is None or data["issuance_time"] != issuance_time:
                return CreditDebit(found=False, debited=False)
            if data["remaining_credit"] <= 0:
                return CreditDebit(found=True, debited=False, remaining_credit=0)
            data["remaining_credit"] -= 1
            return CreditDebit(found=True, debited=True, remaining_credit=data["remaining_credit"])

    async def add_credit(self, identity: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        async with self._locked(f"ent:{identity}"):
            return self._add_credit_locked(identity, amount)

    def _add_credit_locked(self, identity: str, amount: int) -> int:
        data = self._entitlements.get(identity)
        if data is None:
            raise RecordNotFoundError(f"no entitlement record for {identity}")
        data["remaining_credit"] += amount
        return data["remaining_credit"]

    async def rebind_entitlement(self, identity: str, rebinding: Rebinding) -> EntitlementRecord:
        async with self._locked(f"ent:{identity}"):
            async with self._index_lock:
                return self._rebind_locked(identity, rebinding)

    def _rebind_locked(self, identity: str, rebinding: Rebinding) -> EntitlementRecord:
        data = self._entitlements.get(identity)
        if data is None:
            raise RecordNotFoundError(f"no entitlement record for {identity}")
        holder = self._origins.get(rebinding.new_origin)
        if holder is not None and holder != identity:
            raise OriginInUseError(f"origin {rebinding.new_origin} is bound to another identity")
        self._origins.pop(data["bound_origin"], None)
        data["bound_origin"] = rebinding.new_origin
        data["token"] = rebinding.token
        data["issuance_time"] = rebinding.issuance_time
        self._origins[rebinding.new_origin] = identity
        logger.info("Rebound %s to origin %s", identity, rebinding.new_origin)
        return EntitlementRecord.from_dict(data)

    # -- credit codes ---------------------------------------------------------

    async def insert_code(self, code: CreditCode) -> None:
        async with self._locked(f"code:{code.code}"):
            if code.code in self._codes:
                raise DuplicateCodeError(f"code {code.code} already exists")
            self._codes[code.code] = code.to_dict()

    async def get_code(self, code: str) -> CreditCode | None:
        data = self._codes.get(code)
        return CreditCode.from_dict(data) if data else None

    async def redeem_code(self, code: str, identity: str, used_at: datetime) -> CodeRedemption:
        async with self._locked(f"code:{code}"):
            data = self._codes.get(code)
            if data is None:
                return CodeRedemption(RedeemOutcome.NOT_FOUND)
            if data["used"]:
                return CodeRedemption(RedeemOutcome.ALREADY_USED)
            data["used"] = True
            data["used_by"] = identity
            data["used_at"] = used_at.isoformat()
            return CodeRedemption(RedeemOutcome.REDEEMED, grant_amount=data["grant_amount"])

    # -- payment orders -------------------------------------------------------

    async def insert_order(self, order: PaymentOrder) -> None:
        async with self._locked(f"order:{order.pay_id}"):
            if order.pay_id in self._orders:
                raise DuplicateOrderError(f"order {order.pay_id} already exists")
            self._orders[order.pay_id] = order.to_dict()
            if order.gateway_order_id:
                self._gateway_ids[order.gateway_order_id] = order.pay_id

    async def get_order(self, pay_id: str) -> PaymentOrder | None:
        data = self._orders.get(pay_id)
        return PaymentOrder.from_dict(data) if data else None

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> PaymentOrder | None:
        pay_id = self._gateway_ids.get(gateway_order_id)
        if pay_id is None:
            return None
        return await self.get_order(pay_id)

    async def list_pending_orders(self, identity: str) -> list[PaymentOrder]:
        orders = [
            PaymentOrder.from_dict(d)
            for d in self._orders.values()
            if d["identity"] == identity and d["status"] == OrderStatus.PENDING.value
        ]
        orders.sort(key=lambda o: o.created_at or _EPOCH, reverse=True)
        return orders

    async def attach_gateway_order(
        self, pay_id: str, gateway_order_id: str, payment_url: str | None
    ) -> None:
        async with self._locked(f"order:{pay_id}"):
            data = self._orders.get(pay_id)
            if data is None:
                raise RecordNotFoundError(f"no order {pay_id}")
            existing = self._gateway_ids.get(gateway_order_id)
            if existing is not None and existing != pay_id:
                raise DuplicateOrderError(f"gateway order {gateway_order_id} already attached")
            data["gateway_order_id"] = gateway_order_id
            data["payment_url"] = payment_url
            self._gateway_ids[gateway_order_id] = pay_id

    async def mark_order_failed(self, pay_id: str) -> bool:
        async with self._locked(f"order:{pay_id}"):
            data = self._orders.get(pay_id)
            if data is None or data["status"] != OrderStatus.PENDING.value:
                return False
            data["status"] = OrderStatus.FAILED.value
            return True

    async def settle_order(
        self,
        pay_id: str,
        *,
        really_paid_price: Decimal,
        pay_method: int,
        paid_at: datetime,
        rebinding: Rebinding | None = None,
    ) -> Settlement:
        async with self._locked(f"order:{pay_id}"):
            data = self._orders.get(pay_id)
            if data is None:
                return Settlement(SettleOutcome.NOT_FOUND)
            order = PaymentOrder.from_dict(data)
            if order.status is OrderStatus.PAID:
                return Settlement(SettleOutcome.ALREADY_PAID, order=order)
            if order.status is not OrderStatus.PENDING:
                return Settlement(SettleOutcome.NOT_PENDING, order=order)

            # Effect first: if it raises, the order stays pending.
            async with self._locked(f"ent:{order.identity}"):
                if order.kind is OrderKind.ORIGIN_REBIND:
                    if rebinding is None:
                        raise ValueError(f"rebind order {pay_id} settled without a rebinding")
                    async with self._index_lock:
                        record = self._rebind_locked(order.identity, rebinding)
                else:
                    self._add_credit_locked(order.identity, order.requested_amount)
                    record = EntitlementRecord.from_dict(self._entitlements[order.identity])

            data["status"] = OrderStatus.PAID.value
            data["really_paid_price"] = str(really_paid_price)
            data["pay_method"] = pay_method
            data["paid_at"] = paid_at.isoformat()
            return Settlement(
                SettleOutcome.APPLIED, order=PaymentOrder.from_dict(data), record=record
            )
