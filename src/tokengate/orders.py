"""Payment order creation and status checks against the gateway.

An order is inserted as ``pending`` before the gateway is called, so a
notification can never arrive for an order we do not know. The gateway
call happens outside any store operation; if it fails, the order is
marked ``failed``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any

from tokengate.config import GateConfig
from tokengate.constants import PARAM_SEPARATOR, GatewayOrderState, OrderKind, OrderStatus, PayMethod
from tokengate.epay_client import EpayClient, EpayError
from tokengate.models import PaymentOrder, utcnow
from tokengate.origin import is_public_origin, normalize_origin
from tokengate.store import LedgerStore

logger = logging.getLogger(__name__)

CREDIT_ORDER_PREFIX = "CREDIT_"
REBIND_ORDER_PREFIX = "REBIND_"

_GATEWAY_STATE_LABELS = {
    GatewayOrderState.WAITING: "waiting",
    GatewayOrderState.PAID: "paid",
    GatewayOrderState.FAILED: "failed",
}


class OrderError(Exception):
    """Base exception for order creation and lookup failures."""


class PaymentsDisabledError(OrderError):
    """No gateway is configured."""


class OrderRequestError(OrderError):
    """The request cannot become an order (bad count, origin, or no record)."""


class GatewayRejectedError(OrderError):
    """The gateway answered but did not accept the request."""


@dataclass(frozen=True)
class OrderCreation:
    order: PaymentOrder
    payment_url: str | None
    timeout_minutes: int | None = None


def build_param(identity: str, new_origin: str | None = None) -> str:
    """Correlation parameter echoed back by the gateway's notification."""
    if new_origin is None:
        return identity
    return f"{identity}{PARAM_SEPARATOR}{new_origin}"


def parse_param(param: str) -> tuple[str, str | None]:
    """Split a correlation parameter into (identity, new_origin or None)."""
    identity, sep, origin = param.partition(PARAM_SEPARATOR)
    return identity, (origin if sep and origin else None)


def _parse_timeout(value: Any) -> int | None:
    """Gateway payment window in minutes, or None when absent or unreadable."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable gateway timeOut %r", value)
        return None


class PaymentOrderService:
    def __init__(
        self,
        store: LedgerStore,
        config: GateConfig,
        client: EpayClient | None,
    ) -> None:
        self._store = store
        self._config = config
        self._client = client

    def _require_client(self) -> EpayClient:
        if self._client is None:
            raise PaymentsDisabledError("payment gateway is not configured")
        return self._client

    async def create_credit_order(
        self, identity: str, count: int, pay_type: PayMethod = PayMethod.WECHAT
    ) -> OrderCreation:
        """Open an order for ``count`` credits at ``price_per_use`` each."""
        client = self._require_client()
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise OrderRequestError(f"count must be a positive integer, got {count!r}")
        if await self._store.get_entitlement(identity) is None:
            raise OrderRequestError(f"{identity} has no token yet")

        order = PaymentOrder(
            pay_id=f"{CREDIT_ORDER_PREFIX}{identity}_{time.time_ns()}",
            identity=identity,
            kind=OrderKind.CREDIT_PURCHASE,
            price=self._config.price_per_use * count,
            goods_name=f"{count} verification credits",
            requested_amount=count,
            created_at=utcnow(),
        )
        return await self._open(client, order, build_param(identity), pay_type)

    async def create_rebind_order(
        self, identity: str, new_origin: str, pay_type: PayMethod = PayMethod.WECHAT
    ) -> OrderCreation:
        """Open an order that moves ``identity``'s binding to ``new_origin``."""
        client = self._require_client()
        if not is_public_origin(new_origin):
            raise OrderRequestError(f"{new_origin!r} is not a public IP address")
        new_origin = normalize_origin(new_origin)

        record = await self._store.get_entitlement(identity)
        if record is None:
            raise OrderRequestError(f"{identity} has no token yet")
        if record.bound_origin == new_origin:
            raise OrderRequestError(f"{new_origin} is already your bound origin")
        holder = await self._store.get_entitlement_by_origin(new_origin)
        if holder is not None and holder.identity != identity:
            raise OrderRequestError(f"{new_origin} is bound to another account")

        order = PaymentOrder(
            pay_id=f"{REBIND_ORDER_PREFIX}{identity}_{time.time_ns()}",
            identity=identity,
            kind=OrderKind.ORIGIN_REBIND,
            price=self._config.rebind_price,
            goods_name=f"Rebind origin to {new_origin}",
            new_origin=new_origin,
            created_at=utcnow(),
        )
        return await self._open(client, order, build_param(identity, new_origin), pay_type)

    async def _open(
        self, client: EpayClient, order: PaymentOrder, param: str, pay_type: PayMethod
    ) -> OrderCreation:
        await self._store.insert_order(order)

        try:
            result = await client.create_order(
                pay_id=order.pay_id,
                pay_type=pay_type,
                price=order.price,
                goods_name=order.goods_name,
                param=param,
                notify_url=self._config.notify_url or "",
                return_url=self._config.return_url or "",
            )
        except EpayError:
            await self._store.mark_order_failed(order.pay_id)
            logger.error("Gateway error creating order %s", order.pay_id, exc_info=True)
            raise

        data = result.get("data") or {}
        gateway_order_id = str(data.get("orderId") or "")
        if not client.is_success(result) or not gateway_order_id:
            await self._store.mark_order_failed(order.pay_id)
            msg = str(result.get("msg") or "no order id returned")
            logger.warning("Gateway rejected order %s: %s", order.pay_id, msg)
            raise GatewayRejectedError(msg)

        payment_url = data.get("payUrl") or None
        await self._store.attach_gateway_order(order.pay_id, gateway_order_id, payment_url)
        logger.info(
            "Created %s order %s (gateway %s) for %s, price %s",
            order.kind.value, order.pay_id, gateway_order_id, order.identity, order.price,
        )
        return OrderCreation(
            order=dataclasses.replace(
                order, gateway_order_id=gateway_order_id, payment_url=payment_url
            ),
            payment_url=payment_url,
            timeout_minutes=_parse_timeout(data.get("timeOut")),
        )

    async def check_order(self, gateway_order_id: str, identity: str | None = None) -> dict[str, Any]:
        """Query the gateway for an order and reconcile a failed state locally.

        A local ``paid`` status wins over whatever the gateway reports.
        Settlement itself only ever happens through the notification path.
        """
        client = self._require_client()
        local = await self._store.get_order_by_gateway_id(gateway_order_id)
        if local is not None and identity is not None and local.identity != identity:
            raise OrderRequestError(f"order {gateway_order_id} does not belong to {identity}")

        result = await client.get_order(gateway_order_id)
        if not client.is_success(result):
            raise GatewayRejectedError(str(result.get("msg") or "order query failed"))
        data = result.get("data") or {}

        if local is None and data.get("payId"):
            local = await self._store.get_order(str(data["payId"]))
            if local is not None and identity is not None and local.identity != identity:
                raise OrderRequestError(f"order {gateway_order_id} does not belong to {identity}")

        try:
            state = _GATEWAY_STATE_LABELS[GatewayOrderState(int(data.get("state")))]
        except (TypeError, ValueError, KeyError):
            state = "unknown"

        local_status: str | None = None
        if local is not None:
            local_status = local.status.value
            if local.status is OrderStatus.PAID:
                state = "paid"
            elif state == "failed" and local.status is OrderStatus.PENDING:
                if await self._store.mark_order_failed(local.pay_id):
                    logger.info("Order %s marked failed per gateway", local.pay_id)
                local_status = OrderStatus.FAILED.value

        price = data.get("price")
        return {
            "gateway_order_id": gateway_order_id,
            "pay_id": local.pay_id if local is not None else data.get("payId"),
            "goods_name": local.goods_name if local is not None else None,
            "price": str(price) if price is not None else None,
            "state": state,
            "local_status": local_status,
            "payment_url": data.get("payUrl"),
        }
