"""Outbound payment notifications to the chat front end."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from tokengate.constants import PAY_METHOD_LABELS, OrderKind, PayMethod
from tokengate.epay_client import format_price
from tokengate.models import EntitlementRecord, PaymentOrder

logger = logging.getLogger(__name__)


@runtime_checkable
class PaymentNotifier(Protocol):
    """Tells a user that their payment was applied."""

    async def payment_settled(self, order: PaymentOrder, record: EntitlementRecord) -> None: ...


class NullNotifier:
    """Notifier that does nothing. Used when no bot is configured."""

    async def payment_settled(self, order: PaymentOrder, record: EntitlementRecord) -> None:
        return None


def _pay_method_label(pay_method: int | None) -> str:
    try:
        return PAY_METHOD_LABELS[PayMethod(pay_method)]
    except ValueError:
        return "Unknown"


def format_settlement_message(order: PaymentOrder, record: EntitlementRecord) -> str:
    """Plain-text message body for a settled order."""
    paid = format_price(order.really_paid_price if order.really_paid_price is not None else order.price)
    lines = [
        f"Item: {order.goods_name}",
        f"Amount paid: {paid}",
        f"Payment method: {_pay_method_label(order.pay_method)}",
        f"Order: {order.pay_id}",
    ]
    if order.kind is OrderKind.ORIGIN_REBIND:
        header = "Origin change complete"
        lines += [
            f"New origin: {record.bound_origin}",
            "",
            "A new token was issued; previous tokens no longer work.",
            "Open your account info to get it.",
        ]
    else:
        header = "Payment received"
        lines += [
            f"Credits added: {order.requested_amount}",
            f"Credits remaining: {record.remaining_credit}",
        ]
    return "\n".join([header, "", *lines])


class TelegramNotifier:
    """Sends settlement messages through the Telegram Bot API.

    The identity is used as the chat id.
    """

    def __init__(self, bot_token: str, api_base: str = "https://api.telegram.org") -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{api_base.rstrip('/')}/bot{bot_token}",
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )

    async def send_message(self, chat_id: str, text: str) -> None:
        response = await self._client.post("/sendMessage", json={"chat_id": chat_id, "text": text})
        response.raise_for_status()

    async def payment_settled(self, order: PaymentOrder, record: EntitlementRecord) -> None:
        await self.send_message(order.identity, format_settlement_message(order, record))
        logger.info("Settlement notice sent to %s for order %s", order.identity, order.pay_id)

    async def close(self) -> None:
        await self._client.aclose()
