"""Tests for payment order creation and gateway status checks."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from tokengate.config import GateConfig
from tokengate.constants import OrderKind, OrderStatus, PayMethod
from tokengate.epay_client import EpayClient, EpayConnectionError, EpayServerError
from tokengate.models import EntitlementRecord
from tokengate.orders import (
    GatewayRejectedError,
    OrderRequestError,
    PaymentOrderService,
    PaymentsDisabledError,
    build_param,
    parse_param,
)
from tokengate.stores import MemoryStore

CONFIG = GateConfig(
    payment_base_url="https://pay.example.com",
    payment_mch_id="1001",
    payment_secret="secret",
    price_per_use=Decimal("0.10"),
    rebind_price=Decimal("2.00"),
    notify_url="https://gate.example.com/notify",
    return_url="https://gate.example.com/return",
)


def _mock_response(status: int = 200, json_data: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data or {},
        request=httpx.Request("POST", "https://pay.example.com"),
    )


def _created(order_id: str = "GW1", pay_url: str = "https://pay.example.com/p/GW1") -> httpx.Response:
    return _mock_response(
        200, {"code": 1, "msg": "ok", "data": {"orderId": order_id, "payUrl": pay_url, "timeOut": 5}}
    )


async def _service(*responses: httpx.Response, side_effect=None) -> tuple[PaymentOrderService, MemoryStore, EpayClient]:
    store = MemoryStore()
    await store.insert_entitlement(
        EntitlementRecord(
            identity="42",
            bound_origin="203.0.113.9",
            token="t",
            remaining_credit=3,
            issuance_time=1,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )
    client = EpayClient("https://pay.example.com", "1001", "secret")
    client._client.request = AsyncMock(side_effect=side_effect or list(responses))
    return PaymentOrderService(store, CONFIG, client), store, client


class TestParam:
    def test_credit_param_is_identity(self) -> None:
        assert build_param("42") == "42"
        assert parse_param("42") == ("42", None)

    def test_rebind_param(self) -> None:
        assert build_param("42", "198.51.100.7") == "42|198.51.100.7"
        assert parse_param("42|198.51.100.7") == ("42", "198.51.100.7")

    def test_empty(self) -> None:
        assert parse_param("") == ("", None)
        assert parse_param("42|") == ("42", None)


# ---------------------------------------------------------------------------
# Credit orders
# ---------------------------------------------------------------------------


class TestCreditOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order(self) -> None:
        service, store, client = await _service(_created())
        created = await service.create_credit_order("42", 10)

        assert created.payment_url == "https://pay.example.com/p/GW1"
        assert created.timeout_minutes == 5
        assert created.order.gateway_order_id == "GW1"
        assert created.order.pay_id.startswith("CREDIT_42_")

        stored = await store.get_order(created.order.pay_id)
        assert stored.status is OrderStatus.PENDING
        assert stored.kind is OrderKind.CREDIT_PURCHASE
        assert stored.requested_amount == 10
        assert stored.price == Decimal("1.00")
        assert stored.gateway_order_id == "GW1"

        form = client._client.request.call_args[1]["data"]
        assert form["price"] == "1.00"
        assert form["param"] == "42"
        assert form["type"] == "1"
        assert form["goodsName"] == "10 verification credits"
        assert form["notifyUrl"] == "https://gate.example.com/notify"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout", ["soon", None, [5]])
    async def test_unreadable_timeout_ignored(self, timeout) -> None:
        body = {"orderId": "GW1", "payUrl": "https://pay.example.com/p/GW1", "timeOut": timeout}
        service, store, _ = await _service(_mock_response(200, {"code": 1, "data": body}))
        created = await service.create_credit_order("42", 10)
        assert created.timeout_minutes is None
        assert (await store.get_order(created.order.pay_id)).gateway_order_id == "GW1"

    @pytest.mark.asyncio
    async def test_pay_type_forwarded(self) -> None:
        service, _, client = await _service(_created())
        await service.create_credit_order("42", 1, PayMethod.ALIPAY)
        assert client._client.request.call_args[1]["data"]["type"] == "2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1, True, 1.5])
    async def test_rejects_bad_count(self, count) -> None:
        service, _, client = await _service(_created())
        with pytest.raises(OrderRequestError):
            await service.create_credit_order("42", count)
        client._client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_token(self) -> None:
        service, _, _ = await _service(_created())
        with pytest.raises(OrderRequestError, match="no token"):
            await service.create_credit_order("nobody", 10)

    @pytest.mark.asyncio
    async def test_gateway_error_marks_failed(self) -> None:
        service, store, _ = await _service(_mock_response(500))
        with pytest.raises(EpayServerError):
            await service.create_credit_order("42", 10)
        assert await store.list_pending_orders("42") == []

    @pytest.mark.asyncio
    async def test_connection_error_marks_failed(self) -> None:
        service, store, _ = await _service(side_effect=httpx.ConnectError("down"))
        with pytest.raises(EpayConnectionError):
            await service.create_credit_order("42", 10)
        assert await store.list_pending_orders("42") == []

    @pytest.mark.asyncio
    async def test_gateway_rejection_marks_failed(self) -> None:
        service, store, _ = await _service(_mock_response(200, {"code": -1, "msg": "bad sign"}))
        with pytest.raises(GatewayRejectedError, match="bad sign"):
            await service.create_credit_order("42", 10)
        assert await store.list_pending_orders("42") == []

    @pytest.mark.asyncio
    async def test_missing_order_id_marks_failed(self) -> None:
        service, store, _ = await _service(_mock_response(200, {"code": 1, "data": {}}))
        with pytest.raises(GatewayRejectedError):
            await service.create_credit_order("42", 10)
        assert await store.list_pending_orders("42") == []

    @pytest.mark.asyncio
    async def test_payments_disabled(self) -> None:
        service = PaymentOrderService(MemoryStore(), GateConfig(), None)
        with pytest.raises(PaymentsDisabledError):
            await service.create_credit_order("42", 10)


# ---------------------------------------------------------------------------
# Rebind orders
# ---------------------------------------------------------------------------


class TestRebindOrder:
    @pytest.mark.asyncio
    async def test_creates_rebind_order(self) -> None:
        service, store, client = await _service(_created("GW9"))
        created = await service.create_rebind_order("42", "198.51.100.7")

        stored = await store.get_order(created.order.pay_id)
        assert stored.pay_id.startswith("REBIND_42_")
        assert stored.kind is OrderKind.ORIGIN_REBIND
        assert stored.new_origin == "198.51.100.7"
        assert stored.price == Decimal("2.00")
        assert stored.requested_amount == 0

        form = client._client.request.call_args[1]["data"]
        assert form["param"] == "42|198.51.100.7"
        assert form["price"] == "2.00"

    @pytest.mark.asyncio
    async def test_rejects_private_origin(self) -> None:
        service, _, client = await _service(_created())
        with pytest.raises(OrderRequestError, match="public"):
            await service.create_rebind_order("42", "192.168.1.5")
        client._client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_current_origin(self) -> None:
        service, _, _ = await _service(_created())
        with pytest.raises(OrderRequestError, match="already your bound origin"):
            await service.create_rebind_order("42", "203.0.113.9")

    @pytest.mark.asyncio
    async def test_rejects_origin_of_other_account(self) -> None:
        service, store, _ = await _service(_created())
        await store.insert_entitlement(
            EntitlementRecord(
                identity="43",
                bound_origin="198.51.100.7",
                token="t",
                remaining_credit=3,
                issuance_time=1,
                created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            )
        )
        with pytest.raises(OrderRequestError, match="another account"):
            await service.create_rebind_order("42", "198.51.100.7")

    @pytest.mark.asyncio
    async def test_requires_token(self) -> None:
        service, _, _ = await _service(_created())
        with pytest.raises(OrderRequestError, match="no token"):
            await service.create_rebind_order("nobody", "198.51.100.7")


# ---------------------------------------------------------------------------
# Status checks
# ---------------------------------------------------------------------------


class TestCheckOrder:
    @pytest.mark.asyncio
    async def test_waiting(self) -> None:
        service, _, _ = await _service(
            _created(),
            _mock_response(200, {"code": 1, "data": {"orderId": "GW1", "state": 0, "price": "1.00"}}),
        )
        created = await service.create_credit_order("42", 10)
        status = await service.check_order("GW1", "42")
        assert status["state"] == "waiting"
        assert status["local_status"] == "pending"
        assert status["pay_id"] == created.order.pay_id
        assert status["price"] == "1.00"
        assert status["goods_name"] == "10 verification credits"

    @pytest.mark.asyncio
    async def test_gateway_failed_marks_local_failed(self) -> None:
        service, store, _ = await _service(
            _created(), _mock_response(200, {"code": 1, "data": {"orderId": "GW1", "state": 2}})
        )
        created = await service.create_credit_order("42", 10)
        status = await service.check_order("GW1")
        assert status["state"] == "failed"
        assert status["local_status"] == "failed"
        assert (await store.get_order(created.order.pay_id)).status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_local_paid_wins(self) -> None:
        service, store, _ = await _service(
            _created(), _mock_response(200, {"code": 1, "data": {"orderId": "GW1", "state": 0}})
        )
        created = await service.create_credit_order("42", 10)
        await store.settle_order(
            created.order.pay_id,
            really_paid_price=Decimal("1.00"),
            pay_method=1,
            paid_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        status = await service.check_order("GW1")
        assert status["state"] == "paid"
        assert status["local_status"] == "paid"

    @pytest.mark.asyncio
    async def test_unknown_state(self) -> None:
        service, _, _ = await _service(
            _mock_response(200, {"code": 1, "data": {"orderId": "GWX", "state": 7}})
        )
        status = await service.check_order("GWX")
        assert status["state"] == "unknown"
        assert status["local_status"] is None

    @pytest.mark.asyncio
    async def test_other_identity_rejected(self) -> None:
        service, _, client = await _service(_created())
        await service.create_credit_order("42", 10)
        with pytest.raises(OrderRequestError, match="does not belong"):
            await service.check_order("GW1", "43")
        assert client._client.request.await_count == 1

    @pytest.mark.asyncio
    async def test_gateway_query_rejected(self) -> None:
        service, _, _ = await _service(_mock_response(200, {"code": -1, "msg": "no such order"}))
        with pytest.raises(GatewayRejectedError, match="no such order"):
            await service.check_order("GW404")
