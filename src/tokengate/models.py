"""Entitlement, credit-code and payment-order records.

Plain records with no I/O. Timestamps are timezone-aware UTC datetimes;
``issuance_time`` is a millisecond epoch integer because it feeds key
derivation and must round-trip exactly.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from tokengate.constants import OrderKind, OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current time as a millisecond epoch integer."""
    return time.time_ns() // 1_000_000


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# EntitlementRecord
# ---------------------------------------------------------------------------


@dataclass
class EntitlementRecord:
    """One identity's binding and remaining usage credit."""

    identity: str
    bound_origin: str
    token: str
    remaining_credit: int
    issuance_time: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "bound_origin": self.bound_origin,
            "token": self.token,
            "remaining_credit": self.remaining_credit,
            "issuance_time": self.issuance_time,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntitlementRecord:
        return cls(
            identity=str(data["identity"]),
            bound_origin=str(data["bound_origin"]),
            token=str(data.get("token", "")),
            remaining_credit=int(data.get("remaining_credit", 0)),
            issuance_time=int(data["issuance_time"]),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# CreditCode
# ---------------------------------------------------------------------------


@dataclass
class CreditCode:
    """Single-use code redeemable for ``grant_amount`` credits."""

    code: str
    grant_amount: int
    issuer: str
    created_at: datetime
    used: bool = False
    used_by: str | None = None
    used_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "grant_amount": self.grant_amount,
            "issuer": self.issuer,
            "created_at": _iso(self.created_at),
            "used": self.used,
            "used_by": self.used_by,
            "used_at": _iso(self.used_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreditCode:
        return cls(
            code=str(data["code"]),
            grant_amount=int(data["grant_amount"]),
            issuer=str(data.get("issuer", "")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            used=bool(data.get("used", False)),
            used_by=data.get("used_by"),
            used_at=_parse_dt(data.get("used_at")),
        )


# ---------------------------------------------------------------------------
# PaymentOrder
# ---------------------------------------------------------------------------


@dataclass
class PaymentOrder:
    """Lifecycle record of one gateway order.

    ``status`` moves pending → paid or pending → failed, once.
    """

    pay_id: str
    identity: str
    kind: OrderKind
    price: Decimal
    goods_name: str = ""
    requested_amount: int = 0  # Credit units; 0 for rebind orders
    new_origin: str | None = None  # Rebind target
    gateway_order_id: str | None = None
    payment_url: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    really_paid_price: Decimal | None = None
    pay_method: int | None = None
    created_at: datetime | None = None
    paid_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not OrderStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "pay_id": self.pay_id,
            "identity": self.identity,
            "kind": self.kind.value,
            "price": str(self.price),
            "goods_name": self.goods_name,
            "requested_amount": self.requested_amount,
            "new_origin": self.new_origin,
            "gateway_order_id": self.gateway_order_id,
            "payment_url": self.payment_url,
            "status": self.status.value,
            "really_paid_price": (
                str(self.really_paid_price) if self.really_paid_price is not None else None
            ),
            "pay_method": self.pay_method,
            "created_at": _iso(self.created_at),
            "paid_at": _iso(self.paid_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentOrder:
        really = data.get("really_paid_price")
        return cls(
            pay_id=str(data["pay_id"]),
            identity=str(data["identity"]),
            kind=OrderKind(data["kind"]),
            price=Decimal(str(data["price"])),
            goods_name=str(data.get("goods_name", "")),
            requested_amount=int(data.get("requested_amount", 0)),
            new_origin=data.get("new_origin"),
            gateway_order_id=data.get("gateway_order_id"),
            payment_url=data.get("payment_url"),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            really_paid_price=Decimal(str(really)) if really is not None else None,
            pay_method=data.get("pay_method"),
            created_at=_parse_dt(data.get("created_at")),
            paid_at=_parse_dt(data.get("paid_at")),
        )
