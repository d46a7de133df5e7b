"""Abstract persistence interface for entitlements, credit codes and orders.

Defines the LedgerStore Protocol the services depend on. Every operation
that checks and then mutates a record is a single atomic call, so no
service ever holds a lock across its own code or a network call.
Concrete implementations live in ``tokengate.stores``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

from tokengate.models import CreditCode, EntitlementRecord, PaymentOrder


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Base exception for storage failures."""


class TransientStoreError(StoreError):
    """Timeout or lost connection. Nothing was committed; safe to retry."""


class RecordNotFoundError(StoreError):
    """A mutation targeted a record that does not exist."""


class DuplicateKeyError(StoreError):
    """A uniqueness constraint rejected an insert or update."""


class IdentityExistsError(DuplicateKeyError):
    """An entitlement record already exists for this identity."""


class OriginInUseError(DuplicateKeyError):
    """The origin is already bound to another identity."""


class DuplicateCodeError(DuplicateKeyError):
    """A credit code with this value already exists."""


class DuplicateOrderError(DuplicateKeyError):
    """A payment order with this pay_id already exists."""


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreditDebit:
    """Result of ``consume_credit``.

    ``found`` is False when no record matches (identity, issuance_time).
    ``debited`` is False when credit was already exhausted; nothing changed.
    """

    found: bool
    debited: bool
    remaining_credit: int = 0


class RedeemOutcome(str, Enum):
    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"


@dataclass(frozen=True)
class CodeRedemption:
    outcome: RedeemOutcome
    grant_amount: int = 0


class SettleOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PAID = "already_paid"
    NOT_PENDING = "not_pending"  # Terminal but not paid (failed)
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Rebinding:
    """New binding written by a paid rebind order."""

    new_origin: str
    token: str
    issuance_time: int


@dataclass(frozen=True)
class Settlement:
    outcome: SettleOutcome
    order: PaymentOrder | None = None
    record: EntitlementRecord | None = None


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LedgerStore(Protocol):
    """Async transactional store for the three ledgers.

    Implementations raise ``TransientStoreError`` when an operation exceeds
    its timeout, and a ``DuplicateKeyError`` subclass on uniqueness
    violations. Returned records are copies; mutating them changes nothing.
    """

    # -- entitlements ---------------------------------------------------------

    async def insert_entitlement(self, record: EntitlementRecord) -> None: ...

    async def get_entitlement(self, identity: str) -> EntitlementRecord | None: ...

    async def get_entitlement_by_origin(self, origin: str) -> EntitlementRecord | None: ...

    async def consume_credit(self, identity: str, issuance_time: int) -> CreditDebit: ...

    async def add_credit(self, identity: str, amount: int) -> int: ...

    async def rebind_entitlement(self, identity: str, rebinding: Rebinding) -> EntitlementRecord: ...

    # -- credit codes ---------------------------------------------------------

    async def insert_code(self, code: CreditCode) -> None: ...

    async def get_code(self, code: str) -> CreditCode | None: ...

    async def redeem_code(self, code: str, identity: str, used_at: datetime) -> CodeRedemption: ...

    # -- payment orders -------------------------------------------------------

    async def insert_order(self, order: PaymentOrder) -> None: ...

    async def get_order(self, pay_id: str) -> PaymentOrder | None: ...

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> PaymentOrder | None: ...

    async def list_pending_orders(self, identity: str) -> list[PaymentOrder]: ...

    async def attach_gateway_order(
        self, pay_id: str, gateway_order_id: str, payment_url: str | None
    ) -> None: ...

    async def mark_order_failed(self, pay_id: str) -> bool: ...

    async def settle_order(
        self,
        pay_id: str,
        *,
        really_paid_price: Decimal,
        pay_method: int,
        paid_at: datetime,
        rebinding: Rebinding | None = None,
    ) -> Settlement: ...
