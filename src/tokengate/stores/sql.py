"""Relational LedgerStore on SQLAlchemy's asyncio extension.

Works with any async driver SQLAlchemy supports; ``sqlite+aiosqlite`` is
the default and ``postgresql+asyncpg`` the production choice. Each
operation runs in its own transaction bounded by ``timeout_secs``. The
check-and-mutate operations are conditional UPDATEs whose row count
decides the outcome, so concurrent callers cannot both win.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, Numeric, String, Text, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

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


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class EntitlementRow(Base):
    __tablename__ = "entitlements"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    bound_origin: Mapped[str] = mapped_column(String(64), unique=True)
    token: Mapped[str] = mapped_column(Text)
    remaining_credit: Mapped[int] = mapped_column(Integer, default=0)
    issuance_time: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CreditCodeRow(Base):
    __tablename__ = "credit_codes"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    grant_amount: Mapped[int] = mapped_column(Integer)
    issuer: Mapped[str] = mapped_column(String(255))
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentOrderRow(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (Index("ix_payment_orders_identity_status", "identity", "status"),)

    pay_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    identity: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(32))
    requested_amount: Mapped[int] = mapped_column(Integer, default=0)
    new_origin: Mapped[str | None] = mapped_column(String(64), nullable=True)
    goods_name: Mapped[str] = mapped_column(String(255), default="")
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.PENDING.value)
    really_paid_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    pay_method: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _entitlement(row: EntitlementRow) -> EntitlementRecord:
    return EntitlementRecord(
        identity=row.identity,
        bound_origin=row.bound_origin,
        token=row.token,
        remaining_credit=row.remaining_credit,
        issuance_time=row.issuance_time,
        created_at=_as_utc(row.created_at),
    )


def _code(row: CreditCodeRow) -> CreditCode:
    return CreditCode(
        code=row.code,
        grant_amount=row.grant_amount,
        issuer=row.issuer,
        created_at=_as_utc(row.created_at),
        used=row.used,
        used_by=row.used_by,
        used_at=_as_utc(row.used_at),
    )


def _order(row: PaymentOrderRow) -> PaymentOrder:
    return PaymentOrder(
        pay_id=row.pay_id,
        identity=row.identity,
        kind=OrderKind(row.kind),
        price=Decimal(row.price),
        goods_name=row.goods_name,
        requested_amount=row.requested_amount,
        new_origin=row.new_origin,
        gateway_order_id=row.gateway_order_id,
        payment_url=row.payment_url,
        status=OrderStatus(row.status),
        really_paid_price=(
            Decimal(row.really_paid_price) if row.really_paid_price is not None else None
        ),
        pay_method=row.pay_method,
        created_at=_as_utc(row.created_at),
        paid_at=_as_utc(row.paid_at),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SqlStore:
    """LedgerStore implementation over an ``AsyncEngine``."""

    def __init__(self, engine: AsyncEngine, timeout_secs: float = 5.0) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._timeout = timeout_secs

    @classmethod
    def from_url(cls, url: str, timeout_secs: float = 5.0) -> SqlStore:
        return cls(create_async_engine(url), timeout_secs=timeout_secs)

    async def init(self) -> None:
        """Create missing tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One session and transaction, committed on success, bounded in time."""
        try:
            async with asyncio.timeout(self._timeout):
                async with self._sessions() as session, session.begin():
                    yield session
        except TimeoutError as e:
            raise TransientStoreError("store operation timed out") from e
        except OperationalError as e:
            raise TransientStoreError(f"store unavailable: {e.orig}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError("store connection lost") from e
            raise

    # -- entitlements ---------------------------------------------------------

    async def insert_entitlement(self, record: EntitlementRecord) -> None:
        try:
            async with self._transaction() as session:
                session.add(
                    EntitlementRow(
                        identity=record.identity,
                        bound_origin=record.bound_origin,
                        token=record.token,
                        remaining_credit=record.remaining_credit,
                        issuance_time=record.issuance_time,
                        created_at=record.created_at,
                    )
                )
        except IntegrityError as e:
            if await self.get_entitlement(record.identity) is not None:
                raise IdentityExistsError(f"identity {record.identity} already has a record") from e
            raise OriginInUseError(f"origin {record.bound_origin} is already bound") from e

    async def get_entitlement(self, identity: str) -> EntitlementRecord | None:
        async with self._transaction() as session:
            row = await session.get(EntitlementRow, identity)
            return _entitlement(row) if row else None

    async def get_entitlement_by_origin(self, origin: str) -> EntitlementRecord | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(EntitlementRow).where(EntitlementRow.bound_origin == origin)
            )
            return _entitlement(row) if row else None

    async def consume_credit(self, identity: str, issuance_time: int) -> CreditDebit:
        async with self._transaction() as session:
            result = await session.execute(
                update(EntitlementRow)
                .where(
                    EntitlementRow.identity == identity,
                    EntitlementRow.issuance_time == issuance_time,
                    EntitlementRow.remaining_credit > 0,
                )
                .values(remaining_credit=EntitlementRow.remaining_credit - 1)
                .execution_options(synchronize_session=False)
            )
            remaining = await session.scalar(
                select(EntitlementRow.remaining_credit).where(
                    EntitlementRow.identity == identity,
                    EntitlementRow.issuance_time == issuance_time,
                )
            )
            if int(result.rowcount or 0) == 1:
                return CreditDebit(found=True, debited=True, remaining_credit=int(remaining))
            if remaining is None:
                return CreditDebit(found=False, debited=False)
            return CreditDebit(found=True, debited=False, remaining_credit=0)

    async def add_credit(self, identity: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        async with self._transaction() as session:
            return await self._add_credit(session, identity, amount)

    async def _add_credit(self, session: AsyncSession, identity: str, amount: int) -> int:
        result = await session.execute(
            update(EntitlementRow)
            .where(EntitlementRow.identity == identity)
            .values(remaining_credit=EntitlementRow.remaining_credit + amount)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise RecordNotFoundError(f"no entitlement record for {identity}")
        remaining = await session.scalar(
            select(EntitlementRow.remaining_credit).where(EntitlementRow.identity == identity)
        )
        return int(remaining)

    async def rebind_entitlement(self, identity: str, rebinding: Rebinding) -> EntitlementRecord:
        try:
            async with self._transaction() as session:
                return await self._rebind(session, identity, rebinding)
        except IntegrityError as e:
            raise OriginInUseError(f"origin {rebinding.new_origin} is bound to another identity") from e

    async def _rebind(
        self, session: AsyncSession, identity: str, rebinding: Rebinding
    ) -> EntitlementRecord:
        row = await session.scalar(
            select(EntitlementRow).where(EntitlementRow.identity == identity).with_for_update()
        )
        if row is None:
            raise RecordNotFoundError(f"no entitlement record for {identity}")
        holder = await session.scalar(
            select(EntitlementRow.identity).where(
                EntitlementRow.bound_origin == rebinding.new_origin
            )
        )
        if holder is not None and holder != identity:
            raise OriginInUseError(f"origin {rebinding.new_origin} is bound to another identity")
        row.bound_origin = rebinding.new_origin
        row.token = rebinding.token
        row.issuance_time = rebinding.issuance_time
        await session.flush()
        logger.info("Rebound %s to origin %s", identity, rebinding.new_origin)
        return _entitlement(row)

    # -- credit codes ---------------------------------------------------------

    async def insert_code(self, code: CreditCode) -> None:
        try:
            async with self._transaction() as session:
                session.add(
                    CreditCodeRow(
                        code=code.code,
                        grant_amount=code.grant_amount,
                        issuer=code.issuer,
                        used=code.used,
                        used_by=code.used_by,
                        created_at=code.created_at,
                        used_at=code.used_at,
                    )
                )
        except IntegrityError as e:
            raise DuplicateCodeError(f"code {code.code} already exists") from e

    async def get_code(self, code: str) -> CreditCode | None:
        async with self._transaction() as session:
            row = await session.get(CreditCodeRow, code)
            return _code(row) if row else None

    async def redeem_code(self, code: str, identity: str, used_at: datetime) -> CodeRedemption:
        async with self._transaction() as session:
            row = await session.scalar(
                select(CreditCodeRow).where(CreditCodeRow.code == code).with_for_update()
            )
            if row is None:
                return CodeRedemption(RedeemOutcome.NOT_FOUND)
            if row.used:
                return CodeRedemption(RedeemOutcome.ALREADY_USED)
            grant_amount = row.grant_amount
            result = await session.execute(
                update(CreditCodeRow)
                .where(CreditCodeRow.code == code, CreditCodeRow.used.is_(False))
                .values(used=True, used_by=identity, used_at=used_at)
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                return CodeRedemption(RedeemOutcome.ALREADY_USED)
            return CodeRedemption(RedeemOutcome.REDEEMED, grant_amount=grant_amount)

    # -- payment orders -------------------------------------------------------

    async def insert_order(self, order: PaymentOrder) -> None:
        try:
            async with self._transaction() as session:
                session.add(
                    PaymentOrderRow(
                        pay_id=order.pay_id,
                        gateway_order_id=order.gateway_order_id,
                        identity=order.identity,
                        kind=order.kind.value,
                        requested_amount=order.requested_amount,
                        new_origin=order.new_origin,
                        goods_name=order.goods_name,
                        price=order.price,
                        status=order.status.value,
                        really_paid_price=order.really_paid_price,
                        pay_method=order.pay_method,
                        payment_url=order.payment_url,
                        created_at=order.created_at or datetime.now(timezone.utc),
                        paid_at=order.paid_at,
                    )
                )
        except IntegrityError as e:
            raise DuplicateOrderError(f"order {order.pay_id} already exists") from e

    async def get_order(self, pay_id: str) -> PaymentOrder | None:
        async with self._transaction() as session:
            row = await session.get(PaymentOrderRow, pay_id)
            return _order(row) if row else None

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> PaymentOrder | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(PaymentOrderRow).where(PaymentOrderRow.gateway_order_id == gateway_order_id)
            )
            return _order(row) if row else None

    async def list_pending_orders(self, identity: str) -> list[PaymentOrder]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(PaymentOrderRow)
                .where(
                    PaymentOrderRow.identity == identity,
                    PaymentOrderRow.status == OrderStatus.PENDING.value,
                )
                .order_by(PaymentOrderRow.created_at.desc())
            )
            return [_order(row) for row in rows]

    async def attach_gateway_order(
        self, pay_id: str, gateway_order_id: str, payment_url: str | None
    ) -> None:
        try:
            async with self._transaction() as session:
                result = await session.execute(
                    update(PaymentOrderRow)
                    .where(PaymentOrderRow.pay_id == pay_id)
                    .values(gateway_order_id=gateway_order_id, payment_url=payment_url)
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) != 1:
                    raise RecordNotFoundError(f"no order {pay_id}")
        except IntegrityError as e:
            raise DuplicateOrderError(f"gateway order {gateway_order_id} already attached") from e

    async def mark_order_failed(self, pay_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(PaymentOrderRow)
                .where(
                    PaymentOrderRow.pay_id == pay_id,
                    PaymentOrderRow.status == OrderStatus.PENDING.value,
                )
                .values(status=OrderStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    async def settle_order(
        self,
        pay_id: str,
        *,
        really_paid_price: Decimal,
        pay_method: int,
        paid_at: datetime,
        rebinding: Rebinding | None = None,
    ) -> Settlement:
        try:
            async with self._transaction() as session:
                return await self._settle(
                    session, pay_id, really_paid_price, pay_method, paid_at, rebinding
                )
        except IntegrityError as e:
            raise OriginInUseError(f"rebind of order {pay_id} hit a bound origin") from e

    async def _settle(
        self,
        session: AsyncSession,
        pay_id: str,
        really_paid_price: Decimal,
        pay_method: int,
        paid_at: datetime,
        rebinding: Rebinding | None,
    ) -> Settlement:
        row = await session.scalar(
            select(PaymentOrderRow).where(PaymentOrderRow.pay_id == pay_id).with_for_update()
        )
        if row is None:
            return Settlement(SettleOutcome.NOT_FOUND)
        order = _order(row)
        if order.status is OrderStatus.PAID:
            return Settlement(SettleOutcome.ALREADY_PAID, order=order)
        if order.status is not OrderStatus.PENDING:
            return Settlement(SettleOutcome.NOT_PENDING, order=order)
        if order.kind is OrderKind.ORIGIN_REBIND and rebinding is None:
            raise ValueError(f"rebind order {pay_id} settled without a rebinding")

        result = await session.execute(
            update(PaymentOrderRow)
            .where(
                PaymentOrderRow.pay_id == pay_id,
                PaymentOrderRow.status == OrderStatus.PENDING.value,
            )
            .values(
                status=OrderStatus.PAID.value,
                really_paid_price=really_paid_price,
                pay_method=pay_method,
                paid_at=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            # Another transaction settled it between our read and write.
            return Settlement(SettleOutcome.ALREADY_PAID, order=order)

        if order.kind is OrderKind.ORIGIN_REBIND:
            record = await self._rebind(session, order.identity, rebinding)
        else:
            await self._add_credit(session, order.identity, order.requested_amount)
            entitlement = await session.scalar(
                select(EntitlementRow)
                .where(EntitlementRow.identity == order.identity)
                .execution_options(populate_existing=True)
            )
            record = _entitlement(entitlement)

        settled = dataclasses.replace(
            order,
            status=OrderStatus.PAID,
            really_paid_price=really_paid_price,
            pay_method=pay_method,
            paid_at=paid_at,
        )
        return Settlement(SettleOutcome.APPLIED, order=settled, record=record)
