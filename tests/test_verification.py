"""Tests for token issuance and the per-use verification gates."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from tokengate.config import GateConfig
from tokengate.models import EntitlementRecord
from tokengate.store import IdentityExistsError, OriginInUseError, TransientStoreError
from tokengate.stores import MemoryStore
from tokengate.token_codec import decode_token, issue_token
from tokengate.verification import (
    InvalidOriginError,
    VerificationService,
    VerifyOutcome,
    VerifyResult,
)

SALT = "unit-salt"
ISSUED = 1700000000000


def _config(**kwargs) -> GateConfig:
    return GateConfig(token_salt=SALT, **kwargs)


async def _seeded(credit: int = 3) -> tuple[MemoryStore, VerificationService, str]:
    """Store holding identity "42" bound to 203.0.113.9, plus its token."""
    store = MemoryStore()
    token = issue_token("42", "203.0.113.9", ISSUED, salt=SALT)
    await store.insert_entitlement(
        EntitlementRecord(
            identity="42",
            bound_origin="203.0.113.9",
            token=token,
            remaining_credit=credit,
            issuance_time=ISSUED,
            created_at=datetime(2023, 11, 14, tzinfo=timezone.utc),
        )
    )
    return store, VerificationService(store, _config()), token


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_creates_record(self) -> None:
        store = MemoryStore()
        service = VerificationService(store, _config(default_credit=5))
        record = await service.issue("42", "203.0.113.9")
        assert record.remaining_credit == 5
        assert record.bound_origin == "203.0.113.9"
        assert await store.get_entitlement("42") == record

        payload = decode_token(record.token, salt=SALT)
        assert payload.identity == "42"
        assert payload.origin == "203.0.113.9"
        assert payload.issuance_time == record.issuance_time

    @pytest.mark.asyncio
    async def test_issue_normalizes_origin(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        record = await service.issue("42", " 2001:4860:0000::8888 ")
        assert record.bound_origin == "2001:4860::8888"

    @pytest.mark.asyncio
    async def test_issue_uses_millisecond_clock(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        with patch("tokengate.verification.now_ms", return_value=ISSUED):
            record = await service.issue("42", "203.0.113.9")
        assert record.issuance_time == ISSUED
        assert record.token.startswith("0000018bcfe56800023432")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("origin", ["192.168.1.1", "10.0.0.1", "127.0.0.1", "::1", "bogus"])
    async def test_issue_rejects_non_public(self, origin: str) -> None:
        store = MemoryStore()
        service = VerificationService(store, _config())
        with pytest.raises(InvalidOriginError):
            await service.issue("42", origin)
        assert await store.get_entitlement("42") is None

    @pytest.mark.asyncio
    async def test_issue_twice(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        await service.issue("42", "203.0.113.9")
        with pytest.raises(IdentityExistsError):
            await service.issue("42", "198.51.100.7")

    @pytest.mark.asyncio
    async def test_issue_origin_taken(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        await service.issue("42", "203.0.113.9")
        with pytest.raises(OriginInUseError):
            await service.issue("43", "203.0.113.9")

    def test_prepare_rebinding(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        rebinding = service.prepare_rebinding("42", "198.51.100.7")
        assert rebinding.new_origin == "198.51.100.7"
        payload = decode_token(rebinding.token, salt=SALT)
        assert payload.origin == "198.51.100.7"
        assert payload.issuance_time == rebinding.issuance_time

    def test_prepare_rebinding_rejects_private(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        with pytest.raises(InvalidOriginError):
            service.prepare_rebinding("42", "192.168.0.10")


# ---------------------------------------------------------------------------
# Verification gates
# ---------------------------------------------------------------------------


class TestVerify:
    @pytest.mark.asyncio
    async def test_ok_spends_one_credit(self) -> None:
        store, service, token = await _seeded(credit=3)
        result = await service.verify(token, "203.0.113.9")
        assert result == VerifyResult(VerifyOutcome.OK, identity="42", remaining_credit=2)
        assert result.ok
        assert (await store.get_entitlement("42")).remaining_credit == 2

    @pytest.mark.asyncio
    async def test_malformed(self) -> None:
        store, service, _ = await _seeded()
        result = await service.verify("not-hex", "203.0.113.9")
        assert result.outcome is VerifyOutcome.MALFORMED
        assert not result.ok
        assert (await store.get_entitlement("42")).remaining_credit == 3

    @pytest.mark.asyncio
    async def test_tampered_ciphertext(self) -> None:
        store, service, token = await _seeded()
        tampered = token[:-1] + ("0" if token[-1] != "0" else "1")
        result = await service.verify(tampered, "203.0.113.9")
        assert result.outcome is VerifyOutcome.CRYPTOGRAPHIC_FAILURE
        assert (await store.get_entitlement("42")).remaining_credit == 3

    @pytest.mark.asyncio
    async def test_wrong_salt(self) -> None:
        store, _, token = await _seeded()
        service = VerificationService(store, GateConfig(token_salt="other"))
        result = await service.verify(token, "203.0.113.9")
        assert result.outcome is VerifyOutcome.CRYPTOGRAPHIC_FAILURE

    @pytest.mark.asyncio
    async def test_origin_mismatch(self) -> None:
        store, service, token = await _seeded()
        result = await service.verify(token, "198.51.100.7")
        assert result.outcome is VerifyOutcome.ORIGIN_MISMATCH
        assert result.identity == "42"
        assert (await store.get_entitlement("42")).remaining_credit == 3

    @pytest.mark.asyncio
    async def test_no_record(self) -> None:
        service = VerificationService(MemoryStore(), _config())
        token = issue_token("42", "203.0.113.9", ISSUED, salt=SALT)
        result = await service.verify(token, "203.0.113.9")
        assert result.outcome is VerifyOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_superseded_token(self) -> None:
        store, service, _ = await _seeded()
        older = issue_token("42", "203.0.113.9", ISSUED - 1, salt=SALT)
        result = await service.verify(older, "203.0.113.9")
        assert result.outcome is VerifyOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_zero_credit(self) -> None:
        store, service, token = await _seeded(credit=0)
        result = await service.verify(token, "203.0.113.9")
        assert result.outcome is VerifyOutcome.INSUFFICIENT_CREDIT
        assert result.remaining_credit == 0
        assert (await store.get_entitlement("42")).remaining_credit == 0

    @pytest.mark.asyncio
    async def test_credit_runs_out(self) -> None:
        _, service, token = await _seeded(credit=2)
        outcomes = [(await service.verify(token, "203.0.113.9")).outcome for _ in range(3)]
        assert outcomes == [VerifyOutcome.OK, VerifyOutcome.OK, VerifyOutcome.INSUFFICIENT_CREDIT]

    @pytest.mark.asyncio
    async def test_concurrent_last_credit_single_winner(self) -> None:
        store, service, token = await _seeded(credit=1)
        results = await asyncio.gather(*(service.verify(token, "203.0.113.9") for _ in range(10)))
        assert sum(1 for r in results if r.ok) == 1
        assert all(
            r.outcome is VerifyOutcome.INSUFFICIENT_CREDIT for r in results if not r.ok
        )
        assert (await store.get_entitlement("42")).remaining_credit == 0

    @pytest.mark.asyncio
    async def test_concurrent_successes_bounded_by_credit(self) -> None:
        store, service, token = await _seeded(credit=4)
        results = await asyncio.gather(*(service.verify(token, "203.0.113.9") for _ in range(12)))
        assert sum(1 for r in results if r.ok) == 4
        assert sorted(r.remaining_credit for r in results if r.ok) == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self) -> None:
        _, _, token = await _seeded()
        store = AsyncMock()
        store.consume_credit.side_effect = TransientStoreError("timed out")
        service = VerificationService(store, _config())
        with pytest.raises(TransientStoreError):
            await service.verify(token, "203.0.113.9")
