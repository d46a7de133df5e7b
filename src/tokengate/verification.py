"""Token issuance and per-use verification against the entitlement ledger.

Verification runs five hard gates in order: frame structure, AEAD
decryption, origin equality, entitlement lookup by (identity,
issuance_time), and an atomic check-and-decrement of remaining credit.
Each rejection is a ``VerifyOutcome``; storage failures propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from tokengate.config import GateConfig
from tokengate.models import EntitlementRecord, now_ms, utcnow
from tokengate.origin import is_public_origin, normalize_origin
from tokengate.store import LedgerStore, Rebinding
from tokengate.token_codec import (
    MalformedTokenError,
    TokenDecryptError,
    issue_token,
    open_frame,
    parse_frame,
)

logger = logging.getLogger(__name__)


class InvalidOriginError(ValueError):
    """Origin is not a public IPv4/IPv6 literal."""


class VerifyOutcome(str, Enum):
    OK = "ok"
    MALFORMED = "malformed"
    CRYPTOGRAPHIC_FAILURE = "cryptographic_failure"
    ORIGIN_MISMATCH = "origin_mismatch"
    NOT_FOUND = "not_found"
    INSUFFICIENT_CREDIT = "insufficient_credit"


@dataclass(frozen=True)
class VerifyResult:
    outcome: VerifyOutcome
    identity: str | None = None
    remaining_credit: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is VerifyOutcome.OK


class VerificationService:
    """Issues bound tokens and spends one credit per successful verification."""

    def __init__(self, store: LedgerStore, config: GateConfig) -> None:
        self._store = store
        self._config = config

    def _public_origin(self, origin: str) -> str:
        if not is_public_origin(origin):
            raise InvalidOriginError(f"not a public IP address: {origin!r}")
        return normalize_origin(origin)

    async def issue(self, identity: str, origin: str) -> EntitlementRecord:
        """Create the identity's entitlement record bound to ``origin``.

        Raises InvalidOriginError for non-public origins,
        IdentityExistsError if the identity already holds a record, and
        OriginInUseError if another identity holds the origin.
        """
        origin = self._public_origin(origin)
        issuance_time = now_ms()
        token = issue_token(identity, origin, issuance_time, salt=self._config.token_salt)
        record = EntitlementRecord(
            identity=identity,
            bound_origin=origin,
            token=token,
            remaining_credit=self._config.default_credit,
            issuance_time=issuance_time,
            created_at=utcnow(),
        )
        await self._store.insert_entitlement(record)
        logger.info(
            "Issued token for %s bound to %s (credit=%d)",
            identity, origin, record.remaining_credit,
        )
        return record

    def prepare_rebinding(self, identity: str, new_origin: str) -> Rebinding:
        """Mint a fresh token for ``identity`` at ``new_origin``.

        The new issuance_time supersedes every token issued before it once
        the rebinding is stored.
        """
        origin = self._public_origin(new_origin)
        issuance_time = now_ms()
        token = issue_token(identity, origin, issuance_time, salt=self._config.token_salt)
        return Rebinding(new_origin=origin, token=token, issuance_time=issuance_time)

    async def verify(self, token_hex: str, request_origin: str) -> VerifyResult:
        """Check ``token_hex`` presented from ``request_origin`` and spend one credit.

        ``request_origin`` must already be validated as a public address by
        the caller; it is compared to the token's origin exactly.
        """
        try:
            frame = parse_frame(token_hex)
        except MalformedTokenError as e:
            logger.warning("Malformed token: %s", e)
            return VerifyResult(VerifyOutcome.MALFORMED)

        try:
            payload = open_frame(frame, salt=self._config.token_salt)
        except TokenDecryptError as e:
            logger.warning("Token for %s failed authentication: %s", frame.identity, e)
            return VerifyResult(VerifyOutcome.CRYPTOGRAPHIC_FAILURE)

        if payload.origin != request_origin:
            logger.warning(
                "Origin mismatch for %s: token=%s request=%s",
                payload.identity, payload.origin, request_origin,
            )
            return VerifyResult(VerifyOutcome.ORIGIN_MISMATCH, identity=payload.identity)

        debit = await self._store.consume_credit(payload.identity, payload.issuance_time)
        if not debit.found:
            logger.warning(
                "No entitlement for %s at issuance_time %d", payload.identity, payload.issuance_time
            )
            return VerifyResult(VerifyOutcome.NOT_FOUND, identity=payload.identity)
        if not debit.debited:
            logger.warning("Credit exhausted for %s", payload.identity)
            return VerifyResult(
                VerifyOutcome.INSUFFICIENT_CREDIT, identity=payload.identity, remaining_credit=0
            )

        logger.info("Verified %s, remaining credit %d", payload.identity, debit.remaining_credit)
        return VerifyResult(
            VerifyOutcome.OK, identity=payload.identity, remaining_credit=debit.remaining_credit
        )
