"""Single-use credit codes: issuance and atomic redemption.

The ledger only marks codes used. Granting the credit to the redeemer is
a separate ``LedgerStore.add_credit`` call made by the caller.
"""

from __future__ import annotations

import hashlib
import logging
import time

from tokengate.models import CreditCode, utcnow
from tokengate.store import DuplicateCodeError, LedgerStore, RedeemOutcome

logger = logging.getLogger(__name__)

CODE_LENGTH = 32
MAX_ISSUE_ATTEMPTS = 5


class CreditCodeError(Exception):
    """Base exception for code redemption failures."""


class CodeNotFoundError(CreditCodeError):
    pass


class CodeAlreadyUsedError(CreditCodeError):
    pass


def generate_code(issuer: str, timestamp_ns: int | None = None) -> str:
    """Code string derived from the issuing time and issuer identity."""
    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    digest = hashlib.sha256(f"{timestamp_ns}_{issuer}".encode()).hexdigest()
    return digest[:CODE_LENGTH]


class CreditCodeLedger:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def issue_code(self, grant_amount: int, issuer: str) -> CreditCode:
        """Create and persist a new unused code worth ``grant_amount`` credits.

        A collision with an existing code is retried with a fresh
        timestamp; after ``MAX_ISSUE_ATTEMPTS`` the DuplicateCodeError
        propagates.
        """
        if isinstance(grant_amount, bool) or not isinstance(grant_amount, int) or grant_amount <= 0:
            raise ValueError(f"grant_amount must be a positive integer, got {grant_amount!r}")

        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            code = CreditCode(
                code=generate_code(issuer),
                grant_amount=grant_amount,
                issuer=issuer,
                created_at=utcnow(),
            )
            try:
                await self._store.insert_code(code)
            except DuplicateCodeError:
                if attempt == MAX_ISSUE_ATTEMPTS:
                    raise
                logger.warning(
                    "Code collision for issuer %s (attempt %d/%d), retrying",
                    issuer, attempt, MAX_ISSUE_ATTEMPTS,
                )
                continue
            logger.info("Issued code %s worth %d credits (issuer=%s)", code.code, grant_amount, issuer)
            return code

        raise AssertionError("unreachable")

    async def redeem(self, code: str, identity: str) -> int:
        """Mark ``code`` used by ``identity`` and return its grant amount.

        Concurrent redemptions of one code have a single winner; every
        other caller gets CodeAlreadyUsedError.
        """
        result = await self._store.redeem_code(code.strip(), identity, utcnow())
        if result.outcome is RedeemOutcome.NOT_FOUND:
            raise CodeNotFoundError(f"code {code} does not exist")
        if result.outcome is RedeemOutcome.ALREADY_USED:
            raise CodeAlreadyUsedError(f"code {code} has already been used")
        logger.info("Code %s redeemed by %s for %d credits", code, identity, result.grant_amount)
        return result.grant_amount
