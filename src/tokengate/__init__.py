"""Tokengate: origin-bound access tokens with per-use credit.

Self-describing encrypted tokens, an entitlement ledger with atomic
per-use decrement, single-use credit codes, and exactly-once payment
webhook reconciliation.
"""

__version__ = "0.3.0"

from tokengate.config import GateConfig
from tokengate.constants import OrderKind, OrderStatus, PayMethod
from tokengate.models import CreditCode, EntitlementRecord, PaymentOrder
from tokengate.token_codec import TokenError, MalformedTokenError, TokenDecryptError, issue_token, decode_token, derive_key
from tokengate.store import LedgerStore, StoreError, TransientStoreError, DuplicateKeyError
from tokengate.stores import MemoryStore, SqlStore
from tokengate.verification import VerificationService, VerifyOutcome, VerifyResult
from tokengate.codes import CreditCodeLedger, CreditCodeError, CodeNotFoundError, CodeAlreadyUsedError
from tokengate.epay_client import EpayClient, EpayError
from tokengate.orders import PaymentOrderService
from tokengate.reconciler import WebhookReconciler, ReconcileResult

__all__ = [
    "GateConfig",
    "OrderKind",
    "OrderStatus",
    "PayMethod",
    "CreditCode",
    "EntitlementRecord",
    "PaymentOrder",
    "TokenError",
    "MalformedTokenError",
    "TokenDecryptError",
    "issue_token",
    "decode_token",
    "derive_key",
    "LedgerStore",
    "StoreError",
    "TransientStoreError",
    "DuplicateKeyError",
    "MemoryStore",
    "SqlStore",
    "VerificationService",
    "VerifyOutcome",
    "VerifyResult",
    "CreditCodeLedger",
    "CreditCodeError",
    "CodeNotFoundError",
    "CodeAlreadyUsedError",
    "EpayClient",
    "EpayError",
    "PaymentOrderService",
    "WebhookReconciler",
    "ReconcileResult",
]
