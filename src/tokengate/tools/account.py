"""Account tools for the chat front end: get_token, account_info, redeem_code,
generate_code, purchase_credits, change_origin, check_order."""

from __future__ import annotations

import logging
from typing import Any

from tokengate.codes import CodeAlreadyUsedError, CodeNotFoundError, CreditCodeLedger
from tokengate.config import GateConfig
from tokengate.constants import PayMethod
from tokengate.epay_client import EpayError, format_price
from tokengate.orders import OrderCreation, OrderError, PaymentOrderService
from tokengate.store import IdentityExistsError, LedgerStore, OriginInUseError, StoreError
from tokengate.verification import InvalidOriginError, VerificationService

logger = logging.getLogger(__name__)


def _store_failure(action: str, identity: str) -> dict[str, Any]:
    logger.error("Store error during %s for %s", action, identity, exc_info=True)
    return {"success": False, "error": "Storage is temporarily unavailable. Please try again."}


def _order_result(creation: OrderCreation) -> dict[str, Any]:
    order = creation.order
    result: dict[str, Any] = {
        "success": True,
        "pay_id": order.pay_id,
        "order_id": order.gateway_order_id,
        "goods_name": order.goods_name,
        "price": format_price(order.price),
        "payment_url": creation.payment_url,
    }
    if creation.timeout_minutes is not None:
        result["timeout_minutes"] = creation.timeout_minutes
    return result


async def get_token_tool(
    verification: VerificationService,
    store: LedgerStore,
    identity: str,
    origin: str,
) -> dict[str, Any]:
    """Issue the caller's token bound to ``origin``.

    An identity gets one token. Asking again returns the existing one with
    ``already_issued`` set; moving it to another origin is a paid rebind.
    """
    try:
        existing = await store.get_entitlement(identity)
        if existing is None:
            try:
                record = await verification.issue(identity, origin)
            except IdentityExistsError:
                existing = await store.get_entitlement(identity)
            else:
                return {
                    "success": True,
                    "already_issued": False,
                    "token": record.token,
                    "bound_origin": record.bound_origin,
                    "remaining_credit": record.remaining_credit,
                }
    except InvalidOriginError:
        return {"success": False, "error": f"{origin!r} is not a public IP address."}
    except OriginInUseError:
        return {"success": False, "error": f"{origin} is already bound to another account."}
    except StoreError:
        return _store_failure("get_token", identity)

    if existing is None:
        return {"success": False, "error": "Token could not be issued. Please try again."}
    return {
        "success": True,
        "already_issued": True,
        "token": existing.token,
        "bound_origin": existing.bound_origin,
        "remaining_credit": existing.remaining_credit,
    }


async def account_info_tool(store: LedgerStore, identity: str) -> dict[str, Any]:
    """Current binding, token and remaining credit. Read-only."""
    try:
        record = await store.get_entitlement(identity)
        pending = await store.list_pending_orders(identity)
    except StoreError:
        return _store_failure("account_info", identity)
    if record is None:
        return {"success": False, "error": "No token yet. Request one first."}
    return {
        "success": True,
        "identity": record.identity,
        "bound_origin": record.bound_origin,
        "token": record.token,
        "remaining_credit": record.remaining_credit,
        "created_at": record.created_at.isoformat(),
        "pending_orders": len(pending),
    }


async def redeem_code_tool(
    ledger: CreditCodeLedger,
    store: LedgerStore,
    identity: str,
    code: str,
) -> dict[str, Any]:
    """Redeem a credit code and add its credits to the caller's record."""
    code = code.strip()
    if not code:
        return {"success": False, "error": "Code must not be empty."}
    try:
        if await store.get_entitlement(identity) is None:
            return {"success": False, "error": "No token yet. Request one before redeeming a code."}
        grant = await ledger.redeem(code, identity)
    except CodeNotFoundError:
        return {"success": False, "error": "Code does not exist."}
    except CodeAlreadyUsedError:
        return {"success": False, "error": "Code has already been used."}
    except StoreError:
        return _store_failure("redeem_code", identity)

    try:
        remaining = await store.add_credit(identity, grant)
    except StoreError:
        logger.error(
            "CRITICAL: code %s consumed by %s but %d credits were not granted. "
            "Grant manually.",
            code, identity, grant, exc_info=True,
        )
        return {
            "success": False,
            "error": "Code was accepted but credits could not be added. Contact support.",
        }

    return {"success": True, "credits_added": grant, "remaining_credit": remaining}


async def generate_code_tool(
    ledger: CreditCodeLedger,
    config: GateConfig,
    identity: str,
    grant_amount: int | None = None,
) -> dict[str, Any]:
    """Administrator-only: mint a new single-use credit code."""
    if not config.is_admin(identity):
        logger.warning("Non-admin %s attempted to generate a code", identity)
        return {"success": False, "error": "Only administrators can generate codes."}

    amount = config.code_default_grant if grant_amount is None else grant_amount
    try:
        code = await ledger.issue_code(amount, identity)
    except ValueError as e:
        return {"success": False, "error": str(e)}
    except StoreError:
        return _store_failure("generate_code", identity)
    return {"success": True, "code": code.code, "grant_amount": code.grant_amount}


async def purchase_credits_tool(
    orders: PaymentOrderService,
    identity: str,
    count: int,
    pay_type: int = PayMethod.WECHAT,
) -> dict[str, Any]:
    """Open a payment order for ``count`` credits. Credits arrive on payment."""
    try:
        method = PayMethod(pay_type)
    except ValueError:
        return {"success": False, "error": f"Unsupported payment type {pay_type}."}
    try:
        creation = await orders.create_credit_order(identity, count, method)
    except OrderError as e:
        return {"success": False, "error": str(e)}
    except EpayError as e:
        return {"success": False, "error": f"Payment gateway error: {e}"}
    except StoreError:
        return _store_failure("purchase_credits", identity)
    result = _order_result(creation)
    result["credits"] = count
    return result


async def change_origin_tool(
    orders: PaymentOrderService,
    identity: str,
    new_origin: str,
    pay_type: int = PayMethod.WECHAT,
) -> dict[str, Any]:
    """Open a paid rebind order. A new token replaces the old one on payment."""
    try:
        method = PayMethod(pay_type)
    except ValueError:
        return {"success": False, "error": f"Unsupported payment type {pay_type}."}
    try:
        creation = await orders.create_rebind_order(identity, new_origin, method)
    except OrderError as e:
        return {"success": False, "error": str(e)}
    except EpayError as e:
        return {"success": False, "error": f"Payment gateway error: {e}"}
    except StoreError:
        return _store_failure("change_origin", identity)
    result = _order_result(creation)
    result["new_origin"] = creation.order.new_origin
    return result


async def check_order_tool(
    orders: PaymentOrderService,
    identity: str,
    order_id: str,
) -> dict[str, Any]:
    """Gateway status of one of the caller's orders."""
    try:
        status = await orders.check_order(order_id, identity=identity)
    except OrderError as e:
        return {"success": False, "error": str(e)}
    except EpayError as e:
        return {"success": False, "error": f"Payment gateway error: {e}"}
    except StoreError:
        return _store_failure("check_order", identity)
    return {"success": True, **status}
