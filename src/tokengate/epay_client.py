"""Async HTTP client for the epay-style payment gateway API."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from tokengate.constants import GATEWAY_SUCCESS_CODE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class EpayError(Exception):
    """Base exception for payment gateway operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EpayAuthError(EpayError):
    """Merchant credentials rejected (401/403)."""


class EpayNotFoundError(EpayError):
    """Endpoint or order not found (404)."""


class EpayServerError(EpayError):
    """Gateway-side failure, 5xx. Safe to retry."""


class EpayConnectionError(EpayError):
    """Network/DNS failure (retryable)."""


class EpayTimeoutError(EpayError):
    """Request timeout (retryable)."""


class EpayResponseError(EpayError):
    """Body is an HTML error page or otherwise not a JSON object."""


# ---------------------------------------------------------------------------
# Signing contract
# ---------------------------------------------------------------------------

# Field order is part of the gateway protocol. The secret is appended last
# and the MD5 hex digest of the concatenation is the signature.
CREATE_ORDER_SIGN_FIELDS: tuple[str, ...] = ("payId", "param", "type", "price")
NOTIFY_SIGN_FIELDS: tuple[str, ...] = ("orderId", "param", "type", "price", "reallyPrice")


def format_price(price: Decimal) -> str:
    """Two-decimal rendering used on the wire and in signatures."""
    return str(Decimal(price).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_sign(fields: Sequence[str], params: Mapping[str, Any], secret: str) -> str:
    """MD5 hex of the named fields' values in order, followed by ``secret``.

    Missing fields contribute an empty string.
    """
    data = "".join(str(params.get(name, "")) for name in fields) + secret
    return hashlib.md5(data.encode()).hexdigest()


def verify_sign(
    fields: Sequence[str], params: Mapping[str, Any], secret: str, signature: str
) -> bool:
    """Constant-time comparison of ``signature`` against the expected value.

    Compared as UTF-8 bytes so a non-ASCII signature is a plain mismatch.
    """
    expected = compute_sign(fields, params, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


# ---------------------------------------------------------------------------
# Status code → exception mapping
# ---------------------------------------------------------------------------

_STATUS_MAP: dict[int, type[EpayError]] = {
    401: EpayAuthError,
    403: EpayAuthError,
    404: EpayNotFoundError,
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EpayClient:
    """Async client for the gateway's createOrder/getOrder API.

    All settings are passed in; nothing is read from the environment.
    Requests are form-encoded POSTs; responses are JSON
    ``{code, msg, data}`` where ``code == 1`` means success.
    """

    def __init__(self, base_url: str, mch_id: str, secret: str) -> None:
        self._mch_id = mch_id
        self._secret = secret
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )

    @property
    def mch_id(self) -> str:
        return self._mch_id

    # -- internal request dispatcher -----------------------------------------

    async def _request(self, endpoint: str, form: dict[str, str]) -> dict[str, Any]:
        """POST a form and map errors to the Epay exception hierarchy."""
        try:
            response = await self._client.request("POST", endpoint, data=form)
        except httpx.ConnectError as exc:
            raise EpayConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise EpayTimeoutError(str(exc)) from exc

        body = response.text
        if response.status_code >= 400:
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise EpayServerError(body, status_code=response.status_code)
            raise EpayError(body, status_code=response.status_code)

        lowered = body.lstrip()[:64].lower()
        if lowered.startswith("<!doctype") or lowered.startswith("<html"):
            raise EpayResponseError(
                f"gateway returned an HTML page for {endpoint}", status_code=response.status_code
            )
        try:
            result = response.json()
        except ValueError as exc:
            raise EpayResponseError(
                f"gateway returned non-JSON body: {body[:200]}", status_code=response.status_code
            ) from exc
        if not isinstance(result, dict):
            raise EpayResponseError(
                f"gateway returned {type(result).__name__}, expected object",
                status_code=response.status_code,
            )
        logger.debug("Gateway %s responded code=%s msg=%s", endpoint, result.get("code"), result.get("msg"))
        return result

    # -- public API methods ---------------------------------------------------

    async def create_order(
        self,
        pay_id: str,
        pay_type: int,
        price: Decimal,
        goods_name: str,
        param: str,
        notify_url: str,
        return_url: str,
    ) -> dict[str, Any]:
        """POST /api/createOrder: open a gateway order and get its pay URL."""
        form = {
            "mchId": self._mch_id,
            "payId": pay_id,
            "type": str(int(pay_type)),
            "price": format_price(price),
            "goodsName": goods_name,
            "param": param,
            "isHtml": "0",
            "notifyUrl": notify_url,
            "returnUrl": return_url,
        }
        form["sign"] = compute_sign(CREATE_ORDER_SIGN_FIELDS, form, self._secret)
        return await self._request("/api/createOrder", form)

    async def get_order(self, order_id: str) -> dict[str, Any]:
        """POST /api/getOrder: gateway-side order details and state."""
        return await self._request("/api/getOrder", {"mchId": self._mch_id, "orderId": order_id})

    @staticmethod
    def is_success(result: Mapping[str, Any]) -> bool:
        try:
            return int(result.get("code", -1)) == GATEWAY_SUCCESS_CODE
        except (TypeError, ValueError):
            return False

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> EpayClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
