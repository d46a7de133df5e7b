"""Constants for token framing, order lifecycle and gateway codes."""

from enum import Enum, IntEnum


# Token frame: [issuance_time(8)][identity_len(1)][identity][nonce(12)][ciphertext+tag]
TIMESTAMP_BYTES = 8
IDENTITY_LEN_BYTES = 1
NONCE_BYTES = 12
GCM_TAG_BYTES = 16
KEY_BYTES = 32
MAX_IDENTITY_BYTES = 255

DEFAULT_CREDIT = 3
DEFAULT_CODE_GRANT = 10


class OrderKind(str, Enum):
    CREDIT_PURCHASE = "credit_purchase"
    ORIGIN_REBIND = "origin_rebind"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PayMethod(IntEnum):
    """Gateway ``type`` values."""

    WECHAT = 1
    ALIPAY = 2


PAY_METHOD_LABELS = {
    PayMethod.WECHAT: "WeChat Pay",
    PayMethod.ALIPAY: "Alipay",
}


class GatewayOrderState(IntEnum):
    """Gateway ``data.state`` values returned by getOrder."""

    WAITING = 0
    PAID = 1
    FAILED = 2


GATEWAY_SUCCESS_CODE = 1

# Separator inside the correlation ``param`` of rebind orders: "identity|origin".
PARAM_SEPARATOR = "|"
