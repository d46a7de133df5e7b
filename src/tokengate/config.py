"""Tokengate configuration as a plain frozen dataclass.

The host application constructs this from its own settings and passes it
to the services. ``from_toml`` reads the ``config.toml`` layout the
service has always shipped with.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from tokengate.constants import DEFAULT_CODE_GRANT, DEFAULT_CREDIT


@dataclass(frozen=True)
class GateConfig:
    server_host: str = "0.0.0.0"
    server_port: int = 8080
    bot_token: str | None = None
    admin_ids: frozenset[str] = field(default_factory=frozenset)
    database_url: str = "sqlite+aiosqlite:///tokengate.db"
    default_credit: int = DEFAULT_CREDIT
    code_default_grant: int = DEFAULT_CODE_GRANT
    payment_base_url: str | None = None
    payment_mch_id: str | None = None
    payment_secret: str | None = None
    price_per_use: Decimal = Decimal("0.10")
    rebind_price: Decimal = Decimal("1.00")
    notify_url: str | None = None
    return_url: str | None = None
    token_salt: str = ""
    store_timeout_secs: float = 5.0

    @property
    def payment_enabled(self) -> bool:
        return bool(self.payment_base_url and self.payment_mch_id and self.payment_secret)

    def is_admin(self, identity: str) -> bool:
        return identity in self.admin_ids

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> GateConfig:
        """Build from the nested ``config.toml`` structure.

        Missing sections fall back to defaults; ``admin_ids`` may be ints
        or strings.
        """
        server = data.get("server", {})
        bot = data.get("bot", {})
        database = data.get("database", {})
        limits = data.get("limits", {})
        payment = data.get("payment", {})
        token = data.get("token", {})

        defaults = cls()
        return cls(
            server_host=str(server.get("host", defaults.server_host)),
            server_port=int(server.get("port", defaults.server_port)),
            bot_token=bot.get("token") or None,
            admin_ids=frozenset(str(a) for a in bot.get("admin_ids", [])),
            database_url=str(database.get("url", defaults.database_url)),
            default_credit=int(limits.get("default_limit", defaults.default_credit)),
            code_default_grant=int(limits.get("key_add_limit", defaults.code_default_grant)),
            payment_base_url=payment.get("base_url") or None,
            payment_mch_id=payment.get("mch_id") or None,
            payment_secret=payment.get("secret") or None,
            # str() first so float TOML values do not leak binary noise
            price_per_use=Decimal(str(payment.get("price_per_use", defaults.price_per_use))),
            rebind_price=Decimal(str(payment.get("rebind_price", defaults.rebind_price))),
            notify_url=payment.get("notify_url") or None,
            return_url=payment.get("return_url") or None,
            token_salt=str(token.get("salt", defaults.token_salt)),
            store_timeout_secs=float(database.get("timeout_secs", defaults.store_timeout_secs)),
        )

    @classmethod
    def from_toml(cls, path: str | Path) -> GateConfig:
        with open(path, "rb") as fh:
            return cls.from_mapping(tomllib.load(fh))
