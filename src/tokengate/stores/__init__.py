"""Concrete LedgerStore implementations."""

from tokengate.stores.memory import MemoryStore
from tokengate.stores.sql import SqlStore

__all__ = ["MemoryStore", "SqlStore"]
