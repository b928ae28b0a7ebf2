"""Storage layer for access state."""

from streamgate.storage.cache import RuleCache
from streamgate.storage.db import AccessStore

__all__ = ["AccessStore", "RuleCache"]
