"""Rule-set cache owned by the access store.

Rule sets are memoized per (user, device scope) and dropped synchronously by
every store write that could change them. The only time-bounded entry is the
per-user "has schedule" flag used for display badges; decisions never read it.
"""

import logging
import threading
from dataclasses import replace
from typing import Optional

from cachetools import TTLCache

from streamgate.models import TimeRule

logger = logging.getLogger(__name__)

DEFAULT_HAS_RULES_TTL = 60  # seconds
DEFAULT_HAS_RULES_CACHE_SIZE = 1024

ScopeKey = tuple[str, Optional[str]]


class RuleCache:
    """Memoized rule sets with explicit invalidation."""

    def __init__(
        self,
        has_rules_ttl: int = DEFAULT_HAS_RULES_TTL,
        maxsize: int = DEFAULT_HAS_RULES_CACHE_SIZE,
    ) -> None:
        self._lock = threading.Lock()
        self._rules: dict[ScopeKey, list[TimeRule]] = {}
        self._has_rules: TTLCache[str, bool] = TTLCache(maxsize=maxsize, ttl=has_rules_ttl)
        self._hits = 0
        self._misses = 0

    def get_rules(self, user_id: str, device_identifier: Optional[str]) -> Optional[list[TimeRule]]:
        """Return a copy of the cached rule set, or None on a miss."""
        with self._lock:
            rules = self._rules.get((user_id, device_identifier))
            if rules is None:
                self._misses += 1
                return None
            self._hits += 1
            return [replace(rule) for rule in rules]

    def set_rules(self, user_id: str, device_identifier: Optional[str], rules: list[TimeRule]) -> None:
        with self._lock:
            self._rules[(user_id, device_identifier)] = [replace(rule) for rule in rules]

    def get_has_rules(self, user_id: str) -> Optional[bool]:
        with self._lock:
            return self._has_rules.get(user_id)

    def set_has_rules(self, user_id: str, value: bool) -> None:
        with self._lock:
            self._has_rules[user_id] = value

    def invalidate_user(self, user_id: str) -> None:
        """Drop every cached view for a user (all scopes and the badge flag)."""
        with self._lock:
            for key in [key for key in self._rules if key[0] == user_id]:
                del self._rules[key]
            self._has_rules.pop(user_id, None)
        logger.debug(f"Rule cache invalidated for {user_id}")

    def clear(self) -> None:
        with self._lock:
            self._rules.clear()
            self._has_rules.clear()

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "rule_sets": len(self._rules),
                "has_rules_flags": len(self._has_rules),
                "hits": self._hits,
                "misses": self._misses,
            }
