"""
netrunr_lib/guard.py

Serialization guard: the gateway accepts one outstanding gateway-wide
operation (scan, pairing list, configuration, ...) and one outstanding
operation per connected device. Acquisition never waits; a held key is a
conflict the caller must retry later.
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)

GLOBAL_KEY = "__global__"


class SerializationGuard:
    """
    Busy flags keyed by target, plus one global flag (target None).

    Every successful acquisition gets a lease number. Releasing with a stale
    lease is a no-op, so a late reply cannot free a lock that a newer
    operation has since taken (for example after a disconnect event already
    released the original holder).
    """

    def __init__(self) -> None:
        self._held: dict[str, int] = {}
        self._next_lease = 1

    @staticmethod
    def _key(target: Optional[str]) -> str:
        return target if target else GLOBAL_KEY

    def try_acquire(self, target: Optional[str] = None) -> bool:
        key = self._key(target)
        if key in self._held:
            logger.debug("Guard busy for %s", key)
            return False
        self._held[key] = self._next_lease
        self._next_lease += 1
        logger.debug("Guard acquired for %s", key)
        return True

    def lease(self, target: Optional[str] = None) -> Optional[int]:
        return self._held.get(self._key(target))

    def release(self, target: Optional[str] = None, lease: Optional[int] = None) -> bool:
        """Free `target`; returns False when it was already free or the lease is stale."""
        key = self._key(target)
        current = self._held.get(key)
        if current is None:
            return False
        if lease is not None and lease != current:
            logger.debug("Ignoring stale release for %s (lease %s, current %s)", key, lease, current)
            return False
        del self._held[key]
        logger.debug("Guard released for %s", key)
        return True

    def is_busy(self, target: Optional[str] = None) -> bool:
        return self._key(target) in self._held

    def reset(self) -> None:
        self._held.clear()

    def busy_targets(self) -> tuple[str, ...]:
        return tuple(sorted(self._held))
