"""
netrunr_lib/registry.py

Callback registry: pending continuations per (target, kind).

- REQUEST entries are single-use; `resolve` removes them.
- EVENT / REPORT / NOTIFICATION entries persist until cleared.
- Registering replaces any entry of the same kind for that target.
"""

from __future__ import annotations

import logging
from typing import Optional

from .const import WILDCARD_TARGET
from .types import Callback, Continuation, StreamKind

logger = logging.getLogger(__name__)

RegistryKey = tuple[str, StreamKind]


class CallbackRegistry:
    def __init__(self) -> None:
        self._entries: dict[RegistryKey, Continuation] = {}

    @staticmethod
    def _key(target: Optional[str], kind: StreamKind) -> RegistryKey:
        return (target or "", kind)

    def register(
        self,
        target: Optional[str],
        kind: StreamKind,
        success: Optional[Callback],
        error: Optional[Callback],
    ) -> Continuation:
        key = self._key(target, kind)
        if key in self._entries and kind is StreamKind.REQUEST:
            logger.debug("Replacing pending %s continuation for %r", kind.value, key[0])
        entry = Continuation(success=success, error=error)
        self._entries[key] = entry
        return entry

    def resolve(
        self,
        target: Optional[str],
        kind: StreamKind,
        *,
        expected: Optional[Continuation] = None,
    ) -> Optional[Continuation]:
        """
        Return the entry for (target, kind); REQUEST entries are removed.

        With `expected`, only that exact entry resolves. A late reply for a
        call that was superseded (registries cleared by close, or a newer
        call installed after a disconnect unlock) then resolves to None.
        """
        key = self._key(target, kind)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if expected is not None and entry is not expected:
            return None
        if kind is StreamKind.REQUEST:
            del self._entries[key]
        return entry

    def resolve_stream(
        self, target: Optional[str], kind: StreamKind
    ) -> Optional[tuple[str, Continuation]]:
        """Look up a stream entry by target, falling back to the wildcard entry."""
        if target and target != WILDCARD_TARGET:
            entry = self._entries.get(self._key(target, kind))
            if entry is not None:
                return target, entry
        entry = self._entries.get(self._key(WILDCARD_TARGET, kind))
        if entry is not None:
            return WILDCARD_TARGET, entry
        return None

    def clear(self, target: Optional[str], kind: StreamKind) -> bool:
        return self._entries.pop(self._key(target, kind), None) is not None

    def clear_all(self) -> None:
        self._entries.clear()

    def has(self, target: Optional[str], kind: StreamKind) -> bool:
        return self._key(target, kind) in self._entries

    def pending_count(self, kind: Optional[StreamKind] = None) -> int:
        if kind is None:
            return len(self._entries)
        return sum(1 for _, k in self._entries if k is kind)
