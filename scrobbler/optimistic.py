"""
Optimistic local updates.

The new value is visible immediately; if the confirming call fails for any
reason the old value is put back and the error propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, MutableMapping, TypeVar

log = logging.getLogger("scrobbler.optimistic")

V = TypeVar("V")


@dataclass(frozen=True)
class OptimisticChange(Generic[V]):
    key: Hashable
    old: V
    new: V


async def apply_optimistic(state: MutableMapping[Hashable, Any], change: OptimisticChange[V],
                           confirm: Callable[[], Awaitable[object]]) -> V:
    state[change.key] = change.new
    try:
        await confirm()
    except BaseException:
        state[change.key] = change.old
        log.debug("Reverted %r to %r", change.key, change.old)
        raise
    return change.new
