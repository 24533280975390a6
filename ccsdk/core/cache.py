from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

"""
Single-flight object cache
--------------------------
One slot per key. A slot is created by starting the loader exactly once and is
stored before the loader runs, so every caller that arrives while the load is
in flight awaits the same future.

  - get_or_load() does lookup and insert without yielding to the event loop;
    that is the whole atomicity requirement under asyncio.
  - A slot whose loader fails is dropped as soon as it settles. Callers already
    waiting see the failure; the next caller starts a fresh load.
  - invalidate() drops a slot in any state. A load that settles after its slot
    was replaced never touches the replacement.
"""

log = logging.getLogger("ccsdk.cache")

V = TypeVar("V")
Loader = Callable[[], Awaitable[V]]


class SlotState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class Slot(Generic[V]):
    future: "asyncio.Future[V]"

    @property
    def state(self) -> SlotState:
        if not self.future.done():
            return SlotState.PENDING
        if self.future.cancelled() or self.future.exception() is not None:
            return SlotState.FAILED
        return SlotState.READY


class ObjectCache(Generic[V]):
    """Per entity-kind map from cache key to an in-flight or resolved load."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._slots: Dict[str, Slot[V]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def state(self, key: str) -> Optional[SlotState]:
        slot = self._slots.get(key)
        return slot.state if slot else None

    def get_or_load(self, key: str, loader: Loader[V]) -> "asyncio.Future[V]":
        slot = self._slots.get(key)
        if slot is not None:
            return slot.future
        future = asyncio.ensure_future(loader())
        slot = Slot(future)
        self._slots[key] = slot
        future.add_done_callback(lambda fut, key=key, slot=slot: self._settle(key, slot))
        return future

    async def load(self, key: str, loader: Loader[V]) -> V:
        # shield: a cancelled caller must not cancel the load other callers share
        return await asyncio.shield(self.get_or_load(key, loader))

    def _settle(self, key: str, slot: Slot[V]) -> None:
        fut = slot.future
        if fut.cancelled():
            failed = True
        else:
            # retrieving the exception also silences "never retrieved" warnings
            failed = fut.exception() is not None
        if not failed:
            return
        if self._slots.get(key) is slot:
            del self._slots[key]
            log.debug("%s: dropped failed slot %s", self.name, key)

    def invalidate(self, key: str) -> bool:
        removed = self._slots.pop(key, None) is not None
        if removed:
            log.debug("%s: invalidated %s", self.name, key)
        return removed

    def invalidate_where(self, predicate: Callable[[V], bool]) -> int:
        """Drop every ready slot whose value satisfies ``predicate``."""

        doomed = [
            key
            for key, slot in self._slots.items()
            if slot.state is SlotState.READY and predicate(slot.future.result())
        ]
        for key in doomed:
            del self._slots[key]
        return len(doomed)

    def clear(self) -> None:
        self._slots.clear()


__all__ = ["ObjectCache", "Slot", "SlotState"]
