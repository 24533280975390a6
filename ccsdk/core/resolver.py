from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from .proto import Entity

log = logging.getLogger("ccsdk.resolver")

EntityLoader = Callable[[str], Awaitable[Optional[Entity]]]


class HostResolver:
    """Maps a CCID to the host currently serving its objects.

    ``load_entity`` is expected to go through the entity cache, so repeated
    resolutions of the same CCID share one lookup.
    """

    def __init__(self, load_entity: EntityLoader, default_host: str) -> None:
        self.load_entity = load_entity
        self.default_host = default_host

    async def resolve(self, ccid: str) -> str:
        entity = await self.load_entity(ccid)
        if entity is None:
            log.debug("no entity for %s; using %s", ccid, self.default_host)
            return self.default_host
        return entity.domain or self.default_host


__all__ = ["HostResolver"]
