from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from .errors import CCError
from .proto import Character
from .schemas import Schemas, Userstreams

log = logging.getLogger("ccsdk.delivery")


class CharacterReader(Protocol):
    async def read_character(self, author: str, schema: str) -> Optional[Character]: ...


@dataclass
class DeliveryTargets:
    """Where a notification about an actor's action should be delivered.

    ``unconfigured`` lists CCIDs that have no userstreams (or lack the needed
    stream); ``failed`` maps CCIDs to the error their lookup raised.
    """

    streams: List[str] = field(default_factory=list)
    unconfigured: List[str] = field(default_factory=list)
    failed: Dict[str, CCError] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.unconfigured and not self.failed


async def _userstreams(api: CharacterReader, ccid: str) -> Optional[Userstreams]:
    character = await api.read_character(ccid, Schemas.userstreams)
    if character is None:
        return None
    return character.payload.decode_body()


async def resolve_delivery_streams(api: CharacterReader, actor: str, target_actor: str) -> DeliveryTargets:
    """Target actor's notification stream plus the actor's association stream."""

    wanted = ((target_actor, "notificationStream"), (actor, "associationStream"))
    lookups = await asyncio.gather(
        *(_userstreams(api, ccid) for ccid, _ in wanted),
        return_exceptions=True,
    )

    result = DeliveryTargets()
    for (ccid, attr), found in zip(wanted, lookups):
        if isinstance(found, CCError):
            result.failed[ccid] = found
            continue
        if isinstance(found, BaseException):
            raise found
        stream = getattr(found, attr, None) if found is not None else None
        if stream:
            result.streams.append(stream)
        else:
            result.unconfigured.append(ccid)

    if result.failed:
        log.warning("delivery stream lookup failed for %s", ", ".join(sorted(result.failed)))
    if result.unconfigured:
        log.debug("no delivery stream configured for %s", ", ".join(result.unconfigured))
    return result


__all__ = ["DeliveryTargets", "resolve_delivery_streams"]
