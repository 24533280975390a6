from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from . import proto
from .api import Api
from .config import ClientConfig
from .delivery import DeliveryTargets, resolve_delivery_streams
from .errors import DecodeError, DomainError
from .schemas import (
    Commonstream,
    EmojiAssociation,
    Like,
    Profile,
    ReplyAssociation,
    ReplyMessage,
    RerouteAssociation,
    RerouteMessage,
    Schemas,
    SimpleNote,
    UserAck,
    Userstreams,
)
from .transport import DEFAULT_TIMEOUT_S

log = logging.getLogger("ccsdk.client")

Emojis = Dict[str, Dict[str, str]]


def _created_id(data: Dict[str, Any]) -> str:
    content = data.get("content")
    record = content if isinstance(content, dict) else data
    if not record.get("id"):
        raise DecodeError("create response carries no id")
    return record["id"]


class Client:
    """Application-facing entry point composing the api, caches and helpers."""

    def __init__(
        self,
        private_key: Any,
        host: str,
        client_name: Optional[str] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        scheme: str = "https",
        **api_kwargs: Any,
    ) -> None:
        self.api = Api(
            private_key,
            host,
            client_name or "N/A",
            http=http,
            timeout_s=timeout_s,
            scheme=scheme,
            **api_kwargs,
        )
        self.ccid = self.api.ccid
        self.host = host
        self.user: Optional[User] = None

    @classmethod
    async def create(cls, private_key: Any, host: str, client_name: Optional[str] = None, **kwargs: Any) -> "Client":
        client = cls(private_key, host, client_name, **kwargs)
        user = await client.get_user(client.ccid)
        if user is None:
            await client.aclose()
            raise DomainError(f"user {client.ccid} not found on {host}")
        client.user = user
        return client

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> "Client":
        return cls(
            config.private_key,
            config.host,
            config.client,
            timeout_s=config.timeout_s,
            scheme=config.scheme,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self.api.aclose()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    async def get_user(self, ccid: str) -> Optional["User"]:
        return await User.load(self, ccid)

    async def get_stream(self, id: str) -> Optional["Stream"]:
        return await Stream.load(self, id)

    async def get_message(self, id: str, author: str) -> Optional["Message"]:
        return await Message.load(self, id, author)

    async def get_association(self, id: str, owner: str) -> Optional["Association"]:
        return await Association.load(self, id, owner)

    # ------------------------------------------------------------------
    # Own content
    # ------------------------------------------------------------------

    async def create_current(
        self,
        body: str,
        streams: List[str],
        emojis: Optional[Emojis] = None,
        profile_override: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        note = SimpleNote(body=body, emojis=emojis, profileOverride=profile_override)
        return await self.api.create_message(Schemas.simpleNote, note, streams)

    async def setup_userstreams(self) -> Userstreams:
        """Create whichever of home/notification/association streams are missing."""

        character = await self.api.read_character(self.ccid, Schemas.userstreams)
        current = character.payload.decode_body() if character else Userstreams()

        if not current.homeStream:
            res = await self.api.create_stream(Schemas.utilitystream, {}, writer=[self.ccid])
            current.homeStream = _created_id(res)
            log.info("created home stream %s", current.homeStream)
        if not current.notificationStream:
            res = await self.api.create_stream(Schemas.utilitystream, {})
            current.notificationStream = _created_id(res)
            log.info("created notification stream %s", current.notificationStream)
        if not current.associationStream:
            res = await self.api.create_stream(Schemas.utilitystream, {}, writer=[self.ccid])
            current.associationStream = _created_id(res)
            log.info("created association stream %s", current.associationStream)

        await self.api.upsert_character(Schemas.userstreams, current, character.id if character else None)
        return current

    async def create_profile(self, username: str, description: str, avatar: str, banner: str) -> Dict[str, Any]:
        profile = Profile(username=username, description=description, avatar=avatar, banner=banner)
        return await self.api.upsert_character(Schemas.profile, profile)

    async def update_profile(
        self, id: str, username: str, description: str, avatar: str, banner: str
    ) -> Dict[str, Any]:
        profile = Profile(username=username, description=description, avatar=avatar, banner=banner)
        return await self.api.upsert_character(Schemas.profile, profile, id)

    async def get_common_streams(self, remote: Optional[str] = None) -> List["Stream"]:
        streams = await self.api.get_stream_list_by_schema(Schemas.commonstream, remote)
        return [Stream(self, s) for s in streams]

    async def create_common_stream(self, name: str, description: str) -> Dict[str, Any]:
        body = Commonstream(name=name, shortname=name, description=description)
        return await self.api.create_stream(Schemas.commonstream, body)

    # ------------------------------------------------------------------
    # Reactions and edges
    # ------------------------------------------------------------------

    async def delivery_streams(self, target_actor: str) -> DeliveryTargets:
        targets = await resolve_delivery_streams(self.api, self.ccid, target_actor)
        if not targets.complete:
            log.warning(
                "delivering to %d stream(s); unconfigured=%s failed=%s",
                len(targets.streams),
                targets.unconfigured,
                sorted(targets.failed),
            )
        return targets

    async def favorite_message(self, id: str, author: str) -> Dict[str, Any]:
        targets = await self.delivery_streams(author)
        res = await self.api.create_association(Schemas.like, Like(), id, author, "messages", targets.streams)
        self.api.invalidate_message(id)
        return res

    async def add_message_reaction(self, id: str, author: str, shortcode: str, image_url: str) -> Dict[str, Any]:
        targets = await self.delivery_streams(author)
        res = await self.api.create_association(
            Schemas.emojiAssociation,
            EmojiAssociation(shortcode=shortcode, imageUrl=image_url),
            id,
            author,
            "messages",
            targets.streams,
            variant=image_url,
        )
        self.api.invalidate_message(id)
        return res

    async def unfavorite_message(self, association_id: str, author: str) -> Optional[proto.Association]:
        # delete_association already drops the target message slot
        return await self.api.delete_association(association_id, author)

    async def reply_message(
        self,
        id: str,
        author: str,
        streams: List[str],
        body: str,
        emojis: Optional[Emojis] = None,
    ) -> Dict[str, Any]:
        targets = await self.delivery_streams(author)
        reply = ReplyMessage(replyToMessageId=id, replyToMessageAuthor=author, body=body, emojis=emojis)
        created = await self.api.create_message(Schemas.replyMessage, reply, streams)
        edge = ReplyAssociation(messageId=_created_id(created), messageAuthor=self.ccid)
        await self.api.create_association(Schemas.replyAssociation, edge, id, author, "messages", targets.streams)
        self.api.invalidate_message(id)
        return created

    async def reroute_message(
        self,
        id: str,
        author: str,
        streams: List[str],
        body: Optional[str] = None,
        emojis: Optional[Emojis] = None,
    ) -> Dict[str, Any]:
        targets = await self.delivery_streams(author)
        reroute = RerouteMessage(rerouteMessageId=id, rerouteMessageAuthor=author, body=body, emojis=emojis)
        created = await self.api.create_message(Schemas.rerouteMessage, reroute, streams)
        edge = RerouteAssociation(messageId=_created_id(created), messageAuthor=self.ccid)
        await self.api.create_association(Schemas.rerouteAssociation, edge, id, author, "messages", targets.streams)
        self.api.invalidate_message(id)
        return created

    async def ack_user(self, user: "User") -> Dict[str, Any]:
        if user.profile is None:
            raise DomainError(f"{user.ccid} has no profile to acknowledge")
        targets = await self.delivery_streams(user.ccid)
        res = await self.api.create_association(
            Schemas.userAck, UserAck(), user.profile.id, user.ccid, "characters", targets.streams
        )
        self.api.invalidate_character(user.ccid, Schemas.profile)
        return res

    async def unack_user(self, association_id: str, ccid: str) -> Optional[proto.Association]:
        return await self.api.delete_association(association_id, ccid)


# ---------------------------------------------------------------------------
# Rich objects
# ---------------------------------------------------------------------------


class _Wrapped:
    """Attribute access falls through to the wrapped wire record."""

    core: Any

    def __getattr__(self, name: str) -> Any:
        if name == "core":
            raise AttributeError(name)
        return getattr(self.core, name)


class User:
    def __init__(
        self,
        client: Client,
        entity: proto.Entity,
        profile: Optional[proto.Character] = None,
        userstreams: Optional[proto.Character] = None,
    ) -> None:
        self.client = client
        self.entity = entity
        self.profile = profile
        self.userstreams = userstreams

    @property
    def ccid(self) -> str:
        return self.entity.ccid

    @property
    def domain(self) -> str:
        return self.entity.domain

    def profile_body(self) -> Optional[Profile]:
        return self.profile.payload.decode_body() if self.profile else None

    def userstreams_body(self) -> Optional[Userstreams]:
        return self.userstreams.payload.decode_body() if self.userstreams else None

    @classmethod
    async def load(cls, client: Client, ccid: str) -> Optional["User"]:
        entity = await client.api.read_entity(ccid)
        if entity is None:
            return None
        profile, userstreams = await asyncio.gather(
            client.api.read_character(ccid, Schemas.profile),
            client.api.read_character(ccid, Schemas.userstreams),
        )
        return cls(client, entity, profile, userstreams)

    async def ack(self) -> Dict[str, Any]:
        return await self.client.ack_user(self)

    def __repr__(self) -> str:
        return f"User(ccid={self.ccid!r}, domain={self.domain!r})"


class Stream(_Wrapped):
    def __init__(self, client: Client, core: proto.Stream) -> None:
        self.client = client
        self.core = core

    @classmethod
    async def load(cls, client: Client, id: str) -> Optional["Stream"]:
        core = await client.api.read_stream(id)
        return cls(client, core) if core else None

    async def recent(self) -> List[proto.StreamElement]:
        return await self.client.api.read_stream_recent([self.core.id])


class Association(_Wrapped):
    def __init__(self, client: Client, core: proto.Association, owner: Optional[str] = None) -> None:
        self.client = client
        self.core = core
        self.owner = owner
        self.author_user: Optional[User] = None

    @classmethod
    async def load(cls, client: Client, id: str, owner: str) -> Optional["Association"]:
        core = await client.api.read_association_with_owner(id, owner)
        if core is None:
            return None
        association = cls(client, core, owner)
        association.author_user = await client.get_user(core.author)
        return association

    async def get_author(self) -> User:
        author = await self.client.get_user(self.core.author)
        if author is None:
            raise DomainError(f"author {self.core.author} not found")
        return author

    async def get_target_message(self) -> "Message":
        if self.core.target_type != "messages":
            raise DomainError(f"target is not a message (actual: {self.core.target_type})")
        if not self.owner:
            raise DomainError("association owner is not set")
        message = await self.client.get_message(self.core.target_id, self.owner)
        if message is None:
            raise DomainError(f"target message {self.core.target_id} not found")
        return message

    async def delete(self) -> Optional[proto.Association]:
        return await self.client.api.delete_association(self.core.id, self.owner or self.core.author)


class Message(_Wrapped):
    def __init__(self, client: Client, core: proto.Message) -> None:
        self.client = client
        self.core = core
        self.author_user: Optional[User] = None
        self.posted_streams: List[Stream] = []

    @classmethod
    async def load(cls, client: Client, id: str, author: str) -> Optional["Message"]:
        core = await client.api.read_message_with_author(id, author)
        if core is None:
            return None
        message = cls(client, core)
        message.author_user = await client.get_user(author)
        message.posted_streams = await message.get_streams()
        return message

    def body(self) -> Any:
        return self.core.payload.decode_body()

    async def get_author(self) -> User:
        author = await self.client.get_user(self.core.author)
        if author is None:
            raise DomainError(f"author {self.core.author} not found")
        return author

    async def get_streams(self) -> List[Stream]:
        found = await asyncio.gather(
            *(self.client.get_stream(s) for s in self.core.streams),
            return_exceptions=True,
        )
        streams = []
        for ref, item in zip(self.core.streams, found):
            if isinstance(item, BaseException):
                if not isinstance(item, Exception):
                    raise item
                log.warning("could not load stream %s of message %s: %s", ref, self.core.id, item)
                continue
            if item is not None:
                streams.append(item)
        return streams

    async def get_reply_to(self) -> Optional["Message"]:
        if self.core.payload.schema_ != Schemas.replyMessage:
            raise DomainError("this message is not a reply")
        body: ReplyMessage = self.body()
        return await Message.load(self.client, body.replyToMessageId, body.replyToMessageAuthor)

    async def get_reroute_to(self) -> Optional["Message"]:
        if self.core.payload.schema_ != Schemas.rerouteMessage:
            raise DomainError("this message is not a reroute")
        body: RerouteMessage = self.body()
        return await Message.load(self.client, body.rerouteMessageId, body.rerouteMessageAuthor)

    async def favorite(self) -> Dict[str, Any]:
        return await self.client.favorite_message(self.core.id, self.core.author)

    async def reaction(self, shortcode: str, image_url: str) -> Dict[str, Any]:
        return await self.client.add_message_reaction(self.core.id, self.core.author, shortcode, image_url)

    async def delete_association(self, association_id: str) -> Optional[proto.Association]:
        return await self.client.api.delete_association(association_id, self.core.author)

    async def reply(self, streams: List[str], body: str, emojis: Optional[Emojis] = None) -> Dict[str, Any]:
        return await self.client.reply_message(self.core.id, self.core.author, streams, body, emojis)

    async def reroute(
        self, streams: List[str], body: Optional[str] = None, emojis: Optional[Emojis] = None
    ) -> Dict[str, Any]:
        return await self.client.reroute_message(self.core.id, self.core.author, streams, body, emojis)

    async def delete(self) -> Dict[str, Any]:
        host = await self.client.api.resolve_host(self.core.author)
        return await self.client.api.delete_message(self.core.id, host)


__all__ = ["Client", "User", "Stream", "Association", "Message"]
