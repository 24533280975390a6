from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .cache import ObjectCache
from .crypto import Signer
from .errors import DecodeError
from .fanout import FanoutQuery
from .proto import (
    Association,
    Character,
    Entity,
    Host,
    Message,
    Stream,
    StreamElement,
    api_url,
    build_signed_object,
    decode_signed_record,
    decode_stream,
    make_signed_request,
    normalize_stream_id,
    split_stream_id,
    validate,
)
from .resolver import HostResolver
from .schemas import Schemas
from .session import NowFn, SessionManager
from .transport import DEFAULT_TIMEOUT_S, Response, Transport

log = logging.getLogger("ccsdk.api")


class Api:
    """Typed loaders and signed writes for one identity on one home host.

    Reads go out unauthenticated and land in per-kind single-flight caches.
    Writes are signed, wrapped and sent through the session manager.
    """

    def __init__(
        self,
        private_key: Any,
        host: str,
        client: str = "N/A",
        *,
        transport: Optional[Transport] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        scheme: str = "https",
        now: NowFn = time.time,
    ) -> None:
        self.signer = private_key if isinstance(private_key, Signer) else Signer(private_key)
        self.ccid = self.signer.ccid
        self.host = host
        self.client = client
        self.scheme = scheme

        self.transport = transport or Transport(http, timeout_s=timeout_s)
        self.session = SessionManager(self.transport, self.signer, host, scheme=scheme, now=now)
        self.fanout = FanoutQuery(self.transport, host, scheme=scheme)

        self.entity_cache: ObjectCache[Optional[Entity]] = ObjectCache("entity")
        self.message_cache: ObjectCache[Optional[Message]] = ObjectCache("message")
        self.association_cache: ObjectCache[Optional[Association]] = ObjectCache("association")
        self.character_cache: ObjectCache[Optional[Character]] = ObjectCache("character")
        self.stream_cache: ObjectCache[Optional[Stream]] = ObjectCache("stream")

        self.resolver = HostResolver(self.read_entity, host)

    async def aclose(self) -> None:
        await self.transport.aclose()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def url(self, path: str, host: Optional[str] = None) -> str:
        return api_url(host or self.host, path, scheme=self.scheme)

    async def _get(self, url: str, **kwargs: Any) -> Optional[Any]:
        """GET and parse JSON; ``None`` for 404, TransportError for other failures."""

        res = await self.transport.fetch("GET", url, **kwargs)
        if res.status == 404:
            return None
        return res.raise_for_status().json()

    async def _signed_write(self, method: str, url: str, request: Dict[str, Any]) -> Any:
        res = await self.session.authorized_fetch(method, url, json=request)
        return res.raise_for_status().json()

    def _sign(self, type_: str, schema: str, body: Any, **fields: Any) -> Dict[str, Any]:
        return build_signed_object(self.ccid, type_, schema, body, client=self.client, **fields)

    @staticmethod
    def _content(data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise DecodeError(f"write response must be an object, got {type(data).__name__}")
        return data

    # ------------------------------------------------------------------
    # Entity / host
    # ------------------------------------------------------------------

    async def read_entity(self, ccid: str) -> Optional[Entity]:
        async def load() -> Optional[Entity]:
            data = await self._get(self.url(f"/entity/{quote(ccid, safe='')}"))
            if isinstance(data, dict) and isinstance(data.get("content"), dict):
                data = data["content"]
            if not isinstance(data, dict) or not data.get("ccid"):
                return None
            return validate(Entity, data)

        return await self.entity_cache.load(ccid, load)

    def invalidate_entity(self, ccid: str) -> None:
        self.entity_cache.invalidate(ccid)

    async def resolve_host(self, ccid: str) -> str:
        return await self.resolver.resolve(ccid)

    async def get_host_profile(self, remote: Optional[str] = None) -> Optional[Host]:
        data = await self._get(self.url("/host", remote))
        if not isinstance(data, dict) or not data.get("fqdn"):
            return None
        return validate(Host, data)

    async def get_known_hosts(self, remote: Optional[str] = None) -> List[Host]:
        data = await self._get(self.url("/host/list", remote))
        return [validate(Host, item) for item in data or []]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, schema: str, body: Any, streams: List[str]) -> Dict[str, Any]:
        signed = self._sign("Message", schema, body)
        request = make_signed_request(signed, self.signer, streams=list(streams))
        data = await self._signed_write("POST", self.url("/messages"), request)
        return self._content(data)

    async def read_message(self, id: str, host: Optional[str] = None) -> Optional[Message]:
        async def load() -> Optional[Message]:
            data = await self._get(self.url(f"/messages/{id}", host))
            if not isinstance(data, dict) or not data.get("payload"):
                return None
            return decode_signed_record(data, Message)

        return await self.message_cache.load(id, load)

    async def read_message_with_author(self, id: str, author: str) -> Optional[Message]:
        host = await self.resolve_host(author)
        return await self.read_message(id, host)

    async def delete_message(self, id: str, host: Optional[str] = None) -> Dict[str, Any]:
        data = await self._signed_write("DELETE", self.url("/messages", host), {"id": id})
        self.invalidate_message(id)
        return self._content(data)

    def invalidate_message(self, id: str) -> None:
        self.message_cache.invalidate(id)

    # ------------------------------------------------------------------
    # Associations
    # ------------------------------------------------------------------

    async def create_association(
        self,
        schema: str,
        body: Any,
        target: str,
        target_author: str,
        target_type: str,
        streams: List[str],
        variant: Optional[str] = None,
    ) -> Dict[str, Any]:
        host = await self.resolve_host(target_author)
        signed = self._sign("Association", schema, body, target=target, variant=variant)
        request = make_signed_request(
            signed,
            self.signer,
            targetType=target_type,
            target=target,
            streams=list(streams),
        )
        data = await self._signed_write("POST", self.url("/associations", host), request)
        return self._content(data)

    async def read_association(self, id: str, host: Optional[str] = None) -> Optional[Association]:
        async def load() -> Optional[Association]:
            data = await self._get(self.url(f"/associations/{id}", host))
            if not isinstance(data, dict) or not data.get("association"):
                return None
            return decode_signed_record(data["association"], Association)

        return await self.association_cache.load(id, load)

    async def read_association_with_owner(self, id: str, owner: str) -> Optional[Association]:
        host = await self.resolve_host(owner)
        return await self.read_association(id, host)

    async def delete_association(self, id: str, target_author: str) -> Optional[Association]:
        """Delete an association and drop every cache entry it influenced.

        The target is dropped as soon as the response names it, even when the
        server leaves the signed payload out. Returns the deleted association
        when the response carries its payload, otherwise ``None``.
        """

        host = await self.resolve_host(target_author)
        data = await self._signed_write("DELETE", self.url("/associations", host), {"id": id})
        self.association_cache.invalidate(id)
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, dict):
            return None

        target_id = content.get("targetID") or content.get("target")
        revealed = isinstance(target_id, str) and bool(target_id)
        if revealed:
            self.invalidate_target(target_id, content.get("targetType") or "messages")

        payload = content.get("payload")
        if not isinstance(payload, str) or not payload:
            return None
        deleted = decode_signed_record(content, Association)
        if not revealed:
            # only the signed payload names the target
            self.invalidate_target(deleted.payload.target or "", deleted.target_type)
        return deleted

    def invalidate_target(self, target_id: str, target_type: str = "messages") -> None:
        if not target_id:
            return
        if target_type == "characters":
            self.invalidate_character_id(target_id)
        else:
            self.invalidate_message(target_id)

    def invalidate_association(self, id: str) -> None:
        self.association_cache.invalidate(id)

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    @staticmethod
    def character_key(author: str, schema: str) -> str:
        return f"{author}|{schema}"

    async def upsert_character(self, schema: str, body: Any, id: Optional[str] = None) -> Dict[str, Any]:
        signed = self._sign("Character", schema, body)
        request = make_signed_request(signed, self.signer, id=id)
        data = await self._signed_write("PUT", self.url("/characters"), request)
        self.invalidate_character(self.ccid, schema)
        return self._content(data)

    async def read_character(self, author: str, schema: str) -> Optional[Character]:
        async def load() -> Optional[Character]:
            host = await self.resolve_host(author)
            data = await self._get(
                self.url("/characters", host),
                params={"author": author, "schema": schema},
            )
            characters = data.get("characters") if isinstance(data, dict) else None
            if not characters:
                return None
            return decode_signed_record(characters[0], Character)

        return await self.character_cache.load(self.character_key(author, schema), load)

    def invalidate_character(self, author: str, schema: str) -> None:
        self.character_cache.invalidate(self.character_key(author, schema))

    def invalidate_character_id(self, id: str) -> int:
        return self.character_cache.invalidate_where(lambda c: c is not None and c.id == id)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def create_stream(
        self,
        schema: str,
        body: Any,
        *,
        maintainer: Optional[List[str]] = None,
        writer: Optional[List[str]] = None,
        reader: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        signed = self._sign(
            "Stream",
            schema,
            body,
            maintainer=list(maintainer or []),
            writer=list(writer or []),
            reader=list(reader or []),
        )
        request = make_signed_request(signed, self.signer)
        data = await self._signed_write("PUT", self.url("/stream"), request)
        return self._content(data)

    async def update_stream(self, id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Re-sign a stream definition; ``partial`` carries schema/body/role lists."""

        fields = dict(partial)
        schema = fields.pop("schema", "")
        body = fields.pop("body", None)
        for reserved in ("signer", "type", "meta", "signedAt"):
            fields.pop(reserved, None)
        signed = self._sign("Stream", schema, body, **fields)
        request = make_signed_request(signed, self.signer, id=id)
        data = await self._signed_write("PUT", self.url("/stream"), request)
        self.invalidate_stream(id)
        return self._content(data)

    async def read_stream(self, id: str) -> Optional[Stream]:
        stream_id = normalize_stream_id(id, self.host)
        key, host = split_stream_id(stream_id, self.host)

        async def load() -> Optional[Stream]:
            data = await self._get(self.url("/stream", host), params={"stream": key})
            if not isinstance(data, dict) or not data.get("payload"):
                return None
            return decode_stream(data, stream_id)

        return await self.stream_cache.load(stream_id, load)

    def invalidate_stream(self, id: str) -> None:
        self.stream_cache.invalidate(normalize_stream_id(id, self.host))

    async def get_stream_list_by_schema(self, schema: str, remote: Optional[str] = None) -> List[Stream]:
        host = remote or self.host
        data = await self._get(self.url("/stream/list", host), params={"schema": schema})
        streams = []
        for item in data or []:
            stream = decode_stream(item)
            if "@" not in stream.id:
                stream.id = f"{stream.id}@{host}"
            streams.append(stream)
        return streams

    async def read_stream_recent(self, streams: List[str]) -> List[StreamElement]:
        return await self.fanout.recent(streams)

    async def read_stream_ranged(
        self,
        streams: List[str],
        until: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[StreamElement]:
        return await self.fanout.ranged(streams, until=until, since=since)

    async def get_user_home_streams(self, users: List[str]) -> List[str]:
        async def home(ccid: str) -> Optional[str]:
            entity = await self.read_entity(ccid)
            character = await self.read_character(ccid, Schemas.userstreams)
            if character is None:
                return None
            stream = character.payload.decode_body().homeStream
            if not stream:
                return None
            if entity is not None and entity.domain:
                stream = f"{stream}@{entity.domain}"
            return stream

        found = await asyncio.gather(*(home(u) for u in users))
        return [s for s in found if s]

    # ------------------------------------------------------------------
    # KV
    # ------------------------------------------------------------------

    async def read_kv(self, key: str) -> Optional[str]:
        res: Response = await self.session.authorized_fetch("GET", self.url(f"/kv/{quote(key, safe='')}"))
        if res.status == 404:
            return None
        data = res.raise_for_status().json()
        if not isinstance(data, dict) or not data.get("content"):
            return None
        return data["content"]

    async def write_kv(self, key: str, value: str) -> None:
        res = await self.session.authorized_fetch("PUT", self.url(f"/kv/{quote(key, safe='')}"), content=value)
        res.raise_for_status()

    # ------------------------------------------------------------------
    # Bulk invalidation
    # ------------------------------------------------------------------

    def invalidate_all(self) -> None:
        for cache in (
            self.entity_cache,
            self.message_cache,
            self.association_cache,
            self.character_cache,
            self.stream_cache,
        ):
            cache.clear()


__all__ = ["Api"]
