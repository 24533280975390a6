from __future__ import annotations

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import DecodeError

"""
Schema identifiers and body models
----------------------------------
Every signed object names the shape of its ``body`` with a versioned, URI-like
``schema`` string. Known schemas map to a pydantic model through an open
registry; anything else is carried as opaque JSON.
"""

_BASE = "https://raw.githubusercontent.com/totegamma/concurrent-schemas/master"


class Schemas:
    simpleNote = f"{_BASE}/messages/note/0.0.1.json"
    replyMessage = f"{_BASE}/messages/reply/0.0.1.json"
    rerouteMessage = f"{_BASE}/messages/reroute/0.0.1.json"

    like = f"{_BASE}/associations/like/0.0.1.json"
    emojiAssociation = f"{_BASE}/associations/emoji/0.0.1.json"
    replyAssociation = f"{_BASE}/associations/reply/0.0.1.json"
    rerouteAssociation = f"{_BASE}/associations/reroute/0.0.1.json"
    userAck = f"{_BASE}/associations/userack/0.0.1.json"

    profile = f"{_BASE}/characters/profile/0.0.2.json"
    userstreams = f"{_BASE}/characters/userstreams/0.0.2.json"
    domainProfile = f"{_BASE}/characters/domainprofile/0.0.1.json"

    commonstream = f"{_BASE}/streams/common/0.0.1.json"
    utilitystream = f"{_BASE}/streams/utility/0.0.1.json"


# ---------------------------------------------------------------------------
# Body models
# ---------------------------------------------------------------------------


class Body(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SimpleNote(Body):
    body: str
    emojis: Optional[Dict[str, Dict[str, str]]] = None
    profileOverride: Optional[Dict[str, Any]] = None


class ReplyMessage(Body):
    replyToMessageId: str
    replyToMessageAuthor: str
    body: str
    emojis: Optional[Dict[str, Dict[str, str]]] = None


class RerouteMessage(Body):
    rerouteMessageId: str
    rerouteMessageAuthor: str
    body: Optional[str] = None
    emojis: Optional[Dict[str, Dict[str, str]]] = None


class Like(Body):
    pass


class EmojiAssociation(Body):
    shortcode: str
    imageUrl: str


class ReplyAssociation(Body):
    messageId: str
    messageAuthor: str


class RerouteAssociation(Body):
    messageId: str
    messageAuthor: str


class UserAck(Body):
    pass


class Profile(Body):
    username: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    banner: Optional[str] = None


class Userstreams(Body):
    homeStream: Optional[str] = None
    notificationStream: Optional[str] = None
    associationStream: Optional[str] = None
    ackCollection: Optional[str] = None


class DomainProfile(Body):
    nickname: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None
    wordmark: Optional[str] = None
    themeColor: Optional[str] = None


class Commonstream(Body):
    name: str
    shortname: Optional[str] = None
    description: Optional[str] = None
    banner: Optional[str] = None


class Utilitystream(Body):
    pass


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SchemaRegistry:
    """Maps schema identifiers to body models; unknown schemas stay opaque JSON."""

    def __init__(self) -> None:
        self._models: Dict[str, Type[BaseModel]] = {}

    def register(self, schema: str, model: Type[BaseModel]) -> None:
        self._models[schema] = model

    def model_for(self, schema: str) -> Optional[Type[BaseModel]]:
        return self._models.get(schema)

    def decode(self, schema: str, body: Any) -> Any:
        model = self._models.get(schema)
        if model is None:
            return body
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise DecodeError(f"body does not match schema {schema}: {exc}") from exc

    def encode(self, body: Any) -> Any:
        if isinstance(body, BaseModel):
            return body.model_dump(by_alias=True, exclude_none=True)
        return body


registry = SchemaRegistry()
for _schema, _model in (
    (Schemas.simpleNote, SimpleNote),
    (Schemas.replyMessage, ReplyMessage),
    (Schemas.rerouteMessage, RerouteMessage),
    (Schemas.like, Like),
    (Schemas.emojiAssociation, EmojiAssociation),
    (Schemas.replyAssociation, ReplyAssociation),
    (Schemas.rerouteAssociation, RerouteAssociation),
    (Schemas.userAck, UserAck),
    (Schemas.profile, Profile),
    (Schemas.userstreams, Userstreams),
    (Schemas.domainProfile, DomainProfile),
    (Schemas.commonstream, Commonstream),
    (Schemas.utilitystream, Utilitystream),
):
    registry.register(_schema, _model)


__all__ = [
    "Schemas",
    "SchemaRegistry",
    "registry",
    "SimpleNote",
    "ReplyMessage",
    "RerouteMessage",
    "Like",
    "EmojiAssociation",
    "ReplyAssociation",
    "RerouteAssociation",
    "UserAck",
    "Profile",
    "Userstreams",
    "DomainProfile",
    "Commonstream",
    "Utilitystream",
]
