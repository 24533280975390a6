from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ccsdk.utils.canonical import canonical_text

from .errors import DecodeError
from .schemas import registry

API_PATH = "/api/v1"

# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class Wire(BaseModel):
    """Base for records exchanged with servers; unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Entity(Wire):
    ccid: str
    tag: str = ""
    domain: str = Field(default="", validation_alias=AliasChoices("domain", "host"))
    cdate: str = ""
    score: float = 0
    certs: List[Any] = Field(default_factory=list)


class Host(Wire):
    fqdn: str
    ccid: str = ""
    role: str = ""
    score: float = 0
    pubkey: str = ""
    cdate: str = ""


class SignedObject(Wire):
    """The canonical payload that gets serialized and signed."""

    signer: str
    type: str
    schema_: str = Field(alias="schema")
    body: Any = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    signed_at: str = Field(default="", alias="signedAt")
    target: Optional[str] = None
    variant: Optional[str] = None
    maintainer: Optional[List[str]] = None
    writer: Optional[List[str]] = None
    reader: Optional[List[str]] = None

    def as_wire(self) -> Dict[str, Any]:
        """Dict form equal to the JSON the object was parsed from."""

        return self.model_dump(by_alias=True, exclude_unset=True)

    def decode_body(self) -> Any:
        return registry.decode(self.schema_, self.body)


class Association(Wire):
    id: str
    author: str
    schema_: str = Field(default="", alias="schema")
    payload: SignedObject
    rawpayload: str
    signature: str = ""
    target_id: str = Field(
        default="",
        validation_alias=AliasChoices("targetID", "target"),
        serialization_alias="targetID",
    )
    target_type: str = Field(default="messages", alias="targetType")
    streams: List[str] = Field(default_factory=list)
    cdate: str = ""


class Message(Wire):
    id: str
    author: str
    schema_: str = Field(default="", alias="schema")
    payload: SignedObject
    rawpayload: str
    signature: str = ""
    streams: List[str] = Field(default_factory=list)
    associations: List[Association] = Field(default_factory=list)
    own_associations: List[Association] = Field(default_factory=list, alias="ownAssociations")
    cdate: str = ""


class Character(Wire):
    id: str
    author: str
    schema_: str = Field(default="", alias="schema")
    payload: SignedObject
    rawpayload: str = ""
    signature: str = ""
    cdate: str = ""


class Stream(Wire):
    id: str
    visible: bool = True
    author: str = ""
    maintainer: List[str] = Field(default_factory=list)
    writer: List[str] = Field(default_factory=list)
    reader: List[str] = Field(default_factory=list)
    schema_: str = Field(default="", alias="schema")
    payload: Any = None
    rawpayload: str = ""
    cdate: str = ""


class StreamElement(Wire):
    """Lightweight reference emitted by stream range queries."""

    id: str
    timestamp: str
    type: str = ""
    author: str = ""
    owner: str = ""


# ---------------------------------------------------------------------------
# Addressing
# ---------------------------------------------------------------------------


def split_stream_id(ref: str, default_host: str) -> Tuple[str, str]:
    """``key@host`` -> (key, host); no suffix resolves to ``default_host``."""

    key, sep, host = ref.partition("@")
    return key, (host if sep else default_host)


def normalize_stream_id(ref: str, default_host: str) -> str:
    key, host = split_stream_id(ref, default_host)
    return f"{key}@{host}"


def api_url(host: str, path: str, *, scheme: str = "https") -> str:
    return f"{scheme}://{host}{API_PATH}{path}"


# ---------------------------------------------------------------------------
# Signed object construction
# ---------------------------------------------------------------------------

SignFn = Callable[[bytes], str]


def now_iso() -> str:
    """UTC timestamp in the millisecond ISO-8601 form used by ``signedAt``."""

    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def new_jti() -> str:
    return str(uuid.uuid4())


def build_signed_object(
    signer: str,
    type: str,
    schema: str,
    body: Any,
    *,
    client: str,
    signed_at: str | None = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Create the unsigned object dict; ``None`` valued extra fields are omitted."""

    obj: Dict[str, Any] = {
        "signer": signer,
        "type": type,
        "schema": schema,
        "body": registry.encode(body),
        "meta": {"client": client},
        "signedAt": now_iso() if signed_at is None else signed_at,
    }
    for key, value in fields.items():
        if value is not None:
            obj[key] = value
    return obj


def make_signed_request(signed_object: Dict[str, Any], sign: SignFn, **routing: Any) -> Dict[str, Any]:
    """Serialize once, sign those exact bytes and wrap them in a write envelope.

    ``signedObject`` travels as a JSON string so the server sees the same bytes
    the signature covers.
    """

    signed_text = canonical_text(signed_object)
    request: Dict[str, Any] = {
        "signedObject": signed_text,
        "signature": sign(signed_text.encode("utf-8")),
    }
    for key, value in routing.items():
        if value is not None:
            request[key] = value
    return request


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------

M = TypeVar("M", bound=BaseModel)

_NESTED = ("associations", "ownAssociations")


def parse_payload(raw: Any, *, what: str) -> Any:
    if not isinstance(raw, str):
        raise DecodeError(f"{what} payload must be a JSON string, got {type(raw).__name__}")
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise DecodeError(f"{what} payload is not valid JSON: {exc}") from exc


def validate(model: Type[M], record: Dict[str, Any]) -> M:
    try:
        return model.model_validate(record)
    except ValidationError as exc:
        raise DecodeError(f"malformed {model.__name__}: {exc}") from exc


def decode_signed_record(data: Dict[str, Any], model: Type[M]) -> M:
    """Split the stringified ``payload`` into ``rawpayload`` + parsed ``payload``.

    Embedded association lists are decoded the same way.
    """

    if not isinstance(data, dict):
        raise DecodeError(f"{model.__name__} record must be an object")
    record = dict(data)
    raw = record.get("payload")
    record["payload"] = parse_payload(raw, what=model.__name__)
    record["rawpayload"] = raw
    for key in _NESTED:
        items = record.get(key)
        if isinstance(items, list):
            record[key] = [decode_signed_record(item, Association) for item in items]
        elif key in record and items is None:
            record[key] = []
    return validate(model, record)


def decode_stream(data: Dict[str, Any], stream_id: str | None = None) -> Stream:
    if not isinstance(data, dict):
        raise DecodeError("Stream record must be an object")
    record = dict(data)
    raw = record.get("payload")
    record["payload"] = parse_payload(raw, what="Stream")
    record["rawpayload"] = raw
    if stream_id is not None:
        record["id"] = stream_id
    return validate(Stream, record)


__all__ = [
    "API_PATH",
    "Wire",
    "Entity",
    "Host",
    "SignedObject",
    "Association",
    "Message",
    "Character",
    "Stream",
    "StreamElement",
    "split_stream_id",
    "normalize_stream_id",
    "api_url",
    "now_iso",
    "new_jti",
    "build_signed_object",
    "make_signed_request",
    "parse_payload",
    "validate",
    "decode_signed_record",
    "decode_stream",
]
