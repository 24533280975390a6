import orjson
import pytest

from ccsdk.core import crypto
from ccsdk.core.errors import DecodeError
from ccsdk.core.proto import (
    Association,
    Message,
    api_url,
    build_signed_object,
    decode_signed_record,
    decode_stream,
    make_signed_request,
    normalize_stream_id,
    split_stream_id,
)
from ccsdk.core.schemas import ReplyMessage, Schemas, SimpleNote, registry

# ---- helpers ----


def _record(signer, schema=Schemas.simpleNote, body=None, **extra):
    obj = build_signed_object(signer.ccid, "Message", schema, body or {"body": "hi"}, client="t")
    req = make_signed_request(obj, signer)
    record = {"id": "m1", "author": signer.ccid, "schema": schema, "payload": req["signedObject"], "signature": req["signature"]}
    record.update(extra)
    return record


@pytest.fixture()
def signer():
    return crypto.Signer(crypto.generate_private_key())


# ---- tests ----


def test_stream_ids_split_and_normalize():
    assert split_stream_id("abc@h1", "home") == ("abc", "h1")
    assert split_stream_id("abc", "home") == ("abc", "home")
    assert normalize_stream_id("abc", "home") == "abc@home"
    assert normalize_stream_id("abc@h2", "home") == "abc@h2"


def test_api_url():
    assert api_url("example.org", "/messages/x") == "https://example.org/api/v1/messages/x"
    assert api_url("localhost:8000", "/host", scheme="http") == "http://localhost:8000/api/v1/host"


def test_signed_object_omits_unset_fields(signer):
    obj = build_signed_object(signer.ccid, "Association", Schemas.like, {}, client="c", target="m1", variant=None)
    assert obj["target"] == "m1"
    assert "variant" not in obj
    assert obj["meta"] == {"client": "c"}
    assert obj["schema"] == Schemas.like
    assert obj["signedAt"].endswith("Z")


def test_signed_request_signature_covers_exact_text(signer):
    obj = build_signed_object(signer.ccid, "Message", Schemas.simpleNote, SimpleNote(body="x"), client="c")
    req = make_signed_request(obj, signer, streams=["s1"], id=None)
    assert set(req) == {"signedObject", "signature", "streams"}
    assert crypto.verify(signer.public_key, req["signedObject"].encode(), req["signature"])
    assert orjson.loads(req["signedObject"])["body"] == {"body": "x"}


def test_raw_and_parsed_payload_agree(signer):
    msg = decode_signed_record(_record(signer), Message)
    assert orjson.loads(msg.rawpayload) == msg.payload.as_wire()
    assert msg.payload.signer == signer.ccid
    assert msg.associations == []


def test_nested_associations_are_decoded(signer):
    obj = build_signed_object(signer.ccid, "Association", Schemas.like, {}, client="t", target="m1")
    req = make_signed_request(obj, signer)
    assoc = {
        "id": "a1",
        "author": signer.ccid,
        "schema": Schemas.like,
        "payload": req["signedObject"],
        "targetID": "m1",
        "targetType": "messages",
    }
    msg = decode_signed_record(_record(signer, associations=[assoc], ownAssociations=None), Message)
    assert isinstance(msg.associations[0], Association)
    assert msg.associations[0].target_id == "m1"
    assert msg.associations[0].payload.target == "m1"
    assert msg.own_associations == []


def test_unparseable_payload_raises_decode_error(signer):
    record = _record(signer)
    record["payload"] = "{not json"
    with pytest.raises(DecodeError):
        decode_signed_record(record, Message)
    record["payload"] = {"already": "parsed"}
    with pytest.raises(DecodeError):
        decode_signed_record(record, Message)


def test_missing_required_field_raises_decode_error(signer):
    record = _record(signer)
    del record["author"]
    with pytest.raises(DecodeError):
        decode_signed_record(record, Message)


def test_body_decodes_through_registry(signer):
    body = {"replyToMessageId": "m0", "replyToMessageAuthor": "CCx", "body": "re"}
    msg = decode_signed_record(_record(signer, Schemas.replyMessage, body), Message)
    reply = msg.payload.decode_body()
    assert isinstance(reply, ReplyMessage)
    assert reply.replyToMessageId == "m0"


def test_unknown_schema_body_stays_opaque(signer):
    msg = decode_signed_record(_record(signer, "https://example.org/custom.json", {"x": [1, 2]}), Message)
    assert msg.payload.decode_body() == {"x": [1, 2]}


def test_known_schema_with_wrong_shape_raises(signer):
    with pytest.raises(DecodeError):
        registry.decode(Schemas.simpleNote, {"nobody": True})


def test_stream_decoding_overrides_id(signer):
    obj = build_signed_object(signer.ccid, "Stream", Schemas.commonstream, {"name": "general"}, client="t")
    record = {"id": "s1", "schema": Schemas.commonstream, "payload": make_signed_request(obj, signer)["signedObject"]}
    stream = decode_stream(record, "s1@h1")
    assert stream.id == "s1@h1"
    assert stream.payload["body"]["name"] == "general"
