import asyncio
import base64
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Set

import httpx
import jwt
import orjson
import pytest

from ccsdk.core import crypto
from ccsdk.core.api import Api
from ccsdk.core.proto import API_PATH, build_signed_object, make_signed_request

ALPHA = "alpha.test"
BETA = "beta.test"

TOKEN_SECRET = "fake-federation-token-signing-secret"


# ---- helpers ----


def _json(status: int, data: Any) -> httpx.Response:
    return httpx.Response(status, content=orjson.dumps(data), headers={"content-type": "application/json"})


def _claim_payload(token: str) -> Dict[str, Any]:
    segment = token.split(".")[1]
    return orjson.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class FakeHost:
    """Storage of one federated host."""

    def __init__(self, fqdn: str) -> None:
        self.fqdn = fqdn
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.associations: Dict[str, Dict[str, Any]] = {}
        self.characters: Dict[str, Dict[str, Any]] = {}
        self.streams: Dict[str, Dict[str, Any]] = {}
        self.elements: Dict[str, List[Dict[str, Any]]] = {}
        self.kv: Dict[str, str] = {}


class FakeNetwork:
    """In-memory federation of hosts answering the ``/api/v1`` routes.

    Every request is counted in ``calls`` keyed by ``(method, host, path)``.
    ``gate`` (when set) holds every GET until the event fires. Hosts in
    ``down`` fail at the connection level.
    """

    def __init__(self) -> None:
        self.hosts: Dict[str, FakeHost] = {}
        self.calls: Counter = Counter()
        self.requests: List[httpx.Request] = []
        self.claims: List[Dict[str, Any]] = []
        # tokens are accepted federation-wide, whichever host issued them
        self.tokens: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.held = 0
        self.down: Set[str] = set()
        self.reject_claims = False
        # deletes answer with the edge ids only, no signed payload
        self.bare_deletes = False
        self.token_ttl = 3600
        self.seq = 0

    # ---- seeding ----

    def host(self, fqdn: str) -> FakeHost:
        if fqdn not in self.hosts:
            self.hosts[fqdn] = FakeHost(fqdn)
        return self.hosts[fqdn]

    def add_entity(self, ccid: str, domain: str, *, on: Optional[List[str]] = None) -> Dict[str, Any]:
        entity = {"ccid": ccid, "tag": "", "domain": domain, "cdate": "2024-01-01T00:00:00Z", "score": 0}
        for fqdn in on or [domain]:
            self.host(fqdn).entities[ccid] = entity
        return entity

    def add_elements(self, fqdn: str, key: str, *elements: Dict[str, Any]) -> None:
        self.host(fqdn).elements.setdefault(key, []).extend(elements)

    def count(self, method: str, path: str, host: Optional[str] = None) -> int:
        return sum(
            n
            for (m, h, p), n in self.calls.items()
            if m == method and p == path and (host is None or h == host)
        )

    def count_prefix(self, method: str, prefix: str) -> int:
        return sum(n for (m, _, p), n in self.calls.items() if m == method and p.startswith(prefix))

    def _next_id(self, prefix: str) -> str:
        self.seq += 1
        return f"{prefix}{self.seq:04d}{uuid.uuid4().hex[:8]}"

    def _timestamp(self) -> str:
        self.seq += 1
        return f"{1700000000 + self.seq}-{self.seq:03d}"

    # ---- dispatch ----

    async def handle(self, request: httpx.Request) -> httpx.Response:
        fqdn = request.url.host
        path = request.url.path
        assert path.startswith(API_PATH), path
        path = path[len(API_PATH):]
        self.calls[(request.method, fqdn, path)] += 1
        self.requests.append(request)

        if fqdn in self.down:
            raise httpx.ConnectError(f"{fqdn} is down", request=request)
        if self.gate is not None and request.method == "GET":
            self.held += 1
            try:
                await self.gate.wait()
            finally:
                self.held -= 1

        host = self.host(fqdn)
        params = request.url.params
        body = None
        if request.content and request.headers.get("content-type") == "application/json":
            body = orjson.loads(request.content)

        if path == "/auth/claim":
            return self._claim(host, request)
        if path.startswith("/kv/"):
            return self._kv(host, request, path[len("/kv/"):])
        if request.method in ("POST", "PUT", "DELETE"):
            if not self._authorized(host, request):
                return _json(401, {"status": "error", "message": "invalid token"})

        if path.startswith("/entity/"):
            entity = host.entities.get(path[len("/entity/"):])
            return _json(200, {"status": "ok", "content": entity}) if entity else _json(404, {"status": "error"})
        if path == "/host":
            return _json(200, {"fqdn": fqdn, "ccid": "CChost", "role": "default", "pubkey": ""})
        if path == "/host/list":
            return _json(200, [{"fqdn": name, "role": "default"} for name in sorted(self.hosts)])
        if path == "/messages":
            return self._post_message(host, body) if request.method == "POST" else self._delete(host.messages, body)
        if path.startswith("/messages/"):
            return self._get_message(host, path[len("/messages/"):])
        if path == "/associations":
            return self._post_association(host, body) if request.method == "POST" else self._delete(host.associations, body)
        if path.startswith("/associations/"):
            record = host.associations.get(path[len("/associations/"):])
            return _json(200, {"status": "ok", "association": record}) if record else _json(404, {"status": "error"})
        if path == "/characters":
            if request.method == "PUT":
                return self._put_character(host, body)
            found = [
                c
                for c in host.characters.values()
                if c["author"] == params.get("author") and c["schema"] == params.get("schema")
            ]
            return _json(200, {"status": "ok", "characters": found})
        if path == "/stream":
            if request.method == "PUT":
                return self._put_stream(host, body)
            record = host.streams.get(params.get("stream", ""))
            return _json(200, record) if record else _json(404, {"status": "error"})
        if path == "/stream/list":
            return _json(200, [s for s in host.streams.values() if s["schema"] == params.get("schema")])
        if path in ("/stream/recent", "/stream/range"):
            return self._elements(host, params)
        return _json(404, {"status": "error", "message": f"no route {path}"})

    # ---- auth ----

    def _claim(self, host: FakeHost, request: httpx.Request) -> httpx.Response:
        claim = request.headers.get("authorization", "")
        if self.reject_claims or not claim:
            return _json(401, {"status": "error"})
        payload = _claim_payload(claim)
        self.claims.append(payload)
        token = jwt.encode(
            {"iss": host.fqdn, "sub": payload["iss"], "exp": int(float(payload["iat"])) + self.token_ttl},
            TOKEN_SECRET,
            algorithm="HS256",
        )
        self.tokens.add(token)
        return _json(200, {"jwt": token})

    def _authorized(self, host: FakeHost, request: httpx.Request) -> bool:
        header = request.headers.get("authorization", "")
        return header.startswith("Bearer ") and header[len("Bearer "):] in self.tokens

    def _kv(self, host: FakeHost, request: httpx.Request, key: str) -> httpx.Response:
        if not self._authorized(host, request):
            return _json(401, {"status": "error"})
        if request.method == "PUT":
            host.kv[key] = request.content.decode("utf-8")
            return _json(200, {"status": "ok"})
        if key not in host.kv:
            return _json(404, {"status": "error"})
        return _json(200, {"status": "ok", "content": host.kv[key]})

    # ---- writes ----

    def _signed(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return orjson.loads(body["signedObject"])

    def _post_message(self, host: FakeHost, body: Dict[str, Any]) -> httpx.Response:
        obj = self._signed(body)
        record = {
            "id": self._next_id("m"),
            "author": obj["signer"],
            "schema": obj["schema"],
            "payload": body["signedObject"],
            "signature": body["signature"],
            "streams": body.get("streams", []),
            "cdate": obj["signedAt"],
        }
        host.messages[record["id"]] = record
        self._emit(host, record, "message", body.get("streams", []))
        return _json(200, {"status": "ok", "content": record})

    def _post_association(self, host: FakeHost, body: Dict[str, Any]) -> httpx.Response:
        obj = self._signed(body)
        record = {
            "id": self._next_id("a"),
            "author": obj["signer"],
            "schema": obj["schema"],
            "payload": body["signedObject"],
            "signature": body["signature"],
            "targetID": body["target"],
            "targetType": body["targetType"],
            "streams": body.get("streams", []),
            "cdate": obj["signedAt"],
        }
        host.associations[record["id"]] = record
        self._emit(host, record, "association", body.get("streams", []))
        return _json(200, {"status": "ok", "content": record})

    def _put_character(self, host: FakeHost, body: Dict[str, Any]) -> httpx.Response:
        obj = self._signed(body)
        cid = body.get("id") or self._next_id("c")
        record = {
            "id": cid,
            "author": obj["signer"],
            "schema": obj["schema"],
            "payload": body["signedObject"],
            "signature": body["signature"],
            "cdate": obj["signedAt"],
        }
        host.characters[cid] = record
        return _json(200, {"status": "ok", "content": record})

    def _put_stream(self, host: FakeHost, body: Dict[str, Any]) -> httpx.Response:
        obj = self._signed(body)
        key = body.get("id") or self._next_id("s")
        record = {
            "id": key,
            "visible": True,
            "author": obj["signer"],
            "maintainer": obj.get("maintainer", []),
            "writer": obj.get("writer", []),
            "reader": obj.get("reader", []),
            "schema": obj["schema"],
            "payload": body["signedObject"],
            "cdate": obj["signedAt"],
        }
        host.streams[key] = record
        return _json(200, {"status": "ok", "content": record})

    def _delete(self, table: Dict[str, Dict[str, Any]], body: Dict[str, Any]) -> httpx.Response:
        record = table.pop(body["id"], None)
        if record is None:
            return _json(404, {"status": "error"})
        if self.bare_deletes:
            record = {k: record[k] for k in ("id", "targetID", "targetType") if k in record}
        return _json(200, {"status": "ok", "content": record})

    def _emit(self, host: FakeHost, record: Dict[str, Any], kind: str, streams: List[str]) -> None:
        for ref in streams:
            key, _, fqdn = ref.partition("@")
            self.add_elements(
                fqdn or host.fqdn,
                key,
                {"id": record["id"], "timestamp": self._timestamp(), "type": kind, "author": record["author"]},
            )

    # ---- reads ----

    def _get_message(self, host: FakeHost, mid: str) -> httpx.Response:
        record = host.messages.get(mid)
        if record is None:
            return _json(404, {"status": "error"})
        associations = [a for a in host.associations.values() if a["targetID"] == mid]
        return _json(200, {**record, "associations": associations, "ownAssociations": []})

    def _elements(self, host: FakeHost, params: httpx.QueryParams) -> httpx.Response:
        keys = [k for k in params.get("streams", "").split(",") if k]
        found = [e for k in keys for e in host.elements.get(k, [])]
        return _json(200, found)


# ---- fixtures ----


@pytest.fixture()
def network():
    return FakeNetwork()


@pytest.fixture()
def http(network):
    return httpx.AsyncClient(transport=httpx.MockTransport(network.handle))


@pytest.fixture()
def alice_key():
    return crypto.generate_private_key()


@pytest.fixture()
def bob_key():
    return crypto.generate_private_key()


@pytest.fixture()
def alice(network, http, alice_key):
    api = Api(alice_key, ALPHA, "test-client", http=http)
    network.add_entity(api.ccid, ALPHA, on=[ALPHA, BETA])
    return api


@pytest.fixture()
def bob(network, http, bob_key):
    api = Api(bob_key, BETA, "test-client", http=http)
    network.add_entity(api.ccid, BETA, on=[ALPHA, BETA])
    return api


@pytest.fixture()
def seed_message(network):
    """Store a signed simple note directly on a host, bypassing the client."""

    def _seed(fqdn: str, key, body: Dict[str, Any], schema: str, streams: Optional[List[str]] = None) -> Dict[str, Any]:
        signer = crypto.Signer(key)
        obj = build_signed_object(signer.ccid, "Message", schema, body, client="seed")
        request = make_signed_request(obj, signer, streams=streams or [])
        response = network._post_message(network.host(fqdn), request)
        return orjson.loads(response.content)["content"]

    return _seed

