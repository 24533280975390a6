from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import jwt
import orjson
from jwt.algorithms import Algorithm

from . import crypto
from .crypto import Signer
from .errors import AuthError, DecodeError, TransportError
from .proto import api_url, new_jti
from .transport import Response, Transport

log = logging.getLogger("ccsdk.session")

NowFn = Callable[[], float]

CLAIM_WINDOW_S = 5 * 60
CLAIM_ALGORITHM = "ECRECOVER"


class EcRecoverAlgorithm(Algorithm):
    """JWS algorithm signing the input with :func:`crypto.sign`.

    Signing takes a :class:`Signer`; verification takes anything
    :func:`crypto.verify` accepts as a public key.
    """

    def prepare_key(self, key: Any) -> Any:
        return key

    def sign(self, msg: bytes, key: Signer) -> bytes:
        return bytes.fromhex(key(msg))

    def verify(self, msg: bytes, key: Any, sig: bytes) -> bool:
        return crypto.verify(key, msg, sig.hex())

    @staticmethod
    def to_jwk(key_obj: Any, as_dict: bool = False) -> Any:
        raise NotImplementedError("ECRECOVER keys have no JWK form")

    @staticmethod
    def from_jwk(jwk: Any) -> Any:
        raise NotImplementedError("ECRECOVER keys have no JWK form")


CLAIM_JWS = jwt.PyJWS(algorithms=[])
CLAIM_JWS.register_algorithm(CLAIM_ALGORITHM, EcRecoverAlgorithm())


class SessionState(str, Enum):
    NO_TOKEN = "no_token"
    MINTING = "minting"
    VALID = "valid"
    EXPIRED = "expired"


class SessionManager:
    """Holds the bearer token for one (identity, host) pair and mints it on demand.

    Minting is serialized behind a lock with the state re-checked after
    acquiring it, so a burst of callers that all find the token missing or
    expired produces a single claim exchange.
    """

    def __init__(
        self,
        transport: Transport,
        signer: Signer,
        host: str,
        *,
        scheme: str = "https",
        now: NowFn = time.time,
    ) -> None:
        self.transport = transport
        self.signer = signer
        self.host = host
        self.scheme = scheme
        self.now = now

        self._token: Optional[str] = None
        self._expiry: Optional[float] = None
        self._rejected = False
        self._minting = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._minting:
            return SessionState.MINTING
        if self._token is None:
            return SessionState.NO_TOKEN
        if self._rejected or (self._expiry is not None and self._expiry <= self.now()):
            return SessionState.EXPIRED
        return SessionState.VALID

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token
        self._expiry = self._read_expiry(token)
        self._rejected = False

    def _read_expiry(self, token: str) -> Optional[float]:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            log.debug("bearer token is not a JWT; treating it as valid until rejected")
            return None
        exp = claims.get("exp")
        if exp is None:
            return None
        try:
            return float(exp)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def construct_claim(self, **extra: str) -> str:
        """Signed request claim presented to ``/auth/claim``."""

        now = int(self.now())
        payload: Dict[str, Any] = {
            "jti": new_jti(),
            "iss": self.signer.ccid,
            "iat": str(now),
            "aud": self.host,
            "nbf": str(now - CLAIM_WINDOW_S),
            "exp": str(now + CLAIM_WINDOW_S),
        }
        payload.update(extra)
        return CLAIM_JWS.encode(orjson.dumps(payload), self.signer, algorithm=CLAIM_ALGORITHM)

    async def _mint(self) -> str:
        url = api_url(self.host, "/auth/claim", scheme=self.scheme)
        try:
            res = await self.transport.fetch("GET", url, headers={"authorization": self.construct_claim()})
        except TransportError as exc:
            raise AuthError(f"claim exchange with {self.host} failed: {exc}") from exc
        if not res.ok:
            raise AuthError(f"claim rejected by {self.host}", status=res.status, body=res.body)
        try:
            data = res.json()
        except DecodeError as exc:
            raise AuthError(f"claim response from {self.host} is not JSON", status=res.status, body=res.body) from exc
        token = data.get("jwt") if isinstance(data, dict) else None
        if not token:
            raise AuthError(f"claim response from {self.host} carries no token", status=res.status, body=res.body)
        return token

    async def get_token(self) -> str:
        if self.state is SessionState.VALID:
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if self.state is SessionState.VALID:
                return self._token  # type: ignore[return-value]
            self._minting = True
            try:
                token = await self._mint()
            except AuthError:
                self._token = None
                self._expiry = None
                raise
            finally:
                self._minting = False
            self.set_token(token)
            log.info("minted session token for %s on %s", self.signer.ccid, self.host)
            return token

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def authorized_fetch(self, method: str, url: str, **kwargs: Any) -> Response:
        token = await self.get_token()
        headers = dict(kwargs.pop("headers", None) or {})
        headers["authorization"] = f"Bearer {token}"
        res = await self.transport.fetch(method, url, headers=headers, **kwargs)
        if res.status == 401:
            if self._token == token:
                self._rejected = True
            raise AuthError(f"{method} {url} rejected the session token", status=res.status, body=res.body)
        return res


__all__ = ["SessionManager", "SessionState", "EcRecoverAlgorithm", "CLAIM_ALGORITHM", "CLAIM_JWS", "CLAIM_WINDOW_S"]
