from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import orjson

from .errors import DecodeError, TransportError

log = logging.getLogger("ccsdk.transport")

DEFAULT_TIMEOUT_S = 10.0


@dataclass(slots=True)
class Response:
    status: int
    body: str
    url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return orjson.loads(self.body)
        except orjson.JSONDecodeError as exc:
            raise DecodeError(f"response from {self.url} is not JSON: {exc}") from exc

    def raise_for_status(self) -> "Response":
        if not self.ok:
            raise TransportError(
                f"{self.url} failed",
                status=self.status,
                body=self.body,
                url=self.url,
            )
        return self


class Transport:
    """The generic ``fetch`` primitive: one HTTP exchange, always time-bounded.

    Network failures and timeouts surface as :class:`TransportError`; HTTP
    status handling is left to the caller.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def fetch(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        content: Optional[str | bytes] = None,
        timeout_s: Optional[float] = None,
    ) -> Response:
        req_headers = dict(headers or {})
        if json is not None:
            content = orjson.dumps(json)
            req_headers.setdefault("content-type", "application/json")
        limit = self.timeout_s if timeout_s is None else timeout_s
        log.debug("%s %s", method, url)
        try:
            res = await asyncio.wait_for(
                self._client.request(method, url, headers=req_headers, params=params, content=content),
                timeout=limit,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {url} timed out after {limit}s", url=url) from exc
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {url} timed out: {exc}", url=url) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}", url=url) from exc
        return Response(status=res.status_code, body=res.text, url=url, headers=dict(res.headers))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["Response", "Transport", "DEFAULT_TIMEOUT_S"]
