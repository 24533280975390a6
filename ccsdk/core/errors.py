from __future__ import annotations

from typing import Optional


class CCError(Exception):
    """Base class for every error raised by ccsdk."""


class TransportError(CCError):
    """Non-success HTTP status, network failure or timeout.

    ``status`` is ``None`` when no response was received at all.
    """

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "", url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status}, body={self.body[:200]!r})"


class DecodeError(CCError):
    """A response carried a payload that could not be decoded into the expected shape."""


class AuthError(CCError):
    """Claim minting failed or the server rejected the bearer token."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class DomainError(CCError):
    """An application-level precondition does not hold."""


__all__ = ["CCError", "TransportError", "DecodeError", "AuthError", "DomainError"]
