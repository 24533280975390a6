from __future__ import annotations

from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak

CURVE = ec.SECP256K1()
CCID_PREFIX = "CC"
SIGNATURE_LEN = 65

_SCALAR_LEN = 32

PrivateKeyLike = Union[str, ec.EllipticCurvePrivateKey, keys.PrivateKey]
PublicKeyLike = Union[str, bytes, ec.EllipticCurvePublicKey]


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(CURVE)


def load_private_key(key: PrivateKeyLike) -> ec.EllipticCurvePrivateKey:
    """Accept a hex encoded secp256k1 scalar (optionally 0x-prefixed) or a key object."""

    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key
    value = key.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    try:
        scalar = int(value, 16)
    except ValueError as exc:
        raise ValueError("private key must be hex encoded") from exc
    return ec.derive_private_key(scalar, CURVE)


def load_public_key(key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Accept an uncompressed/compressed SEC1 point (hex or raw bytes) or a key object."""

    if isinstance(key, ec.EllipticCurvePublicKey):
        return key
    raw = bytes.fromhex(key) if isinstance(key, str) else key
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)


def private_key_hex(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_numbers().private_value.to_bytes(_SCALAR_LEN, "big").hex()


def public_key_bytes(key: PublicKeyLike) -> bytes:
    pub = load_public_key(key)
    return pub.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


def public_key_hex(key: PublicKeyLike) -> str:
    return public_key_bytes(key).hex()


def _eth_private_key(key: PrivateKeyLike) -> keys.PrivateKey:
    if isinstance(key, keys.PrivateKey):
        return key
    scalar = load_private_key(key).private_numbers().private_value
    return keys.PrivateKey(scalar.to_bytes(_SCALAR_LEN, "big"))


def _eth_public_key(key: PublicKeyLike) -> keys.PublicKey:
    return keys.PublicKey(public_key_bytes(key)[1:])


def compute_ccid(public_key: PublicKeyLike) -> str:
    """Derive the content-owner identifier from a public key.

    The identifier is the Ethereum-style address of the key (last 20 bytes of
    keccak-256 over the uncompressed point without its 0x04 prefix) in its
    EIP-55 checksummed form, with ``0x`` replaced by ``CC``.
    """

    address = _eth_public_key(public_key).to_checksum_address()
    return CCID_PREFIX + address[2:]


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def sign(private_key: PrivateKeyLike, message: bytes) -> str:
    """Recoverable secp256k1 signature over ``keccak256(message)``.

    ``message`` must be the exact bytes transmitted as the signed object; no
    re-serialization happens here. Returns hex of the 65 byte ``r || s || v``
    with ``v`` the recovery id (0 or 1).
    """

    signature = _eth_private_key(private_key).sign_msg_hash(keccak(message))
    return (
        signature.r.to_bytes(_SCALAR_LEN, "big")
        + signature.s.to_bytes(_SCALAR_LEN, "big")
        + bytes([signature.v])
    ).hex()


def verify(public_key: PublicKeyLike, message: bytes, signature: str) -> bool:
    try:
        raw = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False
    if len(raw) != SIGNATURE_LEN:
        return False
    try:
        parsed = keys.Signature(signature_bytes=raw)
        return _eth_public_key(public_key).verify_msg_hash(keccak(message), parsed)
    except (BadSignature, ValidationError):
        return False


class Signer:
    """Binds a private key to the signing primitive and exposes its identity."""

    def __init__(self, private_key: PrivateKeyLike) -> None:
        self.private_key = load_private_key(private_key)
        self.public_key = self.private_key.public_key()
        self.ccid = compute_ccid(self.public_key)
        self._eth_key = _eth_private_key(self.private_key)

    def __call__(self, message: bytes) -> str:
        return sign(self._eth_key, message)

    def verify(self, message: bytes, signature: str) -> bool:
        return verify(self.public_key, message, signature)


__all__ = [
    "CURVE",
    "SIGNATURE_LEN",
    "Signer",
    "compute_ccid",
    "generate_private_key",
    "load_private_key",
    "load_public_key",
    "private_key_hex",
    "public_key_bytes",
    "public_key_hex",
    "sign",
    "verify",
]
