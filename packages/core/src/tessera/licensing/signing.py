"""Ed25519 signing and verification over canonically-encoded payloads."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from tessera.errors import KeyFormatError, MalformedSignatureError

from .canonical import encode

ALGORITHM = "ed25519"
SIGNATURE_SIZE = 64
_RAW_KEY_SIZE = 32


def generate_keypair() -> tuple[str, str]:
    """Create a new Ed25519 keypair and return ``(private_pem, public_pem)``."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


def _decode_raw(material: str) -> bytes:
    """Decode raw key bytes from hex, base64 or base64url."""
    value = material.strip()
    try:
        return bytes.fromhex(value)
    except ValueError:
        pass
    padded = value + "=" * (-len(value) % 4)
    try:
        if "-" in value or "_" in value:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyFormatError("Key material is neither PEM, hex nor base64") from exc


def load_private_key(material: str | Ed25519PrivateKey) -> Ed25519PrivateKey:
    """Load an Ed25519 private key from PEM, base64, base64url or hex."""
    if isinstance(material, Ed25519PrivateKey):
        return material
    value = material.strip()
    if not value:
        raise KeyFormatError("Empty signing private key")

    if "BEGIN" in value:
        try:
            key = serialization.load_pem_private_key(value.encode("utf-8"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyFormatError(f"Invalid PEM private key: {exc}") from exc
        if not isinstance(key, Ed25519PrivateKey):
            raise KeyFormatError("PEM key is not an Ed25519 private key")
        return key

    raw = _decode_raw(value)
    if len(raw) != _RAW_KEY_SIZE:
        raise KeyFormatError("Ed25519 private key must be 32 bytes")
    return Ed25519PrivateKey.from_private_bytes(raw)


def load_public_key(material: str | Ed25519PublicKey) -> Ed25519PublicKey:
    """Load an Ed25519 public key from PEM, base64, base64url or hex."""
    if isinstance(material, Ed25519PublicKey):
        return material
    value = material.strip()
    if not value:
        raise KeyFormatError("Empty verification public key")

    if "BEGIN" in value:
        try:
            key = serialization.load_pem_public_key(value.encode("utf-8"))
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyFormatError(f"Invalid PEM public key: {exc}") from exc
        if not isinstance(key, Ed25519PublicKey):
            raise KeyFormatError("PEM key is not an Ed25519 public key")
        return key

    raw = _decode_raw(value)
    if len(raw) != _RAW_KEY_SIZE:
        raise KeyFormatError("Ed25519 public key must be 32 bytes")
    return Ed25519PublicKey.from_public_bytes(raw)


def public_key_pem(private_key: str | Ed25519PrivateKey) -> str:
    """Return the PEM public key matching *private_key*."""
    key = load_private_key(private_key)
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def sign(payload: Any, private_key: str | Ed25519PrivateKey) -> str:
    """Sign the canonical encoding of *payload*; returns a base64 signature."""
    key = load_private_key(private_key)
    return base64.b64encode(key.sign(encode(payload))).decode("ascii")


def decode_signature(signature: str) -> bytes:
    """Decode a base64 signature, rejecting anything that is not 64 bytes."""
    if not isinstance(signature, str) or not signature:
        raise MalformedSignatureError("Signature is missing or not a string")
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedSignatureError("Signature is not valid base64") from exc
    if len(raw) != SIGNATURE_SIZE:
        raise MalformedSignatureError(
            f"Signature must be {SIGNATURE_SIZE} bytes, got {len(raw)}"
        )
    return raw


def verify(payload: Any, signature: str, public_key: str | Ed25519PublicKey) -> bool:
    """Verify *signature* over the canonical encoding of *payload*.

    Returns False for a well-formed signature that does not match. Raises
    ``MalformedSignatureError`` / ``KeyFormatError`` for structurally bad
    input, so callers can tell "forged" from "misconfigured".
    """
    key = load_public_key(public_key)
    raw = decode_signature(signature)
    try:
        key.verify(raw, encode(payload))
    except InvalidSignature:
        return False
    return True


def constant_time_equal(a: str | bytes, b: str | bytes) -> bool:
    """Compare two strings or byte strings without leaking length or content.

    Both inputs are copied into zero-padded buffers of the same size and
    compared in full; the length check is evaluated separately and the
    two results are combined without short-circuiting.
    """
    if not isinstance(a, str | bytes) or not isinstance(b, str | bytes):
        return False
    left = a.encode("utf-8") if isinstance(a, str) else a
    right = b.encode("utf-8") if isinstance(b, str) else b

    size = max(len(left), len(right), 1)
    buf_a = left.ljust(size, b"\0")
    buf_b = right.ljust(size, b"\0")

    lengths_match = len(left) == len(right)
    contents_match = hmac.compare_digest(buf_a, buf_b)
    return bool(lengths_match & contents_match)


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()
