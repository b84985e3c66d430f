"""Signed registry document: license keys mapped to signed entries.

The document has two top-level members, ``_metadata`` and ``entries``.
``hash`` and ``registrySignature`` in the metadata both cover the
canonical encoding of ``entries`` only.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tessera.errors import (
    ConfigurationError,
    RegistryIntegrityError,
    SignatureVerificationError,
    ValidationFormatError,
)

from .canonical import encode
from .payload import CredentialPayload, build_payload, is_valid_license_key
from .signing import ALGORITHM, constant_time_equal, sha256_hex, sign, verify
from .tiers import Tier

logger = logging.getLogger("tessera.licensing.registry")

REGISTRY_VERSION = "1.0"

# Fields a public (redacted) entry is allowed to carry
PUBLIC_ENTRY_FIELDS = frozenset({"tier", "is_founder", "issued", "email_hash", "signature", "key_id"})


class EntryStatus(StrEnum):
    ACTIVE = "active"
    CANCELED = "canceled"


class RegistryEntry(BaseModel):
    """One license in the registry (private variant carries customer data)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tier: Tier
    is_founder: bool = Field(default=False, alias="isFounder")
    email_hash: str | None = Field(default=None, alias="emailHash")
    issued: str
    signature: str = ""
    key_id: str = Field(default="default", alias="keyId")
    customer_id: str | None = Field(default=None, alias="customerId")
    subscription_id: str | None = Field(default=None, alias="subscriptionId")
    status: EntryStatus | None = None
    canceled_at: str | None = Field(default=None, alias="canceledAt")


class RegistryMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: str = REGISTRY_VERSION
    created: str
    last_update: str | None = Field(default=None, alias="lastUpdate")
    algorithm: str = ALGORITHM
    key_id: str = Field(default="default", alias="keyId")
    registry_signature: str = Field(default="", alias="registrySignature")
    hash: str = ""
    total_licenses: int = Field(default=0, alias="totalLicenses")


class Registry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    metadata: RegistryMetadata = Field(alias="_metadata")
    entries: dict[str, RegistryEntry] = Field(default_factory=dict)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def new_registry(key_id: str = "default", now: str | None = None) -> Registry:
    return Registry(metadata=RegistryMetadata(created=now or utc_now(), key_id=key_id))


def entry_document(entry: RegistryEntry, *, public: bool = False) -> dict[str, Any]:
    return entry.model_dump(
        mode="json",
        by_alias=True,
        exclude_none=True,
        include=set(PUBLIC_ENTRY_FIELDS) if public else None,
    )


def entries_document(registry: Registry) -> dict[str, dict[str, Any]]:
    """The exact mapping that is hashed and signed."""
    return {key: entry_document(entry) for key, entry in registry.entries.items()}


def to_document(registry: Registry) -> dict[str, Any]:
    return {
        "_metadata": registry.metadata.model_dump(mode="json", by_alias=True),
        "entries": entries_document(registry),
    }


def from_document(document: Any) -> Registry:
    if not isinstance(document, dict) or not isinstance(document.get("_metadata"), dict):
        raise RegistryIntegrityError("Invalid registry format: missing _metadata")
    if not isinstance(document.get("entries", {}), dict):
        raise RegistryIntegrityError("Invalid registry format: entries must be an object")
    try:
        return Registry.model_validate(document)
    except ValidationError as exc:
        raise RegistryIntegrityError(f"Invalid registry entry: {exc.error_count()} error(s)") from exc


def payload_for(license_key: str, entry: RegistryEntry) -> CredentialPayload:
    return build_payload(
        license_key=license_key,
        tier=entry.tier,
        is_founder=entry.is_founder,
        email_hash=entry.email_hash,
        issued=entry.issued,
    )


def sign_entry(
    license_key: str,
    entry: RegistryEntry,
    private_key: str | Ed25519PrivateKey,
    key_id: str,
) -> RegistryEntry:
    """Return *entry* with a fresh signature over its credential payload."""
    payload = payload_for(license_key, entry)
    return entry.model_copy(
        update={"signature": sign(payload.to_dict(), private_key), "key_id": key_id},
    )


def verify_entry(
    license_key: str,
    entry: RegistryEntry,
    public_key: str | Ed25519PublicKey,
) -> CredentialPayload:
    """Check one entry's own signature and return its payload."""
    payload = payload_for(license_key, entry)
    if not entry.signature or not verify(payload.to_dict(), entry.signature, public_key):
        raise SignatureVerificationError(f"Entry signature does not verify (keyId={entry.key_id})")
    return payload


def seal(
    registry: Registry,
    private_key: str | Ed25519PrivateKey,
    key_id: str,
    now: str | None = None,
) -> Registry:
    """Recompute hash, aggregate signature and counters over the entries."""
    entries = entries_document(registry)
    metadata = registry.metadata.model_copy(
        update={
            "version": REGISTRY_VERSION,
            "last_update": now or utc_now(),
            "algorithm": ALGORITHM,
            "key_id": key_id,
            "registry_signature": sign(entries, private_key),
            "hash": sha256_hex(encode(entries)),
            "total_licenses": len(entries),
        },
    )
    return registry.model_copy(update={"metadata": metadata})


def derive_public(
    registry: Registry,
    private_key: str | Ed25519PrivateKey,
    key_id: str,
    now: str | None = None,
) -> Registry:
    """Build the redacted public registry from the private one."""
    public_entries: dict[str, RegistryEntry] = {}
    for license_key, entry in registry.entries.items():
        if not is_valid_license_key(license_key):
            logger.warning("Skipping entry with invalid license key format")
            continue
        redacted = RegistryEntry(
            tier=entry.tier,
            is_founder=entry.is_founder,
            email_hash=entry.email_hash,
            issued=entry.issued,
        )
        public_entries[license_key] = sign_entry(license_key, redacted, private_key, key_id)

    public = Registry(
        metadata=RegistryMetadata(created=registry.metadata.created, key_id=key_id),
        entries=public_entries,
    )
    return seal(public, private_key, key_id, now)


def verify_document(
    document: Any,
    public_key: str | Ed25519PublicKey | None,
    *,
    allow_unsigned: bool = False,
) -> dict[str, dict[str, Any]]:
    """Check a registry document's aggregate signature and hash.

    Returns the raw ``entries`` mapping on success. Raises
    ``RegistryIntegrityError`` for anything that does not verify and
    ``ConfigurationError`` when no public key is available.
    """
    if not isinstance(document, dict):
        raise RegistryIntegrityError("Invalid registry format: not an object")
    metadata = document.get("_metadata")
    entries = document.get("entries", {})
    if not isinstance(metadata, dict) or not isinstance(entries, dict):
        raise RegistryIntegrityError("Invalid registry format: missing _metadata or entries")

    signature = metadata.get("registrySignature")
    if not signature:
        if allow_unsigned:
            logger.warning("DEV MODE: registry signature missing (bypassed)")
            return entries
        raise RegistryIntegrityError("Registry is missing its signature")

    if public_key is None:
        if allow_unsigned:
            logger.warning("DEV MODE: public key not configured (bypassed)")
            return entries
        raise ConfigurationError("License public key is not configured")

    algorithm = metadata.get("algorithm", ALGORITHM)
    if algorithm != ALGORITHM:
        raise RegistryIntegrityError(f"Unsupported registry algorithm: {algorithm}")

    try:
        valid = verify(entries, signature, public_key)
    except ValidationFormatError as exc:
        raise RegistryIntegrityError(f"Registry signature is malformed: {exc.message}") from exc
    if not valid:
        raise RegistryIntegrityError("Registry signature verification failed")

    expected_hash = metadata.get("hash")
    if not expected_hash:
        raise RegistryIntegrityError("Registry is missing its hash")
    if not constant_time_equal(sha256_hex(encode(entries)), expected_hash):
        raise RegistryIntegrityError("Registry hash mismatch")
    return entries
