"""Persist and retrieve the private and public registry documents."""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from tessera.errors import ConfigurationError, RegistryIntegrityError, StorageError
from tessera.licensing.registry import (
    Registry,
    RegistryEntry,
    derive_public,
    from_document,
    new_registry,
    seal,
    sign_entry,
    to_document,
    verify_document,
    verify_entry,
)
from tessera.licensing.signing import load_private_key, load_public_key

from .blobs import BlobStore

logger = logging.getLogger("tessera.storage.registry")


class RegistryTarget(StrEnum):
    PRIVATE = "private"
    PUBLIC = "public"


def dump_document(document: dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


class RegistryStore:
    """Signed registry persistence on top of a ``BlobStore``.

    Every document read back is verified (aggregate signature and hash)
    before it is returned; every document written is sealed immediately
    before it is persisted.
    """

    def __init__(
        self,
        blobs: BlobStore,
        private_key: str | Ed25519PrivateKey | None,
        public_key: str | Ed25519PublicKey | None = None,
        key_id: str = "default",
        private_path: str = "licenses/registry.private.json",
        public_path: str = "licenses/registry.public.json",
    ) -> None:
        self._blobs = blobs
        self._private_key = load_private_key(private_key) if private_key else None
        if public_key is not None:
            self._public_key: Ed25519PublicKey | None = load_public_key(public_key)
        elif self._private_key is not None:
            self._public_key = self._private_key.public_key()
        else:
            self._public_key = None
        self._key_id = key_id
        self._paths = {
            RegistryTarget.PRIVATE: private_path,
            RegistryTarget.PUBLIC: public_path,
        }

    @property
    def key_id(self) -> str:
        return self._key_id

    def _signing_key(self) -> Ed25519PrivateKey:
        if self._private_key is None:
            raise ConfigurationError("Registry private key is not configured")
        return self._private_key

    async def exists(self, target: RegistryTarget = RegistryTarget.PRIVATE) -> bool:
        return await self._blobs.exists(self._paths[target])

    async def load_document(self, target: RegistryTarget) -> dict[str, Any] | None:
        """Return the verified raw document, or None if it does not exist yet."""
        path = self._paths[target]
        raw = await self._blobs.get(path)
        if raw is None:
            return None
        try:
            document = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RegistryIntegrityError(f"Registry {target} is not valid JSON: {exc}") from exc
        verify_document(document, self._public_key)
        return document

    async def load(self, target: RegistryTarget = RegistryTarget.PRIVATE) -> Registry | None:
        document = await self.load_document(target)
        if document is None:
            return None
        return from_document(document)

    async def load_or_create(self) -> Registry:
        registry = await self.load(RegistryTarget.PRIVATE)
        if registry is None:
            logger.info("No private registry yet, starting a new one")
            return new_registry(self._key_id)
        return registry

    def derive_public(self, registry: Registry) -> Registry:
        return derive_public(registry, self._signing_key(), self._key_id)

    def sign_entry(self, license_key: str, entry: RegistryEntry) -> RegistryEntry:
        """Sign *entry* and confirm the configured public key accepts it.

        A private/public key mismatch raises ``SignatureVerificationError``
        here rather than shipping entries every client would reject.
        """
        signed = sign_entry(license_key, entry, self._signing_key(), self._key_id)
        if self._public_key is not None:
            verify_entry(license_key, signed, self._public_key)
        return signed

    async def save(self, registry: Registry) -> Registry:
        """Seal and persist the private registry, then its public redaction.

        Raises ``StorageError`` if either write fails.
        """
        key = self._signing_key()
        sealed = seal(registry, key, self._key_id)
        await self._blobs.put(self._paths[RegistryTarget.PRIVATE], dump_document(to_document(sealed)))
        public = derive_public(sealed, key, self._key_id)
        await self._blobs.put(self._paths[RegistryTarget.PUBLIC], dump_document(to_document(public)))
        logger.info("Registry saved (%d licenses)", sealed.metadata.total_licenses)
        return sealed

    async def load_public_or_derive(self) -> dict[str, Any]:
        """Document to serve to clients.

        Falls back to deriving from the private registry when no public
        blob exists yet, and caches the result best-effort.
        """
        document = await self.load_document(RegistryTarget.PUBLIC)
        if document is not None:
            return document

        public = self.derive_public(await self.load_or_create())
        document = to_document(public)
        try:
            await self._blobs.put(self._paths[RegistryTarget.PUBLIC], dump_document(document))
        except StorageError as exc:
            logger.warning("Failed to cache public registry: %s", exc.message)
        return document
