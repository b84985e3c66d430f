"""Shared fixtures: keypairs, settings reset and a file-backed registry store."""

from __future__ import annotations

import pytest

from tessera.config import reset_settings
from tessera.licensing.signing import generate_keypair
from tessera.storage.blobs import FileBlobStore
from tessera.storage.registry_store import RegistryStore


@pytest.fixture(autouse=True)
def _reset_settings(monkeypatch):
    for name in ("TESSERA_ENVIRONMENT", "TESSERA_DEVELOPER_MODE", "TESSERA_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(scope="session")
def keypair() -> tuple[str, str]:
    return generate_keypair()


@pytest.fixture(scope="session")
def other_keypair() -> tuple[str, str]:
    return generate_keypair()


@pytest.fixture
def private_pem(keypair) -> str:
    return keypair[0]


@pytest.fixture
def public_pem(keypair) -> str:
    return keypair[1]


@pytest.fixture
def blobs(tmp_path) -> FileBlobStore:
    return FileBlobStore(tmp_path / "data")


@pytest.fixture
def store(blobs, private_pem, public_pem) -> RegistryStore:
    return RegistryStore(blobs, private_key=private_pem, public_key=public_pem, key_id="test-key")
