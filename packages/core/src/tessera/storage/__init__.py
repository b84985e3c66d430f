"""Registry document storage."""

from tessera.storage.blobs import BlobStore, FileBlobStore, RedisBlobStore, create_blob_store
from tessera.storage.registry_store import RegistryStore, RegistryTarget

__all__ = [
    "BlobStore",
    "FileBlobStore",
    "RedisBlobStore",
    "RegistryStore",
    "RegistryTarget",
    "create_blob_store",
]
