"""Blob storage protocol and backends for registry documents.

``get`` returns None only when the blob does not exist. Any other
failure raises ``StorageError`` so callers never mistake a broken
backend for an empty registry.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from redis.exceptions import RedisError

from tessera.errors import StorageError

logger = logging.getLogger("tessera.storage")


@runtime_checkable
class BlobStore(Protocol):
    """Whole-document get/put keyed by a relative path."""

    async def get(self, path: str) -> bytes | None: ...
    async def put(self, path: str, data: bytes) -> None: ...
    async def exists(self, path: str) -> bool: ...


def atomic_write(target: Path, data: bytes, mode: int = 0o644) -> None:
    """Write *data* to *target* via a temp file and ``os.replace``."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class FileBlobStore:
    """Blobs as files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        root = self._root.resolve()
        if root != target and root not in target.parents:
            raise StorageError(f"Blob path escapes storage root: {path}")
        return target

    async def get(self, path: str) -> bytes | None:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read blob {path}: {exc}") from exc

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(atomic_write, target, data)
        except OSError as exc:
            raise StorageError(f"Failed to write blob {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.is_file)
        except OSError as exc:
            raise StorageError(f"Failed to stat blob {path}: {exc}") from exc


class RedisBlobStore:
    """Blobs as Redis string values (``redis.asyncio`` client)."""

    def __init__(self, redis: Any, prefix: str = "tessera:blob:") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, path: str) -> str:
        return f"{self._prefix}{path}"

    async def get(self, path: str) -> bytes | None:
        try:
            raw = await self._redis.get(self._key(path))
        except RedisError as exc:
            raise StorageError(f"Failed to read blob {path}: {exc}") from exc
        if raw is None:
            return None
        return raw.encode("utf-8") if isinstance(raw, str) else raw

    async def put(self, path: str, data: bytes) -> None:
        try:
            await self._redis.set(self._key(path), data)
        except RedisError as exc:
            raise StorageError(f"Failed to write blob {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        try:
            return bool(await self._redis.exists(self._key(path)))
        except RedisError as exc:
            raise StorageError(f"Failed to stat blob {path}: {exc}") from exc


def create_blob_store(backend: str, data_dir: str, redis_url: str) -> BlobStore:
    """Build the blob store named by the storage settings."""
    if backend == "redis":
        import redis.asyncio as aioredis

        logger.info("Registry storage: Redis at %s", redis_url.split("@")[-1])
        return RedisBlobStore(aioredis.from_url(redis_url))
    logger.info("Registry storage: files under %s", data_dir)
    return FileBlobStore(data_dir)
