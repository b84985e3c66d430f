"""The client-held license record and its on-disk home."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tessera.errors import StorageError
from tessera.storage.blobs import atomic_write

from .tiers import Tier

logger = logging.getLogger("tessera.licensing.local")

LICENSE_FILE = "license.json"


class LocalLicenseRecord(BaseModel):
    """What ``activate`` leaves on disk; re-verified on every run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    license_key: str = Field(alias="licenseKey")
    tier: Tier
    is_founder: bool = Field(default=False, alias="isFounder")
    email: str | None = None
    payload: dict[str, Any]
    signature: str
    source: str = "registry"
    activated: str
    verified_at: str | None = Field(default=None, alias="verifiedAt")


def default_license_dir() -> Path:
    return Path.home() / ".tessera"


def resolve_license_dir(requested: str | Path | None) -> Path:
    """Resolve *requested*, confining it to the home or temp directory."""
    fallback = default_license_dir()
    if not requested:
        return fallback
    resolved = Path(requested).expanduser().resolve()
    allowed = (Path.home().resolve(), Path(tempfile.gettempdir()).resolve())
    for root in allowed:
        if resolved == root or root in resolved.parents:
            return resolved
    logger.warning("License directory %s is outside home and temp, using %s", resolved, fallback)
    return fallback


def backup_corrupted(path: Path) -> Path | None:
    """Move a corrupted file aside as ``<name>.corrupted.<ts>``."""
    backup = path.with_name(f"{path.name}.corrupted.{int(time.time() * 1000)}")
    try:
        os.replace(path, backup)
    except OSError as exc:
        logger.warning("Could not back up corrupted %s: %s", path.name, exc)
        return None
    logger.warning("Corrupted %s moved to %s", path.name, backup.name)
    return backup


class LocalLicenseStore:
    """Reads and writes ``license.json`` under the license directory."""

    def __init__(self, license_dir: str | Path | None = None) -> None:
        self.directory = resolve_license_dir(license_dir)
        self.path = self.directory / LICENSE_FILE

    def read(self) -> LocalLicenseRecord | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Cannot read license file: {exc}") from exc

        try:
            return LocalLicenseRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("License file is corrupted: %s", exc.__class__.__name__)
            backup_corrupted(self.path)
            return None

    def write(self, record: LocalLicenseRecord) -> None:
        data = json.dumps(record.model_dump(mode="json", by_alias=True), indent=2)
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write(self.path, data.encode("utf-8"), mode=0o600)
        except OSError as exc:
            raise StorageError(f"Cannot write license file: {exc}") from exc

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Cannot remove license file: {exc}") from exc
        return True
