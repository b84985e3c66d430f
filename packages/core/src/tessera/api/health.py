"""Health and operator status endpoints."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from starlette.responses import JSONResponse

from tessera.api.ratelimit import rate_limit
from tessera.api.registry import get_store
from tessera.errors import RegistryIntegrityError, StorageError
from tessera.licensing.payload import mask_license_key
from tessera.licensing.signing import constant_time_equal
from tessera.storage.registry_store import RegistryStore, RegistryTarget

router = APIRouter(tags=["health"])

logger = logging.getLogger("tessera.api.health")

RECENT_LICENSES = 5


def _now() -> str:
    return datetime.now(UTC).isoformat()


@router.get("/health", dependencies=[Depends(rate_limit("health"))], response_model=None)
async def health_check(store: RegistryStore = Depends(get_store)) -> dict[str, Any] | JSONResponse:
    """Liveness plus whether the private registry exists yet."""
    try:
        exists = await store.exists(RegistryTarget.PRIVATE)
    except StorageError as exc:
        logger.error("Health check storage failure: %s", exc.message)
        return JSONResponse(
            {"status": "degraded", "timestamp": _now(), "error": "Storage unavailable"},
            status_code=503,
        )
    return {
        "status": "ok",
        "timestamp": _now(),
        "database": "exists" if exists else "missing",
    }


@router.get("/status", response_model=None)
async def registry_status(
    request: Request,
    authorization: str | None = Header(default=None),
    store: RegistryStore = Depends(get_store),
) -> dict[str, Any] | JSONResponse:
    """Registry metadata and masked recent keys for operators."""
    token = request.app.state.settings.api.status_token
    if not token:
        return JSONResponse({"error": "Status endpoint disabled"}, status_code=503)
    if not authorization or not authorization.startswith("Bearer "):
        return JSONResponse({"error": "Authorization required"}, status_code=401)
    if not constant_time_equal(authorization.removeprefix("Bearer ").strip(), token):
        logger.warning("Status request with invalid token")
        return JSONResponse({"error": "Invalid token"}, status_code=403)

    try:
        registry = await store.load(RegistryTarget.PRIVATE)
    except (StorageError, RegistryIntegrityError) as exc:
        logger.error("Status could not load registry: %s", exc.message)
        return JSONResponse({"error": "Registry unavailable"}, status_code=500)

    if registry is None:
        return {"status": "ok", "metadata": None, "licenseCount": 0, "recentLicenses": []}
    keys = list(registry.entries)
    return {
        "status": "ok",
        "metadata": registry.metadata.model_dump(mode="json", by_alias=True),
        "licenseCount": len(keys),
        "recentLicenses": [mask_license_key(key) for key in keys[-RECENT_LICENSES:]],
    }
