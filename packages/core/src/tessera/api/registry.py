"""Public registry download endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse

from tessera.api.ratelimit import rate_limit
from tessera.errors import ConfigurationError, RegistryIntegrityError, StorageError
from tessera.storage.registry_store import RegistryStore

logger = logging.getLogger("tessera.api.registry")

REGISTRY_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
    "Cache-Control": "public, max-age=300",
}

RETRY_AFTER_SECONDS = 60


def get_store(request: Request) -> RegistryStore:
    return request.app.state.store


def create_router(public_registry_path: str) -> APIRouter:
    """Router serving the signed public registry at *public_registry_path*."""
    router = APIRouter(tags=["registry"])

    @router.get(public_registry_path, dependencies=[Depends(rate_limit("registry"))])
    async def public_registry(store: RegistryStore = Depends(get_store)) -> JSONResponse:
        try:
            document = await store.load_public_or_derive()
        except (StorageError, RegistryIntegrityError, ConfigurationError) as exc:
            logger.error("Public registry unavailable: %s", exc.message)
            return JSONResponse(
                {"error": "License registry temporarily unavailable", "retryAfter": RETRY_AFTER_SECONDS},
                status_code=503,
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )
        return JSONResponse(document, headers=REGISTRY_HEADERS)

    return router
