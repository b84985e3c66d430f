"""FastAPI entry point for the Tessera license server."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from starlette.requests import Request

from tessera import __version__
from tessera.api.health import router as health_router
from tessera.api.ratelimit import (
    RateLimitExceeded,
    SlidingWindowRateLimiter,
    rate_limit_exceeded_handler,
)
from tessera.api.registry import create_router as create_registry_router
from tessera.api.webhooks import router as webhooks_router
from tessera.billing.issuance import IssuanceService
from tessera.billing.plans import PlanCatalog
from tessera.config import Settings, get_settings, resolve_key_material
from tessera.queue.write_queue import SerializedWriteQueue
from tessera.storage.blobs import BlobStore, create_blob_store
from tessera.storage.registry_store import RegistryStore

logger = logging.getLogger("tessera")

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: run the registry write queue."""
    settings: Settings = app.state.settings
    queue: SerializedWriteQueue = app.state.write_queue
    queue.start()

    logger.info(
        "Tessera license server started on %s:%d (storage=%s, plans=%d)",
        settings.server.host,
        settings.server.port,
        settings.storage.backend,
        len(app.state.catalog),
    )
    yield

    await queue.stop()
    logger.info("Tessera license server stopped")


def build_store(settings: Settings, blobs: BlobStore | None = None) -> RegistryStore:
    private_key = resolve_key_material(settings.signing.private_key, settings.signing.private_key_path)
    public_key = resolve_key_material(settings.signing.public_key, settings.signing.public_key_path)
    if private_key is None:
        logger.warning("No registry private key configured; issuance is disabled")
    if blobs is None:
        blobs = create_blob_store(
            settings.storage.backend, settings.storage.data_dir, settings.storage.redis_url,
        )
    return RegistryStore(
        blobs,
        private_key=private_key,
        public_key=public_key,
        key_id=settings.signing.key_id,
        private_path=settings.storage.private_path,
        public_path=settings.storage.public_path,
    )


def create_app(settings: Settings | None = None, blobs: BlobStore | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Tessera",
        description="License issuance and registry server",
        version=__version__,
        lifespan=lifespan,
    )

    store = build_store(settings, blobs)
    queue = SerializedWriteQueue("registry")
    catalog = PlanCatalog(settings.billing.plans)
    if not len(catalog):
        logger.warning("No billing plans configured; every checkout will be rejected")

    app.state.settings = settings
    app.state.store = store
    app.state.write_queue = queue
    app.state.catalog = catalog
    app.state.issuance = IssuanceService(
        store,
        queue,
        catalog,
        key_salt=settings.billing.key_salt,
        key_prefix=settings.billing.key_prefix,
    )
    limits = settings.rate_limit
    app.state.limiters = {
        "health": SlidingWindowRateLimiter(
            limits.window_seconds, limits.health_max_requests, limits.sweep_threshold,
        ),
        "registry": SlidingWindowRateLimiter(
            limits.window_seconds, limits.registry_max_requests, limits.sweep_threshold,
        ),
    }

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):  # type: ignore[no-untyped-def]
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    app.include_router(create_registry_router(settings.api.public_registry_path))
    app.include_router(webhooks_router)
    app.include_router(health_router)

    return app


def main() -> None:
    """Run the Tessera license server."""
    logging.basicConfig(
        level=logging.DEBUG if get_settings().debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = get_settings()
    if settings.server.workers > 1:
        logger.warning("Registry writes are serialized per process; use a single worker")
    uvicorn.run(
        "tessera.main:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
