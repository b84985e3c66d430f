"""Payment processor webhook."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

from tessera.billing.events import parse_event
from tessera.billing.signing import SIGNATURE_HEADER, verify_event_signature
from tessera.errors import TesseraError, ValidationFormatError, WebhookSignatureError

router = APIRouter(tags=["webhooks"])

logger = logging.getLogger("tessera.api.webhooks")


@router.post("/webhook", response_model=None)
async def payment_webhook(request: Request) -> dict[str, Any] | JSONResponse:
    """Authenticate, parse and apply one payment event.

    400 for authentication or format failures (nothing was applied), 500
    for processing failures so the processor redelivers.
    """
    settings = request.app.state.settings
    payload = await request.body()

    try:
        verify_event_signature(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.billing.webhook_secret,
            settings.billing.signature_tolerance_seconds,
        )
        event = parse_event(payload)
    except (WebhookSignatureError, ValidationFormatError) as exc:
        logger.warning("Webhook rejected: %s", exc.message)
        message = "Webhook verification failed" if settings.is_production else f"Webhook error: {exc.message}"
        return JSONResponse({"error": message}, status_code=400)

    try:
        result = await request.app.state.issuance.handle_event(event)
    except ValidationFormatError as exc:
        logger.warning("Malformed %s event: %s", event.type, exc.message)
        message = "Malformed event" if settings.is_production else exc.message
        return JSONResponse({"error": message}, status_code=400)
    except TesseraError as exc:
        logger.error("Webhook processing failed for %s: %s", event.type, exc.message)
        body: dict[str, Any] = {"error": "Webhook processing failed"}
        if not settings.is_production:
            body["detail"] = exc.message
        return JSONResponse(body, status_code=500)

    return {"received": True, **result}
