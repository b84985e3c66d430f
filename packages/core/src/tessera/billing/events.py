"""Payment processor events the issuance service understands."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tessera.errors import ValidationFormatError

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.payment_succeeded"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class CheckoutSession(BaseModel):
    """``data.object`` of a completed checkout."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    customer: str
    customer_email: str | None = None
    subscription: str | None = None
    price_id: str
    metadata: dict[str, str] = Field(default_factory=dict)


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any] = Field(default_factory=dict)


class PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    type: str
    created: int | None = None
    data: EventData = Field(default_factory=EventData)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object

    def checkout_session(self) -> CheckoutSession:
        try:
            return CheckoutSession.model_validate(self.data.object)
        except ValidationError as exc:
            raise ValidationFormatError(
                f"Malformed checkout session in event {self.id or '?'}: {exc.error_count()} error(s)",
            ) from exc


def parse_event(body: bytes) -> PaymentEvent:
    """Decode a raw event body; raises ``ValidationFormatError`` if malformed."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationFormatError(f"Event body is not valid JSON: {exc}") from exc
    try:
        return PaymentEvent.model_validate(data)
    except ValidationError as exc:
        raise ValidationFormatError(f"Malformed event: {exc.error_count()} error(s)") from exc
