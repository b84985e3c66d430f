"""Turn authenticated payment events into signed registry entries."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tessera.errors import ValidationFormatError
from tessera.licensing.payload import (
    hash_email,
    is_valid_license_key,
    mask_license_key,
    normalize_license_key,
)
from tessera.licensing.registry import EntryStatus, RegistryEntry, utc_now
from tessera.licensing.tiers import Tier, parse_tier
from tessera.queue.write_queue import SerializedWriteQueue
from tessera.storage.registry_store import RegistryStore

from .events import CHECKOUT_COMPLETED, INVOICE_PAID, SUBSCRIPTION_DELETED, PaymentEvent
from .plans import PlanCatalog

logger = logging.getLogger("tessera.billing.issuance")


def generate_license_key(
    customer_id: str,
    tier: Tier | str,
    is_founder: bool = False,
    salt: str = "tessera-license-v1",
    prefix: str = "TSR",
) -> str:
    """Deterministic key for a (customer, tier, founder) triple.

    Replaying the same purchase always yields the same key.
    """
    founder = "true" if is_founder else "false"
    digest = hashlib.sha256(f"{customer_id}:{parse_tier(tier).value}:{founder}:{salt}".encode()).hexdigest()
    groups = [digest[i : i + 4] for i in range(0, 16, 4)]
    return "-".join([prefix.upper(), *groups]).upper()


@dataclass
class IssuedLicense:
    license_key: str
    entry: RegistryEntry
    created: bool


class IssuanceService:
    """Applies payment events to the private registry through the write queue."""

    def __init__(
        self,
        store: RegistryStore,
        queue: SerializedWriteQueue,
        catalog: PlanCatalog,
        *,
        key_salt: str = "tessera-license-v1",
        key_prefix: str = "TSR",
        now: Callable[[], str] = utc_now,
    ) -> None:
        self._store = store
        self._queue = queue
        self._catalog = catalog
        self._salt = key_salt
        self._prefix = key_prefix
        self._now = now
        self._handlers: dict[str, Callable[[PaymentEvent], Awaitable[None]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            INVOICE_PAID: self._on_invoice_paid,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    async def handle_event(self, event: PaymentEvent) -> dict[str, str]:
        """Dispatch an already-authenticated event.

        Unknown event types are acknowledged and ignored. Storage and plan
        errors propagate so the processor retries the delivery.
        """
        logger.info("Payment event received: %s", event.type)
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Unhandled event type: %s", event.type)
            return {"status": "ignored", "event": event.type}
        await handler(event)
        return {"status": "processed", "event": event.type}

    async def _on_checkout_completed(self, event: PaymentEvent) -> None:
        session = event.checkout_session()
        if not session.subscription:
            raise ValidationFormatError("Checkout session has no subscription")
        grant = self._catalog.resolve(session.price_id)
        await self.issue_license(
            customer_id=session.customer,
            tier=grant.tier,
            is_founder=grant.is_founder,
            email=session.customer_email,
            subscription_id=session.subscription,
        )

    async def _on_invoice_paid(self, event: PaymentEvent) -> None:
        invoice_id = event.object.get("id")
        if not isinstance(invoice_id, str) or not invoice_id:
            raise ValidationFormatError("Invoice event has no id")
        # The license already exists from checkout; renewals change nothing
        logger.info("Payment succeeded for invoice %s", invoice_id)

    async def _on_subscription_deleted(self, event: PaymentEvent) -> None:
        subscription_id = event.object.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise ValidationFormatError("Subscription event has no id")
        await self.cancel_subscription(subscription_id)

    async def issue_license(
        self,
        customer_id: str,
        tier: Tier | str,
        is_founder: bool = False,
        email: str | None = None,
        subscription_id: str | None = None,
    ) -> IssuedLicense:
        """Create or refresh the entry for a purchase.

        Idempotent: the key is derived from the purchase and an existing
        entry keeps its original ``issued`` timestamp.
        """
        if not customer_id:
            raise ValidationFormatError("Customer id is required")
        grant_tier = parse_tier(tier)
        license_key = generate_license_key(customer_id, grant_tier, is_founder, self._salt, self._prefix)
        email_hash = hash_email(email)

        async def write() -> IssuedLicense:
            registry = await self._store.load_or_create()
            existing = registry.entries.get(license_key)
            entry = RegistryEntry(
                tier=grant_tier,
                is_founder=is_founder,
                email_hash=email_hash or (existing.email_hash if existing else None),
                issued=existing.issued if existing else self._now(),
                customer_id=customer_id,
                subscription_id=subscription_id or (existing.subscription_id if existing else None),
                status=EntryStatus.ACTIVE,
            )
            signed = self._store.sign_entry(license_key, entry)
            registry.entries[license_key] = signed
            await self._store.save(registry)
            return IssuedLicense(license_key, signed, created=existing is None)

        issued = await self._queue.submit(write)
        logger.info(
            "License %s %s (%s%s)",
            mask_license_key(license_key),
            "created" if issued.created else "refreshed",
            grant_tier,
            ", founder" if is_founder else "",
        )
        return issued

    async def cancel_subscription(self, subscription_id: str) -> list[str]:
        """Mark every entry of *subscription_id* canceled; signatures stay valid."""

        async def write() -> list[str]:
            registry = await self._store.load_or_create()
            canceled_at = self._now()
            keys: list[str] = []
            for license_key, entry in registry.entries.items():
                if entry.subscription_id != subscription_id:
                    continue
                registry.entries[license_key] = entry.model_copy(
                    update={"status": EntryStatus.CANCELED, "canceled_at": canceled_at},
                )
                keys.append(license_key)
            if not keys:
                logger.warning("No license found for subscription %s", subscription_id)
                return keys
            await self._store.save(registry)
            return keys

        keys = await self._queue.submit(write)
        for key in keys:
            logger.info("License %s marked canceled", mask_license_key(key))
        return keys


async def register_license(
    store: RegistryStore,
    license_key: str,
    customer_id: str,
    tier: Tier | str,
    *,
    is_founder: bool = False,
    email: str | None = None,
    queue: SerializedWriteQueue | None = None,
    now: Callable[[], str] = utc_now,
) -> RegistryEntry:
    """Admin path: add a specific key to the registry.

    Goes through *queue* when one is given (server process); the CLI runs
    it directly as the only writer.
    """
    key = normalize_license_key(license_key)
    if not is_valid_license_key(key):
        raise ValidationFormatError(f"Invalid license key format: {license_key!r}")
    entry_tier = parse_tier(tier)
    email_hash = hash_email(email)

    async def write() -> RegistryEntry:
        registry = await store.load_or_create()
        existing = registry.entries.get(key)
        entry = RegistryEntry(
            tier=entry_tier,
            is_founder=is_founder,
            email_hash=email_hash,
            issued=existing.issued if existing else now(),
            customer_id=customer_id,
            status=EntryStatus.ACTIVE,
        )
        signed = store.sign_entry(key, entry)
        registry.entries[key] = signed
        await store.save(registry)
        return signed

    if queue is not None:
        signed = await queue.submit(write)
    else:
        signed = await write()
    logger.info("License %s registered (%s)", mask_license_key(key), entry_tier)
    return signed
