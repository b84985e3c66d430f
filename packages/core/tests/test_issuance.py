"""Tests for license key generation and the issuance service."""

from __future__ import annotations

import asyncio
import json

import pytest

from tessera.billing.events import CHECKOUT_COMPLETED, SUBSCRIPTION_DELETED, PaymentEvent, parse_event
from tessera.billing.issuance import IssuanceService, generate_license_key, register_license
from tessera.billing.plans import PlanCatalog, PlanGrant
from tessera.errors import StorageError, UnknownPlanError, ValidationFormatError
from tessera.licensing.payload import hash_email, is_valid_license_key
from tessera.licensing.registry import EntryStatus, payload_for
from tessera.licensing.signing import verify
from tessera.licensing.tiers import Tier
from tessera.queue.write_queue import SerializedWriteQueue
from tessera.storage.registry_store import RegistryStore, RegistryTarget

PRICE_PRO = "price_pro_monthly"
PRICE_FOUNDER = "price_pro_founder"


def _checkout(customer: str, price: str = PRICE_PRO, email: str | None = "buyer@example.com",
              subscription: str | None = None) -> PaymentEvent:
    return PaymentEvent.model_validate({
        "id": f"evt_{customer}",
        "type": CHECKOUT_COMPLETED,
        "data": {"object": {
            "id": f"cs_{customer}",
            "customer": customer,
            "customer_email": email,
            "subscription": subscription or f"sub_{customer}",
            "price_id": price,
        }},
    })


def _canceled(subscription: str) -> PaymentEvent:
    return PaymentEvent.model_validate({
        "id": f"evt_del_{subscription}",
        "type": SUBSCRIPTION_DELETED,
        "data": {"object": {"id": subscription, "customer": "cus_x"}},
    })


@pytest.fixture
async def queue():
    q = SerializedWriteQueue("registry")
    q.start()
    yield q
    await q.stop()


@pytest.fixture
def catalog():
    return PlanCatalog({
        PRICE_PRO: PlanGrant(Tier.PRO),
        PRICE_FOUNDER: PlanGrant(Tier.PRO, is_founder=True),
    })


@pytest.fixture
def service(store, queue, catalog):
    return IssuanceService(store, queue, catalog, key_prefix="TSR", key_salt="test-salt")


class TestGenerateLicenseKey:
    def test_deterministic(self):
        a = generate_license_key("cus_1", Tier.PRO, False, "salt")
        b = generate_license_key("cus_1", "pro", False, "salt")
        assert a == b
        assert is_valid_license_key(a)
        assert a.startswith("TSR-")

    def test_inputs_change_key(self):
        base = generate_license_key("cus_1", Tier.PRO, False, "salt")
        assert generate_license_key("cus_2", Tier.PRO, False, "salt") != base
        assert generate_license_key("cus_1", Tier.PRO, True, "salt") != base
        assert generate_license_key("cus_1", Tier.FREE, False, "salt") != base
        assert generate_license_key("cus_1", Tier.PRO, False, "other") != base

    def test_prefix(self):
        assert generate_license_key("cus_1", Tier.PRO, prefix="qaa").startswith("QAA-")


class TestIssuance:
    @pytest.mark.asyncio
    async def test_checkout_issues_signed_license(self, service, store, public_pem):
        result = await service.handle_event(_checkout("cus_1"))
        assert result == {"status": "processed", "event": CHECKOUT_COMPLETED}

        registry = await store.load(RegistryTarget.PRIVATE)
        key = generate_license_key("cus_1", Tier.PRO, False, "test-salt", "TSR")
        entry = registry.entries[key]
        assert entry.tier is Tier.PRO
        assert entry.customer_id == "cus_1"
        assert entry.subscription_id == "sub_cus_1"
        assert entry.email_hash == hash_email("buyer@example.com")
        assert entry.status is EntryStatus.ACTIVE
        assert verify(payload_for(key, entry).to_dict(), entry.signature, public_pem)

        public = await store.load(RegistryTarget.PUBLIC)
        assert key in public.entries
        assert public.entries[key].customer_id is None

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, service, store):
        first = await service.issue_license("cus_1", Tier.PRO, email="a@example.com", subscription_id="sub_1")
        second = await service.issue_license("cus_1", Tier.PRO, email="a@example.com", subscription_id="sub_1")

        assert first.license_key == second.license_key
        assert first.created and not second.created
        assert second.entry.issued == first.entry.issued

        registry = await store.load(RegistryTarget.PRIVATE)
        assert len(registry.entries) == 1
        assert registry.metadata.total_licenses == 1

    @pytest.mark.asyncio
    async def test_replayed_webhook_same_key(self, service, store):
        await service.handle_event(_checkout("cus_9"))
        await service.handle_event(_checkout("cus_9"))
        registry = await store.load(RegistryTarget.PRIVATE)
        assert len(registry.entries) == 1

    @pytest.mark.asyncio
    async def test_founder_plan(self, service, store):
        await service.handle_event(_checkout("cus_f", price=PRICE_FOUNDER))
        registry = await store.load(RegistryTarget.PRIVATE)
        (entry,) = registry.entries.values()
        assert entry.is_founder

    @pytest.mark.asyncio
    async def test_unknown_plan_fails_loudly(self, service, store):
        with pytest.raises(UnknownPlanError):
            await service.handle_event(_checkout("cus_1", price="price_unknown"))
        assert await store.load(RegistryTarget.PRIVATE) is None

    @pytest.mark.asyncio
    async def test_checkout_without_subscription_is_malformed(self, service):
        event = PaymentEvent.model_validate({
            "type": CHECKOUT_COMPLETED,
            "data": {"object": {"customer": "cus_1", "price_id": PRICE_PRO}},
        })
        with pytest.raises(ValidationFormatError):
            await service.handle_event(event)

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, service):
        event = PaymentEvent(type="customer.created")
        assert await service.handle_event(event) == {"status": "ignored", "event": "customer.created"}

    @pytest.mark.asyncio
    async def test_cancel_marks_status_keeps_signature(self, service, store, public_pem):
        issued = await service.issue_license("cus_1", Tier.PRO, subscription_id="sub_1")
        await service.handle_event(_canceled("sub_1"))

        registry = await store.load(RegistryTarget.PRIVATE)
        entry = registry.entries[issued.license_key]
        assert entry.status is EntryStatus.CANCELED
        assert entry.canceled_at
        assert entry.signature == issued.entry.signature
        assert verify(payload_for(issued.license_key, entry).to_dict(), entry.signature, public_pem)

    @pytest.mark.asyncio
    async def test_cancel_unknown_subscription_is_noop(self, service, store):
        assert await service.cancel_subscription("sub_missing") == []
        assert await store.load(RegistryTarget.PRIVATE) is None

    @pytest.mark.asyncio
    async def test_reissue_reactivates(self, service, store):
        issued = await service.issue_license("cus_1", Tier.PRO, subscription_id="sub_1")
        await service.cancel_subscription("sub_1")
        await service.issue_license("cus_1", Tier.PRO, subscription_id="sub_1")
        registry = await store.load(RegistryTarget.PRIVATE)
        entry = registry.entries[issued.license_key]
        assert entry.status is EntryStatus.ACTIVE
        assert entry.canceled_at is None

    @pytest.mark.asyncio
    async def test_concurrent_events_lose_no_update(self, service, store):
        n = 25
        await asyncio.gather(*(service.handle_event(_checkout(f"cus_{i}")) for i in range(n)))
        await asyncio.gather(*(service.handle_event(_canceled(f"sub_cus_{i}")) for i in range(0, n, 2)))

        registry = await store.load(RegistryTarget.PRIVATE)
        assert len(registry.entries) == n
        assert registry.metadata.total_licenses == n
        by_customer = {e.customer_id: e for e in registry.entries.values()}
        for i in range(n):
            expected = EntryStatus.CANCELED if i % 2 == 0 else EntryStatus.ACTIVE
            assert by_customer[f"cus_{i}"].status is expected

        public = await store.load(RegistryTarget.PUBLIC)
        assert len(public.entries) == n

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, queue, catalog, private_pem, public_pem):
        class BrokenBlobs:
            async def get(self, path):
                return None

            async def put(self, path, data):
                raise StorageError("disk full")

            async def exists(self, path):
                return False

        broken = RegistryStore(BrokenBlobs(), private_key=private_pem, public_key=public_pem)
        service = IssuanceService(broken, queue, catalog)
        with pytest.raises(StorageError):
            await service.handle_event(_checkout("cus_1"))
        # The queue keeps serving later writes
        assert queue.running


class TestRegisterLicense:
    @pytest.mark.asyncio
    async def test_admin_registration(self, store, public_pem):
        entry = await register_license(
            store, "tsr-abcd-0000-1111-2222", "cus_admin", "PRO", is_founder=True, email="x@example.com",
        )
        registry = await store.load(RegistryTarget.PRIVATE)
        assert "TSR-ABCD-0000-1111-2222" in registry.entries
        assert entry.is_founder
        assert verify(payload_for("TSR-ABCD-0000-1111-2222", entry).to_dict(), entry.signature, public_pem)

    @pytest.mark.asyncio
    async def test_admin_registration_through_queue(self, store, queue):
        await register_license(store, "TSR-ABCD-0000-1111-2222", "cus_admin", "FREE", queue=queue)
        assert queue.processed == 1

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, store):
        with pytest.raises(ValidationFormatError):
            await register_license(store, "bogus", "cus_admin", "PRO")


class TestEvents:
    def test_parse_event(self):
        body = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded",
                           "data": {"object": {"id": "in_1"}}}).encode()
        event = parse_event(body)
        assert event.type == "invoice.payment_succeeded"
        assert event.object == {"id": "in_1"}

    @pytest.mark.parametrize("body", [b"not json", b"{}", b'{"type": 5}'])
    def test_malformed_event(self, body):
        with pytest.raises(ValidationFormatError):
            parse_event(body)

    def test_catalog_from_config(self):
        from tessera.config import PlanConfig

        catalog = PlanCatalog({"price_a": PlanConfig(tier="pro", founder=True)})
        assert catalog.resolve("price_a") == PlanGrant(Tier.PRO, True)
        with pytest.raises(UnknownPlanError):
            catalog.resolve(None)
