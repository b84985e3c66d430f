"""Tests for credential payloads, key/email helpers and tier features."""

from __future__ import annotations

import math

import pytest

from tessera.errors import InvalidTierError, ValidationFormatError
from tessera.licensing.payload import (
    CredentialPayload,
    build_payload,
    hash_email,
    is_valid_license_key,
    mask_license_key,
    normalize_email,
    normalize_license_key,
)
from tessera.licensing.signing import sha256_hex
from tessera.licensing.tiers import Feature, Tier, features_for, has_feature, parse_tier

ISSUED = "2026-01-01T00:00:00+00:00"


class TestBuildPayload:
    def test_normalizes_key(self):
        payload = build_payload(" tsr-1a2b-3c4d-5e6f-7a8b ", "PRO", False, None, ISSUED)
        assert payload.license_key == "TSR-1A2B-3C4D-5E6F-7A8B"
        assert payload.tier is Tier.PRO

    def test_to_dict_has_exact_signed_fields(self):
        payload = build_payload("TSR-1A2B-3C4D-5E6F-7A8B", Tier.FREE, True, "ab" * 32, ISSUED)
        assert payload.to_dict() == {
            "licenseKey": "TSR-1A2B-3C4D-5E6F-7A8B",
            "tier": "FREE",
            "isFounder": True,
            "emailHash": "ab" * 32,
            "issued": ISSUED,
        }

    def test_from_dict_roundtrip(self):
        payload = build_payload("TSR-1A2B-3C4D-5E6F-7A8B", "pro", False, None, ISSUED)
        assert CredentialPayload.from_dict(payload.to_dict()) == payload

    def test_unknown_tier_rejected(self):
        with pytest.raises(InvalidTierError):
            build_payload("TSR-1A2B-3C4D-5E6F-7A8B", "ENTERPRISE", False, None, ISSUED)

    def test_bad_key_rejected(self):
        with pytest.raises(ValidationFormatError):
            build_payload("not-a-key", "PRO", False, None, ISSUED)

    def test_missing_issued_rejected(self):
        with pytest.raises(ValidationFormatError):
            build_payload("TSR-1A2B-3C4D-5E6F-7A8B", "PRO", False, None, "")

    def test_from_dict_missing_field(self):
        with pytest.raises(ValidationFormatError):
            CredentialPayload.from_dict({"licenseKey": "TSR-1A2B-3C4D-5E6F-7A8B"})


class TestHelpers:
    @pytest.mark.parametrize(
        "key,valid",
        [
            ("TSR-1A2B-3C4D-5E6F-7A8B", True),
            ("QAA-ABCD-EF01-2345-6789", True),
            ("TSR-1A2B-3C4D-5E6F", False),
            ("TSR-1a2b-3C4D-5E6F-7A8B", False),
            ("T-1A2B-3C4D-5E6F-7A8B", False),
            ("", False),
        ],
    )
    def test_key_pattern(self, key, valid):
        assert is_valid_license_key(key) is valid

    def test_normalize_key_non_string(self):
        assert normalize_license_key(None) == ""

    def test_email_normalization_and_hash(self):
        assert normalize_email("  User@Example.COM ") == "user@example.com"
        assert hash_email("User@Example.com") == sha256_hex("user@example.com")
        assert hash_email("user@example.com") != hash_email("other@example.com")

    def test_empty_email_hashes_to_none(self):
        assert hash_email(None) is None
        assert hash_email("  ") is None

    def test_invalid_email_rejected(self):
        assert normalize_email("nope") is None
        with pytest.raises(ValidationFormatError):
            hash_email("not-an-email")

    def test_mask(self):
        assert mask_license_key("TSR-1A2B-3C4D-5E6F-7A8B") == "TSR-****-****-****-7A8B"
        assert mask_license_key("garbage") == "****"


class TestTiers:
    def test_parse(self):
        assert parse_tier("pro") is Tier.PRO
        assert parse_tier(Tier.FREE) is Tier.FREE
        with pytest.raises(InvalidTierError):
            parse_tier("gold")

    def test_free_caps(self):
        free = features_for(Tier.FREE)
        assert free.max_private_repos == 1
        assert free.max_pre_push_runs_per_month == 50
        assert not has_feature(Tier.FREE, Feature.SECURITY_SCANNING)
        assert has_feature(Tier.FREE, Feature.LIGHTHOUSE_CI)

    def test_pro_unlimited(self):
        pro = features_for(Tier.PRO)
        assert math.isinf(pro.max_private_repos)
        assert all(has_feature(Tier.PRO, feature) for feature in Feature)
