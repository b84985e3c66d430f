"""The exact field set that gets signed for one license."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from tessera.errors import ValidationFormatError

from .signing import sha256_hex
from .tiers import Tier, parse_tier

LICENSE_KEY_PATTERN = re.compile(
    r"^[A-Z0-9]{2,10}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$"
)
LICENSE_KEY_EXAMPLE = "TSR-XXXX-XXXX-XXXX-XXXX"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_license_key(key: Any) -> str:
    if not isinstance(key, str):
        return ""
    return key.strip().upper()


def is_valid_license_key(key: str) -> bool:
    return bool(LICENSE_KEY_PATTERN.match(key))


def normalize_email(email: Any) -> str | None:
    """Lower-case and trim *email*; None if it is not a plausible address."""
    if not isinstance(email, str):
        return None
    value = email.strip().lower()
    if not _EMAIL_PATTERN.match(value):
        return None
    return value


def hash_email(email: str | None) -> str | None:
    """One-way hash of a normalized email address.

    Only the hash is ever signed or published; empty input yields None.
    """
    if email is None or not email.strip():
        return None
    normalized = normalize_email(email)
    if normalized is None:
        raise ValidationFormatError(
            f"Invalid email format: {email!r}",
            remediation="Provide a valid email address (e.g. user@example.com).",
        )
    return sha256_hex(normalized)


def mask_license_key(key: str) -> str:
    """Partially redact a key for logs and status output."""
    parts = key.split("-")
    if len(parts) != 5:
        return "****"
    return f"{parts[0]}-****-****-****-{parts[4]}"


@dataclass(frozen=True)
class CredentialPayload:
    license_key: str
    tier: Tier
    is_founder: bool
    email_hash: str | None
    issued: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "licenseKey": self.license_key,
            "tier": self.tier.value,
            "isFounder": self.is_founder,
            "emailHash": self.email_hash,
            "issued": self.issued,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialPayload:
        if not isinstance(data, dict):
            raise ValidationFormatError("Credential payload must be an object")
        try:
            return build_payload(
                license_key=data["licenseKey"],
                tier=data["tier"],
                is_founder=data["isFounder"],
                email_hash=data.get("emailHash"),
                issued=data["issued"],
            )
        except KeyError as exc:
            raise ValidationFormatError(f"Credential payload missing field {exc}") from None


def build_payload(
    license_key: str,
    tier: Tier | str,
    is_founder: bool,
    email_hash: str | None,
    issued: str,
) -> CredentialPayload:
    """Assemble the signed field set for one license."""
    normalized = normalize_license_key(license_key)
    if not is_valid_license_key(normalized):
        raise ValidationFormatError(f"Invalid license key format: {license_key!r}")
    if not isinstance(issued, str) or not issued:
        raise ValidationFormatError("Issued timestamp is required")
    return CredentialPayload(
        license_key=normalized,
        tier=parse_tier(tier),
        is_founder=bool(is_founder),
        email_hash=email_hash or None,
        issued=issued,
    )
