"""Offline-capable client validator.

One license check walks: local record (short-circuit when it verifies),
then the public registry (in-memory cache, network, disk cache), then
entry lookup, per-entry signature and email hash. Every terminal state
is a ``CheckOutcome`` with its own message and remediation.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import urlsplit

import httpx

from tessera.config import Settings, get_settings, resolve_key_material
from tessera.errors import (
    ConfigurationError,
    InsecureRegistryURLError,
    NetworkUnavailableError,
    RegistryIntegrityError,
    StorageError,
    ValidationFormatError,
)
from tessera.storage.blobs import atomic_write

from .devmode import is_dev_bypass_allowed, warn_bypass
from .local import LocalLicenseRecord, LocalLicenseStore
from .payload import (
    LICENSE_KEY_EXAMPLE,
    CredentialPayload,
    build_payload,
    hash_email,
    is_valid_license_key,
    mask_license_key,
    normalize_email,
    normalize_license_key,
)
from .registry import utc_now, verify_document
from .signing import constant_time_equal, load_public_key, verify
from .tiers import Tier, TierFeatures, features_for

logger = logging.getLogger("tessera.licensing.validator")

REGISTRY_CACHE_FILE = "registry-cache.json"


class CheckOutcome(StrEnum):
    TRUSTED = "trusted"
    UNTRUSTED_LOCAL = "untrusted_local"
    KEY_NOT_FOUND = "key_not_found"
    TAMPERED = "tampered"
    EMAIL_MISMATCH = "email_mismatch"
    FAIL_NO_DATA = "fail_no_data"
    INVALID_FORMAT = "invalid_format"
    MISCONFIGURED = "misconfigured"
    NO_LICENSE = "no_license"


_OUTCOME_TEXT: dict[CheckOutcome, tuple[str, str]] = {
    CheckOutcome.TRUSTED: ("License verified.", ""),
    CheckOutcome.UNTRUSTED_LOCAL: (
        "The local license file failed verification.",
        "Re-activate with: tessera activate <LICENSE_KEY>",
    ),
    CheckOutcome.KEY_NOT_FOUND: (
        "License key not found in the registry.",
        "Check the key for typos. New purchases can take a minute to appear.",
    ),
    CheckOutcome.TAMPERED: (
        "License signature is invalid; the license data may have been tampered with.",
        "Re-activate the license or contact support.",
    ),
    CheckOutcome.EMAIL_MISMATCH: (
        "The email address does not match this license.",
        "Use the email address the license was purchased with.",
    ),
    CheckOutcome.FAIL_NO_DATA: (
        "Cannot reach the license registry and no cached copy is available.",
        "Connect to the internet and retry.",
    ),
    CheckOutcome.INVALID_FORMAT: (
        "Invalid license key or email format.",
        f"License keys look like {LICENSE_KEY_EXAMPLE}.",
    ),
    CheckOutcome.MISCONFIGURED: (
        "License verification key is not configured.",
        "Reinstall Tessera or set TESSERA_SIGNING__PUBLIC_KEY.",
    ),
    CheckOutcome.NO_LICENSE: (
        "No license activated; running on the free tier.",
        "Run: tessera activate <LICENSE_KEY>",
    ),
}


def describe_outcome(outcome: CheckOutcome) -> tuple[str, str]:
    return _OUTCOME_TEXT[outcome]


class RegistrySource(StrEnum):
    MEMORY = "memory"
    NETWORK = "network"
    DISK_CACHE = "disk_cache"


@dataclass
class RegistrySnapshot:
    entries: dict[str, Any]
    source: RegistrySource
    stale: bool = False


@dataclass
class RegistryCache:
    """In-memory copy of the last verified registry fetch."""

    entries: dict[str, Any] | None = None
    fetched_at: float = 0.0

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.entries is not None and now - self.fetched_at < ttl

    def store(self, entries: dict[str, Any], now: float) -> None:
        self.entries = entries
        self.fetched_at = now

    def clear(self) -> None:
        self.entries = None
        self.fetched_at = 0.0


@dataclass
class ValidationResult:
    outcome: CheckOutcome
    license_key: str = ""
    payload: CredentialPayload | None = None
    signature: str = ""
    source: str = ""
    stale: bool = False

    @property
    def valid(self) -> bool:
        return self.outcome is CheckOutcome.TRUSTED

    @property
    def tier(self) -> Tier:
        if self.valid and self.payload is not None:
            return self.payload.tier
        return Tier.FREE

    @property
    def message(self) -> str:
        return _OUTCOME_TEXT[self.outcome][0]

    @property
    def remediation(self) -> str:
        return _OUTCOME_TEXT[self.outcome][1]


@dataclass
class LicenseStatus:
    tier: Tier
    outcome: CheckOutcome
    record: LocalLicenseRecord | None = None
    features: TierFeatures = field(init=False)

    def __post_init__(self) -> None:
        self.features = features_for(self.tier)

    @property
    def is_founder(self) -> bool:
        return bool(self.record and self.outcome is CheckOutcome.TRUSTED and self.record.is_founder)

    @property
    def message(self) -> str:
        return _OUTCOME_TEXT[self.outcome][0]

    @property
    def remediation(self) -> str:
        return _OUTCOME_TEXT[self.outcome][1]


def check_registry_url(url: str, allow_insecure: bool) -> str:
    """Reject registry URLs that are not HTTPS unless explicitly allowed."""
    scheme = urlsplit(url).scheme.lower()
    if scheme == "https":
        return url
    if scheme == "http" and allow_insecure:
        logger.warning("Using insecure registry URL %s", url)
        return url
    raise InsecureRegistryURLError(f"Registry URL must use HTTPS: {url}")


class LicenseValidator:
    """Activate and continually re-verify a license on a client machine."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        registry = self._settings.registry
        self._url = check_registry_url(registry.url, registry.allow_insecure)
        self._ttl = registry.cache_ttl_seconds
        self._timeout = registry.fetch_timeout_seconds
        self._http = http_client
        self._clock = clock
        self._cache = RegistryCache()
        self._bypass = is_dev_bypass_allowed(self._settings)

        material = resolve_key_material(
            self._settings.signing.public_key, self._settings.signing.public_key_path,
        )
        self._public_key = load_public_key(material) if material else None
        if self._public_key is None and not self._bypass:
            logger.warning("No license public key configured")

        self.local = LocalLicenseStore(registry.license_dir)
        self._cache_path = self.local.directory / REGISTRY_CACHE_FILE

    @property
    def cache(self) -> RegistryCache:
        return self._cache

    # -- registry --------------------------------------------------------

    def fetch_registry(self) -> RegistrySnapshot:
        """Return verified registry entries, preferring fresh data.

        Raises ``NetworkUnavailableError`` when the network fails and no
        verified disk cache with at least one entry exists, and
        ``ConfigurationError`` when no public key is available.
        """
        now = self._clock()
        if self._cache.is_fresh(now, self._ttl):
            return RegistrySnapshot(self._cache.entries or {}, RegistrySource.MEMORY)

        try:
            document, entries = self._fetch_remote()
        except (NetworkUnavailableError, RegistryIntegrityError) as exc:
            logger.warning("Registry fetch failed: %s", exc.message)
            cached = self._read_disk_cache()
            if cached:
                logger.warning("Using cached license registry (offline mode)")
                return RegistrySnapshot(cached, RegistrySource.DISK_CACHE, stale=True)
            raise NetworkUnavailableError(
                "Cannot reach the license registry and no cached copy exists",
            ) from exc

        self._cache.store(entries, now)
        self._write_disk_cache(document)
        return RegistrySnapshot(entries, RegistrySource.NETWORK)

    def _fetch_remote(self) -> tuple[dict[str, Any], dict[str, Any]]:
        client = self._http or httpx.Client(timeout=self._timeout)
        try:
            response = client.get(
                self._url,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkUnavailableError(f"Registry request failed: {exc}") from exc
        finally:
            if self._http is None:
                client.close()

        try:
            document = response.json()
        except ValueError as exc:
            raise RegistryIntegrityError("Registry response is not valid JSON") from exc
        return document, self._verify_document(document)

    def _verify_document(self, document: Any) -> dict[str, Any]:
        return verify_document(document, self._public_key, allow_unsigned=self._bypass)

    def _read_disk_cache(self) -> dict[str, Any] | None:
        """Verified entries from the disk cache, or None if unusable.

        An empty cached registry counts as no cached data.
        """
        try:
            document = json.loads(self._cache_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Registry cache unreadable: %s", exc)
            return None
        try:
            entries = self._verify_document(document)
        except RegistryIntegrityError as exc:
            logger.warning("Registry cache failed verification: %s", exc.message)
            return None
        return entries or None

    def _write_disk_cache(self, document: dict[str, Any]) -> None:
        data = json.dumps(document, indent=2).encode("utf-8")
        try:
            self.local.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write(self._cache_path, data, mode=0o600)
        except OSError as exc:
            logger.warning("Could not write registry cache: %s", exc)

    # -- signatures ------------------------------------------------------

    def _signature_ok(self, payload: CredentialPayload, signature: str) -> bool:
        if self._public_key is None:
            if not self._bypass:
                return False
            warn_bypass("license signature")
            return True
        try:
            return verify(payload.to_dict(), signature, self._public_key)
        except ValidationFormatError:
            return False

    def verify_record(self, record: LocalLicenseRecord) -> CheckOutcome:
        """Re-verify a stored record without network access."""
        if self._public_key is None and not self._bypass:
            return CheckOutcome.MISCONFIGURED
        try:
            payload = CredentialPayload.from_dict(record.payload)
        except ValidationFormatError:
            return CheckOutcome.UNTRUSTED_LOCAL
        if (
            payload.license_key != normalize_license_key(record.license_key)
            or payload.tier is not record.tier
            or payload.is_founder != record.is_founder
        ):
            return CheckOutcome.UNTRUSTED_LOCAL
        if not self._signature_ok(payload, record.signature):
            return CheckOutcome.UNTRUSTED_LOCAL
        return CheckOutcome.TRUSTED

    # -- checks ----------------------------------------------------------

    def validate(self, license_key: str, email: str | None = None) -> ValidationResult:
        key = normalize_license_key(license_key)
        if not is_valid_license_key(key):
            return ValidationResult(CheckOutcome.INVALID_FORMAT, license_key=key)
        try:
            email_hash = hash_email(email)
        except ValidationFormatError:
            return ValidationResult(CheckOutcome.INVALID_FORMAT, license_key=key)

        local = self.local.read()
        if local is not None and normalize_license_key(local.license_key) == key:
            outcome = self.verify_record(local)
            if outcome is CheckOutcome.TRUSTED:
                payload = CredentialPayload.from_dict(local.payload)
                if email_hash is None or self._email_matches(payload, email_hash):
                    return ValidationResult(
                        CheckOutcome.TRUSTED, key, payload, local.signature, source="local",
                    )
                return ValidationResult(CheckOutcome.EMAIL_MISMATCH, license_key=key, source="local")
            elif outcome is CheckOutcome.UNTRUSTED_LOCAL:
                logger.warning("Local record for %s failed verification", mask_license_key(key))

        if self._public_key is None and not self._bypass:
            return ValidationResult(CheckOutcome.MISCONFIGURED, license_key=key)

        try:
            snapshot = self.fetch_registry()
        except NetworkUnavailableError:
            return ValidationResult(CheckOutcome.FAIL_NO_DATA, license_key=key)
        except ConfigurationError:
            return ValidationResult(CheckOutcome.MISCONFIGURED, license_key=key)

        entry = snapshot.entries.get(key)
        if not isinstance(entry, dict):
            return ValidationResult(CheckOutcome.KEY_NOT_FOUND, license_key=key)

        try:
            payload = build_payload(
                license_key=key,
                tier=entry.get("tier", ""),
                is_founder=entry.get("isFounder", False),
                email_hash=entry.get("emailHash"),
                issued=entry.get("issued", ""),
            )
        except ValidationFormatError:
            return ValidationResult(CheckOutcome.TAMPERED, license_key=key)

        signature = entry.get("signature", "")
        if not isinstance(signature, str) or not self._signature_ok(payload, signature):
            return ValidationResult(CheckOutcome.TAMPERED, license_key=key)

        if email_hash is not None and not self._email_matches(payload, email_hash):
            return ValidationResult(CheckOutcome.EMAIL_MISMATCH, license_key=key)

        return ValidationResult(
            CheckOutcome.TRUSTED, key, payload, signature,
            source=snapshot.source.value, stale=snapshot.stale,
        )

    @staticmethod
    def _email_matches(payload: CredentialPayload, email_hash: str) -> bool:
        if payload.email_hash is None:
            return True
        return constant_time_equal(payload.email_hash, email_hash)

    def activate(self, license_key: str, email: str | None = None) -> ValidationResult:
        """Validate *license_key* and persist the local record on success."""
        result = self.validate(license_key, email)
        if not result.valid or result.payload is None:
            logger.info("Activation of %s failed: %s", mask_license_key(result.license_key), result.outcome)
            return result

        previous = self.local.read()
        now = utc_now()
        activated = now
        if previous is not None and normalize_license_key(previous.license_key) == result.license_key:
            activated = previous.activated

        record = LocalLicenseRecord(
            license_key=result.license_key,
            tier=result.payload.tier,
            is_founder=result.payload.is_founder,
            email=normalize_email(email),
            payload=result.payload.to_dict(),
            signature=result.signature,
            source=result.source,
            activated=activated,
            verified_at=now,
        )
        self.local.write(record)
        logger.info("License %s activated (%s)", mask_license_key(result.license_key), result.payload.tier)
        return result

    def current_license(self) -> LicenseStatus:
        """Offline check run on every start: the tier this machine may use."""
        try:
            record = self.local.read()
        except StorageError as exc:
            logger.warning("Cannot read local license: %s", exc.message)
            return LicenseStatus(Tier.FREE, CheckOutcome.UNTRUSTED_LOCAL)
        if record is None:
            return LicenseStatus(Tier.FREE, CheckOutcome.NO_LICENSE)

        outcome = self.verify_record(record)
        if outcome is CheckOutcome.TRUSTED:
            return LicenseStatus(record.tier, outcome, record)
        logger.warning("Local license rejected: %s", outcome)
        return LicenseStatus(Tier.FREE, outcome, record)

    def remove(self) -> bool:
        self._cache.clear()
        removed = self.local.remove()
        if removed:
            logger.info("Local license removed")
        return removed
