"""Exception hierarchy shared by the server, the client validator and the CLI.

Every error carries a human-readable ``message`` plus a ``remediation``
step, so callers can show one actionable line without a stack trace.
"""

from __future__ import annotations

_CONTACT_SUPPORT = "Contact support with this message if the problem persists."


class TesseraError(Exception):
    """Base class for all Tessera errors."""

    remediation: str = _CONTACT_SUPPORT

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if remediation is not None:
            self.remediation = remediation

    def describe(self) -> str:
        return f"{self.message}\n  -> {self.remediation}"


class ValidationFormatError(TesseraError):
    """Malformed license key, email address, event body or payload."""

    remediation = "Check the value you entered (license keys look like TSR-XXXX-XXXX-XXXX-XXXX)."


class CircularReferenceError(ValidationFormatError):
    """The canonical encoder met a structure that references itself."""

    remediation = "The license data is corrupted. Re-activate the license or contact support."


class InvalidTierError(ValidationFormatError):
    """A tier value outside the closed tier set."""


class MalformedSignatureError(ValidationFormatError):
    """Signature bytes that cannot be decoded or have the wrong size."""

    remediation = "The license signature is corrupted. Re-activate the license."


class ConfigurationError(TesseraError):
    """Tessera is misconfigured (keys, URLs, secrets)."""

    remediation = "Reinstall or check the TESSERA_* settings."


class KeyFormatError(ConfigurationError):
    """Key material is not a valid Ed25519 key."""

    remediation = (
        "Check TESSERA_SIGNING__PUBLIC_KEY / TESSERA_SIGNING__PUBLIC_KEY_PATH "
        "(or the private key settings on the server)."
    )


class InsecureRegistryURLError(ConfigurationError):
    """Registry URL is not HTTPS and insecure URLs were not opted into."""

    remediation = (
        "Use an https:// registry URL, or set TESSERA_REGISTRY__ALLOW_INSECURE=true "
        "for local development only."
    )


class SignatureVerificationError(TesseraError):
    """A signature was well-formed but does not match the signed data."""

    remediation = "The license may have been tampered with. Re-activate it or contact support."


class RegistryIntegrityError(TesseraError):
    """Registry hash or aggregate signature mismatch, or unparsable document."""

    remediation = "The license registry failed verification. Retry later or contact support."


class NetworkUnavailableError(TesseraError):
    """Registry could not be fetched and no usable cached copy exists."""

    remediation = "Connect to the internet and retry."


class StorageError(TesseraError):
    """Reading or writing a registry blob or local file failed."""

    remediation = "Check disk space and permissions for the Tessera data directory."


class UnknownPlanError(TesseraError):
    """A payment plan / price identifier has no configured tier."""

    remediation = "Add the price id to TESSERA_BILLING__PLANS and let the processor retry."


class DuplicateWriteRaceError(TesseraError):
    """Two registry writes were observed executing at the same time."""

    remediation = "This is a bug: all registry writes must go through the write queue."


class WebhookSignatureError(TesseraError):
    """A payment event failed authentication."""

    remediation = "Check TESSERA_BILLING__WEBHOOK_SECRET matches the payment processor."
