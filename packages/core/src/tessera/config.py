"""Tessera configuration system using pydantic-settings with YAML support."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tessera.errors import ConfigurationError


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 7610
    workers: int = 1


class SigningConfig(BaseModel):
    """Ed25519 key material and the identifier stamped on signed entries."""

    public_key: str = ""
    public_key_path: str = ""
    private_key: str = ""
    private_key_path: str = ""
    key_id: str = "default"


class RegistryConfig(BaseModel):
    """Where the client fetches the public registry and how it caches it."""

    url: str = "https://licenses.tessera.dev/licenses/registry.json"
    allow_insecure: bool = False
    cache_ttl_seconds: float = 300
    fetch_timeout_seconds: float = 10
    license_dir: str = str(Path.home() / ".tessera")


class StorageConfig(BaseModel):
    """Server-side registry document storage."""

    backend: Literal["file", "redis"] = "file"
    data_dir: str = "/data"
    redis_url: str = "redis://localhost:6379/0"
    private_path: str = "licenses/registry.private.json"
    public_path: str = "licenses/registry.public.json"


class PlanConfig(BaseModel):
    """Tier granted by one payment-processor price id."""

    tier: str
    founder: bool = False


class BillingConfig(BaseModel):
    """Payment webhook authentication and license key derivation."""

    webhook_secret: str = ""
    signature_tolerance_seconds: int = 300
    key_prefix: str = "TSR"
    key_salt: str = "tessera-license-v1"
    plans: dict[str, PlanConfig] = Field(default_factory=dict)


class APIConfig(BaseModel):
    """Public HTTP surface."""

    public_registry_path: str = "/licenses/registry.json"
    status_token: str = ""


class RateLimitConfig(BaseModel):
    """Sliding-window limits for the public endpoints."""

    window_seconds: float = 60
    health_max_requests: int = 60
    registry_max_requests: int = 30
    sweep_threshold: int = 100


class Settings(BaseSettings):
    """Root configuration for Tessera."""

    model_config = SettingsConfigDict(
        env_prefix="TESSERA_",
        env_nested_delimiter="__",
    )

    environment: Literal["development", "production"] = "development"
    debug: bool = False
    developer_mode: bool = Field(
        default=False,
        description="Skip signature checks when no public key is configured (dev builds only)",
    )
    server: ServerConfig = Field(default_factory=ServerConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_config(config_path: str | Path | None = None) -> Settings:
    """Load configuration from YAML file and environment variables.

    Environment variables override YAML values. YAML overrides defaults.
    """
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        candidates = [
            Path("tessera.yaml"),
            Path("tessera.yml"),
            Path("/etc/tessera/tessera.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    return Settings(**yaml_data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings singleton."""
    global _settings
    if _settings is None:
        _settings = load_config()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (for testing)."""
    global _settings
    _settings = None


def resolve_key_material(value: str, path: str) -> str | None:
    """Return key material from an inline value or, failing that, a file.

    Inline values may carry literal ``\\n`` sequences so a PEM block fits
    in a single environment variable.
    """
    if value.strip():
        return value.replace("\\n", "\n").strip()
    if path:
        key_file = Path(path).expanduser()
        try:
            return key_file.read_text().strip()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read key file {key_file}: {exc}") from exc
    return None
