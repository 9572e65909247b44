# Tokensmith settings.
# Created: 2026-10-19
#
# A single Settings value is built at startup and handed to the server, the
# resolver and the engines. Nothing below reads module state after that.

from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_ENV_OVERRIDES = {
    "TOKENSMITH_SECRET_KEY": "secret_key",
    "TOKENSMITH_ISSUER_URL": "issuer_url",
    "TOKENSMITH_AUDIENCE_URL": "audience_url",
}


def get_config_dir() -> Path:
    """Return (and create) the tokensmith config directory."""
    override = os.environ.get("TOKENSMITH_CONFIG_DIR")
    path = Path(override).expanduser() if override else Path.home() / ".tokensmith"
    path.mkdir(parents=True, exist_ok=True)
    return path


class Settings(BaseModel):
    """Authorization server configuration."""

    secret_key: str = ""
    previous_secret_keys: list[str] = Field(default_factory=list)

    issuer_url: str = "http://localhost:3000/"
    audience_url: str = "http://localhost:3000/api/"

    default_access_token_duration: int = Field(default=300, gt=0)
    default_refresh_token_duration: int = Field(default=1_209_600, gt=0)
    authorization_grant_ttl: int = Field(default=300, gt=0)

    # Resource indicators (RFC 8707): URI -> display name
    resources: dict[str, str] = Field(default_factory=dict)
    # Scope token -> description
    scopes: dict[str, str] = Field(default_factory=dict)
    require_resource: bool = False
    require_scope: bool = False

    client_metadata_document_enabled: bool = True
    client_metadata_document_allowed_hosts: list[str] | None = None
    client_metadata_document_blocked_hosts: list[str] = Field(default_factory=list)
    client_metadata_document_cache_ttl: int = Field(default=3600, gt=0)
    client_metadata_document_max_response_size: int = Field(default=5120, gt=0)
    client_metadata_document_connect_timeout: float = 5.0
    client_metadata_document_read_timeout: float = 5.0

    token_endpoint_auth_methods_supported: list[str] = Field(
        default_factory=lambda: ["none", "client_secret_basic", "client_secret_post"]
    )
    service_documentation: str | None = None

    storage_path: Path | None = None
    audit_log_path: Path | None = None

    @field_validator("require_resource")
    @classmethod
    def _resources_needed_when_required(cls, value: bool, info) -> bool:
        if value and not info.data.get("resources"):
            raise ValueError("require_resource needs at least one configured resource")
        return value

    @field_validator("require_scope")
    @classmethod
    def _scopes_needed_when_required(cls, value: bool, info) -> bool:
        if value and not info.data.get("scopes"):
            raise ValueError("require_scope needs at least one configured scope")
        return value

    @property
    def resources_enabled(self) -> bool:
        return bool(self.resources)

    @property
    def scopes_enabled(self) -> bool:
        return bool(self.scopes)

    @property
    def signing_keys(self) -> list[str]:
        """Current key first, then keys still accepted during rotation."""
        return [self.secret_key, *[k for k in self.previous_secret_keys if k]]

    def ensure_secret_key(self) -> Settings:
        """Return settings with a secret key, generating a transient one if unset."""
        if self.secret_key:
            return self
        logger.warning(
            "No secret_key configured - generated a transient key. "
            "Issued tokens and client secrets will not survive a restart."
        )
        return self.model_copy(update={"secret_key": secrets.token_hex(32)})

    @classmethod
    def load(cls, path: Path | None = None) -> Settings:
        """Load settings from ``config.json`` plus environment overrides."""
        path = path or get_config_dir() / "config.json"
        data: dict = {}
        if path.exists():
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to read settings from %s: %s", path, exc)

        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                data[field_name] = value

        try:
            settings = cls(**data)
        except ValidationError as exc:
            from tokensmith.errors import ConfigurationError

            raise ConfigurationError(f"Invalid settings in {path}: {exc}") from exc
        return settings.ensure_secret_key()


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
