"""Client settings for the PKCE flows.

Settings come from four layers, later ones winning: model defaults, a
JSON/YAML settings file, ``IAM_PKCE_*`` environment variables (a local
``.env`` is read first) and explicit overrides such as CLI options.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "IAM_PKCE_"
DEFAULT_SCOPE = "openid profile email"
DEFAULT_STORAGE_PREFIX = "iam_pkce_"


class ConfigError(Exception):
    """Settings could not be read or did not validate."""


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Config(BaseModel):
    """Identity provider coordinates and flow tuning for one client.

    ``token_store_path`` together with ``token_encryption_key`` selects
    the encrypted file storage, which is what lets a redirect login
    started by one process be completed by another.
    """

    model_config = ConfigDict(validate_assignment=True)

    server_url: str = Field(
        default="http://localhost:8000", description="Identity provider base URL"
    )
    client_id: str = Field(default="app", description="Public OAuth client identifier")
    redirect_uri: str = Field(
        default="http://localhost:3000/auth/callback",
        description="Registered redirect URI, also the prefix callbacks are matched on",
    )
    scope: str = Field(default=DEFAULT_SCOPE, description="Space-separated scopes")
    app_name: str | None = Field(default=None, description="Application name for signup URLs")
    org_name: str | None = Field(default=None, description="Organization name for profile URLs")

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Package log level")

    storage_prefix: str = Field(
        default=DEFAULT_STORAGE_PREFIX, description="Prefix of every storage key"
    )
    popup_poll_interval: float = Field(
        default=0.2, gt=0, description="Seconds between popup location checks"
    )
    silent_timeout: float = Field(
        default=5.0, gt=0, description="Seconds a silent sign-in may take"
    )
    refresh_leeway: float = Field(
        default=60.0, ge=0, description="Seconds before expiry the scheduler refreshes"
    )
    http_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    token_store_path: str | None = Field(
        default=None, description="Encrypted storage file shared across processes"
    )
    token_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet key for token_store_path"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("server_url", "redirect_uri")
    @classmethod
    def require_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = f"must be an http(s) URL, got {v!r}"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_persistent_storage(self) -> Config:
        if self.token_store_path and not self.token_encryption_key:
            msg = "token_encryption_key is required when token_store_path is set"
            raise ValueError(msg)
        return self


# Environment variable suffix for each field
_ENV_NAMES = {name: name.upper() for name in Config.model_fields}

_NUMERIC_FIELDS = frozenset(
    {"popup_poll_interval", "silent_timeout", "refresh_leeway", "http_timeout"}
)

_SECRET_FIELDS = frozenset({"token_encryption_key"})

# Settings files may use the JavaScript SDK's camelCase names
_FILE_ALIASES = {
    "serverUrl": "server_url",
    "clientId": "client_id",
    "redirectUri": "redirect_uri",
    "appName": "app_name",
    "orgName": "org_name",
    "logLevel": "log_level",
    "storagePrefix": "storage_prefix",
}


def _from_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field_name, suffix in _ENV_NAMES.items():
        raw: Any = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is None:
            continue
        if field_name in _NUMERIC_FIELDS:
            # leave unparsable numbers for the model to report
            with contextlib.suppress(ValueError):
                raw = float(raw)
        values[field_name] = raw
    return values


def _from_file(path: str | Path) -> dict[str, Any]:
    """Read a JSON or YAML settings file into field names."""
    path = Path(path)
    if not path.is_file():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    text = path.read_text()
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            raw = json.loads(text)
        elif suffix in (".yaml", ".yml"):
            try:
                import yaml
            except ImportError:
                msg = "PyYAML is required to load YAML configuration files"
                raise ConfigError(msg) from None
            raw = yaml.safe_load(text) or {}
        else:
            msg = f"Unsupported configuration file format: {suffix}"
            raise ConfigError(msg)
    except ValueError as e:
        msg = f"Could not parse {path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(raw, dict):
        msg = f"Configuration file {path} must contain a mapping"
        raise ConfigError(msg)
    return {_FILE_ALIASES.get(key, key): value for key, value in raw.items()}


def _shown(key: str, value: Any) -> str:
    return "***" if key in _SECRET_FIELDS and value else str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Build the client settings from every layer.

    Precedence, highest first: ``cli_args``, environment, settings
    file, defaults. ``None`` values in ``cli_args`` are skipped so
    unset CLI options do not mask lower layers.

    Args:
        path: Optional JSON or YAML settings file
        cli_args: Explicit overrides keyed by field name

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If a layer cannot be read or the result is invalid
    """
    load_dotenv()

    merged: dict[str, Any] = {}
    if path:
        logger.debug("Reading settings file %s", path)
        merged.update(_from_file(path))

    for source, values in (
        ("environment", _from_env()),
        ("CLI", {k: v for k, v in (cli_args or {}).items() if v is not None}),
    ):
        for key, value in values.items():
            logger.debug("Config %s from %s: %s", key, source, _shown(key, value))
            merged[key] = value

    try:
        return Config(**merged)
    except ValueError as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
