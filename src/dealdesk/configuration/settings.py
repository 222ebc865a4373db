"""Typed settings for the inbound mail listener.

Settings are pydantic models so the service and CLI can rely on validated
values. They load from an optional JSON file, then explicit overrides, then
environment variables. A keyring-backed secret store holds credentials the
listener generates itself.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from dealdesk.errors import InvalidConfigError, MissingConfigError


DEFAULT_CONFIG_PATH = Path.home() / ".dealdesk" / "listener.json"
DEFAULT_SECRETS_SERVICE = "dealdesk"


class MailboxSettings(BaseModel):
    """IMAP account the listener watches."""

    username: str = Field(..., min_length=1, description="Mailbox login")
    password: SecretStr = Field(..., description="Mailbox password or app password")
    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP TLS port")
    folder: str = Field(default="INBOX", min_length=1, description="Folder to watch")
    window_days: int = Field(
        default=7, ge=1, le=365, description="Trailing window for unread mail"
    )
    connection_timeout: int = Field(default=30, ge=1, le=300)

    @field_validator("port")
    @classmethod
    def _require_tls_port(cls, value: int) -> int:
        if value == 143:
            raise ValueError("Plain IMAP (port 143) is unsupported; TLS required")
        return value


class ReconnectSettings(BaseModel):
    """Bounded reconnect policy."""

    delay_seconds: float = Field(default=30.0, ge=0.0, le=3600.0)
    max_attempts: int = Field(default=5, ge=1, le=100)
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_delay_seconds: float = Field(default=600.0, ge=0.0, le=86400.0)
    jitter: bool = False


class ListenerSettings(BaseModel):
    """Root configuration of the inbound mail listener."""

    mailbox: MailboxSettings
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    dedup_capacity: int = Field(default=10_000, ge=1)
    directory_refresh_seconds: int = Field(
        default=300, ge=0, description="Periodic directory refresh, 0 disables"
    )
    idle_renewal_seconds: int = Field(default=600, ge=30, le=1740)
    idle_check_timeout: float = Field(default=5.0, gt=0.0, le=60.0)
    fetch_unread_on_start: bool = False
    auto_provision_fallback: bool = False
    fallback_admin_address: Optional[str] = None

    @field_validator("fallback_admin_address")
    @classmethod
    def _normalize_fallback(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if not value:
            return None
        if "@" not in value:
            raise ValueError(f"Invalid fallback admin address: {value}")
        return value


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except PasswordDeleteError:
            return


def load_listener_settings(
    path: Optional[Path] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ListenerSettings:
    """Load settings from disk, overrides and the environment.

    Raises:
        MissingConfigError: If the mailbox username or password is absent
        InvalidConfigError: If any value fails validation
    """

    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise MissingConfigError(f"Settings file not found at {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidConfigError(f"Settings file {path} is not valid JSON: {exc}") from exc

    data = _apply_overrides(data, overrides or {})
    data = _apply_env_overrides(data, environ)

    mailbox = data.get("mailbox", {})
    missing = [key for key in ("username", "password") if not mailbox.get(key)]
    if missing:
        raise MissingConfigError(
            "Mailbox credentials missing: " + ", ".join(missing),
            details={"missing": missing},
        )

    try:
        return ListenerSettings.model_validate(data)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid configuration: {exc}") from exc


def mask_settings(settings: ListenerSettings) -> Dict[str, Any]:
    """Render settings for display with secrets masked."""

    payload = settings.model_dump(mode="json")
    payload["mailbox"]["password"] = "***"
    return payload


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    mailbox = data.setdefault("mailbox", {})
    _set_env_override(mailbox, "username", "EMAIL_USERNAME", environ)
    _set_env_override(mailbox, "password", "EMAIL_PASSWORD", environ)
    _set_env_override(mailbox, "host", "IMAP_HOST", environ)
    _set_env_override(mailbox, "port", "IMAP_PORT", environ, cast_int=True)
    _set_env_override(mailbox, "folder", "IMAP_MAILBOX", environ)
    _set_env_override(mailbox, "window_days", "EMAIL_LISTENER_WINDOW_DAYS", environ, cast_int=True)

    reconnect = data.setdefault("reconnect", {})
    _set_env_override(reconnect, "delay_seconds", "EMAIL_LISTENER_RECONNECT_DELAY", environ, cast_float=True)
    _set_env_override(reconnect, "max_attempts", "EMAIL_LISTENER_MAX_RECONNECT_ATTEMPTS", environ, cast_int=True)
    _set_env_override(reconnect, "backoff", "EMAIL_LISTENER_BACKOFF", environ)

    _set_env_override(data, "dedup_capacity", "EMAIL_LISTENER_DEDUP_CAPACITY", environ, cast_int=True)
    _set_env_override(data, "directory_refresh_seconds", "EMAIL_LISTENER_REFRESH_INTERVAL", environ, cast_int=True)
    _set_env_override(data, "auto_provision_fallback", "EMAIL_LISTENER_AUTO_PROVISION", environ, cast_bool=True)
    _set_env_override(data, "fallback_admin_address", "EMAIL_LISTENER_FALLBACK_ADDRESS", environ)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    environ: Mapping[str, str],
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = environ.get(env_name)
    if raw is None or raw == "":
        return
    try:
        if cast_bool:
            mapping[key] = raw.lower() in {"1", "true", "yes"}
        elif cast_int:
            mapping[key] = int(raw)
        elif cast_float:
            mapping[key] = float(raw)
        else:
            mapping[key] = raw
    except ValueError as exc:
        raise InvalidConfigError(f"{env_name}={raw!r} is not a valid value") from exc
