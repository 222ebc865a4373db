"""Configuration loading utilities for dealdesk."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    ListenerSettings,
    MailboxSettings,
    ReconnectSettings,
    SecretStore,
    load_listener_settings,
    mask_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ListenerSettings",
    "MailboxSettings",
    "ReconnectSettings",
    "SecretStore",
    "load_listener_settings",
    "mask_settings",
]
