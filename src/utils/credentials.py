"""Credential loading helpers for the wallet service."""

from __future__ import annotations

import os
import re
from typing import Mapping

import keyring
from keyring.errors import KeyringError

DEFAULT_SERVICE_NAME = "token-liquidity"
DEFAULT_WALLET_KEY_ENV = "TOKEN_LIQUIDITY_WALLET_API_KEY"
DEFAULT_WALLET_KEY_USERNAME = "wallet_api_key"
_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def load_wallet_api_key(
    service_name: str = DEFAULT_SERVICE_NAME,
    config: Mapping[str, object] | None = None,
    *,
    env_var: str = DEFAULT_WALLET_KEY_ENV,
    username: str = DEFAULT_WALLET_KEY_USERNAME,
) -> str | None:
    """Load the wallet API key from config, env var, or keyring in order.

    The wallet service may run without authentication on localhost, so a
    missing key is returned as ``None`` rather than raised.
    """
    api_key = _resolve_value(config, "wallet_api_key")
    if not api_key:
        api_key = _clean_value(os.getenv(env_var))
    if not api_key:
        api_key = _get_keyring_value(service_name, username)
    return api_key


def store_wallet_api_key(
    service_name: str,
    api_key: str,
    *,
    username: str = DEFAULT_WALLET_KEY_USERNAME,
) -> None:
    """Store the wallet API key in the OS keychain via keyring."""
    value = _clean_value(api_key)
    if not value:
        raise ValueError("wallet_api_key must be a non-empty string.")
    try:
        keyring.set_password(service_name, username, value)
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to store credentials in the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc


def _resolve_value(config: Mapping[str, object] | None, key: str) -> str | None:
    if not config or key not in config:
        return None
    raw = config.get(key)
    if not isinstance(raw, str):
        return _clean_value(str(raw)) if raw is not None else None
    raw = raw.strip()
    if not raw:
        return None
    match = _ENV_PATTERN.match(raw)
    if match:
        return _clean_value(os.getenv(match.group(1)))
    return _clean_value(raw)


def _clean_value(value: str | None) -> str | None:
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _get_keyring_value(service_name: str, username: str) -> str | None:
    try:
        return _clean_value(keyring.get_password(service_name, username))
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to access the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc
