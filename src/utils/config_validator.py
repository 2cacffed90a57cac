"""Configuration validation utilities for the token liquidity pool."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

NETWORKS = {"mainnet", "testnet"}


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


def validate_required_string(config: dict[str, Any], field: str) -> None:
    """Validate that a field is present and a non-empty string."""
    if field not in config:
        raise ConfigurationError(f"Missing required field: {field}")
    value = config[field]
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{field} must be a non-empty string")


def validate_address(config: dict[str, Any], field: str = "pool_address") -> None:
    """Validate a cash address, with or without its network prefix."""
    validate_required_string(config, field)
    address = config[field].strip()
    if not re.match(
        r"^((bitcoincash|bchtest|bchreg):)?[qpzry9x8gf2tvdw0s3jn54khce6mua7l]{42}$",
        address,
        re.IGNORECASE,
    ):
        raise ConfigurationError(
            f"{field} '{address}' does not look like a cash address "
            "(e.g. bitcoincash:qq...)"
        )


def validate_token_id(config: dict[str, Any], field: str = "token_id") -> None:
    """Validate that the token id is a 64 character hex string."""
    validate_required_string(config, field)
    if not re.match(r"^[0-9a-f]{64}$", config[field].strip(), re.IGNORECASE):
        raise ConfigurationError(f"{field} must be a 64 character hex token id")


def validate_positive_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a positive decimal value."""
    if field not in config:
        if required:
            raise ConfigurationError(f"Missing required field: {field}")
        return

    value = config[field]
    try:
        decimal_value = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigurationError(
            f"{field} must be a valid number, got: {value}"
        ) from exc

    if not decimal_value.is_finite() or decimal_value <= 0:
        raise ConfigurationError(f"{field} must be positive, got: {decimal_value}")


def validate_non_negative_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a non-negative decimal value."""
    if field not in config:
        if required:
            raise ConfigurationError(f"Missing required field: {field}")
        return

    value = config[field]
    try:
        decimal_value = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigurationError(
            f"{field} must be a valid number, got: {value}"
        ) from exc

    if not decimal_value.is_finite() or decimal_value < 0:
        raise ConfigurationError(
            f"{field} must be non-negative, got: {decimal_value}"
        )


def validate_positive_integer(
    config: dict[str, Any], field: str, *, required: bool = True, minimum: int = 1
) -> None:
    """Validate that a field is a positive integer."""
    if field not in config:
        if required:
            raise ConfigurationError(f"Missing required field: {field}")
        return

    value = config[field]
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigurationError(
            f"{field} must be an integer, got: {type(value).__name__}"
        )

    if value < minimum:
        raise ConfigurationError(f"{field} must be >= {minimum}, got: {value}")


def validate_choice(
    config: dict[str, Any], field: str, choices: set[str], *, required: bool = True
) -> None:
    """Validate that a field is one of the allowed choices."""
    if field not in config:
        if required:
            raise ConfigurationError(f"Missing required field: {field}")
        return

    value = config[field]
    if not isinstance(value, str):
        raise ConfigurationError(
            f"{field} must be a string, got: {type(value).__name__}"
        )

    if value not in choices:
        choices_str = ", ".join(sorted(choices))
        raise ConfigurationError(
            f"{field} must be one of [{choices_str}], got: {value}"
        )


def validate_url(config: dict[str, Any], field: str) -> None:
    """Validate that a URL field is properly formatted."""
    if field not in config:
        return  # URLs fall back to per-network defaults

    url = config[field]
    if not isinstance(url, str) or not url.strip():
        raise ConfigurationError(f"{field} must be a non-empty string")

    if not re.match(r"^https?://", url, re.IGNORECASE):
        raise ConfigurationError(
            f"{field} must start with http:// or https://, got: {url}"
        )


def validate_config(config: dict[str, Any]) -> None:
    """
    Validate the pool configuration.

    Args:
        config: Configuration dictionary

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    if not config:
        raise ConfigurationError("Configuration cannot be empty")

    validate_choice(config, "network", NETWORKS, required=False)
    validate_address(config, "pool_address")
    validate_token_id(config, "token_id")
    if config.get("token_custody_address") is not None:
        validate_address(config, "token_custody_address")

    # Bonding-curve anchor
    validate_positive_decimal(config, "initial_base_balance", required=True)
    validate_positive_decimal(config, "initial_token_balance", required=True)

    for url_field in ("indexer_url", "wallet_url", "price_url"):
        validate_url(config, url_field)

    for interval in (
        "poll_interval_sec",
        "propagation_delay_sec",
        "consolidate_interval_sec",
        "price_refresh_interval_sec",
        "status_interval_sec",
        "persist_interval_sec",
        "rest_timeout_sec",
        "call_timeout_sec",
        "settlement_backoff_sec",
        "settlement_max_backoff_sec",
        "indexer_rate_limit",
    ):
        validate_positive_decimal(config, interval, required=False)

    validate_positive_integer(config, "settlement_max_attempts", required=False)
    validate_positive_integer(config, "max_event_failures", required=False)
    validate_positive_integer(config, "rest_retries", required=False, minimum=0)
    validate_positive_integer(config, "base_decimals", required=False, minimum=0)
    validate_positive_integer(config, "token_decimals", required=False, minimum=0)
    validate_non_negative_decimal(config, "network_fee", required=False)
    validate_non_negative_decimal(config, "dust_threshold", required=False)
    validate_non_negative_decimal(config, "rest_backoff_factor", required=False)

    if "seed_seen_from_history" in config and not isinstance(
        config["seed_seen_from_history"], bool
    ):
        raise ConfigurationError("seed_seen_from_history must be a boolean")
