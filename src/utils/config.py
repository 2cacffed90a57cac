"""Configuration loading for the token liquidity pool."""

from __future__ import annotations

import importlib.util
import json
import os
import re
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml

from chain_client.constants import default_urls
from utils.config_validator import ConfigurationError, validate_config

SUPPORTED_FORMATS = (".json", ".toml", ".yaml", ".yml")
ENV_PREFIX = "TOKEN_LIQUIDITY_"
_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


@dataclass(frozen=True)
class PoolConfig:
    pool_address: str
    token_id: str
    initial_base_balance: Decimal
    initial_token_balance: Decimal
    network: str = "mainnet"
    state_path: Path = Path("state.json")
    indexer_url: str = ""
    wallet_url: str = ""
    price_url: str = ""
    token_custody_address: str | None = None
    poll_interval_sec: float = 120.0
    propagation_delay_sec: float = 300.0
    consolidate_interval_sec: float = 6000.0
    price_refresh_interval_sec: float = 300.0
    status_interval_sec: float = 3600.0
    persist_interval_sec: float = 600.0
    rest_timeout_sec: float = 15.0
    rest_retries: int = 3
    rest_backoff_factor: float = 0.5
    indexer_rate_limit: float | None = None
    call_timeout_sec: float = 60.0
    settlement_max_attempts: int = 5
    settlement_backoff_sec: float = 5.0
    settlement_max_backoff_sec: float = 120.0
    network_fee: Decimal = Decimal("0.00000250")
    dust_threshold: Decimal = Decimal("0.00000546")
    base_decimals: int = 8
    token_decimals: int = 8
    seed_seen_from_history: bool = True
    max_event_failures: int = 3
    wallet_api_key: str | None = field(default=None, repr=False)


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. Ensure the path is correct and readable."
        )
    suffix = config_path.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        supported = ", ".join(SUPPORTED_FORMATS)
        raise ValueError(
            f"Unsupported config format '{suffix}'. Supported formats: {supported}."
        )
    try:
        if suffix == ".json":
            data = json.loads(config_path.read_text(encoding="utf-8"))
        elif suffix == ".toml":
            data = load_toml(config_path)
        else:
            data = load_yaml(config_path)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config file {config_path}: {exc}. Validate the file format."
        ) from exc
    except (RuntimeError, ValueError):
        raise
    except Exception as exc:
        raise RuntimeError(
            f"Failed to parse config file {config_path}: {exc}."
        ) from exc
    if not isinstance(data, dict):
        raise ValueError(
            f"Config file {config_path} must contain a JSON/TOML/YAML object mapping."
        )
    return data


def load_toml(config_path: Path) -> dict[str, Any]:
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(config_path.read_text(encoding="utf-8"))
    if importlib.util.find_spec("tomli") is None:
        raise RuntimeError(
            "TOML config parsing requires Python 3.11+ or the 'tomli' package. Install tomli or use JSON/YAML."
        )
    import tomli  # type: ignore[import-not-found]

    return tomli.loads(config_path.read_text(encoding="utf-8"))


def load_yaml(config_path: Path) -> dict[str, Any]:
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"YAML config file {config_path} must contain a mapping at the top level."
        )
    return data


def apply_env_overrides(
    config: Mapping[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay TOKEN_LIQUIDITY_<KEY> variables and resolve ${VAR} placeholders."""
    env = os.environ if environ is None else environ
    merged = dict(config)
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX) :].lower()
        merged[key] = _parse_env_value(raw)
    for key, value in list(merged.items()):
        if isinstance(value, str):
            match = _ENV_PATTERN.match(value.strip())
            if match:
                resolved = env.get(match.group(1))
                if resolved is None:
                    del merged[key]
                else:
                    merged[key] = _parse_env_value(resolved)
    return merged


def _parse_env_value(raw: str) -> Any:
    # Numbers stay strings so hex ids survive; validators accept numeric strings.
    lowered = raw.strip().lower()
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no", "off"}:
        return False
    return raw.strip()


def build_pool_config(
    raw: Mapping[str, Any],
    *,
    base_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> PoolConfig:
    config = apply_env_overrides(raw, environ)
    validate_config(config)
    network = str(config.get("network", "mainnet"))
    urls = default_urls(network)
    state_path = Path(str(config.get("state_path", "state.json"))).expanduser()
    if not state_path.is_absolute() and base_dir is not None:
        state_path = base_dir / state_path
    rate_limit = config.get("indexer_rate_limit")
    custody = config.get("token_custody_address")
    return PoolConfig(
        pool_address=str(config["pool_address"]).strip(),
        token_id=str(config["token_id"]).strip().lower(),
        initial_base_balance=Decimal(str(config["initial_base_balance"])),
        initial_token_balance=Decimal(str(config["initial_token_balance"])),
        network=network,
        state_path=state_path,
        indexer_url=str(config.get("indexer_url", urls["indexer"])),
        wallet_url=str(config.get("wallet_url", urls["wallet"])),
        price_url=str(config.get("price_url", urls["price"])),
        token_custody_address=str(custody).strip() if custody else None,
        poll_interval_sec=float(config.get("poll_interval_sec", 120)),
        propagation_delay_sec=float(config.get("propagation_delay_sec", 300)),
        consolidate_interval_sec=float(config.get("consolidate_interval_sec", 6000)),
        price_refresh_interval_sec=float(
            config.get("price_refresh_interval_sec", 300)
        ),
        status_interval_sec=float(config.get("status_interval_sec", 3600)),
        persist_interval_sec=float(config.get("persist_interval_sec", 600)),
        rest_timeout_sec=float(config.get("rest_timeout_sec", 15)),
        rest_retries=int(config.get("rest_retries", 3)),
        rest_backoff_factor=float(config.get("rest_backoff_factor", 0.5)),
        indexer_rate_limit=float(rate_limit) if rate_limit is not None else None,
        call_timeout_sec=float(config.get("call_timeout_sec", 60)),
        settlement_max_attempts=int(config.get("settlement_max_attempts", 5)),
        settlement_backoff_sec=float(config.get("settlement_backoff_sec", 5)),
        settlement_max_backoff_sec=float(
            config.get("settlement_max_backoff_sec", 120)
        ),
        network_fee=Decimal(str(config.get("network_fee", "0.00000250"))),
        dust_threshold=Decimal(str(config.get("dust_threshold", "0.00000546"))),
        base_decimals=int(config.get("base_decimals", 8)),
        token_decimals=int(config.get("token_decimals", 8)),
        seed_seen_from_history=bool(config.get("seed_seen_from_history", True)),
        max_event_failures=int(config.get("max_event_failures", 3)),
        wallet_api_key=_optional_str(config.get("wallet_api_key")),
    )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def load_pool_config(
    config_path: Path, environ: Mapping[str, str] | None = None
) -> PoolConfig:
    raw = load_config(config_path)
    try:
        return build_pool_config(raw, base_dir=config_path.parent, environ=environ)
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
