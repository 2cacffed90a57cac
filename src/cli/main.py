"""CLI entry point for the token liquidity service."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import signal
from dataclasses import dataclass
from pathlib import Path

from chain_client.async_rest import AsyncRestClient, AsyncRestError
from chain_client.indexer import BlockbookIndexer
from chain_client.price_feed import SpotPriceFeed
from chain_client.wallet import WalletServiceClient
from engine.chain_client import TransientNetworkError
from engine.detector import TransactionDetector
from engine.pricing import BondingCurve
from engine.reconciler import LoopTimings, ReconciliationLoop
from engine.settlement import RetryPolicy, SettlementConfig, SettlementProcessor
from engine.settlement_queue import SettlementQueue
from engine.state import JsonStateStore, StateStoreAdapter, StateUnavailable
from utils.config import PoolConfig, load_pool_config
from utils.config_validator import ConfigurationError
from utils.credentials import (
    DEFAULT_SERVICE_NAME,
    load_wallet_api_key,
    store_wallet_api_key,
)
from utils.logging_config import LogContext, setup_logging
from utils.rate_limiter import AsyncRateLimiter, RateLimitConfig

LOGGER = logging.getLogger("token_liquidity.cli")


@dataclass
class Service:
    config: PoolConfig
    first_run: bool
    loop: ReconciliationLoop
    queue: SettlementQueue
    clients: tuple[AsyncRestClient, ...]

    async def close(self) -> None:
        await self.queue.close()
        for client in self.clients:
            await client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Token liquidity pool service")
    parser.add_argument(
        "--version", action="version", version="token-liquidity 0.1.0"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser(
        "start", help="Run the reconciliation loop until interrupted."
    )
    start_parser.add_argument(
        "--config", required=True, help="Path to JSON/TOML/YAML config file."
    )
    start_parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    start_parser.add_argument(
        "--structured-logs",
        action="store_true",
        help="Emit JSON log lines.",
    )
    start_parser.add_argument("--log-file", help="Optional log file path.")
    start_parser.set_defaults(handler=run_start)

    status_parser = subparsers.add_parser(
        "status", help="Print the persisted liquidity summary."
    )
    status_parser.add_argument(
        "--config", required=True, help="Path to JSON/TOML/YAML config file."
    )
    status_parser.add_argument("--log-level", default="INFO")
    status_parser.set_defaults(handler=run_status)

    credentials_parser = subparsers.add_parser(
        "store-credentials", help="Store the wallet API key in the OS keychain."
    )
    credentials_parser.add_argument(
        "--service-name",
        default=DEFAULT_SERVICE_NAME,
        help="Keychain service name.",
    )
    credentials_parser.add_argument(
        "--api-key", help="Wallet API key (prompted for when omitted)."
    )
    credentials_parser.set_defaults(handler=run_store_credentials)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if hasattr(args, "handler"):
        return args.handler(args)
    parser.print_help()
    return 1


def run_start(args: argparse.Namespace) -> int:
    setup_logging(
        level=args.log_level,
        structured=args.structured_logs,
        sanitize=True,
        log_file=args.log_file,
    )
    try:
        config_path = Path(args.config).expanduser()
        config = load_pool_config(config_path)
        api_key = load_wallet_api_key(
            config={"wallet_api_key": config.wallet_api_key}
        )
        with LogContext(pool_address=config.pool_address):
            asyncio.run(serve(config, api_key))
    except (AsyncRestError, TransientNetworkError) as exc:
        LOGGER.error("Startup failed while contacting a service: %s", exc)
        return 2
    except (ConfigurationError, FileNotFoundError, RuntimeError, ValueError) as exc:
        LOGGER.error(str(exc))
        return 2
    except KeyboardInterrupt:
        LOGGER.info("Interrupted.")
    except Exception as exc:  # pragma: no cover - safeguard for unexpected issues.
        LOGGER.exception("Unexpected error: %s", exc)
        return 3
    return 0


def run_status(args: argparse.Namespace) -> int:
    setup_logging(level=args.log_level, sanitize=True)
    try:
        config_path = Path(args.config).expanduser()
        config = load_pool_config(config_path)
        store = StateStoreAdapter(JsonStateStore(config.state_path))
        state = store.load()
    except StateUnavailable as exc:
        LOGGER.error("No persisted state: %s", exc)
        return 2
    except (ConfigurationError, FileNotFoundError, RuntimeError, ValueError) as exc:
        LOGGER.error(str(exc))
        return 2
    curve = BondingCurve(state.initial_base_balance, state.initial_token_balance)
    print(f"Pool address:            {config.pool_address}")
    print(f"Token id:                {config.token_id}")
    print(f"USD per base:            {state.usd_per_base}")
    print(f"Base balance:            {state.base_balance}")
    print(f"Actual token balance:    {state.token_balance}")
    print(
        "Effective token balance: "
        f"{curve.effective_token_balance(state.base_balance)}"
    )
    print(
        "Token spot price (USD):  "
        f"{curve.spot_price(state.base_balance, state.usd_per_base)}"
    )
    print(f"Processed transactions:  {len(state.seen_transaction_ids)}")
    return 0


def run_store_credentials(args: argparse.Namespace) -> int:
    setup_logging(level="INFO", sanitize=True)
    api_key = args.api_key or getpass.getpass("Wallet API key: ")
    try:
        store_wallet_api_key(args.service_name, api_key)
    except (RuntimeError, ValueError) as exc:
        LOGGER.error(str(exc))
        return 2
    LOGGER.info("Stored wallet API key for service '%s'.", args.service_name)
    return 0


def build_service(config: PoolConfig, api_key: str | None = None) -> Service:
    """Wire the REST adapters, settlement pipeline and loop from config."""
    rate_limiter = None
    if config.indexer_rate_limit is not None:
        rate_limiter = AsyncRateLimiter(
            RateLimitConfig.per_second(config.indexer_rate_limit)
        )
    indexer_rest = AsyncRestClient(
        config.indexer_url,
        timeout=config.rest_timeout_sec,
        max_retries=config.rest_retries,
        backoff_factor=config.rest_backoff_factor,
        rate_limiter=rate_limiter,
    )
    wallet_rest = AsyncRestClient(
        config.wallet_url,
        api_key=api_key,
        timeout=config.rest_timeout_sec,
        # Settlement retries are owned by the processor RetryPolicy.
        max_retries=0,
    )
    price_rest = AsyncRestClient(
        config.price_url,
        timeout=config.rest_timeout_sec,
        max_retries=config.rest_retries,
        backoff_factor=config.rest_backoff_factor,
    )
    indexer = BlockbookIndexer(indexer_rest, config.pool_address)
    ledger = WalletServiceClient(wallet_rest)
    price_feed = SpotPriceFeed(price_rest)

    store = StateStoreAdapter(JsonStateStore(config.state_path))
    state, first_run = store.load_or_initialize(
        config.initial_base_balance, config.initial_token_balance
    )
    curve = BondingCurve(state.initial_base_balance, state.initial_token_balance)
    processor = SettlementProcessor(
        indexer,
        ledger,
        curve,
        SettlementConfig(
            pool_address=config.pool_address,
            token_id=config.token_id,
            network_fee=config.network_fee,
            dust_threshold=config.dust_threshold,
            base_decimals=config.base_decimals,
            token_decimals=config.token_decimals,
            call_timeout_sec=config.call_timeout_sec,
        ),
        RetryPolicy(
            max_attempts=config.settlement_max_attempts,
            backoff_sec=config.settlement_backoff_sec,
            max_backoff_sec=config.settlement_max_backoff_sec,
        ),
    )
    queue = SettlementQueue()
    loop = ReconciliationLoop(
        pool_address=config.pool_address,
        token_id=config.token_id,
        state=state,
        store=store,
        detector=TransactionDetector(indexer, config.pool_address),
        processor=processor,
        queue=queue,
        indexer=indexer,
        ledger=ledger,
        price_feed=price_feed,
        curve=curve,
        timings=LoopTimings(
            poll_interval_sec=config.poll_interval_sec,
            propagation_delay_sec=config.propagation_delay_sec,
            consolidate_interval_sec=config.consolidate_interval_sec,
            price_refresh_interval_sec=config.price_refresh_interval_sec,
            status_interval_sec=config.status_interval_sec,
            persist_interval_sec=config.persist_interval_sec,
        ),
        token_custody_address=config.token_custody_address,
        max_event_failures=config.max_event_failures,
    )
    return Service(
        config=config,
        first_run=first_run,
        loop=loop,
        queue=queue,
        clients=(indexer_rest, wallet_rest, price_rest),
    )


async def serve(config: PoolConfig, api_key: str | None = None) -> None:
    service = build_service(config, api_key)
    install_signal_handlers(service.loop)
    LOGGER.info("Pool address: %s", config.pool_address)
    LOGGER.info("Token id: %s", config.token_id)
    LOGGER.info("State file: %s", config.state_path)
    try:
        await service.loop.bootstrap(
            first_run=service.first_run,
            seed_seen_from_history=config.seed_seen_from_history,
        )
        await service.loop.run()
    finally:
        await service.close()
        LOGGER.info("Token liquidity service stopped.")


def install_signal_handlers(loop: ReconciliationLoop) -> None:
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            event_loop.add_signal_handler(sig, loop.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops; KeyboardInterrupt still ends asyncio.run.
            LOGGER.debug("Signal handler for %s not supported here.", sig)


if __name__ == "__main__":
    raise SystemExit(main())
