"""Timer-driven reconciliation and settlement loop for the pool."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from engine.chain_client import ChainIndexer, LedgerClient, PriceFeed
from engine.detector import DetectedEvent, TransactionDetector
from engine.pricing import BondingCurve
from engine.settlement import (
    SettlementFailed,
    SettlementKind,
    SettlementProcessor,
    SettlementResult,
)
from engine.settlement_queue import SettlementQueue
from engine.state import ReserveState, StateStoreAdapter, StateUnavailable

LOGGER = logging.getLogger("token_liquidity.reconciler")


class LoopState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    NO_NEW_EVENTS = "no_new_events"
    HAS_NEW_EVENTS = "has_new_events"
    SETTLING = "settling"
    AWAITING_PROPAGATION = "awaiting_propagation"


@dataclass(frozen=True)
class LoopTimings:
    poll_interval_sec: float = 120.0
    propagation_delay_sec: float = 300.0
    consolidate_interval_sec: float = 6000.0
    price_refresh_interval_sec: float = 300.0
    status_interval_sec: float = 3600.0
    persist_interval_sec: float = 600.0


class ReconciliationLoop:
    """
    Detect new pool transactions and settle them one at a time.

    A single scheduler task runs ``run_cycle`` and sleeps ``poll_interval_sec``
    between cycles, so a new detection never starts while settlements from the
    previous cycle (including their propagation waits) are outstanding.
    Maintenance timers run as separate tasks and route anything that touches
    the reserve state or the wallet through the settlement queue.
    """

    def __init__(
        self,
        *,
        pool_address: str,
        token_id: str,
        state: ReserveState,
        store: StateStoreAdapter,
        detector: TransactionDetector,
        processor: SettlementProcessor,
        queue: SettlementQueue,
        indexer: ChainIndexer,
        ledger: LedgerClient,
        price_feed: PriceFeed,
        curve: BondingCurve,
        timings: LoopTimings | None = None,
        token_custody_address: str | None = None,
        max_event_failures: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pool_address = pool_address
        self.token_id = token_id
        self.state = state
        self.store = store
        self.detector = detector
        self.processor = processor
        self.queue = queue
        self.indexer = indexer
        self.ledger = ledger
        self.price_feed = price_feed
        self.curve = curve
        self.timings = timings or LoopTimings()
        self.token_custody_address = token_custody_address
        # Tokens live at the custody address when one is configured.
        self.token_address = token_custody_address or pool_address
        self.max_event_failures = max_event_failures
        # Cycles in which an event failed permanently, per transaction id.
        self._event_failures: dict[str, int] = {}
        self.loop_state = LoopState.IDLE
        self._sleep = sleep
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    async def bootstrap(self, *, first_run: bool, seed_seen_from_history: bool) -> None:
        """Prime the state at startup: history seeding, price and balances."""
        if first_run and seed_seen_from_history:
            history = await self.indexer.get_address_history(self.pool_address)
            self.state.mark_seen(*history.transaction_ids)
            LOGGER.info(
                "First run: treating %d existing transaction(s) as already processed.",
                len(history.transaction_ids),
            )
        await self.refresh_price()
        await self.resync_balances()
        await self.persist()
        self.log_liquidity(self.state)

    async def run(self) -> None:
        self._tasks = [
            asyncio.create_task(
                self._every(
                    self.timings.price_refresh_interval_sec, self.refresh_price
                ),
                name="price-refresh",
            ),
            asyncio.create_task(
                self._every(self.timings.consolidate_interval_sec, self.consolidate),
                name="consolidate",
            ),
            asyncio.create_task(
                self._every(self.timings.status_interval_sec, self.log_status),
                name="status",
            ),
            asyncio.create_task(
                self._every(self.timings.persist_interval_sec, self.persist),
                name="persist",
            ),
        ]
        LOGGER.info(
            "Token liquidity loop running for %s (poll every %ss).",
            self.pool_address,
            self.timings.poll_interval_sec,
        )
        try:
            while not self._stopping.is_set():
                await self._sleep_or_stop(self.timings.poll_interval_sec)
                if self._stopping.is_set():
                    break
                try:
                    await self.run_cycle()
                except Exception as exc:
                    self.loop_state = LoopState.IDLE
                    LOGGER.error("Reconciliation cycle failed: %s", exc, exc_info=True)
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

    def stop(self) -> None:
        self._stopping.set()

    async def run_cycle(self) -> list[SettlementResult]:
        """Run one Idle -> Detecting -> ... -> Idle pass."""
        self.loop_state = LoopState.DETECTING
        known = frozenset(self.state.seen_transaction_ids)
        events = await self.detector.detect(known)
        if not events:
            self.loop_state = LoopState.NO_NEW_EVENTS
            await self.resync_balances()
            snapshot = self.state.snapshot()
            LOGGER.info(
                "Checking transactions... nothing new. base=%s token=%s",
                snapshot.base_balance,
                snapshot.token_balance,
            )
            self.loop_state = LoopState.IDLE
            return []

        self.loop_state = LoopState.HAS_NEW_EVENTS
        LOGGER.info("Checking transactions... %d new transaction(s) found.", len(events))
        results: list[SettlementResult] = []
        for index, event in enumerate(events):
            self.loop_state = LoopState.SETTLING
            try:
                result = await self.queue.run(lambda event=event: self._settle(event))
            except SettlementFailed as exc:
                if exc.permanent and self._give_up_on(event):
                    await self.queue.run(lambda event=event: self._abandon(event))
                    continue
                LOGGER.error(
                    "%s Leaving it and %d later transaction(s) for the next cycle.",
                    exc,
                    len(events) - index - 1,
                    extra={"transaction_id": event.transaction_id},
                )
                break
            if result is not None:
                results.append(result)
        self.loop_state = LoopState.IDLE
        return results

    async def _settle(self, event: DetectedEvent) -> SettlementResult | None:
        if event.transaction_id in self.state.seen_transaction_ids:
            LOGGER.debug("Skipping already settled transaction %s", event.transaction_id)
            return None
        snapshot = self.state.snapshot()
        LOGGER.info(
            "Processing transaction %s at base=%s token=%s",
            event.transaction_id,
            snapshot.base_balance,
            snapshot.token_balance,
            extra={"transaction_id": event.transaction_id},
        )
        result = await self.processor.process(
            event, snapshot.base_balance, snapshot.token_balance
        )
        self._event_failures.pop(event.transaction_id, None)
        self.state.apply_balances(result.base_balance, result.token_balance)
        self.state.mark_seen(event.transaction_id, result.settlement_transaction_id)
        self.store.save(self.state)
        LOGGER.info(
            "Settled %s as %s. base=%s token=%s",
            event.transaction_id,
            result.kind.value,
            result.base_balance,
            result.token_balance,
            extra={"transaction_id": event.transaction_id},
        )
        if result.settlement_transaction_id is not None:
            # Change outputs are not spendable until the network sees the transfer.
            self.loop_state = LoopState.AWAITING_PROPAGATION
            LOGGER.info(
                "Waiting %ss for %s to propagate before the next settlement.",
                self.timings.propagation_delay_sec,
                result.settlement_transaction_id,
            )
            await self._sleep(self.timings.propagation_delay_sec)
            self.loop_state = LoopState.SETTLING
        if self._should_sweep(result):
            await self._sweep_tokens(result)
        return result

    def _give_up_on(self, event: DetectedEvent) -> bool:
        failures = self._event_failures.get(event.transaction_id, 0) + 1
        self._event_failures[event.transaction_id] = failures
        return failures >= self.max_event_failures

    async def _abandon(self, event: DetectedEvent) -> None:
        failures = self._event_failures.pop(event.transaction_id, 0)
        LOGGER.error(
            "Giving up on %s after %d failed cycle(s); marking it seen. "
            "It needs manual review.",
            event.transaction_id,
            failures,
            extra={"transaction_id": event.transaction_id, "needs_review": True},
        )
        self.state.mark_seen(event.transaction_id)
        self.store.save(self.state)

    def _should_sweep(self, result: SettlementResult) -> bool:
        return (
            self.token_custody_address is not None
            and result.kind is SettlementKind.BASE
            and result.rejection is None
            and result.received > 0
        )

    async def _sweep_tokens(self, result: SettlementResult) -> None:
        """Move tokens received in a sell to the custody address."""
        if self.token_custody_address is None:
            return
        try:
            sweep_id = await self.ledger.send_token(
                self.token_custody_address,
                self.token_id,
                result.received,
                reference=f"{result.transaction_id}:custody",
            )
        except Exception as exc:
            LOGGER.warning(
                "Failed to move %s tokens to custody address %s: %s",
                result.received,
                self.token_custody_address,
                exc,
            )
            return
        self.state.mark_seen(sweep_id)
        self.store.save(self.state)
        LOGGER.info(
            "Moved %s tokens to custody address %s (txid=%s)",
            result.received,
            self.token_custody_address,
            sweep_id,
        )
        await self._sleep(self.timings.propagation_delay_sec)

    async def resync_balances(self) -> None:
        history = await self.indexer.get_address_history(self.pool_address)
        token_balance = await self.indexer.get_token_balance(
            self.token_address, self.token_id
        )

        async def apply() -> None:
            self.state.apply_balances(history.balance, token_balance)

        await self.queue.run(apply)

    async def refresh_price(self) -> None:
        usd_per_base = await self.price_feed.get_usd_per_base()
        if usd_per_base <= 0:
            LOGGER.warning("Ignoring non-positive base price %s", usd_per_base)
            return

        async def apply() -> None:
            self.state.usd_per_base = usd_per_base

        await self.queue.run(apply)
        LOGGER.info(
            "USD per base: %s, token spot price: $%s",
            usd_per_base,
            self.curve.spot_price(self.state.base_balance, usd_per_base),
        )

    async def consolidate(self) -> None:
        LOGGER.info("Consolidating spendable outputs for %s", self.pool_address)
        await self.queue.run(self.ledger.consolidate_spendable_units)

    async def persist(self) -> None:
        async def save() -> None:
            self.store.save(self.state)

        await self.queue.run(save)

    def log_status(self) -> None:
        try:
            persisted = self.store.load()
        except StateUnavailable as exc:
            LOGGER.warning("Status: persisted state unavailable (%s)", exc)
            return
        self.log_liquidity(persisted)

    def log_liquidity(self, state: ReserveState) -> None:
        LOGGER.info(
            "usdPerBase: %s, base balance: %s, actual token balance: %s, "
            "effective token balance: %s",
            state.usd_per_base,
            state.base_balance,
            state.token_balance,
            self.curve.effective_token_balance(state.base_balance),
        )

    async def _every(
        self, interval: float, action: Callable[[], Awaitable[None] | None]
    ) -> None:
        while not self._stopping.is_set():
            await self._sleep_or_stop(interval)
            if self._stopping.is_set():
                return
            try:
                outcome = action()
                if outcome is not None:
                    await outcome
            except Exception as exc:
                LOGGER.warning(
                    "Maintenance task %s failed: %s",
                    getattr(action, "__name__", action),
                    exc,
                )

    async def _sleep_or_stop(self, interval: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(interval))
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, stopper):
                if not pending.done():
                    pending.cancel()
