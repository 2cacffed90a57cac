"""Settlement of detected pool transactions."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from engine.chain_client import (
    ChainIndexer,
    InsufficientFunds,
    LedgerClient,
    LedgerRejected,
    LedgerUnavailable,
    TransferDetail,
    TransferKind,
    TransientNetworkError,
    same_address,
)
from engine.detector import DetectedEvent
from engine.pricing import BondingCurve, round_down

LOGGER = logging.getLogger("token_liquidity.settlement")

T = TypeVar("T")


class SettlementKind(str, Enum):
    TOKEN = "token"
    BASE = "base"
    NONE = "none"


class SettlementFailed(Exception):
    """Raised when a settlement could not complete and nothing was paid.

    ``permanent`` is set when retrying the same event is not expected to help,
    for example a malformed indexer reply.
    """

    def __init__(
        self,
        transaction_id: str,
        attempts: int,
        cause: Exception,
        *,
        permanent: bool = False,
    ) -> None:
        super().__init__(
            f"Settlement of {transaction_id} failed after {attempts} attempt(s): {cause}"
        )
        self.transaction_id = transaction_id
        self.attempts = attempts
        self.cause = cause
        self.permanent = permanent


class InsufficientReserves(Exception):
    """Raised when the pool cannot honor a requested swap."""

    def __init__(self, message: str, *, required: Decimal, available: Decimal) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


@dataclass(frozen=True)
class SettlementResult:
    transaction_id: str
    kind: SettlementKind
    base_balance: Decimal
    token_balance: Decimal
    settlement_transaction_id: str | None = None
    received: Decimal = Decimal("0")
    paid: Decimal = Decimal("0")
    counterparty_address: str | None = None
    rejection: str | None = None
    # Set when a payout may have been broadcast without a confirmed txid.
    needs_review: bool = False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_sec: float = 5.0
    max_backoff_sec: float = 120.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        base = min(self.backoff_sec * (2 ** (attempt - 1)), self.max_backoff_sec)
        if not self.jitter:
            return base
        return min(base + random.uniform(0, base), self.max_backoff_sec)


@dataclass(frozen=True)
class SettlementConfig:
    pool_address: str
    token_id: str
    network_fee: Decimal = Decimal("0.00000250")
    dust_threshold: Decimal = Decimal("0.00000546")
    base_decimals: int = 8
    token_decimals: int = 8
    call_timeout_sec: float = 60.0


class SettlementProcessor:
    """Classifies one transaction and executes its counter-transfer.

    Indexer reads are bounded by ``call_timeout_sec`` and retried freely.
    The counter-transfer is sent at most once per ``process`` call and is
    never cancelled midway; it is only sent again when the ledger reports
    that nothing was broadcast.
    """

    def __init__(
        self,
        indexer: ChainIndexer,
        ledger: LedgerClient,
        curve: BondingCurve,
        config: SettlementConfig,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.indexer = indexer
        self.ledger = ledger
        self.curve = curve
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def process(
        self,
        event: DetectedEvent,
        base_balance: Decimal,
        token_balance: Decimal,
    ) -> SettlementResult:
        """Settle ``event`` against the pre-transaction reserve snapshot."""
        detail = await self._fetch_detail(event.transaction_id)
        try:
            reason = self._non_economic_reason(detail)
            if reason is not None:
                LOGGER.info(
                    "Transaction %s is not a swap (%s).",
                    event.transaction_id,
                    reason,
                    extra={"transaction_id": event.transaction_id},
                )
                return SettlementResult(
                    transaction_id=event.transaction_id,
                    kind=SettlementKind.NONE,
                    base_balance=base_balance,
                    token_balance=token_balance,
                    counterparty_address=detail.counterparty_address,
                )
            if detail.kind is TransferKind.TOKEN:
                return await self._settle_sell(detail, base_balance, token_balance)
            return await self._settle_buy(detail, base_balance, token_balance)
        except SettlementFailed:
            raise
        except (ArithmeticError, ValueError) as exc:
            raise SettlementFailed(
                event.transaction_id, 1, exc, permanent=True
            ) from exc

    async def _fetch_detail(self, transaction_id: str) -> TransferDetail:
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._call(
                    self.indexer.get_transaction_detail(transaction_id)
                )
            except TransientNetworkError as exc:
                if attempts >= self.retry_policy.max_attempts:
                    raise SettlementFailed(transaction_id, attempts, exc) from exc
                await self._backoff(transaction_id, attempts, exc)
            except Exception as exc:
                raise SettlementFailed(
                    transaction_id, attempts, exc, permanent=True
                ) from exc

    def _non_economic_reason(self, detail: TransferDetail) -> str | None:
        if detail.kind is TransferKind.UNKNOWN:
            return "unrecognized transfer"
        if not detail.counterparty_address:
            return "no sender address"
        if same_address(detail.counterparty_address, self.config.pool_address):
            return "self-generated"
        if detail.amount <= 0:
            return "nothing received"
        if detail.kind is TransferKind.TOKEN:
            if (detail.token_id or "").lower() != self.config.token_id.lower():
                return f"token {detail.token_id} is not the pool token"
        elif detail.amount <= self.config.dust_threshold:
            return f"dust payment of {detail.amount}"
        return None

    async def _settle_sell(
        self, detail: TransferDetail, base_balance: Decimal, token_balance: Decimal
    ) -> SettlementResult:
        received = detail.amount
        owed = self.curve.base_for_tokens(received, base_balance)
        owed = round_down(owed, self.config.base_decimals)
        sender = detail.counterparty_address or ""
        try:
            _require_reserves(owed, base_balance, "base")
        except InsufficientReserves as exc:
            LOGGER.warning(
                "Rejecting sell %s: %s. Returning %s tokens to %s.",
                detail.transaction_id,
                exc,
                received,
                sender,
                extra={"transaction_id": detail.transaction_id},
            )
            return await self._pay(
                lambda: self.ledger.send_token(
                    sender,
                    self.config.token_id,
                    received,
                    reference=detail.transaction_id,
                ),
                SettlementResult(
                    transaction_id=detail.transaction_id,
                    kind=SettlementKind.TOKEN,
                    base_balance=base_balance,
                    token_balance=token_balance,
                    received=received,
                    paid=received,
                    counterparty_address=sender,
                    rejection=str(exc),
                ),
                base_balance,
                token_balance,
            )
        if owed <= 0:
            LOGGER.info(
                "Sell %s of %s tokens is worth less than the base precision.",
                detail.transaction_id,
                received,
                extra={"transaction_id": detail.transaction_id},
            )
            return SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.NONE,
                base_balance=base_balance,
                token_balance=token_balance,
                counterparty_address=sender,
            )
        return await self._pay(
            lambda: self.ledger.send_base(
                sender, owed, reference=detail.transaction_id
            ),
            SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.BASE,
                base_balance=base_balance - owed,
                token_balance=token_balance + received,
                received=received,
                paid=owed,
                counterparty_address=sender,
            ),
            base_balance,
            token_balance,
        )

    async def _settle_buy(
        self, detail: TransferDetail, base_balance: Decimal, token_balance: Decimal
    ) -> SettlementResult:
        received = detail.amount
        owed = self.curve.tokens_for_base(received, base_balance)
        sender = detail.counterparty_address or ""
        try:
            _require_reserves(owed, token_balance, "tokens")
        except InsufficientReserves as exc:
            return await self._refund_buy(detail, base_balance, token_balance, exc)
        owed = round_down(owed, self.config.token_decimals)
        if owed <= 0:
            LOGGER.info(
                "Buy %s of %s base is worth less than the token precision.",
                detail.transaction_id,
                received,
                extra={"transaction_id": detail.transaction_id},
            )
            return SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.NONE,
                base_balance=base_balance,
                token_balance=token_balance,
                counterparty_address=sender,
            )
        return await self._pay(
            lambda: self.ledger.send_token(
                sender, self.config.token_id, owed, reference=detail.transaction_id
            ),
            SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.TOKEN,
                base_balance=base_balance + received,
                token_balance=token_balance - owed,
                received=received,
                paid=owed,
                counterparty_address=sender,
            ),
            base_balance,
            token_balance,
        )

    async def _refund_buy(
        self,
        detail: TransferDetail,
        base_balance: Decimal,
        token_balance: Decimal,
        exc: InsufficientReserves,
    ) -> SettlementResult:
        sender = detail.counterparty_address or ""
        refund = round_down(
            detail.amount - self.config.network_fee, self.config.base_decimals
        )
        if refund <= 0:
            LOGGER.warning(
                "Rejecting buy %s: %s. Payment of %s does not cover the network fee; "
                "nothing refunded.",
                detail.transaction_id,
                exc,
                detail.amount,
                extra={"transaction_id": detail.transaction_id},
            )
            return SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.NONE,
                base_balance=base_balance,
                token_balance=token_balance,
                received=detail.amount,
                counterparty_address=sender,
                rejection=str(exc),
            )
        LOGGER.warning(
            "Rejecting buy %s: %s. Refunding %s base to %s.",
            detail.transaction_id,
            exc,
            refund,
            sender,
            extra={"transaction_id": detail.transaction_id},
        )
        return await self._pay(
            lambda: self.ledger.send_base(
                sender, refund, reference=detail.transaction_id
            ),
            SettlementResult(
                transaction_id=detail.transaction_id,
                kind=SettlementKind.BASE,
                base_balance=base_balance,
                token_balance=token_balance,
                received=detail.amount,
                paid=refund,
                counterparty_address=sender,
                rejection=str(exc),
            ),
            base_balance,
            token_balance,
        )

    async def _pay(
        self,
        send: Callable[[], Awaitable[str]],
        settled: SettlementResult,
        base_balance: Decimal,
        token_balance: Decimal,
    ) -> SettlementResult:
        """Send the counter-transfer described by ``settled``.

        ``base_balance`` and ``token_balance`` are the reserves to report when
        the payout did not go through.
        """
        transaction_id = settled.transaction_id
        attempts = 0
        while True:
            attempts += 1
            try:
                settlement_id = await send()
                break
            except (LedgerUnavailable, InsufficientFunds) as exc:
                if attempts >= self.retry_policy.max_attempts:
                    raise SettlementFailed(transaction_id, attempts, exc) from exc
                await self._backoff(transaction_id, attempts, exc)
            except LedgerRejected as exc:
                LOGGER.error(
                    "Ledger refused to pay %s %s to %s for %s: %s. "
                    "Marking it seen; it needs manual review.",
                    settled.paid,
                    settled.kind.value,
                    settled.counterparty_address,
                    transaction_id,
                    exc,
                    extra={"transaction_id": transaction_id, "needs_review": True},
                )
                return replace(
                    settled,
                    kind=SettlementKind.NONE,
                    base_balance=base_balance,
                    token_balance=token_balance,
                    paid=Decimal("0"),
                    rejection=f"ledger rejected payout: {exc}",
                    needs_review=True,
                )
            except Exception as exc:
                LOGGER.error(
                    "Payout of %s %s to %s for %s may have been broadcast: %s. "
                    "Marking it seen so it is not paid twice; it needs manual review.",
                    settled.paid,
                    settled.kind.value,
                    settled.counterparty_address,
                    transaction_id,
                    exc,
                    exc_info=True,
                    extra={"transaction_id": transaction_id, "needs_review": True},
                )
                return replace(
                    settled,
                    base_balance=base_balance,
                    token_balance=token_balance,
                    rejection=f"payout outcome unknown: {exc}",
                    needs_review=True,
                )
        LOGGER.info(
            "Settled %s: received %s, paid %s %s to %s (txid=%s)",
            transaction_id,
            settled.received,
            settled.paid,
            settled.kind.value,
            settled.counterparty_address,
            settlement_id,
            extra={"transaction_id": transaction_id},
        )
        return replace(settled, settlement_transaction_id=settlement_id)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Bound a read by ``call_timeout_sec``. Transfers are never wrapped."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.call_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(
                f"Call timed out after {self.config.call_timeout_sec}s"
            ) from exc

    async def _backoff(self, transaction_id: str, attempts: int, exc: Exception) -> None:
        delay = self.retry_policy.delay(attempts)
        LOGGER.warning(
            "Settlement attempt %d for %s failed (%s); retrying in %.1fs",
            attempts,
            transaction_id,
            exc,
            delay,
            extra={"transaction_id": transaction_id},
        )
        await self._sleep(delay)


def _require_reserves(owed: Decimal, available: Decimal, unit: str) -> None:
    if owed > available:
        raise InsufficientReserves(
            f"Pool holds {available} {unit} but owes {owed}",
            required=owed,
            available=available,
        )
