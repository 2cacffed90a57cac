import asyncio
from decimal import Decimal

import pytest

from engine.chain_client import (
    LedgerRejected,
    LedgerWriteUnknown,
    TransientNetworkError,
)
from engine.detector import DetectedEvent
from engine.pricing import BondingCurve
from engine.settlement import (
    RetryPolicy,
    SettlementConfig,
    SettlementFailed,
    SettlementKind,
    SettlementProcessor,
)
from fakes import (
    BUYER_ADDRESS,
    POOL_ADDRESS,
    SELLER_ADDRESS,
    TOKEN_ID,
    FakeIndexer,
    FakeLedger,
    RecordingSleep,
    buy,
    sell,
)

BASE = Decimal("100")
TOKENS = Decimal("1000000")


def _processor(indexer, ledger, sleep=None, **overrides):
    config = SettlementConfig(
        pool_address=POOL_ADDRESS, token_id=TOKEN_ID, **overrides
    )
    return SettlementProcessor(
        indexer,
        ledger,
        BondingCurve(BASE, TOKENS),
        config,
        RetryPolicy(max_attempts=3, backoff_sec=5, max_backoff_sec=120, jitter=False),
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_buy_pays_tokens_at_pre_transaction_price():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = FakeLedger()

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-buy"), BASE, TOKENS
    )

    assert result.kind is SettlementKind.TOKEN
    assert result.paid == Decimal("10000")
    assert result.base_balance == Decimal("101")
    assert result.token_balance == Decimal("990000")
    assert result.settlement_transaction_id == "settle-1"
    assert ledger.sent == [("token", BUYER_ADDRESS, Decimal("10000"))]


@pytest.mark.asyncio
async def test_sell_pays_base_and_takes_tokens():
    indexer = FakeIndexer()
    indexer.add(sell("tx-sell", "10000"))
    ledger = FakeLedger()

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-sell"), BASE, TOKENS
    )

    assert result.kind is SettlementKind.BASE
    assert result.paid == Decimal("1")
    assert result.base_balance == Decimal("99")
    assert result.token_balance == Decimal("1010000")
    assert ledger.sent == [("base", SELLER_ADDRESS, Decimal("1"))]


@pytest.mark.asyncio
async def test_unpayable_sell_returns_tokens_and_keeps_reserves():
    indexer = FakeIndexer()
    indexer.add(sell("tx-big-sell", "2000000"))
    ledger = FakeLedger()

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-big-sell"), BASE, TOKENS
    )

    assert result.rejection is not None
    assert result.kind is SettlementKind.TOKEN
    assert result.base_balance == BASE
    assert result.token_balance == TOKENS
    assert ledger.sent == [("token", SELLER_ADDRESS, Decimal("2000000"))]
    assert not [entry for entry in ledger.sent if entry[0] == "base"]


@pytest.mark.asyncio
async def test_buy_beyond_token_reserve_is_refunded_minus_fee():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = FakeLedger()

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-buy"), BASE, Decimal("5000")
    )

    assert result.rejection is not None
    assert result.kind is SettlementKind.BASE
    assert result.paid == Decimal("0.99999750")
    assert result.base_balance == BASE
    assert result.token_balance == Decimal("5000")
    assert ledger.sent == [("base", BUYER_ADDRESS, Decimal("0.99999750"))]


@pytest.mark.asyncio
async def test_rejected_buy_smaller_than_fee_sends_nothing():
    indexer = FakeIndexer()
    indexer.add(buy("tx-tiny", "0.000001"))
    ledger = FakeLedger()

    result = await _processor(indexer, ledger, dust_threshold=Decimal("0")).process(
        DetectedEvent("tx-tiny"), BASE, Decimal("0")
    )

    assert result.kind is SettlementKind.NONE
    assert result.rejection is not None
    assert ledger.sent == []


@pytest.mark.parametrize(
    "detail",
    [
        buy("tx-x", "0.000005"),
        buy("tx-x", "1", sender="qq" + "a" * 40),
        sell("tx-x", "10", token_id="cd" * 32),
        sell("tx-x", "0"),
    ],
    ids=["dust", "self-generated", "foreign-token", "empty"],
)
@pytest.mark.asyncio
async def test_non_economic_transactions_settle_as_none(detail):
    indexer = FakeIndexer()
    indexer.add(detail)
    ledger = FakeLedger()

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-x"), BASE, TOKENS
    )

    assert result.kind is SettlementKind.NONE
    assert result.settlement_transaction_id is None
    assert (result.base_balance, result.token_balance) == (BASE, TOKENS)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = FakeLedger()
    ledger.failures = 2
    sleep = RecordingSleep()

    result = await _processor(indexer, ledger, sleep=sleep).process(
        DetectedEvent("tx-buy"), BASE, TOKENS
    )

    assert result.kind is SettlementKind.TOKEN
    assert sleep.calls == [5, 10]
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_settlement_failed():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    indexer.detail_failures = 10
    ledger = FakeLedger()

    with pytest.raises(SettlementFailed) as excinfo:
        await _processor(indexer, ledger).process(DetectedEvent("tx-buy"), BASE, TOKENS)

    assert excinfo.value.attempts == 3
    assert excinfo.value.transaction_id == "tx-buy"
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_hanging_indexer_read_times_out_as_transient():
    class HangingIndexer(FakeIndexer):
        async def get_transaction_detail(self, transaction_id):
            await asyncio.sleep(3600)

    processor = _processor(HangingIndexer(), FakeLedger(), call_timeout_sec=0.01)

    with pytest.raises(SettlementFailed) as excinfo:
        await processor.process(DetectedEvent("tx-buy"), BASE, TOKENS)

    assert isinstance(excinfo.value.cause, TransientNetworkError)
    assert excinfo.value.attempts == 3
    assert not excinfo.value.permanent


@pytest.mark.asyncio
async def test_slow_payout_is_not_cut_off_by_call_timeout():
    class SlowLedger(FakeLedger):
        async def send_token(self, to_address, token_id, quantity, *, reference=None):
            await asyncio.sleep(0.05)
            return await super().send_token(
                to_address, token_id, quantity, reference=reference
            )

    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = SlowLedger()

    result = await _processor(indexer, ledger, call_timeout_sec=0.01).process(
        DetectedEvent("tx-buy"), BASE, TOKENS
    )

    assert result.settlement_transaction_id == "settle-1"
    assert ledger.sent == [("token", BUYER_ADDRESS, Decimal("10000"))]


@pytest.mark.asyncio
async def test_payout_with_lost_reply_is_sent_once_and_flagged_for_review():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = FakeLedger()
    ledger.lost_replies = [LedgerWriteUnknown("reply timed out")]
    sleep = RecordingSleep()

    result = await _processor(indexer, ledger, sleep=sleep).process(
        DetectedEvent("tx-buy"), BASE, TOKENS
    )

    assert ledger.sent == [("token", BUYER_ADDRESS, Decimal("10000"))]
    assert sleep.calls == []
    assert result.needs_review
    assert result.settlement_transaction_id is None
    assert result.rejection.startswith("payout outcome unknown")
    assert (result.base_balance, result.token_balance) == (BASE, TOKENS)


@pytest.mark.asyncio
async def test_ledger_refusal_settles_as_none_for_review():
    indexer = FakeIndexer()
    indexer.add(buy("tx-buy", "1"))
    ledger = FakeLedger()
    ledger.errors = [LedgerRejected("invalid address")]

    result = await _processor(indexer, ledger).process(
        DetectedEvent("tx-buy"), BASE, TOKENS
    )

    assert result.kind is SettlementKind.NONE
    assert result.needs_review
    assert "invalid address" in result.rejection
    assert result.paid == 0
    assert (result.base_balance, result.token_balance) == (BASE, TOKENS)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_malformed_indexer_reply_fails_permanently_without_retry():
    indexer = FakeIndexer()
    indexer.transaction_ids.append("tx-missing")
    sleep = RecordingSleep()

    with pytest.raises(SettlementFailed) as excinfo:
        await _processor(indexer, FakeLedger(), sleep=sleep).process(
            DetectedEvent("tx-missing"), BASE, TOKENS
        )

    assert excinfo.value.permanent
    assert isinstance(excinfo.value.cause, KeyError)
    assert indexer.detail_requests == ["tx-missing"]
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_payouts_carry_the_source_transaction_as_reference():
    indexer = FakeIndexer()
    indexer.add(sell("tx-sell", "10000"))
    ledger = FakeLedger()
    processor = _processor(indexer, ledger)

    first = await processor.process(DetectedEvent("tx-sell"), BASE, TOKENS)
    again = await processor.process(DetectedEvent("tx-sell"), BASE, TOKENS)

    assert ledger.references == {"tx-sell": "settle-1"}
    assert first.settlement_transaction_id == again.settlement_transaction_id
    assert len(ledger.sent) == 1


def test_retry_policy_caps_delay():
    policy = RetryPolicy(backoff_sec=5, max_backoff_sec=12, jitter=False)

    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [5, 10, 12, 12]
    assert RetryPolicy(backoff_sec=5, max_backoff_sec=12).delay(3) <= 12
