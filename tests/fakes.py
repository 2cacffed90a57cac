"""In-memory collaborators shared by the engine tests."""

from __future__ import annotations

import asyncio
from decimal import Decimal

from engine.chain_client import (
    AddressHistory,
    LedgerUnavailable,
    TransferDetail,
    TransferKind,
)

POOL_ADDRESS = "bitcoincash:qq" + "a" * 40
BUYER_ADDRESS = "bitcoincash:qp" + "c" * 40
SELLER_ADDRESS = "bitcoincash:qr" + "d" * 40
CUSTODY_ADDRESS = "bitcoincash:qz" + "e" * 40
TOKEN_ID = "ab" * 32


def buy(transaction_id: str, amount: str, sender: str = BUYER_ADDRESS) -> TransferDetail:
    return TransferDetail(
        transaction_id=transaction_id,
        kind=TransferKind.BASE,
        amount=Decimal(amount),
        counterparty_address=sender,
    )


def sell(
    transaction_id: str,
    quantity: str,
    sender: str = SELLER_ADDRESS,
    token_id: str = TOKEN_ID,
) -> TransferDetail:
    return TransferDetail(
        transaction_id=transaction_id,
        kind=TransferKind.TOKEN,
        amount=Decimal(quantity),
        counterparty_address=sender,
        token_id=token_id,
    )


class FakeIndexer:
    def __init__(
        self,
        balance: Decimal = Decimal("100"),
        token_balance: Decimal = Decimal("1000000"),
    ) -> None:
        self.balance = balance
        self.token_balance = token_balance
        self.transaction_ids: list[str] = []
        self.details: dict[str, TransferDetail] = {}
        self.detail_failures = 0
        self.detail_requests: list[str] = []
        self.token_balance_requests: list[str] = []

    def add(self, detail: TransferDetail) -> None:
        self.transaction_ids.append(detail.transaction_id)
        self.details[detail.transaction_id] = detail

    async def get_address_history(self, address: str) -> AddressHistory:
        return AddressHistory(
            balance=self.balance, transaction_ids=tuple(self.transaction_ids)
        )

    async def get_transaction_detail(self, transaction_id: str) -> TransferDetail:
        self.detail_requests.append(transaction_id)
        if self.detail_failures:
            self.detail_failures -= 1
            raise LedgerUnavailable("indexer offline")
        return self.details[transaction_id]

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        self.token_balance_requests.append(address)
        return self.token_balance


class FakeLedger:
    """Records transfers and tracks how many run at the same time.

    ``failures`` and ``errors`` fire before anything is sent; ``lost_replies``
    fire after the transfer has been recorded. A repeated reference returns
    the original txid without sending again.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Decimal]] = []
        self.references: dict[str, str] = {}
        self.failures = 0
        self.errors: list[Exception] = []
        self.lost_replies: list[Exception] = []
        self.consolidations = 0
        self.active = 0
        self.max_active = 0
        self._counter = 0

    async def get_balance(self, address: str) -> Decimal:
        return Decimal("0")

    async def send_base(
        self, to_address: str, amount: Decimal, *, reference: str | None = None
    ) -> str:
        return await self._send("base", to_address, amount, reference)

    async def send_token(
        self,
        to_address: str,
        token_id: str,
        quantity: Decimal,
        *,
        reference: str | None = None,
    ) -> str:
        return await self._send("token", to_address, quantity, reference)

    async def consolidate_spendable_units(self) -> None:
        self.consolidations += 1

    async def _send(
        self, kind: str, to_address: str, amount: Decimal, reference: str | None
    ) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if reference is not None and reference in self.references:
                return self.references[reference]
            if self.failures:
                self.failures -= 1
                raise LedgerUnavailable("wallet offline")
            if self.errors:
                raise self.errors.pop(0)
            self._counter += 1
            txid = f"settle-{self._counter}"
            self.sent.append((kind, to_address, amount))
            if reference is not None:
                self.references[reference] = txid
            if self.lost_replies:
                raise self.lost_replies.pop(0)
            return txid
        finally:
            self.active -= 1


class FakePriceFeed:
    def __init__(self, price: Decimal = Decimal("100")) -> None:
        self.price = price

    async def get_usd_per_base(self) -> Decimal:
        return self.price


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
