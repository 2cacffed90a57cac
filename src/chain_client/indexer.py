"""Chain indexer adapter for Blockbook-style REST APIs with SLP metadata."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from chain_client.async_rest import AsyncRestClient, AsyncRestError, AsyncRestRequest
from chain_client.constants import SATOSHIS_PER_BCH
from chain_client.models import (
    BlockbookAddress,
    BlockbookTransaction,
    TokenBalance,
)
from engine.chain_client import (
    AddressHistory,
    ChainIndexer,
    TransferDetail,
    TransferKind,
    same_address,
)

LOGGER = logging.getLogger("token_liquidity.indexer")

MAX_HISTORY_PAGES = 50


class BlockbookIndexer(ChainIndexer):
    def __init__(
        self, rest_client: AsyncRestClient, pool_address: str, page_size: int = 1000
    ) -> None:
        self._rest = rest_client
        self.pool_address = pool_address
        self.page_size = page_size

    async def get_address_history(self, address: str) -> AddressHistory:
        """Return balance and txids oldest first (Blockbook lists newest first)."""
        summary = await self._fetch_address_page(address, 1)
        txids = list(summary.txids)
        last_page = min(summary.total_pages, MAX_HISTORY_PAGES)
        for page in range(2, last_page + 1):
            parsed = await self._fetch_address_page(address, page)
            txids.extend(parsed.txids)
        if summary.total_pages > MAX_HISTORY_PAGES:
            LOGGER.warning(
                "History for %s spans %d pages; only the newest %d were read.",
                address,
                summary.total_pages,
                MAX_HISTORY_PAGES,
            )
        satoshis = summary.balance + summary.unconfirmed_balance
        txids.reverse()
        return AddressHistory(
            balance=Decimal(satoshis) / SATOSHIS_PER_BCH,
            transaction_ids=tuple(txids),
        )

    async def get_transaction_detail(self, transaction_id: str) -> TransferDetail:
        response = await self._rest.send(
            AsyncRestRequest(method="GET", path=f"/api/v2/tx/{transaction_id}")
        )
        tx = self._parse(BlockbookTransaction, response, f"tx {transaction_id}")
        return describe_transfer(tx, self.pool_address)

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        response = await self._rest.send(
            AsyncRestRequest(method="GET", path=f"/api/v2/slp/balances/{address}")
        )
        entries = response.get("data", []) if isinstance(response, dict) else response
        if not isinstance(entries, list):
            return Decimal("0")
        for entry in entries:
            try:
                balance = TokenBalance.model_validate(entry)
            except ValidationError:
                LOGGER.debug("Skipping malformed token balance entry: %s", entry)
                continue
            if balance.token_id.lower() == token_id.lower():
                return balance.balance
        return Decimal("0")

    async def _fetch_address_page(self, address: str, page: int) -> BlockbookAddress:
        response = await self._rest.send(
            AsyncRestRequest(
                method="GET",
                path=f"/api/v2/address/{address}",
                params={"details": "txids", "page": page, "pageSize": self.page_size},
            )
        )
        return self._parse(BlockbookAddress, response, f"address {address}")

    def _parse(self, model: Any, response: Any, what: str) -> Any:
        try:
            return model.model_validate(response)
        except ValidationError as exc:
            raise AsyncRestError(f"Unexpected indexer payload for {what}: {exc}") from exc


def describe_transfer(tx: BlockbookTransaction, pool_address: str) -> TransferDetail:
    """Reduce a raw transaction to what it delivered to ``pool_address``."""
    sender = None
    for vin in tx.vin:
        if vin.addresses:
            sender = vin.addresses[0]
            break
    pool_outputs = [
        vout
        for vout in tx.vout
        if any(same_address(address, pool_address) for address in vout.addresses)
    ]
    if not pool_outputs:
        return TransferDetail(
            transaction_id=tx.txid,
            kind=TransferKind.UNKNOWN,
            counterparty_address=sender,
        )
    token_info = tx.token_info
    if token_info is not None and token_info.transaction_type.upper() == "SEND":
        raw_tokens = sum(
            token_info.send_outputs[vout.n]
            for vout in pool_outputs
            if vout.n < len(token_info.send_outputs)
        )
        return TransferDetail(
            transaction_id=tx.txid,
            kind=TransferKind.TOKEN,
            amount=Decimal(raw_tokens).scaleb(-token_info.decimals),
            counterparty_address=sender,
            token_id=token_info.token_id,
        )
    if token_info is not None:
        # GENESIS and MINT are token operations, not swaps.
        return TransferDetail(
            transaction_id=tx.txid,
            kind=TransferKind.UNKNOWN,
            counterparty_address=sender,
            token_id=token_info.token_id,
        )
    satoshis = sum(vout.value for vout in pool_outputs)
    return TransferDetail(
        transaction_id=tx.txid,
        kind=TransferKind.BASE,
        amount=Decimal(satoshis) / SATOSHIS_PER_BCH,
        counterparty_address=sender,
    )
