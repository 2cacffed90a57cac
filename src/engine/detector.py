"""New-transaction detection for the pool address."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet

from engine.chain_client import ChainIndexer

LOGGER = logging.getLogger("token_liquidity.detector")


@dataclass(frozen=True)
class DetectedEvent:
    transaction_id: str


class TransactionDetector:
    def __init__(self, indexer: ChainIndexer, address: str) -> None:
        self.indexer = indexer
        self.address = address

    async def detect(self, known_ids: AbstractSet[str]) -> list[DetectedEvent]:
        """Return transactions not yet in ``known_ids``, in indexer order."""
        history = await self.indexer.get_address_history(self.address)
        events: list[DetectedEvent] = []
        emitted: set[str] = set()
        for transaction_id in history.transaction_ids:
            if transaction_id in known_ids or transaction_id in emitted:
                continue
            emitted.add(transaction_id)
            events.append(DetectedEvent(transaction_id=transaction_id))
        if events:
            LOGGER.debug(
                "Detected %d new transaction(s) out of %d for %s",
                len(events),
                len(history.transaction_ids),
                self.address,
            )
        return events
