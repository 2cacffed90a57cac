"""Collaborator interfaces for the chain indexer, ledger and price feed."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Protocol


class TransientNetworkError(Exception):
    """Raised for indexer/ledger failures that may succeed on retry."""


class LedgerUnavailable(TransientNetworkError):
    """Raised when the ledger refused or never received a request.

    For transfers this means the ledger provably broadcast nothing, so the
    request may be sent again.
    """


class LedgerRejected(Exception):
    """Raised when the ledger refused a transfer that a retry will not fix."""


class LedgerWriteUnknown(Exception):
    """Raised when a transfer failed after it may have reached the ledger.

    Response timeouts, dropped connections and unreadable replies land here:
    the transfer may or may not have been broadcast.
    """


class InsufficientFunds(Exception):
    """Raised when the wallet cannot find spendable outputs for a transfer."""


class TransferKind(str, Enum):
    BASE = "base"
    TOKEN = "token"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AddressHistory:
    balance: Decimal
    transaction_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TransferDetail:
    transaction_id: str
    kind: TransferKind
    amount: Decimal = Decimal("0")
    counterparty_address: str | None = None
    token_id: str | None = None


class ChainIndexer(Protocol):
    async def get_address_history(self, address: str) -> AddressHistory:
        """Return the address balance and its transaction IDs, oldest first."""

    async def get_transaction_detail(self, transaction_id: str) -> TransferDetail:
        """Describe what a transaction delivered to the pool address."""

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        """Return the token balance held by an address."""


class LedgerClient(Protocol):
    async def get_balance(self, address: str) -> Decimal:
        """Return the spendable base-currency balance of an address."""

    async def send_base(
        self, to_address: str, amount: Decimal, *, reference: str | None = None
    ) -> str:
        """Send base currency and return the transaction id.

        A repeated ``reference`` returns the original transaction id without
        sending again.
        """

    async def send_token(
        self,
        to_address: str,
        token_id: str,
        quantity: Decimal,
        *,
        reference: str | None = None,
    ) -> str:
        """Send tokens and return the transaction id."""

    async def consolidate_spendable_units(self) -> None:
        """Merge small spendable outputs into fewer, larger ones."""


class PriceFeed(Protocol):
    async def get_usd_per_base(self) -> Decimal:
        """Return the current base-currency price in USD."""


def same_address(left: str | None, right: str | None) -> bool:
    """Compare cash addresses ignoring the network prefix and case."""
    if not left or not right:
        return False
    return left.split(":", 1)[-1].lower() == right.split(":", 1)[-1].lower()
