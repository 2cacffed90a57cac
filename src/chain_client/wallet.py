"""Ledger client backed by a local wallet service that signs and broadcasts."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import aiohttp
from pydantic import ValidationError

from chain_client.async_rest import (
    AsyncRateLimitError,
    AsyncRestClient,
    AsyncRestError,
    AsyncRestRequest,
    AsyncTransientApiError,
)
from chain_client.models import WalletBalanceResponse, WalletTxResponse
from engine.chain_client import (
    InsufficientFunds,
    LedgerClient,
    LedgerRejected,
    LedgerUnavailable,
    LedgerWriteUnknown,
)

LOGGER = logging.getLogger("token_liquidity.wallet")

_INSUFFICIENT_MARKERS = ("insufficient", "no utxos", "not enough")

# Statuses that mean the service turned the request away before acting on it.
_REFUSED_STATUSES = frozenset({429, 503})


class WalletServiceClient(LedgerClient):
    """Wallet service REST adapter.

    The service owns the signing keys; this client only asks it to pay out.
    Transfers carry a ``reference`` the service uses to drop repeated
    requests. Errors are mapped so the settlement processor can tell a
    request that provably broadcast nothing (``LedgerUnavailable``,
    ``InsufficientFunds``, ``LedgerRejected``) from one whose outcome is
    unknown (``LedgerWriteUnknown``).
    """

    def __init__(self, rest_client: AsyncRestClient) -> None:
        self._rest = rest_client

    async def get_balance(self, address: str) -> Decimal:
        response = await self._send(
            AsyncRestRequest(method="GET", path=f"/balance/{address}")
        )
        try:
            return WalletBalanceResponse.model_validate(response).balance
        except ValidationError as exc:
            raise AsyncRestError(f"Unexpected balance payload: {response}") from exc

    async def send_base(
        self, to_address: str, amount: Decimal, *, reference: str | None = None
    ) -> str:
        body: dict[str, Any] = {"to": to_address, "amount": str(amount)}
        if reference is not None:
            body["reference"] = reference
        txid = await self._transfer(
            AsyncRestRequest(method="POST", path="/send-base", body=body)
        )
        LOGGER.info("Sent %s base to %s in %s", amount, to_address, txid)
        return txid

    async def send_token(
        self,
        to_address: str,
        token_id: str,
        quantity: Decimal,
        *,
        reference: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "to": to_address,
            "tokenId": token_id,
            "quantity": str(quantity),
        }
        if reference is not None:
            body["reference"] = reference
        txid = await self._transfer(
            AsyncRestRequest(method="POST", path="/send-token", body=body)
        )
        LOGGER.info("Sent %s tokens to %s in %s", quantity, to_address, txid)
        return txid

    async def consolidate_spendable_units(self) -> None:
        response = await self._send(AsyncRestRequest(method="POST", path="/consolidate"))
        if isinstance(response, dict) and response.get("txid"):
            LOGGER.info("Consolidated spendable outputs in %s", response["txid"])

    async def _send(self, request: AsyncRestRequest) -> Any:
        try:
            return await self._rest.send(request)
        except (AsyncTransientApiError, AsyncRateLimitError) as exc:
            raise LedgerUnavailable(str(exc)) from exc
        except AsyncRestError as exc:
            if _is_insufficient(exc):
                raise InsufficientFunds(exc.payload) from exc
            raise

    async def _transfer(self, request: AsyncRestRequest) -> str:
        try:
            response = await self._rest.send(request)
        except AsyncRateLimitError as exc:
            raise LedgerUnavailable(str(exc)) from exc
        except AsyncTransientApiError as exc:
            if exc.status in _REFUSED_STATUSES or isinstance(
                exc.__cause__, aiohttp.ClientConnectorError
            ):
                raise LedgerUnavailable(str(exc)) from exc
            raise LedgerWriteUnknown(str(exc)) from exc
        except AsyncRestError as exc:
            if _is_insufficient(exc):
                raise InsufficientFunds(exc.payload) from exc
            if exc.status is not None and 400 <= exc.status < 500:
                raise LedgerRejected(exc.payload or str(exc)) from exc
            raise LedgerWriteUnknown(str(exc)) from exc
        try:
            return WalletTxResponse.model_validate(response).txid
        except ValidationError as exc:
            raise LedgerWriteUnknown(
                f"Wallet service returned no txid: {response}"
            ) from exc


def _is_insufficient(exc: AsyncRestError) -> bool:
    if exc.status is None or not 400 <= exc.status < 500:
        return False
    lowered = exc.payload.lower()
    return any(marker in lowered for marker in _INSUFFICIENT_MARKERS)
