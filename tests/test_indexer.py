from decimal import Decimal
from typing import Any

import pytest

from chain_client.async_rest import AsyncRestError, AsyncRestRequest
from chain_client.indexer import BlockbookIndexer, describe_transfer
from chain_client.models import BlockbookTransaction
from engine.chain_client import TransferKind
from fakes import BUYER_ADDRESS, POOL_ADDRESS, TOKEN_ID

POOL_SHORT = POOL_ADDRESS.split(":", 1)[1]


class FakeRest:
    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.requests: list[AsyncRestRequest] = []

    async def send(self, request: AsyncRestRequest) -> Any:
        self.requests.append(request)
        key = request.path
        if request.params and "page" in request.params:
            key = f"{key}#{request.params['page']}"
        return self.responses[key]


def _tx(**overrides: Any) -> dict[str, Any]:
    payload = {
        "txid": "tx-1",
        "vin": [{"addresses": [BUYER_ADDRESS], "value": "200000000"}],
        "vout": [
            {"n": 0, "addresses": [POOL_ADDRESS], "value": "150000000"},
            {"n": 1, "addresses": [BUYER_ADDRESS], "value": "49990000"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_address_history_is_paged_and_oldest_first():
    path = f"/api/v2/address/{POOL_ADDRESS}"
    rest = FakeRest(
        {
            f"{path}#1": {
                "balance": "150000000",
                "unconfirmedBalance": "-50000000",
                "txids": ["tx-4", "tx-3"],
                "totalPages": 2,
            },
            f"{path}#2": {"balance": "150000000", "txids": ["tx-2", "tx-1"], "totalPages": 2},
        }
    )
    indexer = BlockbookIndexer(rest, POOL_ADDRESS)

    history = await indexer.get_address_history(POOL_ADDRESS)

    assert history.balance == Decimal("1")
    assert history.transaction_ids == ("tx-1", "tx-2", "tx-3", "tx-4")
    assert [request.params["page"] for request in rest.requests] == [1, 2]


@pytest.mark.asyncio
async def test_base_payment_is_described_from_pool_outputs():
    rest = FakeRest({"/api/v2/tx/tx-1": _tx()})
    indexer = BlockbookIndexer(rest, POOL_ADDRESS)

    detail = await indexer.get_transaction_detail("tx-1")

    assert detail.kind is TransferKind.BASE
    assert detail.amount == Decimal("1.5")
    assert detail.counterparty_address == BUYER_ADDRESS


def test_token_send_counts_only_pool_outputs():
    tx = BlockbookTransaction.model_validate(
        _tx(
            vout=[
                {"n": 0, "addresses": [], "value": "0"},
                {"n": 1, "addresses": [POOL_SHORT], "value": "546"},
                {"n": 2, "addresses": [BUYER_ADDRESS], "value": "546"},
            ],
            tokenInfo={
                "tokenIdHex": TOKEN_ID,
                "transactionType": "SEND",
                "decimals": 2,
                "sendOutputs": ["0", "12345", "500"],
            },
        )
    )

    detail = describe_transfer(tx, POOL_ADDRESS)

    assert detail.kind is TransferKind.TOKEN
    assert detail.amount == Decimal("123.45")
    assert detail.token_id == TOKEN_ID


@pytest.mark.parametrize(
    "overrides",
    [
        {"vout": [{"n": 0, "addresses": [BUYER_ADDRESS], "value": "1000"}]},
        {"tokenInfo": {"tokenIdHex": TOKEN_ID, "transactionType": "MINT"}},
    ],
    ids=["not-to-pool", "mint"],
)
def test_other_transactions_are_unknown(overrides):
    tx = BlockbookTransaction.model_validate(_tx(**overrides))

    assert describe_transfer(tx, POOL_ADDRESS).kind is TransferKind.UNKNOWN


@pytest.mark.asyncio
async def test_token_balance_matches_token_id():
    rest = FakeRest(
        {
            f"/api/v2/slp/balances/{POOL_ADDRESS}": [
                {"tokenId": "cd" * 32, "balance": "5"},
                {"tokenId": TOKEN_ID.upper(), "balance": "1000.5"},
            ]
        }
    )
    indexer = BlockbookIndexer(rest, POOL_ADDRESS)

    assert await indexer.get_token_balance(POOL_ADDRESS, TOKEN_ID) == Decimal("1000.5")
    assert await indexer.get_token_balance(POOL_ADDRESS, "ef" * 32) == Decimal("0")


@pytest.mark.asyncio
async def test_malformed_payload_raises_rest_error():
    rest = FakeRest({"/api/v2/tx/tx-1": {"vin": []}})
    indexer = BlockbookIndexer(rest, POOL_ADDRESS)

    with pytest.raises(AsyncRestError):
        await indexer.get_transaction_detail("tx-1")
