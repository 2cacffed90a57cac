"""Pydantic models for indexer, wallet and price-feed payloads."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BlockbookAddress(BaseModel):
    """Address summary returned by ``/api/v2/address/{address}?details=txids``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str = ""
    balance: int = Field(0, description="Confirmed balance in satoshis")
    unconfirmed_balance: int = Field(0, alias="unconfirmedBalance")
    txids: list[str] = Field(default_factory=list)
    total_pages: int = Field(1, alias="totalPages")

    @field_validator("balance", "unconfirmed_balance", mode="before")
    @classmethod
    def parse_satoshis(cls, v: Any) -> int:
        if v in (None, ""):
            return 0
        return int(str(v))


class BlockbookInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    addresses: list[str] = Field(default_factory=list)
    value: int = 0

    @field_validator("value", mode="before")
    @classmethod
    def parse_value(cls, v: Any) -> int:
        return int(str(v)) if v not in (None, "") else 0


class BlockbookOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    n: int = 0
    addresses: list[str] = Field(default_factory=list)
    value: int = 0

    @field_validator("value", mode="before")
    @classmethod
    def parse_value(cls, v: Any) -> int:
        return int(str(v)) if v not in (None, "") else 0


class SlpTokenInfo(BaseModel):
    """SLP metadata attached to token transactions."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token_id: str = Field(..., alias="tokenIdHex")
    transaction_type: str = Field("SEND", alias="transactionType")
    decimals: int = 8
    send_outputs: list[int] = Field(default_factory=list, alias="sendOutputs")

    @field_validator("send_outputs", mode="before")
    @classmethod
    def parse_outputs(cls, v: Any) -> list[int]:
        if v is None:
            return []
        return [int(str(item)) for item in v]


class BlockbookTransaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    txid: str
    vin: list[BlockbookInput] = Field(default_factory=list)
    vout: list[BlockbookOutput] = Field(default_factory=list)
    token_info: SlpTokenInfo | None = Field(None, alias="tokenInfo")


class TokenBalance(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token_id: str = Field(..., alias="tokenId")
    balance: Decimal = Decimal("0")


class WalletTxResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    txid: str

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Wallet service returned an empty txid")
        return v.strip()


class WalletBalanceResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    balance: Decimal


class SpotPriceResponse(BaseModel):
    """Coinbase-style ``{"data": {"amount": "..."}}`` spot price."""

    model_config = ConfigDict(extra="ignore")

    amount: Decimal
    base: str | None = None
    currency: str | None = None
