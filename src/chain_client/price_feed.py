"""USD spot price of the base currency."""

from __future__ import annotations

import logging
from decimal import Decimal

from pydantic import ValidationError

from chain_client.async_rest import AsyncRestClient, AsyncRestError, AsyncRestRequest
from chain_client.models import SpotPriceResponse
from engine.chain_client import PriceFeed

LOGGER = logging.getLogger("token_liquidity.price")


class SpotPriceFeed(PriceFeed):
    def __init__(self, rest_client: AsyncRestClient, path: str = "") -> None:
        self._rest = rest_client
        self.path = path

    async def get_usd_per_base(self) -> Decimal:
        response = await self._rest.send(AsyncRestRequest(method="GET", path=self.path))
        data = response.get("data", response) if isinstance(response, dict) else None
        try:
            spot = SpotPriceResponse.model_validate(data)
        except ValidationError as exc:
            raise AsyncRestError(f"Unexpected price payload: {response}") from exc
        if not spot.amount.is_finite() or spot.amount <= 0:
            raise AsyncRestError(f"Price feed returned a non-positive price: {spot.amount}")
        LOGGER.debug("Spot price %s %s-%s", spot.amount, spot.base, spot.currency)
        return spot.amount
