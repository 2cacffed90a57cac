"""Bonding-curve pricing for the token/base liquidity pool.

The curve is anchored at the initial reserves. The token price in base
currency is ``base_balance / initial_token_balance``, so the USD spot price
scales with ``base_balance / initial_base_balance`` times the reference price
set by the initial market cap. Integrating that price gives the effective
token balance ``T0 * (1 - ln(B / B0))``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from utils.config_validator import ConfigurationError

INFINITY = Decimal("Infinity")


@dataclass(frozen=True)
class BondingCurve:
    initial_base_balance: Decimal
    initial_token_balance: Decimal

    def __post_init__(self) -> None:
        base = Decimal(str(self.initial_base_balance))
        tokens = Decimal(str(self.initial_token_balance))
        if not base.is_finite() or base <= 0:
            raise ConfigurationError(
                f"initial_base_balance must be positive, got: {base}"
            )
        if not tokens.is_finite() or tokens <= 0:
            raise ConfigurationError(
                f"initial_token_balance must be positive, got: {tokens}"
            )
        object.__setattr__(self, "initial_base_balance", base)
        object.__setattr__(self, "initial_token_balance", tokens)

    def reference_price(self, usd_per_base: Decimal) -> Decimal:
        """USD price per token at the anchor: initial market cap over supply."""
        usd_per_base = Decimal(str(usd_per_base))
        return self.initial_base_balance * usd_per_base / self.initial_token_balance

    def spot_price(self, base_balance: Decimal, usd_per_base: Decimal) -> Decimal:
        """Return the token price in USD at the given base reserve."""
        base_balance = _non_negative(base_balance, "base_balance")
        ratio = base_balance / self.initial_base_balance
        return ratio * self.reference_price(usd_per_base)

    def base_per_token(self, base_balance: Decimal) -> Decimal:
        """Return the token price denominated in base currency."""
        base_balance = _non_negative(base_balance, "base_balance")
        return base_balance / self.initial_token_balance

    def effective_token_balance(self, base_balance: Decimal) -> Decimal:
        """Tokens the pool should be willing to sell at this base reserve."""
        base_balance = _non_negative(base_balance, "base_balance")
        if base_balance == 0:
            return INFINITY
        ratio = base_balance / self.initial_base_balance
        effective = self.initial_token_balance * (Decimal("1") - ratio.ln())
        return max(effective, Decimal("0"))

    def tokens_for_base(self, base_in: Decimal, base_balance: Decimal) -> Decimal:
        """Tokens owed for ``base_in``, priced at the pre-transaction reserve."""
        base_in = _non_negative(base_in, "base_in")
        price = self.base_per_token(base_balance)
        if price == 0:
            return INFINITY if base_in > 0 else Decimal("0")
        return base_in / price

    def base_for_tokens(self, tokens_in: Decimal, base_balance: Decimal) -> Decimal:
        """Base currency owed for ``tokens_in``, priced at the pre-transaction reserve."""
        tokens_in = _non_negative(tokens_in, "tokens_in")
        return tokens_in * self.base_per_token(base_balance)


def round_down(quantity: Decimal, decimals: int) -> Decimal:
    """Truncate a finite quantity to ``decimals`` places."""
    step = Decimal(1).scaleb(-decimals)
    return Decimal(str(quantity)).quantize(step, rounding=ROUND_DOWN)


def _non_negative(value: Decimal, name: str) -> Decimal:
    value = Decimal(str(value))
    if value.is_nan() or value < 0:
        raise ValueError(f"{name} must be non-negative, got: {value}")
    return value
