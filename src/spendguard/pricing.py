"""
Token valuation.

``PriceValuator`` turns token amounts into 18-decimal USD using price feeds
that report rounds the way Chainlink aggregators do. Conversions round up so
that rounding never lets a spender pay less than the true cost.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from .errors import SpendGuardError, StalePriceFeed
from .events import normalize_address
from .money import USD_DECIMALS, ceil_div

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoundData:
    round_id: int
    answer: int
    started_at: int
    updated_at: int
    answered_in_round: int


class PriceFeed(Protocol):
    def latest_round_data(self) -> RoundData: ...

    def decimals(self) -> int: ...


class BalanceSource(Protocol):
    def balance_of(self, token: str) -> int: ...


class StaticPriceFeed:
    """A price feed with a fixed answer, for tests and local deployments."""

    def __init__(
        self,
        answer: int,
        decimals: int = 8,
        updated_at: Optional[int] = None,
        round_id: int = 1,
        answered_in_round: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.answer = answer
        self._decimals = decimals
        self.updated_at = updated_at
        self.round_id = round_id
        self.answered_in_round = round_id if answered_in_round is None else answered_in_round
        self._clock = clock

    def latest_round_data(self) -> RoundData:
        updated_at = int(self._clock()) if self.updated_at is None else self.updated_at
        return RoundData(
            round_id=self.round_id,
            answer=self.answer,
            started_at=updated_at,
            updated_at=updated_at,
            answered_in_round=self.answered_in_round,
        )

    def decimals(self) -> int:
        return self._decimals


@dataclass
class _TokenPricing:
    feed: PriceFeed
    token_decimals: int


class PriceValuator:
    """Values token amounts in 18-decimal USD."""

    def __init__(
        self,
        max_age_seconds: int = 86_400,
        clock: Callable[[], float] = time.time,
    ):
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._tokens: dict[str, _TokenPricing] = {}

    def register(self, token: str, feed: PriceFeed, token_decimals: int) -> None:
        self._tokens[normalize_address(token)] = _TokenPricing(feed, token_decimals)

    @property
    def tokens(self) -> list[str]:
        return list(self._tokens)

    def latest_price(self, token: str) -> tuple[int, int]:
        """Return ``(price, price_decimals)`` after validating the latest round."""
        key = normalize_address(token)
        pricing = self._tokens.get(key)
        if pricing is None:
            raise StalePriceFeed(key, "no price feed registered")
        data = pricing.feed.latest_round_data()
        if data.answer <= 0:
            raise StalePriceFeed(key, f"non-positive price {data.answer}")
        if data.updated_at == 0:
            raise StalePriceFeed(key, "round not complete")
        if data.answered_in_round < data.round_id:
            raise StalePriceFeed(key, "answer carried over from an earlier round")
        age = int(self._clock()) - data.updated_at
        if age > self.max_age_seconds:
            raise StalePriceFeed(key, f"price is {age}s old (max {self.max_age_seconds}s)")
        return data.answer, pricing.feed.decimals()

    def value(self, token: str, amount: int) -> int:
        if amount <= 0:
            return 0
        price, price_decimals = self.latest_price(token)
        token_decimals = self._tokens[normalize_address(token)].token_decimals
        return ceil_div(
            amount * price * 10**USD_DECIMALS,
            10 ** (token_decimals + price_decimals),
        )


def compute_vault_value(
    vault: BalanceSource,
    tokens: Iterable[str],
    valuator: PriceValuator,
) -> int:
    """Sum the USD value of the vault's balances; unpriceable tokens count as zero."""
    total = 0
    for token in tokens:
        try:
            balance = vault.balance_of(token)
            total += valuator.value(token, balance)
        except SpendGuardError as e:
            logger.warning("Skipping %s in vault valuation: %s", token, e)
    return total


class VaultValueUpdater:
    """Values the vault and pushes the result through the vault-value writer."""

    def __init__(self, vault: BalanceSource, valuator: PriceValuator, writer, tokens: Optional[list[str]] = None):
        self.vault = vault
        self.valuator = valuator
        self.writer = writer
        self.tokens = tokens

    def update(self):
        tokens = self.tokens if self.tokens is not None else self.valuator.tokens
        value = compute_vault_value(self.vault, tokens, self.valuator)
        logger.info("Vault value computed over %d tokens: %d", len(tokens), value)
        return self.writer.push(value)
