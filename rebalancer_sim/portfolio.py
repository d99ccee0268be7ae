"""
Static portfolios and the weighted AMM rebalancing portfolio.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping

from .utils import MissingPriceError


# =============================================================================
# Static portfolio (buy-and-hold baselines)
# =============================================================================

class Portfolio:
    """Named set of balances marked to market against a price snapshot."""

    def __init__(self, name: str, balances: Mapping[str, float]):
        self.name = name
        self.balances: Dict[str, float] = dict(balances)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.balances})"

    def wealth(self, prices: Mapping[str, float]) -> float:
        total = 0.0
        for symbol, balance in self.balances.items():
            if symbol not in prices:
                raise MissingPriceError(f"{self.name}: no price for held symbol {symbol!r}")
            total += balance * prices[symbol]
        return total

    @staticmethod
    def allocate(
        usd_amount: float,
        weights: Mapping[str, float],
        prices: Mapping[str, float],
    ) -> Dict[str, float]:
        """Units of each symbol to buy so `usd_amount` is split pro rata to weights."""
        sum_weight = sum(weights.values())
        amounts: Dict[str, float] = {}
        for symbol, weight in weights.items():
            if symbol not in prices:
                raise MissingPriceError(f"no price for {symbol!r} at allocation time")
            amounts[symbol] = usd_amount * weight / sum_weight / prices[symbol]
        return amounts


# =============================================================================
# Weighted AMM portfolio
# =============================================================================

@dataclass(frozen=True)
class Arbitrage:
    """Outcome of an arbitrage search: spend `amount` of from_symbol, receive to_symbol."""
    from_symbol: str
    to_symbol: str
    amount: float = 0.0
    profit: float = 0.0

    @property
    def is_profitable(self) -> bool:
        return self.amount > 0.0 and self.profit > 0.0


class RebalancePortfolio(Portfolio):
    """
    Portfolio whose balances move along a weighted bonding curve.

    Swap return for `amount` of asset f into asset t (w = weights, b = balances,
    w_min = min weight, r = 1 - fee/100):

        out = amount · b_t · w_f · r / ((amount · w_f / w_min + b_f) · w_t)

    The fee only scales the output; the depth term in the denominator is fee-free.
    Since w_t >= w_min and r <= 1, `out` stays below b_t for any finite amount,
    so a single swap cannot drain the output balance.

    Optimal arbitrage: maximising  p_t · out(x) − p_f · x  gives the stationary point

        x* = w_min · ( sqrt(b_f · b_t · p_t · r / (p_f · w_f · w_t)) − b_f / w_f )

    which is a maximum because out(x) is concave in x.
    """

    def __init__(
        self,
        name: str,
        balances: Mapping[str, float],
        weights: Mapping[str, float],
        fee: float,
    ):
        super().__init__(name, balances)
        if set(weights) != set(self.balances):
            raise ValueError(
                f"{name}: weights {sorted(weights)} and balances {sorted(self.balances)} differ"
            )
        if any(w <= 0 for w in weights.values()):
            raise ValueError(f"{name}: weights must be positive, got {dict(weights)}")
        if not 0.0 <= fee <= 100.0:
            raise ValueError(f"{name}: fee must be a percentage in [0, 100], got {fee}")

        self.weights: Dict[str, float] = dict(weights)
        self.fee = float(fee)

    # ----- derived properties -----
    @property
    def min_weight(self) -> float:
        return min(self.weights.values())

    @property
    def fee_multiplier(self) -> float:
        return 1.0 - self.fee / 100.0

    # ----- bonding curve -----
    def get_return(self, from_symbol: str, to_symbol: str, amount: float) -> float:
        """Output of swapping `amount` of from_symbol into to_symbol. Does not mutate state."""
        from_balance = self.balances[from_symbol]
        from_weight = self.weights[from_symbol]
        to_balance = self.balances[to_symbol]
        to_weight = self.weights[to_symbol]

        return (
            amount * to_balance * from_weight * self.fee_multiplier
            / ((amount * from_weight / self.min_weight + from_balance) * to_weight)
        )

    def spot_rate(self, from_symbol: str, to_symbol: str) -> float:
        """Marginal units of to_symbol per unit of from_symbol at zero size, fee excluded."""
        return (
            self.balances[to_symbol] * self.weights[from_symbol]
            / (self.balances[from_symbol] * self.weights[to_symbol])
        )

    def swap(self, from_symbol: str, to_symbol: str, amount: float) -> float:
        if not amount > 0:
            raise ValueError(f"{self.name}: swap amount must be positive, got {amount}")
        if from_symbol == to_symbol:
            raise ValueError(f"{self.name}: cannot swap {from_symbol!r} into itself")

        result = self.get_return(from_symbol, to_symbol, amount)
        self.balances[from_symbol] += amount
        self.balances[to_symbol] -= result
        return result

    # ----- arbitrage -----
    def best_arbitrage(
        self,
        cheap_symbol: str,
        cheap_price: float,
        expensive_symbol: str,
        expensive_price: float,
    ) -> Arbitrage:
        """
        Profit-maximising trade that sells `cheap_symbol` into the pool and sells the
        received `expensive_symbol` on the external market. Does not mutate the pool.

        Returns a zero Arbitrage when the external price gap does not beat the
        pool's internal rate (x* <= 0).
        """
        cheap_balance = self.balances[cheap_symbol]
        cheap_weight = self.weights[cheap_symbol]
        expensive_balance = self.balances[expensive_symbol]
        expensive_weight = self.weights[expensive_symbol]

        exchange_amount = self.min_weight * (
            math.sqrt(
                cheap_balance * expensive_balance * expensive_price * self.fee_multiplier
                / (cheap_price * cheap_weight * expensive_weight)
            )
            - cheap_balance / cheap_weight
        )

        if exchange_amount <= 0:
            return Arbitrage(cheap_symbol, expensive_symbol)

        return_amount = self.get_return(cheap_symbol, expensive_symbol, exchange_amount)
        profit = return_amount * expensive_price - exchange_amount * cheap_price
        return Arbitrage(cheap_symbol, expensive_symbol, exchange_amount, profit)
