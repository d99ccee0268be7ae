"""
Main simulation runner: backtest a weighted AMM rebalancer against buy-and-hold.
"""
from __future__ import annotations

import argparse
import math
import numbers
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from tqdm import tqdm

from .flow import daily_budget, pick_pair, plan_daily_flow
from .portfolio import Arbitrage, Portfolio, RebalancePortfolio
from .quotes import Quotes, align_quotes, interpolate_quotes, prices_at
from .utils import (
    INTERPOLATION_SCALE,
    LABEL_FONT_SIZE,
    LEGEND_FONT_SIZE,
    MINUTES_PER_DAY,
    TITLE_FONT_SIZE,
    load_run_config,
    next_numbered_path,
)


# =============================================================================
# Simulation state
# =============================================================================

@dataclass
class ArbitrageEvent:
    tick: int
    time: float
    from_symbol: str
    to_symbol: str
    amount: float
    profit: float
    tx_cost: float


@dataclass
class SimulationState:
    """Running totals and the pending exogenous schedule, owned by `simulate`."""
    schedule: Dict[int, List[float]] = field(default_factory=dict)
    arbitrages: List[ArbitrageEvent] = field(default_factory=list)
    total_arbitrager_profit: float = 0.0
    total_tx_fees: float = 0.0
    exogenous_trade_count: int = 0
    exogenous_volume_usd: float = 0.0

    @property
    def arbitrage_count(self) -> int:
        return len(self.arbitrages)


def tx_cost(tick: int, base: float = 1.0, amplitude: float = 0.5, period: float = 1000.0) -> float:
    """Deterministic oscillating per-trade cost paid by the arbitrager."""
    return math.sin(tick / period) * amplitude + base


def best_pair_arbitrage(pool: RebalancePortfolio, prices: Mapping[str, float]) -> Arbitrage:
    """
    Scan every ordered pair of pool assets and keep the most profitable candidate.
    Pairs are visited in lexicographic order and only a strictly larger profit
    replaces the incumbent, so ties go to the lexicographically first pair.
    """
    symbols = sorted(pool.weights)
    best = Arbitrage(symbols[0], symbols[0])
    for cheap in symbols:
        for expensive in symbols:
            if cheap == expensive:
                continue
            candidate = pool.best_arbitrage(cheap, prices[cheap], expensive, prices[expensive])
            if candidate.profit > best.profit:
                best = candidate
    return best


def _snapshot(tick: int, portfolios: List[Portfolio], prices: Mapping[str, float]) -> Dict[str, Any]:
    return {
        "tick": tick,
        "prices": dict(prices),
        "balances": {p.name: dict(p.balances) for p in portfolios},
        "wealth": {p.name: p.wealth(prices) for p in portfolios},
    }


# =============================================================================
# Simulation
# =============================================================================

def simulate(
    numeraire: Quotes,
    assets: Mapping[str, Quotes],
    weights: Mapping[str, int],
    initial_capital: float = 10_000.0,
    daily_exchange_amount: Optional[float] = 1_000.0,
    daily_exchange_percent: Optional[float] = None,
    fee: float = 0.2,
    scale: int = INTERPOLATION_SCALE,
    seed: int = 7,
    tx_cost_base: float = 1.0,
    tx_cost_amplitude: float = 0.5,
    tx_cost_period: float = 1000.0,
    progress: bool = True,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, Any]:
    """
    Backtest three portfolios over the common tick grid of all quote series:

      • a numéraire holder (all capital in the reference asset),
      • a basket holder (capital split by weight, never traded),
      • the AMM rebalancer (same initial basket, trades along the bonding curve).

    Each tick: scheduled exogenous swaps hit the rebalancer first, then the
    arbitrager takes the single most profitable pair trade if its profit beats
    the tick's transaction cost.

    Exactly one of `daily_exchange_amount` (USD/day) or `daily_exchange_percent`
    (share of the rebalancer's wealth at each day start) must be set.
    `rng` overrides the generator seeded from `seed`.
    """
    if (daily_exchange_amount is None) == (daily_exchange_percent is None):
        raise ValueError("set exactly one of daily_exchange_amount / daily_exchange_percent")
    if daily_exchange_percent is not None and not 0.0 <= daily_exchange_percent <= 100.0:
        raise ValueError(f"daily_exchange_percent must be in [0, 100], got {daily_exchange_percent}")
    if daily_exchange_amount is not None and not daily_exchange_amount > 0:
        raise ValueError(f"daily_exchange_amount must be positive, got {daily_exchange_amount}")
    if not initial_capital > 0:
        raise ValueError(f"initial_capital must be positive, got {initial_capital}")
    if set(weights) != set(assets):
        raise ValueError(f"weights {sorted(weights)} do not match assets {sorted(assets)}")
    bad_weights = {s: w for s, w in weights.items()
                   if isinstance(w, bool) or not isinstance(w, numbers.Integral) or w <= 0}
    if bad_weights:
        raise ValueError(f"weights must be positive integers, got {bad_weights}")
    if not tx_cost_base >= tx_cost_amplitude >= 0:
        raise ValueError(
            f"tx cost must stay non-negative: need base >= amplitude >= 0, "
            f"got base={tx_cost_base}, amplitude={tx_cost_amplitude}"
        )
    if not tx_cost_period > 0:
        raise ValueError(f"tx_cost_period must be positive, got {tx_cost_period}")
    if len(assets) < 2:
        raise ValueError("the rebalancer needs at least two assets")
    if numeraire.symbol in assets:
        raise ValueError(f"numeraire symbol {numeraire.symbol!r} is also listed as an asset")

    if rng is None:
        rng = np.random.default_rng(seed)

    # --- Aligning -------------------------------------------------------------
    series = {numeraire.symbol: numeraire, **assets}
    aligned = align_quotes(series)
    start, stop = aligned[numeraire.symbol].first_time, aligned[numeraire.symbol].last_time
    days = math.ceil(abs(stop - start) / (1000 * 3600 * 24))
    print(f"[align] {len(series)} series truncated to {start:.0f} - {stop:.0f} ({days} days)")

    # --- Interpolating --------------------------------------------------------
    grid = interpolate_quotes(aligned, scale)
    ref = grid[numeraire.symbol]
    quotes = {symbol: grid[symbol] for symbol in assets}
    n_ticks = len(ref)
    ticks_per_day = MINUTES_PER_DAY * scale
    print(f"[interpolate] scale={scale} -> {n_ticks} ticks ({ticks_per_day} per day)")

    # --- Portfolios -----------------------------------------------------------
    prices0 = prices_at(quotes, 0)
    hodl_numeraire = Portfolio("NumeraireHolder", {numeraire.symbol: initial_capital / ref.price_at(0)})
    hodl_basket = Portfolio("BasketHolder", Portfolio.allocate(initial_capital, weights, prices0))
    rebalancer = RebalancePortfolio(
        "Rebalancer", Portfolio.allocate(initial_capital, weights, prices0), weights, fee
    )

    def all_prices(i: int) -> Dict[str, float]:
        snap = prices_at(quotes, i)
        snap[numeraire.symbol] = ref.price_at(i)
        return snap

    portfolios: List[Portfolio] = [hodl_numeraire, hodl_basket, rebalancer]
    start_snapshot = _snapshot(0, portfolios, all_prices(0))

    # --- Running --------------------------------------------------------------
    state = SimulationState()
    symbols = sorted(assets)
    numeraire_wealth = np.empty(n_ticks)
    basket_wealth = np.empty(n_ticks)
    rebalancer_wealth = np.empty(n_ticks)

    for t in tqdm(range(n_ticks), desc="Simulating", unit="tick", disable=not progress):
        prices = prices_at(quotes, t)

        if t % ticks_per_day == 0:
            basis = initial_capital if daily_exchange_percent is None else rebalancer.wealth(prices)
            budget = daily_budget(basis, daily_exchange_amount, daily_exchange_percent)
            state.schedule.update(
                plan_daily_flow(
                    rng, t, n_ticks, ticks_per_day, budget,
                    max_amount=basis / 100.0,
                    accumulate=daily_exchange_percent is not None,
                )
            )

        # 1) exogenous flow
        for usd in state.schedule.pop(t, []):
            from_symbol, to_symbol = pick_pair(rng, symbols)
            rebalancer.swap(from_symbol, to_symbol, usd / prices[from_symbol])
            state.exogenous_trade_count += 1
            state.exogenous_volume_usd += usd

        # 2) arbitrage against the post-flow pool
        best = best_pair_arbitrage(rebalancer, prices)
        cost = tx_cost(t, tx_cost_base, tx_cost_amplitude, tx_cost_period)
        if best.is_profitable and best.profit > cost:
            rebalancer.swap(best.from_symbol, best.to_symbol, best.amount)
            state.total_arbitrager_profit += best.profit - cost
            state.total_tx_fees += cost
            state.arbitrages.append(
                ArbitrageEvent(
                    tick=t, time=float(ref.times[t]),
                    from_symbol=best.from_symbol, to_symbol=best.to_symbol,
                    amount=best.amount, profit=best.profit, tx_cost=cost,
                )
            )

        numeraire_wealth[t] = hodl_numeraire.wealth({numeraire.symbol: ref.price_at(t)})
        basket_wealth[t] = hodl_basket.wealth(prices)
        rebalancer_wealth[t] = rebalancer.wealth(prices)

    # --- Finished -------------------------------------------------------------
    end_snapshot = _snapshot(n_ticks - 1, portfolios, all_prices(n_ticks - 1))

    return {
        "times": ref.times.copy(),
        "numeraire": numeraire.symbol,
        "symbols": symbols,
        "hodl_numeraire_wealth": numeraire_wealth,
        "hodl_basket_wealth": basket_wealth,
        "rebalancer_wealth": rebalancer_wealth,
        "start": start_snapshot,
        "end": end_snapshot,
        "arbitrages": state.arbitrages,
        "total_arbitrager_profit": state.total_arbitrager_profit,
        "total_tx_fees": state.total_tx_fees,
        "arbitrage_count": state.arbitrage_count,
        "exogenous_trade_count": state.exogenous_trade_count,
        "exogenous_volume_usd": state.exogenous_volume_usd,
        "ticks": n_ticks,
    }


# =============================================================================
# Reporting
# =============================================================================

def results_frame(out: Dict[str, Any]) -> pd.DataFrame:
    """Per-tick wealth of the three portfolios."""
    return pd.DataFrame({
        "time": out["times"],
        "numeraire_holder": out["hodl_numeraire_wealth"],
        "basket_holder": out["hodl_basket_wealth"],
        "rebalancer": out["rebalancer_wealth"],
    })


def arbitrage_frame(out: Dict[str, Any]) -> pd.DataFrame:
    columns = ["tick", "time", "from_symbol", "to_symbol", "amount", "profit", "tx_cost"]
    return pd.DataFrame([vars(e) for e in out["arbitrages"]], columns=columns)


def print_summary(out: Dict[str, Any]) -> None:
    for label, snap in (("BEGIN", out["start"]), ("END", out["end"])):
        print(f"\n======== {label} ========\n")
        print(f"Prices: {snap['prices']}")
        for name, wealth in snap["wealth"].items():
            print(f"{name} {snap['balances'][name]} ${wealth:.2f}")
    print(f"[RESULT] Total arbitragers profit: ${out['total_arbitrager_profit']:.2f}")
    print(f"[RESULT] Total transaction fees: ${out['total_tx_fees']:.2f}")
    print(f"[RESULT] Number of arbitrages: {out['arbitrage_count']}")
    print(
        f"[RESULT] Exogenous trades: {out['exogenous_trade_count']} "
        f"(${out['exogenous_volume_usd']:.2f})"
    )


def plot_wealth(out: Dict[str, Any], out_path: Path) -> Path:
    df = results_frame(out)
    days = (df["time"] - df["time"].iloc[0]) / (1000 * 3600 * 24)

    fig, ax = plt.subplots(figsize=(12, 5))
    ax.plot(days, df["numeraire_holder"], lw=1.5, label=f"Hold {out['numeraire']}")
    ax.plot(days, df["basket_holder"], lw=1.5, label="Hold basket")
    ax.plot(days, df["rebalancer"], lw=1.8, label="AMM rebalancer")
    ax.set_xlabel("Day", fontsize=LABEL_FONT_SIZE)
    ax.set_ylabel("Wealth", fontsize=LABEL_FONT_SIZE)
    ax.set_title(f"Wealth over time ({out['arbitrage_count']} arbitrages)", fontsize=TITLE_FONT_SIZE)
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=LEGEND_FONT_SIZE, loc="upper left")
    fig.tight_layout()

    path = next_numbered_path(Path(out_path), extension=".png")
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"[PLOT] wrote {path}")
    return path


# =============================================================================
# Entrypoint
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backtest a weighted AMM rebalancer against buy-and-hold.")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).with_name("rebalancer_config.yml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument("--seed", type=int, help="Override the random seed from the configuration.")
    parser.add_argument("--events-csv", type=Path, help="Write the arbitrage event log to this CSV.")
    parser.add_argument("--series-csv", type=Path, help="Write per-tick portfolio wealth to this CSV.")
    parser.add_argument(
        "--plot",
        type=Path,
        default=Path("rebalancer_results/wealth.png"),
        help="Base path for the wealth chart (a numeric suffix is added).",
    )
    viz_group = parser.add_mutually_exclusive_group()
    viz_group.add_argument(
        "--visualize",
        dest="visualize",
        action="store_true",
        help="Save the wealth chart after the simulation."
    )
    viz_group.add_argument(
        "--no-visualize",
        dest="visualize",
        action="store_false",
        help="Skip the wealth chart."
    )
    parser.set_defaults(visualize=True)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    numeraire_src, asset_srcs, params = load_run_config(args.config, simulate_func=simulate)
    print(f"[config] {args.config}")

    if args.seed is not None:
        params["seed"] = args.seed
        print(f"[override] seed = {args.seed}")

    numeraire = Quotes.from_file(numeraire_src["path"], numeraire_src["symbol"])
    print(f"[load] {numeraire.symbol}: {len(numeraire)} samples")
    assets: Dict[str, Quotes] = {}
    weights: Dict[str, int] = {}
    for src in asset_srcs:
        assets[src["symbol"]] = Quotes.from_file(src["path"], src["symbol"])
        weights[src["symbol"]] = src["weight"]
        print(f"[load] {src['symbol']}: {len(assets[src['symbol']])} samples, weight {src['weight']}")

    out = simulate(numeraire, assets, weights, **params)
    print_summary(out)

    if args.events_csv is not None:
        args.events_csv.parent.mkdir(parents=True, exist_ok=True)
        arbitrage_frame(out).to_csv(args.events_csv, index=False)
        print(f"[RESULT] Arbitrage events saved to {args.events_csv}")
    if args.series_csv is not None:
        args.series_csv.parent.mkdir(parents=True, exist_ok=True)
        results_frame(out).to_csv(args.series_csv, index=False)
        print(f"[RESULT] Wealth series saved to {args.series_csv}")
    if args.visualize:
        plot_wealth(out, args.plot)


if __name__ == "__main__":
    main()
