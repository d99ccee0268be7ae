"""
Exogenous trade flow: random daily schedules of USD-sized swaps.

Everything here draws from an explicit `np.random.Generator` so a run is
reproducible from its seed.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np


def daily_budget(
    rebalancer_wealth: float,
    exchange_amount: Optional[float] = None,
    exchange_percent: Optional[float] = None,
) -> float:
    """USD to push through the pool today: a fixed amount or a share of current wealth."""
    if (exchange_amount is None) == (exchange_percent is None):
        raise ValueError("set exactly one of exchange_amount / exchange_percent")
    if exchange_amount is not None:
        return float(exchange_amount)
    return rebalancer_wealth * exchange_percent / 100.0


def plan_daily_flow(
    rng: np.random.Generator,
    offset: int,
    n_ticks: int,
    ticks_per_day: int,
    budget: float,
    max_amount: float,
    accumulate: bool = False,
) -> Dict[int, List[float]]:
    """
    Schedule one day of exogenous trades starting at grid index `offset`.

    Each draw picks a tick `offset + trunc(u · ticks_per_day) mod (n_ticks − offset)`
    and a size `1 + u · max_amount` USD; the last draw is cut so the day's total
    equals `budget` exactly.

    With `accumulate=False` a draw landing on an already scheduled tick is
    discarded and redrawn. Once every tick of the day window holds a trade,
    later draws accumulate instead, so a short final day still terminates.
    With `accumulate=True` draws on the same tick are simply appended.

    Returns {tick: [usd_amount, ...]}.
    """
    schedule: Dict[int, List[float]] = {}
    remaining_ticks = n_ticks - offset
    if budget <= 0 or remaining_ticks <= 0:
        return schedule

    window = min(ticks_per_day, remaining_ticks)
    spent = 0.0
    while spent < budget:
        index = int(rng.random() * ticks_per_day) % remaining_ticks
        tick = offset + index
        if tick in schedule and not accumulate and len(schedule) < window:
            continue

        amount = 1.0 + rng.random() * max_amount
        if spent + amount > budget:
            amount = budget - spent
        spent += amount
        schedule.setdefault(tick, []).append(amount)
    return schedule


def pick_pair(rng: np.random.Generator, symbols: Sequence[str]) -> Tuple[str, str]:
    """Two distinct symbols, uniformly at random, from the sorted symbol list."""
    ordered = sorted(symbols)
    if len(ordered) < 2:
        raise ValueError(f"need at least two assets to trade, got {ordered}")
    i = int(rng.integers(len(ordered)))
    j = i
    while j == i:
        j = int(rng.integers(len(ordered)))
    return ordered[i], ordered[j]
