"""
Per-asset price series and the alignment / interpolation stages that turn
independently sampled quote files into one common tick grid.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .utils import MINUTE_MS, EmptyWindowError, RangeError


# =============================================================================
# Quotes (one asset's time series)
# =============================================================================

class Quotes:
    """
    Ordered (timestamp, price) samples for one asset.

    Timestamps are epoch milliseconds stored as float64 so interpolated grid
    points between two minutes stay exact enough for lookups; prices are float64.
    Instances are never mutated by the stages below: every transformation
    returns a fresh series.
    """

    def __init__(
        self,
        times: Optional[Iterable[float]] = None,
        prices: Optional[Iterable[float]] = None,
        symbol: str = "",
    ):
        self.times = np.asarray([] if times is None else list(times), dtype=float)
        self.prices = np.asarray([] if prices is None else list(prices), dtype=float)
        self.symbol = symbol
        if self.times.shape != self.prices.shape:
            raise ValueError(
                f"{symbol or 'series'}: {len(self.times)} timestamps vs {len(self.prices)} prices"
            )

    # ----- loading -----
    @classmethod
    def from_pairs(cls, flat: Sequence, symbol: str = "") -> "Quotes":
        """Parse `[ts, price, ts, price, ...]`; timestamps are floored to the minute."""
        if len(flat) % 2 != 0:
            raise ValueError(f"{symbol or 'series'}: odd number of values ({len(flat)})")
        times = [int(float(ts)) // MINUTE_MS * MINUTE_MS for ts in flat[0::2]]
        prices = [float(p) for p in flat[1::2]]
        return cls(times, prices, symbol=symbol)

    @classmethod
    def from_file(cls, path: Path, symbol: str = "") -> "Quotes":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Quote file not found: {path}")

        if path.suffix.lower() == ".csv":
            df = pd.read_csv(path)
            if df.shape[1] < 2:
                raise ValueError(f"{path}: expected timestamp and price columns")
            flat = df.iloc[:, :2].to_numpy().ravel().tolist()
        else:
            with path.open("r", encoding="utf-8") as handle:
                flat = json.load(handle)
            if not isinstance(flat, list):
                raise ValueError(f"{path}: expected a flat [timestamp, price, ...] list")
        return cls.from_pairs(flat, symbol=symbol or path.stem)

    # ----- basic access -----
    def __len__(self) -> int:
        return len(self.times)

    def __repr__(self) -> str:
        return f"Quotes({self.symbol!r}, n={len(self)})"

    @property
    def first_time(self) -> float:
        return float(self.times[0])

    @property
    def last_time(self) -> float:
        return float(self.times[-1])

    def price_at(self, index: int) -> float:
        return float(self.prices[index])

    # ----- transformations -----
    def truncate(self, start: float, stop: float) -> "Quotes":
        """
        Restrict to [start, stop] inclusive.

        Both bounds must be sample timestamps: the slice runs from the first
        occurrence of `start` to the last occurrence of `stop`.
        """
        hits_start = np.flatnonzero(self.times == start)
        hits_stop = np.flatnonzero(self.times == stop)
        if hits_start.size == 0:
            raise RangeError(f"{self.symbol or 'series'}: start {start:.0f} is not a sample timestamp")
        if hits_stop.size == 0:
            raise RangeError(f"{self.symbol or 'series'}: stop {stop:.0f} is not a sample timestamp")

        i0, i1 = int(hits_start[0]), int(hits_stop[-1])
        return Quotes(self.times[i0:i1 + 1], self.prices[i0:i1 + 1], symbol=self.symbol)

    def padded_to(self, length: int, step_ms: int = MINUTE_MS) -> "Quotes":
        """
        Repeat the last price at successive `step_ms` steps until the series has
        `length` samples. Tolerates upstream gaps at the tail of a quote file;
        never shortens.
        """
        missing = length - len(self)
        if missing <= 0 or len(self) == 0:
            return Quotes(self.times, self.prices, symbol=self.symbol)
        extra_t = self.times[-1] + step_ms * np.arange(1, missing + 1, dtype=float)
        extra_p = np.full(missing, self.prices[-1])
        return Quotes(
            np.concatenate([self.times, extra_t]),
            np.concatenate([self.prices, extra_p]),
            symbol=self.symbol,
        )

    def interpolate(self, scale: int) -> "Quotes":
        """
        Upsample linearly with `scale` points per original segment.

        Segment i contributes t_i + (t_{i+1} - t_i) * j / scale for j in [0, scale):
        the left endpoint is kept, the right one is not, so the last original
        sample is dropped and the output has (n - 1) * scale points.
        A zero-width segment (duplicate timestamp) holds its left price.
        """
        if scale < 1:
            raise ValueError(f"scale must be >= 1, got {scale}")
        if len(self) < 2:
            return Quotes(symbol=self.symbol)

        t1, t2 = self.times[:-1, None], self.times[1:, None]
        p1, p2 = self.prices[:-1, None], self.prices[1:, None]
        frac = np.arange(scale, dtype=float)[None, :] / scale

        times = t1 + (t2 - t1) * frac
        dt = t2 - t1
        with np.errstate(divide="ignore", invalid="ignore"):
            slope = np.where(dt != 0, (p2 - p1) / dt, 0.0)
        prices = p1 + (times - t1) * slope
        return Quotes(times.ravel(), prices.ravel(), symbol=self.symbol)


def prices_at(quotes: Mapping[str, Quotes], index: int) -> Dict[str, float]:
    """Price snapshot {symbol: price} at a grid index."""
    return {symbol: q.price_at(index) for symbol, q in quotes.items()}


# =============================================================================
# Aligning / Interpolating stages
# =============================================================================

def common_window(series: Iterable[Quotes]) -> Tuple[float, float]:
    """(latest first timestamp, earliest last timestamp) over all series."""
    series = list(series)
    if not series or any(len(q) == 0 for q in series):
        raise EmptyWindowError("cannot align an empty series")
    start = max(q.first_time for q in series)
    stop = min(q.last_time for q in series)
    if start > stop:
        raise EmptyWindowError(f"series do not overlap: common start {start:.0f} > stop {stop:.0f}")
    return start, stop


def align_quotes(quotes: Mapping[str, Quotes]) -> Dict[str, Quotes]:
    """
    Truncate every series to the common window, then pad the shorter ones
    (repeat-last-price) up to the longest truncated length.
    """
    start, stop = common_window(quotes.values())
    truncated = {symbol: q.truncate(start, stop) for symbol, q in quotes.items()}
    length = max(len(q) for q in truncated.values())
    return {symbol: q.padded_to(length) for symbol, q in truncated.items()}


def interpolate_quotes(quotes: Mapping[str, Quotes], scale: int) -> Dict[str, Quotes]:
    upsampled = {symbol: q.interpolate(scale) for symbol, q in quotes.items()}
    if any(len(q) == 0 for q in upsampled.values()):
        raise EmptyWindowError("common window holds a single sample: no ticks to simulate")
    return upsampled
