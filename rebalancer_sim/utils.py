"""
Utility functions, constants, and error types for the rebalancer backtest.
"""
from __future__ import annotations

import inspect
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import matplotlib.pyplot as plt
import yaml

# =============================================================================
# Plot styling (global)
# =============================================================================
TITLE_FONT_SIZE = 16
LABEL_FONT_SIZE = 14
LEGEND_FONT_SIZE = 12

plt.rcParams.update({
    "axes.titlesize": TITLE_FONT_SIZE,
    "axes.labelsize": LABEL_FONT_SIZE,
    "legend.fontsize": LEGEND_FONT_SIZE,
})
plt.rcParams["axes.grid"] = True


# =============================================================================
# Time grid constants
# =============================================================================

MINUTE_MS = 60_000
MINUTES_PER_DAY = 60 * 24

# one original (minute) sample becomes this many ticks
INTERPOLATION_SCALE = 12


# =============================================================================
# Errors
# =============================================================================

class RangeError(LookupError):
    """A truncation bound is not one of the series' timestamps."""


class MissingPriceError(LookupError):
    """A held symbol has no price in the supplied snapshot."""


class EmptyWindowError(ValueError):
    """The common window of all series contains no ticks."""


# =============================================================================
# Global utilities
# =============================================================================

def next_numbered_path(base: Path, extension: str = ".txt") -> Path:
    """
    Return the first path of the form `{stem}_{n}{extension}` that does not exist yet.
    Ensures the parent directory exists before returning the candidate.
    """
    base = Path(base)
    directory = base.parent if base.parent != Path("") else Path(".")
    directory.mkdir(parents=True, exist_ok=True)
    if base.suffix:
        stem = base.stem
        ext = base.suffix
    else:
        stem = base.name
        ext = extension
    idx = 0
    while True:
        candidate = directory / f"{stem}_{idx}{ext}"
        if not candidate.exists():
            return candidate
        idx += 1


# =============================================================================
# Configuration loading
# =============================================================================

# simulate() arguments that come from the quote files, not from the `simulate` mapping
DATA_PARAMETERS = ("numeraire", "assets", "weights", "rng")


def _parse_source(block: Any, where: str, with_weight: bool) -> Dict[str, Any]:
    if not isinstance(block, dict):
        raise ValueError(f"{where} must be a mapping with 'symbol' and 'path'.")
    missing = [k for k in ("symbol", "path") if k not in block]
    if with_weight and "weight" not in block:
        missing.append("weight")
    if missing:
        raise ValueError(f"{where} is missing keys: {missing}")

    source = {"symbol": str(block["symbol"]), "path": Path(block["path"])}
    if with_weight:
        weight = block["weight"]
        if isinstance(weight, bool) or not isinstance(weight, int) or weight <= 0:
            raise ValueError(f"{where} weight must be a positive integer, got {weight!r}")
        source["weight"] = weight
    return source


def load_run_config(
    config_path: Path,
    simulate_func: Optional[Callable[..., Any]] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]], Dict[str, Any]]:
    """
    Load a backtest configuration from YAML.

    The file must contain:
      • `numeraire`: {symbol, path} of the reference series,
      • `assets`: a list of {symbol, path, weight} for the basket,
      • `simulate`: every scalar parameter accepted by `simulate`.

    Relative quote paths are resolved against the configuration file's directory.
    Returns (numeraire_source, asset_sources, simulate_params).
    """
    if simulate_func is None:
        from .run import simulate as simulate_func

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Missing configuration file: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        config_data = yaml.safe_load(handle)

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_path}")

    cfg_dir = config_path.resolve().parent
    numeraire = _parse_source(config_data.get("numeraire"), "'numeraire'", with_weight=False)
    numeraire["path"] = cfg_dir / numeraire["path"]

    assets_raw = config_data.get("assets")
    if not isinstance(assets_raw, list) or len(assets_raw) == 0:
        raise ValueError(f"'assets' must be a non-empty list in {config_path}")
    assets = []
    for i, block in enumerate(assets_raw):
        source = _parse_source(block, f"'assets[{i}]'", with_weight=True)
        source["path"] = cfg_dir / source["path"]
        assets.append(source)

    symbols = [a["symbol"] for a in assets]
    if len(set(symbols)) != len(symbols):
        raise ValueError(f"Duplicate asset symbols in {config_path}: {symbols}")

    params = config_data.get("simulate")
    if not isinstance(params, dict):
        raise ValueError(f"'simulate' section missing in {config_path}")
    params = dict(params)

    signature = inspect.signature(simulate_func)
    expected_keys = [name for name in signature.parameters if name not in DATA_PARAMETERS]
    missing_keys = [name for name in expected_keys if name not in params]
    if missing_keys:
        raise ValueError(f"Missing simulate parameters in {config_path}: {missing_keys}")

    extra_keys = sorted(set(params) - set(expected_keys))
    if extra_keys:
        raise ValueError(f"Unexpected keys in 'simulate' section: {extra_keys}")

    return numeraire, assets, params
