import math

import numpy as np
import pytest

import rebalancer_sim.run as run_module
from rebalancer_sim.portfolio import RebalancePortfolio
from rebalancer_sim.quotes import Quotes
from rebalancer_sim.run import (
    arbitrage_frame,
    best_pair_arbitrage,
    main,
    results_frame,
    simulate,
    tx_cost,
)
from rebalancer_sim.utils import MINUTE_MS, EmptyWindowError, RangeError, load_run_config


def _minute_quotes(symbol, prices, start_minute=0):
    times = [(start_minute + i) * MINUTE_MS for i in range(len(prices))]
    return Quotes(times, prices, symbol=symbol)


def _market(n=40):
    btc = _minute_quotes("BTC", [10_000.0 + 5 * i for i in range(n)])
    eth = _minute_quotes("ETH", [500.0 * (1 + 0.01 * math.sin(i / 3)) for i in range(n)])
    ltc = _minute_quotes("LTC", [100.0 + 0.5 * i for i in range(n)])
    return btc, {"ETH": eth, "LTC": ltc}, {"ETH": 1, "LTC": 2}


def _run(**overrides):
    btc, assets, weights = _market()
    params = dict(
        initial_capital=10_000.0,
        daily_exchange_amount=500.0,
        daily_exchange_percent=None,
        fee=0.2,
        scale=4,
        seed=11,
        progress=False,
    )
    params.update(overrides)
    return simulate(btc, assets, weights, **params)


def test_simulate_outputs_consistent_lengths():
    out = _run()
    n = out["ticks"]

    assert n == (40 - 1) * 4
    assert len(out["times"]) == n
    assert len(out["hodl_numeraire_wealth"]) == n
    assert len(out["hodl_basket_wealth"]) == n
    assert len(out["rebalancer_wealth"]) == n
    assert len(results_frame(out)) == n
    assert out["arbitrage_count"] == len(out["arbitrages"]) == len(arbitrage_frame(out))


def test_all_portfolios_start_from_parity():
    out = _run()
    for wealth in out["start"]["wealth"].values():
        assert wealth == pytest.approx(10_000.0)
    assert out["start"]["balances"]["BasketHolder"] == pytest.approx(
        out["start"]["balances"]["Rebalancer"]
    )
    assert out["end"]["tick"] == out["ticks"] - 1


def test_basket_holder_never_trades():
    out = _run()
    assert out["end"]["balances"]["BasketHolder"] == out["start"]["balances"]["BasketHolder"]
    assert out["end"]["balances"]["NumeraireHolder"] == out["start"]["balances"]["NumeraireHolder"]


def test_rebalancer_balances_stay_positive():
    out = _run(daily_exchange_amount=5_000.0)
    assert all(b > 0 for b in out["end"]["balances"]["Rebalancer"].values())


def test_same_seed_gives_same_run():
    a = _run(seed=3)
    b = _run(seed=3)
    assert np.array_equal(a["rebalancer_wealth"], b["rebalancer_wealth"])
    assert a["arbitrages"] == b["arbitrages"]
    assert a["total_arbitrager_profit"] == b["total_arbitrager_profit"]


def test_injected_generator_overrides_seed():
    a = _run(seed=1, rng=np.random.default_rng(99))
    b = _run(seed=2, rng=np.random.default_rng(99))
    assert np.array_equal(a["rebalancer_wealth"], b["rebalancer_wealth"])


def test_fixed_policy_spends_the_daily_budget():
    out = _run(daily_exchange_amount=500.0)
    # the whole grid fits in a single day
    assert out["exogenous_volume_usd"] == pytest.approx(500.0)
    assert out["exogenous_trade_count"] > 0


def test_percent_policy_spends_share_of_wealth():
    out = _run(daily_exchange_amount=None, daily_exchange_percent=5.0)
    assert out["exogenous_volume_usd"] == pytest.approx(500.0)


def test_arbitrage_accounting_matches_events(monkeypatch):
    monkeypatch.setattr(run_module, "plan_daily_flow", lambda *args, **kwargs: {})
    btc = _minute_quotes("BTC", [10_000.0] * 30)
    flat = _minute_quotes("USD", [1.0] * 30)
    rising = _minute_quotes("ETH", [100.0 * (1 + 0.02 * i) for i in range(30)])
    out = simulate(
        btc, {"USD": flat, "ETH": rising}, {"USD": 1, "ETH": 1},
        initial_capital=10_000.0, daily_exchange_amount=100.0, daily_exchange_percent=None,
        fee=0.0, scale=2, seed=0, progress=False,
    )

    events = out["arbitrages"]
    assert out["arbitrage_count"] > 0
    assert out["exogenous_trade_count"] == 0
    for e in events:
        assert e.profit > e.tx_cost
        assert e.tx_cost == pytest.approx(tx_cost(e.tick))
        # pool underprices ETH as it rallies: arbitrager pays USD, takes ETH
        assert (e.from_symbol, e.to_symbol) == ("USD", "ETH")
    assert [e.tick for e in events] == sorted(e.tick for e in events)
    assert out["total_tx_fees"] == pytest.approx(sum(e.tx_cost for e in events))
    assert out["total_arbitrager_profit"] == pytest.approx(sum(e.profit - e.tx_cost for e in events))


def test_tx_cost_oscillates_around_one():
    assert tx_cost(0) == pytest.approx(1.0)
    assert tx_cost(int(1000 * math.pi / 2)) == pytest.approx(1.5, abs=1e-3)
    assert all(0.5 <= tx_cost(t) <= 1.5 for t in range(0, 20_000, 37))


def test_exactly_one_flow_policy_required():
    with pytest.raises(ValueError):
        _run(daily_exchange_amount=100.0, daily_exchange_percent=1.0)
    with pytest.raises(ValueError):
        _run(daily_exchange_amount=None, daily_exchange_percent=None)


def test_misaligned_series_raise_range_error():
    btc = _minute_quotes("BTC", [1.0] * 5)
    eth = _minute_quotes("ETH", [1.0] * 5, start_minute=1)
    odd = Quotes([30_000, 90_000, 150_000, 210_000], [1.0] * 4, symbol="LTC")
    with pytest.raises(RangeError):
        simulate(btc, {"ETH": eth, "LTC": odd}, {"ETH": 1, "LTC": 1}, progress=False)


def test_disjoint_series_raise_empty_window():
    btc = _minute_quotes("BTC", [1.0] * 5)
    eth = _minute_quotes("ETH", [1.0] * 5, start_minute=100)
    ltc = _minute_quotes("LTC", [1.0] * 5)
    with pytest.raises(EmptyWindowError):
        simulate(btc, {"ETH": eth, "LTC": ltc}, {"ETH": 1, "LTC": 1}, progress=False)


def test_load_run_config_validates_simulate_section(tmp_path):
    config = tmp_path / "cfg.yml"
    base = (
        "numeraire: {symbol: BTC, path: btc.json}\n"
        "assets:\n"
        "  - {symbol: ETH, path: eth.json, weight: 1}\n"
        "  - {symbol: LTC, path: ltc.json, weight: 2}\n"
        "simulate:\n"
        "  initial_capital: 100.0\n"
        "  daily_exchange_amount: 10.0\n"
        "  daily_exchange_percent: null\n"
        "  fee: 0.2\n"
        "  scale: 12\n"
        "  seed: 1\n"
        "  tx_cost_base: 1.0\n"
        "  tx_cost_amplitude: 0.5\n"
        "  tx_cost_period: 1000.0\n"
        "  progress: false\n"
    )
    config.write_text(base)
    numeraire, assets, params = load_run_config(config, simulate_func=simulate)
    assert numeraire["symbol"] == "BTC"
    assert numeraire["path"] == tmp_path.resolve() / "btc.json"
    assert [a["weight"] for a in assets] == [1, 2]
    assert params["daily_exchange_percent"] is None

    config.write_text(base + "  bogus: 1\n")
    with pytest.raises(ValueError, match="Unexpected"):
        load_run_config(config, simulate_func=simulate)

    config.write_text(base.replace("  seed: 1\n", ""))
    with pytest.raises(ValueError, match="Missing"):
        load_run_config(config, simulate_func=simulate)


def test_main_runs_packaged_config(tmp_path, capsys):
    events = tmp_path / "events.csv"
    series = tmp_path / "series.csv"
    main(["--no-visualize", "--events-csv", str(events), "--series-csv", str(series)])

    captured = capsys.readouterr().out
    assert "Number of arbitrages" in captured
    assert events.exists()
    assert series.exists()


def _flat_market(n=20):
    btc = _minute_quotes("BTC", [10_000.0] * n)
    a = _minute_quotes("A", [1.0] * n)
    b = _minute_quotes("B", [1.0] * n)
    return btc, {"A": a, "B": b}, {"A": 1, "B": 1}


def test_best_pair_tie_goes_to_lexicographically_first_pair():
    # insertion order deliberately reversed
    pool = RebalancePortfolio(
        "Rebalancer", {"C": 100.0, "B": 100.0, "A": 100.0}, {"C": 1, "B": 1, "A": 1}, 0.0
    )
    prices = {"A": 1.0, "B": 1.1, "C": 1.1}

    best = best_pair_arbitrage(pool, prices)
    tied = pool.best_arbitrage("A", 1.0, "C", 1.1)

    assert (best.from_symbol, best.to_symbol) == ("A", "B")
    assert best.profit == tied.profit


def test_arbitrage_sees_pool_after_same_tick_flow(monkeypatch):
    monkeypatch.setattr(
        run_module, "plan_daily_flow",
        lambda rng, offset, *args, **kwargs: {5: [1_000.0]} if offset == 0 else {},
    )
    monkeypatch.setattr(run_module, "pick_pair", lambda rng, symbols: ("A", "B"))
    btc, assets, weights = _flat_market()
    out = simulate(btc, assets, weights, initial_capital=10_000.0, daily_exchange_amount=1_000.0,
                   daily_exchange_percent=None, fee=0.2, scale=2, seed=0, progress=False)

    start_balances = out["start"]["balances"]["Rebalancer"]
    untouched = RebalancePortfolio("Rebalancer", start_balances, weights, 0.2)
    assert not best_pair_arbitrage(untouched, {"A": 1.0, "B": 1.0}).is_profitable

    after_flow = RebalancePortfolio("Rebalancer", start_balances, weights, 0.2)
    after_flow.swap("A", "B", 1_000.0)
    expected = best_pair_arbitrage(after_flow, {"A": 1.0, "B": 1.0})

    assert out["exogenous_trade_count"] == 1
    first = out["arbitrages"][0]
    assert first.tick == 5
    assert (first.from_symbol, first.to_symbol) == (expected.from_symbol, expected.to_symbol)
    assert first.amount == pytest.approx(expected.amount)
    assert first.profit == pytest.approx(expected.profit)


def test_zero_tx_cost_skips_unprofitable_ticks(monkeypatch):
    monkeypatch.setattr(run_module, "plan_daily_flow", lambda *args, **kwargs: {})
    btc, assets, weights = _flat_market()
    out = simulate(btc, assets, weights, daily_exchange_amount=100.0, fee=0.2, scale=2,
                   tx_cost_base=0.0, tx_cost_amplitude=0.0, progress=False)
    assert out["arbitrage_count"] == 0
    assert out["total_tx_fees"] == 0.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"tx_cost_base": -1.0},
        {"tx_cost_base": 0.5, "tx_cost_amplitude": 1.0},
        {"tx_cost_amplitude": -0.1},
        {"tx_cost_period": 0.0},
        {"daily_exchange_amount": 0.0},
        {"daily_exchange_amount": -5.0},
    ],
)
def test_simulate_rejects_invalid_parameters(overrides):
    btc, assets, weights = _flat_market()
    with pytest.raises(ValueError):
        simulate(btc, assets, weights, progress=False, **overrides)


@pytest.mark.parametrize("bad", [1.5, 0, -2, True])
def test_simulate_rejects_non_integer_weights(bad):
    btc, assets, _ = _flat_market()
    with pytest.raises(ValueError, match="positive integers"):
        simulate(btc, assets, {"A": 1, "B": bad}, progress=False)
