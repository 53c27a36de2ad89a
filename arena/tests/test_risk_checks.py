"""
Tests for risk_checks.py — drawdown, trade caps, budget and position sizing.
"""

import random

import pytest

from agent_profiles import AgentConfig
from decision_oracle import Decision
from market_feed import MarketSnapshot
from match_models import AgentState
from risk_checks import STOP_BUDGET, STOP_DRAWDOWN, STOP_TRADE_LIMIT, RiskGuard, simulate_pnl


def state(config=None, pnl_bps=0, trades=0):
    s = AgentState.for_config("a1", config or AgentConfig.moderate("Alpha"), 0)
    s.pnl_bps = pnl_bps
    s.trades_this_round = trades
    return s


def buy(pct=10.0, direction="buy"):
    return Decision(action="trade", reasoning="r", pair="ETH/USDC", direction=direction, amount_pct=pct)


# ─── validate_trade ───────────────────────────────────────────────────────────

class TestValidateTrade:

    def test_fresh_agent_allowed(self):
        assert RiskGuard().validate_trade(state()) == (True, "OK")

    def test_drawdown_at_limit_stops(self):
        ok, reason = RiskGuard().validate_trade(state(pnl_bps=-1500))
        assert not ok
        assert reason.startswith(STOP_DRAWDOWN)

    def test_drawdown_just_inside_limit(self):
        ok, _ = RiskGuard().validate_trade(state(pnl_bps=-1499))
        assert ok

    def test_agent_trade_cap(self):
        ok, reason = RiskGuard().validate_trade(state(trades=10))
        assert not ok
        assert reason == f"{STOP_TRADE_LIMIT} (10/10)"

    def test_match_cap_tightens(self):
        guard = RiskGuard(match_trade_cap=3)
        assert guard.trade_cap(AgentConfig.moderate("A")) == 3
        assert guard.trades_remaining(state(trades=2)) == 1
        assert not guard.validate_trade(state(trades=3))[0]

    def test_match_cap_never_loosens(self):
        assert RiskGuard(match_trade_cap=50).trade_cap(AgentConfig.conservative("C")) == 5

    def test_budget_exhausted(self):
        cfg = AgentConfig.moderate("Tiny", starting_budget=0.5)
        ok, reason = RiskGuard().validate_trade(state(cfg))
        assert not ok
        assert reason.startswith(STOP_BUDGET)


# ─── size_trade ───────────────────────────────────────────────────────────────

class TestSizeTrade:

    def test_within_limit(self):
        pct, notional = RiskGuard().size_trade(state(), buy(10.0))
        assert pct == 10.0
        assert notional == pytest.approx(10.0)

    def test_clamped_to_max_position(self):
        pct, notional = RiskGuard().size_trade(state(), buy(80.0))
        assert pct == 20.0
        assert notional == pytest.approx(20.0)

    def test_notional_tracks_portfolio_value(self):
        _, notional = RiskGuard().size_trade(state(pnl_bps=1000), buy(10.0))
        assert notional == pytest.approx(11.0)


# ─── simulate_pnl ─────────────────────────────────────────────────────────────

class TestSimulatePnl:

    def _snap(self, change):
        return MarketSnapshot("ETH/USDC", 3000.0, change, 1e9, 0.0, "stub")

    def test_no_snapshot_is_flat(self):
        assert simulate_pnl(buy(), None, AgentConfig.moderate("A")) == 0

    def test_bounded_by_stop_and_take(self):
        cfg = AgentConfig.aggressive("Degen", risk_tolerance=10, stop_loss_pct=0.1, take_profit_pct=0.2)
        rng = random.Random(11)
        for _ in range(200):
            pnl = simulate_pnl(buy(direction=rng.choice(["buy", "sell"])), self._snap(5.0), cfg, rng)
            assert -10 <= pnl <= 20

    def test_deterministic_with_seed(self):
        cfg = AgentConfig.moderate("A")
        a = simulate_pnl(buy(), self._snap(2.0), cfg, random.Random(4))
        b = simulate_pnl(buy(), self._snap(2.0), cfg, random.Random(4))
        assert a == b

    def test_trend_alignment_skews_positive(self):
        cfg = AgentConfig.conservative("C")
        rng = random.Random(9)
        with_trend = sum(simulate_pnl(buy(), self._snap(4.0), cfg, rng) for _ in range(300))
        against = sum(simulate_pnl(buy(direction="sell"), self._snap(4.0), cfg, rng) for _ in range(300))
        assert with_trend > against
