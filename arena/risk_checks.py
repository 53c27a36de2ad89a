"""
risk_checks.py — Per-agent risk limits for arena trading.

Validates each proposed trade against the limits in the agent's own config:
  - Max drawdown: cumulative P&L at or below -max_drawdown% stops the agent
  - Trades per round: the agent's cap, optionally tightened by the match
  - Remaining budget: portfolio value below the minimum trade size
  - Position size: clamped (not rejected) to max_position_pct

Per-trade stop-loss / take-profit bound the simulated P&L of each trade.

A failed check is not an error: the tick engine turns it into a `stop`.

Usage:
    guard = RiskGuard(match_trade_cap=3)
    ok, reason = guard.validate_trade(state)
    if not ok:
        state.stop(reason)
"""

from __future__ import annotations

import random
from typing import Optional

from loguru import logger

from agent_profiles import AgentConfig
from decision_oracle import Decision
from market_feed import MarketSnapshot
from match_models import AgentState


STOP_DRAWDOWN = "max drawdown"
STOP_TRADE_LIMIT = "trade limit reached"
STOP_BUDGET = "budget exhausted"

MIN_TRADE_USDC = 1.0


class RiskGuard:
    """Pre-trade and post-trade limit checks for one match."""

    def __init__(self, match_trade_cap: Optional[int] = None, min_trade_usdc: float = MIN_TRADE_USDC) -> None:
        self.match_trade_cap = match_trade_cap
        self.min_trade_usdc = min_trade_usdc

    def trade_cap(self, config: AgentConfig) -> int:
        if self.match_trade_cap is None:
            return config.max_trades_per_round
        return min(config.max_trades_per_round, self.match_trade_cap)

    def trades_remaining(self, state: AgentState) -> int:
        return max(0, self.trade_cap(state.config) - state.trades_this_round)

    def check_drawdown(self, state: AgentState) -> tuple[bool, str]:
        """Return (ok, reason). Drawdown is measured on cumulative P&L in bps."""
        limit_bps = state.config.max_drawdown_pct * 100
        if state.pnl_bps <= -limit_bps:
            return False, f"{STOP_DRAWDOWN} ({state.pnl_bps / 100:.1f}% <= -{state.config.max_drawdown_pct:g}%)"
        return True, "OK"

    def validate_trade(self, state: AgentState) -> tuple[bool, str]:
        """
        Check whether the agent may trade at all this tick.

        Returns:
            (allowed: bool, reason: str)
            If allowed=False, reason is the agent's stop reason.
        """
        ok, reason = self.check_drawdown(state)
        if not ok:
            return False, reason

        cap = self.trade_cap(state.config)
        if state.trades_this_round >= cap:
            return False, f"{STOP_TRADE_LIMIT} ({state.trades_this_round}/{cap})"

        if state.portfolio_value < self.min_trade_usdc:
            return False, f"{STOP_BUDGET} (${state.portfolio_value:.2f} left)"

        return True, "OK"

    def size_trade(self, state: AgentState, decision: Decision) -> tuple[float, float]:
        """Clamp the requested percent to max_position_pct. Returns (pct, notional)."""
        pct = min(decision.amount_pct, state.config.max_position_pct)
        if pct < decision.amount_pct:
            logger.debug(
                f"RiskGuard: {state.name} size {decision.amount_pct:g}% clamped to {pct:g}%"
            )
        return pct, state.portfolio_value * pct / 100


def simulate_pnl(
    decision: Decision,
    snapshot: Optional[MarketSnapshot],
    config: AgentConfig,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Simulated P&L of one trade in basis points.

    Trend-aligned trades skew positive, variance grows with risk tolerance,
    and the result is bounded by the per-trade stop-loss and take-profit.
    """
    if snapshot is None:
        return 0
    rng = rng or random
    hourly_bias = snapshot.change_pct / 24
    direction = 1 if decision.direction == "buy" else -1
    variance = config.risk_tolerance * 15
    random_return = (rng.random() - 0.45) * variance
    trend_alignment = 20 if hourly_bias * direction > 0 else -10
    contrarian_effect = -trend_alignment * 0.5 if config.contrarian else 0

    pnl = round(random_return + trend_alignment + contrarian_effect)
    stop_bps = -round(config.stop_loss_pct * 100)
    take_bps = round(config.take_profit_pct * 100)
    return max(stop_bps, min(take_bps, pnl))
