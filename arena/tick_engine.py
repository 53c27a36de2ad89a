"""
tick_engine.py — Autonomous per-agent trading loop for arena matches.

Each agent in a trading match runs one tick per interval:
  analyze (market feed) → publish / buy intel → decide (oracle)
  → risk checks → seal payload + reasoning → ledger record → simulated P&L

Features:
- Ticks of one agent are strictly sequential (per-agent lock); agents run
  concurrently
- Any exception inside a tick becomes an `error` event; the loop continues
- Limit breaches (drawdown, trade cap, budget) stop the agent, not the match
- Loops exit on their own once the match leaves trading, the deadline
  passes, the match disappears or the agent stops
- Optional throttling: skip ticks while nobody is watching the match; the
  deadline check still runs every iteration
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from agent_memory import MemoryStore
from agent_profiles import AgentConfig
from decision_oracle import Decision, DecisionOracle
from intel_market import IntelMarket, build_intel
from ledger_adapter import LedgerAdapter, settle
from market_feed import MarketFeed, MarketSnapshot
from match_models import AgentState, Match, MatchPhase, Trade
from match_store import MatchStore
from risk_checks import RiskGuard, simulate_pnl
from sealed_codec import SealedStrategyCodec


PnlModel = Callable[[Decision, Optional[MarketSnapshot], AgentConfig], int]

DEFAULT_LEDGER_TIMEOUT = 10.0
DEFAULT_MAX_STAGGER = 2.0


class AgentTickEngine:
    """
    Runs agent ticks and owns nothing but the wiring to collaborators.

    Usage:
        engine = AgentTickEngine(store, feed, oracle, codec, ledger)
        task = engine.spawn(match, agent_id)      # loop until trading ends
        outcome = await engine.run_tick(match, state)   # single tick
    """

    def __init__(
        self,
        store: MatchStore,
        feed: MarketFeed,
        oracle: DecisionOracle,
        codec: SealedStrategyCodec,
        ledger: LedgerAdapter,
        intel: Optional[IntelMarket] = None,
        memory: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        pnl_model: Optional[PnlModel] = None,
        ledger_timeout: float = DEFAULT_LEDGER_TIMEOUT,
        max_stagger: float = DEFAULT_MAX_STAGGER,
        throttle_unobserved: bool = False,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.oracle = oracle
        self.codec = codec
        self.ledger = ledger
        self.intel = intel
        self.memory = memory
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.pnl_model: PnlModel = pnl_model or (lambda d, s, c: simulate_pnl(d, s, c, self._rng))
        self.ledger_timeout = ledger_timeout
        self.max_stagger = max_stagger
        self.throttle_unobserved = throttle_unobserved
        self.ticks_run = 0
        self.ticks_skipped = 0

    # ─── Loop ─────────────────────────────────────────────────────────────────

    def spawn(self, match: Match, agent_id: str) -> asyncio.Task:
        return asyncio.create_task(
            self._loop(match.match_id, agent_id),
            name=f"agent:{match.match_id}:{agent_id}",
        )

    def _should_continue(self, match: Optional[Match], agent_id: str) -> Optional[AgentState]:
        if match is None or match.resolved or match.phase != MatchPhase.TRADING:
            return None
        if match.trading_deadline is None or self._clock() >= match.trading_deadline:
            return None
        state = match.agent_states.get(agent_id)
        if state is None or state.stopped:
            return None
        return state

    async def _loop(self, match_id: str, agent_id: str) -> None:
        """Tick every interval until the match or the agent is done."""
        delay = self._rng.uniform(0, self.max_stagger) if self.max_stagger > 0 else 0.0
        while True:
            await self._sleep(delay)

            match = self.store.get(match_id)
            state = self._should_continue(match, agent_id)
            if state is None:
                logger.debug(f"[{match_id}] loop for {agent_id} exiting")
                return
            delay = match.config.tick_interval_seconds

            if self.throttle_unobserved and match.events.subscriber_count == 0:
                self.ticks_skipped += 1
                logger.debug(f"[{match_id}] nobody watching, skipping tick for {agent_id}")
                continue

            await self.run_tick(match, state)

    # ─── Single tick ──────────────────────────────────────────────────────────

    async def run_tick(self, match: Match, state: AgentState) -> str:
        """
        Execute one tick for one agent.

        Returns the outcome: "executed" | "hold" | "stop" | "error", or
        "skipped" when the agent is stopped or trading is closed.
        Never raises (except on cancellation).
        """
        async with state.lock:
            if state.stopped or not match.is_trading_open(self._clock()):
                return "skipped"
            self.ticks_run += 1
            try:
                outcome = await self._tick(match, state)
                state.consecutive_errors = 0
                return outcome
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                state.consecutive_errors += 1
                logger.warning(f"[{match.match_id}] {state.name} tick {state.tick_number + 1} failed: {exc}")
                self._emit(match, state, "error", f"tick failed: {exc}", {"error": type(exc).__name__})
                return "error"
            finally:
                state.tick_number += 1

    async def _tick(self, match: Match, state: AgentState) -> str:
        cfg = state.config
        guard = RiskGuard(match.config.max_trades_per_round)

        ok, reason = guard.check_drawdown(state)
        if not ok:
            return self._stop(match, state, reason)

        # ── 1. Analyze ───────────────────────────────────────────────────────
        self._emit(match, state, "analyzing", f"analyzing {', '.join(cfg.trading_pairs)}...")
        snapshots = await self.feed.get_snapshots(cfg.trading_pairs)
        lead = snapshots[cfg.trading_pairs[0]]

        # ── 2. Intel ─────────────────────────────────────────────────────────
        purchased: Optional[Dict[str, Any]] = None
        if self.intel is not None:
            self.intel.publish(match.match_id, build_intel(state, lead, self._clock()))
            if cfg.buy_intel:
                bought = await self.intel.purchase(match, state)
                purchased = bought.to_dict() if bought else None

        # ── 3. Decide ────────────────────────────────────────────────────────
        view = state.to_dict()
        view["trades_remaining"] = guard.trades_remaining(state)
        context: Dict[str, Any] = {"intel": purchased}
        if self.memory is not None:
            context["memory"] = self.memory.format_for_prompt(state.agent_id)

        decision = await self.oracle.decide(cfg, view, snapshots, context)

        if decision.action == "stop":
            return self._stop(match, state, f"agent chose to stop: {decision.reasoning}")

        if decision.action == "hold":
            self._emit(match, state, "hold", decision.reasoning, {"source": decision.source})
            return "hold"

        # ── 4. Pre-trade checks ──────────────────────────────────────────────
        ok, reason = guard.validate_trade(state)
        if not ok:
            return self._stop(match, state, reason)

        pct, notional = guard.size_trade(state, decision)
        self._emit(
            match, state, "decision",
            f"{decision.direction} {decision.pair} ({pct:g}% of portfolio)",
            {"pair": decision.pair, "direction": decision.direction, "amount_pct": pct,
             "reasoning": decision.reasoning},
        )

        # ── 5. Seal, then record ─────────────────────────────────────────────
        self._emit(match, state, "encrypting", "sealing trade payload and reasoning")
        payload = json.dumps({
            "pair": decision.pair,
            "direction": decision.direction,
            "amount_pct": pct,
            "notional": round(notional, 6),
            "tick": state.tick_number + 1,
        }, sort_keys=True).encode()
        sealed_payload = await self.codec.seal(payload)
        sealed_reasoning = await self.codec.seal(decision.reasoning.encode())
        match.sealed_ops += 2

        self._emit(match, state, "recording", "recording sealed trade on the ledger")
        recorded = await settle(
            self.ledger.record_trade(match.match_id, state.agent_id, state.join_index, sealed_payload),
            self.ledger_timeout, "recordTrade",
        )

        delta = int(self.pnl_model(decision, snapshots.get(decision.pair), cfg))
        trade = Trade(
            pair=decision.pair,
            direction=decision.direction,
            notional=notional,
            amount_pct=pct,
            reasoning=decision.reasoning,
            pnl_delta_bps=delta,
            sealed_payload=sealed_payload,
            sealed_reasoning=sealed_reasoning,
            timestamp=self._clock(),
            ledger_handle=recorded.handle,
        )

        # ── 6. Apply ─────────────────────────────────────────────────────────
        state.trades.append(trade)
        state.pnl_bps += delta
        state.trades_this_round += 1
        sign = 1 if decision.direction == "buy" else -1
        state.positions[decision.pair] = state.positions.get(decision.pair, 0.0) + sign * notional

        entry = match.entry_for(state.agent_id)
        if entry is not None:
            entry.sealed_trades = entry.sealed_trades + (sealed_payload,)
            entry.trade_count += 1
        match.total_trades += 1

        self._emit(
            match, state, "executed",
            f"{decision.direction.upper()} {decision.pair} ({pct:g}%)",
            {
                "pair": decision.pair,
                "direction": decision.direction,
                "amount_pct": pct,
                "notional": round(notional, 4),
                "pnl_delta_bps": delta,
                "trade_index": len(state.trades) - 1,
                "ledger_handle": recorded.handle,
            },
        )

        ok, reason = guard.check_drawdown(state)
        if not ok:
            self._stop(match, state, reason)
        return "executed"

    # ─── Helpers ──────────────────────────────────────────────────────────────

    def _stop(self, match: Match, state: AgentState, reason: str) -> str:
        state.stop(reason)
        logger.info(f"[{match.match_id}] {state.name} stopped: {reason}")
        self._emit(match, state, "stop", f"stopping: {reason}", {"reason": reason})
        return "stop"

    @staticmethod
    def _emit(match: Match, state: AgentState, type: str, message: str,
              data: Optional[Dict[str, Any]] = None) -> None:
        match.events.append(type, agent_id=state.agent_id, agent_name=state.name,
                            message=message, data=data)
