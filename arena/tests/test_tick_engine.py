"""
Tests for tick_engine.py — AgentTickEngine.

Single ticks are driven directly with run_tick; the loop itself is covered
with a real (short) sleep so deadline exit and throttling are exercised.
"""

import asyncio
import json

import pytest

from agent_profiles import AgentConfig
from decision_oracle import Decision
from event_bus import AGENT_ACTIVITY_TYPES

from conftest import build_arena, open_match, trade


def events_of(match, agent_id, *types):
    types = types or tuple(AGENT_ACTIVITY_TYPES)
    return [e for e in match.events if e.agent_id == agent_id and e.type in types]


# ─── Single tick ──────────────────────────────────────────────────────────────

class TestRunTick:

    @pytest.mark.asyncio
    async def test_trade_tick_event_sequence(self, arena):
        arena.oracle.script = [trade()]
        arena.pnl.deltas = [80]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]

        outcome = await arena.engine.run_tick(match, state)

        assert outcome == "executed"
        types = [e.type for e in events_of(match, "agent-0")]
        assert types == ["analyzing", "decision", "encrypting", "recording", "executed"]
        assert state.tick_number == 1
        assert state.pnl_bps == 80
        assert len(state.trades) == 1

    @pytest.mark.asyncio
    async def test_trade_updates_entry_commitments(self, arena):
        arena.oracle.script = [trade(), trade()]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        await arena.engine.run_tick(match, state)
        await arena.engine.run_tick(match, state)

        entry = match.entry_for("agent-0")
        assert entry.trade_count == 2
        assert len(entry.sealed_trades) == 2
        assert entry.pnl_bps is None
        assert match.total_trades == 2

    @pytest.mark.asyncio
    async def test_payload_and_reasoning_are_sealed(self, arena):
        arena.oracle.script = [trade(reasoning="secret edge")]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        await arena.engine.run_tick(match, state)

        t = state.trades[0]
        assert b"secret edge" not in t.sealed_reasoning
        assert await arena.codec.unseal(t.sealed_reasoning) == b"secret edge"
        payload = json.loads(await arena.codec.unseal(t.sealed_payload))
        assert payload["pair"] == "ETH/USDC"
        assert payload["direction"] == "buy"

    @pytest.mark.asyncio
    async def test_ledger_records_sealed_payload(self, arena):
        arena.oracle.script = [trade()]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        await arena.engine.run_tick(match, state)

        recorded = arena.ledger.ops("trade")
        assert len(recorded) == 1
        assert recorded[0]["payload"] == state.trades[0].sealed_payload.hex()
        assert state.trades[0].ledger_handle == recorded[0]["handle"]

    @pytest.mark.asyncio
    async def test_seal_happens_before_ledger_record(self, arena, monkeypatch):
        arena.oracle.script = [trade()]
        match = await open_match(arena, n=2)
        order = []
        seal, record = arena.codec.seal, arena.ledger.record_trade

        async def tracking_seal(data):
            order.append("seal")
            return await seal(data)

        async def tracking_record(*args):
            order.append("record")
            return await record(*args)

        monkeypatch.setattr(arena.codec, "seal", tracking_seal)
        monkeypatch.setattr(arena.ledger, "record_trade", tracking_record)
        await arena.engine.run_tick(match, match.agent_states["agent-0"])
        assert order == ["seal", "seal", "record"]

    @pytest.mark.asyncio
    async def test_ledger_failure_keeps_trade(self, arena):
        arena.ledger.fail_operations.add("trade")
        arena.oracle.script = [trade()]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        assert await arena.engine.run_tick(match, state) == "executed"
        assert state.trades[0].ledger_handle is None

    @pytest.mark.asyncio
    async def test_hold(self, arena):
        arena.oracle.script = [Decision.hold("flat market")]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        assert await arena.engine.run_tick(match, state) == "hold"
        assert events_of(match, "agent-0")[-1].message == "flat market"
        assert state.trades == []

    @pytest.mark.asyncio
    async def test_position_clamped_to_max(self, arena):
        arena.oracle.script = [trade(amount_pct=90)]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        await arena.engine.run_tick(match, state)
        assert state.trades[0].amount_pct == state.config.max_position_pct
        assert state.trades[0].notional == pytest.approx(100.0 * 0.20)

    @pytest.mark.asyncio
    async def test_oracle_sees_trades_remaining_and_memory(self, arena):
        match = await open_match(arena, n=2, max_trades_per_round=3)
        await arena.engine.run_tick(match, match.agent_states["agent-0"])
        call = arena.oracle.calls[0]
        assert call["state"]["trades_remaining"] == 3
        assert "memory" in call["context"]

    @pytest.mark.asyncio
    async def test_no_tick_after_deadline(self, arena):
        arena.oracle.script = [trade()]
        match = await open_match(arena, n=2)
        arena.clock.advance(61)
        state = match.agent_states["agent-0"]
        assert await arena.engine.run_tick(match, state) == "skipped"
        assert events_of(match, "agent-0") == []


# ─── Stops ────────────────────────────────────────────────────────────────────

class TestStops:

    @pytest.mark.asyncio
    async def test_drawdown_stop_after_losing_trade(self, arena):
        cfg = AgentConfig.moderate("Loser", max_drawdown_pct=10)
        arena.oracle.script = [trade(), trade(), trade()]
        arena.pnl.deltas = [-600, -500, 999]
        match = await open_match(arena, n=2, configs=[cfg, AgentConfig.moderate("Other")])
        state = match.agent_states["agent-0"]

        assert await arena.engine.run_tick(match, state) == "executed"
        assert await arena.engine.run_tick(match, state) == "executed"

        assert state.stopped
        assert state.pnl_bps == -1100
        assert "max drawdown" in state.stop_reason
        assert events_of(match, "agent-0")[-1].type == "stop"

        assert await arena.engine.run_tick(match, state) == "skipped"
        executed = events_of(match, "agent-0", "executed")
        stop_seq = events_of(match, "agent-0", "stop")[0].seq
        assert all(e.seq < stop_seq for e in executed)
        assert len(state.trades) == 2

    @pytest.mark.asyncio
    async def test_trade_cap_stops_agent(self, arena):
        arena.oracle.script = [trade(), trade(), trade()]
        match = await open_match(arena, n=2, max_trades_per_round=2)
        state = match.agent_states["agent-0"]
        outcomes = [await arena.engine.run_tick(match, state) for _ in range(3)]
        assert outcomes == ["executed", "executed", "stop"]
        assert "trade limit" in state.stop_reason

    @pytest.mark.asyncio
    async def test_oracle_stop(self, arena):
        arena.oracle.script = [Decision.stop("done for today")]
        match = await open_match(arena, n=2)
        state = match.agent_states["agent-0"]
        assert await arena.engine.run_tick(match, state) == "stop"
        assert state.stopped
        assert "done for today" in state.stop_reason

    @pytest.mark.asyncio
    async def test_stop_does_not_affect_other_agents(self, arena):
        arena.oracle.script = {"Agent0": [Decision.stop("out")], "Agent1": [trade()]}
        match = await open_match(arena, n=2)
        await arena.engine.run_tick(match, match.agent_states["agent-0"])
        assert await arena.engine.run_tick(match, match.agent_states["agent-1"]) == "executed"


# ─── Errors ───────────────────────────────────────────────────────────────────

class TestErrors:

    @pytest.mark.asyncio
    async def test_oracle_failures_become_error_events(self, arena):
        arena.oracle.script = {
            "Agent0": [RuntimeError("oracle down")] * 5 + [trade()],
            "Agent1": [trade()],
        }
        match = await open_match(arena, n=2)
        flaky = match.agent_states["agent-0"]
        steady = match.agent_states["agent-1"]

        outcomes = [await arena.engine.run_tick(match, flaky) for _ in range(5)]
        assert outcomes == ["error"] * 5
        assert len(events_of(match, "agent-0", "error")) == 5
        assert flaky.consecutive_errors == 5
        assert flaky.tick_number == 5
        assert not flaky.stopped

        assert await arena.engine.run_tick(match, steady) == "executed"
        assert events_of(match, "agent-1", "error") == []

        assert await arena.engine.run_tick(match, flaky) == "executed"
        assert flaky.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_feed_failure_is_scoped_to_tick(self, arena, monkeypatch):
        match = await open_match(arena, n=2)

        async def broken(_pairs):
            raise ConnectionError("feed unreachable")

        monkeypatch.setattr(arena.feed, "get_snapshots", broken)
        state = match.agent_states["agent-0"]
        assert await arena.engine.run_tick(match, state) == "error"
        assert "feed unreachable" in events_of(match, "agent-0", "error")[0].message


# ─── Intel ────────────────────────────────────────────────────────────────────

class TestIntel:

    @pytest.mark.asyncio
    async def test_buyer_purchases_rival_intel(self, arena):
        buyer = AgentConfig.moderate("Buyer", buy_intel=True)
        match = await open_match(arena, n=2, configs=[AgentConfig.moderate("Seller"), buyer])
        await arena.engine.run_tick(match, match.agent_states["agent-0"])
        await arena.engine.run_tick(match, match.agent_states["agent-1"])

        purchases = events_of(match, "agent-1", "x402-purchase")
        assert len(purchases) == 1
        assert purchases[0].data["seller_id"] == "agent-0"
        assert match.x402_payments == 1
        assert arena.intel.budget(match.match_id, "agent-1") == pytest.approx(0.49)
        assert arena.oracle.calls[-1]["context"]["intel"]["from"] == "Seller"

    @pytest.mark.asyncio
    async def test_no_purchase_without_flag(self, arena):
        match = await open_match(arena, n=2)
        for i in range(2):
            await arena.engine.run_tick(match, match.agent_states[f"agent-{i}"])
        assert match.x402_payments == 0


# ─── Loop ─────────────────────────────────────────────────────────────────────

class TestLoop:

    @pytest.mark.asyncio
    async def test_loop_exits_at_deadline(self, clock, codec, ledger, oracle, feed, pnl):
        env = build_arena(clock, codec, ledger, oracle, feed, pnl, sleep=asyncio.sleep)
        try:
            match = await open_match(env, n=2, tick_interval_seconds=0.01)
            for _ in range(5):
                await asyncio.sleep(0.02)
            ticked = env.engine.ticks_run
            assert ticked > 0

            clock.advance(61)
            await asyncio.sleep(0.05)
            assert env.machine.active_loops(match.match_id) == 0
        finally:
            await env.machine.shutdown()

    @pytest.mark.asyncio
    async def test_loop_exits_when_agent_stops(self, clock, codec, ledger, oracle, feed, pnl):
        oracle.script = {"Agent0": [Decision.stop("enough")], "Agent1": []}
        env = build_arena(clock, codec, ledger, oracle, feed, pnl, sleep=asyncio.sleep)
        try:
            match = await open_match(env, n=2, tick_interval_seconds=0.01)
            await asyncio.sleep(0.1)
            task = env.machine._loops[match.match_id]["agent-0"]
            assert task.done()
            assert not env.machine._loops[match.match_id]["agent-1"].done()
        finally:
            await env.machine.shutdown()

    @pytest.mark.asyncio
    async def test_throttled_when_unobserved(self, clock, codec, ledger, oracle, feed, pnl):
        env = build_arena(clock, codec, ledger, oracle, feed, pnl,
                          sleep=asyncio.sleep, throttle_unobserved=True)
        try:
            match = await open_match(env, n=2, tick_interval_seconds=0.01)
            await asyncio.sleep(0.05)
            assert env.engine.ticks_run == 0
            assert env.engine.ticks_skipped > 0
            assert oracle.calls == []

            async def watch():
                async for _ in match.events.subscribe(after=match.events.latest_seq()):
                    pass

            watcher = asyncio.create_task(watch())
            await asyncio.sleep(0.05)
            assert env.engine.ticks_run > 0
            watcher.cancel()
        finally:
            await env.machine.shutdown()
