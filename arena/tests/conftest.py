"""
Shared fixtures for arena tests: a controllable clock, a scripted oracle,
a fixed-price market feed and a fully wired state machine whose agent loops
stay parked so tests drive ticks by hand.
"""

import asyncio
import os
import random
import sys
from types import SimpleNamespace
from typing import Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
import pytest_asyncio

from agent_memory import MemoryStore
from agent_profiles import AgentConfig
from decision_oracle import Decision
from intel_market import IntelMarket
from ledger_adapter import SimulatedLedger
from market_feed import MarketSnapshot
from match_engine import MatchStateMachine
from match_models import MatchConfig
from match_store import MatchStore
from sealed_codec import LocalSealCodec
from tick_engine import AgentTickEngine
from x402_client import X402Client


# ─── Test doubles ─────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedOracle:
    """
    Returns scripted decisions in order, per agent when a dict is given.
    Exception instances in the script are raised. Exhausted scripts hold.
    """

    def __init__(self, script=None) -> None:
        self.script = script if script is not None else []
        self.calls: List[dict] = []

    def _queue(self, agent_name: str) -> list:
        if isinstance(self.script, dict):
            return self.script.setdefault(agent_name, [])
        return self.script

    async def decide(self, config, state, snapshots, context=None) -> Decision:
        self.calls.append({"agent": config.name, "state": dict(state), "context": context})
        queue = self._queue(config.name)
        if not queue:
            return Decision.hold("nothing scripted", source="script")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class StubFeed:
    def __init__(self, price: float = 3000.0, change_pct: float = 1.5) -> None:
        self.price = price
        self.change_pct = change_pct
        self.calls = 0

    async def get_snapshots(self, pairs) -> Dict[str, MarketSnapshot]:
        self.calls += 1
        return {
            p: MarketSnapshot(pair=p, price=self.price, change_pct=self.change_pct,
                              volume=1_000_000.0, tick_movement=0.0, source="stub")
            for p in pairs
        }

    async def get_snapshot(self, pair) -> MarketSnapshot:
        return (await self.get_snapshots([pair]))[pair]


class SlowCodec(LocalSealCodec):
    """Local codec that yields to the loop before sealing."""

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__("test-secret")
        self.delay = delay

    async def seal(self, plaintext: bytes) -> bytes:
        await asyncio.sleep(self.delay)
        return await super().seal(plaintext)


def trade(pair: str = "ETH/USDC", direction: str = "buy", amount_pct: float = 10.0,
          reasoning: str = "scripted trade") -> Decision:
    return Decision(action="trade", pair=pair, direction=direction,
                    amount_pct=amount_pct, reasoning=reasoning, source="script")


class PnlScript:
    """Deterministic P&L model: pops deltas in order, 0 when exhausted."""

    def __init__(self, deltas: Optional[List[int]] = None) -> None:
        self.deltas = list(deltas or [])

    def __call__(self, decision, snapshot, config) -> int:
        return self.deltas.pop(0) if self.deltas else 0


async def park(_delay: float) -> None:
    """Sleep that never wakes; cancelled by finalize/shutdown."""
    await asyncio.Event().wait()


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec():
    return LocalSealCodec("test-secret")


@pytest.fixture
def ledger():
    return SimulatedLedger()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def feed():
    return StubFeed()


@pytest.fixture
def pnl():
    return PnlScript()


def build_arena(clock, codec, ledger, oracle, feed, pnl, sleep=park, **engine_kwargs) -> SimpleNamespace:
    store = MatchStore(rng=random.Random(42))
    memory = MemoryStore()
    intel = IntelMarket(X402Client(demo_mode=True), clock=clock)
    engine = AgentTickEngine(
        store, feed, oracle, codec, ledger,
        intel=intel, memory=memory, clock=clock, sleep=sleep,
        pnl_model=pnl, max_stagger=0, rng=random.Random(7),
        **engine_kwargs,
    )
    machine = MatchStateMachine(
        store, engine, codec, ledger,
        intel=intel, memory=memory, clock=clock,
        supervisor_interval=0.01, reveal_grace=0,
    )
    return SimpleNamespace(
        machine=machine, engine=engine, store=store, memory=memory, intel=intel,
        clock=clock, codec=codec, ledger=ledger, oracle=oracle, feed=feed, pnl=pnl,
    )


async def open_match(env, n: int = 3, ready: bool = True, configs=None, **match_kwargs):
    """Create a match, join n agents (agent-0..), optionally ready them all."""
    params = {"max_agents": n, "duration_seconds": 60, "tick_interval_seconds": 5}
    params.update(match_kwargs)
    match = await env.machine.create(MatchConfig(**params))
    for i in range(n):
        cfg = configs[i] if configs else AgentConfig.moderate(f"Agent{i}")
        await env.machine.join(match.match_id, f"agent-{i}", cfg)
    if ready:
        for i in range(n):
            await env.machine.mark_ready(match.match_id, f"agent-{i}")
    return match


@pytest_asyncio.fixture
async def arena(clock, codec, ledger, oracle, feed, pnl):
    env = build_arena(clock, codec, ledger, oracle, feed, pnl)
    yield env
    await env.machine.shutdown()
