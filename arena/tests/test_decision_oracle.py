"""
Tests for decision_oracle.py — Decision validation, response parsing, the
momentum fallback and ClaudeOracle with a mocked AsyncAnthropic client.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_profiles import AgentConfig
from decision_oracle import (
    ClaudeOracle,
    Decision,
    MomentumOracle,
    create_oracle,
    parse_decision,
)
from market_feed import MarketSnapshot


@pytest.fixture
def config():
    return AgentConfig.moderate("Alpha", trading_pairs=["ETH/USDC", "BTC/USDC"])


def snaps(eth_change=2.0, btc_change=0.1):
    return {
        "ETH/USDC": MarketSnapshot("ETH/USDC", 3000.0, eth_change, 1e9, 0.0, "stub"),
        "BTC/USDC": MarketSnapshot("BTC/USDC", 60000.0, btc_change, 1e9, 0.0, "stub"),
    }


def claude_message(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def mock_client(*responses):
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(responses))
    return client


# ─── Decision ─────────────────────────────────────────────────────────────────

class TestDecision:

    def test_trade_requires_pair_and_direction(self):
        with pytest.raises(ValueError):
            Decision(action="trade", reasoning="x", direction="buy", amount_pct=5)
        with pytest.raises(ValueError):
            Decision(action="trade", reasoning="x", pair="ETH/USDC", direction="long", amount_pct=5)

    def test_amount_bounds(self):
        with pytest.raises(ValueError):
            Decision(action="trade", reasoning="x", pair="ETH/USDC", direction="buy", amount_pct=0)

    def test_invalid_action(self):
        with pytest.raises(ValueError):
            Decision(action="yolo", reasoning="x")

    def test_hold_and_stop_helpers(self):
        assert Decision.hold("wait").action == "hold"
        assert Decision.stop("done").action == "stop"


# ─── Parsing ──────────────────────────────────────────────────────────────────

class TestParseDecision:

    def test_trade(self, config):
        text = '{"action": "trade", "pair": "BTC/USDC", "direction": "sell", "amount_pct": 12, "reasoning": "overbought"}'
        d = parse_decision(text, config, "m")
        assert (d.action, d.pair, d.direction, d.amount_pct) == ("trade", "BTC/USDC", "sell", 12.0)
        assert d.source == "m"

    def test_prose_around_json(self, config):
        text = 'Sure! Here you go:\n{"action": "hold", "reasoning": "choppy"}\nGood luck.'
        assert parse_decision(text, config, "m").action == "hold"

    def test_legacy_buy_action(self, config):
        d = parse_decision('{"action": "buy", "pair": "ETH/USDC", "amount_pct": 5, "reasoning": "r"}', config, "m")
        assert d.action == "trade"
        assert d.direction == "buy"

    def test_unknown_pair_falls_back_to_first(self, config):
        d = parse_decision('{"action": "trade", "pair": "DOGE/USDC", "direction": "buy", "reasoning": "r"}', config, "m")
        assert d.pair == "ETH/USDC"
        assert d.amount_pct == 10.0

    def test_amount_clamped(self, config):
        d = parse_decision('{"action": "trade", "direction": "buy", "amount_pct": 400, "reasoning": "r"}', config, "m")
        assert d.amount_pct == 100.0

    def test_bad_direction_holds(self, config):
        d = parse_decision('{"action": "trade", "direction": "sideways", "reasoning": "r"}', config, "m")
        assert d.action == "hold"

    def test_stop(self, config):
        assert parse_decision('{"action": "stop", "reasoning": "tilted"}', config, "m").action == "stop"

    def test_garbage(self, config):
        assert parse_decision("no json here", config, "m") is None
        assert parse_decision("{not json}", config, "m") is None
        assert parse_decision('{"pair": "ETH/USDC"}', config, "m") is None


# ─── Momentum ─────────────────────────────────────────────────────────────────

class TestMomentumOracle:

    @pytest.mark.asyncio
    async def test_follows_strongest_move(self, config):
        d = await MomentumOracle().decide(config, {"trades_remaining": 3}, snaps(eth_change=-3.0))
        assert d.action == "trade"
        assert d.pair == "ETH/USDC"
        assert d.direction == "sell"
        assert d.amount_pct <= config.max_position_pct

    @pytest.mark.asyncio
    async def test_contrarian_fades(self):
        cfg = AgentConfig.moderate("Contra", contrarian=True)
        d = await MomentumOracle().decide(cfg, {}, {"ETH/USDC": snaps(eth_change=3.0)["ETH/USDC"]})
        assert d.direction == "sell"

    @pytest.mark.asyncio
    async def test_flat_market_holds(self, config):
        d = await MomentumOracle().decide(config, {}, snaps(eth_change=0.1, btc_change=-0.2))
        assert d.action == "hold"

    @pytest.mark.asyncio
    async def test_no_trades_left_holds(self, config):
        d = await MomentumOracle().decide(config, {"trades_remaining": 0}, snaps())
        assert d.action == "hold"


# ─── Claude ───────────────────────────────────────────────────────────────────

class TestClaudeOracle:

    @pytest.mark.asyncio
    async def test_primary_model_decision(self, config):
        client = mock_client(claude_message(
            '{"action": "trade", "pair": "ETH/USDC", "direction": "buy", "amount_pct": 8, "reasoning": "breakout"}'
        ))
        oracle = ClaudeOracle("key", client=client)
        d = await oracle.decide(config, {"tick_number": 0, "trades_remaining": 3}, snaps())
        assert d.action == "trade"
        assert d.source == oracle.model
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == oracle.model
        assert "Alpha" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_memory_and_intel_in_prompts(self, config):
        client = mock_client(claude_message('{"action": "hold", "reasoning": "wait"}'))
        oracle = ClaudeOracle("key", client=client)
        context = {"memory": "MEMORY (your past rounds):\n- Played 2", "intel": {"from": "Rival", "direction": "bearish"}}
        await oracle.decide(config, {}, snaps(), context)
        kwargs = client.messages.create.call_args.kwargs
        assert "MEMORY" in kwargs["system"]
        assert "Rival" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_fallback_model_used(self, config):
        client = mock_client(RuntimeError("overloaded"), claude_message('{"action": "hold", "reasoning": "ok"}'))
        oracle = ClaudeOracle("key", model="primary", fallback_model="backup", client=client)
        d = await oracle.decide(config, {}, snaps())
        assert d.source == "backup"
        assert oracle.get_stats()["fallbacks_used"] == 1

    @pytest.mark.asyncio
    async def test_all_models_down_holds(self, config):
        client = mock_client(RuntimeError("down"), RuntimeError("down"))
        oracle = ClaudeOracle("key", client=client)
        d = await oracle.decide(config, {}, snaps())
        assert d.action == "hold"
        assert d.source == "fallback"
        assert oracle.get_stats()["unavailable"] == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, config):
        async def hang(**_kwargs):
            await asyncio.sleep(10)

        client = MagicMock()
        client.messages.create = hang
        oracle = ClaudeOracle("key", fallback_model=None, timeout=0.01, client=client)
        d = await oracle.decide(config, {}, snaps())
        assert d.action == "hold"

    @pytest.mark.asyncio
    async def test_unparseable_response_holds(self, config):
        client = mock_client(claude_message("I think you should buy, maybe?"))
        d = await ClaudeOracle("key", client=client).decide(config, {}, snaps())
        assert d.action == "hold"


class TestCreateOracle:

    def test_without_key_uses_momentum(self):
        assert isinstance(create_oracle(""), MomentumOracle)

    def test_with_key_uses_claude(self):
        assert isinstance(create_oracle("sk-test"), ClaudeOracle)
