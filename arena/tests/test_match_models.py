"""
Tests for match_models.py and agent_profiles.py — config validation, game
modes, presets, sealed-field locking and phase ordering.
"""

import pytest

from agent_profiles import (
    AgentConfig,
    RiskProfile,
    build_system_prompt,
    deserialize_config,
    serialize_config,
)
from arena_errors import InvalidMatchConfigError, PhaseTransitionError, SealedFieldLockedError
from event_bus import EventLog
from match_models import GAME_MODES, AgentState, Entry, Match, MatchConfig, MatchPhase


# ─── MatchConfig ──────────────────────────────────────────────────────────────

class TestMatchConfig:

    def test_defaults(self):
        cfg = MatchConfig()
        assert cfg.ready_target == cfg.max_agents == 4

    def test_expected_agents_is_readiness_target(self):
        assert MatchConfig(max_agents=6, expected_agents=3).ready_target == 3

    @pytest.mark.parametrize("kwargs", [
        {"max_agents": 1},
        {"duration_seconds": 0},
        {"tick_interval_seconds": -1},
        {"lobby_timeout_seconds": -5},
        {"expected_agents": 9},
        {"max_trades_per_round": 0},
        {"entry_fee": -1.0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(InvalidMatchConfigError):
            MatchConfig(**kwargs)

    def test_invalid_config_is_value_error(self):
        with pytest.raises(ValueError):
            MatchConfig(max_agents=0)

    def test_from_mode(self):
        cfg = MatchConfig.from_mode("blitz", max_agents=3)
        assert cfg.duration_seconds == GAME_MODES["blitz"]["duration_seconds"]
        assert cfg.max_trades_per_round == 2
        assert cfg.max_agents == 3
        assert cfg.mode == "blitz"

    def test_unknown_mode(self):
        with pytest.raises(InvalidMatchConfigError):
            MatchConfig.from_mode("chess")

    def test_from_dict_ignores_unknown_keys(self):
        cfg = MatchConfig.from_dict({"max_agents": 2, "colour": "blue"})
        assert cfg.max_agents == 2

    def test_from_dict_with_mode(self):
        cfg = MatchConfig.from_dict({"mode": "marathon", "max_agents": 5})
        assert cfg.mode == "marathon"
        assert cfg.duration_seconds == 300

    def test_to_dict_resolves_target(self):
        assert MatchConfig(max_agents=3).to_dict()["expected_agents"] == 3


# ─── Match phases ─────────────────────────────────────────────────────────────

class TestMatchPhases:

    def _match(self):
        return Match(match_id="m1", config=MatchConfig(lobby_timeout_seconds=10), events=EventLog("m1"),
                     phase_started_at=100.0)

    def test_forward_one_step(self):
        match = self._match()
        match.advance(MatchPhase.TRADING, 101.0)
        assert match.phase == MatchPhase.TRADING
        assert match.phase_started_at == 101.0
        match.advance(MatchPhase.REVEAL, 102.0)
        assert match.phase == MatchPhase.REVEAL

    def test_no_skip_or_backward(self):
        match = self._match()
        with pytest.raises(PhaseTransitionError):
            match.advance(MatchPhase.REVEAL, 101.0)
        match.advance(MatchPhase.TRADING, 101.0)
        with pytest.raises(PhaseTransitionError):
            match.advance(MatchPhase.LOBBY, 102.0)
        with pytest.raises(PhaseTransitionError):
            match.advance(MatchPhase.TRADING, 102.0)

    def test_trading_window(self):
        match = self._match()
        assert not match.is_trading_open(100.0)
        match.advance(MatchPhase.TRADING, 100.0)
        match.trading_deadline = 160.0
        assert match.is_trading_open(159.9)
        assert not match.is_trading_open(160.0)

    def test_lobby_expiry(self):
        match = self._match()
        assert not match.lobby_expired(109.0)
        assert match.lobby_expired(110.0)


# ─── Entry locking ────────────────────────────────────────────────────────────

class TestEntryLocking:

    def test_sealed_fields_writable_until_locked(self):
        entry = Entry(agent_id="a1", display_name="A", join_index=0, sealed_strategy=b"s")
        entry.sealed_trades = entry.sealed_trades + (b"t",)
        entry.lock()
        assert entry.locked
        with pytest.raises(SealedFieldLockedError):
            entry.sealed_strategy = b"other"
        with pytest.raises(SealedFieldLockedError):
            entry.sealed_trades = ()
        assert entry.sealed_trades == (b"t",)

    def test_unsealed_fields_still_writable(self):
        entry = Entry(agent_id="a1", display_name="A", join_index=0, sealed_strategy=b"s")
        entry.lock()
        entry.pnl_bps = 10
        assert entry.pnl_bps == 10


# ─── AgentConfig ──────────────────────────────────────────────────────────────

class TestAgentConfig:

    @pytest.mark.parametrize("kwargs", [
        {"name": ""},
        {"name": "A", "risk_tolerance": 11},
        {"name": "A", "max_position_pct": 0},
        {"name": "A", "max_drawdown_pct": 150},
        {"name": "A", "stop_loss_pct": 0},
        {"name": "A", "max_trades_per_round": 0},
        {"name": "A", "execution_speed": "warp"},
        {"name": "A", "trading_pairs": []},
        {"name": "A", "trading_pairs": ["ETHUSDC"]},
        {"name": "A", "trading_pairs": ["ETH/USDC", "DOGE/USDC"]},
        {"name": "A", "starting_budget": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(InvalidMatchConfigError):
            AgentConfig(**kwargs)

    def test_presets(self):
        assert AgentConfig.conservative("C").risk_label == "conservative"
        assert AgentConfig.moderate("M").risk_label == "moderate"
        agg = AgentConfig.aggressive("X")
        assert agg.risk_label == "aggressive"
        assert agg.buy_intel is True
        assert AgentConfig.preset("aggressive", "Y", risk_tolerance=10).temperament == "degen"

    def test_preset_by_enum(self):
        assert AgentConfig.preset(RiskProfile.MODERATE, "M").max_trades_per_round == 10

    def test_serialization_is_canonical(self):
        cfg = AgentConfig.moderate("Alpha", contrarian=True)
        raw = serialize_config(cfg)
        assert raw == serialize_config(AgentConfig.moderate("Alpha", contrarian=True))
        assert deserialize_config(raw) == cfg

    def test_system_prompt(self):
        prompt = build_system_prompt(AgentConfig.aggressive("Degen", contrarian=True))
        assert '"Degen"' in prompt
        assert "CONTRARIAN MODE" in prompt
        assert "Max position size: 40% of portfolio" in prompt


class TestAgentState:

    def test_portfolio_value_from_pnl(self):
        state = AgentState.for_config("a1", AgentConfig.moderate("A", starting_budget=200.0), 0)
        state.pnl_bps = -250
        assert state.portfolio_value == pytest.approx(195.0)

    def test_stop(self):
        state = AgentState.for_config("a1", AgentConfig.moderate("A"), 0)
        state.stop("done")
        assert state.stopped
        assert state.to_dict()["stop_reason"] == "done"
