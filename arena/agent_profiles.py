"""
agent_profiles.py — Agent strategy configuration for arena matches.

An AgentConfig is everything an agent brings into a match: identity,
risk limits, trading rules and execution style. It is serialized and
sealed at join time, so rivals only ever see ciphertext until reveal.

Classes:
    RiskProfile   — enum for conservative/moderate/aggressive presets
    AgentConfig   — strategy configuration per agent

Functions:
    build_system_prompt(config)   — render the oracle's system prompt
    serialize_config(config)      — canonical JSON bytes used for sealing
    deserialize_config(raw)       — inverse of serialize_config
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from arena_errors import InvalidMatchConfigError


SUPPORTED_PAIRS = ("ETH/USDC", "BTC/USDC", "WBTC/USDC", "ETH/WBTC", "ETH/BTC", "SOL/USDC")
EXECUTION_SPEEDS = ("patient", "moderate", "aggressive")


# ─── Risk Profiles ────────────────────────────────────────────────────────────


class RiskProfile(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class AgentConfig:
    """Strategy configuration for one agent. Percent fields are 0–100."""
    name: str
    personality: str = ""
    risk_tolerance: int = 5               # 1–10
    max_position_pct: float = 20.0        # % of portfolio per trade
    max_drawdown_pct: float = 15.0        # % total loss before the agent stops
    stop_loss_pct: float = 5.0            # per-trade loss clamp
    take_profit_pct: float = 15.0         # per-trade gain clamp
    trading_pairs: list[str] = field(default_factory=lambda: ["ETH/USDC"])
    max_trades_per_round: int = 20
    execution_speed: str = "moderate"
    contrarian: bool = False
    buy_intel: bool = False
    starting_budget: float = 100.0        # USDC

    def __post_init__(self):
        if not self.name:
            raise InvalidMatchConfigError("agent name must not be empty")
        if not 1 <= self.risk_tolerance <= 10:
            raise InvalidMatchConfigError("risk_tolerance must be in [1, 10]")
        if not 0 < self.max_position_pct <= 100:
            raise InvalidMatchConfigError("max_position_pct must be in (0, 100]")
        if not 0 < self.max_drawdown_pct <= 100:
            raise InvalidMatchConfigError("max_drawdown_pct must be in (0, 100]")
        if self.stop_loss_pct <= 0 or self.take_profit_pct <= 0:
            raise InvalidMatchConfigError("stop_loss_pct and take_profit_pct must be positive")
        if self.max_trades_per_round < 1:
            raise InvalidMatchConfigError("max_trades_per_round must be >= 1")
        if self.execution_speed not in EXECUTION_SPEEDS:
            raise InvalidMatchConfigError(f"Invalid execution_speed: {self.execution_speed}")
        if not self.trading_pairs:
            raise InvalidMatchConfigError("trading_pairs must not be empty")
        unsupported = [p for p in self.trading_pairs if p not in SUPPORTED_PAIRS]
        if unsupported:
            raise InvalidMatchConfigError(f"Unsupported trading pairs: {', '.join(unsupported)}")
        if self.starting_budget <= 0:
            raise InvalidMatchConfigError("starting_budget must be positive")

    @property
    def risk_label(self) -> str:
        if self.risk_tolerance <= 3:
            return "conservative"
        if self.risk_tolerance <= 6:
            return "moderate"
        if self.risk_tolerance <= 8:
            return "aggressive"
        return "extremely aggressive (degen)"

    @property
    def temperament(self) -> str:
        """Short bucket used for intel commentary."""
        if self.risk_tolerance >= 8:
            return "degen"
        if self.contrarian:
            return "contrarian"
        if self.risk_tolerance <= 4:
            return "conservative"
        return "aggressive"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def preset(cls, profile: RiskProfile | str, name: str, **overrides: Any) -> "AgentConfig":
        profile = RiskProfile(profile)
        base = _PRESETS[profile]
        return cls(name=name, **{**base, **overrides})

    @classmethod
    def conservative(cls, name: str, **overrides: Any) -> "AgentConfig":
        return cls.preset(RiskProfile.CONSERVATIVE, name, **overrides)

    @classmethod
    def moderate(cls, name: str, **overrides: Any) -> "AgentConfig":
        return cls.preset(RiskProfile.MODERATE, name, **overrides)

    @classmethod
    def aggressive(cls, name: str, **overrides: Any) -> "AgentConfig":
        return cls.preset(RiskProfile.AGGRESSIVE, name, **overrides)


_PRESETS: dict[RiskProfile, dict[str, Any]] = {
    RiskProfile.CONSERVATIVE: {
        "personality": "Patient capital preserver. Waits for confirmation.",
        "risk_tolerance": 3,
        "max_position_pct": 10.0,
        "max_drawdown_pct": 8.0,
        "stop_loss_pct": 3.0,
        "take_profit_pct": 8.0,
        "max_trades_per_round": 5,
        "execution_speed": "patient",
    },
    RiskProfile.MODERATE: {
        "personality": "Balanced trend follower.",
        "risk_tolerance": 5,
        "max_position_pct": 20.0,
        "max_drawdown_pct": 15.0,
        "stop_loss_pct": 5.0,
        "take_profit_pct": 15.0,
        "max_trades_per_round": 10,
        "execution_speed": "moderate",
    },
    RiskProfile.AGGRESSIVE: {
        "personality": "Momentum chaser. Volatility is the playground.",
        "risk_tolerance": 8,
        "max_position_pct": 40.0,
        "max_drawdown_pct": 30.0,
        "stop_loss_pct": 10.0,
        "take_profit_pct": 30.0,
        "max_trades_per_round": 20,
        "execution_speed": "aggressive",
        "buy_intel": True,
    },
}


# ─── Serialization ────────────────────────────────────────────────────────────


def serialize_config(config: AgentConfig) -> bytes:
    """Canonical JSON encoding; the exact bytes that get sealed at join."""
    return json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":")).encode()


def deserialize_config(raw: bytes) -> AgentConfig:
    return AgentConfig.from_dict(json.loads(raw.decode()))


# ─── Prompt ───────────────────────────────────────────────────────────────────


_SPEED_NOTES = {
    "patient": "low slippage tolerance, wait for good entries",
    "moderate": "reasonable slippage, balanced timing",
    "aggressive": "high slippage tolerance, execute immediately when a signal fires",
}


def build_system_prompt(config: AgentConfig) -> str:
    """Render the system prompt the decision oracle runs under for this agent."""
    contrarian = (
        "\n- CONTRARIAN MODE: go against the prevailing trend when signals conflict"
        if config.contrarian else ""
    )
    return f"""You are "{config.name}", an autonomous trading agent competing in a sealed arena. Rivals cannot see your strategy or trades until the match is revealed.

PERSONALITY: {config.personality or "unspecified"}

RISK PROFILE:
- Risk tolerance: {config.risk_tolerance}/10 ({config.risk_label})
- Max position size: {config.max_position_pct:g}% of portfolio per trade
- Stop-loss: {config.stop_loss_pct:g}% per trade
- Take-profit: {config.take_profit_pct:g}% per trade
- Max drawdown: {config.max_drawdown_pct:g}% total before stopping
- Max trades per round: {config.max_trades_per_round}

TRADING RULES:
- Allowed pairs: {", ".join(config.trading_pairs)}
- Execution style: {config.execution_speed} — {_SPEED_NOTES[config.execution_speed]}{contrarian}

Rules:
- "hold" if there is no clear signal or you are out of trades
- Never exceed your max position size
- Be skeptical of purchased intel — rivals have different strategies
- Be true to your personality"""
