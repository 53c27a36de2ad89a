"""
match_models.py — Core data model for sealed trading matches.

Classes:
    MatchPhase    — lobby → trading → reveal (forward only)
    MatchConfig   — per-match knobs, validated on construction
    LobbyAgent    — readiness tracking for an agent waiting in the lobby
    Trade         — one executed (simulated) trade, immutable
    Entry         — an agent's admitted participation, with sealed commitments
    AgentState    — live trading state owned by the tick engine
    Match         — the aggregate
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from agent_profiles import AgentConfig
from arena_errors import InvalidMatchConfigError, PhaseTransitionError, SealedFieldLockedError
from event_bus import EventLog


# ─── Phases ───────────────────────────────────────────────────────────────────


class MatchPhase(str, Enum):
    LOBBY = "lobby"
    TRADING = "trading"
    REVEAL = "reveal"


_PHASE_ORDER = [MatchPhase.LOBBY, MatchPhase.TRADING, MatchPhase.REVEAL]


# Timeframe presets: duration/tick/lobby in seconds
GAME_MODES: dict[str, dict[str, Any]] = {
    "blitz":    {"duration_seconds": 60,  "tick_interval_seconds": 8.0,  "max_trades_per_round": 2, "lobby_timeout_seconds": 30},
    "standard": {"duration_seconds": 180, "tick_interval_seconds": 12.0, "max_trades_per_round": 3, "lobby_timeout_seconds": 45},
    "marathon": {"duration_seconds": 300, "tick_interval_seconds": 15.0, "max_trades_per_round": 5, "lobby_timeout_seconds": 60},
    "degen":    {"duration_seconds": 120, "tick_interval_seconds": 10.0, "max_trades_per_round": 5, "lobby_timeout_seconds": 30},
    "whale":    {"duration_seconds": 240, "tick_interval_seconds": 14.0, "max_trades_per_round": 3, "lobby_timeout_seconds": 45},
}


# ─── Configuration ────────────────────────────────────────────────────────────


@dataclass
class MatchConfig:
    """Configurable match parameters."""
    max_agents: int = 4
    duration_seconds: float = 180.0
    tick_interval_seconds: float = 12.0
    lobby_timeout_seconds: float = 45.0
    expected_agents: Optional[int] = None     # readiness target; defaults to max_agents
    max_trades_per_round: Optional[int] = None  # overrides each agent's own cap when set
    entry_fee: float = 0.0
    prize_pool: float = 0.0
    settlement_required: bool = False
    mode: Optional[str] = None

    def __post_init__(self):
        if self.max_agents < 2:
            raise InvalidMatchConfigError("max_agents must be >= 2")
        if self.duration_seconds <= 0:
            raise InvalidMatchConfigError("duration_seconds must be positive")
        if self.tick_interval_seconds <= 0:
            raise InvalidMatchConfigError("tick_interval_seconds must be positive")
        if self.lobby_timeout_seconds < 0:
            raise InvalidMatchConfigError("lobby_timeout_seconds must be >= 0")
        if self.expected_agents is not None and not 1 <= self.expected_agents <= self.max_agents:
            raise InvalidMatchConfigError("expected_agents must be in [1, max_agents]")
        if self.max_trades_per_round is not None and self.max_trades_per_round < 1:
            raise InvalidMatchConfigError("max_trades_per_round must be >= 1")
        if self.entry_fee < 0 or self.prize_pool < 0:
            raise InvalidMatchConfigError("entry_fee and prize_pool must be >= 0")

    @property
    def ready_target(self) -> int:
        return self.expected_agents or self.max_agents

    @classmethod
    def from_mode(cls, mode: str, **overrides: Any) -> "MatchConfig":
        if mode not in GAME_MODES:
            raise InvalidMatchConfigError(f"Unknown game mode: {mode}")
        return cls(mode=mode, **{**GAME_MODES[mode], **overrides})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        mode = known.pop("mode", None)
        if mode:
            return cls.from_mode(mode, **known)
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_agents": self.max_agents,
            "duration_seconds": self.duration_seconds,
            "tick_interval_seconds": self.tick_interval_seconds,
            "lobby_timeout_seconds": self.lobby_timeout_seconds,
            "expected_agents": self.ready_target,
            "max_trades_per_round": self.max_trades_per_round,
            "entry_fee": self.entry_fee,
            "prize_pool": self.prize_pool,
            "settlement_required": self.settlement_required,
            "mode": self.mode,
        }


# ─── Lobby ────────────────────────────────────────────────────────────────────


LOBBY_STEPS = ("pending", "encrypt", "join", "ready")


@dataclass
class LobbyAgent:
    agent_id: str
    display_name: str
    owner: Optional[str] = None
    step: str = "pending"
    ready_at: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self.step == "ready"

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "display_name": self.display_name,
            "step": self.step,
            "ready": self.is_ready,
        }


# ─── Trades ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Trade:
    """A single executed trade. P&L delta is in basis points."""
    pair:             str
    direction:        str      # "buy" | "sell"
    notional:         float    # USDC
    amount_pct:       float
    reasoning:        str
    pnl_delta_bps:    int
    sealed_payload:   bytes
    sealed_reasoning: bytes
    timestamp:        float = field(default_factory=time.time)
    ledger_handle:    Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "pair": self.pair,
            "direction": self.direction,
            "notional": round(self.notional, 4),
            "amount_pct": self.amount_pct,
            "reasoning": self.reasoning,
            "pnl_delta_bps": self.pnl_delta_bps,
            "timestamp": self.timestamp,
            "ledger_handle": self.ledger_handle,
        }


# ─── Entries ──────────────────────────────────────────────────────────────────


SEALED_FIELDS = frozenset({"sealed_strategy", "sealed_trades"})


@dataclass
class Entry:
    """
    An agent's admitted participation in a match.

    Sealed fields hold opaque ciphertext. Once the match resolves the entry
    is locked and assigning to a sealed field raises SealedFieldLockedError.
    """
    agent_id: str
    display_name: str
    join_index: int
    sealed_strategy: bytes
    owner: Optional[str] = None
    join_handle: Optional[str] = None
    sealed_trades: tuple[bytes, ...] = ()
    trade_count: int = 0
    pnl_bps: Optional[int] = None
    revealed: bool = False
    final_trades: list[Trade] = field(default_factory=list)
    stop_reason: Optional[str] = None
    revealed_strategy: Optional[dict] = None
    joined_at: float = field(default_factory=time.time)
    _locked: bool = field(default=False, init=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in SEALED_FIELDS and getattr(self, "_locked", False):
            raise SealedFieldLockedError(name)
        super().__setattr__(name, value)

    def lock(self) -> None:
        object.__setattr__(self, "_locked", True)

    @property
    def locked(self) -> bool:
        return self._locked


# ─── Agent State ──────────────────────────────────────────────────────────────


@dataclass
class AgentState:
    """Live state for one agent during trading. Owned by the tick engine."""
    agent_id: str
    config: AgentConfig
    join_index: int
    starting_value: float
    positions: dict[str, float] = field(default_factory=dict)   # pair → net USDC exposure
    trades: list[Trade] = field(default_factory=list)
    pnl_bps: int = 0
    trades_this_round: int = 0
    stopped: bool = False
    stop_reason: Optional[str] = None
    tick_number: int = 0
    consecutive_errors: int = 0
    intel_purchased: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @classmethod
    def for_config(cls, agent_id: str, config: AgentConfig, join_index: int) -> "AgentState":
        return cls(
            agent_id=agent_id,
            config=config,
            join_index=join_index,
            starting_value=config.starting_budget,
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def portfolio_value(self) -> float:
        return self.starting_value * (1 + self.pnl_bps / 10_000)

    def stop(self, reason: str) -> None:
        self.stopped = True
        self.stop_reason = reason

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "tick_number": self.tick_number,
            "pnl_bps": self.pnl_bps,
            "portfolio_value": round(self.portfolio_value, 4),
            "positions": {k: round(v, 4) for k, v in self.positions.items()},
            "trades_this_round": self.trades_this_round,
            "stopped": self.stopped,
            "stop_reason": self.stop_reason,
        }


# ─── Match ────────────────────────────────────────────────────────────────────


@dataclass
class Match:
    match_id: str
    config: MatchConfig
    events: EventLog
    invite_code: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    phase: MatchPhase = MatchPhase.LOBBY
    resolved: bool = False
    phase_started_at: float = field(default_factory=time.time)
    trading_started_at: Optional[float] = None
    trading_deadline: Optional[float] = None
    resolved_at: Optional[float] = None
    round_number: int = 1
    lobby_agents: dict[str, LobbyAgent] = field(default_factory=dict)
    entries: list[Entry] = field(default_factory=list)
    agent_states: dict[str, AgentState] = field(default_factory=dict)
    create_handle: Optional[str] = None
    finalize_handle: Optional[str] = None
    pending_joins: int = 0
    total_trades: int = 0
    sealed_ops: int = 0
    x402_payments: int = 0
    x402_total_usd: float = 0.0

    # ── Admission bookkeeping ────────────────────────────────────────────────

    @property
    def slots_taken(self) -> int:
        return len(self.entries) + self.pending_joins

    @property
    def is_full(self) -> bool:
        return self.slots_taken >= self.config.max_agents

    def entry_for(self, agent_id: str) -> Optional[Entry]:
        for entry in self.entries:
            if entry.agent_id == agent_id:
                return entry
        return None

    def has_agent(self, agent_id: str) -> bool:
        return self.entry_for(agent_id) is not None

    # ── Phase control ────────────────────────────────────────────────────────

    def advance(self, target: MatchPhase, now: float) -> None:
        """Move exactly one phase forward; anything else is refused."""
        current = _PHASE_ORDER.index(self.phase)
        if _PHASE_ORDER.index(target) != current + 1:
            raise PhaseTransitionError(self.match_id, self.phase.value, target.value)
        self.phase = target
        self.phase_started_at = now

    def is_trading_open(self, now: float) -> bool:
        return (
            self.phase == MatchPhase.TRADING
            and not self.resolved
            and self.trading_deadline is not None
            and now < self.trading_deadline
        )

    def lobby_expired(self, now: float) -> bool:
        return (
            self.phase == MatchPhase.LOBBY
            and now - self.phase_started_at >= self.config.lobby_timeout_seconds
        )

    def ready_count(self) -> int:
        return sum(1 for a in self.lobby_agents.values() if a.is_ready)

    def stats(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "sealed_ops": self.sealed_ops,
            "x402_payments": self.x402_payments,
            "x402_total_usd": round(self.x402_total_usd, 4),
        }
