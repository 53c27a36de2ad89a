"""
agent_memory.py — What an agent remembers across matches.

After every reveal each agent's round (trades, P&L, rank) is recorded.
The last few rounds, lifetime stats and a handful of lessons are rendered
into a short block that is appended to the oracle's system prompt.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from match_models import Trade


RECENT_ROUNDS = 5
MAX_LESSONS = 10


@dataclass
class RoundMemory:
    match_id: str
    round_number: int
    trades: List[dict]
    pnl_bps: int
    rank: Optional[int]
    field_size: int
    stop_reason: Optional[str] = None
    intel_bought: int = 0
    recorded_at: float = field(default_factory=time.time)


@dataclass
class PairStats:
    trades: int = 0
    total_pnl_bps: int = 0
    wins: int = 0
    losses: int = 0


@dataclass
class AgentMemory:
    agent_id: str
    agent_name: str
    rounds_played: int = 0
    rounds_won: int = 0
    total_pnl_bps: int = 0
    best_round_bps: int = 0
    worst_round_bps: int = 0
    total_trades: int = 0
    pair_stats: Dict[str, PairStats] = field(default_factory=dict)
    lessons: List[str] = field(default_factory=list)
    recent: Deque[RoundMemory] = field(default_factory=lambda: deque(maxlen=RECENT_ROUNDS))

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "rounds_played": self.rounds_played,
            "rounds_won": self.rounds_won,
            "total_pnl_bps": self.total_pnl_bps,
            "best_round_bps": self.best_round_bps,
            "worst_round_bps": self.worst_round_bps,
            "total_trades": self.total_trades,
            "lessons": list(self.lessons),
        }


class MemoryStore:
    """Process-local memory keyed by agent id."""

    def __init__(self) -> None:
        self._memories: Dict[str, AgentMemory] = {}

    def get(self, agent_id: str) -> Optional[AgentMemory]:
        return self._memories.get(agent_id)

    def ensure(self, agent_id: str, agent_name: str) -> AgentMemory:
        memory = self._memories.get(agent_id)
        if memory is None:
            memory = AgentMemory(agent_id=agent_id, agent_name=agent_name)
            self._memories[agent_id] = memory
        return memory

    def record_round(
        self,
        agent_id: str,
        agent_name: str,
        match_id: str,
        round_number: int,
        trades: List[Trade],
        pnl_bps: int,
        rank: Optional[int],
        field_size: int,
        stop_reason: Optional[str] = None,
        intel_bought: int = 0,
    ) -> AgentMemory:
        memory = self.ensure(agent_id, agent_name)
        first = memory.rounds_played == 0
        memory.rounds_played += 1
        memory.total_pnl_bps += pnl_bps
        memory.total_trades += len(trades)
        memory.best_round_bps = pnl_bps if first else max(memory.best_round_bps, pnl_bps)
        memory.worst_round_bps = pnl_bps if first else min(memory.worst_round_bps, pnl_bps)
        if rank == 1:
            memory.rounds_won += 1

        for trade in trades:
            stats = memory.pair_stats.setdefault(trade.pair, PairStats())
            stats.trades += 1
            stats.total_pnl_bps += trade.pnl_delta_bps
            if trade.pnl_delta_bps > 0:
                stats.wins += 1
            elif trade.pnl_delta_bps < 0:
                stats.losses += 1

        memory.recent.append(RoundMemory(
            match_id=match_id,
            round_number=round_number,
            trades=[t.to_dict() for t in trades],
            pnl_bps=pnl_bps,
            rank=rank,
            field_size=field_size,
            stop_reason=stop_reason,
            intel_bought=intel_bought,
        ))

        for lesson in derive_lessons(memory, pnl_bps, rank, field_size, stop_reason, len(trades)):
            if lesson not in memory.lessons:
                memory.lessons.append(lesson)
        del memory.lessons[:-MAX_LESSONS]
        return memory

    def format_for_prompt(self, agent_id: str) -> str:
        memory = self._memories.get(agent_id)
        if memory is None or memory.rounds_played == 0:
            return ""

        lines = [
            "MEMORY (your past rounds):",
            f"- Played {memory.rounds_played}, won {memory.rounds_won}, "
            f"lifetime P&L {memory.total_pnl_bps / 100:+.2f}%",
        ]
        for r in memory.recent:
            rank = f"#{r.rank}/{r.field_size}" if r.rank else "unranked"
            lines.append(f"- Round {r.round_number}: {r.pnl_bps / 100:+.2f}% over {len(r.trades)} trades, {rank}")

        best_pairs = sorted(memory.pair_stats.items(), key=lambda kv: kv[1].total_pnl_bps, reverse=True)
        if best_pairs:
            pair, stats = best_pairs[0]
            lines.append(f"- Best pair so far: {pair} ({stats.wins}W/{stats.losses}L)")
        if memory.lessons:
            lines.append("LESSONS:")
            lines.extend(f"- {lesson}" for lesson in memory.lessons[-5:])
        return "\n".join(lines)


def derive_lessons(
    memory: AgentMemory,
    pnl_bps: int,
    rank: Optional[int],
    field_size: int,
    stop_reason: Optional[str],
    trade_count: int,
) -> List[str]:
    lessons: List[str] = []
    if stop_reason and "drawdown" in stop_reason:
        lessons.append("Hit max drawdown last time; size down after consecutive losses.")
    if trade_count == 0:
        lessons.append("Sat out an entire round; a small position beats zero exposure.")
    if rank is not None and field_size > 1 and rank == field_size and pnl_bps < 0:
        lessons.append("Finished last with a loss; be more selective on entries.")
    if rank == 1:
        lessons.append("Won a round; the approach works, do not overtrade it.")
    for pair, stats in memory.pair_stats.items():
        if stats.trades >= 3 and stats.losses > stats.wins * 2:
            lessons.append(f"{pair} has been a consistent loser; avoid it without a strong signal.")
    return lessons
