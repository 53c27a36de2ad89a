"""
leaderboard.py — Ranking of match entries.

Order: P&L (bps) descending, ties broken by the earlier join index, so the
same entries always produce the same board. Entries whose P&L is unknown to
the viewer get no rank and trail the board in join order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from match_models import Entry, Match
from visibility import project_entry


@dataclass
class LeaderboardRow:
    rank: Optional[int]
    agent_id: str
    display_name: str
    join_index: int
    pnl_bps: Optional[int]
    trade_count: int

    @property
    def pnl_pct(self) -> Optional[str]:
        return format_pnl(self.pnl_bps)

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "agent_id": self.agent_id,
            "display_name": self.display_name,
            "join_index": self.join_index,
            "pnl_bps": self.pnl_bps,
            "pnl_pct": self.pnl_pct,
            "trade_count": self.trade_count,
        }


def format_pnl(pnl_bps: Optional[int]) -> Optional[str]:
    """1234 → "+12.34%", -50 → "-0.50%"."""
    if pnl_bps is None:
        return None
    return f"{pnl_bps / 100:+.2f}%"


def _order(rows: List[LeaderboardRow]) -> List[LeaderboardRow]:
    known = sorted((r for r in rows if r.pnl_bps is not None), key=lambda r: (-r.pnl_bps, r.join_index))
    unknown = sorted((r for r in rows if r.pnl_bps is None), key=lambda r: r.join_index)
    for i, row in enumerate(known, start=1):
        row.rank = i
    for row in unknown:
        row.rank = None
    return known + unknown


def rank(entries: Iterable[Entry]) -> List[LeaderboardRow]:
    """Rank entries by their recorded P&L."""
    rows = [
        LeaderboardRow(
            rank=None,
            agent_id=e.agent_id,
            display_name=e.display_name,
            join_index=e.join_index,
            pnl_bps=e.pnl_bps,
            trade_count=len(e.final_trades) if e.revealed else e.trade_count,
        )
        for e in entries
    ]
    return _order(rows)


def rank_for_viewer(match: Match, viewer: Optional[str] = None) -> List[LeaderboardRow]:
    """Rank what the viewer can see: own live P&L, others only once revealed."""
    rows = []
    for entry in match.entries:
        view = project_entry(match, entry, viewer)
        rows.append(LeaderboardRow(
            rank=None,
            agent_id=entry.agent_id,
            display_name=entry.display_name,
            join_index=entry.join_index,
            pnl_bps=view["pnl_bps"],
            trade_count=view["trade_count"],
        ))
    return _order(rows)
