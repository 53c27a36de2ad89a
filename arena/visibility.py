"""
visibility.py — What a given viewer is allowed to see of a match.

Before an entry is revealed, everyone except its owner sees only the
committed shape of it: the sealed blob and the last committed trade count.
P&L, trades, reasoning and stop reason are withheld, and activity events
about that agent are redacted to a neutral line with no data.

The owner (viewer == agent id or viewer == entry owner) always sees their
own live state. After reveal everyone sees everything.

All projections are plain dicts ready for JSON.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from event_bus import AGENT_ACTIVITY_TYPES, ArenaEvent
from match_models import Entry, Match

REDACTED_MESSAGE = "activity sealed until reveal"


def is_owner(entry: Entry, viewer: Optional[str]) -> bool:
    if not viewer:
        return False
    return viewer == entry.agent_id or (entry.owner is not None and viewer == entry.owner)


def project_entry(match: Match, entry: Entry, viewer: Optional[str] = None) -> dict[str, Any]:
    base: dict[str, Any] = {
        "agent_id": entry.agent_id,
        "display_name": entry.display_name,
        "join_index": entry.join_index,
        "join_handle": entry.join_handle,
        "revealed": entry.revealed,
        "sealed_strategy": entry.sealed_strategy.hex(),
    }

    if entry.revealed:
        base.update({
            "trade_count": len(entry.final_trades),
            "pnl_bps": entry.pnl_bps,
            "trades": [t.to_dict() for t in entry.final_trades],
            "strategy": entry.revealed_strategy,
            "stop_reason": entry.stop_reason,
        })
        return base

    if is_owner(entry, viewer):
        state = match.agent_states.get(entry.agent_id)
        if state is not None:
            base.update({
                "trade_count": len(state.trades),
                "pnl_bps": state.pnl_bps,
                "trades": [t.to_dict() for t in state.trades],
                "strategy": state.config.to_dict(),
                "stop_reason": state.stop_reason,
                "stopped": state.stopped,
            })
            return base

    base.update({"trade_count": entry.trade_count, "pnl_bps": None})
    return base


def project_event(match: Match, event: ArenaEvent, viewer: Optional[str] = None) -> dict[str, Any]:
    out = event.to_dict()
    if event.type not in AGENT_ACTIVITY_TYPES or event.agent_id is None:
        return out
    entry = match.entry_for(event.agent_id)
    if entry is None or entry.revealed or is_owner(entry, viewer):
        return out
    out["message"] = REDACTED_MESSAGE
    out["data"] = {}
    return out


def project_match(match: Match, viewer: Optional[str] = None, now: Optional[float] = None) -> dict[str, Any]:
    now = time.time() if now is None else now
    remaining = None
    if match.trading_deadline is not None and not match.resolved:
        remaining = max(0.0, match.trading_deadline - now)

    return {
        "match_id": match.match_id,
        "invite_code": match.invite_code,
        "phase": match.phase.value,
        "resolved": match.resolved,
        "round_number": match.round_number,
        "config": match.config.to_dict(),
        "created_at": match.created_at,
        "phase_started_at": match.phase_started_at,
        "trading_started_at": match.trading_started_at,
        "trading_deadline": match.trading_deadline,
        "resolved_at": match.resolved_at,
        "time_remaining": remaining,
        "lobby": [a.to_dict() for a in match.lobby_agents.values()],
        "entries": [project_entry(match, e, viewer) for e in match.entries],
        "handles": {"create": match.create_handle, "finalize": match.finalize_handle},
        "stats": match.stats(),
        "latest_seq": match.events.latest_seq(),
    }
