"""
event_bus.py — Per-match append-only event log with resumable subscriptions.

Every observable thing that happens in a match (lobby steps, phase changes,
agent tick progress, x402 purchases, reveal) is appended here. Sequence
numbers are dense and 0-based, so a spectator that reconnects with its last
seen `seq` resumes without gaps or duplicates.

The log itself is the buffer: subscribers pull at their own pace, so a slow
subscriber never blocks producers and never loses events.

Usage:
    log = EventLog("match-1")
    log.append("phase", message="trading started")
    async for event in log.subscribe(after=last_seq):
        ...
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from loguru import logger


EVENT_TYPES = frozenset({
    "analyzing", "decision", "encrypting", "recording", "executed",
    "hold", "stop", "error", "x402-purchase",
    "lobby", "phase", "reveal",
})

# Events about a specific agent's trading activity; subject to censorship
AGENT_ACTIVITY_TYPES = frozenset({
    "analyzing", "decision", "encrypting", "recording", "executed",
    "hold", "stop", "error", "x402-purchase",
})


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ArenaEvent:
    """One entry in a match's event log."""
    seq:        int
    type:       str
    agent_id:   Optional[str]
    agent_name: Optional[str]
    message:    str
    data:       dict = field(default_factory=dict)
    timestamp:  float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "type": self.type,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "message": self.message,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }


# ─── Event Log ────────────────────────────────────────────────────────────────

class EventLog:
    """
    Append-only, totally ordered event log for one match.

    `append` is synchronous so callers can emit from inside a critical
    section without yielding. Waiting subscribers are woken by swapping the
    current asyncio.Event for a fresh one.
    """

    def __init__(self, match_id: str, clock: Callable[[], float] = time.time) -> None:
        self.match_id = match_id
        self._clock = clock
        self._events: list[ArenaEvent] = []
        self._changed = asyncio.Event()
        self._closed = False
        self._subscribers = 0

    def append(
        self,
        type: str,
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        message: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> ArenaEvent:
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {type}")
        if self._closed:
            logger.debug(f"[{self.match_id}] dropping {type} event after close")
            return ArenaEvent(-1, type, agent_id, agent_name, message, data or {}, self._clock())

        event = ArenaEvent(
            seq=len(self._events),
            type=type,
            agent_id=agent_id,
            agent_name=agent_name,
            message=message,
            data=dict(data or {}),
            timestamp=self._clock(),
        )
        self._events.append(event)
        self._wake()
        return event

    def since(self, after: int = -1) -> list[ArenaEvent]:
        """Return every event with seq > after."""
        return self._events[max(after + 1, 0):]

    def latest_seq(self) -> int:
        return len(self._events) - 1

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    async def subscribe(self, after: int = -1) -> AsyncIterator[ArenaEvent]:
        """
        Yield events with seq > after, then keep yielding new ones as they
        are appended. Ends once the log is closed and fully drained.
        """
        self._subscribers += 1
        cursor = max(after + 1, 0)
        try:
            while True:
                while cursor < len(self._events):
                    event = self._events[cursor]
                    cursor += 1
                    yield event
                if self._closed:
                    return
                await self._changed.wait()
        finally:
            self._subscribers -= 1

    def close(self) -> None:
        """No more appends; subscribers finish after draining."""
        if not self._closed:
            self._closed = True
            self._wake()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return self._subscribers

    def _wake(self) -> None:
        waiter = self._changed
        self._changed = asyncio.Event()
        waiter.set()
