"""
match_store.py — In-memory registry of live matches.

Matches are addressable by id or by a 6-character invite code. Each match
has its own asyncio.Lock, used to serialize admission and finalize; tick
loops never take it. Nothing here survives a process restart.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from typing import Dict, List, Optional

from arena_errors import MatchNotFoundError
from match_models import Match, MatchPhase


INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"   # no O/0/I/1
INVITE_LENGTH = 6


def generate_invite_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(INVITE_ALPHABET) for _ in range(INVITE_LENGTH))


class MatchStore:
    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng
        self._matches: Dict[str, Match] = {}
        self._codes: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def new_match_id() -> str:
        return f"m-{uuid.uuid4().hex[:12]}"

    def new_invite_code(self) -> str:
        while True:
            code = generate_invite_code(self._rng)
            if code not in self._codes:
                return code

    def add(self, match: Match) -> Match:
        self._matches[match.match_id] = match
        self._locks.setdefault(match.match_id, asyncio.Lock())
        if match.invite_code:
            self._codes[match.invite_code.upper()] = match.match_id
        return match

    def get(self, ref: str) -> Optional[Match]:
        """Resolve a match id or an invite code (case-insensitive)."""
        match = self._matches.get(ref)
        if match is not None:
            return match
        match_id = self._codes.get(ref.upper())
        return self._matches.get(match_id) if match_id else None

    def require(self, ref: str) -> Match:
        match = self.get(ref)
        if match is None:
            raise MatchNotFoundError(ref)
        return match

    def lock(self, match_id: str) -> asyncio.Lock:
        return self._locks.setdefault(match_id, asyncio.Lock())

    def list(self, phase: Optional[MatchPhase] = None) -> List[Match]:
        matches = sorted(self._matches.values(), key=lambda m: m.created_at, reverse=True)
        if phase is None:
            return matches
        return [m for m in matches if m.phase == phase]

    def remove(self, ref: str) -> Optional[Match]:
        match = self.get(ref)
        if match is None:
            return None
        self._matches.pop(match.match_id, None)
        self._locks.pop(match.match_id, None)
        if match.invite_code:
            self._codes.pop(match.invite_code.upper(), None)
        return match

    def __len__(self) -> int:
        return len(self._matches)

    def __contains__(self, ref: str) -> bool:
        return self.get(ref) is not None
