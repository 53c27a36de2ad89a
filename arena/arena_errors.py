"""
arena_errors.py — Exception hierarchy for match admission, phase control
and the sealed commit/reveal protocol.

Admission errors are raised synchronously before any state is touched.
Tick-level failures never surface here; they become `error` events.
"""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for every error the arena raises on purpose."""


# ─── Admission ────────────────────────────────────────────────────────────────

class AdmissionError(ArenaError):
    """A join/ready request was refused. No state was mutated."""


class MatchNotFoundError(AdmissionError):
    def __init__(self, match_ref: str) -> None:
        super().__init__(f"Match not found: {match_ref}")
        self.match_ref = match_ref


class AgentNotFoundError(AdmissionError):
    def __init__(self, match_id: str, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} is not in match {match_id}")
        self.match_id = match_id
        self.agent_id = agent_id


class MatchFullError(AdmissionError):
    def __init__(self, match_id: str, max_agents: int) -> None:
        super().__init__(f"Match {match_id} is full ({max_agents} agents)")
        self.match_id = match_id
        self.max_agents = max_agents


class MatchResolvedError(AdmissionError):
    def __init__(self, match_id: str) -> None:
        super().__init__(f"Match {match_id} is already resolved")
        self.match_id = match_id


class MatchClosedError(AdmissionError):
    """Match is past its trading window but not yet resolved."""

    def __init__(self, match_id: str, phase: str) -> None:
        super().__init__(f"Match {match_id} no longer accepts agents (phase={phase})")
        self.match_id = match_id
        self.phase = phase


class DuplicateJoinError(AdmissionError):
    def __init__(self, match_id: str, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} already joined match {match_id}")
        self.match_id = match_id
        self.agent_id = agent_id


# ─── Phase control ────────────────────────────────────────────────────────────

class PhaseTransitionError(ArenaError):
    def __init__(self, match_id: str, current: str, target: str) -> None:
        super().__init__(f"Match {match_id}: cannot move {current} → {target}")
        self.match_id = match_id
        self.current = current
        self.target = target


class MatchAlreadyResolvedError(ArenaError):
    def __init__(self, match_id: str) -> None:
        super().__init__(f"Match {match_id} was already finalized")
        self.match_id = match_id


class FinalizeError(ArenaError):
    """Settlement was required and the ledger refused it; reveal rolled back."""


# ─── Sealing ──────────────────────────────────────────────────────────────────

class SealError(ArenaError):
    """The sealing service could not seal or unseal a blob."""


class SealedFieldLockedError(ArenaError):
    def __init__(self, field_name: str) -> None:
        super().__init__(f"Sealed field '{field_name}' is locked after resolution")
        self.field_name = field_name


# ─── Configuration ────────────────────────────────────────────────────────────

class InvalidMatchConfigError(ArenaError, ValueError):
    """Raised by MatchConfig / AgentConfig validation."""
