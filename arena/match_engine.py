"""
match_engine.py — Match lifecycle: lobby → trading → reveal.

MatchStateMachine owns every phase transition and every agent loop task.

Lifecycle:
  create        — allocate a match in `lobby`
  join          — admission control + sealed strategy commit
  mark_ready    — lobby readiness; trading starts when everyone expected is
                  ready or the lobby timeout passes
  start_trading — set the deadline, spawn one tick loop per agent
  finalize      — stop loops, batch-unseal, settle, reveal atomically

A supervisor task polls lobby timeouts and trading deadlines, so a match
resolves on time even when nobody calls in.

Failure semantics:
- Admission failures raise before any state changes
- Ledger failures are logged and leave the handle empty; they never block a
  transition unless the match requires settlement (then finalize raises
  FinalizeError and nothing is revealed)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from agent_memory import MemoryStore
from agent_profiles import AgentConfig, deserialize_config, serialize_config
from arena_errors import (
    AgentNotFoundError,
    DuplicateJoinError,
    FinalizeError,
    MatchAlreadyResolvedError,
    MatchClosedError,
    MatchFullError,
    MatchResolvedError,
    PhaseTransitionError,
)
from event_bus import EventLog
from intel_market import IntelMarket
from leaderboard import rank
from ledger_adapter import LedgerAdapter, LedgerResult, settle
from match_models import AgentState, Entry, LobbyAgent, Match, MatchConfig, MatchPhase
from match_store import MatchStore
from sealed_codec import SealedStrategyCodec
from tick_engine import AgentTickEngine


class MatchStateMachine:
    """
    Usage:
        machine = MatchStateMachine(store, engine, codec, ledger)
        await machine.start()
        match = await machine.create(MatchConfig(max_agents=3, duration_seconds=60))
        await machine.join(match.match_id, "agent-1", AgentConfig.moderate("Alpha"))
        await machine.mark_ready(match.match_id, "agent-1")
        ...
        await machine.shutdown()
    """

    def __init__(
        self,
        store: MatchStore,
        engine: AgentTickEngine,
        codec: SealedStrategyCodec,
        ledger: LedgerAdapter,
        intel: Optional[IntelMarket] = None,
        memory: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
        ledger_timeout: float = 10.0,
        supervisor_interval: float = 1.0,
        reveal_grace: float = 2.0,
    ) -> None:
        self.store = store
        self.engine = engine
        self.codec = codec
        self.ledger = ledger
        self.intel = intel
        self.memory = memory
        self._clock = clock
        self.ledger_timeout = ledger_timeout
        self.supervisor_interval = supervisor_interval
        self.reveal_grace = reveal_grace

        self._loops: Dict[str, Dict[str, asyncio.Task]] = {}
        self._supervisor: Optional[asyncio.Task] = None
        self._running = False

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the deadline supervisor."""
        if self._running:
            logger.warning("MatchStateMachine already running")
            return
        self._running = True
        self._supervisor = asyncio.create_task(self._supervise(), name="arena:supervisor")
        logger.info(f"MatchStateMachine started (supervisor every {self.supervisor_interval}s)")

    async def shutdown(self) -> None:
        """Cancel the supervisor and every agent loop."""
        self._running = False
        if self._supervisor and not self._supervisor.done():
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
        for match_id in list(self._loops):
            await self._cancel_loops(match_id)
        logger.info("MatchStateMachine stopped")

    async def _supervise(self) -> None:
        while self._running:
            try:
                await self.check_deadlines()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Supervisor pass failed: {}", exc)
            await asyncio.sleep(self.supervisor_interval)

    # ─── Create ───────────────────────────────────────────────────────────────

    async def create(self, config: Optional[MatchConfig] = None) -> Match:
        config = config or MatchConfig()
        now = self._clock()
        match_id = self.store.new_match_id()
        match = Match(
            match_id=match_id,
            config=config,
            events=EventLog(match_id, clock=self._clock),
            invite_code=self.store.new_invite_code(),
            created_at=now,
            phase_started_at=now,
        )
        self.store.add(match)
        match.events.append("phase", message="lobby open", data={"phase": MatchPhase.LOBBY.value})
        logger.info(f"[{match_id}] created (code={match.invite_code}, max_agents={config.max_agents})")

        result = await settle(self.ledger.record_create(match_id, config.to_dict()),
                              self.ledger_timeout, "createArena")
        match.create_handle = result.handle
        return match

    # ─── Join ─────────────────────────────────────────────────────────────────

    async def join(
        self,
        match_ref: str,
        agent_id: str,
        config: AgentConfig,
        display_name: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Entry:
        """
        Admit an agent: reserve a slot, seal its strategy, record the join.

        Raises an AdmissionError subclass (without mutating anything) when
        the match is unknown, resolved, closed, full, or the agent is
        already in it.
        """
        match = self.store.require(match_ref)
        lock = self.store.lock(match.match_id)

        async with lock:
            self._admit(match, agent_id)
            match.pending_joins += 1
            name = display_name or config.name
            lobby = match.lobby_agents.setdefault(agent_id, LobbyAgent(agent_id, name, owner))

        try:
            lobby.step = "encrypt"
            self._lobby_event(match, lobby, "sealing strategy...")
            sealed = await self.codec.seal(serialize_config(config))
            match.sealed_ops += 1

            lobby.step = "join"
            self._lobby_event(match, lobby, "joining arena...")
            async with lock:
                # Re-check: the match may have closed while we were sealing
                if match.resolved:
                    raise MatchResolvedError(match.match_id)
                if match.phase == MatchPhase.REVEAL or not self._join_window_open(match):
                    raise MatchClosedError(match.match_id, match.phase.value)
                join_index = len(match.entries)
                entry = Entry(
                    agent_id=agent_id,
                    display_name=name,
                    join_index=join_index,
                    sealed_strategy=sealed,
                    owner=owner,
                    joined_at=self._clock(),
                )
                match.entries.append(entry)
                match.agent_states[agent_id] = AgentState.for_config(agent_id, config, join_index)
                match.pending_joins -= 1
        except BaseException:
            async with lock:
                match.pending_joins -= 1
                if not match.has_agent(agent_id):
                    match.lobby_agents.pop(agent_id, None)
            raise

        if self.intel is not None:
            self.intel.init_budget(match.match_id, agent_id)
        if self.memory is not None:
            self.memory.ensure(agent_id, config.name)

        result = await settle(
            self.ledger.record_join(match.match_id, agent_id, entry.join_index, sealed),
            self.ledger_timeout, "joinArena",
        )
        entry.join_handle = result.handle
        logger.info(
            f"[{match.match_id}] {name} joined as #{entry.join_index} "
            f"({len(match.entries)}/{match.config.max_agents})"
        )

        if match.phase == MatchPhase.TRADING:
            lobby.step = "ready"
            lobby.ready_at = self._clock()
            self._spawn(match, agent_id)
        return entry

    def _admit(self, match: Match, agent_id: str) -> None:
        if match.resolved:
            raise MatchResolvedError(match.match_id)
        if match.phase == MatchPhase.REVEAL or not self._join_window_open(match):
            raise MatchClosedError(match.match_id, match.phase.value)
        if match.has_agent(agent_id) or agent_id in match.lobby_agents:
            raise DuplicateJoinError(match.match_id, agent_id)
        if match.is_full:
            raise MatchFullError(match.match_id, match.config.max_agents)

    def _join_window_open(self, match: Match) -> bool:
        if match.phase == MatchPhase.LOBBY:
            return True
        return match.phase == MatchPhase.TRADING and match.is_trading_open(self._clock())

    # ─── Lobby readiness ──────────────────────────────────────────────────────

    async def mark_ready(self, match_ref: str, agent_id: str) -> bool:
        """Mark a joined agent ready. Returns whether the match is trading."""
        match = self.store.require(match_ref)
        if not match.has_agent(agent_id):
            raise AgentNotFoundError(match.match_id, agent_id)
        lobby = match.lobby_agents[agent_id]
        if not lobby.is_ready:
            lobby.step = "ready"
            lobby.ready_at = self._clock()
            self._lobby_event(match, lobby, "ready")
        return await self.admit_readiness(match.match_id)

    async def admit_readiness(self, match_ref: str) -> bool:
        """
        Start trading once every expected agent is ready, or once the lobby
        timeout has passed with at least one entry. Idempotent.
        """
        match = self.store.require(match_ref)
        if match.phase != MatchPhase.LOBBY:
            return match.phase == MatchPhase.TRADING
        ready_entries = sum(
            1 for e in match.entries
            if match.lobby_agents.get(e.agent_id) and match.lobby_agents[e.agent_id].is_ready
        )
        if ready_entries >= match.config.ready_target:
            await self.start_trading(match.match_id, reason="all agents ready")
        elif match.lobby_expired(self._clock()) and match.entries:
            await self.start_trading(match.match_id, reason="lobby timeout")
        return match.phase == MatchPhase.TRADING

    # ─── Trading ──────────────────────────────────────────────────────────────

    async def start_trading(self, match_ref: str, reason: str = "manual") -> Match:
        match = self.store.require(match_ref)
        async with self.store.lock(match.match_id):
            if match.phase == MatchPhase.TRADING:
                return match
            now = self._clock()
            match.advance(MatchPhase.TRADING, now)
            match.trading_started_at = now
            match.trading_deadline = now + match.config.duration_seconds
            for lobby in match.lobby_agents.values():
                if match.has_agent(lobby.agent_id) and not lobby.is_ready:
                    lobby.step = "ready"
                    lobby.ready_at = now
            match.events.append(
                "phase",
                message=f"trading started ({reason})",
                data={"phase": MatchPhase.TRADING.value, "deadline": match.trading_deadline},
            )
            logger.info(
                f"[{match.match_id}] trading started ({reason}), "
                f"{len(match.entries)} agents, {match.config.duration_seconds:g}s"
            )
            for entry in match.entries:
                self._spawn(match, entry.agent_id)
        return match

    def _spawn(self, match: Match, agent_id: str) -> None:
        loops = self._loops.setdefault(match.match_id, {})
        existing = loops.get(agent_id)
        if existing is not None and not existing.done():
            return
        loops[agent_id] = self.engine.spawn(match, agent_id)

    async def check_deadlines(self) -> List[str]:
        """One supervisor pass. Returns ids of matches finalized in this pass."""
        now = self._clock()
        expired: List[Match] = []
        for match in self.store.list():
            if match.phase == MatchPhase.LOBBY:
                await self.admit_readiness(match.match_id)
            elif self.tick_deadline_check(match, now):
                expired.append(match)

        # one slow settlement must not hold back the other reveals
        outcomes = await asyncio.gather(*(self._finalize_expired(m) for m in expired))
        return [m.match_id for m, done in zip(expired, outcomes) if done]

    async def _finalize_expired(self, match: Match) -> bool:
        try:
            await self.finalize(match.match_id)
            return True
        except (MatchAlreadyResolvedError, PhaseTransitionError):
            return False
        except FinalizeError as exc:
            logger.error(f"[{match.match_id}] settlement failed, will retry: {exc}")
            return False

    @staticmethod
    def tick_deadline_check(match: Match, now: float) -> bool:
        """True when a trading match has passed its deadline and needs finalizing."""
        return (
            match.phase in (MatchPhase.TRADING, MatchPhase.REVEAL)
            and not match.resolved
            and match.trading_deadline is not None
            and now >= match.trading_deadline
        )

    # ─── Finalize ─────────────────────────────────────────────────────────────

    async def finalize(self, match_ref: str) -> Match:
        """
        Reveal and resolve a match exactly once.

        Steps: move to reveal, stop agent loops (after a grace period for
        in-flight ticks), batch-unseal every committed blob, settle on the
        ledger, then copy results into the entries and flip `revealed` on
        all of them in one synchronous block.
        """
        match = self.store.require(match_ref)
        async with self.store.lock(match.match_id):
            if match.resolved:
                raise MatchAlreadyResolvedError(match.match_id)
            if match.phase == MatchPhase.LOBBY:
                raise PhaseTransitionError(match.match_id, match.phase.value, MatchPhase.REVEAL.value)
            if match.phase == MatchPhase.TRADING:
                match.advance(MatchPhase.REVEAL, self._clock())
                match.events.append("phase", message="trading closed, revealing",
                                    data={"phase": MatchPhase.REVEAL.value})

            await self._cancel_loops(match.match_id, grace=self.reveal_grace)

            strategies = await self._unseal_strategies(match)
            results = self._final_results(match)

            settlement = await settle(
                self.ledger.finalize(match.match_id, results), self.ledger_timeout, "finalizeArena"
            )
            if not settlement.ok and match.config.settlement_required:
                raise FinalizeError(f"match {match.match_id}: {settlement.reason}")

            self._reveal(match, strategies, settlement)

        board = rank(match.entries)
        match.events.append(
            "reveal",
            message="match revealed",
            data={
                "leaderboard": [row.to_dict() for row in board],
                "finalize_handle": match.finalize_handle,
            },
        )
        match.events.close()
        self._remember(match, board)
        if self.intel is not None:
            self.intel.drop(match.match_id)
        logger.info(
            f"[{match.match_id}] resolved: "
            + ", ".join(f"#{r.rank} {r.display_name} {r.pnl_pct}" for r in board)
        )
        return match

    async def _unseal_strategies(self, match: Match) -> Dict[str, Optional[dict]]:
        """
        Batch-unseal every committed blob of the match in one codec call:
        strategies first, then trade payloads. A strategy that fails to
        unseal falls back to the local plaintext copy.
        """
        n = len(match.entries)
        blobs = [e.sealed_strategy for e in match.entries]
        blobs += [t.sealed_payload for s in match.agent_states.values() for t in s.trades]
        try:
            opened = await self.codec.unseal_batch(blobs)
        except Exception as exc:
            logger.warning(f"[{match.match_id}] unseal_batch failed: {exc}")
            opened = [None] * len(blobs)

        failed_trades = sum(1 for raw in opened[n:] if raw is None)
        if failed_trades:
            logger.warning(f"[{match.match_id}] {failed_trades} trade payloads did not unseal, using local records")

        strategies: Dict[str, Optional[dict]] = {}
        for entry, raw in zip(match.entries, opened[:n]):
            state = match.agent_states.get(entry.agent_id)
            if raw is not None:
                try:
                    strategies[entry.agent_id] = deserialize_config(raw).to_dict()
                    continue
                except Exception as exc:
                    logger.warning(f"[{match.match_id}] {entry.agent_id} unsealed strategy unreadable: {exc}")
            else:
                logger.warning(f"[{match.match_id}] {entry.agent_id} strategy did not unseal, using local copy")
            strategies[entry.agent_id] = state.config.to_dict() if state else None
        return strategies

    @staticmethod
    def _final_results(match: Match) -> List[dict]:
        results = []
        for entry in match.entries:
            state = match.agent_states.get(entry.agent_id)
            results.append({
                "agent_id": entry.agent_id,
                "join_index": entry.join_index,
                "pnl_bps": state.pnl_bps if state else 0,
                "trade_count": len(state.trades) if state else 0,
            })
        return results

    def _reveal(self, match: Match, strategies: Dict[str, Optional[dict]], settlement: LedgerResult) -> None:
        # No await in here: every observer sees either nothing or everything revealed
        now = self._clock()
        for entry in match.entries:
            state = match.agent_states.get(entry.agent_id)
            entry.pnl_bps = state.pnl_bps if state else 0
            entry.final_trades = list(state.trades) if state else []
            entry.trade_count = len(entry.final_trades)
            entry.stop_reason = state.stop_reason if state else None
            entry.revealed_strategy = strategies.get(entry.agent_id)
            entry.revealed = True
            entry.lock()
        match.finalize_handle = settlement.handle
        match.resolved = True
        match.resolved_at = now

    def _remember(self, match: Match, board: List[Any]) -> None:
        if self.memory is None:
            return
        ranks = {row.agent_id: row.rank for row in board}
        for entry in match.entries:
            state = match.agent_states.get(entry.agent_id)
            self.memory.record_round(
                agent_id=entry.agent_id,
                agent_name=entry.display_name,
                match_id=match.match_id,
                round_number=match.round_number,
                trades=entry.final_trades,
                pnl_bps=entry.pnl_bps or 0,
                rank=ranks.get(entry.agent_id),
                field_size=len(match.entries),
                stop_reason=entry.stop_reason,
                intel_bought=state.intel_purchased if state else 0,
            )

    # ─── Loop management ──────────────────────────────────────────────────────

    async def _cancel_loops(self, match_id: str, grace: float = 0.0) -> None:
        loops = self._loops.pop(match_id, {})
        tasks = [t for t in loops.values() if not t.done()]
        if not tasks:
            return
        if grace > 0:
            _, pending = await asyncio.wait(tasks, timeout=grace)
        else:
            pending = set(tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug(f"[{match_id}] stopped {len(tasks)} agent loops ({len(pending)} cancelled)")

    def active_loops(self, match_id: str) -> int:
        return sum(1 for t in self._loops.get(match_id, {}).values() if not t.done())

    async def remove(self, match_ref: str) -> Optional[Match]:
        match = self.store.remove(match_ref)
        if match is not None:
            await self._cancel_loops(match.match_id)
            match.events.close()
            if self.intel is not None:
                self.intel.drop(match.match_id)
        return match

    # ─── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _lobby_event(match: Match, lobby: LobbyAgent, message: str) -> None:
        match.events.append(
            "lobby",
            agent_id=lobby.agent_id,
            agent_name=lobby.display_name,
            message=f"[lobby] {message}",
            data={"step": lobby.step},
        )

    def stats(self) -> dict:
        matches = self.store.list()
        oracle_stats = getattr(self.engine.oracle, "get_stats", None)
        return {
            "oracle": oracle_stats() if oracle_stats else None,
            "payments": self.intel.client.ledger.get_stats() if self.intel is not None else None,
            "matches": len(matches),
            "by_phase": {p.value: sum(1 for m in matches if m.phase == p) for p in MatchPhase},
            "resolved": sum(1 for m in matches if m.resolved),
            "agents": sum(len(m.entries) for m in matches),
            "total_trades": sum(m.total_trades for m in matches),
            "sealed_ops": sum(m.sealed_ops for m in matches),
            "x402_payments": sum(m.x402_payments for m in matches),
            "x402_total_usd": round(sum(m.x402_total_usd for m in matches), 4),
            "active_loops": sum(self.active_loops(mid) for mid in self._loops),
        }
