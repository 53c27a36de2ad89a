"""
arena_api.py — FastAPI surface for sealed trading matches.

Endpoints:
    POST /matches                     — create a match (config or game mode)
    GET  /matches                     — list matches (optional ?phase=)
    GET  /matches/{ref}               — match snapshot, filtered for ?viewer=
    POST /matches/{ref}/join          — join with an agent config or preset
    POST /matches/{ref}/ready         — mark an agent ready
    POST /matches/{ref}/resolve       — finalize now
    GET  /matches/{ref}/leaderboard   — ranking as the viewer may see it
    GET  /matches/{ref}/events        — events with seq > ?after=
    GET  /matches/{ref}/stream        — same, as server-sent events
    GET  /stats                       — public counters
    GET  /health

`{ref}` is a match id or an invite code. Every match, entry and event leaving
this module goes through the visibility filter.

Usage:
    app = create_app(machine)
    uvicorn.run(app, port=8090)
"""

from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from agent_profiles import AgentConfig
from arena_errors import (
    AdmissionError,
    ArenaError,
    FinalizeError,
    InvalidMatchConfigError,
    MatchAlreadyResolvedError,
    MatchNotFoundError,
    PhaseTransitionError,
)
from leaderboard import rank_for_viewer
from match_engine import MatchStateMachine
from match_models import Match, MatchConfig, MatchPhase
from visibility import project_entry, project_event, project_match


def _agent_config(payload: Dict[str, Any]) -> AgentConfig:
    """Build an AgentConfig from a join body: either `config` or `preset` + `name`."""
    try:
        if isinstance(payload.get("config"), dict):
            return AgentConfig.from_dict(payload["config"])
        name = payload.get("name") or payload.get("display_name") or payload.get("agent_id")
        preset = payload.get("preset", "moderate")
        return AgentConfig.preset(preset, name, **payload.get("overrides", {}))
    except InvalidMatchConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise InvalidMatchConfigError(str(exc)) from exc


def _sse(event: Dict[str, Any]) -> str:
    return f"id: {event['seq']}\nevent: {event['type']}\ndata: {json.dumps(event)}\n\n"


def create_app(machine: MatchStateMachine, manage_lifecycle: bool = False) -> FastAPI:
    """
    Build the API around a state machine.

    With manage_lifecycle=True the app starts the supervisor on startup and
    shuts the machine down on exit (used by `main.py serve`).
    """
    app = FastAPI(
        title="Sealed Match Arena API",
        description="Sealed multi-agent trading matches",
        version="1.0.0",
    )
    app.state.machine = machine
    started_at = time.time()

    if manage_lifecycle:
        @app.on_event("startup")
        async def _startup() -> None:
            await machine.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await machine.shutdown()

    def _match(ref: str) -> Match:
        return machine.store.require(ref)

    # ─── Matches ──────────────────────────────────────────────────────────────

    @app.post("/matches", status_code=201)
    async def create_match(payload: Optional[Dict[str, Any]] = Body(None)) -> Dict[str, Any]:
        payload = payload or {}
        try:
            config = MatchConfig.from_dict(payload)
        except TypeError as exc:
            raise InvalidMatchConfigError(str(exc)) from exc
        match = await machine.create(config)
        return project_match(match)

    @app.get("/matches")
    async def list_matches(phase: Optional[str] = None) -> List[Dict[str, Any]]:
        if phase is not None:
            try:
                wanted = MatchPhase(phase)
            except ValueError:
                raise HTTPException(status_code=422, detail=f"unknown phase: {phase}")
            matches = machine.store.list(wanted)
        else:
            matches = machine.store.list()
        return [
            {
                "match_id": m.match_id,
                "invite_code": m.invite_code,
                "phase": m.phase.value,
                "resolved": m.resolved,
                "agents": len(m.entries),
                "max_agents": m.config.max_agents,
                "mode": m.config.mode,
                "created_at": m.created_at,
            }
            for m in matches
        ]

    @app.get("/matches/{ref}")
    async def get_match(ref: str, viewer: Optional[str] = None) -> Dict[str, Any]:
        return project_match(_match(ref), viewer)

    @app.post("/matches/{ref}/join", status_code=201)
    async def join_match(ref: str, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        agent_id = payload.get("agent_id")
        if not agent_id:
            raise HTTPException(status_code=422, detail="agent_id is required")
        config = _agent_config(payload)
        entry = await machine.join(
            ref, agent_id, config,
            display_name=payload.get("display_name"),
            owner=payload.get("owner"),
        )
        match = _match(ref)
        return {
            "match_id": match.match_id,
            "phase": match.phase.value,
            "entry": project_entry(match, entry, agent_id),
        }

    @app.post("/matches/{ref}/ready")
    async def ready(ref: str, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        agent_id = payload.get("agent_id")
        if not agent_id:
            raise HTTPException(status_code=422, detail="agent_id is required")
        trading = await machine.mark_ready(ref, agent_id)
        match = _match(ref)
        return {
            "match_id": match.match_id,
            "phase": match.phase.value,
            "trading": trading,
            "ready": match.ready_count(),
            "expected": match.config.ready_target,
        }

    @app.post("/matches/{ref}/resolve")
    async def resolve(ref: str) -> Dict[str, Any]:
        match = await machine.finalize(ref)
        return {
            "match": project_match(match),
            "leaderboard": [row.to_dict() for row in rank_for_viewer(match)],
        }

    @app.get("/matches/{ref}/leaderboard")
    async def leaderboard(ref: str, viewer: Optional[str] = None) -> Dict[str, Any]:
        match = _match(ref)
        return {
            "match_id": match.match_id,
            "resolved": match.resolved,
            "leaderboard": [row.to_dict() for row in rank_for_viewer(match, viewer)],
        }

    # ─── Events ───────────────────────────────────────────────────────────────

    @app.get("/matches/{ref}/events")
    async def events(ref: str, viewer: Optional[str] = None, after: int = -1) -> Dict[str, Any]:
        match = _match(ref)
        return {
            "match_id": match.match_id,
            "latest_seq": match.events.latest_seq(),
            "events": [project_event(match, e, viewer) for e in match.events.since(after)],
        }

    @app.get("/matches/{ref}/stream")
    async def stream(
        ref: str,
        request: Request,
        viewer: Optional[str] = None,
        after: int = -1,
        last_event_id: Optional[str] = Header(None),
    ) -> StreamingResponse:
        match = _match(ref)
        if last_event_id is not None and last_event_id.lstrip("-").isdigit():
            after = max(after, int(last_event_id))

        async def _gen() -> AsyncIterator[str]:
            async for event in match.events.subscribe(after):
                if await request.is_disconnected():
                    break
                yield _sse(project_event(match, event, viewer))

        return StreamingResponse(
            _gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ─── Stats / Health ───────────────────────────────────────────────────────

    @app.get("/stats")
    async def stats() -> Dict[str, Any]:
        return machine.stats()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "matches": len(machine.store),
            "uptime_seconds": round(time.time() - started_at, 1),
        }

    # ─── Error Handlers ───────────────────────────────────────────────────────

    @app.exception_handler(MatchNotFoundError)
    async def not_found_handler(request: Request, exc: MatchNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(InvalidMatchConfigError)
    async def invalid_config_handler(request: Request, exc: InvalidMatchConfigError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(FinalizeError)
    async def finalize_handler(request: Request, exc: FinalizeError) -> JSONResponse:
        logger.error(f"API: finalize failed: {exc}")
        return JSONResponse(status_code=502, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(ArenaError)
    async def conflict_handler(request: Request, exc: ArenaError) -> JSONResponse:
        # AdmissionError, PhaseTransitionError, MatchAlreadyResolvedError, sealed-field locks
        status = 409 if isinstance(exc, (AdmissionError, PhaseTransitionError, MatchAlreadyResolvedError)) else 500
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    return app
