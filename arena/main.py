#!/usr/bin/env python3
"""
main.py — Sealed Match Arena entry point

Runs timed multi-agent trading matches in which every agent's strategy and
trades stay sealed until the deadline:
1. Agents join a match lobby and commit a sealed strategy
2. Trading starts once everyone is ready (or the lobby times out)
3. Each agent ticks autonomously: market read → decision → sealed trade
4. At the deadline everything is unsealed, settled and ranked

Usage:
    python main.py serve [--host 0.0.0.0] [--port 8090]
    python main.py demo  [--agents 3] [--duration 30] [--tick 3] [--offline]

Environment:
    See .env.example for required configuration.
"""

import argparse
import asyncio
import sys

import uvicorn
from loguru import logger

from agent_memory import MemoryStore
from agent_profiles import AgentConfig
from arena_api import create_app
from decision_oracle import create_oracle
from intel_market import IntelMarket
from leaderboard import rank
from ledger_adapter import create_ledger
from market_feed import MarketFeed
from match_engine import MatchStateMachine
from match_models import GAME_MODES, MatchConfig
from match_store import MatchStore
from sealed_codec import create_codec
from settings import ArenaSettings
from tick_engine import AgentTickEngine
from x402_client import create_x402_client


def setup_logging(log_level: str = "INFO", log_file: str = "logs/arena.log") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        log_file,
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


def build_machine(settings: ArenaSettings, offline: bool = False) -> MatchStateMachine:
    """Wire every collaborator from settings into one state machine."""
    store = MatchStore()
    codec = create_codec(settings.codec_key, settings.codec_url)
    ledger = create_ledger(settings.rpc_url, settings.arena_private_key, settings.arena_contract_address)
    oracle = create_oracle(
        settings.anthropic_api_key,
        model=settings.oracle_model,
        fallback_model=settings.oracle_fallback_model,
        timeout=settings.oracle_timeout_seconds,
    )
    intel = IntelMarket(
        create_x402_client(settings.arena_private_key, demo_mode=settings.x402_demo_mode),
        price_usd=settings.intel_price_usd,
        default_budget_usd=settings.intel_budget_usd,
    )
    memory = MemoryStore()
    engine = AgentTickEngine(
        store, MarketFeed(offline=offline), oracle, codec, ledger,
        intel=intel,
        memory=memory,
        ledger_timeout=settings.ledger_timeout_seconds,
        max_stagger=settings.max_stagger_seconds,
        throttle_unobserved=settings.throttle_unobserved,
    )
    return MatchStateMachine(
        store, engine, codec, ledger,
        intel=intel,
        memory=memory,
        ledger_timeout=settings.ledger_timeout_seconds,
        supervisor_interval=settings.supervisor_interval,
        reveal_grace=settings.reveal_grace_seconds,
    )


# ─── Commands ─────────────────────────────────────────────────────────────────


def serve(settings: ArenaSettings, host: str, port: int) -> None:
    machine = build_machine(settings)
    app = create_app(machine, manage_lifecycle=True)
    logger.info(f"Arena API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


_DEMO_ROSTER = [
    AgentConfig.conservative("Steady Eddie", personality="Patient, waits for clean trends"),
    AgentConfig.moderate("Balanced Bea", personality="Follows momentum, sizes sensibly", buy_intel=True),
    AgentConfig.aggressive("Degen Dan", personality="Chases every move", trading_pairs=["ETH/USDC", "BTC/USDC"]),
    AgentConfig.moderate("Contra Carl", personality="Fades the crowd", contrarian=True),
]


async def run_demo(settings: ArenaSettings, agents: int, duration: float, tick: float,
                   mode: str = None, offline: bool = False) -> list:
    """Run one match end to end and return the final leaderboard rows."""
    machine = build_machine(settings, offline=offline)
    await machine.start()
    try:
        if mode:
            config = MatchConfig.from_mode(mode, max_agents=max(agents, 2))
        else:
            config = MatchConfig(max_agents=max(agents, 2), duration_seconds=duration,
                                 tick_interval_seconds=tick, lobby_timeout_seconds=10)
        match = await machine.create(config)
        logger.info(f"Demo match {match.match_id} (invite {match.invite_code})")

        roster = _DEMO_ROSTER[:agents]
        for i, cfg in enumerate(roster):
            await machine.join(match.match_id, f"agent-{i + 1}", cfg)
        for i in range(len(roster)):
            await machine.mark_ready(match.match_id, f"agent-{i + 1}")

        while not match.resolved:
            await asyncio.sleep(0.5)

        board = rank(match.entries)
        for row in board:
            logger.info(f"  #{row.rank}  {row.display_name:<14} {row.pnl_pct:>8}  ({row.trade_count} trades)")
        return board
    finally:
        await machine.shutdown()


def cli(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Sealed Match Arena")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    p_demo = sub.add_parser("demo", help="Run one local match and print the leaderboard")
    p_demo.add_argument("--agents", type=int, default=3, choices=range(2, len(_DEMO_ROSTER) + 1))
    p_demo.add_argument("--duration", type=float, default=30.0)
    p_demo.add_argument("--tick", type=float, default=3.0)
    p_demo.add_argument("--mode", choices=sorted(GAME_MODES), default=None)
    p_demo.add_argument("--offline", action="store_true", help="Simulated prices only")

    args = parser.parse_args(argv)
    settings = ArenaSettings.from_env()
    setup_logging(settings.log_level, settings.log_file)

    if args.command == "serve":
        serve(settings, args.host or settings.api_host, args.port or settings.api_port)
    else:
        asyncio.run(run_demo(settings, args.agents, args.duration, args.tick,
                             mode=args.mode, offline=args.offline))


if __name__ == "__main__":
    cli()
