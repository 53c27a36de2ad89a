"""
settings.py — Process-wide configuration for the sealed match arena.

All values come from the environment (optionally a local .env file loaded
through python-dotenv). Per-match and per-agent knobs live on MatchConfig
and AgentConfig instead.

Usage:
    settings = ArenaSettings.from_env()
    machine = build_machine(settings)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class ArenaSettings:
    """Environment-backed settings shared by every match in the process."""
    # Decision oracle
    anthropic_api_key: str = ""
    oracle_model: str = "claude-haiku-4-5-20251001"
    oracle_fallback_model: str = "claude-3-5-haiku-latest"
    oracle_timeout_seconds: float = 20.0

    # Sealed codec: a remote sealing service wins over the local key
    codec_key: Optional[str] = None
    codec_url: Optional[str] = None

    # Ledger
    rpc_url: Optional[str] = None
    arena_contract_address: Optional[str] = None
    arena_private_key: Optional[str] = None
    ledger_timeout_seconds: float = 10.0

    # Scheduling
    supervisor_interval: float = 1.0
    reveal_grace_seconds: float = 2.0
    max_stagger_seconds: float = 2.0
    throttle_unobserved: bool = False

    # Intel market / x402
    x402_demo_mode: bool = True
    intel_budget_usd: float = 0.50
    intel_price_usd: float = 0.01

    # API + logging
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    log_level: str = "INFO"
    log_file: str = "logs/arena.log"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "ArenaSettings":
        if dotenv:
            load_dotenv()
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            oracle_model=os.getenv("ORACLE_MODEL", cls.oracle_model),
            oracle_fallback_model=os.getenv("ORACLE_FALLBACK_MODEL", cls.oracle_fallback_model),
            oracle_timeout_seconds=_env_float("ORACLE_TIMEOUT_SECONDS", cls.oracle_timeout_seconds),
            codec_key=os.getenv("ARENA_CODEC_KEY") or None,
            codec_url=os.getenv("ARENA_CODEC_URL") or None,
            rpc_url=os.getenv("RPC_URL") or None,
            arena_contract_address=os.getenv("ARENA_CONTRACT_ADDRESS") or None,
            arena_private_key=os.getenv("ARENA_PRIVATE_KEY") or None,
            ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", cls.ledger_timeout_seconds),
            supervisor_interval=_env_float("SUPERVISOR_INTERVAL", cls.supervisor_interval),
            reveal_grace_seconds=_env_float("REVEAL_GRACE_SECONDS", cls.reveal_grace_seconds),
            max_stagger_seconds=_env_float("MAX_STAGGER_SECONDS", cls.max_stagger_seconds),
            throttle_unobserved=_env_bool("THROTTLE_UNOBSERVED", cls.throttle_unobserved),
            x402_demo_mode=_env_bool("X402_DEMO_MODE", cls.x402_demo_mode),
            intel_budget_usd=_env_float("INTEL_BUDGET_USD", cls.intel_budget_usd),
            intel_price_usd=_env_float("INTEL_PRICE_USD", cls.intel_price_usd),
            api_host=os.getenv("API_HOST", cls.api_host),
            api_port=int(os.getenv("API_PORT", str(cls.api_port))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            log_file=os.getenv("LOG_FILE", cls.log_file),
        )

    @property
    def ledger_enabled(self) -> bool:
        return bool(self.rpc_url and self.arena_contract_address and self.arena_private_key)
