"""
ledger_adapter.py — Best-effort settlement records for arena matches.

The core records four things on a ledger: match creation, each join (with
the sealed strategy commitment), each sealed trade, and the final results.
Every call returns a LedgerResult instead of raising, and is bounded by a
timeout; a failed call only means the confirmation handle is absent.

Implementations:
    SimulatedLedger      — in-memory, deterministic sha256 handles
    ArenaContractLedger  — web3 contract calls (createArena / joinArena /
                           recordTrade / finalizeArena), signed with the
                           server account and run off the event loop
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from eth_account import Account
from loguru import logger
from web3 import Web3


# ─── Result type ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LedgerResult:
    """Outcome of one ledger call: a confirmation handle or a failure reason."""
    ok: bool
    handle: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, handle: str) -> "LedgerResult":
        return cls(ok=True, handle=handle)

    @classmethod
    def failure(cls, reason: str) -> "LedgerResult":
        return cls(ok=False, reason=reason)


async def settle(call: Awaitable[LedgerResult], timeout: float, label: str) -> LedgerResult:
    """Await a ledger call with a timeout; any exception becomes a failure result."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Ledger {label} timed out after {timeout:.1f}s")
        return LedgerResult.failure(f"{label} timed out")
    except Exception as exc:
        logger.warning(f"Ledger {label} failed: {exc}")
        return LedgerResult.failure(f"{label} failed: {exc}")


class LedgerAdapter(Protocol):
    async def record_create(self, match_id: str, config: dict) -> LedgerResult: ...

    async def record_join(self, match_id: str, agent_id: str, join_index: int,
                          sealed_strategy: bytes) -> LedgerResult: ...

    async def record_trade(self, match_id: str, agent_id: str, join_index: int,
                           sealed_payload: bytes) -> LedgerResult: ...

    async def finalize(self, match_id: str, results: list[dict]) -> LedgerResult: ...


# ─── Simulated ledger ─────────────────────────────────────────────────────────

class SimulatedLedger:
    """
    In-memory ledger. Handles are sha256 digests of the recorded payload, so
    they are stable across runs for the same input.

    `fail_operations` makes the named operations ("create", "join", "trade",
    "finalize") return failures, for exercising degraded paths.
    """

    def __init__(self, fail_operations: Optional[set[str]] = None) -> None:
        self.fail_operations = set(fail_operations or ())
        self.records: list[dict[str, Any]] = []

    def _record(self, op: str, payload: dict[str, Any]) -> LedgerResult:
        if op in self.fail_operations:
            return LedgerResult.failure(f"simulated {op} failure")
        body = json.dumps({"op": op, **payload}, sort_keys=True, default=str)
        handle = "0x" + hashlib.sha256(f"{len(self.records)}:{body}".encode()).hexdigest()
        self.records.append({"op": op, "handle": handle, **payload})
        return LedgerResult.success(handle)

    async def record_create(self, match_id: str, config: dict) -> LedgerResult:
        return self._record("create", {"match_id": match_id, "config": config})

    async def record_join(self, match_id: str, agent_id: str, join_index: int,
                          sealed_strategy: bytes) -> LedgerResult:
        return self._record("join", {
            "match_id": match_id, "agent_id": agent_id,
            "join_index": join_index, "commitment": sealed_strategy.hex(),
        })

    async def record_trade(self, match_id: str, agent_id: str, join_index: int,
                           sealed_payload: bytes) -> LedgerResult:
        return self._record("trade", {
            "match_id": match_id, "agent_id": agent_id,
            "join_index": join_index, "payload": sealed_payload.hex(),
        })

    async def finalize(self, match_id: str, results: list[dict]) -> LedgerResult:
        return self._record("finalize", {"match_id": match_id, "results": results})

    def ops(self, op: str) -> list[dict[str, Any]]:
        return [r for r in self.records if r["op"] == op]


# ─── On-chain arena contract ──────────────────────────────────────────────────

ARENA_ABI: list[dict] = [
    {
        "name": "createArena", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "matchKey", "type": "bytes32"},
            {"name": "maxAgents", "type": "uint256"},
            {"name": "durationSeconds", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "joinArena", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "matchKey", "type": "bytes32"},
            {"name": "agentKey", "type": "bytes32"},
            {"name": "sealedStrategy", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "recordTrade", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "matchKey", "type": "bytes32"},
            {"name": "entryIndex", "type": "uint256"},
            {"name": "sealedTrade", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "finalizeArena", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "matchKey", "type": "bytes32"},
            {"name": "entryIndices", "type": "uint256[]"},
            {"name": "pnlBps", "type": "int256[]"},
        ],
        "outputs": [],
    },
]


class ArenaContractLedger:
    """
    Interface to the on-chain arena contract.

    Usage:
        ledger = ArenaContractLedger(w3, account, contract_address)
        result = await ledger.record_join(match_id, agent_id, 0, sealed)
    """

    def __init__(self, w3: Web3, account: Account, contract_address: str, gas: int = 2_000_000) -> None:
        self.w3 = w3
        self.account = account
        self.gas = gas
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=ARENA_ABI
        )
        # held in the worker thread for the whole send; outlives a timed-out caller
        self._tx_lock = threading.Lock()

    @classmethod
    def from_settings(cls, rpc_url: str, private_key: str, contract_address: str) -> "ArenaContractLedger":
        w3 = Web3(Web3.HTTPProvider(rpc_url))
        account = Account.from_key(private_key)
        logger.info(f"ArenaContractLedger: {contract_address} via {rpc_url} as {account.address}")
        return cls(w3, account, contract_address)

    @staticmethod
    def key(value: str) -> bytes:
        return Web3.keccak(text=value)

    def _send_tx(self, fn) -> str:
        """Build, sign, and send a transaction. Returns tx hash."""
        with self._tx_lock:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = fn.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "gas": self.gas,
                "gasPrice": self.w3.eth.gas_price,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt.get("status", 1) != 1:
            raise RuntimeError(f"transaction reverted: {tx_hash.hex()}")
        logger.info(f"TX confirmed: {tx_hash.hex()} (block {receipt['blockNumber']})")
        return tx_hash.hex()

    async def _submit(self, label: str, build: Callable[[], Any]) -> LedgerResult:
        try:
            tx_hash = await asyncio.to_thread(lambda: self._send_tx(build()))
        except Exception as exc:
            logger.warning(f"ArenaContractLedger.{label} failed: {exc}")
            return LedgerResult.failure(str(exc))
        return LedgerResult.success(tx_hash)

    async def record_create(self, match_id: str, config: dict) -> LedgerResult:
        return await self._submit("createArena", lambda: self._contract.functions.createArena(
            self.key(match_id),
            int(config["max_agents"]),
            int(config["duration_seconds"]),
        ))

    async def record_join(self, match_id: str, agent_id: str, join_index: int,
                          sealed_strategy: bytes) -> LedgerResult:
        return await self._submit("joinArena", lambda: self._contract.functions.joinArena(
            self.key(match_id), self.key(agent_id), sealed_strategy,
        ))

    async def record_trade(self, match_id: str, agent_id: str, join_index: int,
                           sealed_payload: bytes) -> LedgerResult:
        return await self._submit("recordTrade", lambda: self._contract.functions.recordTrade(
            self.key(match_id), join_index, sealed_payload,
        ))

    async def finalize(self, match_id: str, results: list[dict]) -> LedgerResult:
        indices = [int(r["join_index"]) for r in results]
        pnls = [int(r["pnl_bps"]) for r in results]
        return await self._submit("finalizeArena", lambda: self._contract.functions.finalizeArena(
            self.key(match_id), indices, pnls,
        ))


def create_ledger(rpc_url: Optional[str], private_key: Optional[str],
                  contract_address: Optional[str]) -> LedgerAdapter:
    if rpc_url and private_key and contract_address:
        return ArenaContractLedger.from_settings(rpc_url, private_key, contract_address)
    logger.info("No arena contract configured, using simulated ledger")
    return SimulatedLedger()
