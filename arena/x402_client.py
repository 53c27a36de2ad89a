"""
x402_client.py — x402 micropayments for agent-to-agent intel purchases.

Implements the payer side of the x402 payment protocol (https://x402.org):
  1. The seller side (intel market) issues a PaymentRequirement
  2. The buyer builds a payment payload (USDC, EIP-712 style authorization)
  3. The payload is settled through a facilitator (or a demo receipt)
  4. The payment is recorded on the buyer-side ledger

Demo mode signs nothing and settles instantly, so matches run without funded
wallets. Live mode signs with the agent account and posts to the
facilitator's /settle endpoint.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct
from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_FACILITATOR = "https://x402.org/facilitator"
DEFAULT_NETWORK = "eip155:84532"    # Base Sepolia
USDC_DECIMALS = 1_000_000
X402_VERSION = 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def usd_to_atomic(amount_usd: float) -> str:
    return str(int(round(amount_usd * USDC_DECIMALS)))


def atomic_to_usd(amount: str) -> float:
    return int(amount) / USDC_DECIMALS


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class PaymentRequirement:
    """What the seller asks for before releasing a resource."""
    scheme: str                 # "exact"
    network: str                # "eip155:84532"
    max_amount_required: str    # USDC in 6-decimal units (e.g. "10000" = $0.01)
    resource: str               # e.g. "arena://match-1/intel/agent-2"
    description: str
    pay_to: str                 # receiver address or agent id
    required_deadline_seconds: int = 300

    @property
    def amount_usd(self) -> float:
        return atomic_to_usd(self.max_amount_required)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRequirement":
        return cls(
            scheme=data.get("scheme", "exact"),
            network=data.get("network", DEFAULT_NETWORK),
            max_amount_required=str(data.get("maxAmountRequired", data.get("max_amount_required", "10000"))),
            resource=data.get("resource", ""),
            description=data.get("description", ""),
            pay_to=data.get("payTo", data.get("pay_to", "")),
            required_deadline_seconds=data.get("requiredDeadlineSeconds", 300),
        )


@dataclass
class PaymentReceipt:
    """Receipt from the facilitator (or demo settlement)."""
    success: bool
    transaction_hash: Optional[str]
    network: str
    payer: str
    amount: str
    timestamp: float = field(default_factory=time.time)
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentReceipt":
        return cls(
            success=data.get("success", False),
            transaction_hash=data.get("transactionHash"),
            network=data.get("network", ""),
            payer=data.get("payer", ""),
            amount=str(data.get("amount", "0")),
            raw=data,
        )

    @classmethod
    def failed(cls, network: str) -> "PaymentReceipt":
        return cls(success=False, transaction_hash=None, network=network, payer="unknown", amount="0")


@dataclass
class PaymentRecord:
    resource: str
    amount_atomic: int
    network: str
    receipt: PaymentReceipt
    timestamp: float = field(default_factory=time.time)
    demo_mode: bool = False


# ─── Ledger ───────────────────────────────────────────────────────────────────

class X402Ledger:
    """Tracks every payment made through a client."""

    def __init__(self) -> None:
        self._records: list[PaymentRecord] = []

    def record(self, entry: PaymentRecord) -> None:
        self._records.append(entry)
        logger.debug(f"x402 payment: {entry.resource} → ${entry.amount_atomic / USDC_DECIMALS:.4f} USDC")

    @property
    def total_payments(self) -> int:
        return len(self._records)

    @property
    def total_spent_usdc(self) -> float:
        return sum(r.amount_atomic for r in self._records if r.receipt.success) / USDC_DECIMALS

    def get_stats(self) -> dict:
        return {
            "total_payments": self.total_payments,
            "total_spent_usdc": round(self.total_spent_usdc, 6),
            "recent": [
                {
                    "resource": r.resource,
                    "amount_usdc": r.amount_atomic / USDC_DECIMALS,
                    "success": r.receipt.success,
                    "demo_mode": r.demo_mode,
                }
                for r in self._records[-10:]
            ],
        }


# ─── x402 Client ──────────────────────────────────────────────────────────────

class X402Client:
    """
    Payer for x402 requirements.

    Usage:
        client = X402Client(demo_mode=True)
        receipt = await client.pay(requirement)
        if receipt.success:
            ...
    """

    def __init__(
        self,
        account: Optional[Account] = None,
        facilitator_url: str = DEFAULT_FACILITATOR,
        network: str = DEFAULT_NETWORK,
        demo_mode: bool = True,
        ledger: Optional[X402Ledger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account = account
        self.facilitator_url = facilitator_url
        self.network = network
        self.demo_mode = demo_mode
        self.ledger = ledger or X402Ledger()
        self._transport = transport

    @property
    def payer(self) -> str:
        return self.account.address if self.account else ZERO_ADDRESS

    def build_payment_payload(self, requirement: PaymentRequirement) -> dict:
        """
        Build the `exact` scheme payment payload.

        In demo mode the signature is a zero placeholder; in live mode the
        authorization is signed with the payer's key.
        """
        now = int(time.time())
        deadline = now + requirement.required_deadline_seconds
        nonce = hashlib.sha256(f"{requirement.resource}{time.time()}".encode()).hexdigest()

        authorization = {
            "from": self.payer,
            "to": requirement.pay_to,
            "value": requirement.max_amount_required,
            "validAfter": str(now - 60),
            "validBefore": str(deadline),
            "nonce": "0x" + nonce,
            "resource": requirement.resource,
        }

        if self.demo_mode or not self.account:
            signature = "0x" + "00" * 65
        else:
            encoded = encode_defunct(text=json.dumps(authorization, sort_keys=True))
            signature = "0x" + self.account.sign_message(encoded).signature.hex().removeprefix("0x")

        return {
            "x402Version": X402_VERSION,
            "scheme": requirement.scheme,
            "network": requirement.network,
            "payload": {"signature": signature, "authorization": authorization},
        }

    async def _settle(self, payload: dict, requirement: PaymentRequirement) -> PaymentReceipt:
        if self.demo_mode:
            return PaymentReceipt(
                success=True,
                transaction_hash="0x" + hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest(),
                network=requirement.network,
                payer=self.payer,
                amount=requirement.max_amount_required,
                raw={"mode": "demo"},
            )

        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as http:
                resp = await http.post(f"{self.facilitator_url}/settle", json=payload)
            if resp.status_code == 200:
                return PaymentReceipt.from_dict(resp.json())
            logger.warning(f"Facilitator error {resp.status_code}: {resp.text[:200]}")
        except Exception as e:
            logger.error(f"Facilitator request failed: {e}")
        return PaymentReceipt.failed(requirement.network)

    async def pay(self, requirement: PaymentRequirement) -> PaymentReceipt:
        """Build, settle and record one payment. Never raises for settlement failures."""
        logger.info(
            f"x402: paying {requirement.amount_usd:.4f} USDC to {requirement.pay_to[:12]} "
            f"for {requirement.description}"
        )
        payload = self.build_payment_payload(requirement)
        receipt = await self._settle(payload, requirement)
        self.ledger.record(PaymentRecord(
            resource=requirement.resource,
            amount_atomic=int(requirement.max_amount_required),
            network=requirement.network,
            receipt=receipt,
            demo_mode=self.demo_mode,
        ))
        if not receipt.success:
            logger.error(f"x402: payment failed for {requirement.resource}")
        return receipt


def create_x402_client(
    private_key: Optional[str] = None,
    demo_mode: bool = True,
    network: str = DEFAULT_NETWORK,
) -> X402Client:
    account = Account.from_key(private_key) if private_key else None
    return X402Client(account=account, network=network, demo_mode=demo_mode)
