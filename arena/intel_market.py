"""
intel_market.py — Agents sell their latest market read to rivals over x402.

Every tick an agent publishes a short analysis of what it sees. A rival
with intel purchasing enabled may buy the freshest analysis of one other
agent for a fixed USDC price, paid through the x402 client out of a
per-agent budget. The purchase is public (an `x402-purchase` event) but the
intel content only goes to the buyer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger

from market_feed import MarketSnapshot
from match_models import AgentState, Match
from x402_client import PaymentRequirement, X402Client, usd_to_atomic


INTEL_PRICE_USD = 0.01
INTEL_TTL_SECONDS = 120.0
DEFAULT_BUDGET_USD = 0.50


@dataclass
class AgentIntel:
    agent_id:   str
    agent_name: str
    analysis:   str
    direction:  str          # "bullish" | "bearish" | "neutral"
    confidence: int          # 0–100
    pairs:      List[str]
    price:      float
    timestamp:  float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "from": self.agent_name,
            "analysis": self.analysis,
            "direction": self.direction,
            "confidence": self.confidence,
            "pairs": list(self.pairs),
            "price": self.price,
        }


_TEMPERAMENT_NOTES = {
    "degen": "Going aggressive.",
    "conservative": "Staying cautious.",
    "contrarian": "Fading the crowd.",
    "aggressive": "Watching closely.",
}


def build_intel(state: AgentState, snapshot: MarketSnapshot, now: float) -> AgentIntel:
    """Summarize an agent's read of its lead pair."""
    cfg = state.config
    direction = snapshot.trend
    analysis = (
        f"{cfg.personality or cfg.name}. Market {direction} with "
        f"{abs(snapshot.change_pct):.1f}% 24h move. {_TEMPERAMENT_NOTES[cfg.temperament]}"
    )
    confidence = 50 + cfg.risk_tolerance * 4 + (15 if direction != "neutral" else 0)
    return AgentIntel(
        agent_id=state.agent_id,
        agent_name=cfg.name,
        analysis=analysis,
        direction=direction,
        confidence=max(20, min(95, confidence)),
        pairs=list(cfg.trading_pairs),
        price=snapshot.price,
        timestamp=now,
    )


class IntelMarket:
    """Match-scoped intel store plus per-agent x402 budgets."""

    def __init__(
        self,
        client: X402Client,
        price_usd: float = INTEL_PRICE_USD,
        default_budget_usd: float = DEFAULT_BUDGET_USD,
        ttl: float = INTEL_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.price_usd = price_usd
        self.default_budget_usd = default_budget_usd
        self.ttl = ttl
        self._clock = clock
        self._intel: Dict[str, Dict[str, AgentIntel]] = {}
        self._budgets: Dict[str, Dict[str, float]] = {}

    # ── Budgets ───────────────────────────────────────────────────────────────

    def init_budget(self, match_id: str, agent_id: str, budget_usd: Optional[float] = None) -> None:
        amount = self.default_budget_usd if budget_usd is None else budget_usd
        self._budgets.setdefault(match_id, {})[agent_id] = amount

    def budget(self, match_id: str, agent_id: str) -> float:
        return self._budgets.get(match_id, {}).get(agent_id, 0.0)

    def can_afford(self, match_id: str, agent_id: str) -> bool:
        return self.budget(match_id, agent_id) + 1e-9 >= self.price_usd

    # ── Intel store ───────────────────────────────────────────────────────────

    def publish(self, match_id: str, intel: AgentIntel) -> None:
        self._intel.setdefault(match_id, {})[intel.agent_id] = intel

    def latest(self, match_id: str, agent_id: str) -> Optional[AgentIntel]:
        return self._intel.get(match_id, {}).get(agent_id)

    def available(self, match_id: str, exclude_agent_id: str) -> List[AgentIntel]:
        """Fresh intel from everyone but the asking agent."""
        now = self._clock()
        return [
            i for i in self._intel.get(match_id, {}).values()
            if i.agent_id != exclude_agent_id and now - i.timestamp < self.ttl
        ]

    def drop(self, match_id: str) -> None:
        self._intel.pop(match_id, None)
        self._budgets.pop(match_id, None)

    # ── Purchase ──────────────────────────────────────────────────────────────

    async def purchase(
        self,
        match: Match,
        buyer: AgentState,
        target_agent_id: Optional[str] = None,
    ) -> Optional[AgentIntel]:
        """
        Buy one rival's intel. Returns None when nothing is for sale, the
        buyer cannot afford it, or the payment fails.
        """
        match_id = match.match_id
        if not self.can_afford(match_id, buyer.agent_id):
            return None

        offers = self.available(match_id, buyer.agent_id)
        if not offers:
            return None
        target = next((i for i in offers if i.agent_id == target_agent_id), None)
        if target is None:
            target = max(offers, key=lambda i: i.timestamp)

        requirement = PaymentRequirement(
            scheme="exact",
            network=self.client.network,
            max_amount_required=usd_to_atomic(self.price_usd),
            resource=f"arena://{match_id}/intel/{target.agent_id}",
            description=f"market intel from {target.agent_name}",
            pay_to=target.agent_id,
        )
        receipt = await self.client.pay(requirement)
        if not receipt.success:
            logger.warning(f"[{match_id}] {buyer.name} intel purchase from {target.agent_name} failed")
            return None

        self._budgets[match_id][buyer.agent_id] -= self.price_usd
        buyer.intel_purchased += 1
        match.x402_payments += 1
        match.x402_total_usd += self.price_usd
        match.events.append(
            "x402-purchase",
            agent_id=buyer.agent_id,
            agent_name=buyer.name,
            message=f"bought intel from {target.agent_name} via x402 (${self.price_usd:.2f})",
            data={
                "seller_id": target.agent_id,
                "seller_name": target.agent_name,
                "amount_usd": self.price_usd,
                "tx_hash": receipt.transaction_hash,
            },
        )
        logger.info(f"[{match_id}] {buyer.name} bought intel from {target.agent_name}")
        return target
