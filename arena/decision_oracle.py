"""
decision_oracle.py — LLM-backed trade decisions for arena agents.

Given an agent's configuration, its running state and the current market
snapshots, the oracle returns one of:
    hold   — skip this tick
    trade  — pair, direction, amount_pct (of portfolio), reasoning
    stop   — the agent chooses to stop trading for the rest of the match

ClaudeOracle asks the primary model, then the fallback model, and degrades
to `hold` if both are unavailable. MomentumOracle is a deterministic
trend/contrarian rule used when no API key is configured.

Usage:
    oracle = ClaudeOracle(api_key=settings.anthropic_api_key)
    decision = await oracle.decide(config, state_view, snapshots, context)
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import anthropic
from loguru import logger

from agent_profiles import AgentConfig, build_system_prompt
from market_feed import MarketSnapshot


ACTIONS = ("hold", "trade", "stop")
DIRECTIONS = ("buy", "sell")


# ─── Data Classes ────────────────────────────────────────────────────────────

@dataclass
class Decision:
    """Decision returned by an oracle."""
    action: str                      # "hold" | "trade" | "stop"
    reasoning: str
    pair: Optional[str] = None
    direction: Optional[str] = None  # "buy" | "sell"
    amount_pct: float = 0.0          # percent of portfolio, 0–100
    source: str = "oracle"
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ValueError(f"Invalid action: {self.action}")
        if self.action == "trade":
            if not self.pair:
                raise ValueError("trade decision requires a pair")
            if self.direction not in DIRECTIONS:
                raise ValueError(f"Invalid direction: {self.direction}")
            if not 0 < self.amount_pct <= 100:
                raise ValueError("amount_pct must be in (0, 100]")

    @classmethod
    def hold(cls, reasoning: str, source: str = "oracle") -> "Decision":
        return cls(action="hold", reasoning=reasoning, source=source)

    @classmethod
    def stop(cls, reasoning: str, source: str = "oracle") -> "Decision":
        return cls(action="stop", reasoning=reasoning, source=source)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "pair": self.pair,
            "direction": self.direction,
            "amount_pct": round(self.amount_pct, 4),
            "reasoning": self.reasoning,
            "source": self.source,
        }


class DecisionOracle(Protocol):
    async def decide(
        self,
        config: AgentConfig,
        state: Dict[str, Any],
        snapshots: Dict[str, MarketSnapshot],
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision: ...


# ─── Parsing ─────────────────────────────────────────────────────────────────

def parse_decision(text: str, config: AgentConfig, source: str) -> Optional[Decision]:
    """
    Extract a Decision from a model response.

    Tolerates prose around the JSON object and normalizes legacy action
    names (swap/buy/sell). Returns None when nothing usable is found.
    """
    text = text.strip()
    start = text.find("{")
    end = text.rfind("}") + 1
    if start == -1 or end == 0:
        return None

    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "action" not in data:
        return None

    action = str(data.get("action", "hold")).lower()
    reasoning = str(data.get("reasoning") or "no reasoning provided")[:500]
    direction = str(data.get("direction") or "").lower() or None

    if action in ("buy", "sell"):
        direction, action = action, "trade"
    elif action == "swap":
        action = "trade"

    if action == "stop":
        return Decision.stop(reasoning, source=source)
    if action != "trade":
        return Decision.hold(reasoning, source=source)

    pair = data.get("pair")
    if pair not in config.trading_pairs:
        pair = config.trading_pairs[0]
    if direction not in DIRECTIONS:
        return Decision.hold(f"unusable direction {direction!r}: {reasoning}", source=source)

    try:
        amount = float(data.get("amount_pct", data.get("amount_percent", 10)))
    except (TypeError, ValueError):
        amount = 10.0
    amount = max(1.0, min(100.0, amount))

    return Decision(
        action="trade",
        pair=pair,
        direction=direction,
        amount_pct=amount,
        reasoning=reasoning,
        source=source,
    )


# ─── Momentum fallback ───────────────────────────────────────────────────────

class MomentumOracle:
    """
    Rule-based oracle used when no LLM is configured.

    Logic:
    - Follow the 24h trend of the strongest-moving pair (or fade it when
      the agent is contrarian)
    - Size scales with risk tolerance, capped by max position size
    - Hold when nothing moves more than the noise threshold
    """

    NOISE_PCT = 0.5

    async def decide(
        self,
        config: AgentConfig,
        state: Dict[str, Any],
        snapshots: Dict[str, MarketSnapshot],
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        if state.get("trades_remaining", 1) <= 0:
            return Decision.hold("out of trades this round", source="momentum")

        candidates = [s for s in snapshots.values() if abs(s.change_pct) > self.NOISE_PCT]
        if not candidates:
            return Decision.hold("no clear edge, markets flat", source="momentum")

        snap = max(candidates, key=lambda s: abs(s.change_pct))
        direction = "buy" if snap.change_pct > 0 else "sell"
        if config.contrarian:
            direction = "sell" if direction == "buy" else "buy"

        size = min(config.max_position_pct, 5.0 + config.risk_tolerance * 2.5)
        return Decision(
            action="trade",
            pair=snap.pair,
            direction=direction,
            amount_pct=size,
            reasoning=(
                f"{snap.pair} {snap.change_pct:+.2f}% 24h; "
                f"{'fading' if config.contrarian else 'following'} the move"
            ),
            source="momentum",
        )


# ─── Claude Oracle ───────────────────────────────────────────────────────────

class ClaudeOracle:
    """
    Claude-powered decision oracle.

    Decision flow:
      1. Build system prompt from the agent config (+ memory of past rounds)
      2. Build the tick prompt from state, snapshots and purchased intel
      3. Ask the primary model, then the fallback model
      4. Parse JSON → Decision; unparseable or unavailable → hold
    """

    MODEL = "claude-haiku-4-5-20251001"
    FALLBACK_MODEL = "claude-3-5-haiku-latest"
    MAX_TOKENS = 400

    def __init__(
        self,
        api_key: str,
        model: str = MODEL,
        fallback_model: Optional[str] = FALLBACK_MODEL,
        timeout: float = 20.0,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.fallback_model = fallback_model
        self.timeout = timeout
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self._decisions_made = 0
        self._fallbacks_used = 0
        self._unavailable = 0
        logger.info(f"ClaudeOracle ready (model={model}, fallback={fallback_model})")

    def build_prompt(
        self,
        state: Dict[str, Any],
        snapshots: Dict[str, MarketSnapshot],
        context: Dict[str, Any],
    ) -> str:
        markets = json.dumps([s.to_dict() for s in snapshots.values()], indent=2)
        intel = context.get("intel")
        intel_section = ""
        if intel:
            intel_section = f"""
## Purchased Rival Intel (via x402 micropayment)
```json
{json.dumps(intel, indent=2)}
```
"""
        return f"""It is tick {state.get("tick_number", 0) + 1}. You have {state.get("trades_remaining", 0)} trades remaining this round.

## Your Portfolio
- P&L: {state.get("pnl_bps", 0) / 100:+.2f}%
- Value: ${state.get("portfolio_value", 0):,.2f}
- Positions: {json.dumps(state.get("positions", {}))}

## Market Data
```json
{markets}
```
{intel_section}
Respond ONLY with valid JSON in this exact format:
{{
  "action": "trade" | "hold" | "stop",
  "pair": "<one of your allowed pairs>",
  "direction": "buy" | "sell",
  "amount_pct": <float 1-100, percent of portfolio>,
  "reasoning": "<one sentence explanation>"
}}"""

    async def decide(
        self,
        config: AgentConfig,
        state: Dict[str, Any],
        snapshots: Dict[str, MarketSnapshot],
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        context = context or {}
        self._decisions_made += 1

        system = build_system_prompt(config)
        memory = context.get("memory")
        if memory:
            system = f"{system}\n\n{memory}"
        prompt = self.build_prompt(state, snapshots, context)

        models = [self.model] + ([self.fallback_model] if self.fallback_model else [])
        for i, model in enumerate(models):
            try:
                text = await self._call(model, system, prompt)
            except Exception as exc:
                logger.warning(f"ClaudeOracle: {model} failed ({exc})")
                continue

            if i > 0:
                self._fallbacks_used += 1
            decision = parse_decision(text, config, source=model)
            if decision is None:
                logger.warning(f"ClaudeOracle: could not parse response: {text[:100]}")
                return Decision.hold("oracle returned no decision — holding", source=model)
            return decision

        self._unavailable += 1
        return Decision.hold("oracle unavailable — holding", source="fallback")

    async def _call(self, model: str, system: str, prompt: str) -> str:
        message = await asyncio.wait_for(
            self._client.messages.create(
                model=model,
                max_tokens=self.MAX_TOKENS,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            ),
            timeout=self.timeout,
        )
        text = "".join(getattr(block, "text", "") for block in message.content)
        logger.debug(f"ClaudeOracle: raw response: {text[:200]}")
        return text

    def get_stats(self) -> dict:
        return {
            "decisions_made": self._decisions_made,
            "fallbacks_used": self._fallbacks_used,
            "unavailable": self._unavailable,
            "model": self.model,
        }


def create_oracle(api_key: str, model: str = ClaudeOracle.MODEL,
                  fallback_model: Optional[str] = ClaudeOracle.FALLBACK_MODEL,
                  timeout: float = 20.0) -> DecisionOracle:
    """Claude when a key is configured, momentum rules otherwise."""
    if api_key:
        return ClaudeOracle(api_key, model=model, fallback_model=fallback_model, timeout=timeout)
    logger.info("No ANTHROPIC_API_KEY, using momentum oracle")
    return MomentumOracle()
