#!/usr/bin/env python3
"""Turn a proposed trade decision into ledger operations (or a rejection)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from agent_config import AgentConfig
from llm_router import TradeDecision
from paper_engine import LedgerError, PaperEngine, Position

LOG = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.65
DEFAULT_POSITION_SIZE_PCT = 10.0

OUTCOME_HOLD = "hold"
OUTCOME_OPENED = "opened"
OUTCOME_CLOSED = "closed"
OUTCOME_REJECTED = "rejected"
OUTCOME_NOOP = "noop"


@dataclass
class ExecutionResult:
    outcome: str
    detail: str = ""
    reason: Optional[str] = None
    opened: List[Position] = field(default_factory=list)
    closed: List[Position] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "detail": self.detail,
            "reason": self.reason,
            "opened": [p.id for p in self.opened],
            "closed": [p.id for p in self.closed],
            "errors": list(self.errors),
        }


def resolve_position_size_pct(suggested_pct: Optional[float], max_position_size_pct: float) -> float:
    pct = DEFAULT_POSITION_SIZE_PCT if suggested_pct is None else float(suggested_pct)
    return min(pct, float(max_position_size_pct))


def _price_for(market: Sequence[Dict[str, Any]], pair: str) -> float:
    for m in market:
        if m.get("pair") == pair:
            return float(m.get("price_usd") or 0.0)
    return 0.0


def _execute_open(
    agent_id: str,
    decision: TradeDecision,
    engine: PaperEngine,
    config: AgentConfig,
    market: Sequence[Dict[str, Any]],
) -> ExecutionResult:
    if decision.confidence < MIN_CONFIDENCE:
        return ExecutionResult(
            OUTCOME_REJECTED,
            detail=f"confidence {decision.confidence:.2f} below {MIN_CONFIDENCE:.2f}",
            reason="low_confidence",
        )
    open_count = len(engine.open_positions)
    if open_count >= config.max_open_positions:
        return ExecutionResult(
            OUTCOME_REJECTED,
            detail=f"{open_count} open positions (max {config.max_open_positions})",
            reason="max_open_positions",
        )

    pair = decision.target_pair or (config.pairs[0] if config.pairs else "")
    price = _price_for(market, pair)
    if price <= 0:
        return ExecutionResult(OUTCOME_REJECTED, detail=f"No price data for {pair}", reason="no_price")

    size_pct = resolve_position_size_pct(decision.suggested_position_size_pct, config.max_position_size_pct)
    amount_usd = engine.balance * size_pct / 100.0
    try:
        position = engine.open_position(
            agent_id=agent_id,
            pair=pair,
            dex=config.dexes[0] if config.dexes else "aerodrome",
            side=decision.action,
            price=price,
            amount_usd=amount_usd,
            max_position_size_pct=config.max_position_size_pct,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            strategy_used=config.strategies[0] if config.strategies else "combined",
            slippage_pct=config.slippage_simulation,
        )
    except LedgerError as exc:
        LOG.warning("%s: open %s %s rejected: %s", agent_id, decision.action, pair, exc)
        return ExecutionResult(OUTCOME_REJECTED, detail=str(exc), reason=exc.reason)

    LOG.info(
        "%s: opened %s %s $%.2f @ $%s",
        agent_id,
        decision.action,
        pair,
        amount_usd,
        price,
    )
    return ExecutionResult(OUTCOME_OPENED, detail=f"{decision.action} {pair} ${amount_usd:.2f}", opened=[position])


def _execute_close_all(
    agent_id: str,
    decision: TradeDecision,
    engine: PaperEngine,
    market: Sequence[Dict[str, Any]],
) -> ExecutionResult:
    positions = engine.open_positions
    if not positions:
        return ExecutionResult(OUTCOME_NOOP, detail="close requested with no open positions")

    result = ExecutionResult(OUTCOME_CLOSED)
    for position in positions:
        try:
            price = _price_for(market, position.pair)
            if price <= 0:
                raise ValueError(f"no price data for {position.pair}")
            closed = engine.close_position(
                position.id,
                price,
                confidence=decision.confidence,
                reason="Closed by decision",
            )
        except Exception as exc:
            LOG.warning("%s: failed to close %s: %s", agent_id, position.id, exc)
            result.errors.append(f"{position.id}: {exc}")
            continue
        result.closed.append(closed)
        LOG.info("%s: closed %s PnL=%.2f%%", agent_id, position.pair, closed.pnl_pct or 0.0)

    result.detail = f"closed {len(result.closed)}/{len(positions)} positions"
    if not result.closed:
        result.outcome = OUTCOME_REJECTED
        result.reason = "close_failed"
    return result


def validate_and_execute(
    *,
    agent_id: str,
    decision: TradeDecision,
    engine: PaperEngine,
    config: AgentConfig,
    market: Sequence[Dict[str, Any]],
) -> ExecutionResult:
    """Apply ``decision`` to ``engine``. Never raises for rejections."""
    if decision.action in ("buy", "sell"):
        return _execute_open(agent_id, decision, engine, config, market)
    if decision.action == "close":
        return _execute_close_all(agent_id, decision, engine, market)
    return ExecutionResult(OUTCOME_HOLD, detail="hold")
