#!/usr/bin/env python3
"""
One trading-agent cycle.

Order of checks per tick:
1. agent exists and is running (or the tick was forced)
2. daily-loss limit (breach pauses the agent durably)
3. stop-loss cooldown
4. stop-loss / take-profit on open positions
5. market context -> oracle decision -> validate/execute

Every collaborator failure ends the cycle with a recorded ``hold`` whose
``outcome`` names the failure; nothing here trades on missing data.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from agent_config import AgentConfig
from decision_validator import validate_and_execute
from desk_db import KV_LEDGER, KIND_AGENT, STATUS_PAUSED, STATUS_RUNNING, DeskDB
from llm_router import (
    ERROR_INVALID,
    ERROR_TIMEOUT,
    ERROR_UNCONFIGURED,
    DecisionOracle,
    DecisionRequest,
    OracleError,
)
from logging_utils import get_logger
from market_data import MarketDataProvider, fetch_market_context
from paper_engine import PaperEngine
from risk_policy import (
    cooldown_active,
    cooldown_deadline,
    daily_loss_breached,
    stop_loss_triggered,
    take_profit_triggered,
)

LOG = get_logger("agent_loop")

RECENT_DECISIONS = 10

OUTCOME_PENDING = "pending"
OUTCOME_NO_MARKET_DATA = "no_market_data"
OUTCOME_ORACLE_UNCONFIGURED = "oracle_unconfigured"
OUTCOME_ORACLE_TIMEOUT = "oracle_timeout"
OUTCOME_ORACLE_ERROR = "oracle_error"
OUTCOME_ORACLE_INVALID = "oracle_invalid_output"

CYCLE_MISSING = "missing"
CYCLE_NOT_RUNNING = "not_running"
CYCLE_DAILY_LOSS_PAUSE = "daily_loss_pause"
CYCLE_COOLDOWN = "cooldown"

_ORACLE_OUTCOMES = {
    ERROR_UNCONFIGURED: OUTCOME_ORACLE_UNCONFIGURED,
    ERROR_TIMEOUT: OUTCOME_ORACLE_TIMEOUT,
    ERROR_INVALID: OUTCOME_ORACLE_INVALID,
}


def new_engine(config: AgentConfig) -> PaperEngine:
    return PaperEngine(config.paper_balance, slippage_pct=config.slippage_simulation)


def load_engine(db: DeskDB, agent_id: str, config: AgentConfig) -> PaperEngine:
    data = db.kv_get(agent_id, KV_LEDGER)
    if isinstance(data, dict) and data:
        return PaperEngine.deserialize(data)
    LOG.warning("%s: no saved ledger, starting from config balance", agent_id)
    return new_engine(config)


def save_engine(db: DeskDB, agent_id: str, engine: PaperEngine) -> None:
    db.kv_put(agent_id, KV_LEDGER, engine.serialize())


def _portfolio(engine: PaperEngine) -> Dict[str, Any]:
    return {
        "balance": engine.balance,
        "open_positions": len(engine.open_positions),
        "daily_pnl_pct": engine.daily_pnl_pct(),
        "total_pnl_pct": engine.total_pnl_pct(),
    }


async def _check_exits(
    db: DeskDB,
    agent_id: str,
    engine: PaperEngine,
    config: AgentConfig,
    market: MarketDataProvider,
) -> None:
    for position in engine.open_positions:
        try:
            price = await market.get_price(position.pair)
        except Exception as exc:
            LOG.warning("%s: price check failed for %s: %s", agent_id, position.pair, exc)
            continue
        if price is None:
            continue

        if stop_loss_triggered(position, price, config.stop_loss_pct):
            closed = engine.stop_out_position(position.id, price)
            db.upsert_trade(closed)
            until = cooldown_deadline(config.cooldown_after_loss_minutes)
            db.set_cooldown(KIND_AGENT, agent_id, until)
            LOG.info(
                "%s: stop loss on %s PnL=%.2f%%, cooldown %.0f min",
                agent_id,
                position.pair,
                closed.pnl_pct or 0.0,
                config.cooldown_after_loss_minutes,
            )
            continue

        if take_profit_triggered(position, price, config.take_profit_pct):
            closed = engine.close_position(position.id, price, reason="Take profit triggered")
            db.upsert_trade(closed)
            LOG.info("%s: take profit on %s PnL=%.2f%%", agent_id, position.pair, closed.pnl_pct or 0.0)


def _record_hold(
    db: DeskDB,
    agent_id: str,
    *,
    reasoning: str,
    outcome: str,
    model: Optional[str],
    market_rows: Optional[List[Dict[str, Any]]] = None,
) -> str:
    return db.insert_decision(
        agent_id=agent_id,
        decision="hold",
        confidence=0.0,
        reasoning=reasoning,
        outcome=outcome,
        llm_model=model,
        market_data=market_rows,
    )


async def run_agent_cycle(
    db: DeskDB,
    agent_id: str,
    *,
    market: MarketDataProvider,
    oracle: DecisionOracle,
    force_run: bool = False,
) -> str:
    """Run one cycle for ``agent_id``; returns a short outcome tag."""
    agent = db.get_agent(agent_id)
    if agent is None:
        LOG.warning("%s: agent not found, skipping tick", agent_id)
        return CYCLE_MISSING
    if agent.status != STATUS_RUNNING and not force_run:
        return CYCLE_NOT_RUNNING

    config = AgentConfig.from_dict(agent.config)
    model = agent.llm_model or config.llm_model
    engine = load_engine(db, agent_id, config)
    try:
        if daily_loss_breached(engine, config.max_daily_loss_pct):
            LOG.warning(
                "%s: daily loss %.2f%% breached limit -%.2f%%, pausing",
                agent_id,
                engine.daily_pnl_pct(),
                config.max_daily_loss_pct,
            )
            db.update_agent_status(agent_id, STATUS_PAUSED)
            db.set_schedule_status(KIND_AGENT, agent_id, STATUS_PAUSED)
            return CYCLE_DAILY_LOSS_PAUSE

        schedule = db.get_schedule(KIND_AGENT, agent_id)
        if schedule is not None and cooldown_active(schedule.cooldown_until):
            LOG.info("%s: in cooldown for %.0fs more", agent_id, schedule.cooldown_until - time.time())
            return CYCLE_COOLDOWN

        await _check_exits(db, agent_id, engine, config, market)

        market_rows = await fetch_market_context(market, config.pairs)
        if not market_rows:
            reasoning = (
                f"No market data for any of {', '.join(config.pairs) or 'no pairs'} "
                f"on {config.chain}; holding this cycle."
            )
            LOG.warning("%s: %s", agent_id, reasoning)
            _record_hold(db, agent_id, reasoning=reasoning, outcome=OUTCOME_NO_MARKET_DATA, model=model)
            return OUTCOME_NO_MARKET_DATA

        request = DecisionRequest(
            autonomy_level=config.autonomy_level,
            portfolio=_portfolio(engine),
            market=market_rows,
            last_decisions=db.recent_decisions(agent_id, RECENT_DECISIONS),
            pairs=config.pairs,
            max_position_size_pct=config.max_position_size_pct,
            strategies=config.strategies,
            model=model,
            fallback_model=config.llm_fallback,
            allow_fallback=config.allow_fallback,
            temperature=config.temperature,
        )

        if not oracle.configured:
            reasoning = "OPENROUTER_API_KEY is not configured; holding without a model decision."
            _record_hold(
                db, agent_id, reasoning=reasoning, outcome=OUTCOME_ORACLE_UNCONFIGURED, model=model, market_rows=market_rows
            )
            return OUTCOME_ORACLE_UNCONFIGURED

        try:
            decision = await oracle.request_decision(request)
        except OracleError as exc:
            outcome = _ORACLE_OUTCOMES.get(exc.kind, OUTCOME_ORACLE_ERROR)
            LOG.warning("%s: oracle failed (%s): %s", agent_id, exc.kind, exc)
            _record_hold(
                db, agent_id, reasoning=f"LLM error: {exc}", outcome=outcome, model=model, market_rows=market_rows
            )
            return outcome
        except Exception as exc:
            LOG.exception("%s: oracle raised unexpectedly", agent_id)
            _record_hold(
                db, agent_id, reasoning=f"LLM error: {exc}", outcome=OUTCOME_ORACLE_ERROR, model=model, market_rows=market_rows
            )
            return OUTCOME_ORACLE_ERROR

        decision_id = db.insert_decision(
            agent_id=agent_id,
            decision=decision.action,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            outcome=OUTCOME_PENDING,
            llm_model=decision.model_used or model,
            llm_latency_ms=decision.latency_ms,
            llm_tokens_used=decision.tokens_used,
            market_data=market_rows,
        )
        LOG.info(
            "%s: decision %s (confidence %.2f) via %s",
            agent_id,
            decision.action,
            decision.confidence,
            decision.model_used or model,
        )

        result = validate_and_execute(
            agent_id=agent_id,
            decision=decision,
            engine=engine,
            config=config,
            market=market_rows,
        )
        for position in result.opened + result.closed:
            db.upsert_trade(position)
        db.update_decision_execution(decision_id, result.outcome, result.to_dict())
        return result.outcome
    finally:
        save_engine(db, agent_id, engine)
