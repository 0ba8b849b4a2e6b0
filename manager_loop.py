#!/usr/bin/env python3
"""One manager evaluation cycle over its linked agents."""

from __future__ import annotations

import json
from typing import Any, Dict, List

from agent_config import AgentConfig, ManagerConfig
from desk_db import KV_MANAGER_MEMORY, STATUS_RUNNING, DeskDB, utc_now_iso
from llm_router import DecisionOracle, OracleError
from logging_utils import get_logger
from manager_protocol import execute_manager_action, parse_manager_decisions
from market_data import MarketDataProvider, fetch_market_context
from prompts import build_manager_prompt

LOG = get_logger("manager_loop")

RECENT_TRADES = 10
MAX_MARKET_PAIRS = 5


def default_memory() -> Dict[str, Any]:
    return {
        "hypotheses": [],
        "parameter_history": [],
        "market_regime": None,
        "last_evaluation_at": "",
    }


def build_agent_snapshots(db: DeskDB, manager_id: str) -> List[Dict[str, Any]]:
    """Read-only view of each linked agent: config, latest metrics, recent trades."""
    snapshots: List[Dict[str, Any]] = []
    for agent in db.list_agents(manager_id=manager_id):
        config = AgentConfig.from_dict(agent.config)
        perf = db.latest_performance_snapshot(agent.id) or {}
        snapshots.append(
            {
                "id": agent.id,
                "name": agent.name,
                "status": agent.status,
                "config": {
                    "pairs": config.pairs,
                    "strategies": config.strategies,
                    "llm_model": agent.llm_model,
                    "temperature": config.temperature,
                    "analysis_interval": config.analysis_interval,
                    "max_position_size_pct": config.max_position_size_pct,
                    "paper_balance": config.paper_balance,
                },
                "performance": {
                    "balance": perf.get("balance", config.paper_balance),
                    "total_pnl_pct": perf.get("total_pnl_pct", 0.0),
                    "win_rate": perf.get("win_rate", 0.0),
                    "total_trades": perf.get("total_trades", 0),
                    "sharpe_ratio": perf.get("sharpe_ratio"),
                    "max_drawdown": perf.get("max_drawdown"),
                },
                "recent_trades": db.recent_trades(agent.id, RECENT_TRADES),
            }
        )
    return snapshots


def _union_pairs(snapshots: List[Dict[str, Any]]) -> List[str]:
    seen: List[str] = []
    for snap in snapshots:
        for pair in snap["config"]["pairs"]:
            if pair not in seen:
                seen.append(pair)
    return seen[:MAX_MARKET_PAIRS]


async def run_manager_cycle(
    db: DeskDB,
    manager_id: str,
    *,
    service: Any,
    market: MarketDataProvider,
    oracle: DecisionOracle,
    force_run: bool = False,
) -> int:
    """Run one cycle; returns the number of decisions executed."""
    manager = db.get_manager(manager_id)
    if manager is None:
        LOG.warning("manager %s not found", manager_id)
        return 0
    if manager.status != STATUS_RUNNING and not force_run:
        LOG.info("manager %s not running (status=%s), skipping", manager_id, manager.status)
        return 0

    config = ManagerConfig.from_dict(manager.config)
    snapshots = build_agent_snapshots(db, manager_id)
    market_rows = await fetch_market_context(market, _union_pairs(snapshots), with_indicators=False)

    memory = db.kv_get(manager_id, KV_MANAGER_MEMORY)
    if not isinstance(memory, dict):
        memory = default_memory()

    prompt = build_manager_prompt(
        agents=snapshots,
        market=market_rows,
        memory=memory,
        risk={
            "max_total_drawdown": config.max_total_drawdown,
            "max_agents": config.max_agents,
            "max_correlated_positions": config.max_correlated_positions,
        },
    )

    if not oracle.configured:
        LOG.warning("manager %s: OPENROUTER_API_KEY not set, holding", manager_id)
        raw = json.dumps([{"action": "hold", "reasoning": "No API key configured"}])
    else:
        try:
            raw = await oracle.request_freeform_text(prompt, model=config.llm_model, temperature=config.temperature)
        except OracleError as exc:
            LOG.error("manager %s: LLM error (%s): %s", manager_id, exc.kind, exc)
            raw = json.dumps([{"action": "hold", "reasoning": f"LLM error: {exc}"}])
        except Exception as exc:
            LOG.exception("manager %s: oracle raised unexpectedly", manager_id)
            raw = json.dumps([{"action": "hold", "reasoning": f"LLM error: {exc}"}])

    decisions = parse_manager_decisions(raw)
    if decisions[0].unparsed:
        LOG.warning("manager %s: no valid decisions parsed, raw preview: %s", manager_id, decisions[0].reasoning)

    for decision in decisions:
        result = execute_manager_action(decision, manager_id=manager_id, service=service)
        db.insert_manager_log(
            manager_id=manager_id,
            action=decision.action,
            agent_id=decision.agent_id,
            reasoning=decision.reasoning,
            result=result,
        )
        LOG.info("manager %s: %s -> %s", manager_id, decision.action, json.dumps(result))

    memory = dict(memory)
    memory["last_evaluation_at"] = utc_now_iso()
    db.kv_put(manager_id, KV_MANAGER_MEMORY, memory)
    LOG.info("manager %s: cycle complete, %d decisions", manager_id, len(decisions))
    return len(decisions)
