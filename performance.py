#!/usr/bin/env python3
"""Per-agent performance metrics and snapshots."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, Optional

from agent_config import AgentConfig
from desk_db import KV_LEDGER, DeskDB
from logging_utils import get_logger

LOG = get_logger("performance")

MIN_TRADES_SHARPE = 5
MIN_TRADES_DRAWDOWN = 2


def compute_metrics(
    closed: Iterable[Dict[str, Any]],
    initial_balance: float,
    balance: float,
) -> Dict[str, Any]:
    """Metrics over closed trades (oldest first).

    sharpe_ratio is mean/stdev of per-trade pnl_pct (no risk-free rate);
    max_drawdown is peak-to-trough of the cumulative pnl_pct curve.
    Both are None until there are enough trades to mean anything.
    """
    pnls = [float(t.get("pnl_pct") or 0.0) for t in closed]
    n = len(pnls)
    wins = sum(1 for p in pnls if p > 0)
    total_pnl_pct = (balance - initial_balance) / initial_balance * 100 if initial_balance else 0.0

    sharpe: Optional[float] = None
    if n >= MIN_TRADES_SHARPE:
        mean = sum(pnls) / n
        std = math.sqrt(sum((p - mean) ** 2 for p in pnls) / n)
        sharpe = mean / std if std > 0 else 0.0

    max_dd: Optional[float] = None
    if n >= MIN_TRADES_DRAWDOWN:
        peak = 0.0
        cum = 0.0
        max_dd = 0.0
        for p in pnls:
            cum += p
            if cum > peak:
                peak = cum
            if peak - cum > max_dd:
                max_dd = peak - cum

    return {
        "balance": float(balance),
        "total_pnl_pct": total_pnl_pct,
        "win_rate": wins / n if n else 0.0,
        "total_trades": n,
        "sharpe_ratio": sharpe,
        "max_drawdown": max_dd,
    }


def _current_balance(db: DeskDB, agent_id: str, config: AgentConfig, closed: list) -> float:
    ledger = db.kv_get(agent_id, KV_LEDGER)
    if isinstance(ledger, dict) and "balance" in ledger:
        balance = float(ledger["balance"])
        # Cash balance excludes open notional; add it back at cost.
        for pos in ledger.get("positions") or []:
            balance += float(pos.get("amount_usd") or 0.0)
        return balance
    return config.paper_balance + sum(float(t.get("pnl_usd") or 0.0) for t in closed)


def snapshot_agent(db: DeskDB, agent_id: str) -> Optional[Dict[str, Any]]:
    """Compute and persist one snapshot. Returns the metrics, or None if the agent is gone."""
    agent = db.get_agent(agent_id)
    if agent is None:
        return None
    config = AgentConfig.from_dict(agent.config)
    closed = db.closed_trades(agent_id)
    metrics = compute_metrics(closed, config.paper_balance, _current_balance(db, agent_id, config, closed))
    db.insert_performance_snapshot(agent_id, metrics)
    return metrics


def snapshot_all_agents(db: DeskDB) -> int:
    saved = 0
    for agent in db.list_agents():
        try:
            if snapshot_agent(db, agent.id) is not None:
                saved += 1
        except Exception:
            LOG.exception("Snapshot failed for agent %s", agent.id)
    LOG.info("Saved snapshots for %d agents", saved)
    return saved
