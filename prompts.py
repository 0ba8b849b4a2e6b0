#!/usr/bin/env python3
"""System and analysis prompts for the trading agents and the manager."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from agent_config import ALLOWED_AGENT_MODELS, DEFAULT_AGENT_MODEL

FULL_AUTONOMY_PROMPT = """You are an autonomous crypto trading agent operating on Base chain DEXes.
You have full authority to:
- Choose which pairs to analyze from your allowed list
- Select trading strategies dynamically
- Adjust position sizes within bounds
- Suggest configuration tweaks for better performance

Analyze the provided market data, portfolio state, and recent decision history.
Make a trading decision and explain your reasoning clearly.

If you see a pattern that your current strategy config doesn't cover, include
a "config_suggestion" in your reasoning field.

Rules:
- Only trade pairs in your allowed list
- Never exceed max position size percentage
- Always include confidence (0.0-1.0) reflecting conviction
- If uncertain, hold is always a valid choice"""

GUIDED_PROMPT = """You are a guided crypto trading agent on Base chain.
You analyze markets and make recommendations within defined bounds.

You MUST stay within these constraints:
- Only trade pairs from the provided allowed list
- Position size must be within the configured min/max range
- Only use the configured strategies

Analyze the market data and current portfolio.
Recommend a trade action. Explain your reasoning clearly.
If the best action is to hold, say so with confidence.

Be conservative: a missed trade is better than a bad trade.
Confidence below 0.6 means hold."""

STRICT_RULES_PROMPT = """You are a rule-following trading analysis agent.
Your ONLY job is to evaluate technical indicators and report signals.
You do NOT decide trades; the system executes based on rules.

Evaluate the provided indicator values against the active strategy rules.
Report which rules are triggered and with what confidence.

Be precise and systematic. Do not add opinions or speculation."""

DECISION_FORMAT = """Respond with ONLY a JSON object, no markdown:
{"action": "buy|sell|hold|close", "confidence": 0.0-1.0, "reasoning": "<why>",
 "targetPair": "<pair from allowed list, optional>", "suggestedPositionSizePct": <number, optional>}"""


def system_prompt_for(autonomy_level: str) -> str:
    if autonomy_level == "full":
        return FULL_AUTONOMY_PROMPT
    if autonomy_level == "strict":
        return STRICT_RULES_PROMPT
    return GUIDED_PROMPT


def _signed_pct(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


def build_analysis_prompt(
    *,
    portfolio: Dict[str, Any],
    market: Sequence[Dict[str, Any]],
    last_decisions: Sequence[Dict[str, Any]],
    pairs: Sequence[str],
    max_position_size_pct: float,
    strategies: Sequence[str],
) -> str:
    lines: List[str] = [
        "## Portfolio State",
        f"Balance: ${float(portfolio.get('balance', 0.0)):.2f} USDC",
        f"Open positions: {int(portfolio.get('open_positions', 0))}",
        f"Daily P&L: {_signed_pct(portfolio.get('daily_pnl_pct'))}",
        f"Total P&L: {_signed_pct(portfolio.get('total_pnl_pct'))}",
        "",
        "## Market Data",
    ]
    for m in market:
        change = m.get("price_change") or {}
        volume = m.get("volume_24h")
        liquidity = m.get("liquidity")
        lines.append(f"### {m.get('pair')}")
        lines.append(f"Price: ${float(m.get('price_usd') or 0.0):.6f}")
        lines.append(f"24h change: {_signed_pct(change.get('h24'))}")
        lines.append(f"1h change: {_signed_pct(change.get('h1'))}")
        lines.append(f"Volume 24h: {f'${volume / 1_000:.1f}K' if volume is not None else 'N/A'}")
        lines.append(f"Liquidity: {f'${liquidity / 1_000_000:.2f}M' if liquidity is not None else 'N/A'}")
        if m.get("indicators"):
            lines.append(f"Indicators: {json.dumps(m['indicators'], indent=2)}")
        lines.append("")

    recent = list(last_decisions)[:5]
    lines.append(f"## Recent Decisions (last {len(recent)})")
    if recent:
        for d in recent:
            created = str(d.get("created_at") or "")[:16]
            lines.append(f"- {created}: {d.get('decision')} (confidence: {float(d.get('confidence') or 0.0):.2f})")
    else:
        lines.append("No recent decisions")

    lines.extend(
        [
            "",
            "## Constraints",
            f"Allowed pairs: {', '.join(pairs)}",
            f"Max position size: {max_position_size_pct}% of balance",
            f"Active strategies: {', '.join(strategies)}",
            "",
            "Based on the above data, what is your trading decision?",
            "",
            DECISION_FORMAT,
        ]
    )
    return "\n".join(lines)


def _fmt_optional(value: Optional[float], fmt: str, scale: float = 1.0, suffix: str = "") -> str:
    if value is None:
        return "N/A"
    return f"{value * scale:{fmt}}{suffix}"


def build_manager_prompt(
    *,
    agents: Sequence[Dict[str, Any]],
    market: Sequence[Dict[str, Any]],
    memory: Dict[str, Any],
    risk: Dict[str, Any],
) -> str:
    summaries: List[str] = []
    for a in agents:
        cfg = a.get("config") or {}
        perf = a.get("performance") or {}
        trades = a.get("recent_trades") or []
        trade_txt = ", ".join(
            f"{t.get('side')} {t.get('pair')} PnL="
            + (f"{t['pnl_pct']:.2f}%" if t.get("pnl_pct") is not None else "open")
            for t in trades
        ) or "none"
        summaries.append(
            f"Agent: {a.get('name')} (id: {a.get('id')})\n"
            f"  Status: {a.get('status')} | Pairs: {', '.join(cfg.get('pairs') or [])} | "
            f"Model: {cfg.get('llm_model')} temp={cfg.get('temperature')}\n"
            f"  PnL: {float(perf.get('total_pnl_pct') or 0.0):.2f}% | "
            f"WinRate: {float(perf.get('win_rate') or 0.0) * 100:.1f}% | "
            f"Trades: {int(perf.get('total_trades') or 0)} | "
            f"Sharpe: {_fmt_optional(perf.get('sharpe_ratio'), '.2f')} | "
            f"MaxDD: {_fmt_optional(perf.get('max_drawdown'), '.1f', suffix='%')}\n"
            f"  Balance: ${float(perf.get('balance') or 0.0):.2f}\n"
            f"  Recent trades: {trade_txt}"
        )

    if market:
        market_txt = "\n".join(
            f"{m.get('pair')}: ${m.get('price_usd')} "
            f"(1h: {(m.get('price_change') or {}).get('h1', 'N/A')}%, "
            f"24h: {(m.get('price_change') or {}).get('h24', 'N/A')}%)"
            for m in market
        )
    else:
        market_txt = "No market data available"

    hypotheses = memory.get("hypotheses") or []
    if hypotheses:
        memory_txt = "\n".join(
            f"- \"{h.get('description')}\" (tested: {h.get('tested_at')}, "
            f"outcome: {h.get('outcome')}, valid: {h.get('still_valid')})"
            for h in hypotheses
        )
    else:
        memory_txt = "No prior hypotheses."
    regime = memory.get("market_regime")
    if isinstance(regime, dict) and regime.get("regime"):
        memory_txt += f"\nLast detected regime: {regime.get('regime')} ({regime.get('reasoning', '')})"

    risk_txt = (
        f"MaxDrawdown: {float(risk.get('max_total_drawdown', 0.2)) * 100:.0f}%, "
        f"MaxAgents: {risk.get('max_agents')}, "
        f"MaxCorrelated: {risk.get('max_correlated_positions')}"
    )
    agents_txt = "\n\n".join(summaries) or "No agents yet."
    models_txt = "\n".join(f'- "{m}"' for m in sorted(ALLOWED_AGENT_MODELS))

    return f"""You are an Agent Manager overseeing a portfolio of paper trading agents on Base chain DEXes.

## Managed Agents ({len(agents)})
{agents_txt}

## Current Market Conditions
{market_txt}

## Memory & Hypotheses
{memory_txt}

## Risk Limits
{risk_txt}

## Model Cost Constraints
You must use only the following free OpenRouter models when creating or modifying agents:
{models_txt}

Never propose or use any paid or other model IDs. If unsure, default to "{DEFAULT_AGENT_MODEL}".

## Instructions
Evaluate each agent's performance and decide what actions to take this cycle.

Valid actions:
- "create_agent": spawn a new agent (provide params: {{ name, pairs, llm_model, temperature, analysis_interval, strategies, paper_balance }})
- "start_agent": start a stopped or paused agent (provide agentId)
- "pause_agent": pause an underperforming agent (provide agentId)
- "modify_agent": change agent parameters (provide agentId + params)
- "terminate_agent": permanently stop an agent (provide agentId)
- "hold": no action needed (provide agentId, or omit for portfolio-level hold)

IMPORTANT: Respond with ONLY a valid JSON array, no markdown, no explanation.
Each element: {{ "action": "<action>", "agentId": "<id or omit>", "params": {{<optional>}}, "reasoning": "<why>" }}

Example:
[
  {{ "action": "hold", "agentId": "agent_001", "reasoning": "Strong performance, no changes needed" }},
  {{ "action": "pause_agent", "agentId": "agent_002", "reasoning": "Drawdown exceeds 15%" }}
]"""
