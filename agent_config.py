#!/usr/bin/env python3
"""
Agent / manager configuration documents.

Configs are stored as open JSON dicts (unknown keys survive a
modify/merge); ``AgentConfig`` / ``ManagerConfig`` are typed views used by
the decision loops.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_AGENT_MODEL = "nvidia/nemotron-3-nano-30b-a3b:free"

# Free OpenRouter models only; the manager must never move an agent onto a paid model.
ALLOWED_AGENT_MODELS = frozenset(
    {
        "nvidia/nemotron-3-nano-30b-a3b:free",
        "stepfun/step-3.5-flash:free",
        "nvidia/nemotron-nano-9b-v2:free",
        "arcee-ai/trinity-large-preview:free",
    }
)

AUTONOMY_LEVELS = ("full", "guided", "strict")

INTERVAL_SECONDS = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}
DEFAULT_INTERVAL = "1h"


def interval_to_seconds(interval: Optional[str]) -> int:
    return INTERVAL_SECONDS.get(str(interval or DEFAULT_INTERVAL), INTERVAL_SECONDS[DEFAULT_INTERVAL])


def normalise_agent_model(requested: Any) -> str:
    if not isinstance(requested, str):
        return DEFAULT_AGENT_MODEL
    return requested if requested in ALLOWED_AGENT_MODELS else DEFAULT_AGENT_MODEL


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_bool(value: Any) -> bool:
    """Only explicit true values count; "false", "no" and junk are False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    return False


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _as_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(default)


@dataclass
class AgentConfig:
    name: str = "Paper Agent"
    autonomy_level: str = "guided"
    llm_model: str = DEFAULT_AGENT_MODEL
    llm_fallback: str = DEFAULT_AGENT_MODEL
    allow_fallback: bool = False
    temperature: float = 0.7
    pairs: List[str] = field(default_factory=lambda: ["WETH/USDC"])
    dexes: List[str] = field(default_factory=lambda: ["aerodrome", "uniswap-v3"])
    strategies: List[str] = field(default_factory=lambda: ["combined"])
    analysis_interval: str = DEFAULT_INTERVAL
    paper_balance: float = 10000.0
    max_position_size_pct: float = 5.0
    max_open_positions: int = 3
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 7.0
    slippage_simulation: float = 0.3  # percent
    max_daily_loss_pct: float = 10.0
    cooldown_after_loss_minutes: float = 30.0
    chain: str = "base"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        base = cls()
        d = data or {}
        autonomy = str(d.get("autonomy_level") or base.autonomy_level).lower()
        return cls(
            name=str(d.get("name") or base.name),
            autonomy_level=autonomy if autonomy in AUTONOMY_LEVELS else "guided",
            llm_model=str(d.get("llm_model") or base.llm_model),
            llm_fallback=str(d.get("llm_fallback") or base.llm_fallback),
            allow_fallback=_as_bool(d.get("allow_fallback", base.allow_fallback)),
            temperature=_as_float(d.get("temperature"), base.temperature),
            pairs=_as_list(d.get("pairs"), base.pairs),
            dexes=_as_list(d.get("dexes"), base.dexes),
            strategies=_as_list(d.get("strategies"), base.strategies),
            analysis_interval=str(d.get("analysis_interval") or base.analysis_interval),
            paper_balance=_as_float(d.get("paper_balance"), base.paper_balance),
            max_position_size_pct=_as_float(d.get("max_position_size_pct"), base.max_position_size_pct),
            max_open_positions=_as_int(d.get("max_open_positions"), base.max_open_positions),
            stop_loss_pct=_as_float(d.get("stop_loss_pct"), base.stop_loss_pct),
            take_profit_pct=_as_float(d.get("take_profit_pct"), base.take_profit_pct),
            slippage_simulation=_as_float(d.get("slippage_simulation"), base.slippage_simulation),
            max_daily_loss_pct=_as_float(d.get("max_daily_loss_pct"), base.max_daily_loss_pct),
            cooldown_after_loss_minutes=_as_float(
                d.get("cooldown_after_loss_minutes"), base.cooldown_after_loss_minutes
            ),
            chain=str(d.get("chain") or base.chain),
        )


@dataclass
class ManagerConfig:
    llm_model: str = DEFAULT_AGENT_MODEL
    temperature: float = 0.7
    decision_interval: str = DEFAULT_INTERVAL
    max_total_drawdown: float = 0.2
    max_agents: int = 3
    max_correlated_positions: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerConfig":
        d = data or {}
        risk = d.get("risk_params") if isinstance(d.get("risk_params"), dict) else {}
        base = cls()
        interval = str(d.get("decision_interval") or base.decision_interval)
        return cls(
            llm_model=normalise_agent_model(d.get("llm_model")),
            temperature=_as_float(d.get("temperature"), base.temperature),
            decision_interval=interval if interval in ("1h", "4h", "1d") else DEFAULT_INTERVAL,
            max_total_drawdown=_as_float(risk.get("max_total_drawdown"), base.max_total_drawdown),
            max_agents=_as_int(risk.get("max_agents"), base.max_agents),
            max_correlated_positions=_as_int(risk.get("max_correlated_positions"), base.max_correlated_positions),
        )


def build_agent_config(defaults: Dict[str, Any], params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill a new agent config document from YAML defaults + caller params."""
    cfg: Dict[str, Any] = dict(defaults or {})
    for key, value in (params or {}).items():
        if value is not None:
            cfg[key] = value
    cfg["llm_model"] = normalise_agent_model(cfg.get("llm_model"))
    cfg["llm_fallback"] = normalise_agent_model(cfg.get("llm_fallback"))
    if str(cfg.get("analysis_interval") or "") not in INTERVAL_SECONDS:
        cfg["analysis_interval"] = DEFAULT_INTERVAL
    return cfg
