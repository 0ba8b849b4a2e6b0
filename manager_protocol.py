#!/usr/bin/env python3
"""
Manager decision protocol: parse the model's reply into decisions and
apply each one through the agent lifecycle service.

Reply shape (a JSON array, possibly wrapped in reasoning/fences/prose):
    [{"action": "...", "agentId": "...", "params": {...}, "reasoning": "..."}]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agent_config import normalise_agent_model
from desk_db import STATUS_PAUSED, STATUS_RUNNING
from json_extract import extract_json_array, extract_json_object, strip_reasoning
from logging_utils import get_logger

LOG = get_logger("manager_protocol")

ACTION_CREATE = "create_agent"
ACTION_START = "start_agent"
ACTION_PAUSE = "pause_agent"
ACTION_MODIFY = "modify_agent"
ACTION_TERMINATE = "terminate_agent"
ACTION_HOLD = "hold"

VALID_ACTIONS = frozenset(
    {ACTION_CREATE, ACTION_START, ACTION_PAUSE, ACTION_MODIFY, ACTION_TERMINATE, ACTION_HOLD}
)

RAW_PREVIEW_CHARS = 500
EMPTY_REPLY_REASONING = "Holding this cycle (no structured decisions returned by model)."

# Models often echo camelCase keys; configs are snake_case.
PARAM_ALIASES = {
    "paperBalance": "paper_balance",
    "llmModel": "llm_model",
    "llmFallback": "llm_fallback",
    "allowFallback": "allow_fallback",
    "analysisInterval": "analysis_interval",
    "maxPositionSizePct": "max_position_size_pct",
    "maxOpenPositions": "max_open_positions",
    "stopLossPct": "stop_loss_pct",
    "takeProfitPct": "take_profit_pct",
    "slippageSimulation": "slippage_simulation",
    "maxDailyLossPct": "max_daily_loss_pct",
    "cooldownAfterLossMinutes": "cooldown_after_loss_minutes",
    "autonomyLevel": "autonomy_level",
    "decisionInterval": "decision_interval",
    "riskParams": "risk_params",
}


@dataclass
class ManagerDecision:
    action: str
    agent_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    unparsed: bool = False


def normalise_params(params: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        out[PARAM_ALIASES.get(key, key)] = value
    return out


def _coerce(item: Any) -> Optional[ManagerDecision]:
    if not isinstance(item, dict):
        return None
    action = item.get("action")
    if not isinstance(action, str) or action not in VALID_ACTIONS:
        return None
    agent_id = item.get("agentId", item.get("agent_id"))
    params = item.get("params")
    reasoning = item.get("reasoning")
    return ManagerDecision(
        action=action,
        agent_id=str(agent_id) if agent_id not in (None, "") else None,
        params=normalise_params(params) if isinstance(params, dict) else {},
        reasoning=reasoning if isinstance(reasoning, str) else "",
    )


def _coerce_all(items: List[Any]) -> List[ManagerDecision]:
    return [d for d in (_coerce(item) for item in items) if d is not None]


def parse_manager_decisions(raw: str) -> List[ManagerDecision]:
    """Decisions from the model reply; never empty.

    Unknown actions are dropped. If nothing usable remains, a single
    ``hold`` carrying a preview of the raw reply is returned.
    """
    cleaned = strip_reasoning(raw or "")
    decisions = _coerce_all(extract_json_array(cleaned) or [])
    if not decisions:
        # The first "[" may belong to a nested list inside a single object.
        obj = extract_json_object(cleaned)
        decisions = _coerce_all([obj] if obj is not None else [])
    if decisions:
        return decisions

    preview = (raw or "").strip()[:RAW_PREVIEW_CHARS]
    return [ManagerDecision(action=ACTION_HOLD, reasoning=preview or EMPTY_REPLY_REASONING, unparsed=True)]


def _ok(detail: str) -> Dict[str, Any]:
    return {"success": True, "detail": detail}


def _fail(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error}


def execute_manager_action(decision: ManagerDecision, *, manager_id: str, service: Any) -> Dict[str, Any]:
    """Apply one decision. Returns ``{success, detail|error}``; never raises.

    ``service`` is the lifecycle service (``desk_service.DeskService``).
    """
    try:
        return _execute(decision, manager_id=manager_id, service=service)
    except Exception as exc:
        LOG.exception("manager %s: %s failed", manager_id, decision.action)
        return _fail(f"{decision.action} failed: {exc}")


def _execute(decision: ManagerDecision, *, manager_id: str, service: Any) -> Dict[str, Any]:
    action = decision.action
    agent_id = decision.agent_id

    if action == ACTION_HOLD:
        if decision.unparsed:
            return _ok("unparsed_response")
        return _ok("No action taken")

    if action == ACTION_CREATE:
        if not decision.params:
            return _fail("create_agent requires params")
        params = dict(decision.params)
        name = str(params.pop("name", "") or "Manager-created Agent")
        record = service.create_agent(name=name, params=params, manager_id=manager_id, start=True)
        return _ok(f"Agent {record.id} created and started")

    if action not in VALID_ACTIONS:
        return _fail(f"Unknown action: {action}")
    if not agent_id:
        return _fail(f"{action} requires agentId")
    agent = service.db.get_agent(agent_id)
    if agent is None:
        return _fail(f"Agent {agent_id} not found")

    if action == ACTION_START:
        if agent.status == STATUS_RUNNING:
            return _ok(f"Agent {agent_id} already running")
        service.start_agent(agent_id)
        return _ok(f"Agent {agent_id} started")

    if action == ACTION_PAUSE:
        if agent.status == STATUS_PAUSED:
            return _ok(f"Agent {agent_id} already paused")
        service.pause_agent(agent_id)
        return _ok(f"Agent {agent_id} paused")

    if action == ACTION_TERMINATE:
        service.terminate_agent(agent_id)
        return _ok(f"Agent {agent_id} terminated")

    if action == ACTION_MODIFY:
        if not decision.params:
            return _fail("modify_agent requires agentId and params")
        service.modify_agent(agent_id, decision.params)
        return _ok(f"Agent {agent_id} modified")

    return _fail(f"Unknown action: {action}")
