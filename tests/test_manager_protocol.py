#!/usr/bin/env python3
"""Manager reply parsing and action execution."""

import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent_config import DEFAULT_AGENT_MODEL
from config_env import DEFAULT_CONFIG
from desk_db import DeskDB
from desk_service import DeskService
from json_extract import find_closing_bracket, strip_reasoning
from llm_router import DecisionOracle
from manager_protocol import (
    ACTION_HOLD,
    EMPTY_REPLY_REASONING,
    ManagerDecision,
    execute_manager_action,
    parse_manager_decisions,
)
from market_data import MarketDataProvider


class _NoMarket(MarketDataProvider):
    async def search_instrument(self, label):
        return None


class _NoOracle(DecisionOracle):
    @property
    def configured(self) -> bool:
        return False

    async def request_decision(self, request):
        raise AssertionError("not expected")

    async def request_freeform_text(self, prompt, *, model, temperature=None):
        raise AssertionError("not expected")


def _service() -> DeskService:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return DeskService(DeskDB(db_path), market=_NoMarket(), oracle=_NoOracle(), config=DEFAULT_CONFIG)


def test_strip_reasoning_drops_think_and_fences() -> None:
    text = "<think>should I [pause]?</think>\n```json\n[{\"action\": \"hold\"}]\n```"
    assert strip_reasoning(text) == "[{\"action\": \"hold\"}]"


def test_bracket_matcher_ignores_brackets_in_strings() -> None:
    text = '[{"reasoning": "range [1, 2] broke ]"}, {"action": "hold"}] trailing ]'
    end = find_closing_bracket(text, 0)
    assert text[end + 1 :] == " trailing ]"


def test_parse_with_think_block_and_prose() -> None:
    raw = (
        "<think>agent_002 is down [a lot]</think>Here is my plan:\n"
        '[{"action": "pause_agent", "agentId": "agent_002", "reasoning": "Drawdown > 15%"},'
        ' {"action": "hold", "agentId": "agent_001"}]\nThanks!'
    )
    decisions = parse_manager_decisions(raw)
    assert [d.action for d in decisions] == ["pause_agent", "hold"]
    assert decisions[0].agent_id == "agent_002"
    assert decisions[0].reasoning == "Drawdown > 15%"
    assert decisions[1].reasoning == ""


def test_parse_single_object_is_wrapped() -> None:
    decisions = parse_manager_decisions('Decision: {"action": "start_agent", "agentId": 7, "params": "x"}')
    assert len(decisions) == 1
    assert decisions[0].agent_id == "7"
    assert decisions[0].params == {}


def test_parse_single_object_with_nested_list_param() -> None:
    raw = '{"action": "create_agent", "params": {"name": "x", "pairs": ["WETH/USDC"]}, "reasoning": "diversify"}'
    decisions = parse_manager_decisions(raw)
    assert [d.action for d in decisions] == ["create_agent"]
    assert decisions[0].params["pairs"] == ["WETH/USDC"]
    assert decisions[0].reasoning == "diversify"
    assert decisions[0].unparsed is False


def test_parse_single_object_with_brackets_in_strings() -> None:
    raw = 'Plan: {"action": "pause_agent", "agentId": "agent_003", "reasoning": "pnl in [-20, -15] band ]"}'
    decisions = parse_manager_decisions(raw)
    assert [d.action for d in decisions] == ["pause_agent"]
    assert decisions[0].agent_id == "agent_003"
    assert decisions[0].reasoning == "pnl in [-20, -15] band ]"


def test_parse_drops_unknown_actions_and_normalises_params() -> None:
    raw = (
        '[{"action": "delete_everything"},'
        ' {"action": "create_agent", "params": {"llmModel": "openai/gpt-4o", "paperBalance": 500}}]'
    )
    decisions = parse_manager_decisions(raw)
    assert [d.action for d in decisions] == ["create_agent"]
    assert decisions[0].params == {"llm_model": "openai/gpt-4o", "paper_balance": 500}


def test_prose_only_becomes_hold_with_preview() -> None:
    raw = "I think everything looks fine. " * 40
    decisions = parse_manager_decisions(raw)
    assert len(decisions) == 1
    assert decisions[0].action == ACTION_HOLD
    assert decisions[0].unparsed is True
    assert decisions[0].reasoning == raw.strip()[:500]


def test_empty_reply_becomes_hold_with_default_reasoning() -> None:
    decisions = parse_manager_decisions("")
    assert decisions[0].reasoning == EMPTY_REPLY_REASONING


def test_create_agent_with_disallowed_model_gets_default_and_starts() -> None:
    service = _service()
    manager = service.create_manager(name="mgr")
    decision = ManagerDecision(
        action="create_agent",
        params={"name": "Scout", "llm_model": "openai/gpt-4o", "pairs": ["WETH/USDC"]},
    )
    result = execute_manager_action(decision, manager_id=manager.id, service=service)
    assert result["success"] is True

    agents = service.db.list_agents(manager_id=manager.id)
    assert len(agents) == 1
    agent = agents[0]
    assert agent.name == "Scout"
    assert agent.llm_model == DEFAULT_AGENT_MODEL
    assert agent.config["llm_model"] == DEFAULT_AGENT_MODEL
    assert agent.status == "running"
    assert service.db.get_schedule("agent", agent.id).status == "running"


def test_modify_agent_merges_and_constrains_model() -> None:
    service = _service()
    agent = service.create_agent(name="a", params={"temperature": 0.5})
    decision = ManagerDecision(
        action="modify_agent",
        agent_id=agent.id,
        params={"llm_model": "anthropic/claude-opus", "temperature": 0.2},
    )
    result = execute_manager_action(decision, manager_id="mgr_x", service=service)
    assert result["success"] is True

    updated = service.db.get_agent(agent.id)
    assert updated.config["temperature"] == 0.2
    assert updated.config["pairs"] == ["WETH/USDC"]
    assert updated.llm_model == DEFAULT_AGENT_MODEL


def test_terminate_stops_and_unlinks() -> None:
    service = _service()
    manager = service.create_manager(name="mgr")
    agent = service.create_agent(name="a", manager_id=manager.id, start=True)

    result = execute_manager_action(
        ManagerDecision(action="terminate_agent", agent_id=agent.id), manager_id=manager.id, service=service
    )
    assert result["success"] is True
    row = service.db.get_agent(agent.id)
    assert row.status == "stopped"
    assert row.manager_id is None
    assert service.db.get_schedule("agent", agent.id).status == "stopped"


def test_start_and_pause_are_noop_in_target_state() -> None:
    service = _service()
    agent = service.create_agent(name="a", start=True)
    result = execute_manager_action(
        ManagerDecision(action="start_agent", agent_id=agent.id), manager_id="m", service=service
    )
    assert result == {"success": True, "detail": f"Agent {agent.id} already running"}

    execute_manager_action(ManagerDecision(action="pause_agent", agent_id=agent.id), manager_id="m", service=service)
    assert service.db.get_agent(agent.id).status == "paused"
    again = execute_manager_action(
        ManagerDecision(action="pause_agent", agent_id=agent.id), manager_id="m", service=service
    )
    assert again["detail"].endswith("already paused")


def test_unknown_action_and_missing_agent_are_structured_failures() -> None:
    service = _service()
    result = execute_manager_action(ManagerDecision(action="launch_rocket"), manager_id="m", service=service)
    assert result == {"success": False, "error": "Unknown action: launch_rocket"}

    missing = execute_manager_action(
        ManagerDecision(action="start_agent", agent_id="agent_nope"), manager_id="m", service=service
    )
    assert missing["success"] is False
    assert "not found" in missing["error"]

    no_id = execute_manager_action(ManagerDecision(action="pause_agent"), manager_id="m", service=service)
    assert no_id == {"success": False, "error": "pause_agent requires agentId"}
