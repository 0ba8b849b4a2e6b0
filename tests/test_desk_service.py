#!/usr/bin/env python3
"""Lifecycle commands over the durable schedule rows."""

import asyncio
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent_config import AgentConfig
from agent_loop import load_engine, save_engine
from config_env import DEFAULT_CONFIG
from desk_db import KV_LEDGER, DeskDB
from desk_service import DeskService
from llm_router import DecisionOracle, TradeDecision
from market_data import MarketDataProvider, MarketSnapshot
from tick_scheduler import TickConflict


class _Market(MarketDataProvider):
    async def search_instrument(self, label):
        return MarketSnapshot(pair=label, price_usd=100.0, source="fake")


class _Oracle(DecisionOracle):
    async def request_decision(self, request):
        return TradeDecision("hold", 0.5, "wait")

    async def request_freeform_text(self, prompt, *, model, temperature=None):
        return "[]"


def _service() -> DeskService:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return DeskService(DeskDB(db_path), market=_Market(), oracle=_Oracle(), config=DEFAULT_CONFIG)


def test_created_agent_uses_yaml_defaults_and_stays_stopped() -> None:
    service = _service()
    agent = service.create_agent(name="a", params={"stopLossPct": 3})
    assert agent.status == "stopped"
    assert agent.config["stop_loss_pct"] == 3
    assert agent.config["take_profit_pct"] == 7.0
    assert service.db.get_schedule("agent", agent.id) is None


def test_reset_restores_balance_and_clears_cooldown() -> None:
    service = _service()
    agent = service.create_agent(name="a", start=True)
    engine = load_engine(service.db, agent.id, AgentConfig())
    engine.state.balance = 4200.0
    save_engine(service.db, agent.id, engine)
    service.db.set_cooldown("agent", agent.id, 9e12)

    service.reset_agent(agent.id)
    assert load_engine(service.db, agent.id, AgentConfig()).balance == pytest.approx(10000.0)
    schedule = service.db.get_schedule("agent", agent.id)
    assert schedule.status == "stopped"
    assert schedule.cooldown_until is None


def test_delete_agent_removes_history() -> None:
    service = _service()
    agent = service.create_agent(name="a", start=True)
    service.delete_agent(agent.id)
    assert service.db.get_agent(agent.id) is None
    assert service.db.get_schedule("agent", agent.id) is None
    assert service.db.kv_get(agent.id, KV_LEDGER) is None
    with pytest.raises(KeyError):
        service.start_agent(agent.id)


def test_trigger_runs_paused_agent_once() -> None:
    service = _service()
    agent = service.create_agent(name="a", start=True)
    service.pause_agent(agent.id)

    assert asyncio.run(service.trigger_agent(agent.id)) == "hold"
    assert service.db.recent_decisions(agent.id)[0]["decision"] == "hold"
    assert service.db.get_schedule("agent", agent.id).status == "paused"


def test_trigger_before_first_start_is_refused() -> None:
    service = _service()
    agent = service.create_agent(name="a")
    with pytest.raises(TickConflict):
        asyncio.run(service.trigger_agent(agent.id))


def test_resume_all_rearms_running_schedules_only() -> None:
    service = _service()
    running = service.create_agent(name="run", start=True)
    paused = service.create_agent(name="pause", start=True)
    service.pause_agent(paused.id)

    async def _run() -> int:
        fresh = DeskService(service.db, market=_Market(), oracle=_Oracle(), config=DEFAULT_CONFIG)
        try:
            count = fresh.resume_all()
            assert fresh.registry.agent(running.id).armed
            assert not fresh.registry.agent(paused.id).armed
            return count
        finally:
            fresh.registry.cancel_all()

    assert asyncio.run(_run()) == 1


def test_manager_status_lists_linked_agents() -> None:
    service = _service()
    manager = service.create_manager(name="m", params={"decisionInterval": "4h"})
    agent = service.create_agent(name="a", manager_id=manager.id)
    status = service.manager_status(manager.id)
    assert status["agents"] == [agent.id]
    assert status["schedule"]["status"] == "stopped"
    assert service.db.get_manager(manager.id).config["decision_interval"] == "4h"
