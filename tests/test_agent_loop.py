#!/usr/bin/env python3
"""Agent cycle scenarios with fake market data and oracle."""

import asyncio
import json
import sys
import tempfile
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent_loop import (
    CYCLE_COOLDOWN,
    CYCLE_DAILY_LOSS_PAUSE,
    OUTCOME_NO_MARKET_DATA,
    OUTCOME_ORACLE_ERROR,
    OUTCOME_ORACLE_INVALID,
    OUTCOME_ORACLE_TIMEOUT,
    OUTCOME_ORACLE_UNCONFIGURED,
    load_engine,
    run_agent_cycle,
    save_engine,
)
from agent_config import AgentConfig
from config_env import DEFAULT_CONFIG
from desk_db import DeskDB
from desk_service import DeskService
from llm_router import ERROR_TIMEOUT, DecisionOracle, OpenRouterOracle, OracleError, TradeDecision
from market_data import MarketDataProvider, MarketSnapshot


class _Market(MarketDataProvider):
    def __init__(self, prices):
        self.prices = dict(prices)

    async def search_instrument(self, label):
        price = self.prices.get(label)
        if price is None:
            return None
        return MarketSnapshot(pair=label, price_usd=price, source="fake")


class _Oracle(DecisionOracle):
    def __init__(self, decision=None, error=None, configured=True):
        self.decision = decision or TradeDecision("hold", 0.5, "nothing to do")
        self.error = error
        self._configured = configured
        self.requests = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def request_decision(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.decision

    async def request_freeform_text(self, prompt, *, model, temperature=None):
        return "[]"


def _setup(prices=None, oracle=None, **params):
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    market = _Market(prices if prices is not None else {"WETH/USDC": 100.0})
    oracle = oracle or _Oracle()
    service = DeskService(DeskDB(db_path), market=market, oracle=oracle, config=DEFAULT_CONFIG)
    agent = service.create_agent(name="t", params=params, start=True)
    return service, agent, market, oracle


def _cycle(service, agent, market, oracle) -> str:
    return asyncio.run(run_agent_cycle(service.db, agent.id, market=market, oracle=oracle))


def test_stop_loss_sets_cooldown_and_next_tick_skips() -> None:
    service, agent, market, oracle = _setup(stop_loss_pct=5.0, slippage_simulation=0.3)
    db = service.db
    engine = load_engine(db, agent.id, AgentConfig.from_dict(agent.config))
    pos = engine.open_position(
        agent_id=agent.id,
        pair="WETH/USDC",
        dex="aerodrome",
        side="buy",
        price=100.0,
        amount_usd=500.0,
        max_position_size_pct=5.0,
        confidence=0.9,
        reasoning="",
        strategy_used="combined",
    )
    save_engine(db, agent.id, engine)

    market.prices["WETH/USDC"] = 94.3
    _cycle(service, agent, market, oracle)

    trades = db.recent_trades(agent.id)
    assert len(trades) == 1
    assert trades[0]["id"] == pos.id
    assert trades[0]["status"] == "stopped_out"
    assert trades[0]["pnl_pct"] == pytest.approx(-6.26, abs=0.05)
    schedule = db.get_schedule("agent", agent.id)
    assert schedule.cooldown_until == pytest.approx(time.time() + 30 * 60, abs=5.0)

    calls = len(oracle.requests)
    assert _cycle(service, agent, market, oracle) == CYCLE_COOLDOWN
    assert len(oracle.requests) == calls
    assert load_engine(db, agent.id, AgentConfig()).open_positions == []


def test_take_profit_closes_position() -> None:
    service, agent, market, oracle = _setup(take_profit_pct=7.0, slippage_simulation=0.0)
    engine = load_engine(service.db, agent.id, AgentConfig())
    engine.open_position(
        agent_id=agent.id,
        pair="WETH/USDC",
        dex="aerodrome",
        side="sell",
        price=100.0,
        amount_usd=100.0,
        max_position_size_pct=5.0,
        confidence=0.9,
        reasoning="",
        strategy_used="combined",
    )
    save_engine(service.db, agent.id, engine)
    market.prices["WETH/USDC"] = 92.0
    _cycle(service, agent, market, oracle)

    trade = service.db.recent_trades(agent.id)[0]
    assert trade["status"] == "closed"
    assert trade["close_reason"] == "Take profit triggered"
    assert trade["pnl_pct"] == pytest.approx(8.0)


def test_daily_loss_breach_pauses_agent() -> None:
    service, agent, market, oracle = _setup(max_daily_loss_pct=10.0)
    engine = load_engine(service.db, agent.id, AgentConfig())
    engine.state.balance = engine.state.daily_start_balance * 0.85
    save_engine(service.db, agent.id, engine)

    assert _cycle(service, agent, market, oracle) == CYCLE_DAILY_LOSS_PAUSE
    assert service.db.get_agent(agent.id).status == "paused"
    assert service.db.get_schedule("agent", agent.id).status == "paused"
    assert oracle.requests == []

    # Paused agents do not trade on timer ticks.
    assert _cycle(service, agent, market, oracle) == "not_running"


def test_no_market_data_records_hold() -> None:
    service, agent, market, oracle = _setup(prices={}, pairs=["WETH/USDC", "DEGEN/WETH"])
    assert _cycle(service, agent, market, oracle) == OUTCOME_NO_MARKET_DATA
    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["decision"] == "hold"
    assert decision["outcome"] == OUTCOME_NO_MARKET_DATA
    assert "DEGEN/WETH" in decision["reasoning"]
    assert oracle.requests == []


def test_unconfigured_oracle_records_hold() -> None:
    service, agent, market, _ = _setup()
    oracle = _Oracle(configured=False)
    assert _cycle(service, agent, market, oracle) == OUTCOME_ORACLE_UNCONFIGURED
    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["outcome"] == OUTCOME_ORACLE_UNCONFIGURED
    assert "OPENROUTER_API_KEY" in decision["reasoning"]


def test_oracle_timeout_is_recorded_separately_and_never_trades() -> None:
    oracle = _Oracle(error=OracleError(ERROR_TIMEOUT, "Model request timed out after 60s"))
    service, agent, market, _ = _setup(oracle=oracle)
    assert _cycle(service, agent, market, oracle) == OUTCOME_ORACLE_TIMEOUT
    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["decision"] == "hold"
    assert "timed out" in decision["reasoning"]
    assert service.db.recent_trades(agent.id) == []


def test_non_json_oracle_body_records_invalid_hold() -> None:
    oracle = OpenRouterOracle("sk-test", session=object())

    async def _html(session, payload):
        raise json.JSONDecodeError("Expecting value", "<html>gateway</html>", 0)

    oracle._post_chat = _html
    service, agent, market, _ = _setup(oracle=oracle)
    assert _cycle(service, agent, market, oracle) == OUTCOME_ORACLE_INVALID
    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["decision"] == "hold"
    assert decision["outcome"] == OUTCOME_ORACLE_INVALID
    assert decision["reasoning"].startswith("LLM error:")
    assert service.db.recent_trades(agent.id) == []


def test_unexpected_oracle_exception_records_hold() -> None:
    oracle = _Oracle(error=RuntimeError("connection reset"))
    service, agent, market, _ = _setup(oracle=oracle)
    assert _cycle(service, agent, market, oracle) == OUTCOME_ORACLE_ERROR
    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["decision"] == "hold"
    assert decision["reasoning"] == "LLM error: connection reset"


def test_buy_decision_is_persisted_then_executed() -> None:
    oracle = _Oracle(decision=TradeDecision("buy", 0.9, "breakout", target_pair="WETH/USDC", model_used="m"))
    service, agent, market, _ = _setup(oracle=oracle, max_position_size_pct=5.0)
    assert _cycle(service, agent, market, oracle) == "opened"

    decision = service.db.recent_decisions(agent.id)[0]
    assert decision["decision"] == "buy"
    assert decision["outcome"] == "opened"
    assert '"opened"' in decision["execution_result"]

    trades = service.db.recent_trades(agent.id)
    assert trades[0]["status"] == "open"
    assert trades[0]["amount_usd"] == pytest.approx(500.0)
    engine = load_engine(service.db, agent.id, AgentConfig())
    assert engine.balance == pytest.approx(9500.0)
    assert oracle.requests[0].portfolio["open_positions"] == 0


def test_scheduler_saves_snapshot_every_sixth_tick() -> None:
    service, agent, market, oracle = _setup()
    sched = service.registry.agent(agent.id)

    async def _run() -> None:
        for _ in range(6):
            assert await sched.tick() is True
        sched.cancel_wake()

    asyncio.run(_run())
    snap = service.db.latest_performance_snapshot(agent.id)
    assert snap is not None
    assert snap["total_trades"] == 0
    assert snap["balance"] == pytest.approx(10000.0)
