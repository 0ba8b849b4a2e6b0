#!/usr/bin/env python3
"""Per-agent recurring scheduler."""

from __future__ import annotations

from typing import Optional

from agent_config import AgentConfig, interval_to_seconds
from agent_loop import new_engine, run_agent_cycle, save_engine
from desk_db import KV_LEDGER, KIND_AGENT, DeskDB
from llm_router import DecisionOracle
from market_data import MarketDataProvider
from performance import snapshot_agent
from tick_scheduler import SchedulerSettings, TickScheduler


class AgentScheduler(TickScheduler):
    kind = KIND_AGENT

    def __init__(
        self,
        agent_id: str,
        db: DeskDB,
        *,
        market: MarketDataProvider,
        oracle: DecisionOracle,
        settings: Optional[SchedulerSettings] = None,
    ):
        super().__init__(agent_id, db, settings)
        self.market = market
        self.oracle = oracle
        self.last_outcome: Optional[str] = None

    def _config(self) -> AgentConfig:
        agent = self.db.get_agent(self.owner_id)
        return AgentConfig.from_dict(agent.config if agent else {})

    def interval_label(self) -> str:
        return self._config().analysis_interval

    def interval_seconds(self) -> float:
        return float(interval_to_seconds(self.interval_label()))

    def is_initialised(self) -> bool:
        return self.db.kv_get(self.owner_id, KV_LEDGER) is not None

    def on_start(self) -> None:
        if self.db.get_agent(self.owner_id) is None:
            raise KeyError(f"agent {self.owner_id} not found")
        if not self.is_initialised():
            save_engine(self.db, self.owner_id, new_engine(self._config()))
            self.log.info("agent %s: ledger initialised", self.owner_id)

    def set_owner_status(self, status: str) -> None:
        self.db.update_agent_status(self.owner_id, status)

    def reset_ledger(self) -> None:
        save_engine(self.db, self.owner_id, new_engine(self._config()))
        self.db.set_cooldown(self.kind, self.owner_id, None)

    async def run_cycle(self, force_run: bool) -> None:
        self.last_outcome = await run_agent_cycle(
            self.db,
            self.owner_id,
            market=self.market,
            oracle=self.oracle,
            force_run=force_run,
        )
        record = self.db.get_schedule(self.kind, self.owner_id)
        every = self.settings.snapshot_every_ticks
        if record is not None and every > 0 and record.tick_count % every == 0:
            try:
                snapshot_agent(self.db, self.owner_id)
            except Exception:
                self.log.exception("agent %s: performance snapshot failed", self.owner_id)
