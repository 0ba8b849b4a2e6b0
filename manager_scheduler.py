#!/usr/bin/env python3
"""Per-manager recurring scheduler."""

from __future__ import annotations

from typing import Any, Optional

from agent_config import ManagerConfig, interval_to_seconds
from desk_db import KIND_MANAGER, KV_MANAGER_MEMORY, DeskDB
from llm_router import DecisionOracle
from manager_loop import default_memory, run_manager_cycle
from market_data import MarketDataProvider
from tick_scheduler import SchedulerSettings, TickScheduler


class ManagerScheduler(TickScheduler):
    kind = KIND_MANAGER

    def __init__(
        self,
        manager_id: str,
        db: DeskDB,
        *,
        service: Any,
        market: MarketDataProvider,
        oracle: DecisionOracle,
        settings: Optional[SchedulerSettings] = None,
    ):
        super().__init__(manager_id, db, settings)
        self.service = service
        self.market = market
        self.oracle = oracle

    def _config(self) -> ManagerConfig:
        manager = self.db.get_manager(self.owner_id)
        return ManagerConfig.from_dict(manager.config if manager else {})

    def interval_label(self) -> str:
        return self._config().decision_interval

    def interval_seconds(self) -> float:
        return float(interval_to_seconds(self.interval_label()))

    def is_initialised(self) -> bool:
        return self.db.kv_get(self.owner_id, KV_MANAGER_MEMORY) is not None

    def on_start(self) -> None:
        if self.db.get_manager(self.owner_id) is None:
            raise KeyError(f"manager {self.owner_id} not found")
        if not self.is_initialised():
            self.db.kv_put(self.owner_id, KV_MANAGER_MEMORY, default_memory())

    def set_owner_status(self, status: str) -> None:
        self.db.update_manager_status(self.owner_id, status)

    async def run_cycle(self, force_run: bool) -> None:
        await run_manager_cycle(
            self.db,
            self.owner_id,
            service=self.service,
            market=self.market,
            oracle=self.oracle,
            force_run=force_run,
        )
