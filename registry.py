#!/usr/bin/env python3
"""Explicit id -> scheduler lookup owned by the desk service."""

from __future__ import annotations

from typing import Any, Dict, Optional

from agent_scheduler import AgentScheduler
from desk_db import KIND_AGENT, KIND_MANAGER, STATUS_RUNNING, DeskDB
from llm_router import DecisionOracle
from logging_utils import get_logger
from manager_scheduler import ManagerScheduler
from market_data import MarketDataProvider
from tick_scheduler import SchedulerSettings


class SchedulerRegistry:
    def __init__(
        self,
        db: DeskDB,
        *,
        market: MarketDataProvider,
        oracle: DecisionOracle,
        settings: Optional[SchedulerSettings] = None,
        service: Any = None,
    ):
        self.db = db
        self.market = market
        self.oracle = oracle
        self.settings = settings or SchedulerSettings()
        self.service = service
        self.log = get_logger("registry")
        self._agents: Dict[str, AgentScheduler] = {}
        self._managers: Dict[str, ManagerScheduler] = {}

    def agent(self, agent_id: str) -> AgentScheduler:
        sched = self._agents.get(agent_id)
        if sched is None:
            sched = AgentScheduler(
                agent_id,
                self.db,
                market=self.market,
                oracle=self.oracle,
                settings=self.settings,
            )
            self._agents[agent_id] = sched
        return sched

    def manager(self, manager_id: str) -> ManagerScheduler:
        sched = self._managers.get(manager_id)
        if sched is None:
            sched = ManagerScheduler(
                manager_id,
                self.db,
                service=self.service,
                market=self.market,
                oracle=self.oracle,
                settings=self.settings,
            )
            self._managers[manager_id] = sched
        return sched

    def forget(self, kind: str, owner_id: str) -> None:
        table = self._agents if kind == KIND_AGENT else self._managers
        sched = table.pop(owner_id, None)
        if sched is not None:
            sched.cancel_wake()

    def resume_all(self) -> int:
        """Re-arm every running schedule. Call from inside the event loop."""
        resumed = 0
        for record in self.db.list_schedules(status=STATUS_RUNNING):
            if record.kind == KIND_AGENT:
                sched = self.agent(record.owner_id)
            elif record.kind == KIND_MANAGER:
                sched = self.manager(record.owner_id)
            else:
                continue
            if sched.armed:
                continue
            if sched.resume():
                resumed += 1
        self.log.info("Resumed %d running schedules", resumed)
        return resumed

    def cancel_all(self) -> None:
        for sched in list(self._agents.values()) + list(self._managers.values()):
            sched.cancel_wake()
