#!/usr/bin/env python3
"""
Agent / manager lifecycle commands.

Used by the CLI and by manager decisions. Owns the scheduler registry;
every status change goes through the relevant scheduler so the durable
schedule row and the in-process timer stay in step.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from agent_config import AgentConfig, build_agent_config, normalise_agent_model
from agent_loop import load_engine
from config_env import deep_merge, get_param
from desk_db import (
    KIND_AGENT,
    KIND_MANAGER,
    STATUS_PAUSED,
    STATUS_RUNNING,
    AgentRecord,
    DeskDB,
    ManagerRecord,
)
from env_utils import PAPERDESK_DB_PATH
from llm_router import DecisionOracle, oracle_from_config
from logging_utils import get_logger
from manager_protocol import normalise_params
from market_data import MarketDataProvider, provider_from_config
from performance import snapshot_all_agents
from registry import SchedulerRegistry
from tick_scheduler import SchedulerSettings


class DeskService:
    def __init__(
        self,
        db: DeskDB,
        *,
        market: MarketDataProvider,
        oracle: DecisionOracle,
        config: Optional[Dict[str, Any]] = None,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.db = db
        self.config = config or {}
        self.log = get_logger("desk_service")
        self.registry = SchedulerRegistry(
            db,
            market=market,
            oracle=oracle,
            settings=settings or SchedulerSettings.from_config(self.config),
            service=self,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DeskService":
        db = DeskDB(get_param(config, "db_path") or PAPERDESK_DB_PATH)
        return cls(
            db,
            market=provider_from_config(config),
            oracle=oracle_from_config(config),
            config=config,
        )

    def _require_agent(self, agent_id: str) -> AgentRecord:
        agent = self.db.get_agent(agent_id)
        if agent is None:
            raise KeyError(f"agent {agent_id} not found")
        return agent

    def _require_manager(self, manager_id: str) -> ManagerRecord:
        manager = self.db.get_manager(manager_id)
        if manager is None:
            raise KeyError(f"manager {manager_id} not found")
        return manager

    # =========================================================================
    # Agents
    # =========================================================================

    def create_agent(
        self,
        *,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        owner: str = "",
        manager_id: Optional[str] = None,
        start: bool = False,
    ) -> AgentRecord:
        defaults = get_param(self.config, "agent_defaults", {}) or {}
        cfg = build_agent_config(defaults, normalise_params(params or {}))
        cfg["name"] = name
        record = self.db.create_agent(
            name=name,
            config=cfg,
            llm_model=cfg["llm_model"],
            owner=owner,
            manager_id=manager_id,
        )
        self.log.info("Created agent %s (%s) model=%s manager=%s", record.id, name, record.llm_model, manager_id)
        if start:
            self.start_agent(record.id)
            record.status = STATUS_RUNNING
        return record

    def start_agent(self, agent_id: str) -> None:
        self._require_agent(agent_id)
        self.registry.agent(agent_id).start()

    def stop_agent(self, agent_id: str) -> None:
        self._require_agent(agent_id)
        self.registry.agent(agent_id).stop()

    def pause_agent(self, agent_id: str) -> None:
        agent = self._require_agent(agent_id)
        if agent.status == STATUS_RUNNING:
            self.registry.agent(agent_id).pause()
        else:
            self.db.update_agent_status(agent_id, STATUS_PAUSED)

    async def trigger_agent(self, agent_id: str) -> Optional[str]:
        self._require_agent(agent_id)
        sched = self.registry.agent(agent_id)
        await sched.trigger()
        return sched.last_outcome

    def modify_agent(self, agent_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``params`` into the agent's config."""
        agent = self._require_agent(agent_id)
        patch = normalise_params(params)
        if "llm_model" in patch:
            patch["llm_model"] = normalise_agent_model(patch["llm_model"])
        if "llm_fallback" in patch:
            patch["llm_fallback"] = normalise_agent_model(patch["llm_fallback"])
        merged = {**agent.config, **patch}
        llm_model = normalise_agent_model(merged.get("llm_model") or agent.llm_model)
        merged["llm_model"] = llm_model
        self.db.update_agent_config(agent_id, merged, llm_model)
        return merged

    def terminate_agent(self, agent_id: str) -> None:
        """Stop the agent and detach it from its manager."""
        agent = self._require_agent(agent_id)
        sched = self.registry.agent(agent_id)
        if agent.status in (STATUS_RUNNING, STATUS_PAUSED):
            sched.stop()
        else:
            sched.cancel_wake()
        self.db.set_agent_manager(agent_id, None)

    def reset_agent(self, agent_id: str) -> None:
        """Stop the agent and restart its ledger from the configured balance."""
        self._require_agent(agent_id)
        sched = self.registry.agent(agent_id)
        sched.stop()
        sched.reset_ledger()
        self.log.info("Reset ledger for agent %s", agent_id)

    def delete_agent(self, agent_id: str) -> None:
        self._require_agent(agent_id)
        self.registry.agent(agent_id).stop()
        self.registry.forget(KIND_AGENT, agent_id)
        self.db.delete_agent(agent_id)
        self.log.info("Deleted agent %s", agent_id)

    def agent_status(self, agent_id: str) -> Dict[str, Any]:
        agent = self._require_agent(agent_id)
        sched = self.registry.agent(agent_id)
        out: Dict[str, Any] = {
            "id": agent.id,
            "name": agent.name,
            "status": agent.status,
            "llm_model": agent.llm_model,
            "manager_id": agent.manager_id,
            "schedule": sched.status(),
        }
        if sched.is_initialised():
            engine = load_engine(self.db, agent_id, AgentConfig.from_dict(agent.config))
            out["ledger"] = {
                "balance": engine.balance,
                "initial_balance": engine.initial_balance,
                "open_positions": [p.to_dict() for p in engine.open_positions],
                "closed_count": len(engine.closed_positions),
                "total_pnl_pct": engine.total_pnl_pct(),
                "win_rate": engine.win_rate(),
            }
        return out

    # =========================================================================
    # Managers
    # =========================================================================

    def create_manager(self, *, name: str, params: Optional[Dict[str, Any]] = None, owner: str = "") -> ManagerRecord:
        defaults = get_param(self.config, "manager_defaults", {}) or {}
        cfg = deep_merge(defaults, normalise_params(params or {}))
        cfg["llm_model"] = normalise_agent_model(cfg.get("llm_model"))
        record = self.db.create_manager(name=name, config=cfg, owner=owner)
        self.log.info("Created manager %s (%s)", record.id, name)
        return record

    def start_manager(self, manager_id: str) -> None:
        self._require_manager(manager_id)
        self.registry.manager(manager_id).start()

    def stop_manager(self, manager_id: str) -> None:
        self._require_manager(manager_id)
        self.registry.manager(manager_id).stop()

    def pause_manager(self, manager_id: str) -> None:
        self._require_manager(manager_id)
        self.registry.manager(manager_id).pause()

    async def trigger_manager(self, manager_id: str) -> None:
        self._require_manager(manager_id)
        await self.registry.manager(manager_id).trigger()

    def delete_manager(self, manager_id: str) -> int:
        """Stop and delete a manager; its agents keep running, unlinked."""
        self._require_manager(manager_id)
        self.registry.manager(manager_id).stop()
        self.registry.forget(KIND_MANAGER, manager_id)
        unlinked = self.db.delete_manager(manager_id)
        self.log.info("Deleted manager %s (%d agents unlinked)", manager_id, unlinked)
        return unlinked

    def manager_status(self, manager_id: str) -> Dict[str, Any]:
        manager = self._require_manager(manager_id)
        return {
            "id": manager.id,
            "name": manager.name,
            "status": manager.status,
            "agents": [a.id for a in self.db.list_agents(manager_id=manager_id)],
            "schedule": self.registry.manager(manager_id).status(),
            "recent_logs": self.db.recent_manager_logs(manager_id, 10),
        }

    # =========================================================================
    # Process-wide
    # =========================================================================

    def resume_all(self) -> int:
        return self.registry.resume_all()

    def snapshot_all(self) -> int:
        return snapshot_all_agents(self.db)
