#!/usr/bin/env python3
"""Agent config coercion from stored JSON documents."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent_config import DEFAULT_AGENT_MODEL, AgentConfig, ManagerConfig, build_agent_config


def test_allow_fallback_accepts_only_explicit_true() -> None:
    for raw in (True, 1, "true", "TRUE", " 1 "):
        assert AgentConfig.from_dict({"allow_fallback": raw}).allow_fallback is True
    for raw in (False, 0, "false", "False", "no", "yes please", None, [], 2):
        assert AgentConfig.from_dict({"allow_fallback": raw}).allow_fallback is False
    assert AgentConfig.from_dict({}).allow_fallback is False


def test_bad_numbers_fall_back_to_defaults() -> None:
    cfg = AgentConfig.from_dict({"stop_loss_pct": "abc", "max_open_positions": None, "pairs": "WETH/USDC, cbBTC/USDC"})
    assert cfg.stop_loss_pct == 5.0
    assert cfg.max_open_positions == 3
    assert cfg.pairs == ["WETH/USDC", "cbBTC/USDC"]


def test_build_agent_config_normalises_model_and_interval() -> None:
    cfg = build_agent_config({"analysis_interval": "1h"}, {"llm_model": "openai/gpt-4o", "analysis_interval": "7m"})
    assert cfg["llm_model"] == DEFAULT_AGENT_MODEL
    assert cfg["analysis_interval"] == "1h"


def test_manager_config_rejects_unknown_interval() -> None:
    cfg = ManagerConfig.from_dict({"decision_interval": "15m", "risk_params": {"max_agents": "5"}})
    assert cfg.decision_interval == "1h"
    assert cfg.max_agents == 5
