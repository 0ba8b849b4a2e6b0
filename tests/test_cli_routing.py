#!/usr/bin/env python3
"""CLI routing against a throwaway database."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import cli
from desk_db import DeskDB


def _config(tmp_path: Path, monkeypatch) -> str:
    monkeypatch.delenv("PAPERDESK_DB_PATH", raising=False)
    db_path = tmp_path / "desk.db"
    cfg = tmp_path / "paperdesk.yaml"
    cfg.write_text(f"config:\n  db_path: {db_path}\n", encoding="utf-8")
    return str(cfg)


def test_init_db_creates_schema(tmp_path: Path, monkeypatch, capsys) -> None:
    cfg = _config(tmp_path, monkeypatch)
    assert cli.main(["--config", cfg, "init-db"]) == 0
    assert (tmp_path / "desk.db").exists()
    assert "Initialized database" in capsys.readouterr().out


def test_create_start_and_status(tmp_path: Path, monkeypatch, capsys) -> None:
    cfg = _config(tmp_path, monkeypatch)
    assert cli.main(["--config", cfg, "create-agent", "Scout", "--pairs", "WETH/USDC,cbBTC/USDC", "--start"]) == 0
    out = capsys.readouterr().out
    assert "status=running" in out

    db = DeskDB(str(tmp_path / "desk.db"))
    agent = db.list_agents()[0]
    assert agent.config["pairs"] == ["WETH/USDC", "cbBTC/USDC"]
    assert db.get_schedule("agent", agent.id).status == "running"

    assert cli.main(["--config", cfg, "pause", agent.id]) == 0
    capsys.readouterr()
    assert cli.main(["--config", cfg, "status", agent.id]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["status"] == "paused"
    assert status["ledger"]["balance"] == 10000.0


def test_unknown_agent_returns_error(tmp_path: Path, monkeypatch, capsys) -> None:
    cfg = _config(tmp_path, monkeypatch)
    assert cli.main(["--config", cfg, "stop", "agent_nope"]) == 1
    assert "Not found" in capsys.readouterr().out


def test_bad_params_json_is_rejected(tmp_path: Path, monkeypatch, capsys) -> None:
    cfg = _config(tmp_path, monkeypatch)
    assert cli.main(["--config", cfg, "create-agent", "x", "--params", "[1, 2]"]) == 1
    assert "--params must be a JSON object" in capsys.readouterr().out


def test_delete_manager_unlinks_agents(tmp_path: Path, monkeypatch, capsys) -> None:
    cfg = _config(tmp_path, monkeypatch)
    assert cli.main(["--config", cfg, "create-manager", "Boss", "--start"]) == 0
    db = DeskDB(str(tmp_path / "desk.db"))
    manager = db.list_managers()[0]
    assert manager.status == "running"
    db.create_agent(name="a", config={}, llm_model="m", manager_id=manager.id)

    capsys.readouterr()
    assert cli.main(["--config", cfg, "delete-manager", manager.id]) == 0
    assert "1 agents unlinked" in capsys.readouterr().out
    assert db.list_agents()[0].manager_id is None
    assert db.get_manager(manager.id) is None
