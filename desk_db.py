#!/usr/bin/env python3
"""
paperdesk database module.

SQLite with WAL mode. Holds:
- agents / managers (config documents + durable status)
- schedules (per agent/manager scheduling record, incl. the deciding guard)
- kv_state (ledger snapshots, manager memory)
- trades, agent_decisions, performance_snapshots, manager_logs (append-only
  audit trail; trades upsert on id as positions close)
"""

import json
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from env_utils import PAPERDESK_DB_PATH
from logging_utils import get_logger
from paper_engine import Position

KIND_AGENT = "agent"
KIND_MANAGER = "manager"

STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_STOPPED = "stopped"

CLAIM_OK = "claimed"
CLAIM_BUSY = "busy"
CLAIM_NOT_RUNNING = "not_running"
CLAIM_MISSING = "missing"

KV_LEDGER = "ledger"
KV_MANAGER_MEMORY = "memory"


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class AgentRecord:
    id: str
    name: str
    status: str
    config: Dict[str, Any]
    llm_model: str
    owner: str
    manager_id: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class ManagerRecord:
    id: str
    name: str
    status: str
    config: Dict[str, Any]
    owner: str
    created_at: str
    updated_at: str


@dataclass
class ScheduleRecord:
    """Durable scheduling state for one agent or manager."""
    kind: str
    owner_id: str
    status: str
    interval: str
    next_wake_at: Optional[float] = None
    deciding: bool = False
    deciding_since: Optional[float] = None
    last_tick_at: Optional[float] = None
    last_tick_duration_ms: Optional[int] = None
    cooldown_until: Optional[float] = None
    tick_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "owner_id": self.owner_id,
            "status": self.status,
            "interval": self.interval,
            "next_wake_at": self.next_wake_at,
            "deciding": self.deciding,
            "deciding_since": self.deciding_since,
            "last_tick_at": self.last_tick_at,
            "last_tick_duration_ms": self.last_tick_duration_ms,
            "cooldown_until": self.cooldown_until,
            "tick_count": self.tick_count,
        }


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


class DeskDB:
    """SQLite store shared by schedulers, loops and the CLI."""

    def __init__(self, db_path: str = PAPERDESK_DB_PATH):
        self.db_path = Path(db_path)
        self.log = get_logger("desk_db")
        self._local = threading.local()
        self._conn_lock = threading.Lock()
        self._conn_by_tid: Dict[int, sqlite3.Connection] = {}
        self._init_db()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a per-thread database connection."""
        tid = int(threading.get_ident())
        with self._conn_lock:
            conn = self._conn_by_tid.get(tid)
            if conn is None:
                conn = self._open_connection()
                self._conn_by_tid[tid] = conn
                self._local.conn = conn
            return conn

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._conn_by_tid.values():
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._conn_by_tid.clear()

    def _init_db(self) -> None:
        """Create all tables (idempotent)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'stopped',
                    config TEXT NOT NULL,
                    llm_model TEXT NOT NULL,
                    owner TEXT NOT NULL DEFAULT '',
                    manager_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_agents_manager ON agents(manager_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS managers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'stopped',
                    config TEXT NOT NULL,
                    owner TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schedules (
                    kind TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'stopped',
                    interval TEXT NOT NULL DEFAULT '1h',
                    next_wake_at REAL,
                    deciding INTEGER NOT NULL DEFAULT 0,
                    deciding_since REAL,
                    last_tick_at REAL,
                    last_tick_duration_ms INTEGER,
                    cooldown_until REAL,
                    tick_count INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (kind, owner_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_state (
                    owner_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (owner_id, key)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    pair TEXT NOT NULL,
                    dex TEXT NOT NULL,
                    side TEXT NOT NULL,
                    entry_price REAL NOT NULL,
                    effective_entry_price REAL NOT NULL,
                    exit_price REAL,
                    effective_exit_price REAL,
                    amount_usd REAL NOT NULL,
                    pnl_pct REAL,
                    pnl_usd REAL,
                    confidence_before REAL,
                    confidence_after REAL,
                    reasoning TEXT,
                    strategy_used TEXT,
                    slippage_simulated REAL,
                    status TEXT NOT NULL,
                    close_reason TEXT,
                    opened_at TEXT NOT NULL,
                    closed_at TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_agent ON trades(agent_id, opened_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_decisions (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 0,
                    reasoning TEXT,
                    outcome TEXT NOT NULL,
                    execution_result TEXT,
                    llm_model TEXT,
                    llm_latency_ms INTEGER,
                    llm_tokens_used INTEGER,
                    market_data_snapshot TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_agent ON agent_decisions(agent_id, created_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS performance_snapshots (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    balance REAL NOT NULL,
                    total_pnl_pct REAL NOT NULL,
                    win_rate REAL NOT NULL,
                    total_trades INTEGER NOT NULL,
                    sharpe_ratio REAL,
                    max_drawdown REAL,
                    snapshot_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_agent ON performance_snapshots(agent_id, snapshot_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS manager_logs (
                    id TEXT PRIMARY KEY,
                    manager_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    agent_id TEXT,
                    reasoning TEXT,
                    result TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_manager_logs ON manager_logs(manager_id, created_at)")

    # =========================================================================
    # Agents / managers
    # =========================================================================

    def _agent_from_row(self, row: sqlite3.Row) -> AgentRecord:
        return AgentRecord(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            config=_loads(row["config"], {}),
            llm_model=row["llm_model"],
            owner=row["owner"],
            manager_id=row["manager_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_agent(
        self,
        *,
        name: str,
        config: Dict[str, Any],
        llm_model: str,
        owner: str = "",
        manager_id: Optional[str] = None,
        status: str = STATUS_STOPPED,
        agent_id: Optional[str] = None,
    ) -> AgentRecord:
        now = utc_now_iso()
        record = AgentRecord(
            id=agent_id or generate_id("agent"),
            name=name,
            status=status,
            config=dict(config),
            llm_model=llm_model,
            owner=owner,
            manager_id=manager_id,
            created_at=now,
            updated_at=now,
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO agents (id, name, status, config, llm_model, owner, manager_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.name,
                    record.status,
                    json.dumps(record.config),
                    record.llm_model,
                    record.owner,
                    record.manager_id,
                    now,
                    now,
                ),
            )
        return record

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._agent_from_row(row) if row else None

    def list_agents(self, manager_id: Optional[str] = None) -> List[AgentRecord]:
        conn = self._get_connection()
        if manager_id is None:
            rows = conn.execute("SELECT * FROM agents ORDER BY created_at").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM agents WHERE manager_id = ? ORDER BY created_at", (manager_id,)
            ).fetchall()
        return [self._agent_from_row(r) for r in rows]

    def update_agent_status(self, agent_id: str, status: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE agents SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now_iso(), agent_id),
            )

    def update_agent_config(self, agent_id: str, config: Dict[str, Any], llm_model: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE agents SET config = ?, llm_model = ?, updated_at = ? WHERE id = ?",
                (json.dumps(config), llm_model, utc_now_iso(), agent_id),
            )

    def set_agent_manager(self, agent_id: str, manager_id: Optional[str]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE agents SET manager_id = ?, updated_at = ? WHERE id = ?",
                (manager_id, utc_now_iso(), agent_id),
            )

    def delete_agent(self, agent_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM trades WHERE agent_id = ?", (agent_id,))
            conn.execute("DELETE FROM agent_decisions WHERE agent_id = ?", (agent_id,))
            conn.execute("DELETE FROM performance_snapshots WHERE agent_id = ?", (agent_id,))
            conn.execute("DELETE FROM kv_state WHERE owner_id = ?", (agent_id,))
            conn.execute("DELETE FROM schedules WHERE kind = ? AND owner_id = ?", (KIND_AGENT, agent_id))
            conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))

    def _manager_from_row(self, row: sqlite3.Row) -> ManagerRecord:
        return ManagerRecord(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            config=_loads(row["config"], {}),
            owner=row["owner"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_manager(
        self,
        *,
        name: str,
        config: Dict[str, Any],
        owner: str = "",
        manager_id: Optional[str] = None,
    ) -> ManagerRecord:
        now = utc_now_iso()
        record = ManagerRecord(
            id=manager_id or generate_id("mgr"),
            name=name,
            status=STATUS_STOPPED,
            config=dict(config),
            owner=owner,
            created_at=now,
            updated_at=now,
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO managers (id, name, status, config, owner, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (record.id, record.name, record.status, json.dumps(record.config), owner, now, now),
            )
        return record

    def get_manager(self, manager_id: str) -> Optional[ManagerRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM managers WHERE id = ?", (manager_id,)).fetchone()
        return self._manager_from_row(row) if row else None

    def list_managers(self) -> List[ManagerRecord]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM managers ORDER BY created_at").fetchall()
        return [self._manager_from_row(r) for r in rows]

    def update_manager_status(self, manager_id: str, status: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE managers SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now_iso(), manager_id),
            )

    def delete_manager(self, manager_id: str) -> int:
        """Delete a manager; its agents are unlinked, not deleted. Returns unlinked count."""
        now = utc_now_iso()
        with self._get_connection() as conn:
            cur = conn.execute(
                "UPDATE agents SET manager_id = NULL, updated_at = ? WHERE manager_id = ?",
                (now, manager_id),
            )
            unlinked = cur.rowcount
            conn.execute("DELETE FROM manager_logs WHERE manager_id = ?", (manager_id,))
            conn.execute("DELETE FROM kv_state WHERE owner_id = ?", (manager_id,))
            conn.execute("DELETE FROM schedules WHERE kind = ? AND owner_id = ?", (KIND_MANAGER, manager_id))
            conn.execute("DELETE FROM managers WHERE id = ?", (manager_id,))
        return int(unlinked or 0)

    # =========================================================================
    # Schedules
    # =========================================================================

    def _schedule_from_row(self, row: sqlite3.Row) -> ScheduleRecord:
        return ScheduleRecord(
            kind=row["kind"],
            owner_id=row["owner_id"],
            status=row["status"],
            interval=row["interval"],
            next_wake_at=row["next_wake_at"],
            deciding=bool(row["deciding"]),
            deciding_since=row["deciding_since"],
            last_tick_at=row["last_tick_at"],
            last_tick_duration_ms=row["last_tick_duration_ms"],
            cooldown_until=row["cooldown_until"],
            tick_count=int(row["tick_count"] or 0),
        )

    def get_schedule(self, kind: str, owner_id: str) -> Optional[ScheduleRecord]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM schedules WHERE kind = ? AND owner_id = ?", (kind, owner_id)
        ).fetchone()
        return self._schedule_from_row(row) if row else None

    def list_schedules(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[ScheduleRecord]:
        sql = "SELECT * FROM schedules WHERE 1=1"
        params: List[Any] = []
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        if status:
            sql += " AND status = ?"
            params.append(status)
        conn = self._get_connection()
        return [self._schedule_from_row(r) for r in conn.execute(sql, params).fetchall()]

    def upsert_schedule(
        self,
        kind: str,
        owner_id: str,
        *,
        status: str,
        interval: str,
        next_wake_at: Optional[float],
    ) -> None:
        now = time.time()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO schedules (kind, owner_id, status, interval, next_wake_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(kind, owner_id) DO UPDATE SET
                    status = excluded.status,
                    interval = excluded.interval,
                    next_wake_at = excluded.next_wake_at,
                    updated_at = excluded.updated_at
                """,
                (kind, owner_id, status, interval, next_wake_at, now),
            )

    def set_schedule_status(self, kind: str, owner_id: str, status: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE schedules SET status = ?, updated_at = ? WHERE kind = ? AND owner_id = ?",
                (status, time.time(), kind, owner_id),
            )

    def set_next_wake(self, kind: str, owner_id: str, next_wake_at: Optional[float]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE schedules SET next_wake_at = ?, updated_at = ? WHERE kind = ? AND owner_id = ?",
                (next_wake_at, time.time(), kind, owner_id),
            )

    def set_cooldown(self, kind: str, owner_id: str, cooldown_until: Optional[float]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE schedules SET cooldown_until = ?, updated_at = ? WHERE kind = ? AND owner_id = ?",
                (cooldown_until, time.time(), kind, owner_id),
            )

    def claim_tick(
        self,
        kind: str,
        owner_id: str,
        *,
        force: bool = False,
        stale_after_seconds: float = 900.0,
    ) -> str:
        """Atomically set ``deciding`` for one tick.

        Returns CLAIM_OK, CLAIM_BUSY (another tick in flight), CLAIM_NOT_RUNNING
        (status != running and not forced) or CLAIM_MISSING (no record).
        A deciding flag older than ``stale_after_seconds`` is treated as released.
        """
        now = time.time()
        stale_before = now - float(stale_after_seconds)

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT status, deciding, deciding_since FROM schedules WHERE kind = ? AND owner_id = ?",
                (kind, owner_id),
            ).fetchone()
            if not row:
                conn.commit()
                return CLAIM_MISSING
            if not force and row["status"] != STATUS_RUNNING:
                conn.commit()
                return CLAIM_NOT_RUNNING
            since = row["deciding_since"]
            if row["deciding"] and since is not None and float(since) >= stale_before:
                conn.commit()
                return CLAIM_BUSY
            if row["deciding"]:
                self.log.warning("%s %s: releasing stale deciding flag (since=%s)", kind, owner_id, since)

            conn.execute(
                """
                UPDATE schedules
                SET deciding = 1, deciding_since = ?, tick_count = tick_count + 1, updated_at = ?
                WHERE kind = ? AND owner_id = ?
                """,
                (now, now, kind, owner_id),
            )
            conn.commit()
        return CLAIM_OK

    def finish_tick(self, kind: str, owner_id: str, *, finished_at: float, duration_ms: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE schedules
                SET deciding = 0, deciding_since = NULL, last_tick_at = ?, last_tick_duration_ms = ?, updated_at = ?
                WHERE kind = ? AND owner_id = ?
                """,
                (finished_at, int(duration_ms), finished_at, kind, owner_id),
            )

    # =========================================================================
    # Key-value state
    # =========================================================================

    def kv_get(self, owner_id: str, key: str, default: Any = None) -> Any:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM kv_state WHERE owner_id = ? AND key = ?", (owner_id, key)
        ).fetchone()
        if not row:
            return default
        return _loads(row["value"], default)

    def kv_put(self, owner_id: str, key: str, value: Any) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO kv_state (owner_id, key, value, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(owner_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (owner_id, key, json.dumps(value), time.time()),
            )

    def kv_delete(self, owner_id: str, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_state WHERE owner_id = ? AND key = ?", (owner_id, key))

    # =========================================================================
    # Trades
    # =========================================================================

    def upsert_trade(self, position: Position) -> None:
        """Insert a position, or update its exit fields once it leaves ``open``."""
        p = position
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO trades (
                    id, agent_id, pair, dex, side, entry_price, effective_entry_price,
                    exit_price, effective_exit_price, amount_usd, pnl_pct, pnl_usd,
                    confidence_before, confidence_after, reasoning, strategy_used,
                    slippage_simulated, status, close_reason, opened_at, closed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    exit_price = excluded.exit_price,
                    effective_exit_price = excluded.effective_exit_price,
                    pnl_pct = excluded.pnl_pct,
                    pnl_usd = excluded.pnl_usd,
                    confidence_after = excluded.confidence_after,
                    status = excluded.status,
                    close_reason = excluded.close_reason,
                    closed_at = excluded.closed_at
                """,
                (
                    p.id,
                    p.agent_id,
                    p.pair,
                    p.dex,
                    p.side,
                    p.entry_price,
                    p.effective_entry_price,
                    p.exit_price,
                    p.effective_exit_price,
                    p.amount_usd,
                    p.pnl_pct,
                    p.pnl_usd,
                    p.confidence_before,
                    p.confidence_after,
                    p.reasoning,
                    p.strategy_used,
                    p.slippage_simulated,
                    p.status,
                    p.close_reason,
                    p.opened_at,
                    p.closed_at,
                ),
            )

    def recent_trades(self, agent_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM trades WHERE agent_id = ? ORDER BY opened_at DESC LIMIT ?",
            (agent_id, int(limit)),
        ).fetchall()
        return [dict(r) for r in rows]

    def closed_trades(self, agent_id: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM trades
            WHERE agent_id = ? AND status IN ('closed', 'stopped_out')
            ORDER BY closed_at ASC
            """,
            (agent_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # =========================================================================
    # Decisions
    # =========================================================================

    def insert_decision(
        self,
        *,
        agent_id: str,
        decision: str,
        confidence: float,
        reasoning: str,
        outcome: str,
        llm_model: Optional[str] = None,
        llm_latency_ms: int = 0,
        llm_tokens_used: Optional[int] = None,
        market_data: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        decision_id = generate_id("dec")
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO agent_decisions (
                    id, agent_id, decision, confidence, reasoning, outcome, llm_model,
                    llm_latency_ms, llm_tokens_used, market_data_snapshot, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    decision_id,
                    agent_id,
                    decision,
                    float(confidence),
                    reasoning,
                    outcome,
                    llm_model,
                    int(llm_latency_ms),
                    llm_tokens_used,
                    json.dumps(market_data or []),
                    utc_now_iso(),
                ),
            )
        return decision_id

    def update_decision_execution(self, decision_id: str, outcome: str, execution_result: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE agent_decisions SET outcome = ?, execution_result = ? WHERE id = ?",
                (outcome, json.dumps(execution_result), decision_id),
            )

    def recent_decisions(self, agent_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT id, decision, confidence, reasoning, outcome, execution_result, llm_model, created_at
            FROM agent_decisions WHERE agent_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (agent_id, int(limit)),
        ).fetchall()
        return [dict(r) for r in rows]

    # =========================================================================
    # Performance snapshots
    # =========================================================================

    def insert_performance_snapshot(self, agent_id: str, metrics: Dict[str, Any]) -> str:
        snap_id = generate_id("snap")
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO performance_snapshots (
                    id, agent_id, balance, total_pnl_pct, win_rate, total_trades,
                    sharpe_ratio, max_drawdown, snapshot_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snap_id,
                    agent_id,
                    float(metrics["balance"]),
                    float(metrics["total_pnl_pct"]),
                    float(metrics["win_rate"]),
                    int(metrics["total_trades"]),
                    metrics.get("sharpe_ratio"),
                    metrics.get("max_drawdown"),
                    utc_now_iso(),
                ),
            )
        return snap_id

    def latest_performance_snapshot(self, agent_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM performance_snapshots WHERE agent_id = ? ORDER BY snapshot_at DESC LIMIT 1",
            (agent_id,),
        ).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # Manager audit log
    # =========================================================================

    def insert_manager_log(
        self,
        *,
        manager_id: str,
        action: str,
        reasoning: str,
        result: Dict[str, Any],
        agent_id: Optional[str] = None,
    ) -> str:
        log_id = generate_id("mlog")
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO manager_logs (id, manager_id, action, agent_id, reasoning, result, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (log_id, manager_id, action, agent_id, reasoning, json.dumps(result), utc_now_iso()),
            )
        return log_id

    def recent_manager_logs(self, manager_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM manager_logs WHERE manager_id = ? ORDER BY created_at DESC LIMIT ?",
            (manager_id, int(limit)),
        ).fetchall()
        out = []
        for r in rows:
            item = dict(r)
            item["result"] = _loads(item.get("result"), {})
            out.append(item)
        return out
