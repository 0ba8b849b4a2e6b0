#!/usr/bin/env python3
"""Shared tick scheduler state machine regressions."""

import asyncio
import logging
import sys
import tempfile
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from desk_db import CLAIM_BUSY, CLAIM_OK, DeskDB
from tick_scheduler import SchedulerSettings, TickConflict, TickScheduler


def _db() -> DeskDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return DeskDB(db_path)


class _Sched(TickScheduler):
    kind = "agent"

    def __init__(self, db: DeskDB, cycle=None, interval: float = 3600.0, settings=None):
        super().__init__("agent_t", db, settings)
        self.cycle = cycle
        self.interval = interval
        self.runs = []
        self.initialised = True

    def interval_label(self) -> str:
        return "1h"

    def interval_seconds(self) -> float:
        return self.interval

    def is_initialised(self) -> bool:
        return self.initialised

    async def run_cycle(self, force_run: bool) -> None:
        self.runs.append(force_run)
        if self.cycle is not None:
            await self.cycle(self)


def test_start_persists_first_wake_capped_at_five_seconds() -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        before = time.time()
        sched.start()
        record = db.get_schedule("agent", "agent_t")
        assert record.status == "running"
        assert before + 4.9 <= record.next_wake_at <= time.time() + 5.1
        assert sched.armed
        sched.stop()
        assert not sched.armed

    asyncio.run(_run())


def test_timer_fires_tick_and_rearms_at_interval() -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db, settings=SchedulerSettings(first_tick_max_sec=0.01))
        sched.start()
        await asyncio.sleep(0.1)
        await sched.wait_idle()
        assert sched.runs == [False]
        record = db.get_schedule("agent", "agent_t")
        assert record.tick_count == 1
        assert record.deciding is False
        assert record.last_tick_duration_ms is not None
        assert record.next_wake_at == pytest.approx(time.time() + 3600.0, abs=5.0)
        assert sched.armed
        sched.stop()

    asyncio.run(_run())


def test_tick_when_not_running_is_silent_noop() -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        sched.start()
        sched.pause()
        ran = await sched.tick()
        assert ran is False
        assert sched.runs == []
        assert not sched.armed
        assert db.get_schedule("agent", "agent_t").next_wake_at is None

    asyncio.run(_run())


def test_stop_during_tick_prevents_reschedule() -> None:
    async def _stop_mid_cycle(sched: _Sched) -> None:
        sched.stop()

    async def _run() -> None:
        db = _db()
        sched = _Sched(db, cycle=_stop_mid_cycle)
        sched.start()
        assert await sched.tick() is True
        record = db.get_schedule("agent", "agent_t")
        assert record.status == "stopped"
        assert record.next_wake_at is None
        assert record.deciding is False
        assert not sched.armed

    asyncio.run(_run())


def test_failed_cycle_still_reschedules() -> None:
    async def _boom(sched: _Sched) -> None:
        raise RuntimeError("market exploded")

    async def _run() -> None:
        db = _db()
        sched = _Sched(db, cycle=_boom, interval=60.0)
        sched.start()
        assert await sched.tick() is True
        record = db.get_schedule("agent", "agent_t")
        assert record.deciding is False
        assert record.next_wake_at == pytest.approx(time.time() + 60.0, abs=5.0)
        assert sched.armed
        sched.stop()

    asyncio.run(_run())


def test_trigger_conflicts_with_in_flight_tick() -> None:
    async def _run() -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def _slow(sched: _Sched) -> None:
            entered.set()
            await release.wait()

        db = _db()
        sched = _Sched(db, cycle=_slow)
        sched.start()
        first = asyncio.create_task(sched.tick())
        await entered.wait()
        with pytest.raises(TickConflict):
            await sched.trigger()
        release.set()
        await first
        assert sched.runs == [False]
        sched.stop()

    asyncio.run(_run())


def test_trigger_runs_when_paused_without_rescheduling() -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        sched.start()
        sched.pause()
        await sched.trigger()
        assert sched.runs == [True]
        assert db.get_schedule("agent", "agent_t").status == "paused"
        assert not sched.armed

    asyncio.run(_run())


def test_trigger_refused_when_never_initialised() -> None:
    async def _run() -> None:
        sched = _Sched(_db())
        sched.initialised = False
        with pytest.raises(TickConflict):
            await sched.trigger()
        assert sched.runs == []

    asyncio.run(_run())


def test_status_auto_heals_overdue_wake() -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        db.upsert_schedule("agent", "agent_t", status="running", interval="1h", next_wake_at=time.time() - 60.0)
        status = sched.status()
        assert status["healed"] is True
        assert sched.armed
        assert status["next_wake_at"] == pytest.approx(time.time() + 3.0, abs=1.0)

        # A second read inside the grace window leaves it alone.
        assert sched.status()["healed"] is False
        sched.stop()

    asyncio.run(_run())


def test_reschedule_failure_logs_critical(monkeypatch, caplog) -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        sched.start()
        sched.log.addHandler(caplog.handler)

        def _broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "set_next_wake", _broken)
        try:
            assert await sched.tick() is True
        finally:
            sched.log.removeHandler(caplog.handler)
        sched.cancel_wake()

    with caplog.at_level(logging.CRITICAL):
        asyncio.run(_run())
    assert any(r.levelno == logging.CRITICAL and "reschedule" in r.getMessage() for r in caplog.records)


def test_claim_failure_logs_critical_and_rearms(monkeypatch, caplog) -> None:
    async def _run() -> None:
        db = _db()
        sched = _Sched(db)
        sched.start()
        sched.cancel_wake()
        sched.log.addHandler(caplog.handler)

        def _locked(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(db, "claim_tick", _locked)
        try:
            assert await sched.tick() is False
        finally:
            sched.log.removeHandler(caplog.handler)
        assert sched.runs == []
        assert sched.armed
        with pytest.raises(RuntimeError):
            await sched.tick(force_run=True)
        sched.stop()

    with caplog.at_level(logging.CRITICAL):
        asyncio.run(_run())
    assert any(r.levelno == logging.CRITICAL and "could not claim tick" in r.getMessage() for r in caplog.records)


def test_unknown_claim_result_skips_cycle(monkeypatch) -> None:
    db = _db()
    sched = _Sched(db)
    db.upsert_schedule("agent", "agent_t", status="running", interval="1h", next_wake_at=None)
    monkeypatch.setattr(db, "claim_tick", lambda *args, **kwargs: "unknown")
    assert asyncio.run(sched.tick()) is False
    assert sched.runs == []


def test_stale_deciding_flag_is_released() -> None:
    db = _db()
    db.upsert_schedule("agent", "a1", status="running", interval="1h", next_wake_at=None)
    assert db.claim_tick("agent", "a1") == CLAIM_OK
    assert db.claim_tick("agent", "a1") == CLAIM_BUSY

    conn = db._get_connection()
    with conn:
        conn.execute("UPDATE schedules SET deciding_since = ? WHERE owner_id = 'a1'", (time.time() - 1000.0,))
    assert db.claim_tick("agent", "a1", stale_after_seconds=900.0) == CLAIM_OK
    assert db.get_schedule("agent", "a1").tick_count == 2
