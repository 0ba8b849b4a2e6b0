#!/usr/bin/env python3
"""
Durable recurring-tick state machine shared by agent and manager schedulers.

States: stopped -> running <-> paused, plus a transient ``deciding`` flag
held in the ``schedules`` row while a tick is in flight.

One asyncio timer (``loop.call_later``) per scheduler. The row is the
source of truth; the timer handle is only the in-process wake. Stop and
pause cancel the pending wake, never an in-flight tick; a tick's
``complete_and_reschedule`` step re-reads the status before re-arming.
"""

from __future__ import annotations

import abc
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from desk_db import (
    CLAIM_BUSY,
    CLAIM_MISSING,
    CLAIM_NOT_RUNNING,
    CLAIM_OK,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    DeskDB,
)
from logging_utils import get_logger


class TickConflict(RuntimeError):
    """A manual trigger was refused (tick in flight or never initialised)."""


@dataclass
class SchedulerSettings:
    first_tick_max_sec: float = 5.0
    auto_heal_grace_sec: float = 10.0
    auto_heal_delay_sec: float = 3.0
    deciding_stale_sec: float = 900.0
    snapshot_every_ticks: int = 6

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "SchedulerSettings":
        sched = ((config or {}).get("config") or {}).get("scheduler") or {}
        base = cls()
        return cls(
            first_tick_max_sec=float(sched.get("first_tick_max_sec", base.first_tick_max_sec)),
            auto_heal_grace_sec=float(sched.get("auto_heal_grace_sec", base.auto_heal_grace_sec)),
            auto_heal_delay_sec=float(sched.get("auto_heal_delay_sec", base.auto_heal_delay_sec)),
            deciding_stale_sec=float(sched.get("deciding_stale_sec", base.deciding_stale_sec)),
            snapshot_every_ticks=int(sched.get("snapshot_every_ticks", base.snapshot_every_ticks)),
        )


class TickScheduler(abc.ABC):
    kind = ""

    def __init__(self, owner_id: str, db: DeskDB, settings: Optional[SchedulerSettings] = None):
        self.owner_id = owner_id
        self.db = db
        self.settings = settings or SchedulerSettings()
        self.log = get_logger(f"{self.kind or 'tick'}_scheduler")
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def interval_label(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def interval_seconds(self) -> float:
        raise NotImplementedError

    @abc.abstractmethod
    async def run_cycle(self, force_run: bool) -> None:
        """One tick body. Exceptions are logged by ``tick``."""
        raise NotImplementedError

    def is_initialised(self) -> bool:
        return True

    def on_start(self) -> None:
        """Called before the first wake is armed (e.g. to initialise state)."""

    def set_owner_status(self, status: str) -> None:
        """Mirror the schedule status onto the owner's own row."""

    # ------------------------------------------------------------------
    # Timer plumbing
    # ------------------------------------------------------------------

    def cancel_wake(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self, delay: float) -> None:
        self.cancel_wake()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (one-shot CLI). The persisted next_wake_at is picked up by resume().
            self.log.debug("%s %s: no running loop, wake persisted only", self.kind, self.owner_id)
            return
        self._handle = loop.call_later(max(0.0, delay), self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.get_running_loop().create_task(self.tick())

    @property
    def armed(self) -> bool:
        return self._handle is not None

    async def wait_idle(self) -> None:
        """Await the timer-started tick, if one is in flight."""
        task = self._task
        if task is not None and not task.done():
            await task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.on_start()
        delay = min(self.settings.first_tick_max_sec, self.interval_seconds())
        self.db.upsert_schedule(
            self.kind,
            self.owner_id,
            status=STATUS_RUNNING,
            interval=self.interval_label(),
            next_wake_at=time.time() + delay,
        )
        self.set_owner_status(STATUS_RUNNING)
        self._arm(delay)
        self.log.info("%s %s started (first tick in %.1fs)", self.kind, self.owner_id, delay)

    def _halt(self, status: str) -> None:
        self.cancel_wake()
        if self.db.get_schedule(self.kind, self.owner_id) is not None:
            self.db.set_schedule_status(self.kind, self.owner_id, status)
            self.db.set_next_wake(self.kind, self.owner_id, None)
        self.set_owner_status(status)
        self.log.info("%s %s %s", self.kind, self.owner_id, status)

    def stop(self) -> None:
        self._halt(STATUS_STOPPED)

    def pause(self) -> None:
        self._halt(STATUS_PAUSED)

    def resume(self) -> bool:
        """Re-arm from the durable record after a process restart."""
        record = self.db.get_schedule(self.kind, self.owner_id)
        if record is None or record.status != STATUS_RUNNING:
            return False
        now = time.time()
        next_wake = record.next_wake_at if record.next_wake_at is not None else now
        self._arm(max(0.0, next_wake - now))
        return True

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def tick(self, force_run: bool = False) -> bool:
        """Run one tick. Returns False when the tick was skipped before claiming."""
        try:
            claim = self.db.claim_tick(
                self.kind,
                self.owner_id,
                force=force_run,
                stale_after_seconds=self.settings.deciding_stale_sec,
            )
        except Exception:
            if force_run:
                raise
            self.log.critical(
                "%s %s: could not claim tick; retrying in %ss",
                self.kind,
                self.owner_id,
                self.settings.auto_heal_delay_sec,
                exc_info=True,
            )
            self._arm(self.settings.auto_heal_delay_sec)
            return False
        if claim == CLAIM_BUSY:
            if force_run:
                raise TickConflict(f"{self.kind} {self.owner_id} is already deciding")
            self.log.info("%s %s: tick already in flight, skipping", self.kind, self.owner_id)
            return False
        if claim in (CLAIM_NOT_RUNNING, CLAIM_MISSING):
            if force_run:
                raise TickConflict(f"{self.kind} {self.owner_id} has no schedule")
            return False
        if claim != CLAIM_OK:
            self.log.warning("%s %s: unexpected claim result %r", self.kind, self.owner_id, claim)
            return False

        started = time.monotonic()
        try:
            await self.run_cycle(force_run)
        except Exception:
            self.log.exception("%s %s: tick failed", self.kind, self.owner_id)
        finally:
            self.complete_and_reschedule(started)
        return True

    def complete_and_reschedule(self, started: float) -> None:
        now = time.time()
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self.db.finish_tick(self.kind, self.owner_id, finished_at=now, duration_ms=duration_ms)
            record = self.db.get_schedule(self.kind, self.owner_id)
            if record is None or record.status != STATUS_RUNNING:
                return
            interval = self.interval_seconds()
            self.db.set_next_wake(self.kind, self.owner_id, now + interval)
            self._arm(interval)
        except Exception:
            self.log.critical(
                "%s %s: failed to reschedule after tick; it will not wake again until restarted",
                self.kind,
                self.owner_id,
                exc_info=True,
            )

    async def trigger(self) -> None:
        """Manual run regardless of status. Raises TickConflict if deciding or uninitialised."""
        if not self.is_initialised():
            raise TickConflict(f"{self.kind} {self.owner_id} was never started")
        record = self.db.get_schedule(self.kind, self.owner_id)
        if record is None:
            raise TickConflict(f"{self.kind} {self.owner_id} has no schedule")
        await self.tick(force_run=True)

    def status(self) -> Dict[str, Any]:
        """Current schedule record; re-arms a missed wake while running."""
        record = self.db.get_schedule(self.kind, self.owner_id)
        if record is None:
            return {"kind": self.kind, "owner_id": self.owner_id, "status": STATUS_STOPPED, "initialised": False}

        now = time.time()
        healed = False
        if (
            record.status == STATUS_RUNNING
            and not record.deciding
            and record.next_wake_at is not None
            and record.next_wake_at < now - self.settings.auto_heal_grace_sec
        ):
            delay = self.settings.auto_heal_delay_sec
            self.log.warning(
                "%s %s: wake overdue by %.0fs, re-arming in %.0fs",
                self.kind,
                self.owner_id,
                now - record.next_wake_at,
                delay,
            )
            self.db.set_next_wake(self.kind, self.owner_id, now + delay)
            self._arm(delay)
            record.next_wake_at = now + delay
            healed = True

        out = record.to_dict()
        out["initialised"] = self.is_initialised()
        out["healed"] = healed
        return out
