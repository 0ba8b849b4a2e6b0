#!/usr/bin/env python3
"""Stateless risk predicates layered on the paper ledger."""

from __future__ import annotations

import time
from typing import Optional

from paper_engine import PaperEngine, Position


def stop_loss_triggered(position: Position, current_price: float, stop_loss_pct: float) -> bool:
    """True when the adverse move from effective entry reaches ``stop_loss_pct``."""
    threshold = float(stop_loss_pct) / 100.0
    entry = position.effective_entry_price
    if position.is_long:
        loss = (entry - current_price) / entry
    else:
        loss = (current_price - entry) / entry
    return loss >= threshold


def take_profit_triggered(position: Position, current_price: float, take_profit_pct: float) -> bool:
    threshold = float(take_profit_pct) / 100.0
    entry = position.effective_entry_price
    if position.is_long:
        gain = (current_price - entry) / entry
    else:
        gain = (entry - current_price) / entry
    return gain >= threshold


def daily_loss_breached(engine: PaperEngine, max_daily_loss_pct: float) -> bool:
    """Caller must pause the agent's schedule when this is True.

    Note: reads ``engine.daily_pnl_pct()``, which may roll the daily basis.
    """
    return engine.daily_pnl_pct() <= -float(max_daily_loss_pct)


def cooldown_active(cooldown_until: Optional[float], now: Optional[float] = None) -> bool:
    if not cooldown_until:
        return False
    now = time.time() if now is None else now
    return now < float(cooldown_until)


def cooldown_deadline(cooldown_minutes: float, now: Optional[float] = None) -> float:
    """Epoch seconds at which a stop-loss cooldown ends."""
    now = time.time() if now is None else now
    return now + float(cooldown_minutes) * 60.0
