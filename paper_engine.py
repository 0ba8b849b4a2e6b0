#!/usr/bin/env python3
"""
Paper trading ledger.

Pure in-memory bookkeeping of one agent's virtual balance and positions.
No I/O; callers persist ``serialize()`` output and restore it with
``PaperEngine.deserialize()``.

Slippage is always applied against the holder:
- long (buy): pays more on entry, receives less on exit
- short (sell): receives less on entry, pays more on exit

Rejections are raised as ``LedgerError`` subclasses carrying a reason
string; the decision validator turns them into logged outcomes.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SIDE_BUY = "buy"
SIDE_SELL = "sell"

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
STATUS_STOPPED_OUT = "stopped_out"

DEFAULT_SLIPPAGE_PCT = 0.3


class LedgerError(ValueError):
    """A ledger operation was refused; ``reason`` is a short machine tag."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class PositionRejected(LedgerError):
    pass


class PositionNotFound(LedgerError):
    pass


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _new_position_id() -> str:
    return f"pos_{uuid.uuid4().hex[:16]}"


@dataclass
class Position:
    """One simulated trade."""
    id: str
    agent_id: str
    pair: str
    dex: str
    side: str  # buy (long) | sell (short)
    entry_price: float
    effective_entry_price: float
    amount_usd: float
    token_amount: float
    confidence_before: float
    reasoning: str
    strategy_used: str
    slippage_simulated: float  # fraction, e.g. 0.003
    status: str = STATUS_OPEN
    opened_at: str = ""
    closed_at: Optional[str] = None
    exit_price: Optional[float] = None
    effective_exit_price: Optional[float] = None
    pnl_pct: Optional[float] = None
    pnl_usd: Optional[float] = None
    confidence_after: Optional[float] = None
    close_reason: Optional[str] = None

    @property
    def is_long(self) -> bool:
        return self.side == SIDE_BUY

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=str(data["id"]),
            agent_id=str(data.get("agent_id") or ""),
            pair=str(data.get("pair") or ""),
            dex=str(data.get("dex") or ""),
            side=str(data.get("side") or SIDE_BUY),
            entry_price=float(data["entry_price"]),
            effective_entry_price=float(data["effective_entry_price"]),
            amount_usd=float(data["amount_usd"]),
            token_amount=float(data["token_amount"]),
            confidence_before=float(data.get("confidence_before") or 0.0),
            reasoning=str(data.get("reasoning") or ""),
            strategy_used=str(data.get("strategy_used") or ""),
            slippage_simulated=float(data.get("slippage_simulated") or 0.0),
            status=str(data.get("status") or STATUS_OPEN),
            opened_at=str(data.get("opened_at") or ""),
            closed_at=data.get("closed_at"),
            exit_price=data.get("exit_price"),
            effective_exit_price=data.get("effective_exit_price"),
            pnl_pct=data.get("pnl_pct"),
            pnl_usd=data.get("pnl_usd"),
            confidence_after=data.get("confidence_after"),
            close_reason=data.get("close_reason"),
        )


@dataclass
class LedgerState:
    balance: float
    initial_balance: float
    daily_start_balance: float
    last_daily_reset: str
    open_positions: Dict[str, Position] = field(default_factory=dict)
    closed_positions: List[Position] = field(default_factory=list)


class PaperEngine:
    """Virtual balance + positions for a single agent."""

    def __init__(self, balance: float, slippage_pct: float = DEFAULT_SLIPPAGE_PCT):
        # slippage_pct is a percent (0.3 -> 0.003 fraction)
        self.slippage = float(slippage_pct) / 100.0
        self.state = LedgerState(
            balance=float(balance),
            initial_balance=float(balance),
            daily_start_balance=float(balance),
            last_daily_reset=_utc_today(),
        )

    @property
    def balance(self) -> float:
        return self.state.balance

    @property
    def initial_balance(self) -> float:
        return self.state.initial_balance

    @property
    def open_positions(self) -> List[Position]:
        return list(self.state.open_positions.values())

    @property
    def closed_positions(self) -> List[Position]:
        return self.state.closed_positions

    def open_position(
        self,
        *,
        agent_id: str,
        pair: str,
        dex: str,
        side: str,
        price: float,
        amount_usd: float,
        max_position_size_pct: float,
        confidence: float,
        reasoning: str,
        strategy_used: str,
        slippage_pct: Optional[float] = None,
    ) -> Position:
        """Open a new paper position. Raises PositionRejected on constraint failure."""
        amount = float(amount_usd)
        balance = self.state.balance

        if amount <= 0:
            raise PositionRejected("non_positive_amount", "Position amount must be positive")
        if amount > balance:
            raise PositionRejected(
                "insufficient_balance",
                f"Insufficient balance: ${balance:.2f} < ${amount:.2f}",
            )
        max_allowed = balance * float(max_position_size_pct) / 100.0
        if amount > max_allowed:
            raise PositionRejected(
                "size_cap_exceeded",
                f"Position size ${amount:.2f} exceeds max allowed ${max_allowed:.2f} "
                f"({max_position_size_pct}% of ${balance:.2f} balance)",
            )
        if side not in (SIDE_BUY, SIDE_SELL):
            raise PositionRejected("invalid_side", f"Unknown side: {side}")
        if price <= 0:
            raise PositionRejected("invalid_price", f"Entry price must be positive, got {price}")

        slippage = self.slippage if slippage_pct is None else float(slippage_pct) / 100.0
        if side == SIDE_BUY:
            effective = price * (1 + slippage)
        else:
            effective = price * (1 - slippage)

        position = Position(
            id=_new_position_id(),
            agent_id=agent_id,
            pair=pair,
            dex=dex,
            side=side,
            entry_price=float(price),
            effective_entry_price=effective,
            amount_usd=amount,
            token_amount=amount / effective,
            confidence_before=float(confidence),
            reasoning=reasoning,
            strategy_used=strategy_used,
            slippage_simulated=slippage,
            status=STATUS_OPEN,
            opened_at=_utc_now_iso(),
        )

        self.state.balance -= amount
        self.state.open_positions[position.id] = position
        return position

    def close_position(
        self,
        position_id: str,
        price: float,
        confidence: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Position:
        """Close an open position at ``price`` and realize P&L."""
        position = self.state.open_positions.get(position_id)
        if position is None:
            raise PositionNotFound(
                "not_found",
                f"Position {position_id} not found or already closed",
            )

        # Exit slippage uses the rate recorded at open, not the ledger default.
        s = position.slippage_simulated
        if position.is_long:
            effective_exit = price * (1 - s)
            proceeds = position.token_amount * effective_exit
            pnl_pct = (effective_exit - position.effective_entry_price) / position.effective_entry_price * 100
        else:
            effective_exit = price * (1 + s)
            proceeds = position.amount_usd * 2 - position.token_amount * effective_exit
            pnl_pct = (position.effective_entry_price - effective_exit) / position.effective_entry_price * 100

        position.status = STATUS_CLOSED
        position.exit_price = float(price)
        position.effective_exit_price = effective_exit
        position.pnl_pct = pnl_pct
        position.pnl_usd = proceeds - position.amount_usd
        position.confidence_after = confidence
        position.close_reason = reason
        position.closed_at = _utc_now_iso()

        self.state.balance += proceeds
        del self.state.open_positions[position_id]
        self.state.closed_positions.append(position)
        return position

    def stop_out_position(self, position_id: str, price: float) -> Position:
        """Close with status stopped_out (same entry in closed history)."""
        closed = self.close_position(position_id, price, reason="Stop loss triggered")
        closed.status = STATUS_STOPPED_OUT
        return closed

    def daily_pnl_pct(self) -> float:
        """Daily P&L percent. Resets the daily basis once per UTC date."""
        today = _utc_today()
        if today != self.state.last_daily_reset:
            self.state.daily_start_balance = self.state.balance
            self.state.last_daily_reset = today
        start = self.state.daily_start_balance
        if start == 0:
            return 0.0
        return (self.state.balance - start) / start * 100

    def total_pnl_pct(self) -> float:
        initial = self.state.initial_balance
        if initial == 0:
            return 0.0
        return (self.state.balance - initial) / initial * 100

    def win_rate(self) -> float:
        closed = self.state.closed_positions
        if not closed:
            return 0.0
        wins = sum(1 for p in closed if (p.pnl_pct or 0.0) > 0)
        return wins / len(closed)

    def serialize(self) -> Dict[str, Any]:
        return {
            "balance": self.state.balance,
            "initial_balance": self.state.initial_balance,
            "positions": [p.to_dict() for p in self.state.open_positions.values()],
            "closed_positions": [p.to_dict() for p in self.state.closed_positions],
            "daily_start_balance": self.state.daily_start_balance,
            "last_daily_reset": self.state.last_daily_reset,
            "slippage": self.slippage,
            "slippage_pct": self.slippage * 100.0,
        }

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> "PaperEngine":
        engine = cls(balance=float(data["balance"]))
        if "slippage" in data:
            engine.slippage = float(data["slippage"])
        elif "slippage_pct" in data:
            engine.slippage = float(data["slippage_pct"]) / 100.0
        engine.state.initial_balance = float(data["initial_balance"])
        engine.state.daily_start_balance = float(data["daily_start_balance"])
        engine.state.last_daily_reset = str(data["last_daily_reset"])
        engine.state.closed_positions = [Position.from_dict(p) for p in data.get("closed_positions") or []]
        for raw in data.get("positions") or []:
            pos = Position.from_dict(raw)
            engine.state.open_positions[pos.id] = pos
        return engine
