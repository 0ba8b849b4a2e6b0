#!/usr/bin/env python3
"""Paper ledger math and rejection regressions."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import paper_engine as engine_module
from paper_engine import (
    STATUS_CLOSED,
    STATUS_STOPPED_OUT,
    PaperEngine,
    PositionNotFound,
    PositionRejected,
)


def _open(engine: PaperEngine, **overrides):
    kwargs = dict(
        agent_id="agent_1",
        pair="WETH/USDC",
        dex="aerodrome",
        side="buy",
        price=100.0,
        amount_usd=500.0,
        max_position_size_pct=5.0,
        confidence=0.8,
        reasoning="test",
        strategy_used="combined",
    )
    kwargs.update(overrides)
    return engine.open_position(**kwargs)


def test_long_entry_pays_more_and_exit_receives_less() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.3)
    pos = _open(engine)
    assert pos.effective_entry_price == pytest.approx(100.3)
    assert pos.token_amount == pytest.approx(500.0 / 100.3)
    assert engine.balance == pytest.approx(9500.0)

    closed = engine.close_position(pos.id, 100.0)
    assert closed.effective_exit_price == pytest.approx(99.7)
    assert closed.pnl_usd < 0
    assert closed.status == STATUS_CLOSED
    assert engine.balance == pytest.approx(9500.0 + pos.token_amount * 99.7)


def test_short_entry_receives_less_and_exit_pays_more() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.3)
    pos = _open(engine, side="sell")
    assert pos.effective_entry_price == pytest.approx(99.7)

    closed = engine.close_position(pos.id, 90.0)
    assert closed.effective_exit_price == pytest.approx(90.27)
    expected_proceeds = 2 * 500.0 - pos.token_amount * 90.27
    assert closed.pnl_usd == pytest.approx(expected_proceeds - 500.0)
    assert closed.pnl_pct == pytest.approx((99.7 - 90.27) / 99.7 * 100)
    assert engine.balance == pytest.approx(9500.0 + expected_proceeds)


def test_zero_slippage_round_trip_is_flat() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.0)
    pos = _open(engine)
    closed = engine.close_position(pos.id, 100.0)
    assert closed.pnl_usd == pytest.approx(0.0)
    assert closed.pnl_pct == pytest.approx(0.0)
    assert engine.balance == pytest.approx(10000.0)


def test_close_uses_slippage_recorded_on_the_position() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.3)
    pos = _open(engine, slippage_pct=1.0)
    assert pos.slippage_simulated == pytest.approx(0.01)
    closed = engine.close_position(pos.id, 100.0)
    assert closed.effective_exit_price == pytest.approx(99.0)


def test_non_positive_amount_is_rejected() -> None:
    engine = PaperEngine(10000.0)
    for amount in (0.0, -5.0):
        with pytest.raises(PositionRejected) as exc:
            _open(engine, amount_usd=amount)
        assert exc.value.reason == "non_positive_amount"
    assert engine.balance == 10000.0
    assert engine.open_positions == []


def test_size_cap_boundary_is_inclusive() -> None:
    engine = PaperEngine(10000.0)
    pos = _open(engine, amount_usd=500.0, max_position_size_pct=5.0)
    assert pos.amount_usd == 500.0

    engine2 = PaperEngine(10000.0)
    with pytest.raises(PositionRejected) as exc:
        _open(engine2, amount_usd=500.01, max_position_size_pct=5.0)
    assert exc.value.reason == "size_cap_exceeded"


def test_insufficient_balance_is_checked_before_size_cap() -> None:
    engine = PaperEngine(100.0)
    with pytest.raises(PositionRejected) as exc:
        _open(engine, amount_usd=150.0, max_position_size_pct=5.0)
    assert exc.value.reason == "insufficient_balance"


def test_invalid_side_is_rejected() -> None:
    engine = PaperEngine(10000.0)
    with pytest.raises(PositionRejected) as exc:
        _open(engine, side="hold")
    assert exc.value.reason == "invalid_side"


def test_double_close_raises_not_found() -> None:
    engine = PaperEngine(10000.0)
    pos = _open(engine)
    engine.close_position(pos.id, 101.0)
    with pytest.raises(PositionNotFound):
        engine.close_position(pos.id, 101.0)
    assert len(engine.closed_positions) == 1


def test_stop_out_marks_status_and_reason() -> None:
    engine = PaperEngine(10000.0)
    pos = _open(engine)
    closed = engine.stop_out_position(pos.id, 94.0)
    assert closed.status == STATUS_STOPPED_OUT
    assert closed.close_reason == "Stop loss triggered"
    assert engine.closed_positions[-1] is closed
    assert engine.open_positions == []


def test_daily_pnl_resets_on_new_utc_date(monkeypatch) -> None:
    monkeypatch.setattr(engine_module, "_utc_today", lambda: "2026-01-01")
    engine = PaperEngine(1000.0, slippage_pct=0.0)
    pos = _open(engine, amount_usd=50.0)
    engine.close_position(pos.id, 80.0)
    assert engine.daily_pnl_pct() == pytest.approx(-1.0)

    monkeypatch.setattr(engine_module, "_utc_today", lambda: "2026-01-02")
    assert engine.daily_pnl_pct() == pytest.approx(0.0)
    assert engine.state.daily_start_balance == pytest.approx(990.0)
    assert engine.total_pnl_pct() == pytest.approx(-1.0)


def test_win_rate_counts_profitable_closes() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.0)
    a = _open(engine, amount_usd=100.0)
    b = _open(engine, amount_usd=100.0)
    engine.close_position(a.id, 110.0)
    engine.close_position(b.id, 90.0)
    assert engine.win_rate() == pytest.approx(0.5)


def test_serialize_round_trip_preserves_state() -> None:
    engine = PaperEngine(10000.0, slippage_pct=0.3)
    kept = _open(engine)
    done = _open(engine, side="sell", amount_usd=400.0)
    engine.close_position(done.id, 95.0)

    restored = PaperEngine.deserialize(engine.serialize())
    assert restored.balance == pytest.approx(engine.balance)
    assert restored.initial_balance == 10000.0
    assert restored.slippage == engine.slippage
    assert [p.id for p in restored.open_positions] == [kept.id]
    assert restored.closed_positions[0].pnl_usd == pytest.approx(done.pnl_usd)
