#!/usr/bin/env python3
"""Small technical-indicator helpers over close prices (oldest first)."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence

MIN_CLOSES = 14


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the SMA of the first ``period`` values."""
    if len(values) < period or period <= 0:
        return []
    k = 2 / (period + 1)
    ema = sum(values[:period]) / period
    out = [ema]
    for v in values[period:]:
        ema = v * k + ema * (1 - k)
        out.append(ema)
    return out


def rsi(values: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder RSI of the last bar."""
    if len(values) < period + 1:
        return None
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        delta = values[i] - values[i - 1]
        if delta >= 0:
            gains += delta
        else:
            losses -= delta
    avg_gain = gains / period
    avg_loss = losses / period
    for i in range(period + 1, len(values)):
        delta = values[i] - values[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(delta, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-delta, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def macd_histogram(values: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Optional[float]:
    slow_ema = ema_series(values, slow)
    if not slow_ema:
        return None
    fast_ema = ema_series(values, fast)
    # Align fast EMA to the slow EMA's first bar.
    offset = slow - fast
    macd_line = [f - s for f, s in zip(fast_ema[offset:], slow_ema)]
    signal_line = ema_series(macd_line, signal)
    if not signal_line:
        return None
    return macd_line[-1] - signal_line[-1]


def bollinger_percent_b(
    values: Sequence[float],
    period: int = 20,
    mult: float = 2.0,
    price: Optional[float] = None,
) -> Optional[float]:
    if len(values) < period:
        return None
    window = values[-period:]
    mean = sum(window) / period
    std = math.sqrt(sum((v - mean) ** 2 for v in window) / period)
    upper = mean + mult * std
    lower = mean - mult * std
    width = upper - lower
    if width <= 0:
        return None
    last = values[-1] if price is None else price
    return (last - lower) / width


def summarize(closes: Sequence[float], price: float) -> Dict[str, Any]:
    """Indicator summary for the analysis prompt.

    Only computed from real OHLCV closes; with fewer than MIN_CLOSES we
    report that indicators were skipped instead of inventing prices.
    """
    if len(closes) < MIN_CLOSES:
        return {"note": "No OHLCV data available, indicators skipped"}

    out: Dict[str, Any] = {}
    last_rsi = rsi(closes)
    if last_rsi is not None:
        out["rsi"] = f"{last_rsi:.2f}"
    ema9 = ema_series(closes, 9)
    ema21 = ema_series(closes, 21)
    if ema9 and ema21:
        out["ema9"] = f"{ema9[-1]:.4f}"
        out["ema21"] = f"{ema21[-1]:.4f}"
        out["emaTrend"] = "bullish" if ema9[-1] > ema21[-1] else "bearish"
    hist = macd_histogram(closes)
    if hist is not None:
        out["macdHistogram"] = f"{hist:.6f}"
    pb = bollinger_percent_b(closes, price=price if price > 0 else None)
    if pb is not None:
        out["bollingerPB"] = f"{pb:.3f}"
    return out
