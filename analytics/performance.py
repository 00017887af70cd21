"""
eurusd-bot Analytics: Session Performance

Aggregates closed trades into the running Performance record:
win rate, total pnl, peak-to-trough drawdown on cumulative realized pnl,
a per-trade Sharpe-like ratio and the profit factor.
"""

import logging
import math
from typing import Iterable, List, Optional

from core.models import Performance, Trade

logger = logging.getLogger(__name__)


def max_drawdown(pnls: Iterable[float]) -> float:
    """Largest drop from a running peak of cumulative pnl (peak starts at 0)."""
    peak = 0.0
    running = 0.0
    worst = 0.0
    for pnl in pnls:
        running += pnl
        peak = max(peak, running)
        worst = max(worst, peak - running)
    return worst


def sharpe_ratio(pnls: List[float]) -> float:
    """mean / population stdev of per-trade pnl; 0 with fewer than two trades."""
    if len(pnls) < 2:
        return 0.0
    mean = sum(pnls) / len(pnls)
    variance = sum((p - mean) ** 2 for p in pnls) / len(pnls)
    std = math.sqrt(variance)
    return mean / std if std > 0 else 0.0


def compute_performance(trades: Iterable[Trade], reference_balance: Optional[float] = None) -> Performance:
    """
    Build a Performance record from the closed trades in ``trades``.

    Trades are taken in the order given. ``max_drawdown_pct`` is relative to
    ``reference_balance`` (the session's starting balance) when one is known.
    """
    closed = [t for t in trades if t.is_closed]
    if not closed:
        return Performance()

    pnls = [t.realized_pnl or 0.0 for t in closed]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    avg_win = sum(wins) / len(wins) if wins else 0.0
    avg_loss = abs(sum(losses) / len(losses)) if losses else 0.0
    drawdown = max_drawdown(pnls)

    drawdown_pct = 0.0
    if reference_balance and reference_balance > 0:
        drawdown_pct = drawdown / reference_balance * 100.0

    return Performance(
        total_trades=len(closed),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(closed) * 100.0,
        total_pnl=sum(pnls),
        max_drawdown=drawdown,
        max_drawdown_pct=drawdown_pct,
        sharpe_ratio=sharpe_ratio(pnls),
        profit_factor=(len(wins) * avg_win) / (len(losses) * avg_loss) if avg_loss > 0 else 0.0,
        avg_win=avg_win,
        avg_loss=avg_loss,
    )


def format_summary(performance: Performance) -> str:
    """One-line human summary for logs."""
    return (
        f"trades={performance.total_trades} "
        f"win_rate={performance.win_rate:.1f}% "
        f"pnl={performance.total_pnl:+.2f} "
        f"max_dd={performance.max_drawdown:.2f} ({performance.max_drawdown_pct:.2f}%) "
        f"sharpe={performance.sharpe_ratio:.2f} "
        f"pf={performance.profit_factor:.2f}"
    )
