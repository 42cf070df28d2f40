# concierge/core/budget.py

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import math
from typing import Optional

from concierge.memory.db import get_connection
from concierge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SpendSnapshot:
    today: float
    month: float


@dataclass(frozen=True)
class SpendLimits:
    per_turn: float
    daily: Optional[float] = None
    monthly: Optional[float] = None


def _local_day(at: datetime) -> date:
    # aware timestamps are bucketed by the local calendar day
    return at.astimezone().date() if at.tzinfo is not None else at.date()


def _fmt_usd(value: float) -> str:
    formatted = f"{value:.6f}".rstrip("0").rstrip(".")
    return formatted or "0"


class BudgetGuard:
    """
    Day-bucketed spend ledger with per-turn, daily and monthly ceilings.

    A crash between a spend and its write loses that spend (under-count);
    nothing is ever counted twice.
    """

    def __init__(self, db_path: str, limits: SpendLimits, retention_days: int = 500) -> None:
        self.db_path = db_path
        self.limits = limits
        self.retention_days = retention_days

    def record_spend(self, amount_usd: float, at: Optional[datetime] = None) -> None:
        if amount_usd is None or not math.isfinite(amount_usd) or amount_usd <= 0:
            return
        at = at or datetime.now()
        day = _local_day(at)
        conn = get_connection(self.db_path)
        try:
            self._prune(conn, day)
            conn.execute(
                """
                INSERT INTO spend_ledger (day, amount_usd) VALUES (?, ?)
                ON CONFLICT(day) DO UPDATE SET amount_usd = amount_usd + excluded.amount_usd
                """,
                (day.isoformat(), float(amount_usd)),
            )
            conn.commit()
        finally:
            conn.close()

    def snapshot(self, at: Optional[datetime] = None) -> SpendSnapshot:
        at = at or datetime.now()
        day = _local_day(at)
        conn = get_connection(self.db_path)
        try:
            self._prune(conn, day)
            conn.commit()
            today_row = conn.execute(
                "SELECT amount_usd FROM spend_ledger WHERE day = ?", (day.isoformat(),)
            ).fetchone()
            month_row = conn.execute(
                "SELECT COALESCE(SUM(amount_usd), 0) AS total FROM spend_ledger WHERE day LIKE ?",
                (f"{day.year:04d}-{day.month:02d}-%",),
            ).fetchone()
        finally:
            conn.close()

        today = float(today_row["amount_usd"]) if today_row else 0.0
        month = float(month_row["total"]) if month_row else 0.0
        return SpendSnapshot(today=max(0.0, today), month=max(0.0, month))

    def check(self, turn_spend: float = 0.0, at: Optional[datetime] = None) -> Optional[str]:
        """
        Return a user-readable reason if any ceiling is already reached,
        counting `turn_spend` that has not been recorded yet.
        """
        snap = self.snapshot(at)
        today = snap.today + turn_spend
        month = snap.month + turn_spend

        if turn_spend >= self.limits.per_turn:
            return (f"the spend limit for a single reply was reached "
                    f"(${_fmt_usd(turn_spend)} / ${_fmt_usd(self.limits.per_turn)})")
        daily_hit = self.limits.daily is not None and today >= self.limits.daily
        monthly_hit = self.limits.monthly is not None and month >= self.limits.monthly
        if daily_hit and monthly_hit:
            return (f"both spend limits were reached (today: ${_fmt_usd(today)} / ${_fmt_usd(self.limits.daily)}; "
                    f"this month: ${_fmt_usd(month)} / ${_fmt_usd(self.limits.monthly)})")
        if daily_hit:
            return f"the daily spend limit was reached (today: ${_fmt_usd(today)} / ${_fmt_usd(self.limits.daily)})"
        if monthly_hit:
            return (f"the monthly spend limit was reached "
                    f"(this month: ${_fmt_usd(month)} / ${_fmt_usd(self.limits.monthly)})")
        return None

    def _prune(self, conn, day: date) -> None:
        cutoff = day - timedelta(days=self.retention_days)
        cur = conn.execute(
            "DELETE FROM spend_ledger WHERE day < ? OR amount_usd <= 0",
            (cutoff.isoformat(),),
        )
        if cur.rowcount:
            logger.info("Pruned %d spend ledger day(s) older than %s", cur.rowcount, cutoff.isoformat())
