"""
Daily Allowance Calculator - pure functions over ledger state and wall-clock time.

The daily pool resets on the calendar day boundary of the deployment's
reference timezone (server-local unless LEDGER_TIMEZONE is set), not the
account holder's timezone. Nothing here mutates state: a reset that is due
but not yet written is simply treated as already applied.
"""

from datetime import date, datetime, tzinfo

from wispr.models.domain import LedgerSnapshot


def local_day(moment: datetime, tz: tzinfo | None = None) -> date:
    """Calendar day of `moment` in the reference timezone (server-local when tz is None)."""
    return moment.astimezone(tz).date()


def is_reset_due(last_daily_reset_at: datetime | None, now: datetime, tz: tzinfo | None = None) -> bool:
    """
    True when the daily counter should be treated as zero.

    A missing reset timestamp counts as "reset infinitely long ago".
    """
    if last_daily_reset_at is None:
        return True
    return local_day(last_daily_reset_at, tz) < local_day(now, tz)


def effective_daily_used(
    ledger: LedgerSnapshot, now: datetime, tz: tzinfo | None = None
) -> int:
    """Daily hints consumed today, ignoring a stale counter from a previous day."""
    if is_reset_due(ledger.last_daily_reset_at, now, tz):
        return 0
    return ledger.daily_hints_used


def available_today(
    ledger: LedgerSnapshot, daily_quota: int, now: datetime, tz: tzinfo | None = None
) -> int:
    """Free hints left in today's pool."""
    return max(0, daily_quota - effective_daily_used(ledger, now, tz))


def total_available(
    ledger: LedgerSnapshot, daily_quota: int, now: datetime, tz: tzinfo | None = None
) -> int:
    """Free hints left today plus the persistent bonus balance."""
    return available_today(ledger, daily_quota, now, tz) + ledger.bonus_hints
