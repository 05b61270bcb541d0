"""
CapTracker -- Rolling weekly/monthly lead cap windows.

Responsibility:
    Decides whether a new lead may count against a Connection's caps and
    computes the counter values to persist when it does.  Caps protect
    buyers from unlimited lead obligations.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The caller
    (ConnectionRegistry) persists ``CounterUpdate`` atomically with the
    eligibility check.

Window rules:
    - Weeks are Monday-anchored: a Sunday belongs to the week that began
      six days earlier.
    - Months start on the first calendar day.
    - Window keys are ISO date strings (``YYYY-MM-DD``) computed in one
      fixed reference time zone so they are reproducible across hosts.
    - A stored key that differs from the current key means the stored
      counter belongs to an old window; its effective value is 0.  The
      stored counter is only physically reset by the next authorized
      submission.

Invariants enforced:
    - ``can_submit`` is False iff a configured limit is already reached
      in the current window.
    - Remaining counts are never negative.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from leadpay_kernel.domain.terms import LeadCaps


def resolve_timezone(name: str) -> tzinfo:
    """Map a configured zone name to a tzinfo (UTC needs no tz database)."""
    if name.upper() in ("UTC", "Z", "ETC/UTC"):
        return timezone.utc
    return ZoneInfo(name)


def week_start(day: date) -> date:
    """Most recent Monday on or before ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_week_start(day: date) -> date:
    return week_start(day) + timedelta(days=7)


def next_month_start(day: date) -> date:
    first = month_start(day)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


@dataclass(frozen=True)
class CapWindow:
    """Current window keys for an instant."""

    week_start: str
    month_start: str
    next_week_start: str
    next_month_start: str


@dataclass(frozen=True)
class LeadCounters:
    """The cap-relevant slice of a Connection's stats."""

    leads_this_week: int
    leads_this_month: int
    week_start_date: str | None
    month_start_date: str | None


@dataclass(frozen=True)
class CapStatus:
    """Typed result of a cap evaluation."""

    weekly_cap_reached: bool
    monthly_cap_reached: bool
    weekly_remaining: int | None
    monthly_remaining: int | None
    can_submit: bool
    leads_this_week: int
    leads_this_month: int
    weekly_reset: bool
    monthly_reset: bool
    window: CapWindow
    message: str | None = None
    pause_when_cap_reached: bool = True

    @property
    def reset_hint(self) -> str:
        if self.message:
            return self.message
        return "Lead caps not reached"


@dataclass(frozen=True)
class CounterUpdate:
    """Counter values to persist for an authorized submission."""

    leads_this_week: int
    leads_this_month: int
    week_start_date: str
    month_start_date: str


class CapTracker:
    """Evaluates lead caps in a fixed reference time zone."""

    def __init__(self, timezone_name: str = "UTC"):
        self._tz = resolve_timezone(timezone_name)
        self._timezone_name = timezone_name

    @property
    def timezone_name(self) -> str:
        return self._timezone_name

    def local_date(self, now: datetime) -> date:
        if now.tzinfo is None:
            # Naive instants are taken as UTC
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self._tz).date()

    def window(self, now: datetime) -> CapWindow:
        today = self.local_date(now)
        return CapWindow(
            week_start=week_start(today).isoformat(),
            month_start=month_start(today).isoformat(),
            next_week_start=next_week_start(today).isoformat(),
            next_month_start=next_month_start(today).isoformat(),
        )

    def evaluate(
        self,
        counters: LeadCounters,
        caps: LeadCaps | None,
        now: datetime,
    ) -> CapStatus:
        """Decide submission eligibility for the current window."""
        window = self.window(now)
        weekly_reset = counters.week_start_date != window.week_start
        monthly_reset = counters.month_start_date != window.month_start
        this_week = 0 if weekly_reset else counters.leads_this_week
        this_month = 0 if monthly_reset else counters.leads_this_month

        if caps is None:
            return CapStatus(
                weekly_cap_reached=False,
                monthly_cap_reached=False,
                weekly_remaining=None,
                monthly_remaining=None,
                can_submit=True,
                leads_this_week=this_week,
                leads_this_month=this_month,
                weekly_reset=weekly_reset,
                monthly_reset=monthly_reset,
                window=window,
            )

        weekly_reached = caps.weekly_limit is not None and this_week >= caps.weekly_limit
        monthly_reached = caps.monthly_limit is not None and this_month >= caps.monthly_limit
        weekly_remaining = (
            max(0, caps.weekly_limit - this_week) if caps.weekly_limit is not None else None
        )
        monthly_remaining = (
            max(0, caps.monthly_limit - this_month) if caps.monthly_limit is not None else None
        )

        return CapStatus(
            weekly_cap_reached=weekly_reached,
            monthly_cap_reached=monthly_reached,
            weekly_remaining=weekly_remaining,
            monthly_remaining=monthly_remaining,
            can_submit=not weekly_reached and not monthly_reached,
            leads_this_week=this_week,
            leads_this_month=this_month,
            weekly_reset=weekly_reset,
            monthly_reset=monthly_reset,
            window=window,
            message=_cap_message(caps, weekly_reached, monthly_reached, window),
            pause_when_cap_reached=caps.pause_when_cap_reached,
        )

    def next_counters(self, status: CapStatus) -> CounterUpdate:
        """Counters after one more lead in the evaluated window.

        A reset window restarts at 1; the window keys are always
        overwritten with the current ones.
        """
        return CounterUpdate(
            leads_this_week=status.leads_this_week + 1,
            leads_this_month=status.leads_this_month + 1,
            week_start_date=status.window.week_start,
            month_start_date=status.window.month_start,
        )


def _cap_message(
    caps: LeadCaps,
    weekly_reached: bool,
    monthly_reached: bool,
    window: CapWindow,
) -> str | None:
    if weekly_reached and monthly_reached:
        message = (
            "Both weekly and monthly lead caps have been reached. "
            f"Resets {window.next_month_start}."
        )
    elif weekly_reached:
        message = (
            f"Weekly lead cap reached ({caps.weekly_limit} leads). "
            f"Resets Monday {window.next_week_start}."
        )
    elif monthly_reached:
        message = (
            f"Monthly lead cap reached ({caps.monthly_limit} leads). "
            f"Resets {window.next_month_start}."
        )
    else:
        return None
    if caps.pause_when_cap_reached:
        return f"{message} Submissions resume automatically in the next window."
    return f"{message} New leads are rejected until then."


def format_cap_status(caps: LeadCaps | None, leads_this_week: int, leads_this_month: int) -> str:
    """Short display form, e.g. ``"3/5 weekly | 10/20 monthly"``."""
    if caps is None:
        return "Unlimited"
    parts = []
    if caps.weekly_limit is not None:
        parts.append(f"{leads_this_week}/{caps.weekly_limit} weekly")
    if caps.monthly_limit is not None:
        parts.append(f"{leads_this_month}/{caps.monthly_limit} monthly")
    return " | ".join(parts) if parts else "Unlimited"
