# leave.py - AAC Forms
# Annual leave records, leave-aware due-date countdown, date display

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import config
from db import BackendError, get_conn

log = logging.getLogger(__name__)

NO_DUE_DATE = "No due date"
OVERDUE = "Overdue"
ON_LEAVE = "On Leave"
INVALID_DATE = "Invalid date"
NO_DATE = "No date"

_FRACTION_RE = re.compile(r"\.(\d+)")


# -------------------------------------------------
# Dates
# -------------------------------------------------

def _normalize_iso(s: str) -> str:
    s = s.strip()
    if s[-1:] in ("Z", "z"):
        s = s[:-1] + "+00:00"
    # fromisoformat wants exactly 3 or 6 fractional digits on older interpreters
    return _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], s, count=1)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accepts date / datetime objects or ISO strings (date-only, 'Z', offsets,
    naive). Naive values are taken as UTC. Raises ValueError when unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(_normalize_iso(s))
        except ValueError as e:
            raise ValueError(f"Invalid date: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    try:
        return date.fromisoformat(s[:10])
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e


def format_date(value: Any) -> str:
    if value in (None, ""):
        return NO_DATE
    try:
        dt = parse_timestamp(value)
    except ValueError:
        log.warning("Error formatting date %r", value)
        return INVALID_DATE
    return dt.strftime("%d/%m/%Y") if dt else NO_DATE


def _iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        if current == end:
            break
        current += timedelta(days=1)


# -------------------------------------------------
# Leave records
# -------------------------------------------------

def check_user_on_leave(user_id: str, day: Any) -> bool:
    try:
        day_s = as_date(day).isoformat()
    except ValueError:
        return False
    try:
        with get_conn() as conn:
            rows = (
                conn.table("annual_leave")
                .select("id")
                .eq("employee_id", user_id)
                .eq("status", "approved")
                .lte("start_date", day_s)
                .gte("end_date", day_s)
                .limit(1)
                .execute()
            )
    except BackendError as e:
        # Countdown falls back to plain Overdue.
        log.error("Error checking annual leave for %s: %s", user_id, e.message)
        return False
    return bool(rows)


def save_annual_leave(
    user_id: str,
    start: Any,
    end: Any = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    if not user_id:
        raise ValueError("Unable to get current user information")
    if start in (None, ""):
        raise ValueError("Please select at least a start date for your annual leave")
    start_d = as_date(start)
    end_d = as_date(end) if end not in (None, "") else start_d
    if end_d < start_d:
        start_d, end_d = end_d, start_d
    with get_conn() as conn:
        row = (
            conn.table("annual_leave")
            .insert(
                {
                    "employee_id": user_id,
                    "start_date": start_d.isoformat(),
                    "end_date": end_d.isoformat(),
                    "status": "approved" if config.LEAVE_AUTO_APPROVE else "pending",
                    "reason": (reason or "").strip() or None,
                }
            )
            .select("*")
            .single()
            .execute()
        )
    log.info("Annual leave saved for %s: %s to %s", user_id, start_d, end_d)
    return row


def get_user_annual_leave(user_id: str) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return (
            conn.table("annual_leave")
            .select("*")
            .eq("employee_id", user_id)
            .order("start_date")
            .execute()
        )


# -------------------------------------------------
# Countdown
# -------------------------------------------------

def calculate_time_remaining(
    due: Any,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    if due in (None, ""):
        return NO_DUE_DATE
    try:
        due_dt = parse_timestamp(due)
    except ValueError:
        return INVALID_DATE
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    seconds = (due_dt - now).total_seconds()
    if seconds < 0:
        if user_id and check_user_on_leave(user_id, due_dt.astimezone(timezone.utc).date()):
            return ON_LEAVE
        return OVERDUE
    total_minutes = int(seconds // 60)
    days, rem = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# -------------------------------------------------
# Range picker
# -------------------------------------------------

@dataclass
class LeaveSelection:
    start: Optional[str] = None
    end: Optional[str] = None

    @classmethod
    def from_values(cls, start: Any = None, end: Any = None) -> "LeaveSelection":
        """Build a selection from raw request values; raises ValueError on a bad date."""
        start_s = as_date(start).isoformat() if start else None
        end_s = as_date(end).isoformat() if end else None
        if end_s and not start_s:
            start_s, end_s = end_s, None
        if start_s and end_s and end_s < start_s:
            start_s, end_s = end_s, start_s
        return cls(start=start_s, end=end_s)

    def pick(self, day: Any) -> "LeaveSelection":
        d = as_date(day).isoformat()
        if not self.start or self.end:
            self.start, self.end = d, None
        elif d < self.start:
            self.start, self.end = d, self.start
        else:
            self.end = d
        return self

    def reset(self) -> None:
        self.start = None
        self.end = None

    def save_range(self) -> Tuple[str, str]:
        if not self.start:
            raise ValueError("Please select at least a start date for your annual leave")
        return self.start, self.end or self.start

    @property
    def instructions(self) -> str:
        if not self.start:
            return "Select start date for your annual leave"
        if not self.end:
            return "Select end date for your annual leave (or save with just start date)"
        return f"Selected: {self.start} to {self.end}"


@dataclass
class DayMark:
    kind: str
    starting_day: bool = False
    ending_day: bool = False


def _mark_range(
    marks: Dict[str, DayMark],
    kind: str,
    start: date,
    end: date,
    window: Optional[Tuple[date, date]],
) -> None:
    lo, hi = start, end
    if window:
        lo, hi = max(lo, window[0]), min(hi, window[1])
    for d in _iter_days(lo, hi):
        marks[d.isoformat()] = DayMark(kind, d == start, d == end)


def marked_dates(
    selection: Optional[LeaveSelection],
    existing: Iterable[Dict[str, Any]],
    window: Optional[Tuple[date, date]] = None,
) -> Dict[str, DayMark]:
    """
    Calendar marks keyed by ISO day. Selected days win over saved leave.
    When a (first, last) window is given only days inside it are marked.
    """
    marks: Dict[str, DayMark] = {}
    for leave in existing or []:
        try:
            start = as_date(leave.get("start_date"))
            end = as_date(leave.get("end_date"))
        except ValueError:
            continue
        _mark_range(marks, "existing", start, end, window)
    if selection and selection.start:
        start = as_date(selection.start)
        end = as_date(selection.end) if selection.end else start
        _mark_range(marks, "selected", start, end, window)
    return dict(sorted(marks.items()))
