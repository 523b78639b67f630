"""
Schedule policies and logical slot arithmetic.

A graph is scheduled by one of:
- interval: slots at start_date + k * interval
- cron: slots at the fire times of a 5-field cron expression
- manual: never materialized by the scheduler, only by trigger/backfill

A slot names the start of the period a run covers. The slot is *due* once
its period has closed, i.e. when the following slot is at or before now.
All datetimes are timezone-aware UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

ScheduleKind = Literal["interval", "cron", "manual"]

PRESETS = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

MANUAL_VALUES = (None, "manual", "@none", "@once")

# (low, high) for minute, hour, day-of-month, month, day-of-week
_FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))

_MAX_SEARCH_STEPS = 200_000
_MINUTE = timedelta(minutes=1)


def _parse_field(text: str, low: int, high: int, is_weekday: bool = False) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"Invalid step in cron field '{text}'")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = int(part)
            end = high if step > 1 else start
        # 7 is an alias for Sunday in day-of-week
        field_high = 7 if is_weekday else high
        if start < low or end > field_high or start > end:
            raise ValueError(f"Cron field '{text}' out of range {low}-{high}")
        values.update(v % 7 if is_weekday else v for v in range(start, end + 1, step))
    return frozenset(values)


class CronExpression:
    """
    A standard 5-field cron expression: minute hour day-of-month month day-of-week.

    Supports `*`, lists (`1,15`), ranges (`1-5`), steps (`*/15`, `0-30/10`)
    and the usual rule that a restricted day-of-month and a restricted
    day-of-week match when either does.
    """

    def __init__(self, expression: str):
        expression = PRESETS.get(expression.strip(), expression.strip())
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"Cron expression must have 5 fields: '{expression}'")
        self.expression = expression
        self.minutes, self.hours, self.days, self.months, self.weekdays = (
            _parse_field(part, low, high, is_weekday=(i == 4))
            for i, (part, (low, high)) in enumerate(zip(parts, _FIELD_BOUNDS))
        )
        self._any_day = parts[2] == "*"
        self._any_weekday = parts[4] == "*"

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"

    def _day_matches(self, t: datetime) -> bool:
        dom = t.day in self.days
        # cron counts Sunday as 0, Python counts Monday as 0
        dow = (t.weekday() + 1) % 7 in self.weekdays
        if self._any_day and self._any_weekday:
            return True
        if self._any_day:
            return dow
        if self._any_weekday:
            return dom
        return dom or dow

    def matches(self, t: datetime) -> bool:
        return (
            t.second == 0
            and t.microsecond == 0
            and t.month in self.months
            and self._day_matches(t)
            and t.hour in self.hours
            and t.minute in self.minutes
        )

    def next_after(self, dt: datetime) -> datetime:
        """Return the first fire time strictly after `dt`."""
        t = dt.replace(second=0, microsecond=0) + _MINUTE
        for _ in range(_MAX_SEARCH_STEPS):
            if t.month not in self.months:
                if t.month == 12:
                    t = t.replace(year=t.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    t = t.replace(month=t.month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(t):
                t = (t + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if t.hour not in self.hours:
                t = (t + timedelta(hours=1)).replace(minute=0)
                continue
            if t.minute not in self.minutes:
                t += _MINUTE
                continue
            return t
        raise ValueError(f"Cron expression '{self.expression}' never fires after {dt.isoformat()}")

    def at_or_before(self, dt: datetime) -> datetime:
        """Return the latest fire time at or before `dt`."""
        t = dt.replace(second=0, microsecond=0)
        for _ in range(_MAX_SEARCH_STEPS):
            if t.month not in self.months:
                t = t.replace(day=1, hour=0, minute=0) - _MINUTE
                continue
            if not self._day_matches(t):
                t = t.replace(hour=0, minute=0) - _MINUTE
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0) - _MINUTE
                continue
            if t.minute not in self.minutes:
                t -= _MINUTE
                continue
            return t
        raise ValueError(f"Cron expression '{self.expression}' never fires before {dt.isoformat()}")


@dataclass(frozen=True)
class SchedulePolicy:
    """
    How often a graph is materialized.

    Attributes:
        kind: "interval", "cron" or "manual"
        interval: Slot length for interval schedules
        cron: Cron expression (or preset) for cron schedules
    """
    kind: ScheduleKind = "manual"
    interval: Optional[timedelta] = None
    cron: Optional[str] = None
    _expr: Optional[CronExpression] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.kind == "interval":
            if self.interval is None or self.interval <= timedelta(0):
                raise ValueError("interval schedules need a positive interval")
        elif self.kind == "cron":
            if not self.cron:
                raise ValueError("cron schedules need an expression")
            object.__setattr__(self, "_expr", CronExpression(self.cron))
        elif self.kind != "manual":
            raise ValueError(f"Unknown schedule kind: {self.kind}")

    @classmethod
    def manual(cls) -> "SchedulePolicy":
        return cls(kind="manual")

    @classmethod
    def every(cls, interval: timedelta) -> "SchedulePolicy":
        return cls(kind="interval", interval=interval)

    @classmethod
    def from_cron(cls, expression: str) -> "SchedulePolicy":
        return cls(kind="cron", cron=expression)

    @classmethod
    def parse(cls, value: Any) -> "SchedulePolicy":
        """
        Build a policy from a definition value.

        - None, "manual", "@none", "@once" -> manual
        - int/float seconds, timedelta or {"every": seconds} -> interval
        - cron string or preset ("@daily") -> cron
        """
        if isinstance(value, SchedulePolicy):
            return value
        if value in MANUAL_VALUES:
            return cls.manual()
        if isinstance(value, bool):
            raise ValueError(f"Invalid schedule: {value!r}")
        if isinstance(value, timedelta):
            return cls.every(value)
        if isinstance(value, (int, float)):
            return cls.every(timedelta(seconds=value))
        if isinstance(value, dict) and "every" in value:
            return cls.every(timedelta(seconds=float(value["every"])))
        if isinstance(value, str):
            return cls.from_cron(value)
        raise ValueError(f"Invalid schedule: {value!r}")

    def to_value(self) -> Any:
        """Inverse of `parse`, for serialization."""
        if self.kind == "interval":
            return {"every": self.interval.total_seconds()}
        if self.kind == "cron":
            return self.cron
        return None

    @property
    def is_manual(self) -> bool:
        return self.kind == "manual"

    def following(self, slot: datetime) -> datetime:
        """The slot after `slot`."""
        if self.kind == "interval":
            return slot + self.interval
        if self.kind == "cron":
            return self._expr.next_after(slot)
        raise ValueError("manual schedules have no slots")

    def at_or_before(self, t: datetime, anchor: datetime) -> datetime:
        """Latest slot at or before `t`; interval slots are aligned to `anchor`."""
        if self.kind == "interval":
            k = (t - anchor) // self.interval
            return anchor + k * self.interval
        if self.kind == "cron":
            return self._expr.at_or_before(t)
        raise ValueError("manual schedules have no slots")

    def first_at_or_after(self, t: datetime, anchor: datetime) -> datetime:
        """First slot at or after `t`; interval slots are aligned to `anchor`."""
        slot = self.at_or_before(t, anchor)
        return slot if slot >= t else self.following(slot)

    def latest_due_slot(self, start: datetime, now: datetime) -> Optional[datetime]:
        """Most recent slot whose period has closed by `now`, or None."""
        if self.is_manual or now < start:
            return None
        # boundary is the latest slot start at or before now; the slot before
        # it is the latest one whose period has closed
        boundary = self.at_or_before(now, start)
        if self.kind == "interval":
            slot = boundary - self.interval
        else:
            slot = self._expr.at_or_before(boundary - _MINUTE)
        if slot < start:
            return None
        return slot

    def slots_between(self, start: datetime, end: datetime, anchor: datetime) -> list[datetime]:
        """All slots in [start, end], chronological."""
        if self.is_manual:
            raise ValueError("manual schedules have no slots")
        slots = []
        slot = self.first_at_or_after(start, anchor)
        while slot <= end:
            slots.append(slot)
            slot = self.following(slot)
        return slots


def due_slots(
    policy: SchedulePolicy,
    start: datetime,
    now: datetime,
    after: Optional[datetime] = None,
    catchup: bool = False,
    end: Optional[datetime] = None,
) -> list[datetime]:
    """
    Compute the slots the scheduler should materialize now.

    Args:
        policy: The graph's schedule policy
        start: The graph's start boundary (first possible slot)
        now: Current time
        after: Latest slot already materialized by the scheduler, if any
        catchup: Materialize every missed slot instead of only the latest
        end: Optional end boundary; no slot after it is materialized

    Returns:
        Slots to materialize, in chronological order
    """
    latest = policy.latest_due_slot(start, now)
    if latest is None:
        return []
    if end is not None and latest > end:
        if end < start:
            return []
        latest = policy.at_or_before(end, start)

    if not catchup:
        if after is not None and latest <= after:
            return []
        return [latest]

    if after is not None and after >= start:
        slot = policy.following(after)
    else:
        slot = policy.first_at_or_after(start, start)

    slots = []
    while slot <= latest:
        slots.append(slot)
        slot = policy.following(slot)
    return slots
