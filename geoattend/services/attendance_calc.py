from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from geoattend.settings import get_settings

WEEKDAY_NAMES: tuple[str, ...] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


@dataclass(frozen=True)
class WorkSchedule:
    enabled: bool
    work_days: tuple[str, ...] = ()
    start: time | None = None
    end: time | None = None
    grace_period_minutes: int = 0

    def is_work_day(self, day_index: int) -> bool:
        if not self.work_days:
            return True
        return WEEKDAY_NAMES[day_index] in self.work_days

    def span_hours(self) -> float | None:
        if self.start is None or self.end is None:
            return None
        start_minutes = self.start.hour * 60 + self.start.minute
        end_minutes = self.end.hour * 60 + self.end.minute
        if end_minutes <= start_minutes:
            end_minutes += 24 * 60
        return (end_minutes - start_minutes) / 60

    def is_overnight(self) -> bool:
        return self.start is not None and self.end is not None and self.end <= self.start

    def shift_date(self, local_ts: datetime) -> date:
        """Local date on which the shift covering ``local_ts`` started."""
        if self.is_overnight() and self.end is not None and local_ts.time() < self.end:
            return local_ts.date() - timedelta(days=1)
        return local_ts.date()


@dataclass(frozen=True)
class CheckInMetrics:
    is_on_time: bool
    late_minutes: int
    raw_late_minutes: int
    scheduled_start_utc: datetime | None


@dataclass(frozen=True)
class CheckOutMetrics:
    total_hours: float
    overtime_hours: float | None
    early_departure: bool | None
    clock_skew: bool


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone(name: str | None = None) -> ZoneInfo:
    raw_name = (name or get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def parse_hhmm(value: str | None) -> time | None:
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    hours_text, sep, minutes_text = raw.partition(":")
    if not sep or not hours_text.isdigit() or not minutes_text.isdigit() or len(minutes_text) != 2:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hours = int(hours_text)
    minutes = int(minutes_text)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Expected HH:MM, got {value!r}")
    return time(hours, minutes)


def schedule_from_geofence(geofence) -> WorkSchedule:  # type: ignore[no-untyped-def]
    return WorkSchedule(
        enabled=bool(geofence.schedule_enabled),
        work_days=tuple(geofence.work_days or ()),
        start=parse_hhmm(geofence.work_start),
        end=parse_hhmm(geofence.work_end),
        grace_period_minutes=max(0, int(geofence.grace_period_minutes or 0)),
    )


def compute_check_in_metrics(
    *,
    ts_utc: datetime,
    schedule: WorkSchedule,
    tz: ZoneInfo,
) -> CheckInMetrics:
    if not schedule.enabled or schedule.start is None:
        return CheckInMetrics(is_on_time=True, late_minutes=0, raw_late_minutes=0, scheduled_start_utc=None)

    local_ts = normalize_ts(ts_utc).astimezone(tz)
    # After midnight on an overnight shift, lateness counts from the previous evening.
    shift_date = schedule.shift_date(local_ts)
    if not schedule.is_work_day(shift_date.weekday()):
        return CheckInMetrics(is_on_time=True, late_minutes=0, raw_late_minutes=0, scheduled_start_utc=None)

    scheduled_start = datetime.combine(shift_date, schedule.start, tzinfo=tz).astimezone(timezone.utc)
    elapsed_seconds = (normalize_ts(ts_utc) - scheduled_start).total_seconds()
    raw_late_minutes = max(0, int(elapsed_seconds // 60))
    late_minutes = max(0, raw_late_minutes - schedule.grace_period_minutes)
    return CheckInMetrics(
        is_on_time=late_minutes == 0,
        late_minutes=late_minutes,
        raw_late_minutes=raw_late_minutes,
        scheduled_start_utc=scheduled_start,
    )


def compute_check_out_metrics(
    *,
    check_in_ts_utc: datetime,
    check_out_ts_utc: datetime,
    schedule: WorkSchedule,
    tz: ZoneInfo,
) -> CheckOutMetrics:
    elapsed_seconds = (normalize_ts(check_out_ts_utc) - normalize_ts(check_in_ts_utc)).total_seconds()
    clock_skew = elapsed_seconds < 0
    total_hours = round(max(0.0, elapsed_seconds) / 3600, 2)

    overtime_hours: float | None = None
    early_departure: bool | None = None
    span_hours = schedule.span_hours() if schedule.enabled else None
    if span_hours is not None:
        overtime_hours = round(max(0.0, total_hours - span_hours), 2)
        if schedule.end is not None and schedule.start is not None and schedule.end > schedule.start:
            local_out = normalize_ts(check_out_ts_utc).astimezone(tz)
            scheduled_end = datetime.combine(local_out.date(), schedule.end, tzinfo=tz)
            early_departure = local_out < scheduled_end

    return CheckOutMetrics(
        total_hours=total_hours,
        overtime_hours=overtime_hours,
        early_departure=early_departure,
        clock_skew=clock_skew,
    )


def minutes_between(start_utc: datetime, end_utc: datetime) -> int:
    delta: timedelta = normalize_ts(end_utc) - normalize_ts(start_utc)
    return max(0, int(delta.total_seconds() // 60))
