from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import croniter


class ScheduleError(ValueError):
    """A schedule descriptor that cannot produce a run time."""


def to_iso(moment: datetime) -> str:
    """Render *moment* as UTC ISO 8601 with millisecond precision.

    Every timestamp in the database goes through here so that plain string
    comparison in SQL orders them chronologically.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    base: datetime | None = None,
    tz: str = "UTC",
) -> str:
    """Compute the next run time for a scheduled task.

    Returns an ISO 8601 string for the next run time:
    - "cron": next occurrence after *base*, evaluated in *tz*
    - "interval": *base* + milliseconds offset
    - "once": the timestamp in *schedule_value* (naive values are read in *tz*);
      past instants are returned as-is and are due immediately

    Raises:
        ScheduleError: the type is unknown or the value does not parse.
    """
    if base is None:
        base = datetime.now(timezone.utc)
    elif base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    zone = ZoneInfo(tz)

    if schedule_type == "cron":
        try:
            next_fire = croniter(schedule_value, base.astimezone(zone)).get_next(
                datetime
            )
        except (ValueError, KeyError) as exc:
            raise ScheduleError(
                f"Invalid cron expression {schedule_value!r}: {exc}"
            ) from exc
        return to_iso(next_fire)

    if schedule_type == "interval":
        try:
            ms = int(schedule_value)
        except (TypeError, ValueError) as exc:
            raise ScheduleError(f"Invalid interval {schedule_value!r}") from exc
        if ms <= 0:
            raise ScheduleError(f"Interval must be positive, got {ms}")
        return to_iso(base + timedelta(milliseconds=ms))

    if schedule_type == "once":
        try:
            scheduled = datetime.fromisoformat(schedule_value)
        except (TypeError, ValueError) as exc:
            raise ScheduleError(f"Invalid timestamp {schedule_value!r}") from exc
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=zone)
        return to_iso(scheduled)

    raise ScheduleError(f"Unknown schedule type {schedule_type!r}")
