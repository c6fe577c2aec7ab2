"""
Time bucketing helpers for the growth pipeline.

All timestamps are normalized to UTC. Stored timestamps use a fixed-width
ISO-8601 format (YYYY-MM-DDTHH:MM:SS.ffffffZ) so they sort lexicographically
inside DynamoDB sort keys.

Bucket keys:
- daily:   YYYY-MM-DD (calendar date)
- weekly:  YYYY-MM-DD of the Sunday that starts the week
- monthly: YYYY-MM
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Tuple, Union

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


class Granularity(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


def parse_granularity(value: Union[str, Granularity, None]) -> Granularity:
    if isinstance(value, Granularity):
        return value
    try:
        return Granularity(value)
    except ValueError:
        raise ValueError(f"Unsupported period: {value!r} (expected daily, weekly or monthly)")


def parse_timestamp(value: Union[str, datetime, date]) -> datetime:
    """
    Parse an ISO-8601 string, datetime or date into an aware UTC datetime.
    Naive values are treated as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Union[str, datetime, date]) -> str:
    return parse_timestamp(value).strftime(TIMESTAMP_FORMAT)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_date_range(data: Dict[str, Any]) -> Tuple[datetime, datetime]:
    """Read and validate the startDate/endDate pair of a task payload."""
    start, end = data.get('startDate'), data.get('endDate')
    if not start or not end:
        raise ValueError("startDate and endDate are required")

    start_dt, end_dt = parse_timestamp(start), parse_timestamp(end)
    if end_dt <= start_dt:
        raise ValueError(f"endDate must be after startDate ({start} >= {end})")
    return start_dt, end_dt


def bucket_key(value: Union[str, datetime], granularity: Union[str, Granularity]) -> str:
    """Return the bucket key an instant falls into."""
    granularity = parse_granularity(granularity)
    day = parse_timestamp(value).date()

    if granularity == Granularity.WEEKLY:
        # weekday(): Monday=0 ... Sunday=6
        week_start = day - timedelta(days=(day.weekday() + 1) % 7)
        return week_start.isoformat()
    if granularity == Granularity.MONTHLY:
        return f"{day.year}-{day.month:02d}"
    return day.isoformat()


def bucket_start(key: str, granularity: Union[str, Granularity]) -> datetime:
    """Midnight UTC at which the bucket identified by key begins."""
    granularity = parse_granularity(granularity)
    if granularity == Granularity.MONTHLY:
        year, month = key.split('-')[:2]
        return datetime(int(year), int(month), 1, tzinfo=timezone.utc)
    return parse_timestamp(date.fromisoformat(key))


def next_bucket_start(start: datetime, granularity: Union[str, Granularity]) -> datetime:
    granularity = parse_granularity(granularity)
    if granularity == Granularity.MONTHLY:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1, day=1)
        return start.replace(month=start.month + 1, day=1)
    if granularity == Granularity.WEEKLY:
        return start + timedelta(days=7)
    return start + timedelta(days=1)


def bucket_end_date(key: str, granularity: Union[str, Granularity]) -> str:
    """Inclusive last calendar day of a bucket, as YYYY-MM-DD."""
    start = bucket_start(key, granularity)
    last_day = next_bucket_start(start, granularity) - timedelta(days=1)
    return last_day.date().isoformat()


def widen_to_buckets(start: Union[str, datetime], end: Union[str, datetime],
                     granularity: Union[str, Granularity]) -> Tuple[datetime, datetime]:
    """
    Expand a half-open [start, end) range so it covers whole buckets.

    Every bucket the range touches is then recomputed from all of its raw
    events, never from a partial slice.
    """
    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if end_dt <= start_dt:
        raise ValueError(f"endDate must be after startDate ({start} >= {end})")

    widened_start = bucket_start(bucket_key(start_dt, granularity), granularity)
    end_bucket = bucket_start(bucket_key(end_dt, granularity), granularity)
    widened_end = end_dt if end_bucket == end_dt else next_bucket_start(end_bucket, granularity)
    return widened_start, widened_end
