"""
Period Aggregator

Groups stored events into day/week/month buckets and produces per-bucket
metric totals plus derived key metrics. One row per
organization x granularity x bucket is upserted; re-running over an
overlapping range recomputes and replaces whole buckets instead of adding
to them.
"""

import logging
from collections import Counter
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional

from bucketing import (
    bucket_end_date,
    bucket_key,
    bucket_start,
    format_timestamp,
    parse_date_range,
    parse_granularity,
    utc_now,
    widen_to_buckets,
)
from event_mappings import MetricType, event_type_to_metric
from trend_calculator import calculate_metric_trends

logger = logging.getLogger(__name__)


def event_value(event: Dict[str, Any]) -> Number:
    """Numeric event_data.value when present, otherwise 1."""
    value = (event.get('event_data') or {}).get('value')
    if isinstance(value, Number) and not isinstance(value, bool):
        return value
    return 1


def aggregate_events_by_period(events: Iterable[Dict[str, Any]], granularity: str,
                               metric_filter: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """
    Bucket events and accumulate count/total_value/average_value per metric type.

    Returns buckets sorted by key. Each bucket keeps its raw 'events' list so
    key metrics can be derived from it.
    """
    granularity = parse_granularity(granularity)
    allowed = set(metric_filter) if metric_filter else None
    grouped: Dict[str, Dict[str, Any]] = {}

    for event in events:
        key = bucket_key(event['timestamp'], granularity)

        if key not in grouped:
            grouped[key] = {
                'period': key,
                'period_start': bucket_start(key, granularity).date().isoformat(),
                'period_end': bucket_end_date(key, granularity),
                'granularity': granularity.value,
                'metrics': {},
                'events': [],
            }
        bucket = grouped[key]

        metric_type = event_type_to_metric(event.get('event_type'))
        if metric_type is not None and (allowed is None or metric_type.value in allowed):
            totals = bucket['metrics'].setdefault(metric_type.value, {'count': 0, 'total_value': 0})
            totals['count'] += 1
            totals['total_value'] += event_value(event)

        bucket['events'].append(event)

    for bucket in grouped.values():
        for totals in bucket['metrics'].values():
            totals['average_value'] = totals['total_value'] / totals['count']

    return [grouped[key] for key in sorted(grouped)]


def calculate_key_metrics(bucket: Dict[str, Any]) -> Dict[str, Any]:
    """Headline numbers for one bucket, derived from its raw events."""
    events = bucket.get('events', [])
    counts = Counter(event_type_to_metric(event.get('event_type')) for event in events)

    page_views = counts[MetricType.PAGE_VIEWS]
    conversions = counts[MetricType.CONVERSIONS]

    return {
        'total_events': len(events),
        'unique_users': len({event['user_id'] for event in events if event.get('user_id')}),
        'page_views': page_views,
        'signups': counts[MetricType.SIGNUPS],
        'conversions': conversions,
        'conversion_rate': conversions / page_views if page_views > 0 else 0,
    }


def build_period_rows(events: Iterable[Dict[str, Any]], granularity: str,
                      metric_filter: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """Aggregated rows ready to store; no wall-clock fields so reruns are identical."""
    rows = []
    for bucket in aggregate_events_by_period(events, granularity, metric_filter):
        rows.append({
            'period': bucket['period'],
            'period_start': bucket['period_start'],
            'period_end': bucket['period_end'],
            'granularity': bucket['granularity'],
            'metrics': bucket['metrics'],
            'key_metrics': calculate_key_metrics(bucket),
        })
    return rows


class PeriodAggregator:

    def __init__(self, event_store, aggregate_store, analysis_store):
        self.event_store = event_store
        self.aggregate_store = aggregate_store
        self.analysis_store = analysis_store

    def run(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        granularity = parse_granularity(data.get('period'))
        start, end = parse_date_range(data)
        metric_filter = data.get('metrics') or None

        logger.info(f"Aggregating metrics for org: {organization_id}, period: {granularity.value}")

        range_start, range_end = widen_to_buckets(start, end, granularity)
        events = self.event_store.query(
            organization_id,
            format_timestamp(range_start),
            format_timestamp(range_end),
        )

        rows = build_period_rows(events, granularity, metric_filter)

        # A failed write aborts the run; buckets already written stay valid
        for row in rows:
            self.aggregate_store.upsert(organization_id, granularity.value, row['period'], row)

        trends = calculate_metric_trends(rows)
        self.analysis_store.put_trends(organization_id, granularity.value, trends, utc_now().isoformat())

        logger.info(f"Successfully aggregated {len(rows)} periods of metrics")
        return {
            'periodsProcessed': len(rows),
            'eventsProcessed': len(events),
            'keyMetrics': {row['period']: row['key_metrics'] for row in rows},
            'trends': len(trends),
        }
