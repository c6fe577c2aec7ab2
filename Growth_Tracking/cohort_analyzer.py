"""
Cohort Analyzer

Groups users by the bucket of their formation event (normally user_signup)
and measures, per cohort:
- retention at fixed day offsets from the cohort's bucket start
- conversion rate into each target event type

Cohort size is recomputed from current signup data on every run, so
late-arriving signups are picked up the next time the analysis runs.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple

from bucketing import (
    bucket_key,
    bucket_start,
    format_timestamp,
    parse_date_range,
    parse_granularity,
    parse_timestamp,
    utc_now,
)
from event_mappings import EventType

logger = logging.getLogger(__name__)

RETENTION_OFFSETS_DAYS = (7, 30, 90, 180, 365)
DEFAULT_FORMATION_EVENT = EventType.USER_SIGNUP.value


def safe_rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator


def group_users_by_cohort(formation_events: List[Dict[str, Any]], granularity: str) -> Dict[str, Dict[str, datetime]]:
    """
    Map cohort key -> {user_id: formation time}.

    A user belongs to the cohort of their earliest formation event. Events
    without a user_id can't be attributed and are skipped.
    """
    first_seen: Dict[str, datetime] = {}
    for event in formation_events:
        user_id = event.get('user_id')
        if not user_id:
            continue
        formed_at = parse_timestamp(event['timestamp'])
        if user_id not in first_seen or formed_at < first_seen[user_id]:
            first_seen[user_id] = formed_at

    cohorts: Dict[str, Dict[str, datetime]] = defaultdict(dict)
    for user_id, formed_at in first_seen.items():
        cohorts[bucket_key(formed_at, granularity)][user_id] = formed_at

    return {key: cohorts[key] for key in sorted(cohorts)}


def index_conversions(conversion_events: List[Dict[str, Any]]) -> Dict[str, List[Tuple[datetime, str]]]:
    """user_id -> [(timestamp, event_type), ...] sorted by time."""
    by_user: Dict[str, List[Tuple[datetime, str]]] = defaultdict(list)
    for event in conversion_events:
        user_id = event.get('user_id')
        if user_id:
            by_user[user_id].append((parse_timestamp(event['timestamp']), event['event_type']))

    for events in by_user.values():
        events.sort()
    return by_user


def analyze_cohort(cohort_period: str, members: Dict[str, datetime],
                   conversions_by_user: Dict[str, List[Tuple[datetime, str]]],
                   granularity: str, conversion_events: List[str]) -> Dict[str, Any]:
    cohort_start = bucket_start(cohort_period, granularity)
    cohort_size = len(members)

    retention = {}
    for days in RETENTION_OFFSETS_DAYS:
        cutoff = cohort_start + timedelta(days=days)
        retained = sum(
            1 for user_id in members
            if any(converted_at <= cutoff for converted_at, _ in conversions_by_user.get(user_id, []))
        )
        retention[f"day_{days}"] = {
            'retained_users': retained,
            'retention_rate': safe_rate(retained, cohort_size),
        }

    conversion_rates = {}
    for event_type in conversion_events:
        converted = sum(
            1 for user_id, formed_at in members.items()
            if any(
                converted_type == event_type and converted_at >= formed_at
                for converted_at, converted_type in conversions_by_user.get(user_id, [])
            )
        )
        conversion_rates[event_type] = {
            'converted_users': converted,
            'conversion_rate': safe_rate(converted, cohort_size),
        }

    return {
        'cohort_period': cohort_period,
        'cohort_start': cohort_start.date().isoformat(),
        'cohort_size': cohort_size,
        'retention': retention,
        'conversion_rates': conversion_rates,
    }


class CohortAnalyzer:

    def __init__(self, event_store, analysis_store):
        self.event_store = event_store
        self.analysis_store = analysis_store

    def run(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        granularity = parse_granularity(data.get('period'))
        start, end = parse_date_range(data)
        conversion_events = data.get('conversionEvents') or []
        if not isinstance(conversion_events, list) or not conversion_events:
            raise ValueError("conversionEvents must be a non-empty list")
        formation_event = data.get('formationEvent') or DEFAULT_FORMATION_EVENT

        logger.info(f"Processing cohort analysis for org: {organization_id}")

        start_ts, end_ts = format_timestamp(start), format_timestamp(end)
        signups = self.event_store.query(organization_id, start_ts, end_ts, event_types=[formation_event])

        # Conversions can happen long after the formation window closes
        conversions = self.event_store.query(organization_id, start_ts, None, event_types=conversion_events)

        cohorts = group_users_by_cohort(signups, granularity)
        conversions_by_user = index_conversions(conversions)

        analysis = [
            analyze_cohort(cohort_period, members, conversions_by_user, granularity, conversion_events)
            for cohort_period, members in cohorts.items()
        ]

        self.analysis_store.put_cohorts(
            organization_id, granularity.value, start_ts, end_ts,
            analysis, conversion_events, utc_now().isoformat(),
        )

        logger.info(f"Successfully analyzed {len(analysis)} cohorts")
        return {
            'cohortsAnalyzed': len(analysis),
            'totalUsers': sum(cohort['cohort_size'] for cohort in analysis),
            'totalConversions': len(conversions),
            'analysis': analysis,
        }
