"""
Funnel Analyzer

Measures how many sessions reach each step of an ordered funnel and where
they drop off.

Step conversion is conditioned on the previous step: conversion_from_previous
for step i counts sessions containing both step i and step i-1, not every
session that ever fired step i. Sessions that skip a step don't count as
converting from it.
"""

import logging
from typing import Any, Dict, List, Set

from bucketing import format_timestamp, parse_date_range, utc_now

logger = logging.getLogger(__name__)

MAJOR_DROPOFF_THRESHOLD = 0.3


def group_sessions(events: List[Dict[str, Any]]) -> Dict[str, Set[str]]:
    """session key (session_id, else user_id) -> set of event types seen."""
    sessions: Dict[str, Set[str]] = {}
    for event in events:
        session_key = event.get('session_id') or event.get('user_id')
        if not session_key:
            continue
        sessions.setdefault(session_key, set()).add(event['event_type'])
    return sessions


def calculate_funnel_steps(sessions: Dict[str, Set[str]], funnel_steps: List[str]) -> List[Dict[str, Any]]:
    total_sessions = len(sessions)
    session_sets = list(sessions.values())
    steps = []

    for index, step in enumerate(funnel_steps):
        sessions_reached = sum(1 for seen in session_sets if step in seen)

        if index == 0:
            conversion_from_previous = sessions_reached
            dropoff_rate = 0.0
        else:
            previous_step = funnel_steps[index - 1]
            reached_previous = sum(1 for seen in session_sets if previous_step in seen)
            conversion_from_previous = sum(
                1 for seen in session_sets if step in seen and previous_step in seen
            )
            # Nothing to drop from when nobody reached the previous step
            dropoff_rate = 1 - conversion_from_previous / reached_previous if reached_previous > 0 else 0.0

        steps.append({
            'step_name': step,
            'step_number': index + 1,
            'sessions_reached': sessions_reached,
            'conversion_rate': sessions_reached / total_sessions if total_sessions > 0 else 0.0,
            'conversion_from_previous': conversion_from_previous,
            'dropoff_rate': dropoff_rate,
        })

    return steps


def find_dropoff_points(steps: List[Dict[str, Any]], threshold: float = MAJOR_DROPOFF_THRESHOLD) -> List[Dict[str, Any]]:
    """Steps losing more than threshold of the previous step, worst first."""
    return sorted(
        (step for step in steps if step['dropoff_rate'] > threshold),
        key=lambda step: step['dropoff_rate'],
        reverse=True,
    )


def analyze_funnel(events: List[Dict[str, Any]], funnel_steps: List[str]) -> Dict[str, Any]:
    sessions = group_sessions(events)
    steps = calculate_funnel_steps(sessions, funnel_steps)

    first_step, last_step = steps[0], steps[-1]
    overall_conversion_rate = (
        last_step['sessions_reached'] / first_step['sessions_reached']
        if first_step['sessions_reached'] > 0 else 0.0
    )

    return {
        'funnel_stats': {
            'total_sessions': len(sessions),
            'steps': steps,
        },
        'overall_conversion_rate': overall_conversion_rate,
        'dropoff_points': find_dropoff_points(steps),
    }


class FunnelAnalyzer:

    def __init__(self, event_store, analysis_store):
        self.event_store = event_store
        self.analysis_store = analysis_store

    def run(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        funnel_steps = data.get('funnelSteps')
        if not isinstance(funnel_steps, list) or not funnel_steps:
            raise ValueError("funnelSteps must be a non-empty list")
        if not all(isinstance(step, str) and step for step in funnel_steps):
            raise ValueError("funnelSteps must contain event type names")
        start, end = parse_date_range(data)

        logger.info(f"Processing funnel analysis for org: {organization_id}")

        start_ts, end_ts = format_timestamp(start), format_timestamp(end)
        events = self.event_store.query(organization_id, start_ts, end_ts, event_types=funnel_steps)

        analysis = analyze_funnel(events, funnel_steps)
        analysis['period_type'] = data.get('period') or 'custom'
        analysis['calculated_at'] = utc_now().isoformat()

        self.analysis_store.put_funnel(organization_id, start_ts, end_ts, funnel_steps, analysis)

        logger.info(f"Successfully analyzed funnel with {len(funnel_steps)} steps")
        return {
            'stepsAnalyzed': len(funnel_steps),
            'totalSessions': analysis['funnel_stats']['total_sessions'],
            'overallConversionRate': analysis['overall_conversion_rate'],
            'majorDropoffPoints': len(analysis['dropoff_points']),
            'dropoffPoints': analysis['dropoff_points'],
            'funnelStats': analysis['funnel_stats'],
        }
