"""
Period-over-period trend deltas between consecutive aggregated periods.
"""

from typing import Any, Dict, List

DIRECTION_UP = 'up'
DIRECTION_DOWN = 'down'
DIRECTION_STABLE = 'stable'


def trend_direction(change: float) -> str:
    if change > 0:
        return DIRECTION_UP
    if change < 0:
        return DIRECTION_DOWN
    return DIRECTION_STABLE


def metric_count(row: Dict[str, Any], metric_type: str) -> float:
    value = (row.get('metrics') or {}).get(metric_type)
    if isinstance(value, dict):
        return value.get('count', 0) or 0
    return value or 0


def calculate_metric_trends(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Compare each period with the one before it, per metric type present in
    the later period.

    Metrics whose previous value is 0 are left out for that period rather
    than reported as an infinite or 100% jump.
    """
    if len(rows) < 2:
        return []

    ordered = sorted(rows, key=lambda row: row['period'])
    trends = []

    for previous, current in zip(ordered, ordered[1:]):
        for metric_type in sorted((current.get('metrics') or {}).keys()):
            previous_value = metric_count(previous, metric_type)
            if previous_value <= 0:
                continue

            current_value = metric_count(current, metric_type)
            change = (current_value - previous_value) / previous_value * 100
            trends.append({
                'metric_type': metric_type,
                'period': current['period'],
                'previous_value': previous_value,
                'current_value': current_value,
                'change_percentage': change,
                'direction': trend_direction(change),
            })

    return trends
