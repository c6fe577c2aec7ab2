"""
Insight Generator

Turns already-computed aggregates, trends, cohorts and funnel output into a
ranked list of findings, opportunities, alerts and recommendations using
fixed thresholds. generate_insights() is pure and tolerates missing input:
an absent category just comes back empty.

Insight shape:
{
    "type": "trend" | "opportunity" | "alert" | "recommendation",
    "category": "key_findings" | "trend_insights" | ...,
    "message": "...",
    "metric": "signups",
    "severity": "low" | "medium" | "high" | "critical",
    "value": 12.5            (optional)
}
"""

import logging
from numbers import Number
from typing import Any, Dict, List, Optional

from bucketing import parse_granularity, utc_now

logger = logging.getLogger(__name__)

# Period-over-period growth thresholds (percent)
GROWTH_FINDING_THRESHOLD = 25.0
DECLINE_ALERT_THRESHOLD = -10.0
# Latest value under this share of the previous one is critical
CRITICAL_DROP_RATIO = 0.5

CONVERSION_RATE_FLOOR = 0.02
CONVERSION_RATE_STRONG = 0.05
SIGNUPS_STRONG = 100
TREND_INSIGHT_THRESHOLD = 20.0
RECOMMENDATION_DECLINE_THRESHOLD = 15.0
RETENTION_FLOOR = 0.2

VOLUME_METRICS = ('total_events', 'page_views', 'signups', 'conversions')

CATEGORIES = ('key_findings', 'trend_insights', 'opportunities', 'alerts', 'recommendations')

SEVERITY_RANK = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}

RECOMMENDATIONS = {
    'page_views': {
        'message': 'Page views are declining. Optimize content for search engines and increase content marketing efforts.',
        'severity': 'high',
        'area': 'traffic',
    },
    'signups': {
        'message': 'Signups are dropping. A/B test landing pages, simplify the signup process and sharpen the value proposition.',
        'severity': 'critical',
        'area': 'conversion',
    },
}


def _number(value: Any) -> float:
    if isinstance(value, Number) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _insight(insight_type: str, category: str, message: str, metric: str,
             severity: str, value: Optional[float] = None) -> Dict[str, Any]:
    insight = {
        'type': insight_type,
        'category': category,
        'message': message,
        'metric': metric,
        'severity': severity,
    }
    if value is not None:
        insight['value'] = value
    return insight


def growth_insights(recent_metrics: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Key findings and alerts from the two most recent periods (newest first)."""
    findings, alerts = [], []
    if len(recent_metrics) < 2:
        return {'key_findings': findings, 'alerts': alerts}

    latest = recent_metrics[0].get('key_metrics') or {}
    previous = recent_metrics[1].get('key_metrics') or {}

    for metric in VOLUME_METRICS:
        current_value = _number(latest.get(metric))
        previous_value = _number(previous.get(metric))
        if previous_value <= 0:
            continue

        growth = (current_value - previous_value) / previous_value * 100
        if growth > GROWTH_FINDING_THRESHOLD:
            findings.append(_insight(
                'trend', 'key_findings',
                f"{metric} grew by {growth:.1f}% over the previous period",
                metric, 'low', growth,
            ))
        elif current_value < previous_value * CRITICAL_DROP_RATIO:
            alerts.append(_insight(
                'alert', 'alerts',
                f"{metric} dropped significantly from previous period ({previous_value:.0f} -> {current_value:.0f})",
                metric, 'critical', growth,
            ))
        elif growth < DECLINE_ALERT_THRESHOLD:
            alerts.append(_insight(
                'alert', 'alerts',
                f"{metric} declined by {abs(growth):.1f}%",
                metric, 'medium', growth,
            ))

    return {'key_findings': findings, 'alerts': alerts}


def performance_insights(recent_metrics: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not recent_metrics:
        return []

    latest = recent_metrics[0].get('key_metrics') or {}
    insights = []

    conversion_rate = _number(latest.get('conversion_rate'))
    if conversion_rate > CONVERSION_RATE_STRONG:
        insights.append(_insight(
            'trend', 'key_findings',
            'Conversion rate is performing well above industry average',
            'conversion_rate', 'low', conversion_rate,
        ))

    signups = _number(latest.get('signups'))
    if signups > SIGNUPS_STRONG:
        insights.append(_insight(
            'trend', 'key_findings',
            'Strong signup growth indicates healthy funnel performance',
            'signups', 'low', signups,
        ))

    return insights


def latest_period_trends(trends: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    valid = [trend for trend in trends or [] if isinstance(trend, dict) and trend.get('period')]
    if not valid:
        return []
    latest_period = max(trend['period'] for trend in valid)
    return [trend for trend in valid if trend['period'] == latest_period]


def trend_insights(trends: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    insights = []
    for trend in latest_period_trends(trends):
        change = _number(trend.get('change_percentage'))
        if abs(change) <= TREND_INSIGHT_THRESHOLD:
            continue
        verb = 'increased' if change > 0 else 'decreased'
        insights.append(_insight(
            'trend', 'trend_insights',
            f"{trend.get('metric_type')} {verb} by {abs(change):.1f}%",
            trend.get('metric_type'), 'medium' if change < 0 else 'low', change,
        ))
    return insights


def opportunity_insights(recent_metrics: List[Dict[str, Any]],
                         cohorts: Optional[List[Dict[str, Any]]] = None,
                         funnel: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    opportunities = []

    if recent_metrics:
        latest = recent_metrics[0].get('key_metrics') or {}
        conversion_rate = _number(latest.get('conversion_rate'))
        if conversion_rate < CONVERSION_RATE_FLOOR:
            opportunities.append(_insight(
                'opportunity', 'opportunities',
                'Conversion rate is below industry average - consider optimizing landing pages',
                'conversion_rate', 'high', conversion_rate,
            ))

    for step in (funnel or {}).get('dropoff_points') or []:
        if not isinstance(step, dict):
            continue
        dropoff = _number(step.get('dropoff_rate'))
        opportunities.append(_insight(
            'opportunity', 'opportunities',
            f"Funnel step {step.get('step_number')} ({step.get('step_name')}) loses {dropoff * 100:.1f}% of sessions",
            step.get('step_name'), 'high' if dropoff > 0.5 else 'medium', dropoff,
        ))

    for cohort in cohorts or []:
        if not cohort.get('cohort_size'):
            continue
        day_30 = ((cohort.get('retention') or {}).get('day_30') or {})
        retention_rate = _number(day_30.get('retention_rate'))
        if retention_rate < RETENTION_FLOOR:
            opportunities.append(_insight(
                'opportunity', 'opportunities',
                f"Cohort {cohort.get('cohort_period')} retains only {retention_rate * 100:.1f}% of users after 30 days",
                'retention', 'medium', retention_rate,
            ))

    return opportunities


def recommendation_insights(trends: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    recommendations = []
    for trend in latest_period_trends(trends):
        metric = trend.get('metric_type')
        change = _number(trend.get('change_percentage'))
        if trend.get('direction') != 'down' or abs(change) <= RECOMMENDATION_DECLINE_THRESHOLD:
            continue
        template = RECOMMENDATIONS.get(metric)
        if template:
            recommendation = _insight(
                'recommendation', 'recommendations',
                template['message'], metric, template['severity'], change,
            )
            recommendation['area'] = template['area']
            recommendations.append(recommendation)
    return recommendations


def calculate_insight_confidence(insights: Dict[str, List[Dict[str, Any]]]) -> float:
    """Share of categories with at least one insight, as a 0-100 score."""
    non_empty = sum(1 for category in CATEGORIES if insights.get(category))
    return min(100.0, non_empty / len(CATEGORIES) * 100)


def rank_insights(insights: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    everything = [insight for category in CATEGORIES for insight in insights.get(category, [])]
    return sorted(everything, key=lambda insight: SEVERITY_RANK.get(insight.get('severity'), len(SEVERITY_RANK)))


def generate_insights(recent_metrics: Optional[List[Dict[str, Any]]] = None,
                      trends: Optional[List[Dict[str, Any]]] = None,
                      cohorts: Optional[List[Dict[str, Any]]] = None,
                      funnel: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build every insight category from precomputed pipeline output.

    recent_metrics are aggregated period rows, newest first.
    """
    recent_metrics = [row for row in recent_metrics or [] if isinstance(row, dict)]
    cohorts = [cohort for cohort in cohorts or [] if isinstance(cohort, dict)]
    funnel = funnel if isinstance(funnel, dict) else None

    growth = growth_insights(recent_metrics)
    insights = {
        'key_findings': growth['key_findings'] + performance_insights(recent_metrics),
        'trend_insights': trend_insights(trends),
        'opportunities': opportunity_insights(recent_metrics, cohorts, funnel),
        'alerts': growth['alerts'],
        'recommendations': recommendation_insights(trends),
    }
    insights['ranked'] = rank_insights(insights)
    insights['confidence_score'] = calculate_insight_confidence(insights)
    return insights


class InsightGenerator:

    def __init__(self, aggregate_store, analysis_store, insight_store, history_limit: int = 30):
        self.aggregate_store = aggregate_store
        self.analysis_store = analysis_store
        self.insight_store = insight_store
        self.history_limit = history_limit

    def run(self, organization_id: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = data or {}
        granularity = parse_granularity(data.get('period') or 'daily')

        logger.info(f"Generating insights for org: {organization_id}")

        recent_metrics = self.aggregate_store.latest(organization_id, granularity.value, self.history_limit)
        trends = self.analysis_store.get_trends(organization_id, granularity.value)
        cohort_record = self.analysis_store.latest_cohorts(organization_id)
        funnel = self.analysis_store.latest_funnel(organization_id)

        insights = generate_insights(
            recent_metrics,
            trends,
            cohort_record.get('cohorts') if cohort_record else None,
            funnel,
        )

        self.insight_store.upsert(organization_id, {
            'period_type': granularity.value,
            'insights': {category: insights[category] for category in CATEGORIES},
            'ranked': insights['ranked'],
            'confidence_score': insights['confidence_score'],
            'generated_at': utc_now().isoformat(),
        })

        logger.info(f"Successfully generated {len(CATEGORIES)} insight categories")
        return {
            'insightCategories': len(CATEGORIES),
            'keyFindings': len(insights['key_findings']),
            'trendInsights': len(insights['trend_insights']),
            'opportunities': len(insights['opportunities']),
            'alerts': len(insights['alerts']),
            'recommendations': len(insights['recommendations']),
            'confidenceScore': insights['confidence_score'],
            'topInsights': insights['ranked'][:5],
        }
