"""
Tests for period aggregation and key metrics.

Pure functions are tested directly; PeriodAggregator.run is tested against
moto-backed DynamoDB tables.
"""

from unittest.mock import MagicMock

import pytest

from conftest import make_event
from growth_stores import GrowthStoreError
from period_aggregator import (
    PeriodAggregator,
    aggregate_events_by_period,
    build_period_rows,
    calculate_key_metrics,
    event_value,
)


def one_day_of_traffic(day='2025-07-01'):
    """100 page views, 10 signups and 2 subscriptions on the same day."""
    events = []
    for i in range(100):
        events.append(make_event('page_view', f"{day}T{i % 24:02d}:00:00.000000Z", user_id=f"user_{i % 40}"))
    for i in range(10):
        events.append(make_event('user_signup', f"{day}T12:{i:02d}:00.000000Z", user_id=f"user_{i}"))
    for i in range(2):
        events.append(make_event('subscription_created', f"{day}T18:{i:02d}:00.000000Z", user_id=f"user_{i}"))
    return events


class TestEventValue:

    def test_uses_numeric_value(self):
        assert event_value(make_event('purchase_completed', '2025-07-01T00:00:00Z',
                                      event_data={'value': 49.5})) == 49.5

    def test_defaults_to_one(self):
        assert event_value(make_event('page_view', '2025-07-01T00:00:00Z')) == 1

    @pytest.mark.parametrize('value', ['49.5', True, None])
    def test_non_numeric_value_defaults_to_one(self, value):
        assert event_value(make_event('purchase_completed', '2025-07-01T00:00:00Z',
                                      event_data={'value': value})) == 1


class TestAggregateEventsByPeriod:

    def test_single_day_totals(self):
        buckets = aggregate_events_by_period(one_day_of_traffic(), 'daily')

        assert len(buckets) == 1
        bucket = buckets[0]
        assert bucket['period'] == '2025-07-01'
        assert bucket['metrics']['page_views']['count'] == 100
        assert bucket['metrics']['signups']['count'] == 10
        assert bucket['metrics']['conversions']['count'] == 2
        assert len(bucket['events']) == 112

    def test_average_value(self):
        events = [
            make_event('purchase_completed', '2025-07-01T01:00:00Z', event_data={'value': 10}),
            make_event('purchase_completed', '2025-07-01T02:00:00Z', event_data={'value': 30}),
        ]
        totals = aggregate_events_by_period(events, 'daily')[0]['metrics']['purchases']

        assert totals == {'count': 2, 'total_value': 40, 'average_value': 20.0}

    def test_unmapped_events_are_kept_but_not_counted(self):
        events = [
            make_event('signup_started', '2025-07-01T01:00:00Z'),
            make_event('made_up_event', '2025-07-01T02:00:00Z'),
        ]
        bucket = aggregate_events_by_period(events, 'daily')[0]

        assert bucket['metrics'] == {}
        assert len(bucket['events']) == 2

    def test_buckets_are_sorted_by_key(self):
        events = [
            make_event('page_view', '2025-07-03T00:00:00Z'),
            make_event('page_view', '2025-07-01T00:00:00Z'),
            make_event('page_view', '2025-07-02T00:00:00Z'),
        ]
        periods = [bucket['period'] for bucket in aggregate_events_by_period(events, 'daily')]
        assert periods == ['2025-07-01', '2025-07-02', '2025-07-03']

    def test_weekly_bucket_boundaries(self):
        events = [make_event('page_view', '2025-07-02T10:00:00Z')]
        bucket = aggregate_events_by_period(events, 'weekly')[0]

        assert bucket['period'] == '2025-06-29'
        assert bucket['period_start'] == '2025-06-29'
        assert bucket['period_end'] == '2025-07-05'

    def test_metric_filter_limits_metrics_only(self):
        bucket = aggregate_events_by_period(one_day_of_traffic(), 'daily', metric_filter=['signups'])[0]

        assert set(bucket['metrics']) == {'signups'}
        assert len(bucket['events']) == 112


class TestCalculateKeyMetrics:

    def test_reference_day(self):
        bucket = aggregate_events_by_period(one_day_of_traffic(), 'daily')[0]
        key_metrics = calculate_key_metrics(bucket)

        assert key_metrics['total_events'] == 112
        assert key_metrics['page_views'] == 100
        assert key_metrics['signups'] == 10
        assert key_metrics['conversions'] == 2
        assert key_metrics['conversion_rate'] == pytest.approx(0.02)
        assert key_metrics['unique_users'] == 40

    def test_no_page_views_gives_zero_conversion_rate(self):
        bucket = {'events': [make_event('subscription_created', '2025-07-01T00:00:00Z', user_id='u1')]}
        key_metrics = calculate_key_metrics(bucket)

        assert key_metrics['conversion_rate'] == 0
        assert key_metrics['conversions'] == 1

    def test_anonymous_events_do_not_count_as_users(self):
        bucket = {'events': [
            make_event('page_view', '2025-07-01T00:00:00Z', session_id='s1'),
            make_event('page_view', '2025-07-01T01:00:00Z', user_id='u1'),
        ]}
        assert calculate_key_metrics(bucket)['unique_users'] == 1


class TestBuildPeriodRows:

    def test_rows_drop_raw_events(self):
        rows = build_period_rows(one_day_of_traffic(), 'daily')
        assert 'events' not in rows[0]
        assert rows[0]['key_metrics']['total_events'] == 112

    def test_rows_are_deterministic(self):
        assert build_period_rows(one_day_of_traffic(), 'daily') == build_period_rows(one_day_of_traffic(), 'daily')


class TestPeriodAggregatorRun:

    def _seed(self, stores, events):
        for event in events:
            stores['events'].insert(event)

    def test_aggregates_and_stores_rows(self, stores):
        self._seed(stores, one_day_of_traffic('2025-07-01') + [
            make_event('page_view', '2025-07-02T09:00:00.000000Z', user_id='user_1'),
        ])
        aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])

        result = aggregator.run('org_123', {
            'period': 'daily', 'startDate': '2025-07-01T00:00:00Z', 'endDate': '2025-07-03T00:00:00Z',
        })

        assert result['periodsProcessed'] == 2
        assert result['eventsProcessed'] == 113
        assert result['keyMetrics']['2025-07-01']['conversion_rate'] == pytest.approx(0.02)

        stored = stores['aggregates'].get('org_123', 'daily', '2025-07-01')
        assert stored['metrics']['page_views']['count'] == 100
        assert stored['key_metrics']['total_events'] == 112
        assert stored['organization_id'] == 'org_123'

    def test_trends_are_stored(self, stores):
        self._seed(stores, [
            make_event('page_view', '2025-07-01T09:00:00.000000Z', user_id='a'),
            make_event('page_view', '2025-07-02T09:00:00.000000Z', user_id='a'),
            make_event('page_view', '2025-07-02T10:00:00.000000Z', user_id='b'),
        ])
        aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])

        result = aggregator.run('org_123', {
            'period': 'daily', 'startDate': '2025-07-01', 'endDate': '2025-07-03',
        })

        trends = stores['analyses'].get_trends('org_123', 'daily')
        assert result['trends'] == 1
        assert trends[0]['metric_type'] == 'page_views'
        assert trends[0]['change_percentage'] == 100

    def test_rerun_over_same_range_is_idempotent(self, stores):
        """Re-running must replace buckets, not add to them."""
        self._seed(stores, one_day_of_traffic('2025-07-01'))
        aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])
        data = {'period': 'weekly', 'startDate': '2025-06-29', 'endDate': '2025-07-06'}

        aggregator.run('org_123', data)
        first = stores['aggregates'].get('org_123', 'weekly', '2025-06-29')
        aggregator.run('org_123', data)
        second = stores['aggregates'].get('org_123', 'weekly', '2025-06-29')

        assert first == second
        assert second['metrics']['page_views']['count'] == 100

    def test_partial_range_recomputes_whole_bucket(self, stores):
        self._seed(stores, [
            make_event('page_view', '2025-06-30T09:00:00.000000Z', user_id='a'),
            make_event('page_view', '2025-07-03T09:00:00.000000Z', user_id='b'),
        ])
        aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])

        aggregator.run('org_123', {'period': 'weekly', 'startDate': '2025-07-02', 'endDate': '2025-07-04'})

        stored = stores['aggregates'].get('org_123', 'weekly', '2025-06-29')
        assert stored['metrics']['page_views']['count'] == 2

    def test_other_organizations_are_not_aggregated(self, stores):
        self._seed(stores, [
            make_event('page_view', '2025-07-01T09:00:00.000000Z', user_id='a'),
            make_event('page_view', '2025-07-01T09:00:00.000000Z', user_id='b', organization_id='org_other'),
        ])
        aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])

        result = aggregator.run('org_123', {'period': 'daily', 'startDate': '2025-07-01', 'endDate': '2025-07-02'})

        assert result['eventsProcessed'] == 1

    def test_invalid_period_raises(self):
        aggregator = PeriodAggregator(MagicMock(), MagicMock(), MagicMock())
        with pytest.raises(ValueError, match='Unsupported period'):
            aggregator.run('org_123', {'period': 'hourly', 'startDate': '2025-07-01', 'endDate': '2025-07-02'})

    def test_missing_dates_raise(self):
        aggregator = PeriodAggregator(MagicMock(), MagicMock(), MagicMock())
        with pytest.raises(ValueError, match='startDate and endDate'):
            aggregator.run('org_123', {'period': 'daily'})

    def test_upsert_failure_propagates(self):
        event_store = MagicMock()
        event_store.query.return_value = [make_event('page_view', '2025-07-01T09:00:00.000000Z')]
        aggregate_store = MagicMock()
        aggregate_store.upsert.side_effect = GrowthStoreError('Write to growth-aggregates failed')
        analysis_store = MagicMock()

        aggregator = PeriodAggregator(event_store, aggregate_store, analysis_store)
        with pytest.raises(GrowthStoreError):
            aggregator.run('org_123', {'period': 'daily', 'startDate': '2025-07-01', 'endDate': '2025-07-02'})

        analysis_store.put_trends.assert_not_called()
