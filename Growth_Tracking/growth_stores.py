"""
Growth Stores

DynamoDB-backed stores consumed by the growth pipeline. Each store wraps a
boto3 Table resource handed in by the caller, so one invocation's handles are
never shared with another.

Tables (single-table style, string pk/sk):
- growth-events:     PK ORG#{org}              SK EVENT#{timestamp}#{event_id}
- growth-aggregates: PK ORG#{org}#{period}     SK PERIOD#{bucket}
- growth-rollups:    PK ORG#{org}              SK COUNTER#{date}#{metric} | JOURNEY#{user} | SESSION#{session}
- growth-analyses:   PK ORG#{org}              SK TRENDS#{period} | COHORTS#{period}#{start} | FUNNEL#{start}#{end}#{digest}
- growth-insights:   PK ORG#{org}              SK INSIGHTS#latest

Every result write is a put_item on a stable key (idempotent upsert).
Counters use atomic update expressions.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class GrowthStoreError(Exception):
    """A read or write against a growth table failed."""


def convert_floats_to_decimal(obj):
    """
    Recursively convert floats to Decimal for DynamoDB compatibility.
    """
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        return Decimal(str(obj))
    elif isinstance(obj, dict):
        return {k: convert_floats_to_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_floats_to_decimal(item) for item in obj]
    return obj


def convert_decimal_to_number(obj):
    """
    Recursively convert Decimal back to int/float for computation and JSON.
    """
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    elif isinstance(obj, dict):
        return {k: convert_decimal_to_number(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_decimal_to_number(item) for item in obj]
    return obj


def calculate_ttl(days: int = 90) -> int:
    """Calculate TTL timestamp for DynamoDB (90 days from now)."""
    return int((datetime.now(timezone.utc) + timedelta(days=days)).timestamp())


def funnel_digest(funnel_steps: Iterable[str]) -> str:
    """Short stable identity for an ordered list of funnel steps."""
    joined = '|'.join(funnel_steps)
    return hashlib.md5(joined.encode('utf-8')).hexdigest()[:12]


def _strip_keys(item: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {k: v for k, v in item.items() if k not in ('pk', 'sk')}
    return convert_decimal_to_number(cleaned)


class DynamoStore:
    """Shared plumbing: paginated queries and ClientError translation."""

    def __init__(self, table):
        self.table = table

    @property
    def table_name(self) -> str:
        return getattr(self.table, 'name', 'unknown')

    def _put(self, item: Dict[str, Any]) -> None:
        try:
            self.table.put_item(Item=convert_floats_to_decimal(item))
        except ClientError as e:
            logger.error(f"Error writing {item.get('sk')} to {self.table_name}: {e}")
            raise GrowthStoreError(f"Write to {self.table_name} failed: {e}") from e

    def _get(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key={'pk': pk, 'sk': sk})
        except ClientError as e:
            logger.error(f"Error reading {pk}/{sk} from {self.table_name}: {e}")
            raise GrowthStoreError(f"Read from {self.table_name} failed: {e}") from e

        item = response.get('Item')
        return _strip_keys(item) if item else None

    def _update(self, **params) -> None:
        try:
            self.table.update_item(**params)
        except ClientError as e:
            logger.error(f"Error updating {params.get('Key')} in {self.table_name}: {e}")
            raise GrowthStoreError(f"Update of {self.table_name} failed: {e}") from e

    def _query_all(self, limit: Optional[int] = None, **params) -> List[Dict[str, Any]]:
        items = []
        last_evaluated_key = None

        try:
            while True:
                query_params = dict(params)
                if last_evaluated_key:
                    query_params['ExclusiveStartKey'] = last_evaluated_key
                if limit:
                    query_params['Limit'] = limit - len(items)

                response = self.table.query(**query_params)
                items.extend(response.get('Items', []))

                last_evaluated_key = response.get('LastEvaluatedKey')
                if not last_evaluated_key or (limit and len(items) >= limit):
                    break
        except ClientError as e:
            logger.error(f"Error querying {self.table_name}: {e}")
            raise GrowthStoreError(f"Query of {self.table_name} failed: {e}") from e

        return [_strip_keys(item) for item in items]


# =============================================================================
# Event Store
# =============================================================================

class EventStore(DynamoStore):
    """Append-only behavioral events, partitioned by organization."""

    @staticmethod
    def event_sort_key(timestamp: str, event_id: str) -> str:
        return f"EVENT#{timestamp}#{event_id}"

    def insert(self, event: Dict[str, Any]) -> str:
        event_id = event['event_id']
        item = dict(event)
        item['pk'] = f"ORG#{event['organization_id']}"
        item['sk'] = self.event_sort_key(event['timestamp'], event_id)
        self._put(item)
        return event_id

    def query(self, organization_id: str, start: str, end: Optional[str] = None,
              event_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Events for an organization in [start, end), ascending by timestamp.

        start/end are formatted timestamps. With end=None there is no upper bound.
        The sort key EVENT#{end}#... sorts after EVENT#{end}, so BETWEEN gives
        a half-open range.
        """
        sk_condition = (
            Key('sk').between(f"EVENT#{start}", f"EVENT#{end}")
            if end else Key('sk').gte(f"EVENT#{start}")
        )
        params = {
            'KeyConditionExpression': Key('pk').eq(f"ORG#{organization_id}") & sk_condition,
            'ScanIndexForward': True,
        }
        if event_types:
            params['FilterExpression'] = Attr('event_type').is_in(list(event_types))

        events = self._query_all(**params)
        logger.info(f"Fetched {len(events)} events for org {organization_id} from {start} to {end or 'open end'}")
        return events


# =============================================================================
# Aggregate Store
# =============================================================================

class AggregateStore(DynamoStore):
    """One row per organization x granularity x bucket, replaced on every run."""

    @staticmethod
    def partition_key(organization_id: str, granularity: str) -> str:
        return f"ORG#{organization_id}#{granularity}"

    def upsert(self, organization_id: str, granularity: str, bucket_key: str, row: Dict[str, Any]) -> None:
        item = dict(row)
        item['pk'] = self.partition_key(organization_id, granularity)
        item['sk'] = f"PERIOD#{bucket_key}"
        item['organization_id'] = organization_id
        self._put(item)
        logger.debug(f"Upserted {granularity} period {bucket_key} for org {organization_id}")

    def get(self, organization_id: str, granularity: str, bucket_key: str) -> Optional[Dict[str, Any]]:
        return self._get(self.partition_key(organization_id, granularity), f"PERIOD#{bucket_key}")

    def query(self, organization_id: str, granularity: str, start_key: str, end_key: str) -> List[Dict[str, Any]]:
        """Rows whose bucket key falls within [start_key, end_key], ascending."""
        return self._query_all(
            KeyConditionExpression=(
                Key('pk').eq(self.partition_key(organization_id, granularity))
                & Key('sk').between(f"PERIOD#{start_key}", f"PERIOD#{end_key}")
            ),
            ScanIndexForward=True,
        )

    def latest(self, organization_id: str, granularity: str, limit: int = 30) -> List[Dict[str, Any]]:
        """Most recent rows first."""
        return self._query_all(
            limit=limit,
            KeyConditionExpression=(
                Key('pk').eq(self.partition_key(organization_id, granularity))
                & Key('sk').begins_with('PERIOD#')
            ),
            ScanIndexForward=False,
        )


# =============================================================================
# Rollup Store (daily counters, user journeys, session activity)
# =============================================================================

class RollupStore(DynamoStore):
    """Lightweight per-day counters and latest-event pointers fed by ingestion."""

    def __init__(self, table, ttl_days: int = 90):
        super().__init__(table)
        self.ttl_days = ttl_days

    def increment_daily_counter(self, organization_id: str, metric_type: str, day: str,
                                source: Optional[str], event_type: str) -> None:
        self._update(
            Key={'pk': f"ORG#{organization_id}", 'sk': f"COUNTER#{day}#{metric_type}"},
            UpdateExpression=(
                "SET metric_value = if_not_exists(metric_value, :zero) + :one, "
                "metric_type = :metric_type, date_recorded = :day, "
                "dimensions = :dimensions, updated_at = :now, #ttl = :ttl"
            ),
            ExpressionAttributeNames={'#ttl': 'ttl'},
            ExpressionAttributeValues={
                ':zero': 0,
                ':one': 1,
                ':metric_type': metric_type,
                ':day': day,
                ':dimensions': {'source': source or 'unknown', 'event_type': event_type},
                ':now': datetime.now(timezone.utc).isoformat(),
                ':ttl': calculate_ttl(self.ttl_days),
            },
        )

    def get_daily_counter(self, organization_id: str, metric_type: str, day: str) -> Optional[Dict[str, Any]]:
        return self._get(f"ORG#{organization_id}", f"COUNTER#{day}#{metric_type}")

    def update_user_journey(self, organization_id: str, user_id: str, event_type: str,
                            event_timestamp: str, journey_stage: str) -> None:
        self._update(
            Key={'pk': f"ORG#{organization_id}", 'sk': f"JOURNEY#{user_id}"},
            UpdateExpression=(
                "SET user_id = :user_id, latest_event = :event_type, "
                "latest_event_at = :event_at, journey_stage = :stage, "
                "first_event_at = if_not_exists(first_event_at, :event_at), "
                "total_events = if_not_exists(total_events, :zero) + :one, "
                "updated_at = :now, #ttl = :ttl"
            ),
            ExpressionAttributeNames={'#ttl': 'ttl'},
            ExpressionAttributeValues={
                ':user_id': user_id,
                ':event_type': event_type,
                ':event_at': event_timestamp,
                ':stage': journey_stage,
                ':zero': 0,
                ':one': 1,
                ':now': datetime.now(timezone.utc).isoformat(),
                ':ttl': calculate_ttl(self.ttl_days),
            },
        )

    def get_user_journey(self, organization_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self._get(f"ORG#{organization_id}", f"JOURNEY#{user_id}")

    def update_session_activity(self, organization_id: str, session_id: str, event_type: str,
                                event_timestamp: str, user_id: Optional[str] = None) -> None:
        update_parts = [
            "SET session_id = :session_id",
            "latest_event = :event_type",
            "latest_event_at = :event_at",
            "started_at = if_not_exists(started_at, :event_at)",
            "event_count = if_not_exists(event_count, :zero) + :one",
            "updated_at = :now",
            "#ttl = :ttl",
        ]
        values = {
            ':session_id': session_id,
            ':event_type': event_type,
            ':event_at': event_timestamp,
            ':zero': 0,
            ':one': 1,
            ':now': datetime.now(timezone.utc).isoformat(),
            ':ttl': calculate_ttl(self.ttl_days),
        }
        if user_id:
            update_parts.append("user_id = :user_id")
            values[':user_id'] = user_id

        self._update(
            Key={'pk': f"ORG#{organization_id}", 'sk': f"SESSION#{session_id}"},
            UpdateExpression=', '.join(update_parts),
            ExpressionAttributeNames={'#ttl': 'ttl'},
            ExpressionAttributeValues=values,
        )

    def get_session_activity(self, organization_id: str, session_id: str) -> Optional[Dict[str, Any]]:
        return self._get(f"ORG#{organization_id}", f"SESSION#{session_id}")


# =============================================================================
# Analysis Store (trends, cohorts, funnels)
# =============================================================================

class AnalysisStore(DynamoStore):

    def put_trends(self, organization_id: str, granularity: str, trends: List[Dict[str, Any]],
                   calculated_at: str) -> None:
        self._put({
            'pk': f"ORG#{organization_id}",
            'sk': f"TRENDS#{granularity}",
            'organization_id': organization_id,
            'period_type': granularity,
            'trends': trends,
            'calculated_at': calculated_at,
        })

    def get_trends(self, organization_id: str, granularity: str) -> List[Dict[str, Any]]:
        item = self._get(f"ORG#{organization_id}", f"TRENDS#{granularity}")
        return item.get('trends', []) if item else []

    def put_cohorts(self, organization_id: str, granularity: str, start_date: str, end_date: str,
                    cohorts: List[Dict[str, Any]], conversion_events: List[str], calculated_at: str) -> None:
        self._put({
            'pk': f"ORG#{organization_id}",
            'sk': f"COHORTS#{granularity}#{start_date}",
            'organization_id': organization_id,
            'analysis_period': granularity,
            'start_date': start_date,
            'end_date': end_date,
            'cohorts': cohorts,
            'conversion_events': list(conversion_events),
            'calculated_at': calculated_at,
        })

    def latest_cohorts(self, organization_id: str) -> Optional[Dict[str, Any]]:
        return self._most_recent(organization_id, 'COHORTS#')

    def put_funnel(self, organization_id: str, start_date: str, end_date: str,
                   funnel_steps: List[str], analysis: Dict[str, Any]) -> None:
        item = dict(analysis)
        item.update({
            'pk': f"ORG#{organization_id}",
            'sk': f"FUNNEL#{start_date}#{end_date}#{funnel_digest(funnel_steps)}",
            'organization_id': organization_id,
            'funnel_steps': list(funnel_steps),
            'start_date': start_date,
            'end_date': end_date,
        })
        self._put(item)

    def latest_funnel(self, organization_id: str) -> Optional[Dict[str, Any]]:
        return self._most_recent(organization_id, 'FUNNEL#')

    def _most_recent(self, organization_id: str, prefix: str) -> Optional[Dict[str, Any]]:
        items = self._query_all(
            KeyConditionExpression=Key('pk').eq(f"ORG#{organization_id}") & Key('sk').begins_with(prefix),
        )
        if not items:
            return None
        return max(items, key=lambda item: item.get('calculated_at', ''))


# =============================================================================
# Insight Store
# =============================================================================

class InsightStore(DynamoStore):
    """Latest insight set per organization; each run replaces the previous one."""

    def upsert(self, organization_id: str, insights: Dict[str, Any]) -> None:
        item = dict(insights)
        item['pk'] = f"ORG#{organization_id}"
        item['sk'] = 'INSIGHTS#latest'
        item['organization_id'] = organization_id
        self._put(item)

    def get(self, organization_id: str) -> Optional[Dict[str, Any]]:
        return self._get(f"ORG#{organization_id}", 'INSIGHTS#latest')
