"""
Growth Tracking Lambda

Batch pipeline for growth analytics: ingests behavioral events and derives
period aggregates, trends, cohort retention, funnel drop-off and insights.

Triggers:
1. EventBridge schedule / direct invoke with a task (optionally wrapped as {"task": {...}})
2. SQS queue: each record body is one task (partial batch failure reporting)
3. API Gateway via api_handler (task in the JSON body)

Task Schema:
{
    "type": "track_event" | "aggregate_metrics" | "calculate_cohorts" | "process_funnel" | "generate_insights",
    "organizationId": "org_123",
    "data": {...},                      // task-specific payload
    "priority": "low" | "medium" | "high",
    "scheduledAt": "2025-07-01T00:00:00Z" (optional)
}

Result: {"success": true, "data": {...}} or {"success": false, "error": "..."}

DynamoDB Tables:
- growth-events      raw events (append-only)
- growth-aggregates  one row per org x period type x bucket
- growth-rollups     daily counters, user journeys, session activity
- growth-analyses    trends, cohort and funnel analyses
- growth-insights    latest insight set per org

Store handles are built per invocation and passed into each component.
Callers are responsible for authentication and tenant isolation.
"""

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

import boto3

from bucketing import parse_timestamp
from cohort_analyzer import CohortAnalyzer
from event_ingestor import EventIngestor
from funnel_analyzer import FunnelAnalyzer
from growth_stores import (
    AggregateStore,
    AnalysisStore,
    EventStore,
    GrowthStoreError,
    InsightStore,
    RollupStore,
)
from insight_generator import InsightGenerator
from period_aggregator import PeriodAggregator

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Environment variables
EVENTS_TABLE = os.environ.get('GROWTH_EVENTS_TABLE', 'growth-events')
AGGREGATES_TABLE = os.environ.get('GROWTH_AGGREGATES_TABLE', 'growth-aggregates')
ROLLUPS_TABLE = os.environ.get('GROWTH_ROLLUPS_TABLE', 'growth-rollups')
ANALYSES_TABLE = os.environ.get('GROWTH_ANALYSES_TABLE', 'growth-analyses')
INSIGHTS_TABLE = os.environ.get('GROWTH_INSIGHTS_TABLE', 'growth-insights')
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'staging')
INSIGHT_HISTORY_LIMIT = int(os.environ.get('INSIGHT_HISTORY_LIMIT', '30'))
ROLLUP_TTL_DAYS = int(os.environ.get('ROLLUP_TTL_DAYS', '90'))

# AWS resources
dynamodb = boto3.resource('dynamodb')

PRIORITIES = ('low', 'medium', 'high')
DEFAULT_PRIORITY = 'medium'


class TaskValidationError(ValueError):
    """The task envelope is malformed (unknown type, missing organization, ...)."""


def build_stores() -> Dict[str, Any]:
    """Fresh store handles for one invocation."""
    return {
        'events': EventStore(dynamodb.Table(EVENTS_TABLE)),
        'aggregates': AggregateStore(dynamodb.Table(AGGREGATES_TABLE)),
        'rollups': RollupStore(dynamodb.Table(ROLLUPS_TABLE), ttl_days=ROLLUP_TTL_DAYS),
        'analyses': AnalysisStore(dynamodb.Table(ANALYSES_TABLE)),
        'insights': InsightStore(dynamodb.Table(INSIGHTS_TABLE)),
    }


# =============================================================================
# Task Handlers
# =============================================================================

def handle_track_event(stores: Dict[str, Any], organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return EventIngestor(stores['events'], stores['rollups']).track(organization_id, data)


def handle_aggregate_metrics(stores: Dict[str, Any], organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    aggregator = PeriodAggregator(stores['events'], stores['aggregates'], stores['analyses'])
    return aggregator.run(organization_id, data)


def handle_calculate_cohorts(stores: Dict[str, Any], organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return CohortAnalyzer(stores['events'], stores['analyses']).run(organization_id, data)


def handle_process_funnel(stores: Dict[str, Any], organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return FunnelAnalyzer(stores['events'], stores['analyses']).run(organization_id, data)


def handle_generate_insights(stores: Dict[str, Any], organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    generator = InsightGenerator(
        stores['aggregates'], stores['analyses'], stores['insights'],
        history_limit=INSIGHT_HISTORY_LIMIT,
    )
    return generator.run(organization_id, data)


TASK_HANDLERS: Dict[str, Callable[[Dict[str, Any], str, Dict[str, Any]], Dict[str, Any]]] = {
    'track_event': handle_track_event,
    'aggregate_metrics': handle_aggregate_metrics,
    'calculate_cohorts': handle_calculate_cohorts,
    'process_funnel': handle_process_funnel,
    'generate_insights': handle_generate_insights,
}


# =============================================================================
# Task Envelope
# =============================================================================

def parse_task(payload: Any) -> Dict[str, Any]:
    """
    Validate a task envelope and fill defaults.
    Accepts the task itself or {"task": {...}}.
    """
    if isinstance(payload, dict) and isinstance(payload.get('task'), dict):
        payload = payload['task']
    if not isinstance(payload, dict):
        raise TaskValidationError("Task must be a JSON object")

    task_type = payload.get('type')
    if task_type not in TASK_HANDLERS:
        raise TaskValidationError(f"Unknown task type: {task_type}")

    organization_id = payload.get('organizationId')
    if not organization_id or not isinstance(organization_id, str):
        raise TaskValidationError("organizationId is required")

    data = payload.get('data')
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise TaskValidationError("data must be an object")

    priority = payload.get('priority') or DEFAULT_PRIORITY
    if priority not in PRIORITIES:
        raise TaskValidationError(f"Invalid priority: {priority}")

    scheduled_at = payload.get('scheduledAt')
    if scheduled_at:
        try:
            parse_timestamp(scheduled_at)
        except (ValueError, TypeError):
            raise TaskValidationError(f"Invalid scheduledAt: {scheduled_at!r}")

    return {
        'type': task_type,
        'organizationId': organization_id,
        'data': data,
        'priority': priority,
        'scheduledAt': scheduled_at,
    }


def execute_task(task: Dict[str, Any], stores: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Dispatch a validated task. Raises on failure."""
    if stores is None:
        stores = build_stores()
    handler = TASK_HANDLERS[task['type']]
    return handler(stores, task['organizationId'], task['data'])


def run_task(payload: Any, stores: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Validate, dispatch and wrap the outcome as {success, data} / {success, error}.
    Never raises.
    """
    try:
        task = parse_task(payload)
    except TaskValidationError as e:
        logger.warning(f"Rejected task: {e}")
        return {'success': False, 'error': str(e)}

    logger.info(f"Processing growth tracking task: {task['type']} for org: {task['organizationId']} "
                f"(priority={task['priority']}, env={ENVIRONMENT})")

    try:
        data = execute_task(task, stores)
        return {'success': True, 'data': data}
    except ValueError as e:
        logger.warning(f"Invalid {task['type']} payload for org {task['organizationId']}: {e}")
        return {'success': False, 'error': str(e)}
    except GrowthStoreError as e:
        logger.error(f"Store failure in {task['type']} for org {task['organizationId']}: {e}")
        return {'success': False, 'error': str(e)}
    except Exception as e:
        logger.exception(f"{task['type']} failed for org {task['organizationId']}: {e}")
        return {'success': False, 'error': str(e)}


# =============================================================================
# Entry Points
# =============================================================================

def lambda_handler(event, context):
    """
    Main handler. SQS batches are routed to process_sqs_batch, anything else
    is treated as a single task.
    """
    if isinstance(event, dict) and 'Records' in event:
        return process_sqs_batch(event)
    return run_task(event)


def process_sqs_batch(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    One task per SQS record. Uses partial batch failure reporting: only
    records that failed on a store or unexpected error are retried. Malformed
    tasks are logged and dropped since retrying them can't succeed.
    """
    records = event.get('Records', [])
    logger.info(f"Processing {len(records)} task records")

    stores = build_stores()
    failed_message_ids = []
    processed_count = 0

    for record in records:
        message_id = record.get('messageId', 'unknown')
        try:
            task = parse_task(json.loads(record.get('body') or '{}'))
            execute_task(task, stores)
            processed_count += 1
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in SQS message {message_id}: {e}")
        except ValueError as e:
            logger.error(f"Dropping invalid task in SQS message {message_id}: {e}")
        except Exception as e:
            logger.error(f"Error processing record {message_id}: {e}")
            failed_message_ids.append(message_id)

    logger.info(f"Processed: {processed_count}, Failed IDs: {len(failed_message_ids)}")

    return {
        'batchItemFailures': [
            {'itemIdentifier': msg_id} for msg_id in failed_message_ids
        ]
    }


def api_handler(event, context):
    """
    Handle API Gateway proxy invocations. The request body is the task
    (or {"task": {...}}).
    """
    try:
        body = event.get('body') or '{}'
        if isinstance(body, str):
            body = json.loads(body)
    except json.JSONDecodeError as e:
        return cors_response(400, {'success': False, 'error': f"Invalid JSON body: {e}"})

    try:
        task = parse_task(body)
    except TaskValidationError as e:
        return cors_response(400, {'success': False, 'error': str(e)})

    try:
        data = execute_task(task)
        return cors_response(200, {'success': True, 'data': data})
    except ValueError as e:
        return cors_response(400, {'success': False, 'error': str(e)})
    except Exception as e:
        logger.error(f"API handler error: {e}")
        return cors_response(500, {'success': False, 'error': str(e)})


def cors_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Headers': 'Content-Type,Authorization',
            'Access-Control-Allow-Methods': 'POST,OPTIONS'
        },
        'body': json.dumps(body, default=str)
    }
