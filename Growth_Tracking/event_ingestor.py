"""
Event Ingestor

Validates and persists one behavioral event, then nudges the lightweight
rollups that hang off it:
- per-day counter for the event's metric type
- user journey pointer (identified users only)
- session activity pointer

The event write is the source of truth and its failure is fatal. Rollup
failures are logged and swallowed.
"""

import logging
import uuid
from typing import Any, Dict

from bucketing import Granularity, bucket_key, format_timestamp, utc_now
from event_mappings import determine_journey_stage, event_type_to_metric

logger = logging.getLogger(__name__)

# Caller metadata keys copied into the stamped processing context
METADATA_CONTEXT_FIELDS = {
    'userAgent': 'user_agent',
    'ipAddress': 'ip_address',
    'referrer': 'referrer',
}


class EventValidationError(ValueError):
    """The event payload is missing required fields or has malformed ones."""


def validate_event(organization_id: Any, data: Any) -> None:
    if not organization_id or not isinstance(organization_id, str):
        raise EventValidationError("organizationId is required")
    if not isinstance(data, dict):
        raise EventValidationError("Event data must be an object")

    event_type = data.get('eventType')
    if not event_type or not isinstance(event_type, str):
        raise EventValidationError("eventType is required")

    for field in ('eventData', 'metadata'):
        if data.get(field) is not None and not isinstance(data[field], dict):
            raise EventValidationError(f"{field} must be an object")

    if data.get('timestamp'):
        try:
            format_timestamp(data['timestamp'])
        except (ValueError, TypeError):
            raise EventValidationError(f"Invalid timestamp: {data['timestamp']!r}")


def enrich_event(organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the stored event record from a validated payload.
    Assigns event_id, a session_id when missing, and stamps processing metadata.
    """
    processed_at = utc_now()
    caller_metadata = data.get('metadata') or {}

    metadata = dict(caller_metadata)
    metadata['processed_at'] = format_timestamp(processed_at)
    for source_key, target_key in METADATA_CONTEXT_FIELDS.items():
        metadata[target_key] = caller_metadata.get(source_key)

    return {
        'event_id': str(uuid.uuid4()),
        'organization_id': organization_id,
        'user_id': data.get('userId') or None,
        'session_id': data.get('sessionId') or str(uuid.uuid4()),
        'event_type': data['eventType'],
        'event_data': data.get('eventData') or {},
        'source': data.get('source') or 'unknown',
        'timestamp': format_timestamp(data.get('timestamp') or processed_at),
        'metadata': metadata,
    }


class EventIngestor:
    """
    Writes events to the event store and updates ingestion rollups.
    """

    def __init__(self, event_store, rollup_store):
        self.event_store = event_store
        self.rollup_store = rollup_store

    def track(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        validate_event(organization_id, data)
        logger.info(f"Tracking event: {data['eventType']} for org: {organization_id}")

        event = enrich_event(organization_id, data)

        # Source of truth; errors propagate to the task boundary
        event_id = self.event_store.insert(event)

        metric_type = event_type_to_metric(event['event_type'])
        journey_stage = determine_journey_stage(event['event_type'])

        if metric_type is not None:
            self._safely('daily counter', self.rollup_store.increment_daily_counter,
                         organization_id, metric_type.value,
                         bucket_key(event['timestamp'], Granularity.DAILY),
                         event['source'], event['event_type'])

        if event['user_id']:
            self._safely('user journey', self.rollup_store.update_user_journey,
                         organization_id, event['user_id'], event['event_type'],
                         event['timestamp'], journey_stage.value)

        self._safely('session activity', self.rollup_store.update_session_activity,
                     organization_id, event['session_id'], event['event_type'],
                     event['timestamp'], event['user_id'])

        logger.info(f"Successfully tracked event: {event['event_type']} ({event_id})")
        return {
            'eventId': event_id,
            'sessionId': event['session_id'],
            'eventType': event['event_type'],
            'timestamp': event['timestamp'],
            'metricType': metric_type.value if metric_type else None,
            'journeyStage': journey_stage.value,
        }

    @staticmethod
    def _safely(label: str, func, *args) -> bool:
        """Run a best-effort rollup. Failures are logged, never raised."""
        try:
            func(*args)
            return True
        except Exception as e:
            logger.warning(f"{label} update failed (non-fatal): {e}")
            return False
