"""Pytest configuration and shared DynamoDB fixtures."""

import os

# Ensure test environment before any module builds a boto3 resource
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_SECURITY_TOKEN', 'testing')
os.environ.setdefault('AWS_SESSION_TOKEN', 'testing')
os.environ.setdefault('ENVIRONMENT', 'test')

import boto3
import pytest
from moto import mock_aws

from growth_stores import AggregateStore, AnalysisStore, EventStore, InsightStore, RollupStore

TABLE_NAMES = {
    'events': 'growth-events',
    'aggregates': 'growth-aggregates',
    'rollups': 'growth-rollups',
    'analyses': 'growth-analyses',
    'insights': 'growth-insights',
}


@pytest.fixture
def dynamodb_resource():
    """Mocked DynamoDB with every growth table created."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')
        for table_name in TABLE_NAMES.values():
            resource.create_table(
                TableName=table_name,
                KeySchema=[
                    {'AttributeName': 'pk', 'KeyType': 'HASH'},
                    {'AttributeName': 'sk', 'KeyType': 'RANGE'}
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'pk', 'AttributeType': 'S'},
                    {'AttributeName': 'sk', 'AttributeType': 'S'}
                ],
                BillingMode='PAY_PER_REQUEST'
            )
        yield resource


@pytest.fixture
def stores(dynamodb_resource):
    """Store objects backed by the mocked tables, keyed like lambda_function.build_stores()."""
    return {
        'events': EventStore(dynamodb_resource.Table(TABLE_NAMES['events'])),
        'aggregates': AggregateStore(dynamodb_resource.Table(TABLE_NAMES['aggregates'])),
        'rollups': RollupStore(dynamodb_resource.Table(TABLE_NAMES['rollups'])),
        'analyses': AnalysisStore(dynamodb_resource.Table(TABLE_NAMES['analyses'])),
        'insights': InsightStore(dynamodb_resource.Table(TABLE_NAMES['insights'])),
    }


def make_event(event_type, timestamp, user_id=None, session_id=None, organization_id='org_123',
               event_id=None, event_data=None):
    """Stored-event dict in the shape EventStore.query() returns."""
    return {
        'event_id': event_id or f"evt_{event_type}_{timestamp}_{user_id}_{session_id}",
        'organization_id': organization_id,
        'user_id': user_id,
        'session_id': session_id or f"sess_{user_id}",
        'event_type': event_type,
        'event_data': event_data or {},
        'source': 'organic',
        'timestamp': timestamp,
        'metadata': {},
    }
