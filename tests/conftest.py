"""
vSentry Automation - Root Test Configuration

Pytest fixtures and configuration for all tests.
"""

import sys
from decimal import Decimal
from pathlib import Path

# Add repository root to Python path for imports
ROOT_DIR = Path(__file__).parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws


@pytest.fixture
def mock_aws_credentials(monkeypatch):
    """Mock AWS credentials for testing"""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_resource(mock_aws_credentials):
    """Mock DynamoDB resource"""
    with mock_aws():
        yield boto3.resource('dynamodb', region_name='us-east-1')


@pytest.fixture
def executions_table(dynamodb_resource):
    """Create the execution table with its playbook index"""
    return dynamodb_resource.create_table(
        TableName='test-playbook-executions',
        KeySchema=[
            {'AttributeName': 'pk', 'KeyType': 'HASH'},
            {'AttributeName': 'sk', 'KeyType': 'RANGE'},
        ],
        AttributeDefinitions=[
            {'AttributeName': 'pk', 'AttributeType': 'S'},
            {'AttributeName': 'sk', 'AttributeType': 'S'},
            {'AttributeName': 'gsi1pk', 'AttributeType': 'S'},
            {'AttributeName': 'gsi1sk', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': 'gsi1-playbook-index',
                'KeySchema': [
                    {'AttributeName': 'gsi1pk', 'KeyType': 'HASH'},
                    {'AttributeName': 'gsi1sk', 'KeyType': 'RANGE'},
                ],
                'Projection': {'ProjectionType': 'ALL'},
            }
        ],
        BillingMode='PAY_PER_REQUEST',
    )


@pytest.fixture
def playbooks_table(dynamodb_resource):
    """Create the playbook table"""
    return dynamodb_resource.create_table(
        TableName='test-playbooks',
        KeySchema=[{'AttributeName': 'pk', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'pk', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST',
    )


@pytest.fixture
def incidents_table(dynamodb_resource):
    """Create the incident table with one stored incident"""
    table = dynamodb_resource.create_table(
        TableName='test-incidents',
        KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST',
    )
    table.put_item(Item={
        'id': '42',
        'rule_id': 7,
        'name': 'Brute force login',
        'source_ip': '10.0.0.5',
        'score': Decimal('7.5'),
        'alerts': [{'id': 'a1', 'count': 3}],
    })
    return table


@pytest.fixture
def sample_playbook_definition():
    """trigger -> lookup -> check -> {true: notify, false: block}"""
    return {
        'nodes': [
            {'id': 'trigger', 'type': 'trigger', 'label': 'Incident created', 'config': {}},
            {
                'id': 'lookup',
                'type': 'http_request',
                'label': 'Reputation lookup',
                'config': {'url': 'https://api.example.com/{{incident.id}}'},
            },
            {
                'id': 'check',
                'type': 'condition',
                'label': 'Lookup OK?',
                'config': {'expression': 'steps.lookup.output.status_code == 200'},
            },
            {
                'id': 'notify',
                'type': 'send_email',
                'label': 'Notify SOC',
                'config': {
                    'host': 'smtp.example.com',
                    'from': 'alerts@example.com',
                    'to': 'soc@example.com',
                    'subject': 'Incident {{ incident.id }}',
                    'content': '<p>{{ incident.name }}</p>',
                },
            },
            {
                'id': 'block',
                'type': 'block_ip',
                'label': 'Block source',
                'config': {'ip': '{{ incident.source_ip }}'},
            },
        ],
        'edges': [
            {'source': 'trigger', 'target': 'lookup'},
            {'source': 'lookup', 'target': 'check'},
            {'source': 'check', 'target': 'notify', 'sourceHandle': 'true'},
            {'source': 'check', 'target': 'block', 'sourceHandle': 'false'},
        ],
    }


@pytest.fixture
def sample_incident():
    """Incident record as produced by the detection pipeline"""
    return {
        'id': 42,
        'rule_id': 7,
        'name': 'Brute force login',
        'severity': 'high',
        'source_ip': '10.0.0.5',
        'active': True,
        'tags': ['auth', 'ssh'],
        'alerts': [
            {'id': 'a1', 'severity': 'high', 'host': 'web-1'},
            {'id': 'a2', 'severity': 'low', 'host': 'web-2'},
            {'id': 'a3', 'severity': 'high', 'host': 'db-1'},
        ],
    }


def _response(status_code=200, content=b'{"ok": true}', headers=None, reason='OK'):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.encoding = 'utf-8'
    response.headers = headers if headers is not None else {'Content-Type': 'application/json'}
    response.reason = reason
    return response


@pytest.fixture
def make_response():
    """Factory for stand-ins of requests.Response"""
    return _response


@pytest.fixture
def http_session():
    """MagicMock in place of requests.Session returning a 200 JSON response"""
    session = MagicMock()
    session.request.return_value = _response()
    return session
