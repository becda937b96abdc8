"""
Playbook Executor Handler

Lambda function that starts automation playbook runs. Can be invoked by:
- Detection pipeline (incident created, runs bound playbooks)
- API Gateway (manual test run with a mock context)
- EventBridge (scheduled playbooks)
"""

import json
import logging
import os
import sys
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

# Add repository root to path
sys.path.insert(0, '/opt/python')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../..'))

from src.shared.automation import (
    AutomationConfig,
    ExecutionEngine,
    ExecutionStoreError,
    PlaybookDispatcher,
    PlaybookNotFoundError,
    TriggerPayload,
    TriggerType,
    get_execution_engine,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Seconds kept free at the end of an invocation to write the response
RESPONSE_MARGIN_SECONDS = 5
DEFAULT_WAIT_SECONDS = 60

# Lazy-initialized engine
_execution_engine: Optional[ExecutionEngine] = None
_dispatcher: Optional[PlaybookDispatcher] = None


def _get_execution_engine() -> ExecutionEngine:
    """Get lazily-initialized execution engine."""
    global _execution_engine
    if _execution_engine is None:
        _execution_engine = get_execution_engine(config=AutomationConfig.from_environment())
    return _execution_engine


def _get_dispatcher() -> PlaybookDispatcher:
    """Get lazily-initialized dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        engine = _get_execution_engine()
        _dispatcher = PlaybookDispatcher(engine, engine.playbook_store)
    return _dispatcher


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal types from DynamoDB."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Start playbook executions.

    Incident created (from the detection pipeline):
    {
        "action": "dispatch_incident",
        "incident": { "id": 42, "rule_id": 7, ... }
    }

    Manual run (API Gateway body, playbook ID in the path or the body):
    {
        "playbook_id": "pb-xxx",
        "mock_context": { "incident": { ... } }
    }

    Run against a stored incident (looked up through the provider selected
    by AUTOMATION_INCIDENT_PROVIDER):
    {
        "playbook_id": "pb-xxx",
        "incident_id": "42"
    }

    Scheduled (from EventBridge, all active schedule playbooks):
    {
        "action": "dispatch_scheduled"
    }

    Runs are started in the background and awaited until shortly before the
    invocation times out. Runs still going are reported as ``running`` and
    can be polled through the execution status API.
    """
    try:
        event = _normalize_event(event)
        logger.info(f"Playbook executor invoked: {json.dumps(event, cls=DecimalEncoder)[:500]}")

        action = event.get('action')
        if action == 'dispatch_incident':
            incident = event.get('incident')
            if not isinstance(incident, dict):
                return _error_response(400, 'incident is required')
            execution_ids = _get_dispatcher().dispatch_incident(incident)
            return _executions_response(execution_ids, context)

        if action == 'dispatch_scheduled':
            execution_ids = _get_dispatcher().dispatch_scheduled()
            return _executions_response(execution_ids, context)

        playbook_id = event.get('playbook_id')
        if not playbook_id:
            return _error_response(400, 'playbook_id is required')

        trigger_type = None
        if event.get('trigger_type'):
            try:
                trigger_type = TriggerType(event['trigger_type'])
            except ValueError:
                return _error_response(400, f"Invalid trigger_type: {event['trigger_type']}")

        payload = TriggerPayload.from_dict(event)
        engine = _get_execution_engine()
        execution_id = engine.start_execution(playbook_id, payload, trigger_type=trigger_type)

        return _executions_response([execution_id], context, single=True)

    except PlaybookNotFoundError as e:
        logger.error(f'Playbook not found: {e}')
        return _error_response(404, str(e))
    except ExecutionStoreError as e:
        logger.error(f'Execution store error: {e}', exc_info=True)
        return _error_response(503, f'Execution store unavailable: {str(e)}')
    except Exception as e:
        logger.error(f'Playbook execution failed: {e}', exc_info=True)
        return _error_response(500, f'Execution failed: {str(e)}')


def _normalize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an API Gateway proxy event into a plain invocation event."""
    if 'httpMethod' not in event:
        return event

    body = event.get('body')
    data = json.loads(body) if body else {}
    path_params = event.get('pathParameters') or {}
    if path_params.get('playbook_id') or path_params.get('id'):
        data['playbook_id'] = path_params.get('playbook_id') or path_params.get('id')
    return data


def _remaining_seconds(context: Any) -> float:
    if context is None or not hasattr(context, 'get_remaining_time_in_millis'):
        return DEFAULT_WAIT_SECONDS
    return max(context.get_remaining_time_in_millis() / 1000.0 - RESPONSE_MARGIN_SECONDS, 0)


def _collect(execution_ids: List[str], context: Any) -> List[Dict[str, Any]]:
    """Wait for runs while the invocation has time left."""
    engine = _get_execution_engine()
    results = []

    for execution_id in execution_ids:
        try:
            execution = engine.wait(execution_id, timeout=_remaining_seconds(context))
        except FuturesTimeoutError:
            logger.info(f"Execution {execution_id} still running, returning for polling")
            execution = engine.get_execution(execution_id)
        results.append(execution.to_dict())

    return results


def _executions_response(
    execution_ids: List[str],
    context: Any,
    single: bool = False,
) -> Dict[str, Any]:
    executions = _collect(execution_ids, context)
    running = any(e['status'] == 'running' for e in executions)
    status_code = 202 if running else 200

    if single:
        return _success_response(executions[0], status_code)
    return _success_response({
        'executions': executions,
        'total': len(executions),
    }, status_code)


def _success_response(data: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    """Create a successful response."""
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(data, cls=DecimalEncoder),
    }


def _error_response(status_code: int, message: str) -> Dict[str, Any]:
    """Create an error response."""
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps({'error': message}),
    }
