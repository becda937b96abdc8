"""
Execution Status Handler

Lambda function to handle execution status API requests.
Provides the polling surface for playbook executions.
"""

import json
import logging
import os
import sys
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

# Add repository root to path
sys.path.insert(0, '/opt/python')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../..'))

from src.shared.automation import (
    AutomationConfig,
    ExecutionEngine,
    ExecutionNotFoundError,
    ExecutionStoreError,
    get_execution_engine,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

MAX_LIMIT = 500

# Lazy-initialized engine
_execution_engine: Optional[ExecutionEngine] = None


def _get_execution_engine() -> ExecutionEngine:
    """Get lazily-initialized execution engine."""
    global _execution_engine
    if _execution_engine is None:
        _execution_engine = get_execution_engine(config=AutomationConfig.from_environment())
    return _execution_engine


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
    Handle execution status API requests.

    Routes:
    - GET /executions - List recent executions across playbooks
    - GET /executions/{id} - Get execution details (polled until not running)
    - GET /playbooks/{id}/executions - Execution history of one playbook
    - POST /executions/{id}/cancel - Cancel running execution
    """
    method = event.get('httpMethod', 'GET')

    try:
        path = event.get('path', '').rstrip('/')
        params = event.get('queryStringParameters', {}) or {}
        parts = [p for p in path.split('/') if p]

        if parts == ['executions'] and method == 'GET':
            return handle_list_executions(params)
        elif len(parts) == 3 and parts[0] == 'playbooks' and parts[2] == 'executions' and method == 'GET':
            return handle_list_playbook_executions(parts[1], params)
        elif len(parts) == 3 and parts[0] == 'executions' and parts[2] == 'cancel' and method == 'POST':
            return handle_cancel_execution(parts[1])
        elif len(parts) == 2 and parts[0] == 'executions' and method == 'GET':
            return handle_get_execution(parts[1])
        else:
            return _error_response(404, 'Not found')

    except ValueError as e:
        return _error_response(400, str(e))
    except ExecutionStoreError as e:
        logger.error(f'Execution store error: {e}', exc_info=True)
        return _error_response(503, 'Execution store unavailable')
    except Exception as e:
        logger.error(f'Error in execution status handler: {e}', exc_info=True)
        return _error_response(500, 'Internal server error')


def _parse_limit(params: Dict[str, str], default: int) -> int:
    raw = params.get('limit')
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValueError(f'Invalid limit: {raw}')
    if limit < 1:
        raise ValueError(f'Invalid limit: {raw}')
    return min(limit, MAX_LIMIT)


def handle_list_executions(params: Dict[str, str]) -> Dict[str, Any]:
    """
    List executions across all playbooks, newest first.

    Query parameters:
    - limit: Maximum results (default 100)
    """
    engine = _get_execution_engine()
    executions = engine.list_executions(limit=_parse_limit(params, 100))

    return _success_response({
        'executions': [e.to_dict() for e in executions],
        'total': len(executions),
    })


def handle_list_playbook_executions(playbook_id: str, params: Dict[str, str]) -> Dict[str, Any]:
    """List executions of one playbook, newest first (default limit 20)."""
    engine = _get_execution_engine()
    executions = engine.list_executions(playbook_id=playbook_id, limit=_parse_limit(params, 20))

    return _success_response({
        'playbook_id': playbook_id,
        'executions': [e.to_dict() for e in executions],
        'total': len(executions),
    })


def handle_get_execution(execution_id: str) -> Dict[str, Any]:
    """Get details of a specific execution."""
    execution = _get_execution_engine().get_execution(execution_id)
    if not execution:
        return _error_response(404, f'Execution not found: {execution_id}')

    response_data = execution.to_dict()
    response_data['is_complete'] = execution.is_complete

    return _success_response({'execution': response_data})


def handle_cancel_execution(execution_id: str) -> Dict[str, Any]:
    """Cancel a running execution."""
    engine = _get_execution_engine()

    try:
        cancelled = engine.cancel_execution(execution_id)
    except ExecutionNotFoundError:
        return _error_response(404, f'Execution not found: {execution_id}')

    if not cancelled:
        execution = engine.get_execution(execution_id)
        return _error_response(
            409,
            f'Execution is already {execution.status.value} and cannot be cancelled'
        )

    logger.info(f'Execution {execution_id} cancelled')

    return _success_response({
        'message': 'Execution cancelled successfully',
        'execution_id': execution_id,
    })


def _success_response(data: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    """Create a successful API response."""
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(data, cls=DecimalEncoder),
    }


def _error_response(status_code: int, message: str) -> Dict[str, Any]:
    """Create an error API response."""
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps({'error': message}),
    }
