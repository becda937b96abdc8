"""Playbook automation module.

This module runs automation playbooks: directed graphs of steps authored in
the graph editor and executed server-side in response to incidents, manual
test runs or schedules.

Key Components:
- Graph / Node / Edge: Playbook definition and structural validation
- ExpressionEvaluator: Jinja2-based expressions and config templating
- StepExecutor: One executor per node type (trigger, condition, expression,
  http_request, send_email, block_ip)
- ExecutionEngine: Walks the graph, records step results, handles cancellation
- ExecutionStore: In-memory and DynamoDB storage of execution records
- PlaybookStore: In-memory, file and DynamoDB storage of playbooks
- TriggerResolver / PlaybookDispatcher: Initial context and run dispatch
- FirewallClient: block_ip collaborator (dry run or AWS WAF IP set)
"""

from .config import AutomationConfig

from .exceptions import (
    AutomationError,
    EngineFatalError,
    EvalError,
    EvalErrorKind,
    ExecutionCancelled,
    ExecutionNotFoundError,
    ExecutionStoreError,
    ExecutorError,
    FirewallError,
    PlaybookNotFoundError,
    TriggerResolutionError,
    ValidationError,
    ValidationErrorKind,
)

from .graph import (
    BRANCH_FALSE,
    BRANCH_TRUE,
    Edge,
    Graph,
    Node,
    NodeType,
)

from .expressions import ExpressionEvaluator

from .playbook import (
    Context,
    Execution,
    ExecutionErrorKind,
    ExecutionStatus,
    Playbook,
    StepResult,
    StepStatus,
    TriggerType,
)

from .executors import StepExecutor, build_executors

from .firewall import (
    DryRunFirewall,
    FirewallClient,
    WAFIPSetFirewall,
    get_firewall,
)

from .execution_store import (
    DynamoDBExecutionStore,
    ExecutionStore,
    InMemoryExecutionStore,
    get_execution_store,
)

from .playbook_store import (
    DynamoDBPlaybookStore,
    FilePlaybookStore,
    InMemoryPlaybookStore,
    PlaybookStore,
    get_playbook_store,
)

from .trigger import (
    DynamoDBIncidentProvider,
    InMemoryIncidentProvider,
    PlaybookDispatcher,
    TriggerPayload,
    TriggerResolver,
    get_incident_provider,
)

from .execution_engine import ExecutionEngine, get_execution_engine

__all__ = [
    # Config
    "AutomationConfig",
    # Errors
    "AutomationError",
    "EngineFatalError",
    "EvalError",
    "EvalErrorKind",
    "ExecutionCancelled",
    "ExecutionNotFoundError",
    "ExecutionStoreError",
    "ExecutorError",
    "FirewallError",
    "PlaybookNotFoundError",
    "TriggerResolutionError",
    "ValidationError",
    "ValidationErrorKind",
    # Graph model
    "BRANCH_FALSE",
    "BRANCH_TRUE",
    "Edge",
    "Graph",
    "Node",
    "NodeType",
    # Expressions
    "ExpressionEvaluator",
    # Data model
    "Context",
    "Execution",
    "ExecutionErrorKind",
    "ExecutionStatus",
    "Playbook",
    "StepResult",
    "StepStatus",
    "TriggerType",
    # Executors
    "StepExecutor",
    "build_executors",
    # Firewall
    "DryRunFirewall",
    "FirewallClient",
    "WAFIPSetFirewall",
    "get_firewall",
    # Storage
    "DynamoDBExecutionStore",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "get_execution_store",
    "DynamoDBPlaybookStore",
    "FilePlaybookStore",
    "InMemoryPlaybookStore",
    "PlaybookStore",
    "get_playbook_store",
    # Triggers
    "DynamoDBIncidentProvider",
    "InMemoryIncidentProvider",
    "PlaybookDispatcher",
    "TriggerPayload",
    "TriggerResolver",
    "get_incident_provider",
    # Engine
    "ExecutionEngine",
    "get_execution_engine",
]
