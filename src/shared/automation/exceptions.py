"""Exception hierarchy for the playbook automation engine.

Step-level problems (``EvalError``, ``ExecutorError``) are recorded as data on
the failing node's ``StepResult``. Engine-level problems
(``EngineFatalError`` and subclasses) halt the run and are recorded on the
execution record itself.
"""

from enum import Enum
from typing import Optional


class AutomationError(Exception):
    """Base class for all automation errors."""
    pass


class ValidationErrorKind(Enum):
    """Structural problems detected in a playbook graph."""
    MISSING_TRIGGER = "MissingTrigger"
    UNREACHABLE_NODE = "UnreachableNode"
    AMBIGUOUS_BRANCH = "AmbiguousBranch"
    UNKNOWN_NODE_TYPE = "UnknownNodeType"
    DUPLICATE_NODE = "DuplicateNode"
    DANGLING_EDGE = "DanglingEdge"


class ValidationError(AutomationError):
    """Raised when a playbook graph violates a structural invariant."""

    def __init__(
        self,
        kind: ValidationErrorKind,
        message: str,
        node_id: Optional[str] = None,
    ):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.node_id = node_id


class EvalErrorKind(Enum):
    """Expression evaluation failure categories."""
    SYNTAX = "Syntax"
    TYPE_MISMATCH = "TypeMismatch"
    UNDEFINED_FUNCTION = "UndefinedFunction"
    FORBIDDEN = "Forbidden"


class EvalError(AutomationError):
    """Raised when an expression cannot be compiled or evaluated."""

    def __init__(self, kind: EvalErrorKind, message: str, source: str = ""):
        super().__init__(f"{kind.value} error: {message}")
        self.kind = kind
        self.source = source


class ExecutorError(AutomationError):
    """Raised by a step executor for transport, auth or timeout failures."""
    pass


class FirewallError(ExecutorError):
    """Raised when the firewall collaborator fails to block an address."""
    pass


class EngineFatalError(AutomationError):
    """Unexpected internal failure that halts an execution."""
    pass


class ExecutionCancelled(EngineFatalError):
    """Raised between steps when an execution has been cancelled."""
    pass


class ExecutionStoreError(EngineFatalError):
    """Raised when an execution record cannot be written."""
    pass


class ExecutionNotFoundError(AutomationError):
    """Raised when an execution ID is unknown to the store."""
    pass


class PlaybookNotFoundError(AutomationError):
    """Raised when a playbook ID is unknown to the store."""
    pass


class TriggerResolutionError(AutomationError):
    """Raised when a trigger payload cannot be turned into a context."""
    pass
