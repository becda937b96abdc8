"""Base step executor interface."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict

from ..exceptions import EvalError, ExecutorError
from ..expressions import ExpressionEvaluator
from ..graph import Node, NodeType
from ..playbook import Context, StepResult

logger = logging.getLogger(__name__)


class StepExecutor(ABC):
    """Abstract base class for node executors.

    Subclasses implement ``execute`` and may raise ``ExecutorError`` or
    ``EvalError``; ``run`` turns those into a failed ``StepResult``. Any
    other exception escapes ``run`` and is treated as fatal by the engine.
    """

    node_type: NodeType

    def __init__(self, evaluator: ExpressionEvaluator):
        self.evaluator = evaluator

    @abstractmethod
    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        """Execute the step.

        Args:
            config: Node configuration as authored (unresolved)
            ctx: Read-only execution context

        Returns:
            StepResult describing the outcome
        """
        pass

    def run(self, node: Node, ctx: Context) -> StepResult:
        """Execute a node and stamp timing and node metadata on the result."""
        started_at = datetime.now(timezone.utc)

        try:
            result = self.execute(node.config or {}, ctx)
        except (EvalError, ExecutorError) as e:
            logger.warning(f"Step {node.id} ({node.type.value}) failed: {e}")
            result = StepResult.failed(str(e))

        result.start_time = started_at
        result.end_time = datetime.now(timezone.utc)
        result.node_type = node.type.value
        result.label = node.label
        return result

    def resolve(self, value: Any, ctx: Context) -> Any:
        return self.evaluator.resolve(value, ctx)

    def resolve_text(self, value: Any, ctx: Context) -> str:
        if value is None:
            return ""
        return self.evaluator.resolve_text(value, ctx)
