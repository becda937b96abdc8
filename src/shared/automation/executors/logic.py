"""Executors that only evaluate expressions: trigger, condition, expression."""

import logging
from typing import Any, Dict

from ..exceptions import EvalError, EvalErrorKind
from ..expressions import to_serializable
from ..graph import NodeType
from ..playbook import Context, StepResult
from .base import StepExecutor

logger = logging.getLogger(__name__)


def _expression_source(config: Dict[str, Any]) -> str:
    source = config.get("expression")
    if not isinstance(source, str) or not source.strip():
        raise EvalError(EvalErrorKind.SYNTAX, "no expression configured")
    return source


class TriggerExecutor(StepExecutor):
    """Entry node. Its output is the trigger payload the run was seeded with."""

    node_type = NodeType.TRIGGER

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        return StepResult.success(output=to_serializable(ctx.env))


class ConditionExecutor(StepExecutor):
    """Evaluates a boolean expression to pick the ``true``/``false`` branch.

    A missing value counts as ``false``. An expression that cannot be
    evaluated fails the step and also selects the ``false`` branch.
    """

    node_type = NodeType.CONDITION

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        try:
            result = self.evaluator.evaluate_condition(_expression_source(config), ctx)
        except EvalError as e:
            logger.warning(f"Condition evaluation failed, taking false branch: {e}")
            return StepResult.failed(str(e), output={"result": False})
        return StepResult.success(output={"result": result})


class ExpressionExecutor(StepExecutor):
    """General-purpose compute step; the value becomes ``steps.<id>.output``."""

    node_type = NodeType.EXPRESSION

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        value = self.evaluator.evaluate(_expression_source(config), ctx)
        return StepResult.success(output=to_serializable(value))
