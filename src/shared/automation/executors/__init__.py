"""Step executors, one per node type."""

from typing import Dict, Optional, Type

import requests

from ..config import AutomationConfig
from ..expressions import ExpressionEvaluator
from ..firewall import DryRunFirewall, FirewallClient
from ..graph import NodeType
from .base import StepExecutor
from .block_ip import BlockIPExecutor
from .email import SendEmailExecutor, split_recipients
from .http_request import HttpRequestExecutor
from .logic import ConditionExecutor, ExpressionExecutor, TriggerExecutor

EXECUTOR_CLASSES: Dict[NodeType, Type[StepExecutor]] = {
    NodeType.TRIGGER: TriggerExecutor,
    NodeType.CONDITION: ConditionExecutor,
    NodeType.EXPRESSION: ExpressionExecutor,
    NodeType.HTTP_REQUEST: HttpRequestExecutor,
    NodeType.SEND_EMAIL: SendEmailExecutor,
    NodeType.BLOCK_IP: BlockIPExecutor,
}

_missing = set(NodeType) - set(EXECUTOR_CLASSES)
if _missing:
    raise ImportError(
        f"No executor registered for node types: {sorted(t.value for t in _missing)}"
    )


def build_executors(
    evaluator: Optional[ExpressionEvaluator] = None,
    firewall: Optional[FirewallClient] = None,
    session: Optional[requests.Session] = None,
    config: Optional[AutomationConfig] = None,
    smtp_factory=None,
) -> Dict[NodeType, StepExecutor]:
    """Build one executor instance per node type.

    Args:
        evaluator: Shared expression evaluator
        firewall: Collaborator used by block_ip steps (default: dry run)
        session: Optional requests session shared by http_request steps
        config: Timeouts and limits
        smtp_factory: Optional replacement for ``smtplib.SMTP``

    Returns:
        Mapping of node type to executor
    """
    evaluator = evaluator or ExpressionEvaluator()
    config = config or AutomationConfig()

    email_kwargs = {}
    if smtp_factory is not None:
        email_kwargs["smtp_factory"] = smtp_factory

    return {
        NodeType.TRIGGER: TriggerExecutor(evaluator),
        NodeType.CONDITION: ConditionExecutor(evaluator),
        NodeType.EXPRESSION: ExpressionExecutor(evaluator),
        NodeType.HTTP_REQUEST: HttpRequestExecutor(
            evaluator,
            session=session,
            timeout=config.http_timeout_seconds,
            max_body_bytes=config.max_response_body_bytes,
        ),
        NodeType.SEND_EMAIL: SendEmailExecutor(
            evaluator,
            timeout=config.smtp_timeout_seconds,
            starttls=config.smtp_starttls,
            **email_kwargs,
        ),
        NodeType.BLOCK_IP: BlockIPExecutor(evaluator, firewall or DryRunFirewall()),
    }


__all__ = [
    "StepExecutor",
    "TriggerExecutor",
    "ConditionExecutor",
    "ExpressionExecutor",
    "HttpRequestExecutor",
    "SendEmailExecutor",
    "BlockIPExecutor",
    "EXECUTOR_CLASSES",
    "build_executors",
    "split_recipients",
]
