"""Block IP step executor."""

import logging
from typing import Any, Dict

from ..exceptions import ExecutorError
from ..expressions import ExpressionEvaluator
from ..firewall import FirewallClient, normalize_ip
from ..graph import NodeType
from ..playbook import Context, StepResult
from .base import StepExecutor

logger = logging.getLogger(__name__)


class BlockIPExecutor(StepExecutor):
    """Asks the firewall collaborator to block ``config.ip``.

    The address is usually templated from the incident, for example
    ``{{ incident.source_ip }}``.
    """

    node_type = NodeType.BLOCK_IP

    def __init__(self, evaluator: ExpressionEvaluator, firewall: FirewallClient):
        super().__init__(evaluator)
        self.firewall = firewall

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        raw_ip = self.resolve_text(config.get("ip"), ctx).strip()
        if not raw_ip:
            raise ExecutorError("ip is required")

        address = normalize_ip(raw_ip)
        self.firewall.block_ip(address)

        logger.info(f"Blocked IP {address} via {self.firewall.name}")
        return StepResult.success(output={"blocked": address, "firewall": self.firewall.name})
