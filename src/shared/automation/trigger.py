"""Trigger resolution and playbook dispatch.

The resolver turns a trigger payload into the initial ``Context`` of a run:

- ``incident_id``: the incident record is looked up and exposed as
  ``incident``
- ``mock_context``: the supplied JSON is used verbatim as ``env`` and its
  ``incident`` key (if any) as ``incident``
- ``incident``: an already-loaded incident record, used by rule dispatch
- nothing, for scheduled runs: an empty context

The dispatcher starts the playbooks that a trigger event applies to.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from .exceptions import TriggerResolutionError
from .playbook import Context, TriggerType
from .playbook_store import PlaybookStore

if TYPE_CHECKING:
    from .execution_engine import ExecutionEngine

logger = logging.getLogger(__name__)


class IncidentProvider(Protocol):
    """Source of incident records for ``incident_id`` triggers."""

    def get_incident(self, incident_id: str) -> Optional[Dict[str, Any]]:
        ...


class InMemoryIncidentProvider:
    """Incident provider backed by a dictionary, for tests and development."""

    def __init__(self, incidents: Optional[Dict[str, Dict[str, Any]]] = None):
        self._incidents = {str(k): v for k, v in (incidents or {}).items()}

    def add(self, incident: Dict[str, Any]) -> None:
        self._incidents[str(incident["id"])] = incident

    def get_incident(self, incident_id: str) -> Optional[Dict[str, Any]]:
        return self._incidents.get(str(incident_id))


def _from_dynamodb(value: Any) -> Any:
    """Convert DynamoDB Decimals back to int/float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamodb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(v) for v in value]
    if isinstance(value, set):
        return sorted(_from_dynamodb(v) for v in value)
    return value


class DynamoDBIncidentProvider:
    """Incident provider reading the incident table (partition key ``id``)."""

    def __init__(self, table_name: str = "vsentry-incidents", region: Optional[str] = None):
        self.table_name = table_name
        self.region = region
        self._table = None

    @property
    def table(self):
        """Lazy-load DynamoDB table resource."""
        if self._table is None:
            import boto3
            dynamodb = boto3.resource("dynamodb", region_name=self.region)
            self._table = dynamodb.Table(self.table_name)
        return self._table

    def get_incident(self, incident_id: str) -> Optional[Dict[str, Any]]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self.table.get_item(Key={"id": str(incident_id)})
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Error loading incident {incident_id}: {e}")
            raise TriggerResolutionError(f"Failed to load incident {incident_id}: {e}")

        item = response.get("Item")
        return _from_dynamodb(item) if item else None


def get_incident_provider(provider_type: Optional[str] = None, **kwargs) -> Optional[IncidentProvider]:
    """Factory function to get the incident source for ``incident_id`` triggers.

    Args:
        provider_type: "none", "memory" or "dynamodb"
        **kwargs: Provider-specific configuration

    Returns:
        IncidentProvider instance, or None when incident lookup is disabled
    """
    if provider_type is None:
        provider_type = os.environ.get("AUTOMATION_INCIDENT_PROVIDER", "none")

    if provider_type == "dynamodb":
        return DynamoDBIncidentProvider(
            table_name=kwargs.get("table_name", os.environ.get("INCIDENT_TABLE", "vsentry-incidents")),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )
    if provider_type == "memory":
        return InMemoryIncidentProvider(kwargs.get("incidents"))
    return None


@dataclass
class TriggerPayload:
    """What a caller supplies to start a run. At most one field is set."""
    incident_id: Optional[str] = None
    mock_context: Optional[Dict[str, Any]] = None
    incident: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TriggerPayload":
        data = data or {}
        incident_id = data.get("incident_id")
        return cls(
            incident_id=str(incident_id) if incident_id is not None else None,
            mock_context=data.get("mock_context"),
            incident=data.get("incident"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.incident_id is not None:
            result["incident_id"] = self.incident_id
        if self.mock_context is not None:
            result["mock_context"] = self.mock_context
        if self.incident is not None:
            result["incident"] = self.incident
        return result


@dataclass
class ResolvedTrigger:
    """Initial context of a run plus the incident it refers to, if any."""
    context: Context
    trigger_context_id: Optional[str] = None


class TriggerResolver:
    """Builds the initial execution context from a trigger payload."""

    def __init__(self, incident_provider: Optional[IncidentProvider] = None):
        self.incident_provider = incident_provider

    def resolve(
        self,
        trigger_type: TriggerType,
        payload: Optional[TriggerPayload] = None,
    ) -> ResolvedTrigger:
        """Resolve a trigger payload.

        Args:
            trigger_type: How the run was initiated
            payload: Caller-supplied trigger data

        Returns:
            ResolvedTrigger with the initial context

        Raises:
            TriggerResolutionError: If the payload is ambiguous, malformed or
                refers to an unknown incident
        """
        payload = payload or TriggerPayload()
        supplied = [
            name for name in ("incident_id", "mock_context", "incident")
            if getattr(payload, name) is not None
        ]

        if len(supplied) > 1:
            raise TriggerResolutionError(
                f"Exactly one of incident_id or mock_context may be supplied, got {supplied}"
            )

        if not supplied:
            if trigger_type == TriggerType.SCHEDULE:
                return ResolvedTrigger(context=Context())
            raise TriggerResolutionError(
                f"A {trigger_type.value} trigger needs an incident_id or a mock_context"
            )

        if payload.incident_id is not None:
            return self._from_incident(self._load_incident(payload.incident_id))
        if payload.incident is not None:
            return self._from_incident(payload.incident)
        return self._from_mock(payload.mock_context)

    def _load_incident(self, incident_id: str) -> Dict[str, Any]:
        if self.incident_provider is None:
            raise TriggerResolutionError("No incident provider configured")

        incident = self.incident_provider.get_incident(incident_id)
        if incident is None:
            raise TriggerResolutionError(f"Incident not found: {incident_id}")
        return incident

    def _from_incident(self, incident: Any) -> ResolvedTrigger:
        if not isinstance(incident, Mapping):
            raise TriggerResolutionError("Incident record must be an object")

        incident_id = incident.get("id")
        return ResolvedTrigger(
            context=Context(incident=dict(incident), env={"incident": dict(incident)}),
            trigger_context_id=str(incident_id) if incident_id is not None else None,
        )

    def _from_mock(self, mock_context: Any) -> ResolvedTrigger:
        if not isinstance(mock_context, Mapping):
            raise TriggerResolutionError("mock_context must be a JSON object")

        incident = mock_context.get("incident") or {}
        if not isinstance(incident, Mapping):
            raise TriggerResolutionError("mock_context.incident must be a JSON object")

        return ResolvedTrigger(context=Context(incident=dict(incident), env=dict(mock_context)))


class PlaybookDispatcher:
    """Starts playbook runs in response to trigger events."""

    def __init__(self, engine: "ExecutionEngine", playbook_store: PlaybookStore):
        self.engine = engine
        self.playbook_store = playbook_store

    def dispatch_incident(self, incident: Dict[str, Any]) -> List[str]:
        """Start every active incident-created playbook bound to the incident's rule.

        Runs happen in the background; this never waits for them.

        Returns:
            IDs of the started executions
        """
        rule_id = incident.get("rule_id")
        playbooks = self.playbook_store.get_bound_to_rule(rule_id)

        execution_ids = []
        for playbook in playbooks:
            execution_ids.append(
                self.engine.start_execution(
                    playbook.id,
                    TriggerPayload(incident=incident),
                    trigger_type=TriggerType.INCIDENT_CREATED,
                )
            )

        logger.info(
            f"Dispatched incident {incident.get('id')} (rule {rule_id}) to "
            f"{len(execution_ids)} playbook(s)"
        )
        return execution_ids

    def dispatch_manual(self, playbook_id: str, mock_context: Optional[Dict[str, Any]] = None) -> str:
        """Start a manual test run with a mock context."""
        return self.engine.start_execution(
            playbook_id,
            TriggerPayload(mock_context=mock_context if mock_context is not None else {}),
            trigger_type=TriggerType.MANUAL,
        )

    def dispatch_scheduled(self) -> List[str]:
        """Start every active schedule-triggered playbook with an empty context."""
        execution_ids = [
            self.engine.start_execution(playbook.id, TriggerPayload(), trigger_type=TriggerType.SCHEDULE)
            for playbook in self.playbook_store.get_by_trigger(TriggerType.SCHEDULE)
        ]
        logger.info(f"Dispatched {len(execution_ids)} scheduled playbook(s)")
        return execution_ids
