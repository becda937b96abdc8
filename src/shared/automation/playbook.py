"""Automation Playbook Data Models.

This module provides the data models for automation playbooks and their
execution records.

Key concepts:
- Playbook: A stored workflow (trigger + graph of steps)
- StepResult: Outcome of a single node within one execution
- Execution: One concrete run of a playbook with per-node results
- Context: The read-only evaluation environment handed to each step
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set

import yaml

from .graph import Graph, NodeType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return None


class TriggerType(Enum):
    """How a playbook run is initiated.

    The trigger type only decides how the initial ``incident`` context is
    populated; it never changes engine behavior.
    """
    INCIDENT_CREATED = "incident_created"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class ExecutionStatus(Enum):
    """Execution lifecycle states."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def terminal_statuses(cls) -> Set["ExecutionStatus"]:
        """Return set of statuses that indicate execution is complete."""
        return {cls.SUCCESS, cls.FAILED}


class StepStatus(Enum):
    """Outcome of a single step."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionErrorKind(Enum):
    """Why an execution ended in ``failed``."""
    VALIDATION = "validation"
    TRIGGER = "trigger"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    """Result of executing a single playbook node.

    Attributes:
        status: success, failed or skipped
        output: Step output (any JSON-compatible value)
        error: Error message if failed
        start_time: When the step started
        end_time: When the step finished
        node_type: Type of the node that produced this result
        label: Display label of the node
    """
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    node_type: Optional[str] = None
    label: str = ""

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = StepStatus(self.status)
        if isinstance(self.node_type, NodeType):
            self.node_type = self.node_type.value
        if self.end_time is None:
            self.end_time = _utcnow()

    @classmethod
    def success(cls, output: Any = None, **kwargs) -> "StepResult":
        return cls(status=StepStatus.SUCCESS, output=output, **kwargs)

    @classmethod
    def failed(cls, error: str, output: Any = None, **kwargs) -> "StepResult":
        return cls(status=StepStatus.FAILED, output=output, error=error, **kwargs)

    @classmethod
    def skipped(cls, **kwargs) -> "StepResult":
        now = _utcnow()
        return cls(status=StepStatus.SKIPPED, start_time=now, end_time=now, **kwargs)

    @property
    def duration_ms(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_expression_value(self) -> Dict[str, Any]:
        """View exposed to expressions as ``steps.<nodeId>``."""
        return {
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status.value,
            "output": self.output,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }
        if self.error:
            result["error"] = self.error
        if self.node_type:
            result["node_type"] = self.node_type
        if self.label:
            result["label"] = self.label
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            status=data.get("status", "failed"),
            output=data.get("output"),
            error=data.get("error"),
            start_time=_parse_timestamp(data.get("start_time")) or _utcnow(),
            end_time=_parse_timestamp(data.get("end_time")),
            node_type=data.get("node_type"),
            label=data.get("label", ""),
        )


@dataclass(frozen=True)
class Context:
    """Evaluation environment for one execution.

    A Context is never mutated. The engine folds each completed step into a
    new snapshot via ``with_step``.

    Attributes:
        incident: Incident record supplied by the trigger
        steps: Results of completed steps keyed by node ID
        env: Whole trigger payload (manual mock context verbatim)
    """
    incident: Mapping[str, Any] = field(default_factory=dict)
    steps: Mapping[str, StepResult] = field(default_factory=dict)
    env: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "steps", MappingProxyType(dict(self.steps)))

    def with_step(self, node_id: str, result: StepResult) -> "Context":
        """Return a new snapshot with ``steps[node_id]`` added."""
        steps = dict(self.steps)
        steps[node_id] = result
        return replace(self, steps=steps)

    def to_expression_env(self) -> Dict[str, Any]:
        """Build the variable roots visible to expressions."""
        return {
            "incident": self.incident,
            "steps": {
                node_id: result.to_expression_value()
                for node_id, result in self.steps.items()
            },
            "env": self.env,
        }


@dataclass
class Execution:
    """Record of one concrete run of a playbook.

    The record is sealed once it reaches a terminal status. A cancelled run
    therefore has no log entry for the step that was in flight when the
    cancellation arrived; the engine logs that step's result instead.

    Attributes:
        id: Unique execution identifier
        playbook_id: ID of the playbook being executed
        status: Current execution status
        trigger_type: How the execution was triggered
        trigger_context_id: Incident ID when triggered by an incident
        start_time: When execution started
        end_time: When execution reached a terminal status
        logs: Step results keyed by node ID
        error: Run-level error message if failed
        error_kind: Category of the run-level failure
    """
    playbook_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_context_id: Optional[str] = None
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    logs: Dict[str, StepResult] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ExecutionErrorKind] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = ExecutionStatus(self.status)
        if isinstance(self.trigger_type, str):
            self.trigger_type = TriggerType(self.trigger_type)
        if isinstance(self.error_kind, str):
            self.error_kind = ExecutionErrorKind(self.error_kind)

    @property
    def duration_ms(self) -> Optional[int]:
        """Total execution duration in milliseconds."""
        if not self.end_time:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    @property
    def is_complete(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status in ExecutionStatus.terminal_statuses()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "status": self.status.value,
            "trigger_type": self.trigger_type.value,
            "trigger_context_id": self.trigger_context_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "logs": {node_id: r.to_dict() for node_id, r in self.logs.items()},
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        trigger_context_id = data.get("trigger_context_id")
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            playbook_id=str(data.get("playbook_id", "")),
            status=data.get("status", "running"),
            trigger_type=data.get("trigger_type", "manual"),
            trigger_context_id=str(trigger_context_id) if trigger_context_id is not None else None,
            start_time=_parse_timestamp(data.get("start_time")) or _utcnow(),
            end_time=_parse_timestamp(data.get("end_time")),
            logs={
                node_id: StepResult.from_dict(r)
                for node_id, r in (data.get("logs") or {}).items()
            },
            error=data.get("error"),
            error_kind=data.get("error_kind"),
        )


@dataclass
class Playbook:
    """A stored automation workflow.

    Attributes:
        id: Unique playbook identifier
        name: Human-readable playbook name
        definition: Node/edge graph authored in the editor
        is_active: Whether rule-fired runs are allowed
        trigger_type: How runs of this playbook are initiated
        description: Free-text description
        rule_ids: Detection rules this playbook is bound to
        created: When the playbook was created
        modified: When the playbook was last saved
    """
    name: str
    definition: Graph = field(default_factory=Graph)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = False
    trigger_type: TriggerType = TriggerType.MANUAL
    description: str = ""
    rule_ids: List[str] = field(default_factory=list)
    created: datetime = field(default_factory=_utcnow)
    modified: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if isinstance(self.trigger_type, str):
            self.trigger_type = TriggerType(self.trigger_type)
        if isinstance(self.definition, dict):
            self.definition = Graph.from_dict(self.definition)
        self.rule_ids = [str(r) for r in self.rule_ids]

    def is_bound_to(self, rule_id: Any) -> bool:
        return rule_id is not None and str(rule_id) in self.rule_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "trigger_type": self.trigger_type.value,
            "definition": self.definition.to_dict(),
            "rule_ids": self.rule_ids,
            "created": self.created.isoformat(),
            "modified": self.modified.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Playbook":
        definition = data.get("definition") or {}
        if isinstance(definition, str):
            definition = json.loads(definition)

        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            name=data.get("name", "Unnamed Playbook"),
            description=data.get("description", ""),
            is_active=bool(data.get("is_active", False)),
            trigger_type=data.get("trigger_type", "manual"),
            definition=Graph.from_dict(definition),
            rule_ids=data.get("rule_ids") or [],
            created=_parse_timestamp(data.get("created")) or _utcnow(),
            modified=_parse_timestamp(data.get("modified")) or _utcnow(),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "Playbook":
        return cls.from_dict(yaml.safe_load(yaml_content))
