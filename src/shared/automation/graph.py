"""Playbook Graph Model.

A playbook definition is a directed graph of nodes connected by edges, as
exported by the visual editor (React Flow). This module parses that
definition, validates its structural invariants, and exposes the traversal
operations used by the execution engine.

Invariants enforced by ``Graph.validate``:
- exactly one node has type ``trigger``
- every edge references nodes that exist
- every condition node labels its outgoing edges ``true``/``false`` without
  duplicates
- every node is reachable from the trigger

Cycles are permitted; the engine runs each node at most once per execution.
UI-only data (node positions, UI node types, edge IDs and the viewport) is
preserved on round-trip but never interpreted.
"""

import json
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .exceptions import ValidationError, ValidationErrorKind


class NodeType(Enum):
    """Business type of a playbook node."""
    TRIGGER = "trigger"
    CONDITION = "condition"
    EXPRESSION = "expression"
    HTTP_REQUEST = "http_request"
    SEND_EMAIL = "send_email"
    BLOCK_IP = "block_ip"


BRANCH_TRUE = "true"
BRANCH_FALSE = "false"
BRANCH_HANDLES = (BRANCH_TRUE, BRANCH_FALSE)


def branch_handle(result: bool) -> str:
    """Map a condition result onto the edge handle that carries it."""
    return BRANCH_TRUE if result else BRANCH_FALSE


def _parse_node_type(value: Any, node_id: str) -> NodeType:
    try:
        return NodeType(value)
    except ValueError:
        raise ValidationError(
            ValidationErrorKind.UNKNOWN_NODE_TYPE,
            f"Node '{node_id}' has unknown type '{value}'",
            node_id=node_id,
        )


@dataclass
class Node:
    """A single step in a playbook graph.

    Attributes:
        id: Identifier, unique within the graph
        type: Business node type
        label: Display label
        config: Type-specific configuration (may contain expressions)
        position: Editor canvas position (opaque)
        ui_type: Editor component type when it differs from ``type`` (opaque)
    """
    id: str
    type: NodeType
    label: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, Any] = field(default_factory=dict)
    ui_type: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = _parse_node_type(self.type, self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the editor's node shape."""
        return {
            "id": self.id,
            "type": self.ui_type or self.type.value,
            "position": self.position,
            "data": {
                "label": self.label,
                "type": self.type.value,
                "config": self.config,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Create a Node from either the editor shape or the flat shape.

        Editor shape: ``{id, type, position, data: {label, type, config}}``
        Flat shape: ``{id, type, label, config}``
        """
        node_id = str(data.get("id", ""))
        payload = data.get("data")

        if isinstance(payload, dict):
            business_type = payload.get("type") or data.get("type")
            ui_type = data.get("type")
            if ui_type == business_type:
                ui_type = None
            return cls(
                id=node_id,
                type=_parse_node_type(business_type, node_id),
                label=payload.get("label", ""),
                config=payload.get("config") or {},
                position=data.get("position") or {},
                ui_type=ui_type,
            )

        return cls(
            id=node_id,
            type=_parse_node_type(data.get("type"), node_id),
            label=data.get("label", ""),
            config=data.get("config") or {},
            position=data.get("position") or {},
        )


@dataclass
class Edge:
    """A directed control-flow link between two nodes.

    ``source_handle`` is only meaningful on edges leaving a condition node,
    where it names the branch (``"true"`` or ``"false"``).
    """
    source: str
    target: str
    source_handle: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"source": self.source, "target": self.target}
        if self.id is not None:
            result["id"] = self.id
        if self.source_handle is not None:
            result["sourceHandle"] = self.source_handle
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        handle = data.get("sourceHandle", data.get("source_handle"))
        if handle is not None and not isinstance(handle, str):
            handle = str(handle).lower()
        return cls(
            source=str(data.get("source", "")),
            target=str(data.get("target", "")),
            source_handle=handle or None,
            id=data.get("id"),
        )


@dataclass
class Graph:
    """In-memory playbook graph.

    Attributes:
        nodes: Nodes in declaration order
        edges: Edges in declaration order (this order drives fan-out)
        viewport: Editor pan/zoom state (opaque)
    """
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    viewport: Optional[Dict[str, Any]] = None

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get a node by ID."""
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing(self, node_id: str) -> List[Edge]:
        """Edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def trigger_node(self) -> Node:
        """Return the unique trigger node.

        Raises:
            ValidationError: If there is not exactly one trigger
        """
        triggers = [n for n in self.nodes if n.type == NodeType.TRIGGER]
        if len(triggers) != 1:
            raise ValidationError(
                ValidationErrorKind.MISSING_TRIGGER,
                f"Expected exactly one trigger node, found {len(triggers)}",
            )
        return triggers[0]

    def successors(self, node_id: str, taken_branch: Optional[bool] = None) -> List[str]:
        """Return the next node IDs to visit after ``node_id``.

        For a condition node with a ``taken_branch``, only edges whose handle
        matches the branch are followed; unlabeled edges never match. For
        every other node all outgoing targets are returned. Targets keep
        edge-declaration order and are de-duplicated.

        Args:
            node_id: Node whose successors to compute
            taken_branch: Boolean result of a condition node

        Returns:
            List of target node IDs
        """
        node = self.get_node(node_id)
        edges = self.outgoing(node_id)

        if node is not None and node.type == NodeType.CONDITION and taken_branch is not None:
            handle = branch_handle(taken_branch)
            edges = [e for e in edges if e.source_handle == handle]

        targets: List[str] = []
        for edge in edges:
            if edge.target not in targets:
                targets.append(edge.target)
        return targets

    def reachable_from(self, node_id: str) -> Set[str]:
        """All node IDs reachable from ``node_id`` (inclusive), ignoring branches."""
        seen: Set[str] = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen

    def validate(self) -> None:
        """Validate structural invariants.

        Raises:
            ValidationError: On the first violated invariant
        """
        trigger = self.trigger_node()

        node_ids: Set[str] = set()
        for node in self.nodes:
            if node.id in node_ids:
                raise ValidationError(
                    ValidationErrorKind.DUPLICATE_NODE,
                    f"Node ID '{node.id}' is used more than once",
                    node_id=node.id,
                )
            node_ids.add(node.id)

        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in node_ids:
                    raise ValidationError(
                        ValidationErrorKind.DANGLING_EDGE,
                        f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'",
                        node_id=endpoint,
                    )

        for node in self.nodes:
            if node.type == NodeType.CONDITION:
                self._validate_branches(node)

        reachable = self.reachable_from(trigger.id)
        for node in self.nodes:
            if node.id not in reachable:
                raise ValidationError(
                    ValidationErrorKind.UNREACHABLE_NODE,
                    f"Node '{node.id}' is not reachable from trigger '{trigger.id}'",
                    node_id=node.id,
                )

    def _validate_branches(self, node: Node) -> None:
        edges = self.outgoing(node.id)
        seen: Set[str] = set()
        for edge in edges:
            handle = edge.source_handle
            if handle is None:
                if len(edges) > 1:
                    raise ValidationError(
                        ValidationErrorKind.AMBIGUOUS_BRANCH,
                        f"Condition '{node.id}' has an unlabeled edge to '{edge.target}'",
                        node_id=node.id,
                    )
                continue
            if handle not in BRANCH_HANDLES:
                raise ValidationError(
                    ValidationErrorKind.AMBIGUOUS_BRANCH,
                    f"Condition '{node.id}' has invalid branch label '{handle}'",
                    node_id=node.id,
                )
            if handle in seen:
                raise ValidationError(
                    ValidationErrorKind.AMBIGUOUS_BRANCH,
                    f"Condition '{node.id}' has more than one '{handle}' edge",
                    node_id=node.id,
                )
            seen.add(handle)

    def is_valid(self) -> Tuple[bool, List[str]]:
        """Non-raising validation, for editor save checks.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        try:
            self.validate()
        except ValidationError as e:
            return False, [str(e)]
        return True, []

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the editor's definition shape."""
        result: Dict[str, Any] = {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }
        if self.viewport is not None:
            result["viewport"] = self.viewport
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Graph":
        """Create a Graph from a definition dictionary."""
        data = data or {}
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            viewport=data.get("viewport"),
        )

    @classmethod
    def from_json(cls, content: str) -> "Graph":
        return cls.from_dict(json.loads(content) if content else {})
