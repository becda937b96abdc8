"""Unit tests for the playbook graph model."""

import pytest

from src.shared.automation.exceptions import ValidationError, ValidationErrorKind
from src.shared.automation.graph import Edge, Graph, Node, NodeType


def branching_definition():
    """trigger -> http1 -> cond -> {true: email, false: block}"""
    return {
        "nodes": [
            {"id": "trigger", "type": "trigger", "label": "Incident created", "config": {}},
            {"id": "http1", "type": "http_request", "label": "Lookup", "config": {"url": "https://api.example.com/{{incident.id}}"}},
            {"id": "cond", "type": "condition", "label": "OK?", "config": {"expression": "steps.http1.output.status_code == 200"}},
            {"id": "email", "type": "send_email", "label": "Notify", "config": {}},
            {"id": "block", "type": "block_ip", "label": "Block", "config": {"ip": "{{ incident.source_ip }}"}},
        ],
        "edges": [
            {"source": "trigger", "target": "http1"},
            {"source": "http1", "target": "cond"},
            {"source": "cond", "target": "email", "sourceHandle": "true"},
            {"source": "cond", "target": "block", "sourceHandle": "false"},
        ],
    }


def editor_definition():
    """Definition in the shape saved by the graph editor."""
    return {
        "nodes": [
            {
                "id": "n1",
                "type": "triggerNode",
                "position": {"x": 100, "y": 50},
                "data": {"label": "Start", "type": "trigger", "config": {}},
            },
            {
                "id": "n2",
                "type": "actionNode",
                "position": {"x": 100, "y": 200},
                "data": {"label": "Compute", "type": "expression", "config": {"expression": "1 + 1"}},
            },
        ],
        "edges": [{"id": "e1-2", "source": "n1", "target": "n2"}],
        "viewport": {"x": 0, "y": 0, "zoom": 1.25},
    }


class TestValidate:
    """Tests for Graph.validate."""

    def test_valid_graph(self):
        graph = Graph.from_dict(branching_definition())

        graph.validate()
        assert graph.is_valid() == (True, [])

    def test_missing_trigger(self):
        definition = branching_definition()
        definition["nodes"] = [n for n in definition["nodes"] if n["id"] != "trigger"]
        definition["edges"] = [e for e in definition["edges"] if e["source"] != "trigger"]

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.MISSING_TRIGGER

    def test_two_triggers(self):
        definition = branching_definition()
        definition["nodes"].append({"id": "trigger2", "type": "trigger", "config": {}})
        definition["edges"].append({"source": "trigger2", "target": "http1"})

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.MISSING_TRIGGER

    def test_unreachable_node(self):
        definition = branching_definition()
        definition["nodes"].append({"id": "orphan", "type": "expression", "config": {"expression": "1"}})

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.UNREACHABLE_NODE
        assert exc_info.value.node_id == "orphan"

    def test_duplicate_branch_label(self):
        definition = branching_definition()
        definition["edges"][3]["sourceHandle"] = "true"

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.AMBIGUOUS_BRANCH
        assert exc_info.value.node_id == "cond"

    def test_unlabeled_edge_next_to_labeled_edge(self):
        definition = branching_definition()
        del definition["edges"][3]["sourceHandle"]

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.AMBIGUOUS_BRANCH

    def test_invalid_branch_label(self):
        definition = branching_definition()
        definition["edges"][3]["sourceHandle"] = "maybe"

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.AMBIGUOUS_BRANCH

    def test_single_unlabeled_condition_edge_is_accepted(self):
        definition = branching_definition()
        definition["nodes"] = [n for n in definition["nodes"] if n["id"] != "block"]
        definition["edges"] = definition["edges"][:3]
        del definition["edges"][2]["sourceHandle"]
        graph = Graph.from_dict(definition)

        graph.validate()

        # The edge is never followed, whichever branch is taken
        assert graph.successors("cond", True) == []
        assert graph.successors("cond", False) == []

    def test_unknown_node_type(self):
        definition = branching_definition()
        definition["nodes"][1]["type"] = "run_shell"

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition)

        assert exc_info.value.kind == ValidationErrorKind.UNKNOWN_NODE_TYPE
        assert exc_info.value.node_id == "http1"

    def test_duplicate_node_id(self):
        definition = branching_definition()
        definition["nodes"].append({"id": "email", "type": "expression", "config": {}})

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.DUPLICATE_NODE

    def test_dangling_edge(self):
        definition = branching_definition()
        definition["edges"].append({"source": "email", "target": "ghost"})

        with pytest.raises(ValidationError) as exc_info:
            Graph.from_dict(definition).validate()

        assert exc_info.value.kind == ValidationErrorKind.DANGLING_EDGE
        assert exc_info.value.node_id == "ghost"

    def test_cycle_is_allowed(self):
        graph = Graph(
            nodes=[
                Node("t", NodeType.TRIGGER),
                Node("a", NodeType.EXPRESSION, config={"expression": "1"}),
                Node("b", NodeType.EXPRESSION, config={"expression": "2"}),
            ],
            edges=[Edge("t", "a"), Edge("a", "b"), Edge("b", "a")],
        )

        graph.validate()

    def test_is_valid_reports_message(self):
        graph = Graph(nodes=[Node("a", NodeType.EXPRESSION)])

        valid, errors = graph.is_valid()

        assert not valid
        assert len(errors) == 1
        assert errors[0].startswith("MissingTrigger")


class TestTraversal:
    """Tests for trigger_node and successors."""

    def test_trigger_node(self):
        graph = Graph.from_dict(branching_definition())

        assert graph.trigger_node().id == "trigger"

    def test_condition_successors_follow_branch(self):
        graph = Graph.from_dict(branching_definition())

        assert graph.successors("cond", True) == ["email"]
        assert graph.successors("cond", False) == ["block"]

    def test_fan_out_keeps_declaration_order(self):
        graph = Graph(
            nodes=[
                Node("t", NodeType.TRIGGER),
                Node("c", NodeType.EXPRESSION),
                Node("a", NodeType.EXPRESSION),
                Node("b", NodeType.EXPRESSION),
            ],
            edges=[Edge("t", "c"), Edge("t", "a"), Edge("t", "b"), Edge("t", "a")],
        )

        assert graph.successors("t") == ["c", "a", "b"]

    def test_leaf_has_no_successors(self):
        graph = Graph.from_dict(branching_definition())

        assert graph.successors("email") == []


class TestSerialization:
    """Tests for definition parsing and round-trips."""

    def test_json_round_trip(self):
        graph = Graph.from_dict(branching_definition())

        restored = Graph.from_json(graph.to_json())

        assert restored == graph
        assert [e.source_handle for e in restored.edges] == [None, None, "true", "false"]

    def test_editor_shape_is_parsed(self):
        graph = Graph.from_dict(editor_definition())

        node = graph.get_node("n2")
        assert node.type == NodeType.EXPRESSION
        assert node.label == "Compute"
        assert node.config == {"expression": "1 + 1"}
        assert node.ui_type == "actionNode"

    def test_editor_data_round_trips(self):
        definition = editor_definition()

        assert Graph.from_dict(definition).to_dict() == definition

    def test_edge_uses_source_handle_key(self):
        edge = Edge("cond", "email", source_handle="true")

        assert edge.to_dict() == {"source": "cond", "target": "email", "sourceHandle": "true"}
        assert Edge.from_dict({"source": "a", "target": "b", "sourceHandle": True}).source_handle == "true"
