# tests/unit/test_validator.py
import pytest

from lingoflow.models.flow import FlowCondition, NodeOperation, ValidationCheck
from lingoflow.workflows.builder import FlowBuilder, FlowDefinition
from lingoflow.workflows.definitions import FLOWS, get_flow_definition
from lingoflow.workflows.nodes import TransformConfig, TransformNode, TransformOperation, ValidationRule
from lingoflow.workflows.validator import validate_definition, validate_node_ids
from flow_fakes import ScriptedNode


def definition(**fields):
    fields.setdefault("nodes", [ScriptedNode("a"), ScriptedNode("b")])
    return FlowDefinition(id="test", name="Test", **fields)


def test_node_ids():
    assert validate_node_ids(["a", "b"])["is_valid"] is True
    assert validate_node_ids([])["error_code"] == "NO_NODES"
    assert validate_node_ids(["a", ""])["error_code"] == "EMPTY_NODE_ID"
    assert validate_node_ids(["a", "a"])["error_code"] == "DUPLICATE_NODE_ID"


@pytest.mark.parametrize("fields,code", [
    ({"conditions": [FlowCondition(node_id="a", predicate="succeeded", on_true="b", on_false="zzz")]},
     "UNKNOWN_TARGET"),
    ({"validation_checks": [ValidationCheck(node_id="b", predicate="output-is-valid", retry_target_node_id="x")]},
     "UNKNOWN_TARGET"),
    ({"node_operations": {"b": [NodeOperation(action="extend", target_node_id="nowhere")]}}, "UNKNOWN_TARGET"),
    ({"conditions": [FlowCondition(node_id="a", predicate="sometimes", on_true="b", on_false="a")]},
     "UNKNOWN_PREDICATE"),
    ({"node_operations": {"b": [NodeOperation(action="extend", handler="magic")]}}, "UNKNOWN_HANDLER"),
    ({"next_resolver": "shortcut"}, "UNKNOWN_ROUTER"),
])
def test_dangling_references_are_reported(fields, code):
    result = validate_definition(definition(**fields))

    assert result["is_valid"] is False
    assert result["error_code"] == code


def test_unknown_field_validator_is_reported():
    node = TransformNode(
        "input",
        "Input",
        TransformConfig(
            operation=TransformOperation.VALIDATE_INPUT,
            validation_rules=[ValidationRule(field="word", validator="is-a-noun")],
        ),
    )

    result = validate_definition(definition(nodes=[node]))

    assert result["error_code"] == "UNKNOWN_VALIDATOR"


def test_names_resolve_against_the_given_registry(handlers):
    condition = FlowCondition(node_id="a", predicate="never", on_true="b", on_false="a")

    assert validate_definition(definition(conditions=[condition]))["is_valid"] is False
    assert validate_definition(definition(conditions=[condition]), handlers)["is_valid"] is True


def test_builder_refuses_invalid_definitions():
    builder = FlowBuilder("broken", "Broken").add_node(ScriptedNode("a")).add_node(ScriptedNode("a"))

    with pytest.raises(ValueError, match="Duplicate node ID"):
        builder.build()


@pytest.mark.parametrize("flow_id", sorted(FLOWS))
def test_predefined_flows_are_valid(flow_id):
    flow = get_flow_definition(flow_id)

    assert validate_definition(flow)["is_valid"] is True
    assert flow.summary()["id"] == flow_id


def test_predefined_flows_are_fresh_objects():
    first, second = get_flow_definition("simulate-dialog"), get_flow_definition("simulate-dialog", True)

    assert first is not second
    assert first.continue_on_failure is False and second.continue_on_failure is True
    assert first.validation_for("dialog-check").retry_target_node_id == "dialog-generation"
    assert get_flow_definition("nope") is None
