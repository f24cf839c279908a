# /lingoflow/workflows/validator.py

"""
Pure validation functions for flow definitions.

Checks that a FlowDefinition is internally consistent before any Flow is
built from it: node ids are unique, every routing target names a node, and
every predicate, router, operation handler and field validator it mentions
is registered.

All functions are pure: no I/O, no logging, no state mutation.
"""

from typing import Iterable, Optional, TypedDict

from lingoflow.workflows.nodes import TransformNode
from lingoflow.workflows.registry import HandlerRegistry, registry as default_registry


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


_VALID: ValidationResult = {"is_valid": True, "error_code": None, "message": None}


def _invalid(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def validate_node_ids(node_ids: Iterable[str]) -> ValidationResult:
    seen = set()
    for node_id in node_ids:
        if not node_id:
            return _invalid("EMPTY_NODE_ID", "Node ID cannot be empty")
        if node_id in seen:
            return _invalid("DUPLICATE_NODE_ID", f"Duplicate node ID: {node_id}")
        seen.add(node_id)
    if not seen:
        return _invalid("NO_NODES", "Flow must contain at least one node")
    return _VALID


def validate_target(node_id: Optional[str], known: set, where: str) -> ValidationResult:
    """A missing target (None) is fine; an unknown one is not."""
    if node_id is not None and node_id not in known:
        return _invalid("UNKNOWN_TARGET", f"{where} references unknown node: {node_id}")
    return _VALID


def validate_definition(definition, handlers: Optional[HandlerRegistry] = None) -> ValidationResult:
    """
    Validate a complete flow definition.

    Args:
        definition: The FlowDefinition to check
        handlers: Registry the names are resolved against (default: the global one)

    Returns:
        ValidationResult for the first problem found, or is_valid=True
    """
    handlers = handlers or default_registry

    ids_result = validate_node_ids(node.id for node in definition.nodes)
    if not ids_result["is_valid"]:
        return ids_result
    known = {node.id for node in definition.nodes}

    for condition in definition.conditions:
        where = f"Condition on '{condition.node_id}'"
        for target in (condition.node_id, condition.on_true, condition.on_false):
            result = validate_target(target, known, where)
            if not result["is_valid"]:
                return result
        if not handlers.has_predicate(condition.predicate):
            return _invalid("UNKNOWN_PREDICATE", f"{where} uses unregistered predicate: {condition.predicate}")

    for check in definition.validation_checks:
        where = f"Validation check on '{check.node_id}'"
        for target in (check.node_id, check.retry_target_node_id):
            result = validate_target(target, known, where)
            if not result["is_valid"]:
                return result
        if not handlers.has_predicate(check.predicate):
            return _invalid("UNKNOWN_PREDICATE", f"{where} uses unregistered predicate: {check.predicate}")

    for node_id, operations in definition.node_operations.items():
        where = f"Operation on '{node_id}'"
        result = validate_target(node_id, known, where)
        if not result["is_valid"]:
            return result
        for operation in operations:
            for target in (operation.target_node_id, operation.source_node_id, *operation.reference_node_ids):
                result = validate_target(target, known, where)
                if not result["is_valid"]:
                    return result
            if operation.handler and not handlers.has_operation_handler(operation.handler):
                return _invalid(
                    "UNKNOWN_HANDLER", f"{where} uses unregistered operation handler: {operation.handler}"
                )

    if definition.next_resolver and not handlers.has_router(definition.next_resolver):
        return _invalid("UNKNOWN_ROUTER", f"Router not registered: {definition.next_resolver}")

    for node in definition.nodes:
        if not isinstance(node, TransformNode):
            continue
        for rule in node.config.validation_rules:
            if rule.validator and not handlers.has_field_validator(rule.validator):
                return _invalid(
                    "UNKNOWN_VALIDATOR",
                    f"Node '{node.id}' uses unregistered field validator: {rule.validator}",
                )

    return _VALID
