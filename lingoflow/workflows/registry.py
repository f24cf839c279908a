# /lingoflow/workflows/registry.py

"""
Named executable behavior for flow definitions.

Definitions reference predicates, custom routers, operation handlers and
field validators by name; the engine resolves the names here when it needs
them. A definition therefore stays plain, serializable data.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from lingoflow.models.flow import NodeOperation, NodeResult, OperationPlan
from lingoflow.workflows.errors import RoutingError

logger = logging.getLogger(__name__)


@dataclass
class OperationRequest:
    """Everything an operation handler may read when a checkpoint is resolved."""
    operation: NodeOperation
    node_id: str
    result: NodeResult
    user_text: Optional[str]
    outputs: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)


Predicate = Callable[[NodeResult], bool]
Router = Callable[[str], Optional[str]]
OperationHandler = Callable[[OperationRequest], OperationPlan]
FieldValidator = Callable[[Any], bool]


class HandlerRegistry:
    def __init__(self):
        self._predicates: Dict[str, Predicate] = {}
        self._routers: Dict[str, Router] = {}
        self._handlers: Dict[str, OperationHandler] = {}
        self._validators: Dict[str, FieldValidator] = {}

    # --- registration (usable as decorators) ---

    def predicate(self, name: str):
        def decorator(func: Predicate) -> Predicate:
            self._predicates[name] = func
            return func
        return decorator

    def router(self, name: str):
        def decorator(func: Router) -> Router:
            self._routers[name] = func
            return func
        return decorator

    def operation_handler(self, name: str):
        def decorator(func: OperationHandler) -> OperationHandler:
            self._handlers[name] = func
            return func
        return decorator

    def field_validator(self, name: str):
        def decorator(func: FieldValidator) -> FieldValidator:
            self._validators[name] = func
            return func
        return decorator

    # --- lookup ---

    def get_predicate(self, name: str) -> Predicate:
        try:
            return self._predicates[name]
        except KeyError:
            raise RoutingError(f"Predicate not registered: {name}") from None

    def get_router(self, name: str) -> Router:
        try:
            return self._routers[name]
        except KeyError:
            raise RoutingError(f"Router not registered: {name}") from None

    def get_operation_handler(self, name: str) -> OperationHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise RoutingError(f"Operation handler not registered: {name}") from None

    def get_field_validator(self, name: str) -> FieldValidator:
        try:
            return self._validators[name]
        except KeyError:
            raise RoutingError(f"Field validator not registered: {name}") from None

    def has_predicate(self, name: str) -> bool:
        return name in self._predicates

    def has_router(self, name: str) -> bool:
        return name in self._routers

    def has_operation_handler(self, name: str) -> bool:
        return name in self._handlers

    def has_field_validator(self, name: str) -> bool:
        return name in self._validators

    def copy(self) -> "HandlerRegistry":
        clone = HandlerRegistry()
        clone._predicates = dict(self._predicates)
        clone._routers = dict(self._routers)
        clone._handlers = dict(self._handlers)
        clone._validators = dict(self._validators)
        return clone


def output_flag(result: NodeResult, *names: str) -> bool:
    """True when the result succeeded and its dict output sets one of `names` to True."""
    if not result.success or not isinstance(result.output, dict):
        return False
    return any(result.output.get(name) is True for name in names)


# Globally accessible instance
registry = HandlerRegistry()


@registry.predicate("always")
def _always(result: NodeResult) -> bool:
    return True


@registry.predicate("succeeded")
def _succeeded(result: NodeResult) -> bool:
    return result.success


@registry.predicate("output-is-valid")
def _output_is_valid(result: NodeResult) -> bool:
    return output_flag(result, "valid", "isValid", "is_valid")


@registry.field_validator("non-empty")
def _non_empty(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


@registry.operation_handler("extend-dialog")
def _extend_dialog(request: OperationRequest) -> OperationPlan:
    """
    Re-runs dialog generation on top of the last generated dialog: the
    generated dialog (not the checker's verdict) becomes previous_output and
    the user's extension request is paired with it as the new input.
    """
    target = request.operation.target_node_id or "dialog-generation"
    source = request.operation.source_node_id or target
    previous_dialog = request.outputs.get(source)
    if previous_dialog is None:
        logger.warning(f"extend-dialog: no output recorded for '{source}', extending from scratch")
    return OperationPlan(
        target_node_id=target,
        input={"previousDialog": previous_dialog, "extensionRequest": request.user_text or ""},
        previous_output=previous_dialog,
        references={rid: request.outputs.get(rid) for rid in request.operation.reference_node_ids},
    )
