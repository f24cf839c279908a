# /lingoflow/workflows/builder.py

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from lingoflow.models.flow import FlowCondition, NodeOperation, ValidationCheck
from lingoflow.workflows.nodes import BaseNode


class FlowDefinition(BaseModel):
    """
    Static, reusable description of a flow: its ordered nodes and routing rules.

    Routing rules only carry names; the executable predicates, routers and
    operation handlers live in a HandlerRegistry.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    description: Optional[str] = None
    nodes: List[BaseNode]
    conditions: List[FlowCondition] = Field(default_factory=list)
    validation_checks: List[ValidationCheck] = Field(default_factory=list)
    node_operations: Dict[str, List[NodeOperation]] = Field(default_factory=dict)
    next_resolver: Optional[str] = None
    continue_on_failure: bool = False
    max_loop_retries: int = Field(default=3, ge=0)

    def condition_for(self, node_id: str) -> Optional[FlowCondition]:
        return next((c for c in self.conditions if c.node_id == node_id), None)

    def validation_for(self, node_id: str) -> Optional[ValidationCheck]:
        return next((v for v in self.validation_checks if v.node_id == node_id), None)

    def summary(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "nodes": [{"id": n.id, "name": n.name, "kind": n.kind.value} for n in self.nodes],
            "checkpoints": sorted(self.node_operations),
        }


class FlowBuilder:
    """Fluent composition of a FlowDefinition."""

    def __init__(self, id: str, name: str):
        self._id = id
        self._name = name
        self._description: Optional[str] = None
        self._nodes: List[BaseNode] = []
        self._conditions: List[FlowCondition] = []
        self._checks: List[ValidationCheck] = []
        self._operations: Dict[str, List[NodeOperation]] = {}
        self._next_resolver: Optional[str] = None
        self._continue_on_failure = False
        self._max_loop_retries = 3

    def describe(self, description: str) -> "FlowBuilder":
        self._description = description
        return self

    def add_node(self, node: BaseNode) -> "FlowBuilder":
        self._nodes.append(node)
        return self

    def add_condition(self, node_id: str, predicate: str, on_true: str, on_false: str) -> "FlowBuilder":
        self._conditions.append(FlowCondition(node_id=node_id, predicate=predicate, on_true=on_true, on_false=on_false))
        return self

    def add_validation(
        self,
        node_id: str,
        predicate: str,
        max_retries: int = 3,
        retry_target_node_id: Optional[str] = None,
    ) -> "FlowBuilder":
        self._checks.append(
            ValidationCheck(
                node_id=node_id,
                predicate=predicate,
                max_retries=max_retries,
                retry_target_node_id=retry_target_node_id,
            )
        )
        return self

    def add_operations(self, node_id: str, *operations: NodeOperation) -> "FlowBuilder":
        self._operations.setdefault(node_id, []).extend(operations)
        return self

    def set_next_resolver(self, router_name: str) -> "FlowBuilder":
        self._next_resolver = router_name
        return self

    def continue_on_failure(self, enabled: bool = True) -> "FlowBuilder":
        self._continue_on_failure = enabled
        return self

    def max_loop_retries(self, limit: int) -> "FlowBuilder":
        self._max_loop_retries = limit
        return self

    def build(self, handlers=None) -> FlowDefinition:
        """
        Builds and validates the definition.

        Raises:
            ValueError: if the definition does not pass validation
        """
        from lingoflow.workflows.validator import validate_definition

        if not self._id or not self._name:
            raise ValueError("Flow ID and name are required")

        definition = FlowDefinition(
            id=self._id,
            name=self._name,
            description=self._description,
            nodes=list(self._nodes),
            conditions=list(self._conditions),
            validation_checks=list(self._checks),
            node_operations={k: list(v) for k, v in self._operations.items()},
            next_resolver=self._next_resolver,
            continue_on_failure=self._continue_on_failure,
            max_loop_retries=self._max_loop_retries,
        )
        validation = validate_definition(definition, handlers)
        if not validation["is_valid"]:
            raise ValueError(validation["message"])
        return definition
