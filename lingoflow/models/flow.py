# /lingoflow/models/flow.py

from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

# Pydantic models shared by the flow engine, the session registry and the API.
# Routing metadata is plain data: predicates, routers and operation handlers
# are referenced by name and resolved through the handler registry at run time.


class FlowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"
    WAITING_CONFIRMATION = "waiting-confirmation"
    WAITING_OPERATION = "waiting-operation"

    @property
    def is_waiting(self) -> bool:
        return self in (FlowStatus.WAITING_CONFIRMATION, FlowStatus.WAITING_OPERATION)

    @property
    def is_terminal(self) -> bool:
        return self in (FlowStatus.COMPLETED, FlowStatus.ERROR)


class NodeKind(str, Enum):
    TRANSFORM = "transform"
    CALL = "call"


class EventType(str, Enum):
    STEP_START = "step-start"
    STREAM_CHUNK = "stream-chunk"
    STEP_COMPLETE = "step-complete"
    STEP_ERROR = "step-error"
    CONFIRMATION_REQUIRED = "confirmation-required"
    OPERATION_REQUIRED = "operation-required"
    STATUS_CHANGE = "status-change"
    ERROR = "error"


class NodeContext(BaseModel):
    """Mutable bag threaded through a flow's steps. Owned by one flow."""
    input: Any = None
    previous_output: Any = None
    user_language: str = "en"
    learning_language: str = "english"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    partial_state: Optional[Dict[str, Any]] = None


class NodeResult(BaseModel):
    success: bool
    output: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FlowCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    predicate: str
    on_true: str
    on_false: str


class ValidationCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    predicate: str
    max_retries: int = Field(default=3, ge=0)
    retry_target_node_id: Optional[str] = None


class NodeOperation(BaseModel):
    """
    A named action offered at a checkpoint.

    `confirm` resumes forward (to `target_node_id` when set). Any other action
    routes back to `target_node_id` with a rebuilt context: the output of
    `source_node_id` (default: the target) becomes `previous_output`, the
    caller's text becomes `input`, and `reference_node_ids` outputs are passed
    through in `metadata["references"]`. A named `handler` replaces that default.
    """
    model_config = ConfigDict(frozen=True)

    action: str
    label: Optional[str] = None
    target_node_id: Optional[str] = None
    source_node_id: Optional[str] = None
    reference_node_ids: List[str] = Field(default_factory=list)
    handler: Optional[str] = None


class OperationInfo(BaseModel):
    action: str
    label: str


class OperationPlan(BaseModel):
    """Where an operation sends the flow, and the context it resumes with."""
    target_node_id: str
    input: Any = None
    previous_output: Any = None
    references: Dict[str, Any] = Field(default_factory=dict)


class PendingOperation(BaseModel):
    step_index: int
    node_id: str
    result: NodeResult
    operations: List[NodeOperation]


class StepSnapshot(BaseModel):
    node_id: str
    name: str
    kind: NodeKind
    executed: bool = False
    result: Optional[NodeResult] = None
    timestamp: Optional[datetime] = None


class FlowState(BaseModel):
    """Externally observable snapshot returned after every transition."""
    flow_id: str
    flow_name: str
    current_step_index: int
    steps: List[StepSnapshot]
    status: FlowStatus
    context: NodeContext
    error: Optional[str] = None
    session_id: Optional[str] = None


class FlowEvent(BaseModel):
    type: EventType
    flow_id: str
    session_id: Optional[str] = None
    step_index: Optional[int] = None
    node_id: Optional[str] = None
    status: Optional[FlowStatus] = None
    data: Any = None
    error: Optional[str] = None
    operations: Optional[List[OperationInfo]] = None
