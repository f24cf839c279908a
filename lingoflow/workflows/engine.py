# /lingoflow/workflows/engine.py

"""
The flow state machine.

A Flow owns an ordered list of FlowSteps, a cursor into it, a NodeContext and
a status. ``step()`` runs the step under the cursor and decides where the
cursor goes next; ``run()`` repeats that while the flow is running. Control
actions (confirm, reject, retry, skip, extend/restart) are plain methods that
mutate the flow; callers serialize them through the session lock.

Per-step routing order:
    1. failure      -> condition on_false, else error (unless continue_on_failure)
    2. validation   -> bounded rollback to the retry target
    3. checkpoint   -> suspend in waiting-confirmation / waiting-operation
    4. next step    -> custom router, then condition, then list order
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from lingoflow.models.flow import (
    EventType,
    FlowEvent,
    FlowState,
    FlowStatus,
    NodeContext,
    NodeOperation,
    NodeResult,
    OperationInfo,
    OperationPlan,
    PendingOperation,
    StepSnapshot,
)
from lingoflow.services.llm_service import ProviderCredentials
from lingoflow.utils.metrics import flow_runs_counter, step_executions_counter
from lingoflow.utils.security import redact_secrets
from lingoflow.workflows.builder import FlowDefinition
from lingoflow.workflows.errors import FlowStateError, RoutingError, StreamCancelled
from lingoflow.workflows.nodes import BaseNode, CallNode
from lingoflow.workflows.registry import HandlerRegistry, OperationRequest, registry as default_registry

logger = logging.getLogger(__name__)

Emit = Callable[[FlowEvent], Awaitable[None]]


async def _discard(event: FlowEvent) -> None:
    return None


@dataclass
class FlowStep:
    node_id: str
    node: BaseNode
    executed: bool = False
    result: Optional[NodeResult] = None
    input: Any = None
    timestamp: Optional[datetime] = None

    def reset(self):
        # The recorded input survives so restart-class operations can reuse it.
        self.executed = False
        self.result = None
        self.timestamp = None

    def snapshot(self) -> StepSnapshot:
        return StepSnapshot(
            node_id=self.node_id,
            name=self.node.name,
            kind=self.node.kind,
            executed=self.executed,
            result=self.result,
            timestamp=self.timestamp,
        )


class Flow:
    def __init__(
        self,
        definition: FlowDefinition,
        context: Optional[NodeContext] = None,
        handlers: Optional[HandlerRegistry] = None,
        retry_counts: Optional[Dict[str, int]] = None,
        session_id: Optional[str] = None,
    ):
        self.definition = definition
        self.handlers = handlers or default_registry
        self.steps: List[FlowStep] = [FlowStep(node_id=node.id, node=node) for node in definition.nodes]
        self.current_step_index = 0
        self.status = FlowStatus.IDLE
        self.context = (context or NodeContext()).model_copy(deep=True)
        self._initial_context = self.context.model_copy(deep=True)
        self.error: Optional[str] = None
        self.session_id = session_id
        # Shared with the owning session; survives reset().
        self.retry_counts: Dict[str, int] = retry_counts if retry_counts is not None else {}
        self.pending_operation: Optional[PendingOperation] = None
        self.pause_requested = False
        self._awaiting_revalidation: Set[str] = set()

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def name(self) -> str:
        return self.definition.name

    # ==================== STATE ====================

    def get_state(self) -> FlowState:
        return FlowState(
            flow_id=self.id,
            flow_name=self.name,
            current_step_index=self.current_step_index,
            steps=[step.snapshot() for step in self.steps],
            status=self.status,
            context=self.context.model_copy(deep=True),
            error=self.error,
            session_id=self.session_id,
        )

    def reset(self, context: Optional[NodeContext] = None):
        """Back to idle at step 0. Retry counters are kept."""
        for step in self.steps:
            step.reset()
            step.input = None
        self.current_step_index = 0
        self.status = FlowStatus.IDLE
        self.error = None
        self.pending_operation = None
        self.pause_requested = False
        self._awaiting_revalidation.clear()
        if context is not None:
            self.context = context.model_copy(deep=True)
            self._initial_context = self.context.model_copy(deep=True)

    def start_at(self, index: int):
        if index < 0 or index >= len(self.steps):
            raise FlowStateError(f"Start index {index} is out of range for flow '{self.id}'")
        self.current_step_index = index

    def update_context(self, **updates: Any):
        self.context = self.context.model_copy(update=updates)

    def outputs(self) -> Dict[str, Any]:
        return {step.node_id: step.result.output for step in self.steps if step.result is not None}

    # ==================== EDITING ====================

    def add_node(self, node: BaseNode, index: Optional[int] = None):
        if any(step.node_id == node.id for step in self.steps):
            raise ValueError(f"Duplicate node ID: {node.id}")
        step = FlowStep(node_id=node.id, node=node)
        if index is None:
            self.steps.append(step)
        else:
            self.steps.insert(index, step)
            if index <= self.current_step_index and self.status != FlowStatus.IDLE:
                self.current_step_index += 1

    def remove_node(self, node_id: str) -> bool:
        for index, step in enumerate(self.steps):
            if step.node_id == node_id:
                del self.steps[index]
                if index < self.current_step_index:
                    self.current_step_index -= 1
                self.retry_counts.pop(node_id, None)
                return True
        return False

    def replace_node(self, node_id: str, node: BaseNode) -> bool:
        for index, step in enumerate(self.steps):
            if step.node_id == node_id:
                self.steps[index] = FlowStep(node_id=node.id, node=node)
                return True
        return False

    # ==================== EXECUTION ====================

    async def run(
        self,
        emit: Emit = _discard,
        credentials: Optional[ProviderCredentials] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> FlowState:
        """
        Runs steps until the flow leaves the running status.

        Stops early (status paused) when a pause was requested or `should_stop`
        returns True at a step boundary, or when `emit` raises StreamCancelled
        in the middle of a step. An interrupted step is not recorded.
        """
        if self.status.is_terminal:
            raise FlowStateError(f"Flow '{self.id}' is already {self.status.value}")
        if self.status.is_waiting:
            raise FlowStateError(f"Flow '{self.id}' is waiting for an operation; use confirm or an operation")

        self._set_status(FlowStatus.RUNNING)
        await emit(self._event(EventType.STATUS_CHANGE, status=self.status))

        try:
            while self.status == FlowStatus.RUNNING:
                if self.pause_requested or (should_stop is not None and should_stop()):
                    self._set_status(FlowStatus.PAUSED)
                    break
                await self.step(emit, credentials)
        except StreamCancelled:
            logger.info(f"Flow '{self.id}' interrupted at step {self.current_step_index}; pausing")
            self._set_status(FlowStatus.PAUSED)
        self.pause_requested = False

        await emit(self._event(EventType.STATUS_CHANGE, status=self.status, error=self.error))
        return self.get_state()

    async def execute(self, credentials: Optional[ProviderCredentials] = None) -> FlowState:
        """Runs without an event consumer."""
        return await self.run(credentials=credentials)

    async def step(self, emit: Emit = _discard, credentials: Optional[ProviderCredentials] = None):
        """One tick. Only StreamCancelled escapes; everything else ends in error status."""
        if self.current_step_index >= len(self.steps):
            self._set_status(FlowStatus.COMPLETED)
            return

        index = self.current_step_index
        step = self.steps[index]
        try:
            await emit(self._event(
                EventType.STEP_START, index, step.node_id,
                data={"name": step.node.name, "kind": step.node.kind.value},
            ))
            run_input = self.context.input
            result = await self._run_node(step, index, emit, credentials)

            step.input = run_input
            step.result = result
            step.executed = True
            step.timestamp = datetime.now(timezone.utc)
            self.context.previous_output = result.output
            self.context.input = result.output
            step_executions_counter.labels(
                node_kind=step.node.kind.value, status="success" if result.success else "failure"
            ).inc()

            await self._route(step, index, result, emit)
        except StreamCancelled:
            raise
        except Exception as e:
            message = redact_secrets(str(e) or type(e).__name__, [credentials.api_key if credentials else None])
            logger.error(f"Flow '{self.id}' failed at step '{step.node_id}': {message}")
            self._fail(message)
            await emit(self._event(EventType.STEP_ERROR, index, step.node_id, error=message))

    async def _run_node(
        self, step: FlowStep, index: int, emit: Emit, credentials: Optional[ProviderCredentials]
    ) -> NodeResult:
        if not isinstance(step.node, CallNode):
            return await step.node.execute(self.context, credentials)

        result: Optional[NodeResult] = None
        fragments = step.node.stream(self.context, credentials)
        try:
            async for item in fragments:
                if isinstance(item, NodeResult):
                    result = item
                else:
                    await emit(self._event(EventType.STREAM_CHUNK, index, step.node_id, data=item))
        finally:
            await fragments.aclose()
        if result is None:
            raise RuntimeError("Streaming completed but no result received")
        return result

    async def _route(self, step: FlowStep, index: int, result: NodeResult, emit: Emit):
        node_id = step.node_id

        if not result.success:
            await emit(self._event(EventType.STEP_ERROR, index, node_id, error=result.error))
            if not self.definition.continue_on_failure:
                condition = self.definition.condition_for(node_id)
                if condition is not None and not self.handlers.get_predicate(condition.predicate)(result):
                    self._move_to(condition.on_false, index)
                    return
                self._fail(result.error or f"Step {node_id} failed")
                return
        else:
            await emit(self._event(EventType.STEP_COMPLETE, index, node_id, data=result.output))

        check = self.definition.validation_for(node_id)
        if check is not None and not self.handlers.get_predicate(check.predicate)(result):
            self._roll_back(node_id, index, check.max_retries, check.retry_target_node_id)
            return
        self._awaiting_revalidation.discard(node_id)

        operations = self.definition.node_operations.get(node_id)
        if operations:
            await self._suspend(node_id, index, result, operations, emit)
            return

        next_id = self.resolve_next(node_id, result)
        if next_id is None:
            self._complete()
        else:
            self._move_to(next_id, index)

    def resolve_next(self, node_id: str, result: NodeResult) -> Optional[str]:
        if self.definition.next_resolver:
            routed = self.handlers.get_router(self.definition.next_resolver)(node_id)
            if routed is not None:
                return routed

        condition = self.definition.condition_for(node_id)
        if condition is not None:
            if self.handlers.get_predicate(condition.predicate)(result):
                return condition.on_true
            return condition.on_false

        index = self.index_of(node_id)
        if index + 1 >= len(self.steps):
            return None
        return self.steps[index + 1].node_id

    def index_of(self, node_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.node_id == node_id:
                return index
        raise RoutingError(f"Next node not found: {node_id}")

    def _roll_back(self, node_id: str, index: int, max_retries: int, target_id: Optional[str]):
        count = self.retry_counts.get(node_id, 0) + 1
        self.retry_counts[node_id] = count
        if count > max_retries:
            self._fail(f"Maximum retry limit exceeded for step {node_id} ({max_retries} retries)")
            return

        if target_id is None:
            if index == 0:
                self._fail("Validation failed and no node to retry")
                return
            target_id = self.steps[index - 1].node_id

        target_index = self.index_of(target_id)
        logger.info(f"Validation failed for '{node_id}' (attempt {count}/{max_retries}); retrying from '{target_id}'")
        self.steps[target_index].reset()
        self._awaiting_revalidation.add(node_id)
        self.current_step_index = target_index

    def _move_to(self, target_id: str, from_index: int):
        target_index = self.index_of(target_id)
        if target_index <= from_index:
            count = self.retry_counts.get(target_id, 0) + 1
            self.retry_counts[target_id] = count
            limit = self.definition.max_loop_retries
            if count > limit:
                self._fail(f"Maximum retry limit exceeded for step {target_id} ({limit} retries)")
                return
            self.steps[target_index].reset()
        elif target_id not in self._awaiting_revalidation:
            self.retry_counts[target_id] = 0
        self.current_step_index = target_index

    async def _suspend(
        self, node_id: str, index: int, result: NodeResult, operations: List[NodeOperation], emit: Emit
    ):
        self.pending_operation = PendingOperation(
            step_index=index, node_id=node_id, result=result, operations=list(operations)
        )
        if all(op.action == "confirm" for op in operations):
            self._set_status(FlowStatus.WAITING_CONFIRMATION)
            event_type = EventType.CONFIRMATION_REQUIRED
        else:
            self._set_status(FlowStatus.WAITING_OPERATION)
            event_type = EventType.OPERATION_REQUIRED
        await emit(self._event(
            event_type, index, node_id,
            status=self.status,
            data=result.output,
            operations=[OperationInfo(action=op.action, label=op.label or op.action.title()) for op in operations],
        ))

    # ==================== CONTROL ====================

    def _require_waiting(self, action: str) -> PendingOperation:
        if not self.status.is_waiting or self.pending_operation is None:
            raise FlowStateError(f"Cannot {action}: flow is {self.status.value}, not waiting for an operation")
        return self.pending_operation

    def confirm(self) -> FlowState:
        pending = self._require_waiting("confirm")
        operation = next((op for op in pending.operations if op.action == "confirm"), None)
        self.pending_operation = None

        self._set_status(FlowStatus.RUNNING)
        try:
            if operation is not None and operation.target_node_id:
                next_id: Optional[str] = operation.target_node_id
            else:
                next_id = self.resolve_next(pending.node_id, pending.result)
            if next_id is None:
                self._complete()
            else:
                self._move_to(next_id, pending.step_index)
        except RoutingError as e:
            self._fail(str(e))
        return self.get_state()

    def reject(self) -> FlowState:
        if not (self.status.is_waiting or self.status == FlowStatus.PAUSED):
            raise FlowStateError(f"Cannot reject: flow is {self.status.value}")
        self.pending_operation = None
        self._fail("User rejected the result")
        return self.get_state()

    def retry(self) -> FlowState:
        if self.status.is_waiting and self.pending_operation is not None:
            index = self.pending_operation.step_index
        elif self.status == FlowStatus.PAUSED:
            index = self.current_step_index
        else:
            raise FlowStateError(f"Cannot retry: flow is {self.status.value}")

        self.pending_operation = None
        if index < len(self.steps):
            step = self.steps[index]
            if step.executed:
                self.context.input = step.input
            step.reset()
        self.current_step_index = index
        self._set_status(FlowStatus.RUNNING)
        return self.get_state()

    def skip(self) -> FlowState:
        if self.status.is_waiting and self.pending_operation is not None:
            index = self.pending_operation.step_index
        elif self.status == FlowStatus.PAUSED:
            index = self.current_step_index
        else:
            raise FlowStateError(f"Cannot skip: flow is {self.status.value}")

        self.pending_operation = None
        if index + 1 >= len(self.steps):
            self._complete()
        else:
            self._set_status(FlowStatus.RUNNING)
            self._move_to(self.steps[index + 1].node_id, index)
        return self.get_state()

    def pause(self) -> FlowState:
        if self.status.is_terminal:
            raise FlowStateError(f"Cannot pause: flow is {self.status.value}")
        if self.status in (FlowStatus.RUNNING, FlowStatus.IDLE):
            self._set_status(FlowStatus.PAUSED)
        return self.get_state()

    def resume(self) -> FlowState:
        if self.status.is_waiting:
            raise FlowStateError("Flow is waiting for an operation; use confirm or an operation instead of resume")
        if self.status != FlowStatus.PAUSED:
            raise FlowStateError(f"Cannot resume: flow is {self.status.value}")
        self.pause_requested = False
        self._set_status(FlowStatus.RUNNING)
        return self.get_state()

    def close(self) -> FlowState:
        """Marks a superseded run completed, wherever it stopped."""
        self.pending_operation = None
        self.pause_requested = False
        if not self.status.is_terminal:
            self._set_status(FlowStatus.COMPLETED)
        return self.get_state()

    def apply_operation(self, action: str, user_text: Optional[str] = None) -> FlowState:
        """
        Resolves a restart-class operation (extend, restart or any custom name)
        at the current checkpoint.

        The context is replaced by the one the operation plan describes; only
        the language pair and the initial metadata are carried over.
        """
        pending = self._require_waiting(action)
        operation = self._find_operation(pending, action)
        if operation.action == "confirm":
            raise FlowStateError(f"Operation 'confirm' at step {pending.node_id} resumes forward; use confirm")

        outputs = self.outputs()
        try:
            if operation.handler:
                handler = self.handlers.get_operation_handler(operation.handler)
                plan = handler(OperationRequest(
                    operation=operation,
                    node_id=pending.node_id,
                    result=pending.result,
                    user_text=user_text,
                    outputs=outputs,
                    inputs={step.node_id: step.input for step in self.steps},
                ))
            else:
                plan = self._default_plan(operation, pending, user_text, outputs)
            target_index = self.index_of(plan.target_node_id)
        except RoutingError as e:
            self.pending_operation = None
            self._fail(str(e))
            return self.get_state()

        metadata = dict(self._initial_context.metadata)
        if plan.references:
            metadata["references"] = plan.references
        self.context = NodeContext(
            input=plan.input,
            previous_output=plan.previous_output,
            user_language=self.context.user_language,
            learning_language=self.context.learning_language,
            metadata=metadata,
            partial_state=self._initial_context.partial_state,
        )

        self.pending_operation = None
        self.steps[target_index].reset()
        self.current_step_index = target_index
        self._set_status(FlowStatus.RUNNING)
        return self.get_state()

    def _find_operation(self, pending: PendingOperation, action: str) -> NodeOperation:
        for op in pending.operations:
            if op.action == action:
                return op
        if action in ("extend", "restart"):
            # extend and restart are interchangeable names for the first restart-class operation.
            for op in pending.operations:
                if op.action in ("extend", "restart"):
                    return op
        raise FlowStateError(f"Operation '{action}' is not available at step {pending.node_id}")

    def _default_plan(
        self,
        operation: NodeOperation,
        pending: PendingOperation,
        user_text: Optional[str],
        outputs: Dict[str, Any],
    ) -> OperationPlan:
        target_id = operation.target_node_id or pending.node_id
        source_id = operation.source_node_id or target_id
        target_input = self.steps[self.index_of(target_id)].input
        return OperationPlan(
            target_node_id=target_id,
            input=user_text if user_text is not None else target_input,
            previous_output=outputs.get(source_id),
            references={rid: outputs.get(rid) for rid in operation.reference_node_ids},
        )

    # ==================== HELPERS ====================

    def _set_status(self, status: FlowStatus):
        if status == self.status:
            return
        self.status = status
        if status.is_terminal:
            flow_runs_counter.labels(flow_id=self.id, status=status.value).inc()

    def _complete(self):
        self.current_step_index = len(self.steps)
        self._set_status(FlowStatus.COMPLETED)

    def _fail(self, message: str):
        self.error = message
        self._set_status(FlowStatus.ERROR)

    def _event(
        self,
        type: EventType,
        step_index: Optional[int] = None,
        node_id: Optional[str] = None,
        **fields: Any,
    ) -> FlowEvent:
        return FlowEvent(
            type=type, flow_id=self.id, session_id=self.session_id, step_index=step_index, node_id=node_id, **fields
        )
