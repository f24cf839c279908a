# /lingoflow/services/flow_service.py

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from lingoflow.config.settings import settings
from lingoflow.models.flow import EventType, FlowEvent, FlowState, FlowStatus, NodeContext
from lingoflow.services.llm_service import ProviderCredentials
from lingoflow.services.session_service import FlowSession, SessionRegistry, session_registry
from lingoflow.utils.metrics import control_actions_counter
from lingoflow.utils.security import redact_secrets
from lingoflow.workflows.builder import FlowDefinition
from lingoflow.workflows.engine import Flow
from lingoflow.workflows.errors import FlowConflictError, FlowError, FlowStateError, StreamCancelled
from lingoflow.workflows.registry import HandlerRegistry

# This service drives flows for the HTTP layer. A run executes in a producer
# task that pushes FlowEvents onto a bounded queue; the caller consumes them
# through an async generator. When the consumer stops early the producer is
# told to stop at the next fragment or step boundary and the flow is left
# paused, resumable from the step that was interrupted.

logger = logging.getLogger(__name__)

OnComplete = Callable[[Any], Awaitable[None]]

CONTROL_ACTIONS = ("pause", "resume", "confirm", "reject", "retry", "skip", "extend", "restart")

_DONE = object()


class FlowExecutor:
    def __init__(self, sessions: SessionRegistry, buffer_size: int, cancel_grace_seconds: float):
        self.sessions = sessions
        self.buffer_size = buffer_size
        self.cancel_grace_seconds = cancel_grace_seconds

    def _busy(self, session: FlowSession) -> bool:
        """
        True while the session has a run in progress or a freshly claimed
        stream. A claimed stream that was dropped without ever being iterated
        is released after the cancel grace period.
        """
        if session.claim_expired(self.cancel_grace_seconds):
            logger.warning(f"Session {session.id}: event stream was never consumed; releasing it")
            session.release()
        return session.executing

    # ==================== STREAMING ====================

    def start_session(
        self,
        definition: FlowDefinition,
        context: NodeContext,
        handlers: Optional[HandlerRegistry] = None,
        start_index: Optional[int] = None,
        replaces_session_id: Optional[str] = None,
    ) -> FlowSession:
        """
        Creates a session for a new run of `definition`.

        When `replaces_session_id` names a live session, that session's run is
        closed (marked completed) first; its retry counters do not carry over.
        """
        flow = Flow(definition, context, handlers=handlers)
        if start_index is not None:
            flow.start_at(start_index)

        if replaces_session_id:
            previous = self.sessions.get(replaces_session_id)
            if previous is not None:
                if self._busy(previous):
                    raise FlowConflictError(f"Session {replaces_session_id} is currently executing")
                previous.flow.close()
                previous.touch()
                logger.info(f"Closed session {replaces_session_id} in favour of a new run")

        session_id = self.sessions.create(flow)
        return self.sessions.require(session_id)

    async def execute_flow_stream(
        self,
        definition: FlowDefinition,
        context: NodeContext,
        credentials: Optional[ProviderCredentials] = None,
        handlers: Optional[HandlerRegistry] = None,
        start_index: Optional[int] = None,
        replaces_session_id: Optional[str] = None,
        on_complete: Optional[OnComplete] = None,
    ) -> AsyncIterator[FlowEvent]:
        """Starts a new session and returns its event stream."""
        session = self.start_session(definition, context, handlers, start_index, replaces_session_id)
        return await self.resume_flow_stream(session.id, credentials, on_complete)

    async def resume_flow_stream(
        self,
        session_id: str,
        credentials: Optional[ProviderCredentials] = None,
        on_complete: Optional[OnComplete] = None,
    ) -> AsyncIterator[FlowEvent]:
        """
        Claims an existing session and returns the stream of its continuation.

        Checks happen before the first event, so callers can turn them into
        HTTP errors. The session stays claimed until the returned iterator is
        consumed, or for `cancel_grace_seconds` if it is never iterated.

        Raises:
            SessionNotFoundError: unknown or evicted session
            FlowConflictError: the session is already executing
            FlowStateError: the flow is paused, waiting or finished
        """
        async with self.sessions.locked(session_id) as session:
            if self._busy(session):
                raise FlowConflictError(f"Session {session_id} is currently executing")
            status = session.flow.status
            if status not in (FlowStatus.IDLE, FlowStatus.RUNNING):
                raise FlowStateError(
                    f"Cannot continue session {session_id}: flow is {status.value}; "
                    "use a control action first"
                )
            claim_token = session.claim()

        return self._drive(session, claim_token, credentials, on_complete)

    async def _drive(
        self,
        session: FlowSession,
        claim_token: object,
        credentials: Optional[ProviderCredentials],
        on_complete: Optional[OnComplete],
    ) -> AsyncIterator[FlowEvent]:
        flow = session.flow
        if session.claim_token is not claim_token:
            raise FlowConflictError(f"Session {session.id}: this event stream was released before it was consumed")
        session.claimed_at = None

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.buffer_size)
        cancelled = asyncio.Event()

        async def emit(event: FlowEvent):
            if cancelled.is_set():
                if event.type == EventType.STREAM_CHUNK:
                    raise StreamCancelled()
                return
            await queue.put(event)

        async def produce():
            try:
                state = await flow.run(emit, credentials, should_stop=cancelled.is_set)
                if state.status == FlowStatus.COMPLETED and on_complete is not None:
                    try:
                        await on_complete(state.context.previous_output)
                    except Exception as e:
                        logger.error(f"on_complete hook failed for session {session.id}: {e}", exc_info=True)
            except asyncio.CancelledError:
                if flow.status == FlowStatus.RUNNING:
                    flow.pause()
                raise
            except Exception as e:
                message = redact_secrets(str(e) or type(e).__name__, [credentials.api_key if credentials else None])
                logger.error(f"Flow run for session {session.id} failed: {message}", exc_info=True)
                await emit(FlowEvent(
                    type=EventType.ERROR, flow_id=flow.id, session_id=session.id, status=flow.status, error=message
                ))
            finally:
                session.release()
                session.touch()
                if not cancelled.is_set():
                    await queue.put(_DONE)

        producer = asyncio.create_task(produce(), name=f"flow-run-{session.id[:8]}")
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            if not producer.done():
                cancelled.set()
                # Free a producer blocked on a full queue.
                while not queue.empty():
                    queue.get_nowait()
                try:
                    await asyncio.wait_for(asyncio.shield(producer), self.cancel_grace_seconds)
                except asyncio.TimeoutError:
                    logger.warning(f"Session {session.id} did not stop within the grace period; cancelling")
                    producer.cancel()
                    await asyncio.gather(producer, return_exceptions=True)

    # ==================== CONTROL ====================

    async def control_flow(
        self,
        session_id: str,
        action: str,
        user_text: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> FlowState:
        """
        Applies one control action inside the session's critical section.

        While a step is executing only `pause` is accepted; it takes effect
        at the next step boundary.
        """
        if action not in CONTROL_ACTIONS:
            raise FlowStateError(f"Unknown control action: {action}")

        try:
            async with self.sessions.locked(session_id) as session:
                flow = session.flow
                if self._busy(session):
                    if action != "pause":
                        raise FlowConflictError(f"Session {session_id} is executing; only pause is allowed")
                    flow.pause_requested = True
                    state = flow.get_state()
                elif action == "pause":
                    state = flow.pause()
                elif action == "resume":
                    state = flow.resume()
                elif action == "confirm" or operation == "confirm":
                    state = flow.confirm()
                elif action == "reject":
                    state = flow.reject()
                elif action == "retry":
                    state = flow.retry()
                elif action == "skip":
                    state = flow.skip()
                else:
                    state = flow.apply_operation(operation or action, user_text)
        except FlowConflictError:
            control_actions_counter.labels(action=action, outcome="conflict").inc()
            raise
        except FlowError:
            control_actions_counter.labels(action=action, outcome="rejected").inc()
            raise

        control_actions_counter.labels(action=action, outcome="accepted").inc()
        logger.info(f"Control '{action}' on session {session_id} -> {state.status.value}")
        return state

    def get_flow_state(self, session_id: str) -> FlowState:
        session = self.sessions.require(session_id)
        session.touch()
        return session.flow.get_state()

    def delete_session(self, session_id: str) -> bool:
        return self.sessions.delete(session_id)


# Globally accessible instance
flow_executor = FlowExecutor(session_registry, settings.event_buffer_size, settings.cancel_grace_seconds)
