# tests/unit/test_flow_service.py
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from lingoflow.models.flow import EventType, FlowStatus, NodeContext, NodeOperation
from lingoflow.services.flow_service import FlowExecutor
from lingoflow.services.session_service import SessionRegistry
from lingoflow.workflows.builder import FlowDefinition
from lingoflow.workflows.errors import FlowConflictError, FlowStateError, SessionNotFoundError
from lingoflow.workflows.nodes import CallConfig, CallNode
from flow_fakes import ScriptedNode


@pytest.fixture
def executor():
    return FlowExecutor(SessionRegistry(ttl_seconds=3600, sweep_interval_seconds=300), buffer_size=4,
                        cancel_grace_seconds=1.0)


def checkpoint_definition():
    nodes = [ScriptedNode("step-1"), ScriptedNode("step-2"), ScriptedNode("step-3")]
    return FlowDefinition(
        id="checkpointed",
        name="Checkpointed",
        nodes=nodes,
        node_operations={"step-2": [NodeOperation(action="confirm")]},
    ), nodes


async def drain(events):
    return [event async for event in events]


@pytest.mark.asyncio
async def test_stream_runs_to_checkpoint_and_releases_session(executor):
    definition, _ = checkpoint_definition()

    events = await drain(await executor.execute_flow_stream(definition, NodeContext(input="go")))

    session_id = events[0].session_id
    assert session_id
    assert all(event.session_id == session_id for event in events)
    assert events[0].type == EventType.STATUS_CHANGE and events[0].status == FlowStatus.RUNNING
    assert events[-1].status == FlowStatus.WAITING_CONFIRMATION
    session = executor.sessions.require(session_id)
    assert session.executing is False
    assert session.waiting_for_operation.node_id == "step-2"


@pytest.mark.asyncio
async def test_confirm_then_resume_completes_and_calls_hook(executor):
    definition, nodes = checkpoint_definition()
    events = await drain(await executor.execute_flow_stream(definition, NodeContext(input="go")))
    session_id = events[0].session_id

    state = await executor.control_flow(session_id, "confirm")
    assert state.status == FlowStatus.RUNNING

    on_complete = AsyncMock()
    events = await drain(await executor.resume_flow_stream(session_id, on_complete=on_complete))

    assert events[-1].status == FlowStatus.COMPLETED
    assert nodes[2].calls == 1
    on_complete.assert_awaited_once_with("step-3-out")
    # Finished sessions stay inspectable until swept.
    assert executor.get_flow_state(session_id).status == FlowStatus.COMPLETED


@pytest.mark.asyncio
async def test_failing_completion_hook_does_not_change_status(executor):
    definition = FlowDefinition(id="one", name="One", nodes=[ScriptedNode("a")])
    hook = AsyncMock(side_effect=RuntimeError("disk full"))

    events = await drain(await executor.execute_flow_stream(definition, NodeContext(), on_complete=hook))

    assert events[-1].status == FlowStatus.COMPLETED
    hook.assert_awaited_once()


@pytest.mark.asyncio
async def test_concurrent_confirms_advance_exactly_once(executor):
    definition, _ = checkpoint_definition()
    events = await drain(await executor.execute_flow_stream(definition, NodeContext(input="go")))
    session_id = events[0].session_id

    results = await asyncio.gather(
        executor.control_flow(session_id, "confirm"),
        executor.control_flow(session_id, "confirm"),
        return_exceptions=True,
    )

    accepted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, FlowStateError)]
    assert len(accepted) == 1 and len(rejected) == 1
    assert accepted[0].current_step_index == 2
    assert executor.get_flow_state(session_id).current_step_index == 2


@pytest.mark.asyncio
async def test_executing_session_only_accepts_pause(executor):
    definition, _ = checkpoint_definition()
    session = executor.start_session(definition, NodeContext())
    session.executing = True

    with pytest.raises(FlowConflictError):
        await executor.control_flow(session.id, "confirm")

    state = await executor.control_flow(session.id, "pause")
    assert state.status == FlowStatus.IDLE
    assert session.flow.pause_requested is True


@pytest.mark.asyncio
async def test_resume_requires_a_runnable_session(executor):
    definition, _ = checkpoint_definition()
    events = await drain(await executor.execute_flow_stream(definition, NodeContext()))
    session_id = events[0].session_id

    with pytest.raises(FlowStateError):
        await executor.resume_flow_stream(session_id)
    with pytest.raises(SessionNotFoundError):
        await executor.resume_flow_stream("no-such-session")


@pytest.mark.asyncio
async def test_unknown_session_control_is_not_found(executor):
    with pytest.raises(SessionNotFoundError):
        await executor.control_flow("no-such-session", "confirm")
    assert len(executor.sessions) == 0


@pytest.mark.asyncio
async def test_consumer_leaving_mid_stream_pauses_before_recording(executor, fake_llm, credentials):
    fake_llm.delay = 0.05
    fake_llm.queue(["one ", "two ", "three"])
    node = CallNode("say", "Say", CallConfig(user_prompt_template="{{input}}"))
    definition = FlowDefinition(id="talk", name="Talk", nodes=[node, ScriptedNode("after")])

    events = await executor.execute_flow_stream(definition, NodeContext(input="hi"), credentials)
    seen = []
    async for event in events:
        seen.append(event)
        if event.type == EventType.STREAM_CHUNK:
            break
    await events.aclose()

    session = executor.sessions.require(seen[0].session_id)
    state = session.flow.get_state()
    assert state.status == FlowStatus.PAUSED
    assert state.current_step_index == 0
    assert state.steps[0].executed is False
    assert session.executing is False

    # The interrupted step runs again after resume.
    fake_llm.delay = 0.0
    await executor.control_flow(session.id, "resume")
    events = await drain(await executor.resume_flow_stream(session.id, credentials))
    assert events[-1].status == FlowStatus.COMPLETED


@pytest.mark.asyncio
async def test_new_run_with_start_index_closes_previous_session(executor):
    definition, _ = checkpoint_definition()
    first = await drain(await executor.execute_flow_stream(definition, NodeContext()))
    old_id = first[0].session_id

    definition, nodes = checkpoint_definition()
    events = await drain(await executor.execute_flow_stream(
        definition, NodeContext(input="resumed", partial_state={"from": old_id}),
        start_index=2, replaces_session_id=old_id,
    ))

    assert events[0].session_id != old_id
    assert executor.get_flow_state(old_id).status == FlowStatus.COMPLETED
    assert nodes[0].calls == 0
    assert nodes[2].inputs == ["resumed"]
    assert events[-1].status == FlowStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_control_action_is_rejected(executor):
    definition, _ = checkpoint_definition()
    session = executor.start_session(definition, NodeContext())

    with pytest.raises(FlowStateError):
        await executor.control_flow(session.id, "fast-forward")


@pytest.mark.asyncio
async def test_operation_named_confirm_advances_the_flow(executor):
    definition, _ = checkpoint_definition()
    events = await drain(await executor.execute_flow_stream(definition, NodeContext(input="go")))
    session_id = events[0].session_id

    state = await executor.control_flow(session_id, "extend", user_text="junk", operation="confirm")

    assert state.status == FlowStatus.RUNNING
    assert state.current_step_index == 2
    assert state.context.input == "step-2-out"


@pytest.mark.asyncio
async def test_stream_dropped_before_iteration_releases_the_session(executor):
    definition, nodes = checkpoint_definition()
    session = executor.start_session(definition, NodeContext())
    stream = await executor.resume_flow_stream(session.id)
    assert session.executing is True

    with pytest.raises(FlowConflictError):
        await executor.control_flow(session.id, "confirm")

    # Nobody iterated the stream within the grace period.
    session.claimed_at -= timedelta(seconds=5)
    state = await executor.control_flow(session.id, "pause")

    assert state.status == FlowStatus.PAUSED
    assert session.executing is False
    with pytest.raises(FlowConflictError):
        await stream.__anext__()
    assert nodes[0].calls == 0

    await executor.control_flow(session.id, "resume")
    events = await drain(await executor.resume_flow_stream(session.id))
    assert events[-1].status == FlowStatus.WAITING_CONFIRMATION
