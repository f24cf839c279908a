# /lingoflow/routes/flows.py

from typing import AsyncIterator

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from lingoflow.config.settings import settings
from lingoflow.models.api import APIResponse, FlowControlRequest, FlowExecutionRequest
from lingoflow.models.flow import FlowEvent, NodeContext
from lingoflow.services.flow_service import flow_executor
from lingoflow.services.llm_service import ProviderCredentials
from lingoflow.services.session_service import session_registry
from lingoflow.utils.dependencies import get_cookie_api_key
from lingoflow.utils.rate_limiter import limiter
from lingoflow.workflows.definitions import FLOWS, get_flow_definition
from lingoflow.workflows.errors import FlowConflictError, FlowError, SessionNotFoundError
from lingoflow.workflows.nodes import CallNode

log = structlog.get_logger(__name__)

# This file defines the flow endpoints: start or resume a run as a Server-Sent
# Events stream, apply control actions to a session, and inspect its state.
router = APIRouter(prefix="/flows", tags=["Flows"])

API_KEY_MISSING_MESSAGE = "API key not configured. Please fill in your API key in AI Settings."


def _http_error(error: FlowError) -> HTTPException:
    if isinstance(error, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, FlowConflictError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _credentials(request: Request, payload: FlowExecutionRequest) -> ProviderCredentials:
    ai_config = payload.ai_config
    return ProviderCredentials(
        provider=ai_config.provider if ai_config else None,
        api_key=(ai_config.api_key if ai_config else None) or get_cookie_api_key(request),
        api_url=ai_config.api_url if ai_config else None,
        model=ai_config.model if ai_config else None,
    )


def _missing_api_key(nodes, credentials: ProviderCredentials) -> bool:
    """True when some call step would have no key for its provider."""
    if credentials.api_key:
        return False
    for node in nodes:
        if not isinstance(node, CallNode):
            continue
        provider = credentials.provider or node.config.provider or settings.default_provider
        if provider != "custom" and not settings.provider_api_key(provider):
            return True
    return False


def _api_key_missing_response() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": "API_KEY_MISSING", "message": API_KEY_MISSING_MESSAGE},
    )


async def _sse(events: AsyncIterator[FlowEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"


def _stream_response(events: AsyncIterator[FlowEvent]) -> StreamingResponse:
    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/", response_model=APIResponse)
async def list_flows():
    """Lists the predefined flows and their steps."""
    return APIResponse(
        success=True,
        message="Flows retrieved successfully.",
        data={"flows": [factory().summary() for factory in FLOWS.values()]},
        version=settings.api_version
    )


@router.post("/execute")
@limiter.limit("30/minute")
async def execute_flow(request: Request, payload: FlowExecutionRequest):
    """
    Starts a flow run, or continues the session named by `session_id`.

    A `session_id` together with `start_index` or `partial_state` closes that
    session and starts a fresh run instead.
    """
    credentials = _credentials(request, payload)
    resume = payload.session_id is not None and payload.start_index is None and payload.partial_state is None

    try:
        if resume:
            session = session_registry.require(payload.session_id)
            if _missing_api_key(session.flow.definition.nodes, credentials):
                return _api_key_missing_response()
            events = await flow_executor.resume_flow_stream(payload.session_id, credentials)
            log.info("flow_resumed", flow_id=session.flow.id, session_id=payload.session_id)
            return _stream_response(events)

        definition = get_flow_definition(payload.flow_id, payload.continue_on_failure)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"Flow not found: {payload.flow_id}")
        if _missing_api_key(definition.nodes, credentials):
            return _api_key_missing_response()

        overrides = payload.context
        context = NodeContext(
            input=payload.input,
            user_language=overrides.user_language or "en",
            learning_language=overrides.learning_language or "english",
            metadata=dict(overrides.metadata),
            partial_state=payload.partial_state,
        )
        events = await flow_executor.execute_flow_stream(
            definition,
            context,
            credentials,
            start_index=payload.start_index,
            replaces_session_id=payload.session_id,
        )
        log.info("flow_started", flow_id=definition.id, start_index=payload.start_index)
        return _stream_response(events)
    except FlowError as e:
        raise _http_error(e)


@router.post("/control", response_model=APIResponse)
@limiter.limit("60/minute")
async def control_flow(request: Request, payload: FlowControlRequest):
    """Applies pause, resume, confirm, reject, retry, skip or extend/restart to a session."""
    try:
        state = await flow_executor.control_flow(
            payload.session_id, payload.action, user_text=payload.user_text, operation=payload.operation
        )
    except FlowError as e:
        log.warning("flow_control_rejected", session_id=payload.session_id, action=payload.action, error=str(e))
        raise _http_error(e)

    return APIResponse(
        success=True,
        message=f"Action '{payload.action}' applied.",
        data={"state": state.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/state", response_model=APIResponse)
async def get_flow_state(session_id: str = Query(..., min_length=1)):
    """Returns the current snapshot of a session's flow and keeps the session alive."""
    try:
        state = flow_executor.get_flow_state(session_id)
    except FlowError as e:
        raise _http_error(e)

    return APIResponse(
        success=True,
        message="Flow state retrieved successfully.",
        data={"state": state.model_dump(mode="json")},
        version=settings.api_version
    )


@router.delete("/sessions/{session_id}", response_model=APIResponse)
async def delete_session(session_id: str):
    """Discards a session immediately."""
    if not flow_executor.delete_session(session_id):
        raise _http_error(SessionNotFoundError(session_id))
    log.info("flow_session_deleted", session_id=session_id)
    return APIResponse(
        success=True,
        message="Session deleted.",
        data={"session_id": session_id},
        version=settings.api_version
    )
