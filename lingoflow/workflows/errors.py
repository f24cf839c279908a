# /lingoflow/workflows/errors.py

# Exceptions raised across the flow engine, the session registry and the
# control surface. Steps never raise these: step failures are NodeResults.


class FlowError(Exception):
    """Base class for orchestration errors."""


class SessionNotFoundError(FlowError):
    def __init__(self, session_id: str):
        super().__init__(
            f"Session not found: {session_id}. The session may have expired. Please start a new workflow."
        )
        self.session_id = session_id


class FlowStateError(FlowError):
    """A control action is not valid for the flow's current status."""


class FlowConflictError(FlowError):
    """The session is busy executing a step."""


class RoutingError(FlowError):
    """A route names a node, predicate, router or handler that does not exist."""


class CredentialError(FlowError):
    """A call step cannot resolve a provider endpoint or key."""


class StreamCancelled(FlowError):
    """The event consumer went away; stop at the next fragment."""
