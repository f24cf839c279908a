# /lingoflow/services/session_service.py

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lingoflow.config.settings import settings
from lingoflow.models.flow import PendingOperation
from lingoflow.utils.metrics import active_sessions_gauge, evicted_sessions_counter
from lingoflow.workflows.engine import Flow
from lingoflow.workflows.errors import SessionNotFoundError

# This service keeps live flows addressable by an unguessable session id.
# Sessions live in process memory only; a recurring APScheduler job evicts
# the ones that have been inactive for longer than the configured TTL.

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "flow_session_sweep_job"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FlowSession:
    id: str
    flow: Flow
    created_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    executing: bool = False
    # Set while a stream has been handed out but its run has not started yet.
    claimed_at: Optional[datetime] = None
    claim_token: Optional[object] = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def node_retry_count(self) -> Dict[str, int]:
        return self.flow.retry_counts

    @property
    def waiting_for_operation(self) -> Optional[PendingOperation]:
        return self.flow.pending_operation

    @property
    def running(self) -> bool:
        """True while a run is actually in progress (not merely claimed)."""
        return self.executing and self.claimed_at is None

    def touch(self):
        self.last_activity = _now()

    def claim(self) -> object:
        """Marks the session executing and returns the token of this claim."""
        self.executing = True
        self.claimed_at = _now()
        self.claim_token = object()
        return self.claim_token

    def release(self):
        self.executing = False
        self.claimed_at = None
        self.claim_token = None

    def claim_expired(self, grace_seconds: float) -> bool:
        """A stream that was claimed but never iterated within the grace period."""
        if not self.executing or self.claimed_at is None:
            return False
        return _now() - self.claimed_at > timedelta(seconds=grace_seconds)


class SessionRegistry:
    def __init__(self, ttl_seconds: int, sweep_interval_seconds: int):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self.sessions: Dict[str, FlowSession] = {}
        self.scheduler: Optional[AsyncIOScheduler] = None

    # --- lifecycle ---

    def start(self):
        if self.scheduler is not None:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.sweep,
            'interval',
            seconds=self.sweep_interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduled job: session sweep (every {self.sweep_interval_seconds} seconds).")

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        discarded = len(self.sessions)
        self.sessions.clear()
        active_sessions_gauge.set(0)
        logger.info(f"Session registry stopped; discarded {discarded} sessions.")

    # --- CRUD ---

    def create(self, flow: Flow) -> str:
        session_id = secrets.token_urlsafe(24)
        flow.session_id = session_id
        self.sessions[session_id] = FlowSession(id=session_id, flow=flow)
        active_sessions_gauge.set(len(self.sessions))
        logger.debug(f"Created session {session_id} for flow '{flow.id}'")
        return session_id

    def get(self, session_id: str) -> Optional[FlowSession]:
        return self.sessions.get(session_id)

    def require(self, session_id: str) -> FlowSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def update(self, session_id: str, **changes) -> FlowSession:
        session = self.require(session_id)
        for name, value in changes.items():
            if name in ("id", "lock", "created_at") or not hasattr(session, name):
                raise AttributeError(f"FlowSession field cannot be updated: {name}")
            setattr(session, name, value)
        session.touch()
        return session

    def delete(self, session_id: str) -> bool:
        removed = self.sessions.pop(session_id, None) is not None
        active_sessions_gauge.set(len(self.sessions))
        return removed

    async def sweep(self) -> List[str]:
        """
        Removes sessions inactive for longer than the TTL. Returns their ids.

        A coroutine so the scheduler runs it on the event loop, never
        concurrently with request handlers. Sessions with a run in progress
        or a control action holding their lock are kept.
        """
        cutoff = _now() - self.ttl
        expired = [
            sid for sid, session in self.sessions.items()
            if session.last_activity < cutoff and not session.running and not session.lock.locked()
        ]
        for session_id in expired:
            del self.sessions[session_id]
        if expired:
            evicted_sessions_counter.inc(len(expired))
            logger.info(f"Evicted {len(expired)} inactive sessions.")
        active_sessions_gauge.set(len(self.sessions))
        return expired

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[FlowSession]:
        """
        Critical section for one session.

        Raises:
            SessionNotFoundError: if the id is unknown, or the session was
                evicted while waiting for the lock
        """
        session = self.require(session_id)
        async with session.lock:
            if self.sessions.get(session_id) is not session:
                raise SessionNotFoundError(session_id)
            yield session
            session.touch()

    def __len__(self) -> int:
        return len(self.sessions)


# Globally accessible instance
session_registry = SessionRegistry(settings.session_ttl_seconds, settings.session_sweep_interval_seconds)
