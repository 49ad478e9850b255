"""
Logical client sessions.

Sessions outlive individual requests and are ended by an explicit close, by
the transport going away, or by sitting idle longer than the configured
timeout. Ending a session publishes ``session_ended`` and runs the registered
close hooks (the dispatcher uses them to cancel pending confirmations and
event subscriptions).
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from overlay_companion.errors import NotFound, SessionExpired
from overlay_companion.events import EventBus
from overlay_companion.models import EventType, Session, SessionStatus, utcnow
from overlay_companion.workers import PeriodicWorker

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 900.0

CloseHook = Callable[[Session], None]


class SessionManager:
    def __init__(
        self,
        bus: EventBus,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
        reap_interval: Optional[float] = None,
    ):
        self._bus = bus
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._close_hooks: List[CloseHook] = []
        if reap_interval is None:
            reap_interval = min(max(idle_timeout / 4.0, 0.05), 30.0)
        self._reaper = PeriodicWorker("session-reaper", reap_interval, self.reap_idle)

    @property
    def running(self) -> bool:
        return self._reaper.running

    def start(self) -> None:
        if self.idle_timeout <= 0:
            logger.debug("Idle timeout disabled, session reaper not started")
            return
        self._reaper.start()

    def stop(self) -> None:
        self._reaper.stop()

    def add_close_hook(self, hook: CloseHook) -> None:
        self._close_hooks.append(hook)

    def open(self) -> Session:
        now = self._clock()
        session = Session(id=uuid.uuid4().hex, created_at=now, last_activity_at=now)
        with self._lock:
            self._sessions[session.id] = session
        logger.info("Session %s opened", session.id)
        return session.model_copy()

    def status(self, session_id: str) -> Session:
        session = self._lookup(session_id)
        if session.status is SessionStatus.ACTIVE and self._is_idle(session, self._clock()):
            self._end(session_id, "idle_timeout")
            session = self._lookup(session_id)
        return session.model_copy()

    def require_active(self, session_id: str) -> Session:
        """Return the session, failing with SessionExpired once it has ended."""
        session = self.status(session_id)
        if session.status is SessionStatus.ENDED:
            raise SessionExpired(
                f"Session '{session_id}' has ended ({session.ended_reason})",
                {"session_id": session_id, "reason": session.ended_reason},
            )
        return session

    def touch(self, session_id: str) -> Session:
        session = self.require_active(session_id)
        # Sessions are replaced rather than mutated so readers never see a torn update
        updated = session.model_copy(update={"last_activity_at": self._clock()})
        with self._lock:
            current = self._sessions.get(session_id)
            if current is not None and current.status is SessionStatus.ACTIVE:
                self._sessions[session_id] = updated
        return updated

    def close(self, session_id: str, reason: str = "closed") -> Session:
        self._lookup(session_id)
        self._end(session_id, reason)
        return self._lookup(session_id).model_copy()

    def list_sessions(self) -> List[Session]:
        with self._lock:
            return [s.model_copy() for s in self._sessions.values()]

    def reap_idle(self) -> int:
        now = self._clock()
        with self._lock:
            idle = [
                s.id
                for s in self._sessions.values()
                if s.status is SessionStatus.ACTIVE and self._is_idle(s, now)
            ]
        ended = sum(1 for session_id in idle if self._end(session_id, "idle_timeout"))
        return ended

    def _is_idle(self, session: Session, now: datetime) -> bool:
        if self.idle_timeout <= 0:
            return False
        return now - session.last_activity_at > timedelta(seconds=self.idle_timeout)

    def _lookup(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session '{session_id}' not found", {"session_id": session_id})
        return session

    def _end(self, session_id: str, reason: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is SessionStatus.ENDED:
                return False
            session = session.model_copy(update={"status": SessionStatus.ENDED, "ended_reason": reason})
            self._sessions[session_id] = session
        logger.info("Session %s ended (%s)", session_id, reason)
        for hook in list(self._close_hooks):
            try:
                hook(session)
            except Exception:  # noqa: BLE001 - one hook must not stop the others
                logger.exception("Session close hook failed for %s", session_id)
        self._bus.publish(EventType.SESSION_ENDED, {"session_id": session_id, "reason": reason})
        return True
