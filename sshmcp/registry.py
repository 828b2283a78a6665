import uuid
import threading
from typing import Any, Dict, List, Optional

from sshmcp.config import DEFAULT_SESSION_TTL, READY_TIMEOUT, MAX_BUFFER_CHARS
from sshmcp.errors import SessionExistsError
from sshmcp.hosts import Credentials
from sshmcp.session import PersistentSession, TransportFactory
from sshmcp.transport import ShellTransport
from sshmcp.utils import log_error


class SessionRegistry:
    """Owns every live session, keyed by session id.

    The map is the only state shared between tool calls, transport reader
    threads and inactivity timers. It is guarded by ``lock``; session methods
    are never called while the lock is held.
    """

    def __init__(
        self,
        transport_factory: TransportFactory = ShellTransport,
        session_ttl: Optional[float] = DEFAULT_SESSION_TTL,
        ready_timeout: float = READY_TIMEOUT,
        max_buffer_chars: int = MAX_BUFFER_CHARS,
        sessions_dir: Optional[str] = None,
    ):
        self.transport_factory = transport_factory
        self.session_ttl = session_ttl
        self.ready_timeout = ready_timeout
        self.max_buffer_chars = max_buffer_chars
        self.sessions_dir = sessions_dir

        self.sessions: Dict[str, PersistentSession] = {}
        self.lock = threading.Lock()

    def __len__(self) -> int:
        with self.lock:
            return len(self.sessions)

    def _forget(self, session: PersistentSession) -> None:
        # A late disposal of a replaced session must not evict its successor.
        with self.lock:
            if self.sessions.get(session.id) is session:
                del self.sessions[session.id]

    def _new_session(self, session_id: str, credentials: Credentials) -> PersistentSession:
        return PersistentSession(
            session_id,
            credentials,
            transport_factory=self.transport_factory,
            timeout=self.session_ttl,
            on_dispose=self._forget,
            ready_timeout=self.ready_timeout,
            max_buffer_chars=self.max_buffer_chars,
            sessions_dir=self.sessions_dir,
        )

    def get_or_create(
        self,
        session_id: str,
        credentials: Credentials,
        force_new: bool = False,
    ) -> PersistentSession:
        replaced: Optional[PersistentSession] = None
        with self.lock:
            session = self.sessions.get(session_id)
            if session is not None and (force_new or session.disposed):
                replaced = session
                del self.sessions[session_id]
                session = None
            if session is None:
                session = self._new_session(session_id, credentials)
                self.sessions[session_id] = session

        if replaced is not None:
            replaced.dispose(reason="replaced by a new session")
        session.ensure_connected()
        return session

    def start_session(self, credentials: Credentials, session_id: Optional[str] = None) -> PersistentSession:
        sid = session_id.strip() if session_id and session_id.strip() else str(uuid.uuid4())
        existing = self.get(sid)
        if existing is not None and not existing.disposed:
            raise SessionExistsError(f"Session '{sid}' already exists")
        return self.get_or_create(sid, credentials, force_new=True)

    def get(self, session_id: str) -> Optional[PersistentSession]:
        with self.lock:
            return self.sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self.lock:
            session = self.sessions.get(session_id)
        if session is None:
            return False
        session.dispose(reason="closed by client")
        self._forget(session)
        return True

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            snapshot = list(self.sessions.values())
        return [session.info() for session in snapshot if not session.disposed]

    def close_all(self) -> None:
        with self.lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            try:
                session.dispose(reason="server shutdown")
            except Exception as exc:
                log_error(f"failed to close session {session.id}: {exc}")
        with self.lock:
            self.sessions.clear()
