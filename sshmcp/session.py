import os
import enum
import time
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sshmcp.config import DEFAULT_SESSION_TTL, READY_TIMEOUT, MAX_BUFFER_CHARS
from sshmcp.errors import (
    ProtocolError, SessionBusyError, SessionClosedError, SessionDisposedError
)
from sshmcp.hosts import Credentials
from sshmcp.protocol import CommandResult, CompletionProtocol, PRIME_COMMAND
from sshmcp.transport import ShellTransport
from sshmcp.utils import format_uptime, iso_now, json_line, log_error, safe_name

TransportFactory = Callable[[Credentials], ShellTransport]


class SessionState(enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    READY = "ready"
    EXECUTING = "executing"
    DISPOSED = "disposed"


class PersistentSession:
    """A long-lived interactive shell that runs one command at a time.

    State moves ``UNCONNECTED -> CONNECTING -> READY <-> EXECUTING`` and ends in
    ``DISPOSED``, which every other state can reach. Explicit close, the
    inactivity timer, transport errors and transport EOF all go through
    ``dispose()``; only the first call has any effect, and only that call
    notifies ``on_dispose``.

    Callbacks arrive from the transport reader thread and the timer thread, so
    every state transition happens under one re-entrant lock. ``on_dispose`` and
    transport teardown run after the lock is released.
    """

    def __init__(
        self,
        session_id: str,
        credentials: Credentials,
        transport_factory: TransportFactory = ShellTransport,
        timeout: Optional[float] = DEFAULT_SESSION_TTL,
        on_dispose: Optional[Callable[["PersistentSession"], None]] = None,
        ready_timeout: float = READY_TIMEOUT,
        max_buffer_chars: int = MAX_BUFFER_CHARS,
        sessions_dir: Optional[str] = None,
    ):
        self.id = session_id
        self.credentials = credentials
        self.timeout = timeout
        self.ready_timeout = ready_timeout

        self._transport_factory = transport_factory
        self._on_dispose = on_dispose
        self._transport: Optional[ShellTransport] = None
        self._protocol = CompletionProtocol(self._write, max_buffer_chars=max_buffer_chars)
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()
        self._connected = threading.Event()
        self._connect_error: Optional[BaseException] = None

        self.state = SessionState.UNCONNECTED
        self.created_at = time.time()
        self.last_command: Optional[str] = None
        self.last_command_at: Optional[float] = None
        self.dispose_reason = ""

        self.session_log_path: Optional[str] = None
        if sessions_dir:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"s_{safe_name(session_id)}__{stamp}.log"
            self.session_log_path = os.path.join(sessions_dir, filename)
        self._log_session("SYS", {"event": "session_created", **credentials.describe()})

    @property
    def disposed(self) -> bool:
        return self.state is SessionState.DISPOSED

    @property
    def busy(self) -> bool:
        return self.state is SessionState.EXECUTING

    def _target(self) -> str:
        creds = self.credentials
        return f"{creds.username}@{creds.host}:{creds.port}"

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    def _disposed_error(self) -> SessionDisposedError:
        reason = f" ({self.dispose_reason})" if self.dispose_reason else ""
        return SessionDisposedError(f"Session '{self.id}' has been disposed{reason}")

    # ---- connection ----

    def ensure_connected(self) -> None:
        with self._lock:
            if self.state is SessionState.DISPOSED:
                raise self._disposed_error()
            if self.state in (SessionState.READY, SessionState.EXECUTING):
                return
            leader = self.state is SessionState.UNCONNECTED
            if leader:
                self.state = SessionState.CONNECTING

        if not leader:
            # Another caller is connecting; share its outcome.
            self._connected.wait()
            with self._lock:
                if self._connect_error is not None:
                    raise self._connect_error
                if self.state is SessionState.DISPOSED:
                    raise self._disposed_error()
            return

        try:
            self._open()
        except Exception as exc:
            with self._lock:
                if self._connect_error is None:
                    self._connect_error = exc
            self._log_session("SYS", {"event": "connect_failed", "error": str(exc)})
            self.dispose(exc, reason=f"connect failed: {exc}")
            raise

        with self._lock:
            if self.state is not SessionState.CONNECTING:
                raise self._disposed_error()
            self.state = SessionState.READY
            self._reset_timer()
            self._connected.set()
        self._log_session("SYS", {"event": "connected"})

    def _open(self) -> None:
        transport = self._transport_factory(self.credentials)
        with self._lock:
            if self.state is SessionState.DISPOSED:
                raise self._disposed_error()
            self._transport = transport

        transport.connect()
        transport.open_shell(self._handle_data, self._handle_close)

        with self._lock:
            if self.state is SessionState.DISPOSED:
                raise self._disposed_error()
            prime = self._protocol.submit(PRIME_COMMAND)
        if not prime.wait(self.ready_timeout):
            raise ProtocolError(
                f"Shell for session '{self.id}' on {self._target()} "
                f"did not become ready within {self.ready_timeout:g}s"
            )
        # Banner, echoed priming input and prompt noise are discarded here.
        prime.outcome()

    def _write(self, text: str) -> None:
        transport = self._transport
        if transport is None:
            raise SessionClosedError(f"SSH session '{self.id}' has no open shell")
        transport.write(text)

    # ---- execution ----

    def execute(self, command: str) -> CommandResult:
        self.ensure_connected()

        write_error: Optional[BaseException] = None
        with self._lock:
            if self.state is SessionState.EXECUTING:
                raise SessionBusyError(
                    f"Session '{self.id}' is busy: another command is still running"
                )
            if self.state is not SessionState.READY:
                raise self._disposed_error()

            self.state = SessionState.EXECUTING
            self.last_command = command
            self.last_command_at = time.time()
            self._reset_timer()
            try:
                pending = self._protocol.submit(command)
            except Exception as exc:
                write_error = exc

        if write_error is not None:
            self.dispose(write_error, reason=f"write failed: {write_error}")
            raise write_error

        self._log_session("IN", {"event": "command_sent", "command": command, "token": pending.token})
        pending.wait()
        try:
            result = pending.outcome()
        except Exception as exc:
            self._log_session("SYS", {"event": "command_failed", "token": pending.token, "error": str(exc)})
            raise
        self._log_session(
            "OUT",
            {
                "event": "command_done",
                "token": pending.token,
                "exit_code": result.exit_code,
                "output_chars": len(result.output),
                "duration": round(time.time() - pending.started_at, 3),
            },
        )
        return result

    # ---- transport callbacks ----

    def _handle_data(self, text: str) -> None:
        error: Optional[ProtocolError] = None
        with self._lock:
            if self.state is SessionState.DISPOSED:
                return
            try:
                result = self._protocol.feed(text)
            except ProtocolError as exc:
                error = exc
            else:
                if result is not None and self.state is SessionState.EXECUTING:
                    self.state = SessionState.READY
                    self._reset_timer()
        if error is not None:
            self.dispose(error, reason=str(error))

    def _handle_close(self, error: Optional[BaseException]) -> None:
        if error is not None:
            self.dispose(error, reason=f"transport error: {error}")
        else:
            self.dispose(reason="shell closed by remote")

    # ---- inactivity timer ----

    def _reset_timer(self) -> None:
        self._cancel_timer()
        if not self.timeout or self.timeout <= 0:
            return
        timer = threading.Timer(self.timeout, self._on_inactivity)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_inactivity(self) -> None:
        with self._lock:
            # A timer that was reset or cancelled after it started firing is stale.
            if self._timer is not threading.current_thread():
                return
            disposed_now, transport = self._mark_disposed(None, "inactivity timeout")
        if disposed_now:
            self._finish_dispose(transport)

    # ---- teardown ----

    def dispose(self, error: Optional[BaseException] = None, reason: str = "closed") -> None:
        with self._lock:
            disposed_now, transport = self._mark_disposed(error, reason)
        if disposed_now:
            self._finish_dispose(transport)

    def _mark_disposed(
        self, error: Optional[BaseException], reason: str
    ) -> Tuple[bool, Optional[ShellTransport]]:
        if self.state is SessionState.DISPOSED:
            return False, None
        self.state = SessionState.DISPOSED
        self.dispose_reason = reason
        self._cancel_timer()

        transport, self._transport = self._transport, None
        self._protocol.fail(error or SessionClosedError(f"SSH session '{self.id}' closed ({reason})"))
        self._protocol.clear()
        self._connected.set()
        return True, transport

    def _finish_dispose(self, transport: Optional[ShellTransport]) -> None:
        if transport is not None:
            transport.close()
        self._log_session("SYS", {"event": "session_disposed", "reason": self.dispose_reason})
        if self._on_dispose is not None:
            try:
                self._on_dispose(self)
            except Exception as exc:
                log_error(f"dispose callback failed for session {self.id}: {exc}")

    def info(self) -> Dict[str, Any]:
        creds = self.credentials
        uptime = time.time() - self.created_at
        return {
            "id": self.id,
            "host": creds.host,
            "port": creds.port,
            "username": creds.username,
            "state": self.state.value,
            "created_at": datetime.fromtimestamp(self.created_at).isoformat(timespec="seconds"),
            "uptime": format_uptime(uptime),
            "uptime_seconds": int(uptime),
            "last_command": self.last_command,
        }
