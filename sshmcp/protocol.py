"""Completion detection over an interactive shell stream.

An interactive shell hands back one unstructured stream with no command
boundaries and no exit status. After each command we ask the shell to print a
one-off marker followed by ``$?``; the parser accumulates everything the shell
sends and cuts a result out of the buffer once that marker and the newline
after it have arrived. Anything that follows the newline is kept for the next
command.

The marker is printed through a ``%s`` format so that the statement we type
never contains the marker itself; an echoed statement can not be mistaken for
completion.
"""

import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from sshmcp.config import MAX_BUFFER_CHARS
from sshmcp.errors import ProtocolError, SessionBusyError

MARKER_PREFIX = "__MCP_DONE__"
READY_SENTINEL = "__MCP_READY__"

# Readiness banner and bracketed-paste toggles some readline builds emit.
SETUP_NOISE = re.compile(re.escape(READY_SENTINEL) + r"\s*|\x1b\[\?2004[hl]")
EXIT_CODE = re.compile(r"[+-]?\d+")

PRIME_COMMAND = (
    "export PS1='' PS2='' 2>/dev/null; "
    "stty -echo 2>/dev/null; "
    "bind 'set enable-bracketed-paste off' 2>/dev/null; "
    "printf '__MCP_%s__\\n' READY"
)


@dataclass
class CommandResult:
    output: str
    exit_code: int


@dataclass
class PendingCommand:
    token: str
    command: str
    started_at: float = field(default_factory=time.time)

    lock: threading.Lock = field(default_factory=threading.Lock)
    done_event: threading.Event = field(default_factory=threading.Event)
    result: Optional[CommandResult] = None
    error: Optional[BaseException] = None

    @property
    def marker(self) -> str:
        return f"{MARKER_PREFIX}{self.token}"

    @property
    def done(self) -> bool:
        return self.done_event.is_set()

    def resolve(self, result: CommandResult) -> None:
        with self.lock:
            if self.done_event.is_set():
                return
            self.result = result
            self.done_event.set()

    def fail(self, error: BaseException) -> None:
        with self.lock:
            if self.done_event.is_set():
                return
            self.error = error
            self.done_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done_event.wait(timeout)

    def outcome(self) -> CommandResult:
        """Return the result, or raise the error the command was failed with."""
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise ProtocolError(f"Command '{self.command}' has not completed")
        return self.result


def parse_exit_code(text: str) -> int:
    match = EXIT_CODE.match(text.strip())
    if not match:
        return 0
    return int(match.group(0))


def clean_command_output(text: str) -> str:
    text = text.replace("\r", "")
    text = SETUP_NOISE.sub("", text)
    return text.rstrip()


class CompletionProtocol:
    """Marker framing for one shell stream; holds at most one pending command.

    Not thread-safe on its own: the owning session serializes ``submit``,
    ``feed``, ``fail`` and ``clear``.
    """

    def __init__(self, write: Callable[[str], None], max_buffer_chars: int = MAX_BUFFER_CHARS):
        self._write = write
        self.max_buffer_chars = max_buffer_chars
        self.buffer = ""
        self.pending: Optional[PendingCommand] = None

    @staticmethod
    def new_token() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def completion_statement(token: str) -> str:
        return f"printf '{MARKER_PREFIX}%s%d\\n' {token} $?\n"

    def submit(self, command: str, token: Optional[str] = None) -> PendingCommand:
        if self.pending is not None:
            raise SessionBusyError("Another command is still running in this session")

        pending = PendingCommand(token=token or self.new_token(), command=command)
        self.pending = pending
        line = command if command.endswith("\n") else command + "\n"
        try:
            self._write(line)
            self._write(self.completion_statement(pending.token))
        except Exception as exc:
            self.fail(exc)
            raise
        return pending

    def feed(self, chunk: str) -> Optional[CommandResult]:
        if chunk:
            self.buffer += chunk
        result = self.try_extract()
        if result is None:
            self._enforce_limit()
        return result

    def try_extract(self) -> Optional[CommandResult]:
        pending = self.pending
        if pending is None:
            return None

        marker = pending.marker
        marker_index = self.buffer.find(marker)
        if marker_index == -1:
            return None

        code_start = marker_index + len(marker)
        newline_index = self.buffer.find("\n", code_start)
        if newline_index == -1:
            return None

        exit_text = self.buffer[code_start:newline_index]
        output = clean_command_output(self.buffer[:marker_index])
        self.buffer = self.buffer[newline_index + 1:]
        self.pending = None

        result = CommandResult(output=output, exit_code=parse_exit_code(exit_text))
        pending.resolve(result)
        return result

    def fail(self, error: BaseException) -> None:
        pending = self.pending
        self.pending = None
        if pending is not None:
            pending.fail(error)

    def clear(self) -> None:
        self.buffer = ""

    def _enforce_limit(self) -> None:
        overflow = len(self.buffer) - self.max_buffer_chars
        if overflow <= 0:
            return
        if self.pending is not None:
            raise ProtocolError(
                f"Completion marker not found within {self.max_buffer_chars} characters of output"
            )
        # Idle chatter (background jobs) keeps only its newest tail.
        self.buffer = self.buffer[overflow:]
