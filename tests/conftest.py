"""Shared fixtures: a scripted stand-in for an echo-free remote shell."""

from __future__ import annotations

import re
import threading
import time
from typing import Callable

import pytest

from sshmcp.hosts import Credentials, HostStore
from sshmcp.protocol import PRIME_COMMAND
from sshmcp.registry import SessionRegistry
from sshmcp.server import ServerContext

STATEMENT = re.compile(r"printf '__MCP_DONE__%s%d\\n' (\w+) \$\?")


class FakeTransport:
    """Speaks the transport interface; answers like a primed shell would."""

    def __init__(self, shell: "FakeShell", credentials: Credentials) -> None:
        self.shell = shell
        self.credentials = credentials
        self.writes: list[str] = []
        self.connected = False
        self.closed = False
        self.on_data = None
        self.on_close = None
        self.held_token: str | None = None
        self._last_command: str | None = None

    def connect(self) -> None:
        if self.shell.connect_gate is not None:
            self.shell.connect_gate.wait(5)
        if self.shell.connect_error is not None:
            raise self.shell.connect_error
        self.connected = True

    def open_shell(self, on_data, on_close, **pty) -> None:
        self.on_data = on_data
        self.on_close = on_close
        if self.shell.banner:
            self.emit(self.shell.banner)

    def write(self, text: str) -> None:
        if self.closed:
            raise OSError("channel is closed")
        self.writes.append(text)

        match = STATEMENT.match(text)
        if match is None:
            self._last_command = text.rstrip("\n")
            return

        token = match.group(1)
        command = self._last_command
        if command == PRIME_COMMAND:
            if self.shell.ready:
                self.emit(f"__MCP_READY__\r\n__MCP_DONE__{token}0\r\n")
            return
        if command in self.shell.held:
            self.held_token = token
            self.shell.held_event.set()
            return

        output, code = self.shell.responses.get(command, ("", 0))
        text_out = output.replace("\n", "\r\n") + ("\r\n" if output else "")
        self.emit(f"{text_out}__MCP_DONE__{token}{code}\r\n")

    def emit(self, text: str) -> None:
        callback = self.on_data
        if callback is not None:
            callback(text)

    def finish_held(self, output: str = "", code: int = 0) -> None:
        self.emit(f"{output}__MCP_DONE__{self.held_token}{code}\r\n")

    def drop(self, error: BaseException | None = None) -> None:
        callback = self.on_close
        if callback is not None:
            callback(error)

    def close(self) -> None:
        self.closed = True
        self.on_data = None
        self.on_close = None


class FakeShell:
    """Transport factory. ``responses`` maps command -> (output, exit code)."""

    def __init__(self, responses: dict | None = None, banner: str = "Welcome to fakehost\r\n$ ") -> None:
        self.responses = dict(responses or {})
        self.banner = banner
        self.ready = True
        self.connect_error: BaseException | None = None
        self.connect_gate: threading.Event | None = None
        self.held: set[str] = set()
        self.held_event = threading.Event()
        self.transports: list[FakeTransport] = []

    def __call__(self, credentials: Credentials, **options) -> FakeTransport:
        transport = FakeTransport(self, credentials)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell(
        responses={
            "pwd": ("/home/user", 0),
            "echo hello": ("hello", 0),
            "ls missing": ("ls: cannot access 'missing': No such file or directory", 2),
            "(exit 7)": ("", 7),
            "exit 7": ("", 7),
            "true": ("", 0),
        }
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(host="10.0.0.5", port=2222, username="deploy", password="s3cret-pw")


@pytest.fixture
def registry(shell: FakeShell) -> SessionRegistry:
    reg = SessionRegistry(transport_factory=shell, session_ttl=60, ready_timeout=1.0)
    yield reg
    reg.close_all()


@pytest.fixture
def hosts(tmp_path) -> HostStore:
    return HostStore(str(tmp_path / "ssh-mcp" / "hosts.json"))


@pytest.fixture
def ctx(hosts: HostStore, registry: SessionRegistry) -> ServerContext:
    return ServerContext(hosts, registry)
