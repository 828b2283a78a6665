import codecs
import socket
import threading
from typing import Callable, Optional

import paramiko

from sshmcp.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, READER_POLL_INTERVAL,
    PTY_TERM, PTY_WIDTH, PTY_HEIGHT
)
from sshmcp.errors import HostConfigError, KeyDecryptionError, SSHConnectionError
from sshmcp.hosts import Credentials
from sshmcp.utils import log_error

DataCallback = Callable[[str], None]
CloseCallback = Callable[[Optional[BaseException]], None]


class ShellTransport:
    """One SSH connection plus one interactive PTY shell channel.

    A daemon reader thread pulls bytes off the channel, decodes them as UTF-8
    (multi-byte sequences split across reads are reassembled) and hands text to
    ``on_data``. When the channel reaches EOF or fails, ``on_close`` is called
    once with the error, or ``None`` for a clean EOF. Callbacks are dropped by
    ``close()`` and never fire afterwards.
    """

    def __init__(
        self,
        credentials: Credentials,
        verify_host_key: bool = True,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.credentials = credentials
        self.verify_host_key = verify_host_key
        self.connect_timeout = connect_timeout

        self.client: Optional[paramiko.SSHClient] = None
        self.channel: Optional[paramiko.Channel] = None

        self._on_data: Optional[DataCallback] = None
        self._on_close: Optional[CloseCallback] = None
        self._reader: Optional[threading.Thread] = None
        self._closed = threading.Event()

    def _target(self) -> str:
        creds = self.credentials
        return f"{creds.username}@{creds.host}:{creds.port}"

    def _load_key(self) -> paramiko.PKey:
        """Load and decrypt the private key before any network traffic."""
        creds = self.credentials
        try:
            return paramiko.PKey.from_path(creds.key_path, creds.passphrase)
        except OSError as exc:
            raise HostConfigError(f"Cannot read private key {creds.key_path}: {exc}") from exc
        except (TypeError, paramiko.PasswordRequiredException) as exc:
            # cryptography raises TypeError for an encrypted key loaded without a password
            raise KeyDecryptionError(
                f"Private key {creds.key_path} for {self._target()} is encrypted and no passphrase was given"
            ) from exc
        except (ValueError, paramiko.SSHException, paramiko.UnknownKeyType) as exc:
            raise KeyDecryptionError(
                f"Private key {creds.key_path} for {self._target()} could not be decrypted or parsed: {exc}"
            ) from exc

    def connect(self) -> None:
        if self._closed.is_set():
            raise SSHConnectionError(f"Transport to {self._target()} was closed before connecting")
        connect_kwargs = self.credentials.connect_kwargs()
        if self.credentials.key_path:
            connect_kwargs.pop("key_filename", None)
            connect_kwargs.pop("passphrase", None)
            connect_kwargs["pkey"] = self._load_key()
        connect_kwargs["timeout"] = self.connect_timeout
        connect_kwargs["banner_timeout"] = self.connect_timeout
        connect_kwargs["auth_timeout"] = self.connect_timeout

        client = paramiko.SSHClient()
        if self.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(**connect_kwargs)
        except paramiko.PasswordRequiredException as exc:
            client.close()
            raise KeyDecryptionError(
                f"Private key for {self._target()} is encrypted and no usable passphrase was given: {exc}"
            ) from exc
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SSHConnectionError(f"Authentication failed for {self._target()}: {exc}") from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SSHConnectionError(f"Failed to connect to {self._target()}: {exc}") from exc

        if self._closed.is_set():
            client.close()
            raise SSHConnectionError(f"Transport to {self._target()} was closed while connecting")

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        self.client = client

    def open_shell(
        self,
        on_data: DataCallback,
        on_close: CloseCallback,
        term: str = PTY_TERM,
        width: int = PTY_WIDTH,
        height: int = PTY_HEIGHT,
    ) -> None:
        if not self.client:
            raise SSHConnectionError(f"Not connected to {self._target()}")
        try:
            channel = self.client.invoke_shell(term=term, width=width, height=height)
        except (paramiko.SSHException, OSError) as exc:
            raise SSHConnectionError(f"Failed to open shell on {self._target()}: {exc}") from exc

        channel.settimeout(READER_POLL_INTERVAL)
        self.channel = channel
        self._on_data = on_data
        self._on_close = on_close
        self._reader = threading.Thread(target=self._reader_loop, args=(channel,), daemon=True)
        self._reader.start()

    def _reader_loop(self, channel: paramiko.Channel) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        error: Optional[BaseException] = None
        try:
            while not self._closed.is_set():
                try:
                    data = channel.recv(BUFFER_SIZE)
                except socket.timeout:
                    continue
                if not data:
                    break
                text = decoder.decode(data)
                callback = self._on_data
                if text and callback:
                    callback(text)
        except Exception as exc:
            error = exc

        callback = self._on_close
        if self._closed.is_set() or callback is None:
            return
        try:
            callback(error)
        except Exception as exc:
            log_error(f"shell close handler failed ({self._target()}): {exc}")

    def write(self, text: str) -> None:
        # The channel timeout is the reader poll interval; a stalled window retries.
        data = text.encode("utf-8")
        while data:
            channel = self.channel
            if channel is None or channel.closed or self._closed.is_set():
                raise SSHConnectionError(f"Shell channel to {self._target()} is closed")
            try:
                sent = channel.send(data)
            except socket.timeout:
                continue
            if sent <= 0:
                raise SSHConnectionError(f"Shell channel to {self._target()} is closed")
            data = data[sent:]

    def close(self) -> None:
        self._closed.set()
        self._on_data = None
        self._on_close = None

        try:
            if self.channel:
                self.channel.close()
        except Exception as exc:
            log_error(f"channel close failed ({self._target()}): {exc}")
        self.channel = None

        try:
            if self.client:
                self.client.close()
        except Exception as exc:
            log_error(f"client close failed ({self._target()}): {exc}")
        self.client = None
