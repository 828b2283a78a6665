import os
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sshmcp.config import DEFAULT_SSH_PORT
from sshmcp.errors import (
    HostConfigError, HostExistsError, HostNotFoundError, InvalidParamsError
)
from sshmcp.utils import expand_path


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParamsError(f"'{key}' must be a non-empty string")
    return value.strip()

def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParamsError(f"'{key}' must be a string")
    return value or None

def _port(value: Any) -> int:
    if value is None:
        return DEFAULT_SSH_PORT
    if isinstance(value, bool):
        raise InvalidParamsError("'port' must be a positive integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidParamsError("'port' must be a positive integer") from None
    if port != value and not isinstance(value, str):
        raise InvalidParamsError("'port' must be a positive integer")
    if port < 1 or port > 65535:
        raise InvalidParamsError("'port' must be between 1 and 65535")
    return port


@dataclass
class HostProfile:
    id: str
    host: str
    username: str
    port: int = DEFAULT_SSH_PORT
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None
    passphrase: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostProfile":
        if not isinstance(data, dict):
            raise InvalidParamsError("host entry must be an object")
        return cls(
            id=_require_str(data, "id"),
            host=_require_str(data, "host"),
            username=_require_str(data, "username"),
            port=_port(data.get("port")),
            password=_optional_str(data, "password"),
            key_path=_optional_str(data, "keyPath"),
            passphrase=_optional_str(data, "passphrase"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
        }
        if self.password:
            data["password"] = self.password
        if self.key_path:
            data["keyPath"] = self.key_path
        if self.passphrase:
            data["passphrase"] = self.passphrase
        return data

    @property
    def auth_method(self) -> str:
        if self.password:
            return "password"
        if self.key_path:
            return "key"
        return "agent"

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth": self.auth_method,
        }


@dataclass
class Credentials:
    """Connection material for one host. Secrets stay out of repr and describe()."""

    host: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    use_agent: bool = False

    @property
    def auth_method(self) -> str:
        if self.password:
            return "password"
        if self.key_path:
            return "key"
        return "agent"

    def connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
        }
        if self.password:
            kwargs["password"] = self.password
            kwargs["allow_agent"] = False
            kwargs["look_for_keys"] = False
        elif self.key_path:
            kwargs["key_filename"] = self.key_path
            kwargs["allow_agent"] = False
            kwargs["look_for_keys"] = False
            if self.passphrase:
                kwargs["passphrase"] = self.passphrase
        else:
            kwargs["allow_agent"] = self.use_agent
            kwargs["look_for_keys"] = True
        return kwargs

    def describe(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth": self.auth_method,
        }


class HostStore:
    """Host profiles persisted as ``{"hosts": [...]}`` in one JSON file."""

    def __init__(self, path: str):
        self.path = path

    def _ensure_file(self) -> None:
        if os.path.isdir(self.path):
            raise HostConfigError(f"{self.path} is a directory")
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            self._write({"hosts": []})

    def _write(self, payload: Dict[str, Any]) -> None:
        with open(self.path, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2))
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    def load(self) -> List[HostProfile]:
        self._ensure_file()
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = handle.read()
            parsed = json.loads(raw or "{}")
        except (OSError, ValueError) as exc:
            raise HostConfigError(f"Failed to read {self.path}: {exc}") from exc

        if not isinstance(parsed, dict):
            raise HostConfigError(f"Failed to parse {self.path}: top level must be an object")
        entries = parsed.get("hosts", [])
        if not isinstance(entries, list):
            raise HostConfigError(f"Failed to parse {self.path}: 'hosts' must be a list")
        try:
            return [HostProfile.from_dict(entry) for entry in entries]
        except InvalidParamsError as exc:
            raise HostConfigError(f"Failed to parse {self.path}: {exc}") from exc

    def save(self, hosts: List[HostProfile]) -> None:
        self._ensure_file()
        self._write({"hosts": [host.to_dict() for host in hosts]})

    def list(self) -> List[HostProfile]:
        return self.load()

    def get(self, host_id: str) -> HostProfile:
        for host in self.load():
            if host.id == host_id:
                return host
        raise HostNotFoundError(f"Host '{host_id}' not found")

    def add(self, profile: HostProfile) -> HostProfile:
        hosts = self.load()
        if any(host.id == profile.id for host in hosts):
            raise HostExistsError(f"Host '{profile.id}' already exists")
        hosts.append(profile)
        self.save(hosts)
        return profile

    def remove(self, host_id: str) -> None:
        hosts = self.load()
        remaining = [host for host in hosts if host.id != host_id]
        if len(remaining) == len(hosts):
            raise HostNotFoundError(f"Host '{host_id}' does not exist")
        self.save(remaining)

    def edit(self, host_id: str, changes: Dict[str, Any]) -> HostProfile:
        """Apply ``changes`` to a stored host.

        ``host``, ``port`` and ``username`` are only replaced by non-empty
        values. Secret fields present in ``changes`` are always replaced, so an
        empty string clears them.
        """
        hosts = self.load()
        target = next((host for host in hosts if host.id == host_id), None)
        if target is None:
            raise HostNotFoundError(f"Host '{host_id}' does not exist")

        if changes.get("host"):
            target.host = _require_str(changes, "host")
        if changes.get("port"):
            target.port = _port(changes["port"])
        if changes.get("username"):
            target.username = _require_str(changes, "username")
        if "password" in changes:
            target.password = _optional_str(changes, "password")
        if "keyPath" in changes:
            target.key_path = _optional_str(changes, "keyPath")
        if "passphrase" in changes:
            target.passphrase = _optional_str(changes, "passphrase")

        self.save(hosts)
        return target

    def resolve(self, host_id: str, agent_socket: Optional[str] = None) -> Credentials:
        """Build credentials for ``host_id``: password, then key file, then agent."""
        host = self.get(host_id)
        credentials = Credentials(host=host.host, port=host.port, username=host.username)

        if host.password:
            credentials.password = host.password
        elif host.key_path:
            key_path = expand_path(host.key_path)
            if not key_path or not os.path.isfile(key_path):
                raise HostConfigError(f"Key file for host '{host_id}' not found: {host.key_path}")
            if not os.access(key_path, os.R_OK):
                raise HostConfigError(f"Key file for host '{host_id}' is not readable: {host.key_path}")
            credentials.key_path = key_path
            credentials.passphrase = host.passphrase
        else:
            credentials.use_agent = bool(agent_socket)
        return credentials
