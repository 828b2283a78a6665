import json
from typing import Any, Callable, Dict, Optional

from sshmcp.config import (
    MAX_COMMAND_LENGTH, PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
)
from sshmcp.errors import (
    InvalidParamsError, SessionClosedError, SessionNotFoundError, SSHMCPError
)
from sshmcp.hosts import Credentials, HostProfile, HostStore
from sshmcp.registry import SessionRegistry
from sshmcp.session import PersistentSession
from sshmcp.utils import log_error


class ServerContext:
    """Everything a tool call may touch: the host store and the session registry."""

    def __init__(self, hosts: HostStore, registry: SessionRegistry, agent_socket: Optional[str] = None):
        self.hosts = hosts
        self.registry = registry
        self.agent_socket = agent_socket

    def resolve(self, host_id: str) -> Credentials:
        return self.hosts.resolve(host_id, agent_socket=self.agent_socket)

    def close(self) -> None:
        self.registry.close_all()


def sanitize_command(command: Any) -> str:
    if not isinstance(command, str):
        raise InvalidParamsError("Command must be a string")
    trimmed = command.strip()
    if not trimmed:
        raise InvalidParamsError("Command cannot be empty")
    if len(trimmed) > MAX_COMMAND_LENGTH:
        raise InvalidParamsError(f"Command is too long (max {MAX_COMMAND_LENGTH} characters)")
    return trimmed

def _arg_str(args: Dict[str, Any], *names: str, required: bool = True) -> Optional[str]:
    for name in names:
        value = args.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidParamsError(f"'{names[0]}' must be a string")
        if value.strip():
            return value.strip()
    if required:
        raise InvalidParamsError(f"'{names[0]}' is required")
    return None

def _session_id(args: Dict[str, Any], required: bool = True) -> Optional[str]:
    return _arg_str(args, "session_id", "sessionId", required=required)

def error_result(exc: Exception, **extra: Any) -> Dict[str, Any]:
    code = getattr(exc, "code", "internal_error")
    result = {"success": False, "error": str(exc) or exc.__class__.__name__, "code": code}
    result.update({key: value for key, value in extra.items() if value is not None})
    return result

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def tools_list() -> Dict[str, Any]:
    host_fields = {
        "host": {"type": "string", "description": "Hostname or IP address"},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535, "description": "SSH port (default 22)"},
        "username": {"type": "string", "description": "SSH username"},
        "password": {"type": "string", "description": "Password for authentication"},
        "keyPath": {"type": "string", "description": "Path to private key (defaults to SSH agent if omitted)"},
        "passphrase": {"type": "string", "description": "Passphrase for an encrypted private key"},
    }
    tools = [
        {
            "name": "add-host",
            "description": "Persist a new SSH host configuration.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host_id": {"type": "string", "description": "Unique identifier for the host. We recommend user@hostname"},
                    **host_fields,
                },
                "required": ["host_id", "host", "username"],
            },
        },
        {
            "name": "list-hosts",
            "description": "List all stored SSH host configurations (secrets are never shown).",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "remove-host",
            "description": "Remove a stored SSH host configuration.",
            "inputSchema": {
                "type": "object",
                "properties": {"host_id": {"type": "string", "description": "Identifier of the host to remove"}},
                "required": ["host_id"],
            },
        },
        {
            "name": "edit-host",
            "description": "Edit fields of an existing host configuration. Empty password/keyPath/passphrase clears it.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host_id": {"type": "string", "description": "Identifier of the host to edit"},
                    **host_fields,
                },
                "required": ["host_id"],
            },
        },
        {
            "name": "start-session",
            "description": (
                "Start a new persistent SSH session for a stored host. "
                "Working directory, environment and background jobs persist across exec calls."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host_id": {"type": "string", "description": "Identifier of the host to connect"},
                    "session_id": {"type": "string", "description": "Optional session identifier; generated if omitted"},
                },
                "required": ["host_id"],
            },
        },
        {
            "name": "exec",
            "description": (
                "Execute a shell command on an existing SSH session. "
                "A non-zero exit code is reported as an error carrying the output. "
                "Only one command may run per session at a time."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": {"type": "string", "description": "Identifier of the session to use"},
                    "command": {"type": "string", "description": "Command to execute"},
                },
                "required": ["session_id", "command"],
            },
        },
        {
            "name": "close-session",
            "description": "Close an existing persistent SSH session.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": {"type": "string", "description": "Identifier of the session to close"}},
                "required": ["session_id"],
            },
        },
        {
            "name": "list-sessions",
            "description": "List all active SSH sessions with host, uptime and last command.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def add_host_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    data = dict(args)
    data["id"] = _arg_str(args, "host_id")
    profile = ctx.hosts.add(HostProfile.from_dict(data))
    return {"success": True, "message": f"Host '{profile.id}' added", "host": profile.describe()}

def list_hosts_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    hosts = [host.describe() for host in ctx.hosts.list()]
    result: Dict[str, Any] = {"success": True, "hosts": hosts, "total": len(hosts)}
    if not hosts:
        result["message"] = "No hosts configured"
    return result

def remove_host_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    host_id = _arg_str(args, "host_id")
    ctx.hosts.remove(host_id)
    return {"success": True, "message": f"Host '{host_id}' removed"}

def edit_host_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    host_id = _arg_str(args, "host_id")
    changes = {key: value for key, value in args.items() if key != "host_id"}
    profile = ctx.hosts.edit(host_id, changes)
    return {"success": True, "message": f"Host '{host_id}' updated", "host": profile.describe()}

def start_session_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    host_id = _arg_str(args, "host_id")
    credentials = ctx.resolve(host_id)
    session = ctx.registry.start_session(credentials, _session_id(args, required=False))
    return {
        "success": True,
        "session_id": session.id,
        "message": f"Session '{session.id}' started on {credentials.username}@{credentials.host}:{credentials.port}",
    }

def _run(session: PersistentSession, command: str) -> Dict[str, Any]:
    try:
        result = session.execute(command)
    except SSHMCPError:
        raise
    except Exception as exc:
        creds = session.credentials
        raise SessionClosedError(
            f"Session '{session.id}' on {creds.username}@{creds.host}:{creds.port} failed: {exc}"
        ) from exc

    if result.exit_code != 0:
        # Remote failure: the session itself stays usable.
        return {
            "success": False,
            "error": f"Error (code {result.exit_code}):\n{result.output}",
            "code": "command_failed",
            "session_id": session.id,
            "exit_code": result.exit_code,
            "output": result.output,
        }
    return {"success": True, "session_id": session.id, "output": result.output, "exit_code": 0}

def exec_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    session_id = _session_id(args)
    command = sanitize_command(args.get("command"))
    session = ctx.registry.get(session_id)
    if session is None or session.disposed:
        raise SessionNotFoundError(f"Session '{session_id}' does not exist")
    return _run(session, command)

def close_session_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    session_id = _session_id(args)
    if not ctx.registry.remove(session_id):
        raise SessionNotFoundError(f"Session '{session_id}' does not exist")
    return {"success": True, "session_id": session_id, "message": f"Session '{session_id}' closed"}

def list_sessions_dispatch(args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    sessions = ctx.registry.list_sessions()
    result: Dict[str, Any] = {"success": True, "sessions": sessions, "total": len(sessions)}
    if not sessions:
        result["message"] = "No active sessions"
    return result

def exec_ssh_command(ctx: ServerContext, host_id: str, command: str, session_id: str = "legacy") -> Dict[str, Any]:
    """Run one command on ``host_id`` through a reusable session named ``session_id``."""
    command = sanitize_command(command)
    credentials = ctx.resolve(host_id)
    session = ctx.registry.get_or_create(session_id, credentials)
    return _run(session, command)


TOOL_DISPATCH: Dict[str, Callable[[Dict[str, Any], ServerContext], Dict[str, Any]]] = {
    "add-host": add_host_dispatch,
    "list-hosts": list_hosts_dispatch,
    "remove-host": remove_host_dispatch,
    "edit-host": edit_host_dispatch,
    "start-session": start_session_dispatch,
    "exec": exec_dispatch,
    "close-session": close_session_dispatch,
    "list-sessions": list_sessions_dispatch,
}

def call_tool(tool_name: str, args: Dict[str, Any], ctx: ServerContext) -> Dict[str, Any]:
    dispatch = TOOL_DISPATCH[tool_name]
    try:
        return dispatch(args, ctx)
    except SSHMCPError as exc:
        return error_result(exc, session_id=args.get("session_id") or args.get("sessionId"))

def handle_request(request: Dict[str, Any], ctx: ServerContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method == "notifications/initialized": return None
    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        if tool_name not in TOOL_DISPATCH:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = call_tool(str(tool_name), args, ctx)
            return make_response(req_id, result, is_error=not result.get("success", False))
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, error_result(exc), is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
