import io
import sys
import json
import argparse
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from sshmcp.config import TOOL_WORKERS, config
from sshmcp.hosts import HostStore
from sshmcp.registry import SessionRegistry
from sshmcp.server import ServerContext, handle_request
from sshmcp.transport import ShellTransport
from sshmcp.utils import expand_path, log_error, make_cache_dirs


class ResponseWriter:
    """Writes JSON-RPC responses to stdout, one whole line at a time.

    Tool calls answer from worker threads, so every line is written and
    flushed under one lock.
    """

    def __init__(self, stdout):
        self.stdout = stdout
        self.lock = threading.Lock()

    def write(self, response: Dict[str, Any]) -> None:
        with self.lock:
            try:
                self.stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
                self.stdout.flush()
            except Exception as exc:
                log_error(f"response write error: {exc}")
                # Escaped output survives a stdout that rejects non-ASCII
                try:
                    self.stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
                    self.stdout.flush()
                except Exception as exc2:
                    log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP Server (persistent shell sessions over stored SSH hosts)"
    )
    parser.add_argument("--hosts-file", help="Host profile JSON file (overrides SSH_MCP_HOSTS_FILE env)")
    parser.add_argument("--session-ttl", type=float, help="Idle seconds before a session is closed (overrides SSH_MCP_SESSION_TTL env)")
    parser.add_argument("--cache-dir", help="Directory for session event logs (overrides SSH_MCP_CACHE_DIR env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts (default)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.hosts_file: config.HOSTS_FILE = args.hosts_file
    if args.cache_dir: config.CACHE_DIR = args.cache_dir
    if args.session_ttl is not None: config.SESSION_TTL = args.session_ttl

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True


def build_context() -> ServerContext:
    config.CACHE_DIRS = make_cache_dirs(expand_path(config.CACHE_DIR))
    transport_factory = functools.partial(ShellTransport, verify_host_key=config.SSH_VERIFY_HOST_KEY)
    registry = SessionRegistry(
        transport_factory=transport_factory,
        session_ttl=config.SESSION_TTL,
        sessions_dir=config.CACHE_DIRS["sessions_dir"],
    )
    hosts = HostStore(expand_path(config.HOSTS_FILE))
    return ServerContext(hosts, registry, agent_socket=config.SSH_AUTH_SOCK)


def serve_request(request: Any, ctx: ServerContext, writer: ResponseWriter) -> None:
    try:
        response = handle_request(request, ctx)
        if response is not None:
            writer.write(response)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        # Attempt to send an error response back so the client doesn't hang
        req_id = request.get("id") if isinstance(request, dict) else None
        writer.write({
            "jsonrpc": "2.0",
            "id": req_id,
            "error": {"code": -32603, "message": f"Internal error: {exc}"},
        })


def is_tool_call(request: Any) -> bool:
    return isinstance(request, dict) and request.get("method") == "tools/call"


def main(argv: Optional[List[str]] = None) -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)
    if config.SESSION_TTL < 0:
        parser.error("--session-ttl must not be negative")

    # Force UTF-8 I/O to avoid charmap encoding errors on Windows
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    writer = ResponseWriter(io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True))

    ctx = build_context()
    log_error(
        f"SSH MCP Server running on stdio. hosts={ctx.hosts.path} "
        f"cache={config.CACHE_DIRS['cache_root']} ttl={config.SESSION_TTL:g}s "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    # exec blocks until its command finishes; tool calls run on workers so
    # other sessions, and close-session for the blocked one, still get answers.
    workers = ThreadPoolExecutor(max_workers=TOOL_WORKERS, thread_name_prefix="tool")
    try:
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as exc:
                log_error(f"invalid json: {exc}")
                writer.write({
                    "jsonrpc": "2.0",
                    "id": None,
                    "error": {"code": -32700, "message": f"Parse error: {exc}"},
                })
                continue
            if is_tool_call(request):
                workers.submit(serve_request, request, ctx, writer)
            else:
                serve_request(request, ctx, writer)
    finally:
        log_error("shutting down...")
        # Disposing sessions fails pending commands, which lets their workers answer.
        ctx.close()
        workers.shutdown(wait=True)
        # Sessions started by calls that were still connecting at shutdown.
        ctx.close()


if __name__ == "__main__":
    main()
