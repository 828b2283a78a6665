import os
from typing import Optional, Dict

from sshmcp.utils import to_bool

SERVER_NAME = "ssh-mcp"
SERVER_VERSION = "1.1.0"
PROTOCOL_VERSION = "2024-11-05"

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READY_TIMEOUT = 15.0
READER_POLL_INTERVAL = 1.0

DEFAULT_SESSION_TTL = 2 * 60 * 60  # seconds
MAX_BUFFER_CHARS = 5_000_000
MAX_COMMAND_LENGTH = 15000
TOOL_WORKERS = 16

PTY_TERM = "xterm"
PTY_WIDTH = 120
PTY_HEIGHT = 40

DEFAULT_SSH_PORT = 22
STATE_DIR = os.path.join(os.path.expanduser("~"), ".ssh-mcp")
DEFAULT_HOSTS_FILE = os.path.join(STATE_DIR, "hosts.json")
DEFAULT_CACHE_DIR = os.path.join(STATE_DIR, "cache")

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.HOSTS_FILE: str = DEFAULT_HOSTS_FILE
        self.CACHE_DIR: str = DEFAULT_CACHE_DIR
        self.SESSION_TTL: float = float(DEFAULT_SESSION_TTL)
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SSH_AUTH_SOCK: Optional[str] = None
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.HOSTS_FILE = os.environ.get("SSH_MCP_HOSTS_FILE", self.HOSTS_FILE)
        self.CACHE_DIR = os.environ.get("SSH_MCP_CACHE_DIR", self.CACHE_DIR)
        self.SSH_AUTH_SOCK = os.environ.get("SSH_AUTH_SOCK", self.SSH_AUTH_SOCK)

        ttl_env = os.environ.get("SSH_MCP_SESSION_TTL")
        if ttl_env:
            try:
                self.SESSION_TTL = float(ttl_env)
            except ValueError:
                pass

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = to_bool(verify_host_env, default=self.SSH_VERIFY_HOST_KEY)

# Global instance
config = ServerConfig()
