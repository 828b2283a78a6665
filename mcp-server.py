#!/usr/bin/env python3
"""
SSH MCP server with persistent shell sessions.

Run directly from a checkout (``python mcp-server.py``) or use the installed
``ssh-mcp`` script. Speaks JSON-RPC over stdio; diagnostics go to stderr.
"""

from sshmcp.main import main

if __name__ == "__main__":
    main()
