"""End-to-end tests of the JSON-RPC tool surface over a scripted shell."""

import json
import threading

import pytest

from sshmcp.errors import InvalidParamsError, SSHConnectionError
from sshmcp.server import exec_ssh_command, handle_request, sanitize_command


def call(ctx, name, **arguments):
    response = handle_request(
        {"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {"name": name, "arguments": arguments}},
        ctx,
    )
    assert response["id"] == 7
    result = response["result"]
    payload = json.loads(result["content"][0]["text"])
    return payload, result.get("isError", False)


@pytest.fixture
def with_host(ctx):
    payload, is_error = call(ctx, "add-host", host_id="deploy@web", host="10.0.0.5", port=2222,
                             username="deploy", password="s3cret-pw")
    assert not is_error, payload
    return ctx


class TestProtocolMethods:
    def test_initialize(self, ctx):
        response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}, ctx)
        assert response["result"]["serverInfo"]["name"] == "ssh-mcp"
        assert response["result"]["capabilities"] == {"tools": {}}

    def test_initialized_notification_has_no_response(self, ctx):
        assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, ctx) is None

    def test_tools_list(self, ctx):
        response = handle_request({"jsonrpc": "2.0", "id": 3, "method": "tools/list"}, ctx)
        names = [tool["name"] for tool in response["result"]["tools"]]
        assert response["id"] == 3
        assert names == [
            "add-host", "list-hosts", "remove-host", "edit-host",
            "start-session", "exec", "close-session", "list-sessions",
        ]

    def test_unknown_tool(self, ctx):
        response = handle_request(
            {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "run", "arguments": {}}}, ctx
        )
        assert response["error"]["code"] == -32601

    def test_unknown_method(self, ctx):
        response = handle_request({"jsonrpc": "2.0", "id": 5, "method": "resources/list"}, ctx)
        assert response["error"]["code"] == -32601


class TestHostTools:
    def test_list_hosts_hides_secrets(self, with_host):
        payload, is_error = call(with_host, "list-hosts")

        assert not is_error
        assert payload["total"] == 1
        assert payload["hosts"][0] == {
            "id": "deploy@web", "host": "10.0.0.5", "port": 2222, "username": "deploy", "auth": "password",
        }
        assert "s3cret-pw" not in json.dumps(payload)

    def test_list_hosts_empty(self, ctx):
        payload, _ = call(ctx, "list-hosts")
        assert payload["message"] == "No hosts configured"

    def test_add_duplicate(self, with_host):
        payload, is_error = call(with_host, "add-host", host_id="deploy@web", host="x", username="y")
        assert is_error
        assert payload["code"] == "already_exists"

    def test_add_missing_field(self, ctx):
        payload, is_error = call(ctx, "add-host", host_id="h", username="u")
        assert is_error
        assert payload["code"] == "invalid_params"

    def test_edit_and_remove(self, with_host):
        payload, is_error = call(with_host, "edit-host", host_id="deploy@web", port=2200)
        assert not is_error
        assert payload["host"]["port"] == 2200

        payload, is_error = call(with_host, "remove-host", host_id="deploy@web")
        assert not is_error

        payload, is_error = call(with_host, "remove-host", host_id="deploy@web")
        assert is_error
        assert "does not exist" in payload["error"]


class TestSessionTools:
    def test_full_session_flow(self, with_host, shell):
        payload, is_error = call(with_host, "start-session", host_id="deploy@web", session_id="s1")
        assert not is_error
        assert payload["session_id"] == "s1"

        payload, is_error = call(with_host, "exec", session_id="s1", command="pwd")
        assert not is_error
        assert payload["output"] == "/home/user"
        assert payload["exit_code"] == 0

        payload, is_error = call(with_host, "exec", session_id="s1", command="exit 7")
        assert is_error
        assert payload["exit_code"] == 7
        assert payload["output"] == ""
        assert payload["code"] == "command_failed"

        payload, is_error = call(with_host, "close-session", session_id="s1")
        assert not is_error

        payload, is_error = call(with_host, "exec", session_id="s1", command="pwd")
        assert is_error
        assert "does not exist" in payload["error"]
        assert payload["code"] == "not_found"
        assert len(shell.transports) == 1

    def test_nonzero_exit_reports_output(self, with_host):
        call(with_host, "start-session", host_id="deploy@web", session_id="s1")

        payload, is_error = call(with_host, "exec", session_id="s1", command="ls missing")

        assert is_error
        assert payload["error"].startswith("Error (code 2):\n")
        assert "No such file or directory" in payload["error"]

        payload, is_error = call(with_host, "exec", session_id="s1", command="echo hello")
        assert not is_error

    def test_busy_session_rejects_second_exec(self, with_host, shell):
        shell.held.add("make build")
        call(with_host, "start-session", host_id="deploy@web", session_id="s1")
        first = []

        worker = threading.Thread(target=lambda: first.append(
            call(with_host, "exec", session_id="s1", command="make build")
        ))
        worker.start()
        assert shell.held_event.wait(3)

        payload, is_error = call(with_host, "exec", session_id="s1", command="pwd")
        assert is_error
        assert payload["code"] == "busy"
        assert payload["session_id"] == "s1"

        shell.last.finish_held("build ok\r\n", 0)
        worker.join(3)
        payload, is_error = first[0]
        assert not is_error
        assert payload["output"] == "build ok"

    def test_generated_session_id(self, with_host):
        payload, _ = call(with_host, "start-session", host_id="deploy@web")
        sessions, _ = call(with_host, "list-sessions")
        assert [info["id"] for info in sessions["sessions"]] == [payload["session_id"]]

    def test_session_id_alias(self, with_host):
        call(with_host, "start-session", host_id="deploy@web", sessionId="camel")
        payload, is_error = call(with_host, "exec", sessionId="camel", command="pwd")
        assert not is_error
        assert payload["session_id"] == "camel"

    def test_duplicate_session(self, with_host):
        call(with_host, "start-session", host_id="deploy@web", session_id="s1")
        payload, is_error = call(with_host, "start-session", host_id="deploy@web", session_id="s1")
        assert is_error
        assert payload["code"] == "already_exists"

    def test_start_session_unknown_host(self, ctx):
        payload, is_error = call(ctx, "start-session", host_id="ghost")
        assert is_error
        assert payload["code"] == "not_found"

    def test_connection_failure_is_reported(self, with_host, shell):
        shell.connect_error = SSHConnectionError("Authentication failed for deploy@10.0.0.5:2222: denied")
        payload, is_error = call(with_host, "start-session", host_id="deploy@web", session_id="s1")

        assert is_error
        assert payload["code"] == "connection_error"
        assert "Authentication failed" in payload["error"]
        listed, _ = call(with_host, "list-sessions")
        assert listed["sessions"] == []

    def test_exec_rejects_empty_command(self, with_host):
        call(with_host, "start-session", host_id="deploy@web", session_id="s1")
        payload, is_error = call(with_host, "exec", session_id="s1", command="   ")
        assert is_error
        assert payload["code"] == "invalid_params"

    def test_close_unknown_session(self, ctx):
        payload, is_error = call(ctx, "close-session", session_id="nope")
        assert is_error
        assert payload["code"] == "not_found"

    def test_list_sessions_empty(self, ctx):
        payload, _ = call(ctx, "list-sessions")
        assert payload == {"success": True, "sessions": [], "total": 0, "message": "No active sessions"}


class TestExecSshCommand:
    def test_reuses_named_session(self, with_host, shell):
        first = exec_ssh_command(with_host, "deploy@web", "pwd")
        second = exec_ssh_command(with_host, "deploy@web", "echo hello")

        assert first["output"] == "/home/user"
        assert second["output"] == "hello"
        assert first["session_id"] == "legacy"
        assert len(shell.transports) == 1


class TestSanitizeCommand:
    def test_strips(self):
        assert sanitize_command("  ls -la  ") == "ls -la"

    @pytest.mark.parametrize("command", [None, 42, "", "\n\t", "x" * 15001])
    def test_rejects(self, command):
        with pytest.raises(InvalidParamsError):
            sanitize_command(command)
