"""Exceptions raised by the session layer and the host store.

Every class carries a short ``code`` that the tool layer copies into error
results so clients can branch on the failure kind without parsing text.
"""


class SSHMCPError(Exception):
    """Base exception for the SSH MCP server."""

    code = "internal_error"


class InvalidParamsError(SSHMCPError):
    """Tool arguments are missing or malformed."""

    code = "invalid_params"


class NotFoundError(SSHMCPError):
    code = "not_found"


class HostNotFoundError(NotFoundError):
    """No stored host profile has the requested id."""


class SessionNotFoundError(NotFoundError):
    """No live session has the requested id."""


class HostExistsError(SSHMCPError):
    code = "already_exists"


class SessionExistsError(SSHMCPError):
    code = "already_exists"


class HostConfigError(SSHMCPError):
    """Hosts file or key file cannot be read or parsed."""

    code = "host_config_error"


class SSHConnectionError(SSHMCPError):
    """DNS, authentication or network failure while connecting."""

    code = "connection_error"


class KeyDecryptionError(SSHConnectionError):
    """Private key is encrypted and could not be decrypted."""

    code = "key_decryption_failed"


class ProtocolError(SSHMCPError):
    """Shell stream stopped making sense (marker never arrived, shell never ready)."""

    code = "protocol_error"


class SessionClosedError(ProtocolError):
    """Session went away while a command was pending."""

    code = "session_closed"


class SessionBusyError(SSHMCPError):
    """A command is already in flight on this session."""

    code = "busy"


class SessionDisposedError(SSHMCPError):
    code = "disposed"
