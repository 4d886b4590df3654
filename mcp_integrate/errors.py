"""Error taxonomy and server error classification.

Every error raised by the SDK derives from IntegrateSDKError. Raw failures
coming back from the transport are turned into the taxonomy by
parse_server_error(), which is what drives the re-authorization loop in
the client.
"""

from typing import Any

import httpx
from mcp.shared.exceptions import McpError

# JSON-RPC codes with a fixed meaning
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

# Server-defined auth codes (plus their HTTP equivalents)
AUTH_ERROR_CODES = (401, -32001)
FORBIDDEN_ERROR_CODES = (403, -32002)


class IntegrateSDKError(Exception):
    """Base class for all SDK errors."""

    pass


class ConfigurationError(IntegrateSDKError):
    """Missing or invalid configuration (e.g. no client credentials)."""

    pass


class InvalidStateError(IntegrateSDKError):
    """OAuth callback state does not match any pending authorization.

    Raised for unknown, expired and replayed states alike, so callers
    cannot tell the cases apart.
    """

    def __init__(self, message: str = "Invalid state parameter"):
        super().__init__(message)


class UserDeniedError(IntegrateSDKError):
    """The provider reported that the user denied access."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.error_code = error_code


class UserCancelledError(IntegrateSDKError):
    """The user closed the authorization window without completing it."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class AuthenticationError(IntegrateSDKError):
    """Credentials were rejected (HTTP 401 or equivalent)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class TokenExpiredError(AuthenticationError):
    """The access token has expired."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, 401, provider)


class AuthorizationError(IntegrateSDKError):
    """Credentials are valid but lack permission (HTTP 403 or equivalent).

    Never retried: re-authenticating with the same scopes does not help.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        required_scopes: list[str] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.required_scopes = required_scopes


class MCPConnectionError(IntegrateSDKError):
    """Could not reach the MCP server or it answered with an HTTP error.

    When the error response body carried a JSON-RPC error object it is
    kept in jsonrpc_error so classification can prefer it.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        jsonrpc_error: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.jsonrpc_error = jsonrpc_error


class ToolCallError(IntegrateSDKError):
    """A tool call failed for a reason other than authentication."""

    def __init__(self, message: str, tool_name: str, original_error: Any = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.original_error = original_error


class NotInitializedError(IntegrateSDKError):
    """The client has not completed the handshake and tool discovery."""

    pass


class ToolNotEnabledError(IntegrateSDKError):
    """No configured plugin enables the requested tool."""

    def __init__(self, tool_name: str):
        super().__init__(
            f'Tool "{tool_name}" is not enabled. '
            f"Enable it by adding the appropriate plugin."
        )
        self.tool_name = tool_name


class ToolNotFoundError(IntegrateSDKError):
    """The server did not advertise the requested tool."""

    def __init__(self, tool_name: str, available: list[str] | None = None):
        self.tool_name = tool_name
        self.available = available or []
        super().__init__(
            f'Tool "{tool_name}" is not available on the server. '
            f"Available tools: {', '.join(self.available)}"
        )


class OAuthFlowError(IntegrateSDKError):
    """Error talking to the server during an OAuth flow."""

    pass


class AuthorizationUrlError(OAuthFlowError):
    """The server could not produce an authorization URL."""

    pass


class TokenExchangeError(OAuthFlowError):
    """Exchanging the authorization code for a token failed."""

    pass


class DisconnectError(OAuthFlowError):
    """The server refused to revoke a provider authorization."""

    pass


def is_auth_error(error: object) -> bool:
    """Check if an error should trigger re-authentication."""
    return isinstance(error, AuthenticationError)


def is_token_expired_error(error: object) -> bool:
    """Check if an error is a token expiry."""
    return isinstance(error, TokenExpiredError)


def is_authorization_error(error: object) -> bool:
    """Check if an error is a permission (403) failure."""
    return isinstance(error, AuthorizationError)


def _looks_expired(message: str) -> bool:
    lowered = message.lower()
    return "expired" in lowered or "token" in lowered


def _auth_error(message: str, provider: str | None) -> AuthenticationError:
    if _looks_expired(message):
        return TokenExpiredError(message, provider)
    return AuthenticationError(message, 401, provider)


def _jsonrpc_fields(error: Any) -> tuple[Any, str] | None:
    """Extract (code, message) from a JSON-RPC shaped error payload."""
    if isinstance(error, dict):
        if "code" in error and "message" in error:
            return error["code"], str(error["message"] or "Unknown error")
        return None
    if isinstance(error, BaseException):
        return None
    if hasattr(error, "code") and hasattr(error, "message"):
        return error.code, str(error.message or "Unknown error")
    return None


def _status_code_of(error: BaseException) -> int | None:
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def parse_server_error(
    error: Any,
    tool_name: str | None = None,
    provider: str | None = None,
) -> IntegrateSDKError:
    """Classify a raw failure into the SDK error taxonomy.

    Checks, in order: a JSON-RPC error object attached to the exception,
    a JSON-RPC shaped payload, an HTTP status or auth-flavored message on
    a regular exception. Falls back to ToolCallError when the tool is known.

    Args:
        error: The raw error (exception, JSON-RPC error dict or object)
        tool_name: Name of the tool being called, if any
        provider: Provider owning the tool, if any

    Returns:
        The classified error (never raises)
    """
    # Already classified (connection errors still need their status inspected)
    if isinstance(error, IntegrateSDKError) and not isinstance(error, MCPConnectionError):
        return error

    # Attached JSON-RPC error (from our transport or the mcp SDK)
    attached = getattr(error, "jsonrpc_error", None)
    if attached is None and isinstance(error, McpError):
        attached = error.error
    if attached is not None and _jsonrpc_fields(attached) is not None:
        return parse_server_error(attached, tool_name=tool_name, provider=provider)

    fields = _jsonrpc_fields(error)
    if fields is not None:
        code, message = fields

        if code == INVALID_REQUEST:
            return IntegrateSDKError(f"Invalid request: {message}")
        if code == METHOD_NOT_FOUND:
            return IntegrateSDKError(f"Method not found: {message}")
        if code == INVALID_PARAMS:
            return IntegrateSDKError(f"Invalid params: {message}")

        if code in AUTH_ERROR_CODES:
            return _auth_error(message, provider)

        if code in FORBIDDEN_ERROR_CODES:
            return AuthorizationError(message, 403)

        if tool_name:
            return ToolCallError(message, tool_name, error)

        return IntegrateSDKError(message)

    if isinstance(error, Exception):
        message = str(error)

        status_code = _status_code_of(error)
        if status_code == 401:
            return _auth_error(message, provider)
        if status_code == 403:
            return AuthorizationError(message, 403)

        # Auth-flavored messages from HTTP layers that lost the status code
        if "401" in message or "Unauthorized" in message or "unauthenticated" in message:
            return _auth_error(message, provider)

        if "403" in message or "Forbidden" in message or "unauthorized" in message:
            return AuthorizationError(message, 403)

        if isinstance(error, MCPConnectionError):
            return error

        if tool_name:
            return ToolCallError(message, tool_name, error)

        return IntegrateSDKError(message)

    return IntegrateSDKError(str(error))
