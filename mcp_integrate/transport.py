"""JSON-RPC over HTTP session transport.

Every request is a POST to the server's MCP endpoint. The server hands
out a session id in the mcp-session-id response header, which is sent
back on every later request. Responses come back either as a JSON body
or as a short server-sent event stream carrying the response message.
"""

import itertools
import json
import logging
from typing import Any

import httpx
from mcp.shared.exceptions import McpError
from mcp.types import (
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from pydantic import ValidationError

from .errors import MCPConnectionError
from .oauth.flow import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"


def _parse_sse_messages(body: str) -> list[dict[str, Any]]:
    """Collect the JSON payloads of the data: lines of an event stream."""
    messages: list[dict[str, Any]] = []
    data_lines: list[str] = []

    for line in body.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].strip())
        elif not line.strip() and data_lines:
            payload = "\n".join(data_lines)
            data_lines = []
            if payload:
                messages.append(json.loads(payload))

    return messages


def _error_payload(response: httpx.Response) -> dict[str, Any] | None:
    """JSON-RPC error object from an HTTP error response, if it has one."""
    try:
        data = response.json()
    except ValueError:
        return None

    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error: dict[str, Any] = data["error"]
        if "code" in error and "message" in error:
            return error
    return None


class HttpSessionTransport:
    """Sends JSON-RPC requests to an MCP server over HTTP."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transport.

        Args:
            url: Full URL of the MCP endpoint
            headers: Headers sent with every request
            timeout: Request timeout in seconds
            http_client: Optional HTTP client (not closed by disconnect())
        """
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout

        self._http = http_client
        self._owns_http = http_client is None
        self._session_id: str | None = None
        self._connected = False
        self._ids = itertools.count(1)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Prepare the HTTP client. The session starts with the first request."""
        if self._connected:
            return

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
            self._owns_http = True
        self._connected = True

    async def disconnect(self) -> None:
        """Forget the session and close the HTTP client if we created it."""
        self._connected = False
        self._session_id = None

        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _request_headers(self, extra: dict[str, str] | None) -> dict[str, str]:
        headers = {
            **self.headers,
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        if extra:
            headers.update(extra)
        return headers

    async def _post(self, body: dict[str, Any], headers: dict[str, str] | None) -> httpx.Response:
        if not self._connected or self._http is None:
            raise MCPConnectionError("Not connected to server")

        try:
            response = await self._http.post(self.url, json=body, headers=self._request_headers(headers))
        except httpx.RequestError as e:
            raise MCPConnectionError(f"Network error talking to {self.url}: {e}") from e

        if not (200 <= response.status_code < 300):
            raise MCPConnectionError(
                f"Request failed: HTTP {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                jsonrpc_error=_error_payload(response),
            )

        if self._session_id is None:
            session_id = response.headers.get(SESSION_HEADER)
            if session_id:
                self._session_id = session_id
                logger.debug("MCP session established")

        return response

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return its result.

        Args:
            method: JSON-RPC method (e.g. "tools/call")
            params: Method parameters
            headers: Extra headers for this request only

        Returns:
            The result object of the response

        Raises:
            MCPConnectionError: On network failure or HTTP error status
            McpError: When the server answers with a JSON-RPC error
        """
        request_id = next(self._ids)
        request = JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
        logger.debug(f"-> {method} (id={request_id})")

        response = await self._post(request.model_dump(by_alias=True, exclude_none=True), headers)
        message = self._read_response(response, request_id)

        if isinstance(message, JSONRPCError):
            raise McpError(message.error)

        return message.result

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no response expected)."""
        notification = JSONRPCNotification(jsonrpc="2.0", method=method, params=params)
        await self._post(notification.model_dump(by_alias=True, exclude_none=True), None)

    def _read_response(self, response: httpx.Response, request_id: int) -> JSONRPCResponse | JSONRPCError:
        content_type = response.headers.get("content-type", "")

        try:
            if content_type.startswith("text/event-stream"):
                payloads = _parse_sse_messages(response.text)
            else:
                payloads = [response.json()]
        except ValueError as e:
            raise MCPConnectionError(f"Invalid response from server: {e}") from e

        for payload in payloads:
            try:
                message = JSONRPCMessage.model_validate(payload).root
            except ValidationError as e:
                raise MCPConnectionError(f"Invalid JSON-RPC message from server: {e}") from e

            if isinstance(message, (JSONRPCResponse, JSONRPCError)) and message.id == request_id:
                return message

        raise MCPConnectionError(f"No response to request {request_id} from server")
