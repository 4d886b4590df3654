"""Localhost receiver for OAuth redirects.

When the SDK runs outside a browser, the "popup" is the user's browser
and the redirect URI points back at a small HTTP listener started here.
The listener:
- Binds the host/port/path of the configured redirect URI (or a free port)
- Captures code/state/error from the redirect
- Answers with a short HTML page telling the user they can close the tab
- Ignores favicon and other unrelated requests
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300  # seconds
DEFAULT_PATH = "/oauth/callback"


class CallbackError(Exception):
    """Error while receiving the OAuth redirect."""

    pass


class CallbackTimeoutError(CallbackError):
    """No OAuth redirect arrived in time."""

    pass


@dataclass
class CallbackParams:
    """Parameters delivered to the redirect URI.

    Attributes:
        code: Authorization code
        state: State token echoed back by the provider
        error: Error code if authorization failed (e.g. "access_denied")
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if the redirect carried an authorization code."""
        return self.code is not None and self.error is None


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif;
                display: flex; justify-content: center; align-items: center;
                height: 100vh; margin: 0; background: #f4f5f7; }}
        .card {{ background: white; padding: 32px 48px; border-radius: 12px;
                 text-align: center; box-shadow: 0 4px 24px rgba(0,0,0,0.1); }}
        h1 {{ margin: 0 0 8px 0; font-size: 22px; color: {color}; }}
        p {{ color: #555; margin: 0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <p>{message}</p>
    </div>
</body>
</html>"""


def render_page(params: CallbackParams) -> str:
    """Render the page shown in the browser after the redirect."""
    if params.is_success():
        return PAGE_HTML.format(
            title="Authorization complete",
            color="#1e8e3e",
            message="You can close this window and return to the application.",
        )

    # Escape provider-supplied text to prevent XSS
    error = html.escape(params.error or "unknown_error")
    description = html.escape(params.error_description or "No description provided")
    return PAGE_HTML.format(
        title="Authorization failed",
        color="#c5221f",
        message=f"{error}: {description}",
    )


def parse_callback_url(url: str) -> CallbackParams:
    """Parse OAuth redirect parameters from a URL or request path.

    Args:
        url: The redirect URL (or path) with query parameters

    Returns:
        CallbackParams with the first value of each parameter
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackParams(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class LocalhostCallbackServer:
    """Ephemeral HTTP listener for a single OAuth redirect.

    Usage:
        async with LocalhostCallbackServer(port=3000, path="/oauth/callback") as server:
            # open the authorization URL with server.redirect_uri
            params = await server.wait_for_callback()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        path: str = DEFAULT_PATH,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the listener.

        Args:
            host: Interface to bind
            port: Port to bind (0 lets the OS pick a free one)
            path: URL path the redirect arrives on
            timeout: Seconds wait_for_callback() waits before giving up
        """
        self.host = host
        self.port = port
        self.path = path or "/"
        self.timeout = timeout
        self.redirect_uri: str = ""

        self._server: asyncio.Server | None = None
        self._result: CallbackParams | None = None
        self._result_event = asyncio.Event()

    @classmethod
    def for_redirect_uri(cls, redirect_uri: str, timeout: float = DEFAULT_TIMEOUT) -> "LocalhostCallbackServer":
        """Create a listener matching an http://localhost-style redirect URI."""
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
            raise CallbackError(
                f"Redirect URI {redirect_uri} is not a local http address; "
                f"cannot receive the callback in-process"
            )

        return cls(
            host="127.0.0.1" if parsed.hostname == "localhost" else parsed.hostname,
            port=parsed.port or 80,
            path=parsed.path or "/",
            timeout=timeout,
        )

    @property
    def result(self) -> CallbackParams | None:
        """The received redirect parameters, once available."""
        return self._result

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> str:
        """Start listening.

        Returns:
            The redirect URI the listener answers on
        """
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)

        sockets = self._server.sockets
        if not sockets:
            raise CallbackError("Failed to start callback server: no sockets created")

        self.port = sockets[0].getsockname()[1]
        self.redirect_uri = f"http://{self.host}:{self.port}{self.path}"

        logger.debug(f"Callback server listening on {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self) -> None:
        """Stop listening."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackParams:
        """Wait for the redirect to arrive.

        Raises:
            CallbackTimeoutError: If nothing arrives within the timeout
        """
        try:
            await asyncio.wait_for(self._result_event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback after {self.timeout} seconds"
            ) from None

        if self._result is None:
            raise CallbackError("No callback result received")
        return self._result

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one HTTP request."""
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")

            # e.g. "GET /oauth/callback?code=xxx&state=yyy HTTP/1.1"
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Drain headers
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if urlparse(target).path != self.path:
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            params = parse_callback_url(target)
            self._result = params
            await self._send(writer, HTTPStatus.OK, render_page(params), "text/html; charset=utf-8")
            self._result_event.set()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as e:
                logger.debug(f"Callback connection closed uncleanly: {e}")

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        """Send an HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
