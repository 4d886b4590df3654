"""OAuth flow configuration and the server calls behind each step.

The remote MCP server brokers every provider: it builds the provider's
authorization URL, exchanges the code (with our PKCE verifier), reports
status and revokes access. The functions here wrap those endpoints:

    GET  /oauth/authorize   -> {"url": ...}
    POST /oauth/callback    -> {"accessToken", "tokenType", "expiresIn", ...}
    GET  /oauth/status      -> {"authorized", "scopes", "expiresAt"}
    POST /oauth/disconnect  -> success / failure
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from ..errors import AuthorizationUrlError, DisconnectError, OAuthFlowError, TokenExchangeError
from .callback import CallbackParams
from .store import normalize_provider
from .window import PopupFactory, PopupOptions, RedirectHook

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "https://mcp.integrate.dev"
DEFAULT_TIMEOUT = 30.0  # seconds

# Used when neither the provider config nor the client supplies one
DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/callback"

AUTHORIZE_PATH = "/oauth/authorize"
CALLBACK_PATH = "/oauth/callback"
STATUS_PATH = "/oauth/status"
DISCONNECT_PATH = "/oauth/disconnect"


class FlowMode(str, Enum):
    """How the authorization URL is presented to the user."""

    POPUP = "popup"
    REDIRECT = "redirect"


class FlowState(str, Enum):
    """Steps of a single authorization flow."""

    IDLE = "idle"
    REQUESTING_URL = "requesting_url"
    AWAITING_USER = "awaiting_user"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class OAuthProviderConfig:
    """OAuth settings for one provider.

    Client credentials are only needed where the flow is initiated
    (server-side); they are forwarded to the MCP server, never to the
    browser.
    """

    provider: str
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.provider = normalize_provider(self.provider)

    def has_credentials(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)

    def with_redirect_uri(self, redirect_uri: str) -> "OAuthProviderConfig":
        """Copy of this config with redirect_uri filled in."""
        return replace(self, redirect_uri=redirect_uri, scopes=list(self.scopes), extra=dict(self.extra))


# (provider, authorization_url) -> callback parameters, or None to finish later
AuthorizationHandler = Callable[[str, str], Awaitable[CallbackParams | tuple[str, str] | None]]


@dataclass
class FlowConfig:
    """How authorization flows reach the user.

    Attributes:
        mode: Popup (wait in-process) or redirect (finish via handle_callback)
        popup: Popup geometry and timeout
        on_authorization: Replaces the built-in window handling entirely;
            awaited with (provider, url). Returning the callback (as
            CallbackParams or a (code, state) tuple) completes the flow
            in-process, returning None leaves it pending.
        on_redirect: Called with the URL in redirect mode instead of
            opening the system browser
        popup_factory: Builds custom popup handles
        poll_interval: Seconds between popup checks
    """

    mode: FlowMode = FlowMode.REDIRECT
    popup: PopupOptions = field(default_factory=PopupOptions)
    on_authorization: AuthorizationHandler | None = None
    on_redirect: RedirectHook | None = None
    popup_factory: PopupFactory | None = None
    poll_interval: float = 0.5


def _endpoint(server_url: str, path: str) -> str:
    return f"{server_url.rstrip('/')}/{path.lstrip('/')}"


def _error_detail(response: httpx.Response) -> str:
    """Extract safe error fields from an error response.

    The raw body is never included, it may echo codes or secrets.
    """
    try:
        data = response.json()
    except ValueError:
        return ""

    if not isinstance(data, dict):
        return ""

    parts = [str(data[key]) for key in ("error", "error_description", "message") if data.get(key)]
    return f": {' - '.join(parts)}" if parts else ""


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


async def request_authorization_url(
    server_url: str,
    provider: str,
    client_id: str,
    client_secret: str,
    scopes: list[str],
    state: str,
    code_challenge: str,
    redirect_uri: str | None = None,
    code_challenge_method: str = "S256",
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Ask the server for the provider's authorization URL.

    Args:
        server_url: Base URL of the MCP server
        provider: Provider id (e.g. "github")
        client_id: Provider OAuth client id
        client_secret: Provider OAuth client secret
        scopes: Requested scopes (sent comma separated)
        state: State token for this flow
        code_challenge: PKCE challenge
        redirect_uri: Where the provider should send the user back
        code_challenge_method: PKCE method (always S256)
        http_client: Optional HTTP client
        timeout: Request timeout when no client is given

    Returns:
        The authorization URL to present to the user

    Raises:
        AuthorizationUrlError: On HTTP or network failure
    """
    http = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    params: dict[str, str] = {
        "provider": provider,
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": ",".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
    }
    if redirect_uri:
        params["redirect_uri"] = redirect_uri

    try:
        response = await http.get(_endpoint(server_url, AUTHORIZE_PATH), params=params)

        if not _is_success(response):
            raise AuthorizationUrlError(
                f"Failed to get authorization URL for {provider} "
                f"(HTTP {response.status_code}){_error_detail(response)}"
            )

        data = response.json()
        url = data.get("url") or data.get("authorizationUrl")
        if not url:
            raise AuthorizationUrlError("Authorization response missing url")
        return str(url)

    except httpx.RequestError as e:
        raise AuthorizationUrlError(f"Network error requesting authorization URL: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def exchange_code(
    server_url: str,
    provider: str,
    code: str,
    code_verifier: str,
    state: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    """Exchange an authorization code (plus PKCE verifier) for a token.

    Returns:
        The server's token response

    Raises:
        TokenExchangeError: On HTTP or network failure
    """
    http = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    try:
        response = await http.post(
            _endpoint(server_url, CALLBACK_PATH),
            json={
                "provider": provider,
                "code": code,
                "code_verifier": code_verifier,
                "state": state,
            },
        )

        if not _is_success(response):
            raise TokenExchangeError(
                f"Token exchange failed for {provider} "
                f"(HTTP {response.status_code}){_error_detail(response)}"
            )

        result: dict[str, Any] = response.json()
        return result

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during token exchange: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def fetch_auth_status(
    server_url: str,
    provider: str,
    access_token: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    """Ask the server whether a provider is authorized.

    Raises:
        OAuthFlowError: On HTTP or network failure
    """
    http = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    try:
        response = await http.get(
            _endpoint(server_url, STATUS_PATH),
            params={"provider": provider},
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if response.status_code == 401:
            return {"authorized": False}

        if not _is_success(response):
            raise OAuthFlowError(
                f"Status check failed for {provider} "
                f"(HTTP {response.status_code}){_error_detail(response)}"
            )

        result: dict[str, Any] = response.json()
        return result

    except httpx.RequestError as e:
        raise OAuthFlowError(f"Network error during status check: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def revoke_provider(
    server_url: str,
    provider: str,
    access_token: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> None:
    """Revoke the server-side authorization for a provider.

    Raises:
        DisconnectError: On HTTP or network failure
    """
    http = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    try:
        response = await http.post(
            _endpoint(server_url, DISCONNECT_PATH),
            json={"provider": provider},
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if not _is_success(response):
            raise DisconnectError(
                f"Failed to disconnect {provider} "
                f"(HTTP {response.status_code}){_error_detail(response)}"
            )

        logger.debug(f"Revoked authorization for {provider}")

    except httpx.RequestError as e:
        raise DisconnectError(f"Network error disconnecting {provider}: {e}") from e
    finally:
        if should_close:
            await http.aclose()
