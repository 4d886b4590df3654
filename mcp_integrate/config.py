"""Client configuration and environment loading for mcp-integrate."""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from dotenv import load_dotenv

from .errors import AuthenticationError
from .oauth.flow import DEFAULT_REDIRECT_URI, DEFAULT_SERVER_URL, DEFAULT_TIMEOUT, FlowConfig, OAuthProviderConfig
from .oauth.store import ProviderTokenStore

if TYPE_CHECKING:
    from .client import MCPClient

DEFAULT_MCP_PATH = "/api/v1/mcp"
DEFAULT_OAUTH_API_BASE = "/api/integrate/oauth"
DEFAULT_CLIENT_NAME = "integrate-sdk"
DEFAULT_CLIENT_VERSION = "0.1.0"
DEFAULT_MAX_REAUTH_RETRIES = 1

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "mcp-integrate" / ".env",
]


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Handles:
    - Full replacement: "${VAR}" -> "value"
    - Partial replacement: "prefix_${VAR}_suffix" -> "prefix_value_suffix"
    - Missing vars resolve to empty string
    """
    if "${" not in value:
        return value

    return re.sub(r"\$\{([^}]+)\}", lambda m: os.environ.get(m.group(1), ""), value)


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_env(env_path: Path | None = None) -> Path | None:
    """Load the first .env file found into the environment.

    Variables already set in the environment are not overridden.

    Returns:
        The file that was loaded, or None
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)
    return env_file


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


class ConnectionMode(str, Enum):
    """When the client connects to the server."""

    LAZY = "lazy"  # on first tool call
    EAGER = "eager"  # as soon as the client is created
    MANUAL = "manual"  # only when connect() is called


@dataclass
class ReauthContext:
    """Passed to the re-authentication hook when a provider token is rejected."""

    provider: str
    error: AuthenticationError
    tool_name: str | None = None


# Returns True when the provider was re-authorized and the call should be retried
ReauthHandler = Callable[[ReauthContext], Awaitable[bool]]

# Plugin lifecycle hook, sync or async
PluginHook = Callable[["MCPClient"], Awaitable[None] | None]


@dataclass
class Plugin:
    """A group of server tools, optionally tied to an OAuth provider.

    Attributes:
        id: Plugin id, also the prefix of its tool names ("github")
        tools: Server tool names this plugin enables
        oauth: OAuth settings when the tools need a provider token
        on_init: Called once before the first connection
        on_before_connect: Called before every connection
        on_after_connect: Called after every successful connection
        on_disconnect: Called when the client disconnects
    """

    id: str
    tools: list[str] = field(default_factory=list)
    oauth: OAuthProviderConfig | None = None
    on_init: PluginHook | None = None
    on_before_connect: PluginHook | None = None
    on_after_connect: PluginHook | None = None
    on_disconnect: PluginHook | None = None


@dataclass
class ClientConfig:
    """Complete client configuration.

    Attributes:
        plugins: Enabled plugins
        server_url: Base URL of the MCP server
        mcp_path: Path of the JSON-RPC endpoint on the server
        headers: Extra HTTP headers sent with every request
        timeout: HTTP timeout in seconds
        client_name: Name reported in the initialize handshake
        client_version: Version reported in the initialize handshake
        connection_mode: When to connect (lazy, eager or manual)
        singleton: Let create_client() reuse a cached client
        max_reauth_retries: Retries of a tool call after re-authorization
        on_reauth_required: Hook asked to re-authorize a rejected provider
        flow: How authorization flows reach the user
        oauth_api_base: Path of the host application's OAuth routes
        app_origin: Origin of the host application (used for redirect URIs)
        redirect_uri: Explicit redirect URI for every provider
        token_store: Where provider tokens are kept (in memory by default)
        verify_remote_status: Ask the server in authorization status checks
    """

    plugins: list[Plugin] = field(default_factory=list)
    server_url: str = DEFAULT_SERVER_URL
    mcp_path: str = DEFAULT_MCP_PATH
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT
    client_name: str = DEFAULT_CLIENT_NAME
    client_version: str = DEFAULT_CLIENT_VERSION
    connection_mode: ConnectionMode = ConnectionMode.LAZY
    singleton: bool = True
    max_reauth_retries: int = DEFAULT_MAX_REAUTH_RETRIES
    on_reauth_required: ReauthHandler | None = None
    flow: FlowConfig = field(default_factory=FlowConfig)
    oauth_api_base: str = DEFAULT_OAUTH_API_BASE
    app_origin: str | None = None
    redirect_uri: str | None = None
    token_store: ProviderTokenStore | None = None
    verify_remote_status: bool = False

    @property
    def mcp_url(self) -> str:
        """Full URL of the JSON-RPC endpoint."""
        return f"{self.server_url.rstrip('/')}/{self.mcp_path.lstrip('/')}"

    def default_redirect_uri(self) -> str:
        """Redirect URI injected into OAuth configs that have none."""
        if self.redirect_uri:
            return self.redirect_uri
        if self.app_origin:
            return f"{self.app_origin.rstrip('/')}/{self.oauth_api_base.strip('/')}/callback"
        return DEFAULT_REDIRECT_URI

    @classmethod
    def from_env(cls, plugins: list[Plugin] | None = None, **overrides: Any) -> "ClientConfig":
        """Build a configuration from MCPI_* environment variables.

        Keyword arguments override the environment.

        Raises:
            ValueError: If MCPI_TIMEOUT is not a number
        """
        values: dict[str, Any] = {
            "server_url": os.environ.get("MCPI_SERVER_URL") or DEFAULT_SERVER_URL,
            "mcp_path": os.environ.get("MCPI_MCP_PATH") or DEFAULT_MCP_PATH,
            "timeout": _env_float("MCPI_TIMEOUT", DEFAULT_TIMEOUT),
            "oauth_api_base": os.environ.get("MCPI_OAUTH_API_BASE") or DEFAULT_OAUTH_API_BASE,
            "app_origin": os.environ.get("MCPI_APP_ORIGIN") or None,
        }
        values.update(overrides)
        return cls(plugins=list(plugins or []), **values)
