"""MCP client: connection, tool calls and provider authorization.

MCPClient ties the transport to the OAuth manager. Each tool belongs to
the plugin that enables it; when that plugin has an OAuth provider, the
provider's token is attached to the call as a bearer header. A call
rejected as unauthenticated marks the provider unauthenticated and, when
a re-authentication hook is configured, is retried after the hook
reports success.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import parse_qs, urlparse

from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, InitializeResult, ListToolsResult, Tool
from pydantic import ValidationError

from .config import ClientConfig, ConnectionMode, Plugin, PluginHook, ReauthContext
from .errors import (
    AuthenticationError,
    ConfigurationError,
    IntegrateSDKError,
    NotInitializedError,
    ToolCallError,
    ToolNotEnabledError,
    ToolNotFoundError,
    parse_server_error,
)
from .events import (
    AuthComplete,
    AuthDisconnect,
    AuthError,
    AuthEventKind,
    AuthLogout,
    AuthStarted,
    EventEmitter,
    Listener,
)
from .naming import build_capability_map, method_to_tool_name
from .oauth.flow import OAuthProviderConfig
from .oauth.manager import AuthStatus, CallbackResult, OAuthManager
from .oauth.store import TokenStoreError, normalize_provider
from .oauth.tokens import ProviderTokenRecord
from .transport import HttpSessionTransport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"


@dataclass
class AuthState:
    """Authentication state of one provider, as seen by the client."""

    authenticated: bool = False
    last_error: AuthenticationError | None = None


class MCPClient:
    """Client for the tools of a remote MCP server.

    Usage:
        client = MCPClient(ClientConfig(plugins=[github_plugin()]))

        await client.authorize("github")
        result = await client.call_tool("github_list_own_repos", {})
        # or by capability name
        result = await client.call("github.list_own_repos", {})

        await client.aclose()
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: HttpSessionTransport | None = None,
        oauth_manager: OAuthManager | None = None,
    ):
        """Initialize the client.

        Args:
            config: Client configuration
            transport: Transport to use (HTTP session transport by default)
            oauth_manager: OAuth manager to use (built from config by default)
        """
        self.config = config

        redirect_uri = config.default_redirect_uri()
        self.plugins: list[Plugin] = [
            replace(plugin, oauth=plugin.oauth.with_redirect_uri(redirect_uri))
            if plugin.oauth is not None and not plugin.oauth.redirect_uri
            else plugin
            for plugin in config.plugins
        ]

        self._transport = transport or HttpSessionTransport(
            config.mcp_url,
            headers=config.headers,
            timeout=config.timeout,
        )
        self._oauth = oauth_manager or OAuthManager(
            server_url=config.server_url,
            flow=config.flow,
            token_store=config.token_store,
            timeout=config.timeout,
            verify_remote_status=config.verify_remote_status,
        )
        self._events = EventEmitter()

        self._enabled_tools: set[str] = set()
        self._tool_providers: dict[str, str] = {}
        for plugin in self.plugins:
            self._enabled_tools.update(plugin.tools)
            if plugin.oauth is not None:
                for tool in plugin.tools:
                    self._tool_providers.setdefault(tool, plugin.oauth.provider)
        self._capabilities = build_capability_map(self.plugins)

        self._available_tools: dict[str, Tool] = {}
        self._server_info: InitializeResult | None = None
        self._initialized = False
        self._plugins_initialized = False
        self._connecting: asyncio.Task[None] | None = None

        self._auth_state: dict[str, AuthState] = {}
        for provider in self._providers():
            self._auth_state[provider] = AuthState(authenticated=self._has_token(provider))

    @property
    def oauth_manager(self) -> OAuthManager:
        return self._oauth

    @property
    def transport(self) -> HttpSessionTransport:
        return self._transport

    @property
    def server_info(self) -> InitializeResult | None:
        """The server's answer to the initialize handshake."""
        return self._server_info

    def _providers(self) -> list[str]:
        return [plugin.oauth.provider for plugin in self.plugins if plugin.oauth is not None]

    def _oauth_config_for(self, provider: str) -> OAuthProviderConfig | None:
        for plugin in self.plugins:
            if plugin.oauth is not None and plugin.oauth.provider == normalize_provider(provider):
                return plugin.oauth
        return None

    def _has_token(self, provider: str) -> bool:
        try:
            return self._oauth.get_provider_token(provider) is not None
        except TokenStoreError as e:
            logger.warning(f"Could not read stored token for {provider}: {e}")
            return False

    def _set_auth_state(
        self,
        provider: str,
        authenticated: bool,
        last_error: AuthenticationError | None = None,
    ) -> None:
        self._auth_state[normalize_provider(provider)] = AuthState(authenticated=authenticated, last_error=last_error)

    # Connection

    async def _run_hooks(self, attr: str) -> None:
        for plugin in self.plugins:
            hook: PluginHook | None = getattr(plugin, attr)
            if hook is None:
                continue
            result = hook(self)
            if asyncio.iscoroutine(result):
                await result

    async def connect(self) -> None:
        """Connect, run the initialize handshake and discover tools.

        Concurrent callers share a single connection attempt. Does nothing
        when already connected.

        Raises:
            MCPConnectionError: If the server cannot be reached
            IntegrateSDKError: If the handshake is rejected
        """
        if self._initialized and self._transport.is_connected:
            return

        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._connect())

        task = self._connecting
        try:
            await asyncio.shield(task)
        finally:
            if self._connecting is task and task.done():
                self._connecting = None

    async def _connect(self) -> None:
        if not self._plugins_initialized:
            self._plugins_initialized = True
            await self._run_hooks("on_init")

        await self._run_hooks("on_before_connect")
        await self._transport.connect()

        try:
            await self._initialize()
            await self._discover_tools()
        except (McpError, ValidationError) as e:
            raise parse_server_error(e) from e

        await self._run_hooks("on_after_connect")

    async def _initialize(self) -> None:
        result = await self._transport.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": {
                    "name": self.config.client_name,
                    "version": self.config.client_version,
                },
            },
        )
        self._server_info = InitializeResult.model_validate(result)
        await self._transport.send_notification("notifications/initialized")
        self._initialized = True

        info = self._server_info.serverInfo
        logger.debug(f"Initialized session with {info.name} {info.version}")

    async def _discover_tools(self) -> None:
        result = ListToolsResult.model_validate(await self._transport.send_request("tools/list"))
        self._available_tools = {tool.name: tool for tool in result.tools}

        enabled = sum(1 for name in self._available_tools if name in self._enabled_tools)
        logger.debug(f"Discovered {len(self._available_tools)} tools, {enabled} enabled by plugins")

    async def _ensure_connected(self) -> None:
        if self.config.connection_mode == ConnectionMode.MANUAL:
            return
        await self.connect()

    async def disconnect(self) -> None:
        """Run the plugins' disconnect hooks and close the transport."""
        await self._run_hooks("on_disconnect")
        await self._transport.disconnect()
        self._initialized = False

    async def aclose(self) -> None:
        """Disconnect and close any open authorization window."""
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        if self.is_connected():
            await self.disconnect()
        await self._oauth.aclose()

    def is_connected(self) -> bool:
        return self._transport.is_connected

    def is_initialized(self) -> bool:
        return self._initialized

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    # Tool calls

    def resolve_provider(self, tool_name: str) -> str | None:
        """The OAuth provider owning a tool, if any."""
        return self._tool_providers.get(tool_name)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        """Call an enabled tool, re-authorizing its provider if needed.

        Args:
            name: Tool name (e.g. "github_list_own_repos")
            arguments: Tool arguments

        Returns:
            The tool result

        Raises:
            NotInitializedError: If not connected (manual connection mode)
            ToolNotEnabledError: If no plugin enables the tool
            ToolNotFoundError: If the server does not offer the tool
            AuthenticationError: If the provider token was rejected and
                re-authorization did not happen or did not help
            AuthorizationError: If the token lacks permissions
            ToolCallError: If the tool call failed otherwise
        """
        await self._ensure_connected()
        return await self._call_tool_with_retry(name, arguments, 0)

    async def _call_tool_with_retry(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        retry_count: int,
    ) -> CallToolResult:
        if not self._initialized:
            raise NotInitializedError("Client not initialized. Call connect() first.")

        if name not in self._enabled_tools:
            raise ToolNotEnabledError(name)

        if name not in self._available_tools:
            raise ToolNotFoundError(name, list(self._available_tools))

        provider = self.resolve_provider(name)
        headers: dict[str, str] | None = None
        if provider:
            record = self._oauth.get_provider_token(provider)
            if record is not None:
                headers = {"Authorization": record.get_auth_header()}

        try:
            raw = await self._transport.send_request(
                "tools/call",
                {"name": name, "arguments": arguments or {}},
                headers=headers,
            )
        except Exception as e:
            error = parse_server_error(e, tool_name=name, provider=provider)

            if isinstance(error, AuthenticationError) and provider:
                self._set_auth_state(provider, False, error)
                self._events.emit(AuthError(provider=provider, error=error))

                handler = self.config.on_reauth_required
                if handler is not None and retry_count < self.config.max_reauth_retries:
                    if await handler(ReauthContext(provider=provider, error=error, tool_name=name)):
                        logger.info(f"Re-authorized {provider}, retrying {name}")
                        return await self._call_tool_with_retry(name, arguments, retry_count + 1)

            if error is e:
                raise
            raise error from e

        if provider:
            self._set_auth_state(provider, True)

        return self._tool_result(name, raw)

    def _tool_result(self, name: str, raw: dict[str, Any]) -> CallToolResult:
        try:
            return CallToolResult.model_validate(raw)
        except ValidationError as e:
            raise ToolCallError(f"Invalid result from tool {name}", name, e) from e

    async def call_server_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        """Call a server-level tool that no plugin enables.

        No provider token is attached and no re-authorization is attempted.

        Raises:
            NotInitializedError: If not connected (manual connection mode)
            ToolNotFoundError: If the server does not offer the tool
            IntegrateSDKError: The classified server error
        """
        await self._ensure_connected()

        if not self._initialized:
            raise NotInitializedError("Client not initialized. Call connect() first.")

        if name not in self._available_tools:
            raise ToolNotFoundError(name, list(self._available_tools))

        try:
            raw = await self._transport.send_request("tools/call", {"name": name, "arguments": arguments or {}})
        except Exception as e:
            error = parse_server_error(e, tool_name=name)
            if error is e:
                raise
            raise error from e

        return self._tool_result(name, raw)

    async def call(self, capability: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        """Call a tool by capability name ("github.list_own_repos" or "github.listOwnRepos")."""
        tool_name = self._capabilities.get(capability)
        if tool_name is None:
            plugin_id, _, method = capability.partition(".")
            tool_name = method_to_tool_name(method, plugin_id) if method else capability
        return await self.call_tool(tool_name, arguments)

    def get_tool(self, name: str) -> Tool | None:
        return self._available_tools.get(name)

    def get_available_tools(self) -> list[Tool]:
        """All tools the server offers."""
        return list(self._available_tools.values())

    def get_enabled_tools(self) -> list[Tool]:
        """Tools the server offers that a plugin enables."""
        return [tool for name, tool in self._available_tools.items() if name in self._enabled_tools]

    def get_enabled_tool_names(self) -> list[str]:
        return sorted(self._enabled_tools)

    def get_oauth_config(self, plugin_id: str) -> OAuthProviderConfig | None:
        for plugin in self.plugins:
            if plugin.id == plugin_id:
                return plugin.oauth
        return None

    def get_all_oauth_configs(self) -> dict[str, OAuthProviderConfig]:
        """OAuth settings keyed by plugin id."""
        return {plugin.id: plugin.oauth for plugin in self.plugins if plugin.oauth is not None}

    # Events

    def on(self, kind: AuthEventKind | str, listener: Listener) -> None:
        """Listen for an auth event ("auth:started", "auth:complete", ...)."""
        self._events.on(kind, listener)

    def off(self, kind: AuthEventKind | str, listener: Listener) -> None:
        self._events.off(kind, listener)

    # Authorization

    async def authorize(self, provider: str, return_url: str | None = None) -> CallbackResult | str:
        """Run the authorization flow for a provider.

        Args:
            provider: Provider id (e.g. "github")
            return_url: Location to return to after authorization

        Returns:
            The flow result once completed in-process, or the authorization
            URL in redirect mode (finish with handle_oauth_callback())

        Raises:
            ConfigurationError: If no plugin configures the provider
            OAuthFlowError: If the flow fails
        """
        oauth_config = self._oauth_config_for(provider)
        if oauth_config is None:
            error = ConfigurationError(f"No OAuth configuration found for provider: {provider}")
            self._events.emit(AuthError(provider=provider, error=error))
            raise error

        self._events.emit(AuthStarted(provider=provider))

        try:
            outcome = await self._oauth.initiate_flow(provider, oauth_config, return_url)
        except Exception as e:
            self._events.emit(AuthError(provider=provider, error=e))
            raise

        if isinstance(outcome, str):
            return outcome

        record = self._oauth.get_provider_token(provider)
        if record is not None:
            self._set_auth_state(provider, True)
            self._events.emit(
                AuthComplete(provider=provider, access_token=record.access_token, expires_at=record.expires_at)
            )
        return outcome

    async def handle_oauth_callback(
        self,
        code: str,
        state: str,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackResult:
        """Complete a redirect-mode flow from the callback's code and state.

        Raises:
            InvalidStateError: If the state matches no pending authorization
            UserDeniedError: If the provider reported a denial
            TokenExchangeError: If the code exchange fails
        """
        try:
            result = await self._oauth.handle_callback(code, state, error, error_description)
        except Exception as e:
            self._events.emit(AuthError(provider="unknown", error=e))
            raise

        self._set_auth_state(result.provider, True)
        self._events.emit(
            AuthComplete(provider=result.provider, access_token=result.access_token, expires_at=result.expires_at)
        )
        return result

    async def disconnect_provider(self, provider: str) -> None:
        """Revoke one provider's authorization, leaving the others connected.

        Raises:
            ConfigurationError: If no plugin configures the provider
            AuthenticationError: If the provider has no token
            DisconnectError: If the server refuses
        """
        if self._oauth_config_for(provider) is None:
            raise ConfigurationError(f"No OAuth configuration found for provider: {provider}")

        try:
            await self._oauth.disconnect_provider(provider)
        except Exception as e:
            self._events.emit(AuthError(provider=provider, error=e))
            raise

        self._set_auth_state(provider, False)
        self._events.emit(AuthDisconnect(provider=provider))

    async def logout(self) -> None:
        """Forget every provider token and pending authorization."""
        try:
            self._oauth.clear_all_provider_tokens()
        except (TokenStoreError, OSError) as e:
            logger.warning(f"Could not clear stored tokens: {e}")

        self._oauth.clear_all_pending_auths()

        self._auth_state.clear()
        for provider in self._providers():
            self._set_auth_state(provider, False)

        self._events.emit(AuthLogout())
        logger.info("Logged out of all providers")

    async def reauthenticate(self, provider: str) -> bool:
        """Ask the re-authentication hook to re-authorize a provider.

        Returns:
            The hook's answer

        Raises:
            ConfigurationError: If the provider is unknown or no hook is configured
        """
        state = self._auth_state.get(normalize_provider(provider))
        if state is None:
            raise ConfigurationError(f'Provider "{provider}" not found in configured plugins')

        handler = self.config.on_reauth_required
        if handler is None:
            raise ConfigurationError(
                "No re-authentication handler configured. Set on_reauth_required in the client config."
            )

        error = state.last_error or AuthenticationError("Manual re-authentication requested", provider=provider)
        success = await handler(ReauthContext(provider=provider, error=error))

        if success:
            self._set_auth_state(provider, True)
        return bool(success)

    # Queries

    def get_auth_state(self, provider: str) -> AuthState | None:
        state = self._auth_state.get(normalize_provider(provider))
        return replace(state) if state is not None else None

    def is_provider_authenticated(self, provider: str) -> bool:
        state = self._auth_state.get(normalize_provider(provider))
        return state.authenticated if state is not None else False

    async def is_authorized(self, provider: str) -> bool:
        status = await self._oauth.check_auth_status(provider)
        return status.authorized

    async def authorized_providers(self) -> list[str]:
        """Configured providers that currently have a usable token."""
        authorized = []
        for provider in self._providers():
            if (await self._oauth.check_auth_status(provider)).authorized:
                authorized.append(provider)
        return authorized

    async def get_authorization_status(self, provider: str) -> AuthStatus:
        return await self._oauth.check_auth_status(provider)

    def get_provider_token(self, provider: str) -> ProviderTokenRecord | None:
        return self._oauth.get_provider_token(provider)

    def set_provider_token(self, provider: str, record: ProviderTokenRecord | dict[str, Any]) -> None:
        """Store an existing provider token and mark the provider authenticated."""
        self._oauth.set_provider_token(provider, record)
        self._set_auth_state(provider, True)

    def get_all_provider_tokens(self) -> dict[str, str]:
        """Access token of every stored provider."""
        return {provider: record.access_token for provider, record in self._oauth.get_all_provider_tokens().items()}


# Client cache

_client_cache: dict[str, MCPClient] = {}
_cache_lock = threading.Lock()
_background_tasks: set[asyncio.Task[None]] = set()


def _cache_key(config: ClientConfig) -> str:
    return json.dumps(
        [
            config.client_name,
            config.client_version,
            [{"id": plugin.id, "tools": plugin.tools} for plugin in config.plugins],
            config.headers,
            config.timeout,
        ],
        sort_keys=True,
    )


def _schedule_connect(client: MCPClient) -> None:
    """Start connecting in the background (eager connection mode)."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop, connecting on first use instead")
        return

    task = loop.create_task(client.connect())
    _background_tasks.add(task)

    def done(t: asyncio.Task[None]) -> None:
        _background_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.warning(f"Failed to connect client: {t.exception()}")

    task.add_done_callback(done)


def create_client(config: ClientConfig) -> MCPClient:
    """Create a client, reusing a connected one with the same configuration.

    With config.singleton False a new client is always created. In eager
    connection mode the client starts connecting on the running loop.
    """
    if config.singleton:
        key = _cache_key(config)
        with _cache_lock:
            existing = _client_cache.get(key)
            if existing is not None and existing.is_connected():
                return existing

            client = MCPClient(config)
            _client_cache[key] = client
    else:
        client = MCPClient(config)

    if config.connection_mode == ConnectionMode.EAGER:
        _schedule_connect(client)

    return client


async def clear_client_cache() -> None:
    """Disconnect and forget every cached client."""
    with _cache_lock:
        clients = list(_client_cache.values())
        _client_cache.clear()

    for client in clients:
        if not client.is_connected():
            continue
        try:
            await client.disconnect()
        except (IntegrateSDKError, OSError) as e:
            logger.warning(f"Error disconnecting client: {e}")


async def process_oauth_callback_fragment(client: MCPClient, url: str) -> CallbackResult | None:
    """Complete an authorization delivered in a URL fragment.

    The host application's callback route may forward the result as
    "#oauth_callback=<urlencoded JSON {code, state}>".

    Returns:
        The callback result, or None when the URL carries no callback
    """
    fragment = urlparse(url).fragment
    values = parse_qs(fragment).get("oauth_callback")
    if not values:
        return None

    try:
        params = json.loads(values[0])
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed oauth_callback fragment")
        return None

    if not isinstance(params, dict) or not params.get("code") or not params.get("state"):
        return None

    return await client.handle_oauth_callback(str(params["code"]), str(params["state"]))
