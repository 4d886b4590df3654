"""mcp-integrate - Call remote MCP server tools with per-provider OAuth tokens."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-integrate")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Client
    "MCPClient",
    "AuthState",
    "create_client",
    "clear_client_cache",
    "process_oauth_callback_fragment",
    # Configuration
    "ClientConfig",
    "ConnectionMode",
    "Plugin",
    "ReauthContext",
    "load_env",
    # Plugins
    "github_plugin",
    "gmail_plugin",
    "generic_oauth_plugin",
    "simple_plugin",
    # Events
    "AuthEventKind",
    # OAuth
    "OAuthManager",
    "OAuthProviderConfig",
    "FlowConfig",
    "FlowMode",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("MCPClient", "AuthState", "create_client", "clear_client_cache", "process_oauth_callback_fragment"):
        from . import client
        return getattr(client, name)
    elif name in ("ClientConfig", "ConnectionMode", "Plugin", "ReauthContext", "load_env"):
        from . import config
        return getattr(config, name)
    elif name in ("github_plugin", "gmail_plugin", "generic_oauth_plugin", "simple_plugin"):
        from . import plugins
        return getattr(plugins, name)
    elif name == "AuthEventKind":
        from .events import AuthEventKind
        return AuthEventKind
    elif name in ("OAuthManager", "OAuthProviderConfig", "FlowConfig", "FlowMode"):
        from . import oauth
        return getattr(oauth, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
