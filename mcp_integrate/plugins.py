"""Built-in plugin definitions.

A plugin enables a set of server tools and, when those tools act on a
user's account, carries the OAuth settings of the provider behind them.
Client credentials default to the provider's environment variables
(GITHUB_CLIENT_ID, ...) and may contain ${VAR} references.
"""

import logging
import os

from .config import Plugin, PluginHook, resolve_env_vars
from .oauth.flow import OAuthProviderConfig

logger = logging.getLogger(__name__)

GITHUB_TOOLS = [
    "github_create_issue",
    "github_list_issues",
    "github_get_issue",
    "github_update_issue",
    "github_close_issue",
    "github_create_pull_request",
    "github_list_pull_requests",
    "github_get_pull_request",
    "github_merge_pull_request",
    "github_list_repos",
    "github_list_own_repos",
    "github_get_repo",
    "github_create_repo",
    "github_list_branches",
    "github_create_branch",
    "github_get_user",
    "github_list_commits",
    "github_get_commit",
]
GITHUB_DEFAULT_SCOPES = ["repo", "user"]
GITHUB_API_BASE_URL = "https://api.github.com"

GMAIL_TOOLS = [
    "gmail_send_message",
    "gmail_list_messages",
    "gmail_get_message",
    "gmail_search_messages",
]
GMAIL_DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
]


def _credential(value: str | None, env_var: str) -> str | None:
    """Explicit value (with ${VAR} expanded) or the environment variable."""
    if value is None:
        value = os.environ.get(env_var)
    if value is None:
        return None
    return resolve_env_vars(value) or None


def generic_oauth_plugin(
    id: str,
    provider: str,
    tools: list[str],
    client_id: str | None = None,
    client_secret: str | None = None,
    scopes: list[str] | None = None,
    redirect_uri: str | None = None,
    config: dict[str, object] | None = None,
    on_init: PluginHook | None = None,
    on_before_connect: PluginHook | None = None,
    on_after_connect: PluginHook | None = None,
    on_disconnect: PluginHook | None = None,
) -> Plugin:
    """Plugin for any OAuth provider the server supports.

    Example:
        slack = generic_oauth_plugin(
            id="slack",
            provider="slack",
            client_id="${SLACK_CLIENT_ID}",
            client_secret="${SLACK_CLIENT_SECRET}",
            scopes=["chat:write", "channels:read"],
            tools=["slack_send_message", "slack_list_channels"],
        )
    """
    oauth = OAuthProviderConfig(
        provider=provider,
        client_id=resolve_env_vars(client_id) if client_id else None,
        client_secret=resolve_env_vars(client_secret) if client_secret else None,
        scopes=list(scopes or []),
        redirect_uri=redirect_uri,
        extra=dict(config or {}),
    )
    return Plugin(
        id=id,
        tools=list(tools),
        oauth=oauth,
        on_init=on_init,
        on_before_connect=on_before_connect,
        on_after_connect=on_after_connect,
        on_disconnect=on_disconnect,
    )


def simple_plugin(
    id: str,
    tools: list[str],
    on_init: PluginHook | None = None,
    on_after_connect: PluginHook | None = None,
    on_disconnect: PluginHook | None = None,
) -> Plugin:
    """Plugin enabling tools that need no provider authorization."""
    return Plugin(
        id=id,
        tools=list(tools),
        on_init=on_init,
        on_after_connect=on_after_connect,
        on_disconnect=on_disconnect,
    )


def github_plugin(
    client_id: str | None = None,
    client_secret: str | None = None,
    scopes: list[str] | None = None,
    redirect_uri: str | None = None,
    api_base_url: str = GITHUB_API_BASE_URL,
) -> Plugin:
    """GitHub tools, authorized through the "github" provider.

    Args:
        client_id: OAuth client id (default: GITHUB_CLIENT_ID)
        client_secret: OAuth client secret (default: GITHUB_CLIENT_SECRET)
        scopes: OAuth scopes (default: repo, user)
        redirect_uri: OAuth redirect URI (default: the client's)
        api_base_url: GitHub API base URL, for GitHub Enterprise
    """
    plugin = generic_oauth_plugin(
        id="github",
        provider="github",
        tools=GITHUB_TOOLS,
        client_id=_credential(client_id, "GITHUB_CLIENT_ID"),
        client_secret=_credential(client_secret, "GITHUB_CLIENT_SECRET"),
        scopes=scopes or GITHUB_DEFAULT_SCOPES,
        redirect_uri=redirect_uri,
        config={"api_base_url": api_base_url},
    )
    plugin.on_init = _log_hook("GitHub plugin initialized")
    return plugin


def gmail_plugin(
    client_id: str | None = None,
    client_secret: str | None = None,
    scopes: list[str] | None = None,
    redirect_uri: str | None = None,
) -> Plugin:
    """Gmail tools, authorized through the "gmail" provider.

    Args:
        client_id: OAuth client id (default: GMAIL_CLIENT_ID)
        client_secret: OAuth client secret (default: GMAIL_CLIENT_SECRET)
        scopes: OAuth scopes (default: send, readonly, modify, labels)
        redirect_uri: OAuth redirect URI (default: the client's)
    """
    plugin = generic_oauth_plugin(
        id="gmail",
        provider="gmail",
        tools=GMAIL_TOOLS,
        client_id=_credential(client_id, "GMAIL_CLIENT_ID"),
        client_secret=_credential(client_secret, "GMAIL_CLIENT_SECRET"),
        scopes=scopes or GMAIL_DEFAULT_SCOPES,
        redirect_uri=redirect_uri,
    )
    plugin.on_init = _log_hook("Gmail plugin initialized")
    plugin.on_after_connect = _log_hook("Gmail plugin connected")
    return plugin


def _log_hook(message: str) -> PluginHook:
    def hook(client: object) -> None:
        logger.debug(message)

    return hook
