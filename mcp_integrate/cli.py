"""CLI entry point for mcp-integrate."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from . import __version__
from .client import MCPClient
from .config import ClientConfig, ConnectionMode, load_env
from .errors import (
    AuthenticationError,
    ConfigurationError,
    IntegrateSDKError,
    MCPConnectionError,
    ToolNotEnabledError,
    UserCancelledError,
    UserDeniedError,
)
from .oauth import EncryptedFileTokenStore, FlowConfig, FlowMode, TokenStoreError
from .output import OutputHandler, extract_content, tool_to_dict
from .plugins import github_plugin, gmail_plugin

# Logger for CLI
logger = logging.getLogger("mcpi")

T = TypeVar("T")


def build_client() -> MCPClient:
    """Client for CLI use: built-in plugins, tokens kept on disk, popup flows."""
    config = ClientConfig.from_env(
        plugins=[github_plugin(), gmail_plugin()],
        flow=FlowConfig(mode=FlowMode.POPUP),
        token_store=EncryptedFileTokenStore(),
        connection_mode=ConnectionMode.LAZY,
        singleton=False,
    )
    return MCPClient(config)


def run_with_client(work: Callable[[MCPClient], Awaitable[T]]) -> T:
    """Build a client, run work with it and close it."""

    async def runner() -> T:
        client = build_client()
        try:
            return await work(client)
        finally:
            await client.aclose()

    return asyncio.run(runner())


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """mcp-integrate - Call MCP server tools with per-provider OAuth."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["output"] = OutputHandler(json_mode)
    ctx.obj["env_path"] = load_env(Path(env_path) if env_path else None)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def _help_for(error: Exception) -> str | None:
    """Suggest a next step for common failures."""
    if isinstance(error, AuthenticationError):
        provider = error.provider or "<provider>"
        return f"Run 'mcpi auth login {provider}' to authorize."
    if isinstance(error, ToolNotEnabledError):
        return "Run 'mcpi tools' to see the enabled tools."
    if isinstance(error, MCPConnectionError):
        return "Check MCPI_SERVER_URL and your network connection."
    if isinstance(error, TokenStoreError):
        return "Run 'mcpi auth logout' to clear stored tokens and re-authorize."
    return None


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include server tools no plugin enables")
@click.pass_context
def tools(ctx: click.Context, show_all: bool) -> None:
    """List the tools available on the server."""
    output: OutputHandler = ctx.obj["output"]

    async def work(client: MCPClient) -> list[dict[str, Any]]:
        await client.connect()
        found = client.get_available_tools() if show_all else client.get_enabled_tools()
        return [
            {**tool_to_dict(tool), "provider": client.resolve_provider(tool.name)}
            for tool in sorted(found, key=lambda t: t.name)
        ]

    try:
        listed = run_with_client(work)
    except (IntegrateSDKError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))
        return

    if ctx.obj["json_mode"]:
        output.success({"tools": listed})
        return

    if not listed:
        output.success({"tools": []}, human_message="No tools found.")
        return

    rows = [
        [tool["name"], tool["provider"] or "-", (tool["description"] or "").split("\n")[0][:60]]
        for tool in listed
    ]
    output.table(["Tool", "Provider", "Description"], rows)


@main.command()
@click.argument("tool")
@click.argument("arguments", required=False)
@click.option("--stdin", is_flag=True, help="Read arguments from stdin")
@click.option("--server-tool", is_flag=True, help="Call a server-level tool no plugin enables")
@click.pass_context
def call(ctx: click.Context, tool: str, arguments: str | None, stdin: bool, server_tool: bool) -> None:
    """Execute a tool.

    ARGUMENTS should be a JSON object with the tool parameters.
    Use --stdin to read arguments from stdin for large payloads.
    """
    output: OutputHandler = ctx.obj["output"]

    if stdin:
        arguments = sys.stdin.read()

    if not arguments:
        args_dict: dict[str, Any] = {}
    else:
        try:
            args_dict = json.loads(arguments)
        except json.JSONDecodeError as e:
            output.error(
                e,
                error_type="ArgumentParseError",
                help_text=(
                    "Arguments must be valid JSON.\n\n"
                    "Example: mcpi call github_list_issues '{\"owner\": \"acme\", \"repo\": \"api\"}'"
                ),
            )
            return

    async def work(client: MCPClient) -> Any:
        if server_tool:
            result = await client.call_server_tool(tool, args_dict)
        else:
            result = await client.call_tool(tool, args_dict)
        return extract_content(result), result.isError

    try:
        logger.debug(f"Calling {tool}")
        result_data, is_error = run_with_client(work)
    except (IntegrateSDKError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))
        return

    output.success({"result": result_data, "isError": bool(is_error)})


@main.group()
@click.pass_context
def auth(ctx: click.Context) -> None:
    """Manage provider authorizations."""
    pass


@auth.command("login")
@click.argument("provider")
@click.option("--return-url", help="Location to return to after authorization")
@click.pass_context
def auth_login(ctx: click.Context, provider: str, return_url: str | None) -> None:
    """Authorize a provider in the browser."""
    output: OutputHandler = ctx.obj["output"]

    if not ctx.obj["json_mode"]:
        click.echo(f"Opening the browser to authorize {provider}...", err=True)

    async def work(client: MCPClient) -> Any:
        return await client.authorize(provider, return_url=return_url)

    try:
        outcome = run_with_client(work)
    except ConfigurationError as e:
        output.error(
            e,
            help_text=(
                f"Set {provider.upper()}_CLIENT_ID and {provider.upper()}_CLIENT_SECRET "
                f"in the environment or a .env file."
            ),
        )
        return
    except UserCancelledError as e:
        output.error(e, help_text="The browser window was closed before authorization completed.")
        return
    except UserDeniedError as e:
        output.error(e, help_text="Access was denied in the browser.")
        return
    except (IntegrateSDKError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))
        return

    if isinstance(outcome, str):
        output.success(
            {"provider": provider, "authorizationUrl": outcome},
            human_message=f"Open this URL to authorize {provider}:\n{outcome}",
        )
        return

    expires = outcome.expires_at.isoformat() if outcome.expires_at else None
    output.success(
        {"provider": outcome.provider, "authorized": True, "expiresAt": expires},
        human_message=click.style(f"Authorized {outcome.provider}", fg="green"),
    )


@auth.command("status")
@click.argument("provider", required=False)
@click.pass_context
def auth_status(ctx: click.Context, provider: str | None) -> None:
    """Show authorization status of one or all providers."""
    output: OutputHandler = ctx.obj["output"]

    async def work(client: MCPClient) -> list[dict[str, Any]]:
        providers = [provider] if provider else [config.provider for config in client.get_all_oauth_configs().values()]
        return [(await client.get_authorization_status(name)).to_dict() for name in providers]

    try:
        statuses = run_with_client(work)
    except (IntegrateSDKError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))
        return

    if ctx.obj["json_mode"]:
        output.success({"providers": statuses})
        return

    rows = [
        [
            status["provider"],
            "yes" if status["authorized"] else "no",
            ", ".join(status["scopes"] or []) or "-",
            status["expiresAt"] or "-",
        ]
        for status in statuses
    ]
    output.table(["Provider", "Authorized", "Scopes", "Expires"], rows)


@auth.command("logout")
@click.pass_context
def auth_logout(ctx: click.Context) -> None:
    """Forget every stored provider token."""
    output: OutputHandler = ctx.obj["output"]

    async def work(client: MCPClient) -> None:
        await client.logout()

    try:
        run_with_client(work)
    except TokenStoreError as e:
        output.error(e, help_text=_help_for(e))
        return

    output.success({"loggedOut": True}, human_message="Logged out of all providers.")


@auth.command("disconnect")
@click.argument("provider")
@click.pass_context
def auth_disconnect(ctx: click.Context, provider: str) -> None:
    """Revoke a provider's authorization on the server."""
    output: OutputHandler = ctx.obj["output"]

    async def work(client: MCPClient) -> None:
        await client.disconnect_provider(provider)

    try:
        run_with_client(work)
    except (IntegrateSDKError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))
        return

    output.success({"provider": provider, "disconnected": True}, human_message=f"Disconnected {provider}.")


if __name__ == "__main__":
    main()
