"""Shared fixtures and utilities for mcp-integrate tests."""

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from mcp_integrate.config import ClientConfig, ConnectionMode, Plugin
from mcp_integrate.oauth import (
    FlowConfig,
    MemoryTokenStore,
    OAuthManager,
    OAuthProviderConfig,
    ProviderTokenRecord,
)
from mcp_integrate.plugins import generic_oauth_plugin, simple_plugin

SERVER_URL = "https://mcp.test"


# ============================================================================
# Fake transport
# ============================================================================


class FakeTransport:
    """In-memory stand-in for HttpSessionTransport.

    Tool calls are answered by `responses` (name -> result dict or exception,
    or a list consumed in order). Every request is recorded in `requests`.
    """

    def __init__(self, tools: list[str] | None = None):
        self.tools = tools or []
        self.responses: dict[str, Any] = {}
        self.requests: list[tuple[str, dict[str, Any] | None, dict[str, str] | None]] = []
        self.notifications: list[str] = []
        self.connect_count = 0
        self.is_connected = False

    async def connect(self) -> None:
        self.connect_count += 1
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.notifications.append(method)

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.requests.append((method, params, headers))

        if method == "initialize":
            return {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "test-server", "version": "1.0.0"},
            }

        if method == "tools/list":
            return {
                "tools": [
                    {"name": name, "description": f"The {name} tool", "inputSchema": {"type": "object"}}
                    for name in self.tools
                ]
            }

        if method == "tools/call":
            assert params is not None
            answer = self.responses.get(params["name"], {"content": [{"type": "text", "text": "ok"}]})
            if isinstance(answer, list):
                answer = answer.pop(0)
            if isinstance(answer, BaseException):
                raise answer
            return answer

        raise AssertionError(f"Unexpected method {method}")

    def tool_calls(self) -> list[tuple[dict[str, Any] | None, dict[str, str] | None]]:
        return [(params, headers) for method, params, headers in self.requests if method == "tools/call"]


def text_result(text: str) -> dict[str, Any]:
    """A tools/call result carrying a single text item."""
    return {"content": [{"type": "text", "text": text}]}


def make_record(token: str = "tok-123", expires_in: int = 3600) -> ProviderTokenRecord:
    """A provider token record expiring expires_in seconds from now."""
    return ProviderTokenRecord(
        access_token=token,
        token_type="Bearer",
        expires_in=expires_in,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scopes=["repo", "user"],
    )


def mock_http(handler: Any) -> httpx.AsyncClient:
    """An httpx client answering every request with handler(request)."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def github_oauth() -> OAuthProviderConfig:
    """OAuth settings for the github provider."""
    return OAuthProviderConfig(
        provider="github",
        client_id="gh-client",
        client_secret="gh-secret",
        scopes=["repo", "user"],
        redirect_uri="http://localhost:3000/oauth/callback",
    )


@pytest.fixture
def plugins() -> list[Plugin]:
    """A github OAuth plugin, a gmail OAuth plugin and a provider-less plugin."""
    return [
        generic_oauth_plugin(
            id="github",
            provider="github",
            client_id="gh-client",
            client_secret="gh-secret",
            scopes=["repo"],
            tools=["github_list_own_repos", "github_get_repo"],
        ),
        generic_oauth_plugin(
            id="gmail",
            provider="gmail",
            client_id="gm-client",
            client_secret="gm-secret",
            scopes=["gmail.send"],
            tools=["gmail_send_message"],
        ),
        simple_plugin(id="math", tools=["math_add"]),
    ]


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Fake transport offering every sample tool plus a server tool."""
    return FakeTransport(
        tools=["github_list_own_repos", "github_get_repo", "gmail_send_message", "math_add", "list_integrations"]
    )


@pytest.fixture
def token_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
def oauth_manager(token_store: MemoryTokenStore) -> OAuthManager:
    """OAuth manager on a memory store (no network access configured)."""
    return OAuthManager(server_url=SERVER_URL, flow=FlowConfig(), token_store=token_store)


@pytest.fixture
def client_config(plugins: list[Plugin]) -> ClientConfig:
    """Lazy-connecting client configuration for the sample plugins."""
    return ClientConfig(
        plugins=plugins,
        server_url=SERVER_URL,
        connection_mode=ConnectionMode.LAZY,
        singleton=False,
    )


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear mcp-integrate related environment variables."""
    old_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("MCPI_") or key.startswith("GITHUB_") or key.startswith("GMAIL_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(old_env)
