"""Tests for the server-brokered OAuth endpoints."""

import json

import httpx
import pytest

from mcp_integrate.errors import AuthorizationUrlError, DisconnectError, OAuthFlowError, TokenExchangeError
from mcp_integrate.oauth.flow import (
    OAuthProviderConfig,
    exchange_code,
    fetch_auth_status,
    request_authorization_url,
    revoke_provider,
)

from .conftest import SERVER_URL, mock_http


class TestOAuthProviderConfig:
    """Tests for provider configuration."""

    def test_has_credentials(self):
        assert OAuthProviderConfig("github", client_id="id", client_secret="secret").has_credentials()
        assert not OAuthProviderConfig("github", client_id="id").has_credentials()
        assert not OAuthProviderConfig("github", client_id="", client_secret="secret").has_credentials()

    def test_with_redirect_uri_copies(self):
        """Test that filling in the redirect URI leaves the original alone."""
        original = OAuthProviderConfig("github", scopes=["repo"])
        updated = original.with_redirect_uri("http://localhost/cb")

        updated.scopes.append("user")
        assert original.redirect_uri is None
        assert original.scopes == ["repo"]
        assert updated.redirect_uri == "http://localhost/cb"

    def test_provider_id_is_normalized(self):
        assert OAuthProviderConfig(" GitHub ").provider == "github"


class TestRequestAuthorizationUrl:
    """Tests for the authorize endpoint."""

    @pytest.mark.asyncio
    async def test_sends_pkce_and_scopes(self):
        """Test the query parameters and the returned URL."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"url": "https://github.com/login/oauth/authorize?x=1"})

        async with mock_http(handler) as http:
            url = await request_authorization_url(
                SERVER_URL,
                "github",
                client_id="cid",
                client_secret="csecret",
                scopes=["repo", "user"],
                state="st",
                code_challenge="ch",
                redirect_uri="http://localhost:3000/oauth/callback",
                http_client=http,
            )

        assert url == "https://github.com/login/oauth/authorize?x=1"
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/oauth/authorize"
        params = request.url.params
        assert params["provider"] == "github"
        assert params["scope"] == "repo,user"
        assert params["state"] == "st"
        assert params["code_challenge"] == "ch"
        assert params["code_challenge_method"] == "S256"
        assert params["redirect_uri"] == "http://localhost:3000/oauth/callback"

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Test that a non-2xx answer raises with safe error details."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_client", "secret": "leak"})

        async with mock_http(handler) as http:
            with pytest.raises(AuthorizationUrlError, match="HTTP 400") as exc_info:
                await request_authorization_url(
                    SERVER_URL, "github", "cid", "csecret", [], "st", "ch", http_client=http
                )

        assert "invalid_client" in str(exc_info.value)
        assert "leak" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        async with mock_http(handler) as http:
            with pytest.raises(AuthorizationUrlError, match="missing url"):
                await request_authorization_url(
                    SERVER_URL, "github", "cid", "csecret", [], "st", "ch", http_client=http
                )

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Test that transport failures become AuthorizationUrlError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_http(handler) as http:
            with pytest.raises(AuthorizationUrlError, match="Network error"):
                await request_authorization_url(
                    SERVER_URL, "github", "cid", "csecret", [], "st", "ch", http_client=http
                )


class TestExchangeCode:
    """Tests for the code exchange endpoint."""

    @pytest.mark.asyncio
    async def test_posts_code_and_verifier(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"accessToken": "tok", "expiresIn": 3600})

        async with mock_http(handler) as http:
            result = await exchange_code(SERVER_URL, "github", "code-1", "verifier-1", "st", http_client=http)

        assert result == {"accessToken": "tok", "expiresIn": 3600}
        assert seen == [{"provider": "github", "code": "code-1", "code_verifier": "verifier-1", "state": "st"}]

    @pytest.mark.asyncio
    async def test_failure(self):
        """Test that a rejected exchange raises TokenExchangeError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with mock_http(handler) as http:
            with pytest.raises(TokenExchangeError, match="invalid_grant"):
                await exchange_code(SERVER_URL, "github", "code", "verifier", "st", http_client=http)


class TestStatusAndRevoke:
    """Tests for the status and disconnect endpoints."""

    @pytest.mark.asyncio
    async def test_status_sends_bearer(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"authorized": True, "scopes": ["repo"]})

        async with mock_http(handler) as http:
            status = await fetch_auth_status(SERVER_URL, "github", "tok", http_client=http)

        assert status["authorized"] is True
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert seen[0].url.params["provider"] == "github"

    @pytest.mark.asyncio
    async def test_status_unauthorized(self):
        """Test that a 401 means not authorized rather than an error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        async with mock_http(handler) as http:
            assert await fetch_auth_status(SERVER_URL, "github", "tok", http_client=http) == {"authorized": False}

    @pytest.mark.asyncio
    async def test_status_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with mock_http(handler) as http:
            with pytest.raises(OAuthFlowError, match="HTTP 500"):
                await fetch_auth_status(SERVER_URL, "github", "tok", http_client=http)

    @pytest.mark.asyncio
    async def test_revoke(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        async with mock_http(handler) as http:
            await revoke_provider(SERVER_URL, "github", "tok", http_client=http)

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/oauth/disconnect"
        assert json.loads(seen[0].content) == {"provider": "github"}

    @pytest.mark.asyncio
    async def test_revoke_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"message": "forbidden"})

        async with mock_http(handler) as http:
            with pytest.raises(DisconnectError, match="forbidden"):
                await revoke_provider(SERVER_URL, "github", "tok", http_client=http)


class TestServerPathPrefix:
    """Tests for servers mounted below a path."""

    @pytest.mark.asyncio
    async def test_all_endpoints_keep_prefix(self):
        """Test that every OAuth call stays under the server URL's path."""
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"url": "https://provider.test/authorize", "accessToken": "tok"})

        server_url = "https://host.test/integrate/"
        async with mock_http(handler) as http:
            await request_authorization_url(
                server_url,
                "github",
                client_id="cid",
                client_secret="csecret",
                scopes=[],
                state="st",
                code_challenge="ch",
                redirect_uri="http://localhost:3000/oauth/callback",
                http_client=http,
            )
            await exchange_code(server_url, "github", "code", "verifier", "st", http_client=http)
            await fetch_auth_status(server_url, "github", "tok", http_client=http)
            await revoke_provider(server_url, "github", "tok", http_client=http)

        assert paths == [
            "/integrate/oauth/authorize",
            "/integrate/oauth/callback",
            "/integrate/oauth/status",
            "/integrate/oauth/disconnect",
        ]
