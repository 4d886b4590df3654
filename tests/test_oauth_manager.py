"""Tests for the OAuth flow coordinator."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from mcp_integrate.errors import (
    AuthenticationError,
    AuthorizationUrlError,
    ConfigurationError,
    DisconnectError,
    InvalidStateError,
    OAuthFlowError,
    TokenExchangeError,
    UserCancelledError,
    UserDeniedError,
)
from mcp_integrate.oauth import (
    AuthStatus,
    CallbackParams,
    CallbackResult,
    FlowConfig,
    FlowMode,
    FlowState,
    MemoryTokenStore,
    OAuthManager,
    OAuthProviderConfig,
    PopupHandle,
    ProviderTokenRecord,
    parse_state,
)
from mcp_integrate.oauth.store import TokenStoreError

from .conftest import SERVER_URL, make_record, mock_http


class FakeServer:
    """Records OAuth endpoint calls and answers them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.last_state: str | None = None
        self.token_response: dict[str, Any] = {"accessToken": "new-token", "expiresIn": 3600, "scopes": ["repo"]}
        self.exchange_status = 200
        self.status_response: httpx.Response = httpx.Response(200, json={"authorized": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/authorize":
            self.last_state = request.url.params["state"]
            return httpx.Response(200, json={"url": f"https://provider.test/authorize?state={self.last_state}"})
        if path == "/oauth/callback":
            return httpx.Response(self.exchange_status, json=self.token_response)
        if path == "/oauth/status":
            return self.status_response
        if path == "/oauth/disconnect":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


def _manager(server: FakeServer, flow: FlowConfig | None = None, **kwargs: Any) -> OAuthManager:
    return OAuthManager(
        server_url=SERVER_URL,
        flow=flow,
        token_store=kwargs.pop("token_store", MemoryTokenStore()),
        http_client=mock_http(server),
        **kwargs,
    )


class TestInitiateFlow:
    """Tests for starting authorization flows."""

    @pytest.mark.asyncio
    async def test_redirect_mode_returns_url(self, server, github_oauth):
        """Test that redirect mode hands out the URL and leaves the flow pending."""
        redirected: list[str] = []
        manager = _manager(server, FlowConfig(mode=FlowMode.REDIRECT, on_redirect=redirected.append))

        url = await manager.initiate_flow("github", github_oauth, return_url="/settings")

        assert url == f"https://provider.test/authorize?state={server.last_state}"
        assert redirected == [url]
        assert server.last_state in manager.registry
        assert manager.flow_state == FlowState.AWAITING_USER
        assert parse_state(server.last_state).return_url == "/settings"

    @pytest.mark.asyncio
    async def test_authorize_request_carries_pkce(self, server, github_oauth):
        """Test that the challenge sent matches the stored verifier."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        params = server.requests[0].url.params
        pending = manager.registry.peek(server.last_state)
        assert params["code_challenge"] == pending.code_challenge
        assert params["code_challenge_method"] == "S256"
        assert params["client_id"] == "gh-client"
        assert params["scope"] == "repo,user"
        assert params["redirect_uri"] == "http://localhost:3000/oauth/callback"

    @pytest.mark.asyncio
    async def test_redirect_then_callback(self, server, github_oauth):
        """Test completing a redirect-mode flow through handle_callback."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth, return_url="/back")

        result = await manager.handle_callback("auth-code", server.last_state)

        assert result == CallbackResult(
            provider="github",
            access_token="new-token",
            expires_at=result.expires_at,
            return_url="/back",
        )
        assert manager.get_provider_token("github").access_token == "new-token"
        assert manager.flow_state == FlowState.COMPLETE

        exchange = json.loads(server.requests[-1].content)
        assert exchange["code"] == "auth-code"
        assert exchange["provider"] == "github"
        assert exchange["code_verifier"]

    @pytest.mark.asyncio
    async def test_authorization_handler_completes_in_process(self, server, github_oauth):
        """Test that a handler returning (code, state) finishes the flow."""

        async def handler(provider: str, url: str) -> tuple[str, str]:
            assert provider == "github"
            return "auth-code", server.last_state

        manager = _manager(server, FlowConfig(on_authorization=handler))
        result = await manager.initiate_flow("github", github_oauth)

        assert isinstance(result, CallbackResult)
        assert result.access_token == "new-token"
        assert len(manager.registry) == 0

    @pytest.mark.asyncio
    async def test_popup_mode(self, server, github_oauth):
        """Test that popup mode waits for the popup's redirect."""

        class ImmediatePopup(PopupHandle):
            def __init__(self, url: str, redirect_uri: str, options: Any):
                self.done = False

            async def open(self) -> None:
                pass

            def poll(self) -> CallbackParams | None:
                return CallbackParams(code="popup-code", state=server.last_state)

            @property
            def closed(self) -> bool:
                return self.done

            async def close(self) -> None:
                self.done = True

        manager = _manager(server, FlowConfig(mode=FlowMode.POPUP, popup_factory=ImmediatePopup, poll_interval=0.01))
        result = await manager.initiate_flow("github", github_oauth)

        assert result.provider == "github"
        assert json.loads(server.requests[-1].content)["code"] == "popup-code"

    @pytest.mark.asyncio
    async def test_popup_closed_by_user(self, server, github_oauth):
        """Test that closing the popup cancels and clears the pending entry."""

        class ClosedPopup(PopupHandle):
            def __init__(self, url: str, redirect_uri: str, options: Any):
                pass

            async def open(self) -> None:
                pass

            def poll(self) -> CallbackParams | None:
                return None

            @property
            def closed(self) -> bool:
                return True

            async def close(self) -> None:
                pass

        manager = _manager(server, FlowConfig(mode=FlowMode.POPUP, popup_factory=ClosedPopup, poll_interval=0.01))

        with pytest.raises(UserCancelledError) as exc_info:
            await manager.initiate_flow("github", github_oauth)

        assert exc_info.value.provider == "github"
        assert len(manager.registry) == 0
        assert manager.flow_state == FlowState.ERROR

    @pytest.mark.asyncio
    async def test_missing_credentials(self, server):
        """Test that a provider without client credentials is rejected before any request."""
        manager = _manager(server)

        with pytest.raises(ConfigurationError, match="Missing OAuth client credentials"):
            await manager.initiate_flow("github", OAuthProviderConfig("github", client_id="only-id"))

        assert server.requests == []
        assert manager.flow_state == FlowState.ERROR

    @pytest.mark.asyncio
    async def test_authorize_failure_discards_pending(self, github_oauth):
        """Test that a failed URL request leaves nothing pending."""
        manager = OAuthManager(
            server_url=SERVER_URL,
            http_client=mock_http(lambda request: httpx.Response(500)),
        )

        with pytest.raises(AuthorizationUrlError):
            await manager.initiate_flow("github", github_oauth)

        assert len(manager.registry) == 0
        assert manager.flow_state == FlowState.ERROR

    @pytest.mark.asyncio
    async def test_concurrent_flows_are_independent(self, server, github_oauth):
        """Test that two flows for one provider complete with their own state."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))

        await manager.initiate_flow("github", github_oauth)
        first_state = server.last_state
        await manager.initiate_flow("github", github_oauth)
        second_state = server.last_state

        assert first_state != second_state
        await manager.handle_callback("code-2", second_state)
        await manager.handle_callback("code-1", first_state)


class TestHandleCallback:
    """Tests for completing flows from callbacks."""

    @pytest.mark.asyncio
    async def test_unknown_state_makes_no_request(self, server):
        """Test that an unknown state fails before contacting the server."""
        manager = _manager(server)

        with pytest.raises(InvalidStateError, match="Invalid state parameter"):
            await manager.handle_callback("code", "forged-state")
        with pytest.raises(InvalidStateError):
            await manager.handle_callback("", "")

        assert server.requests == []
        assert manager.flow_state == FlowState.ERROR

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, server, github_oauth):
        """Test that replaying a callback is rejected."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)
        state = server.last_state

        await manager.handle_callback("code", state)
        with pytest.raises(InvalidStateError):
            await manager.handle_callback("code", state)

    @pytest.mark.asyncio
    async def test_denial(self, server, github_oauth):
        """Test that a provider denial raises UserDeniedError and clears the flow."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        with pytest.raises(UserDeniedError) as exc_info:
            await manager.handle_callback("", server.last_state, error="access_denied", error_description="User said no")

        assert exc_info.value.provider == "github"
        assert exc_info.value.error_code == "access_denied"
        assert "User said no" in str(exc_info.value)
        assert len(manager.registry) == 0
        assert "/oauth/callback" not in server.paths()

    @pytest.mark.asyncio
    async def test_other_provider_error(self, server, github_oauth):
        """Test that non-denial provider errors raise OAuthFlowError."""
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        with pytest.raises(OAuthFlowError, match="server_error") as exc_info:
            await manager.handle_callback("", server.last_state, error="server_error")

        assert not isinstance(exc_info.value, UserDeniedError)
        assert len(manager.registry) == 0

    @pytest.mark.asyncio
    async def test_exchange_failure_consumes_state(self, server, github_oauth):
        """Test that a failed exchange still consumes the state and stores nothing."""
        server.exchange_status = 400
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        with pytest.raises(TokenExchangeError):
            await manager.handle_callback("code", server.last_state)

        assert len(manager.registry) == 0
        assert manager.get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_invalid_token_response(self, server, github_oauth):
        """Test that a response without a token is a TokenExchangeError."""
        server.token_response = {"expiresIn": 3600}
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        with pytest.raises(TokenExchangeError, match="Invalid token response"):
            await manager.handle_callback("code", server.last_state)


class TestAuthStatus:
    """Tests for check_auth_status()."""

    @pytest.mark.asyncio
    async def test_local_status(self, server):
        """Test that the local store answers without network access."""
        manager = _manager(server)
        manager.set_provider_token("github", make_record())

        status = await manager.check_auth_status("github")

        assert status.authorized is True
        assert status.scopes == ["repo", "user"]
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_no_token(self, server):
        assert await _manager(server).check_auth_status("github") == AuthStatus(provider="github")

    @pytest.mark.asyncio
    async def test_expired_token(self, server):
        """Test that an expired token reports unauthorized."""
        manager = _manager(server)
        manager.set_provider_token(
            "github",
            ProviderTokenRecord(access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(hours=1)),
        )
        assert (await manager.check_auth_status("github")).authorized is False

    @pytest.mark.asyncio
    async def test_remote_status(self, server):
        """Test that verify_remote_status asks the server."""
        server.status_response = httpx.Response(200, json={"authorized": True, "scopes": "repo user"})
        manager = _manager(server, verify_remote_status=True)
        manager.set_provider_token("github", make_record("tok"))

        status = await manager.check_auth_status("github")

        assert status.authorized is True
        assert status.scopes == ["repo", "user"]
        assert server.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_remote_failure_is_unauthorized(self, server):
        """Test that a failing status endpoint never raises."""
        server.status_response = httpx.Response(503)
        manager = _manager(server, verify_remote_status=True)
        manager.set_provider_token("github", make_record())

        assert (await manager.check_auth_status("github")).authorized is False

    @pytest.mark.asyncio
    async def test_store_failure_is_unauthorized(self, server):
        """Test that an unreadable store reports unauthorized."""

        class BrokenStore(MemoryTokenStore):
            def get(self, provider: str) -> ProviderTokenRecord | None:
                raise TokenStoreError("cannot decrypt")

        manager = _manager(server, token_store=BrokenStore())
        assert (await manager.check_auth_status("github")).authorized is False

    def test_status_serialization(self):
        """Test AuthStatus to_dict/from_dict."""
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        status = AuthStatus(provider="github", authorized=True, scopes=["repo"], expires_at=expires)

        assert status.to_dict()["expiresAt"] == expires.isoformat()
        assert AuthStatus.from_dict(status.to_dict()) == status


class TestTokensAndDisconnect:
    """Tests for token passthroughs and provider disconnect."""

    def test_set_provider_token_from_payload(self, oauth_manager):
        """Test that a raw token payload is accepted."""
        oauth_manager.set_provider_token("github", {"accessToken": "abc", "expiresIn": 60})
        assert oauth_manager.get_provider_token("github").access_token == "abc"

    def test_clear_is_isolated(self, oauth_manager):
        oauth_manager.set_provider_token("github", make_record("gh"))
        oauth_manager.set_provider_token("gmail", make_record("gm"))

        assert oauth_manager.clear_provider_token("github") is True
        assert set(oauth_manager.get_all_provider_tokens()) == {"gmail"}

        oauth_manager.clear_all_provider_tokens()
        assert oauth_manager.get_all_provider_tokens() == {}

    @pytest.mark.asyncio
    async def test_disconnect_without_token(self, server):
        """Test that disconnecting an unauthorized provider fails locally."""
        manager = _manager(server)

        with pytest.raises(AuthenticationError, match="No access token available for provider github") as exc_info:
            await manager.disconnect_provider("github")

        assert exc_info.value.provider == "github"
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_disconnect_revokes_on_server(self, server):
        """Test that disconnect sends the provider's token to the server."""
        manager = _manager(server)
        manager.set_provider_token("github", make_record("gh-token"))

        await manager.disconnect_provider("github")

        request = server.requests[0]
        assert request.url.path == "/oauth/disconnect"
        assert request.headers["Authorization"] == "Bearer gh-token"

    @pytest.mark.asyncio
    async def test_disconnect_failure(self):
        manager = OAuthManager(
            server_url=SERVER_URL,
            http_client=mock_http(lambda request: httpx.Response(500)),
        )
        manager.set_provider_token("github", make_record())

        with pytest.raises(DisconnectError):
            await manager.disconnect_provider("github")

    @pytest.mark.asyncio
    async def test_clear_all_pending(self, server, github_oauth):
        manager = _manager(server, FlowConfig(on_redirect=lambda url: None))
        await manager.initiate_flow("github", github_oauth)

        manager.clear_all_pending_auths()
        with pytest.raises(InvalidStateError):
            await manager.handle_callback("code", server.last_state)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, oauth_manager):
        oauth_manager.close()
        oauth_manager.close()
        await oauth_manager.aclose()

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        """Test that a caller's HTTP client stays usable after aclose()."""
        http = mock_http(lambda request: httpx.Response(200))
        manager = OAuthManager(server_url=SERVER_URL, http_client=http)

        await manager.aclose()

        assert not http.is_closed
        await http.aclose()
