"""Authorization flow coordinator.

OAuthManager drives one OAuth authorization per initiate_flow() call:

    IDLE -> REQUESTING_URL -> AWAITING_USER -> EXCHANGING_CODE -> COMPLETE
                    (ERROR reachable from every step)

It owns the pending-authorization registry and the provider token store,
so the client and any HTTP route adapters only deal with this object.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from ..errors import (
    AuthenticationError,
    ConfigurationError,
    OAuthFlowError,
    TokenExchangeError,
    UserCancelledError,
    UserDeniedError,
)
from .callback import CallbackParams
from .flow import (
    DEFAULT_REDIRECT_URI,
    DEFAULT_SERVER_URL,
    DEFAULT_TIMEOUT,
    FlowConfig,
    FlowMode,
    FlowState,
    OAuthProviderConfig,
    exchange_code,
    fetch_auth_status,
    request_authorization_url,
    revoke_provider,
)
from .pending import PendingAuthorizationRegistry
from .pkce import generate_pkce_pair, generate_state, parse_state
from .store import MemoryTokenStore, ProviderTokenStore, TokenStoreError
from .tokens import ProviderTokenRecord, _parse_scopes, _parse_timestamp
from .window import WindowManager

logger = logging.getLogger(__name__)

# Provider error codes meaning the user said no
DENIAL_ERRORS = frozenset({"access_denied", "user_denied", "consent_required"})


@dataclass
class AuthStatus:
    """Authorization status of a provider.

    Attributes:
        provider: Provider id
        authorized: Whether a usable token exists
        scopes: Granted scopes, if known
        expires_at: Token expiry, if known
    """

    provider: str
    authorized: bool = False
    scopes: list[str] | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "provider": self.provider,
            "authorized": self.authorized,
            "scopes": self.scopes,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthStatus":
        """Deserialize from dictionary (server status payload)."""
        return cls(
            provider=data["provider"],
            authorized=bool(data.get("authorized", False)),
            scopes=_parse_scopes(data.get("scopes")),
            expires_at=_parse_timestamp(data.get("expiresAt")),
        )


@dataclass
class CallbackResult:
    """Outcome of a completed authorization."""

    provider: str
    access_token: str
    expires_at: datetime | None = None
    return_url: str | None = None


class OAuthManager:
    """Coordinates OAuth flows against the MCP server.

    Usage:
        manager = OAuthManager(flow=FlowConfig(mode=FlowMode.POPUP))

        # Popup mode: waits for the user and stores the token
        result = await manager.initiate_flow("github", github_oauth_config)

        # Redirect mode: returns the URL, finish later on the callback route
        url = await manager.initiate_flow("github", github_oauth_config)
        result = await manager.handle_callback(code, state)
    """

    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        flow: FlowConfig | None = None,
        registry: PendingAuthorizationRegistry | None = None,
        token_store: ProviderTokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify_remote_status: bool = False,
        window_manager: WindowManager | None = None,
    ):
        """Initialize the manager.

        Args:
            server_url: Base URL of the MCP server brokering OAuth
            flow: How flows reach the user (defaults to redirect mode)
            registry: Pending-authorization registry (a fresh one by default)
            token_store: Provider token store (in-memory by default)
            http_client: Optional shared HTTP client
            timeout: Timeout for server requests
            verify_remote_status: Also ask the server in check_auth_status()
            window_manager: Popup/redirect handling (built from flow by default)
        """
        self.server_url = server_url
        self.flow = flow or FlowConfig()
        self.timeout = timeout
        self.verify_remote_status = verify_remote_status

        self._registry = registry or PendingAuthorizationRegistry()
        self._store: ProviderTokenStore = token_store or MemoryTokenStore()
        self._http_client = http_client
        self._windows = window_manager or WindowManager(
            popup_factory=self.flow.popup_factory,
            on_redirect=self.flow.on_redirect,
            poll_interval=self.flow.poll_interval,
        )
        self._flow_state = FlowState.IDLE

    @property
    def token_store(self) -> ProviderTokenStore:
        return self._store

    @property
    def registry(self) -> PendingAuthorizationRegistry:
        return self._registry

    @property
    def flow_state(self) -> FlowState:
        """State of the most recent flow."""
        return self._flow_state

    def _transition(self, state: FlowState, provider: str | None = None) -> None:
        logger.debug(f"OAuth flow{f' for {provider}' if provider else ''}: {self._flow_state.value} -> {state.value}")
        self._flow_state = state

    async def initiate_flow(
        self,
        provider: str,
        oauth_config: OAuthProviderConfig,
        return_url: str | None = None,
    ) -> CallbackResult | str:
        """Start an authorization flow for a provider.

        Args:
            provider: Provider id
            oauth_config: Provider OAuth settings (client credentials, scopes)
            return_url: Location to return to after authorization, carried
                in the state token

        Returns:
            CallbackResult when the flow completed in-process (popup mode or
            an authorization handler returning the callback); otherwise the
            authorization URL, with the flow left pending for handle_callback()

        Raises:
            ConfigurationError: If client id or secret is missing
            AuthorizationUrlError: If the server cannot build the URL
            UserCancelledError: If the popup closed without completing
            UserDeniedError: If the user denied access
            InvalidStateError: If the callback state does not match
            TokenExchangeError: If the code exchange fails
        """
        self._transition(FlowState.IDLE, provider)

        if not oauth_config.has_credentials():
            self._transition(FlowState.ERROR, provider)
            raise ConfigurationError(
                f"Missing OAuth client credentials for {provider}. "
                f"Set client_id and client_secret in the provider configuration."
            )

        redirect_uri = oauth_config.redirect_uri or DEFAULT_REDIRECT_URI
        pkce = generate_pkce_pair()
        state = generate_state(return_url)

        self._registry.add(
            state,
            provider,
            pkce.verifier,
            return_url=return_url,
            code_challenge=pkce.challenge,
            scopes=oauth_config.scopes,
            redirect_uri=redirect_uri,
        )

        settled = False
        try:
            self._transition(FlowState.REQUESTING_URL, provider)
            url = await request_authorization_url(
                self.server_url,
                provider,
                oauth_config.client_id or "",
                oauth_config.client_secret or "",
                oauth_config.scopes,
                state,
                pkce.challenge,
                redirect_uri=redirect_uri,
                code_challenge_method=pkce.method,
                http_client=self._http_client,
                timeout=self.timeout,
            )

            self._transition(FlowState.AWAITING_USER, provider)
            params = await self._present(provider, url, redirect_uri)

            if params is None:
                # Continues on a later handle_callback()
                settled = True
                logger.info(f"Authorization for {provider} awaiting callback")
                return url

            result = await self.handle_callback(
                params.code or "",
                params.state or "",
                error=params.error,
                error_description=params.error_description,
            )
            settled = True
            return result

        finally:
            if not settled:
                self._registry.discard(state)
                self._transition(FlowState.ERROR, provider)

    async def _present(self, provider: str, url: str, redirect_uri: str) -> CallbackParams | None:
        """Show the authorization URL; return the callback if it arrives in-process."""
        handler = self.flow.on_authorization
        if handler is not None:
            answer = await handler(provider, url)
            if answer is None or isinstance(answer, CallbackParams):
                return answer
            code, state = answer
            return CallbackParams(code=code, state=state)

        if self.flow.mode == FlowMode.POPUP:
            await self._windows.open_popup(url, redirect_uri, self.flow.popup)
            try:
                return await self._windows.listen_for_callback()
            except UserCancelledError as e:
                raise UserCancelledError(f"Authorization for {provider} was cancelled: {e}", provider=provider) from e

        await self._windows.open_redirect(url)
        return None

    async def handle_callback(
        self,
        code: str,
        state: str,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackResult:
        """Complete a flow from its OAuth callback.

        The pending authorization for state is consumed whether or not the
        exchange succeeds, so a state can never be redeemed twice.

        Args:
            code: Authorization code from the callback
            state: State token from the callback
            error: Error code reported by the provider, if any
            error_description: Provider's error description

        Returns:
            CallbackResult with the provider and its new token

        Raises:
            InvalidStateError: If state is unknown, used or expired
            UserDeniedError: If the provider reported a denial
            OAuthFlowError: If the provider reported another error
            TokenExchangeError: If the code exchange fails
        """
        self._transition(FlowState.EXCHANGING_CODE)

        try:
            if error:
                denied = self._registry.peek(state)
                self._registry.discard(state)
                provider = denied.provider if denied else None

                if error in DENIAL_ERRORS:
                    raise UserDeniedError(
                        f"Authorization{f' for {provider}' if provider else ''} was denied: "
                        f"{error_description or error}",
                        provider=provider,
                        error_code=error,
                    )
                raise OAuthFlowError(
                    f"Authorization{f' for {provider}' if provider else ''} failed: {error} - "
                    f"{error_description or 'No description provided'}"
                )

            pending = self._registry.take(state)

            response = await exchange_code(
                self.server_url,
                pending.provider,
                code,
                pending.code_verifier,
                state,
                http_client=self._http_client,
                timeout=self.timeout,
            )

            try:
                record = ProviderTokenRecord.from_token_response(response)
            except (KeyError, TypeError, ValueError) as e:
                raise TokenExchangeError(f"Invalid token response for {pending.provider}") from e

            self._store.set(pending.provider, record)

        except Exception:
            self._transition(FlowState.ERROR)
            raise

        self._transition(FlowState.COMPLETE, pending.provider)
        logger.info(f"Authorized {pending.provider}")

        return CallbackResult(
            provider=pending.provider,
            access_token=record.access_token,
            expires_at=record.expires_at,
            return_url=pending.return_url or parse_state(state).return_url,
        )

    async def check_auth_status(self, provider: str) -> AuthStatus:
        """Check whether a provider is authorized.

        Answers from the local token store; when verify_remote_status is set
        the server is asked as well. Never raises: storage and network
        failures report authorized=False.
        """
        try:
            record = self._store.get(provider)
        except TokenStoreError as e:
            logger.warning(f"Could not read token for {provider}: {e}")
            return AuthStatus(provider=provider)

        if record is None:
            return AuthStatus(provider=provider)

        if not self.verify_remote_status:
            return AuthStatus(
                provider=provider,
                authorized=not record.is_expired(),
                scopes=record.scopes,
                expires_at=record.expires_at,
            )

        try:
            data = await fetch_auth_status(
                self.server_url,
                provider,
                record.access_token,
                http_client=self._http_client,
                timeout=self.timeout,
            )
        except OAuthFlowError as e:
            logger.warning(f"Failed to check auth status for {provider}: {e}")
            return AuthStatus(provider=provider)

        return AuthStatus.from_dict({**data, "provider": provider})

    def get_provider_token(self, provider: str) -> ProviderTokenRecord | None:
        return self._store.get(provider)

    def set_provider_token(self, provider: str, record: ProviderTokenRecord | dict[str, Any]) -> None:
        """Store a token obtained outside of a flow (record or token payload)."""
        if isinstance(record, dict):
            record = ProviderTokenRecord.from_token_response(record)
        self._store.set(provider, record)

    def clear_provider_token(self, provider: str) -> bool:
        return self._store.clear(provider)

    def get_all_provider_tokens(self) -> dict[str, ProviderTokenRecord]:
        return self._store.get_all()

    def clear_all_provider_tokens(self) -> None:
        self._store.clear_all()

    def clear_all_pending_auths(self) -> None:
        self._registry.clear_all()

    async def disconnect_provider(self, provider: str) -> None:
        """Revoke a provider's authorization on the server.

        The local token is kept; only the server-side grant is revoked.

        Raises:
            AuthenticationError: If no token is stored for the provider
                (the server is not contacted)
            DisconnectError: If the server refuses or cannot be reached
        """
        record = self._store.get(provider)
        if record is None:
            raise AuthenticationError(
                f"No access token available for provider {provider}. "
                f"Cannot disconnect a provider that was never authorized.",
                provider=provider,
            )

        await revoke_provider(
            self.server_url,
            provider,
            record.access_token,
            http_client=self._http_client,
            timeout=self.timeout,
        )
        logger.info(f"Disconnected {provider}")

    def close(self) -> None:
        """Release any open popup and stop its polling. Idempotent."""
        self._windows.close()

    async def aclose(self) -> None:
        """Close and wait for the popup to shut down.

        An http_client passed to the constructor belongs to the caller and is
        left open. Without one, each request opens and closes its own client.
        """
        await self._windows.aclose()
