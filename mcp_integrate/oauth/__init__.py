"""OAuth authorization support for mcp-integrate.

Provider tokens ("github", "gmail", ...) are obtained through the MCP
server, which brokers the provider's OAuth app. The client side only
handles PKCE, state, the pending-authorization bookkeeping and where the
tokens are kept.

Main Components:
    OAuthManager: Coordinates authorization flows and owns the token store
    PendingAuthorizationRegistry: In-flight flows keyed by state token
    ProviderTokenStore: Per-provider token storage (memory or encrypted file)
    ProviderTokenRecord: Token data structure

Quick Start:
    from mcp_integrate.oauth import FlowConfig, FlowMode, OAuthManager

    manager = OAuthManager(flow=FlowConfig(mode=FlowMode.POPUP))
    result = await manager.initiate_flow("github", github_oauth_config)

    record = manager.get_provider_token("github")
"""

from .callback import (
    CallbackError,
    CallbackParams,
    CallbackTimeoutError,
    LocalhostCallbackServer,
    parse_callback_url,
)
from .flow import (
    DEFAULT_REDIRECT_URI,
    DEFAULT_SERVER_URL,
    FlowConfig,
    FlowMode,
    FlowState,
    OAuthProviderConfig,
)
from .manager import AuthStatus, CallbackResult, OAuthManager
from .pending import PendingAuthorization, PendingAuthorizationRegistry
from .pkce import (
    PKCEPair,
    StateData,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
    parse_state,
)
from .store import (
    EncryptedFileTokenStore,
    MemoryTokenStore,
    ProviderTokenStore,
    TokenDecryptionError,
    TokenStoreError,
)
from .tokens import ProviderTokenRecord
from .window import BrowserPopup, PopupHandle, PopupOptions, WindowManager

__all__ = [
    # Manager (main entry point)
    "OAuthManager",
    "AuthStatus",
    "CallbackResult",
    # Flow configuration
    "FlowConfig",
    "FlowMode",
    "FlowState",
    "OAuthProviderConfig",
    "DEFAULT_SERVER_URL",
    "DEFAULT_REDIRECT_URI",
    # Pending authorizations
    "PendingAuthorization",
    "PendingAuthorizationRegistry",
    # Tokens
    "ProviderTokenRecord",
    # Storage
    "ProviderTokenStore",
    "MemoryTokenStore",
    "EncryptedFileTokenStore",
    "TokenStoreError",
    "TokenDecryptionError",
    # PKCE and state
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "parse_state",
    "PKCEPair",
    "StateData",
    # Window handling
    "WindowManager",
    "PopupHandle",
    "BrowserPopup",
    "PopupOptions",
    # Callback
    "LocalhostCallbackServer",
    "CallbackParams",
    "CallbackError",
    "CallbackTimeoutError",
    "parse_callback_url",
]
