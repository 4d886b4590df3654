"""Registry of in-flight authorization attempts.

Each attempt is keyed by its state token so the OAuth callback can be
matched back to the flow (provider + PKCE verifier) that started it.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ..errors import InvalidStateError

logger = logging.getLogger(__name__)

# Pending authorizations older than this are treated as unknown
DEFAULT_TTL_SECONDS = 10 * 60


@dataclass
class PendingAuthorization:
    """An authorization flow waiting for its callback.

    Attributes:
        state: The state token sent with the authorization request
        provider: Provider being authorized (e.g. "github")
        code_verifier: PKCE verifier needed for the code exchange
        created_at: When the flow started (epoch seconds)
        return_url: Where to send the user once the flow completes
        code_challenge: PKCE challenge sent to the server
        scopes: Scopes requested
        redirect_uri: Redirect URI registered for this flow
    """

    state: str
    provider: str
    code_verifier: str
    created_at: float
    return_url: str | None = None
    code_challenge: str | None = None
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str | None = None

    def age(self, now: float) -> float:
        """Seconds elapsed since the flow started."""
        return now - self.created_at


class PendingAuthorizationRegistry:
    """In-memory registry of pending authorizations with expiry.

    Lookups are consuming: take() removes the entry it returns, so a
    state token can only ever be redeemed once. Expiry is lazy (entries
    past the TTL are ignored and dropped when touched); expire() sweeps
    eagerly.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the registry.

        Args:
            ttl_seconds: Maximum age of a pending authorization
            clock: Time source (epoch seconds), injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}

    def _is_expired(self, entry: PendingAuthorization, max_age: float | None = None) -> bool:
        limit = self.ttl_seconds if max_age is None else max_age
        return entry.age(self._clock()) > limit

    def add(
        self,
        state: str,
        provider: str,
        code_verifier: str,
        return_url: str | None = None,
        code_challenge: str | None = None,
        scopes: list[str] | None = None,
        redirect_uri: str | None = None,
    ) -> PendingAuthorization:
        """Register a new pending authorization.

        Args:
            state: State token (unique per flow)
            provider: Provider being authorized
            code_verifier: PKCE verifier for the code exchange
            return_url: Optional post-authorization location
            code_challenge: PKCE challenge sent with the request
            scopes: Requested scopes
            redirect_uri: Redirect URI used for this flow

        Returns:
            The stored PendingAuthorization
        """
        if state in self._pending:
            logger.debug(f"Replacing pending authorization for {provider} with same state")

        entry = PendingAuthorization(
            state=state,
            provider=provider,
            code_verifier=code_verifier,
            created_at=self._clock(),
            return_url=return_url,
            code_challenge=code_challenge,
            scopes=list(scopes or []),
            redirect_uri=redirect_uri,
        )
        self._pending[state] = entry
        logger.debug(f"Registered pending authorization for {provider}")
        return entry

    def take(self, state: str) -> PendingAuthorization:
        """Remove and return the pending authorization for a state.

        Args:
            state: State token from the callback (must match exactly)

        Returns:
            The matching PendingAuthorization

        Raises:
            InvalidStateError: If the state is unknown, already used or expired
        """
        entry = self._pending.pop(state, None)

        if entry is None:
            logger.debug("Callback state did not match any pending authorization")
            raise InvalidStateError()

        if self._is_expired(entry):
            logger.debug(f"Pending authorization for {entry.provider} expired")
            raise InvalidStateError()

        return entry

    def peek(self, state: str) -> PendingAuthorization | None:
        """Return the live entry for a state without consuming it."""
        entry = self._pending.get(state)
        if entry is None or self._is_expired(entry):
            return None
        return entry

    def discard(self, state: str) -> bool:
        """Drop a pending authorization.

        Returns:
            True if an entry was removed
        """
        return self._pending.pop(state, None) is not None

    def expire(self, max_age_seconds: float | None = None) -> int:
        """Remove every entry older than max_age_seconds (default: the TTL).

        Returns:
            Number of entries removed
        """
        stale = [
            state
            for state, entry in self._pending.items()
            if self._is_expired(entry, max_age_seconds)
        ]
        for state in stale:
            del self._pending[state]

        if stale:
            logger.debug(f"Expired {len(stale)} pending authorization(s)")
        return len(stale)

    def clear_all(self) -> None:
        """Forget every pending authorization."""
        self._pending.clear()

    def __len__(self) -> int:
        return sum(1 for entry in self._pending.values() if not self._is_expired(entry))

    def __contains__(self, state: object) -> bool:
        return isinstance(state, str) and self.peek(state) is not None
