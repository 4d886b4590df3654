"""Authorization lifecycle events.

The client reports authorization progress through a closed set of event
kinds, each with its own payload type:

    auth:started     AuthStarted(provider)
    auth:complete    AuthComplete(provider, access_token, expires_at)
    auth:error       AuthError(provider, error)
    auth:disconnect  AuthDisconnect(provider)
    auth:logout      AuthLogout()
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


class AuthEventKind(str, Enum):
    """Kinds of authorization events."""

    STARTED = "auth:started"
    COMPLETE = "auth:complete"
    ERROR = "auth:error"
    DISCONNECT = "auth:disconnect"
    LOGOUT = "auth:logout"


@dataclass
class AuthStarted:
    provider: str


@dataclass
class AuthComplete:
    provider: str
    access_token: str
    expires_at: datetime | None = None


@dataclass
class AuthError:
    provider: str
    error: Exception


@dataclass
class AuthDisconnect:
    provider: str


@dataclass
class AuthLogout:
    pass


AuthEvent = Union[AuthStarted, AuthComplete, AuthError, AuthDisconnect, AuthLogout]

# Listeners may be sync or async; async ones are scheduled on the running loop
Listener = Callable[[Any], Awaitable[None] | None]

EVENT_PAYLOADS: dict[AuthEventKind, type] = {
    AuthEventKind.STARTED: AuthStarted,
    AuthEventKind.COMPLETE: AuthComplete,
    AuthEventKind.ERROR: AuthError,
    AuthEventKind.DISCONNECT: AuthDisconnect,
    AuthEventKind.LOGOUT: AuthLogout,
}


def kind_of(event: AuthEvent) -> AuthEventKind:
    """The event kind a payload belongs to."""
    for kind, payload_type in EVENT_PAYLOADS.items():
        if isinstance(event, payload_type):
            return kind
    raise TypeError(f"Not an auth event: {type(event).__name__}")


class EventEmitter:
    """Dispatches auth events to registered listeners.

    A listener that raises is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[AuthEventKind, list[Listener]] = {kind: [] for kind in AuthEventKind}
        self._pending: set[asyncio.Task[None]] = set()

    def on(self, kind: AuthEventKind | str, listener: Listener) -> None:
        """Register a listener for an event kind."""
        self._listeners[AuthEventKind(kind)].append(listener)

    def off(self, kind: AuthEventKind | str, listener: Listener) -> None:
        """Remove one registration of a listener for an event kind."""
        listeners = self._listeners[AuthEventKind(kind)]
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: AuthEventKind | str) -> int:
        return len(self._listeners[AuthEventKind(kind)])

    def emit(self, event: AuthEvent) -> None:
        """Deliver an event to every listener of its kind."""
        kind = kind_of(event)

        for listener in list(self._listeners[kind]):
            try:
                result = listener(event)
            except Exception as e:
                logger.warning(f"Error in {kind.value} listener: {type(e).__name__}: {e}")
                continue

            if asyncio.iscoroutine(result):
                self._schedule(kind, result)

    def _schedule(self, kind: AuthEventKind, coro: Awaitable[None]) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(coro)
        self._pending.add(task)

        def done(t: asyncio.Task[None]) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                e = t.exception()
                logger.warning(f"Error in {kind.value} listener: {type(e).__name__}: {e}")

        task.add_done_callback(done)

    async def drain(self) -> None:
        """Wait for async listeners that are still running."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
