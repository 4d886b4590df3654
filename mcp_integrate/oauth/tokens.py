"""Provider token records.

This module provides the ProviderTokenRecord dataclass: the access token
obtained for one provider, with its type, lifetime and granted scopes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_scopes(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        # Servers return either "a b" or "a,b"
        return [s for s in value.replace(",", " ").split() if s]
    return [str(s) for s in value]


@dataclass
class ProviderTokenRecord:
    """Access token for a single provider.

    Attributes:
        access_token: The access token string
        token_type: Token type (typically "Bearer")
        expires_in: Lifetime in seconds as reported by the server
        expires_at: When the access token expires (UTC datetime)
        scopes: Granted scopes
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 0
    expires_at: datetime | None = None
    scopes: list[str] | None = field(default=None)

    def is_expired(self, buffer_seconds: int = 30) -> bool:
        """Check if the access token is expired or nearly expired.

        Args:
            buffer_seconds: Consider the token expired this many seconds
                early to allow for clock skew and request latency.

        Returns:
            True if the token is expired or expires within buffer_seconds
        """
        if self.expires_at is None:
            # No expiry information; the server answers 401 if it is stale
            return False

        now = datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return now >= (expires_at - timedelta(seconds=buffer_seconds))

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token.

        Returns:
            Authorization header value (e.g., "Bearer abc123...")
        """
        # Always "Bearer" per RFC 6750, some servers return "bearer"
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire/storage format (camelCase keys)."""
        data: dict[str, Any] = {
            "accessToken": self.access_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
        }

        if self.expires_at:
            data["expiresAt"] = self.expires_at.isoformat()

        if self.scopes is not None:
            data["scopes"] = list(self.scopes)

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderTokenRecord":
        """Deserialize from the format produced by to_dict().

        Args:
            data: Dictionary from storage

        Returns:
            ProviderTokenRecord instance
        """
        return cls(
            access_token=data["accessToken"],
            token_type=data.get("tokenType", "Bearer"),
            expires_in=int(data.get("expiresIn") or 0),
            expires_at=_parse_timestamp(data.get("expiresAt")),
            scopes=_parse_scopes(data.get("scopes")),
        )

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "ProviderTokenRecord":
        """Create a record from the server's code exchange response.

        Accepts camelCase ({accessToken, expiresIn, ...}) as well as OAuth
        snake_case ({access_token, expires_in, scope}) payloads. When the
        server gives no absolute expiry it is derived from expires_in.

        Args:
            response: JSON response from the code exchange endpoint

        Returns:
            ProviderTokenRecord instance

        Raises:
            KeyError: If the response has no access token
        """
        if "accessToken" in response:
            access_token = response["accessToken"]
        else:
            access_token = response["access_token"]

        token_type = response.get("tokenType") or response.get("token_type") or "Bearer"
        expires_in = int(response.get("expiresIn") or response.get("expires_in") or 0)

        expires_at = _parse_timestamp(response.get("expiresAt") or response.get("expires_at"))
        if expires_at is None and expires_in > 0:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        scopes = response.get("scopes")
        if scopes is None:
            scopes = response.get("scope")

        return cls(
            access_token=access_token,
            token_type=token_type,
            expires_in=expires_in,
            expires_at=expires_at,
            scopes=_parse_scopes(scopes),
        )
