"""PKCE (Proof Key for Code Exchange) and OAuth state tokens.

Verifiers and challenges follow RFC 7636 with the S256 method. The state
token is an opaque base64url JSON envelope carrying a CSRF nonce and,
optionally, the location to return to once authorization completes.
"""

import base64
import binascii
import hashlib
import json
import secrets
from dataclasses import dataclass

# 32 random bytes encode to 43 base64url characters, 96 bytes to 128
DEFAULT_VERIFIER_BYTES = 32
MIN_VERIFIER_BYTES = 32
MAX_VERIFIER_BYTES = 96

STATE_NONCE_BYTES = 16


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is sent with the code exchange, the challenge (SHA256 of
    the verifier) with the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


@dataclass
class StateData:
    """Decoded contents of a state token."""

    csrf: str
    return_url: str | None = None


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


def generate_code_verifier(num_bytes: int = DEFAULT_VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    The result only uses [A-Za-z0-9_-] and is 43-128 characters long, as
    required by RFC 7636 Section 4.1.

    Args:
        num_bytes: Random bytes to encode (32-96, default 32 -> 43 chars)

    Returns:
        Base64URL-encoded random string without padding

    Raises:
        ValueError: If num_bytes is outside the allowed range
    """
    if num_bytes < MIN_VERIFIER_BYTES or num_bytes > MAX_VERIFIER_BYTES:
        raise ValueError(
            f"Code verifier entropy must be between {MIN_VERIFIER_BYTES} "
            f"and {MAX_VERIFIER_BYTES} bytes, got {num_bytes}"
        )

    return _b64url_encode(secrets.token_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Generate the S256 code challenge for a verifier.

    code_challenge = BASE64URL(SHA256(code_verifier)), always 43 characters.

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url_encode(digest)


def generate_pkce_pair() -> PKCEPair:
    """Generate a verifier and its S256 challenge."""
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state(return_url: str | None = None) -> str:
    """Generate a state token for an authorization request.

    The CSRF nonce is fresh for every call, so two states carrying the same
    return_url still differ.

    Args:
        return_url: Where to send the user after authorization completes

    Returns:
        Base64URL-encoded JSON envelope {"csrf": ..., "returnUrl": ...}
    """
    payload: dict[str, str] = {"csrf": _b64url_encode(secrets.token_bytes(STATE_NONCE_BYTES))}
    if return_url:
        payload["returnUrl"] = return_url

    return _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def parse_state(state: str) -> StateData:
    """Decode a state token.

    Anything that is not a valid envelope (plain legacy states, bad base64,
    bad JSON, missing csrf) is treated as a bare CSRF value. Never raises.

    Args:
        state: The state parameter received in the callback

    Returns:
        StateData with the csrf nonce and optional return URL
    """
    try:
        data = json.loads(_b64url_decode(state).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeError):
        return StateData(csrf=state)

    if not isinstance(data, dict) or not isinstance(data.get("csrf"), str):
        return StateData(csrf=state)

    return_url = data.get("returnUrl")
    if not isinstance(return_url, str):
        return_url = None

    return StateData(csrf=data["csrf"], return_url=return_url)
