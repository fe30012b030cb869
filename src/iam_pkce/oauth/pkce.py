"""RFC 7636 proof key generation (``S256`` only) and CSRF state tokens."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

# 48 random bytes encode to a 64-character verifier
DEFAULT_VERIFIER_BYTES = 48
MIN_ENTROPY_BYTES = 32
# 96 bytes encode to 128 characters, the RFC 7636 maximum
MAX_VERIFIER_BYTES = 96
CODE_CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    """One verifier and the challenge derived from it.

    Attributes:
        code_verifier: Secret kept client-side until the token request
        code_challenge: Sent on the authorization URL
    """

    code_verifier: str
    code_challenge: str


def _token(nbytes: int, maximum: int | None = None) -> str:
    if nbytes < MIN_ENTROPY_BYTES:
        msg = f"nbytes must be at least {MIN_ENTROPY_BYTES} for sufficient entropy"
        raise ValueError(msg)
    if maximum is not None and nbytes > maximum:
        msg = f"nbytes must be at most {maximum} to keep the verifier within 128 characters"
        raise ValueError(msg)
    return secrets.token_urlsafe(nbytes)


def generate_code_verifier(nbytes: int = DEFAULT_VERIFIER_BYTES) -> str:
    """Return a random base64url verifier of 43 to 128 characters.

    Args:
        nbytes: Random bytes to encode, 32 to 96

    Raises:
        ValueError: If nbytes is out of range
    """
    return _token(nbytes, MAX_VERIFIER_BYTES)


def generate_code_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(nbytes: int = DEFAULT_VERIFIER_BYTES) -> PKCEPair:
    verifier = generate_code_verifier(nbytes)
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def generate_state(nbytes: int = MIN_ENTROPY_BYTES) -> str:
    """Return an opaque state token for one authorization attempt."""
    return _token(nbytes)
