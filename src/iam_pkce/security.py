"""Credential handling helpers.

Constant-time state comparison, masking of token responses before they
are logged, and an unverified reader for JWT claims.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
from typing import Any

from iam_pkce.logging_config import get_logger

logger = get_logger(__name__)

# Field names (matched as substrings) whose values are masked in logs
DEFAULT_SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "code",
        "code_verifier",
        "secret",
        "password",
        "authorization",
    }
)

MASK = "***"


def constant_time_equals(expected: str | None, received: str | None) -> bool:
    """Compare a stored secret with a received value without timing leaks.

    Two missing values compare equal; one missing value never does.
    """
    if expected is None or received is None:
        return expected is received
    return hmac.compare_digest(expected.encode(), received.encode())


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: frozenset[str] | set[str] | None = None
) -> dict[str, Any]:
    """Return a copy of ``data`` safe to log.

    Nested mappings are masked recursively. A key is sensitive when any
    of ``sensitive_keys`` occurs in its lowercased name.

    Args:
        data: Token endpoint response or similar mapping
        sensitive_keys: Overrides DEFAULT_SENSITIVE_KEYS

    Returns:
        New dictionary with sensitive values replaced by ``***``
    """
    keys = DEFAULT_SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys

    def mask(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return mask_sensitive_data(value, keys)
        if any(name in key.lower() for name in keys):
            return MASK
        return value

    return {key: mask(key, value) for key, value in data.items()}


def decode_jwt_payload(token: str) -> dict[str, Any] | None:
    """Read the claims of a JWT without verifying its signature.

    Only suitable for UI hints such as the primary organization.
    Signature verification belongs to a separate validation component.

    Args:
        token: Compact-serialized JWT

    Returns:
        Claims dictionary, or None if the token is not a readable JWT
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None

    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError) as e:
        logger.debug("Could not decode token payload: %s", e)
        return None

    return payload if isinstance(payload, dict) else None
