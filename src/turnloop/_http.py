"""Small HTTP-related constants shared across turnloop.

Kept in its own module so provider mapping and core retry agree without
importing each other.
"""

from __future__ import annotations

# Retryable status codes shared by provider mapping and core retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Status codes that never succeed on a second try with the same credentials.
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})

# Environment variable holding each built-in provider's API key.
API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
}
