"""Opaque API key generation.

Keys are 32 lowercase hex characters drawn from the OS CSPRNG. The alphabet
is a subset of ``\\w`` so keys survive the ``Authorization: Bearer <token>``
extraction in keygate.auth.middleware.
"""

from __future__ import annotations

import secrets

from keygate.constants import KEY_BYTES


def generate_unique_key() -> str:
    """Return a new unguessable API key string."""
    return secrets.token_hex(KEY_BYTES)
