"""Shared rate limiter for key-management endpoints.

The Limiter instance is created here and shared between:
  - keygate/auth/router.py  (route decorators)
  - keygate/main.py         (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

# Key rotation is rare; anything faster than this is a misbehaving client.
KEY_MANAGEMENT_RATE_LIMIT = "20/minute"
