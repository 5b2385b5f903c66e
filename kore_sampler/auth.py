"""JWT assertions for the bot platform's public API."""
import time
from typing import Callable, Optional

import jwt

from .config import DEFAULT_AUDIENCE
from .errors import ConfigurationError

TOKEN_TTL_SECONDS = 3600
AUTH_HEADER = "auth"


class AuthTokenIssuer:
    """Signs a short-lived HS256 token binding a client app to a bot.

    Tokens are not cached; callers issue one per request so the expiry is
    always an hour ahead of the call.
    """

    ALGORITHM = "HS256"

    def __init__(self, audience: str = DEFAULT_AUDIENCE, clock: Optional[Callable[[], float]] = None):
        self.audience = audience
        self._clock = clock or time.time

    def issue(self, client_id: str, bot_id: str, secret: str) -> str:
        if not client_id or not bot_id or not secret:
            raise ConfigurationError("client_id, bot_id and client_secret are required to sign a token")

        now = int(self._clock())
        payload = {
            "iss": client_id,
            "sub": bot_id,
            "iat": now,
            "exp": now + TOKEN_TTL_SECONDS,
            "aud": self.audience,
        }
        return jwt.encode(payload, secret, algorithm=self.ALGORITHM, headers={"typ": "JWT"})
