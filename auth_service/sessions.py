from datetime import datetime
from typing import Callable

from shared.errors import InvalidToken
from shared.utils import create_access_token, decode_token, utcnow
from .config import Settings


class SessionIssuer:
    """Signs and checks stateless bearer session tokens."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.secret = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.expires_minutes = settings.access_token_expire_minutes
        self.clock = clock

    def issue(self, user_id: int) -> str:
        return create_access_token(
            {"sub": str(user_id)},
            secret=self.secret,
            algorithm=self.algorithm,
            expires_minutes=self.expires_minutes,
            now=self.clock(),
        )

    def verify(self, token: str) -> int:
        if not token:
            raise InvalidToken()

        data = decode_token(token, self.secret, self.algorithm, now=self.clock())

        sub = data.get("sub")
        try:
            return int(sub)
        except (TypeError, ValueError) as e:
            raise InvalidToken() from e
