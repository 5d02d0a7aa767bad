"""Reset-link tokens for password recovery.

A single manager class serves both the student/teacher flow and the admin
flow; the difference is the :class:`RecoveryScope` it is built with. Only the
SHA-256 of a token is stored, on the user row, next to its expiry.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from shared.errors import InvalidOrExpired, NotFound
from shared.utils import as_utc, check_password_policy, hash_reset_token, utcnow
from .config import Settings
from .crud import (
    consume_reset_token,
    get_user_by_email_in_roles,
    get_user_by_reset_hash,
    set_reset_token,
)
from .models import Role, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryScope:
    name: str
    roles: frozenset[str]
    reset_path: str
    not_found_message: str


STANDARD_SCOPE = RecoveryScope(
    name="standard",
    roles=frozenset({Role.STUDENT.value, Role.TEACHER.value}),
    reset_path="/resetpassword/{token}",
    not_found_message="No student or teacher found with that email",
)

ADMIN_SCOPE = RecoveryScope(
    name="admin",
    roles=frozenset({Role.ADMIN.value}),
    reset_path="/admin-reset-password/{token}",
    not_found_message="No admin found with that email",
)


@dataclass(frozen=True)
class IssuedResetToken:
    email: str
    token: str
    reset_url: str
    expires_at: datetime
    expires_in_minutes: int


class RecoveryTokenManager:
    def __init__(self, scope: RecoveryScope, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.scope = scope
        self.frontend_url = settings.frontend_url
        self.expire_minutes = settings.reset_token_expire_minutes
        self.clock = clock

    def reset_url(self, token: str) -> str:
        return self.frontend_url + self.scope.reset_path.format(token=token)

    def request_reset(self, db: Session, email: str) -> IssuedResetToken:
        user = get_user_by_email_in_roles(db, email, self.scope.roles)
        if not user:
            raise NotFound(self.scope.not_found_message)

        token = secrets.token_urlsafe(32)
        expires_at = self.clock() + timedelta(minutes=self.expire_minutes)
        set_reset_token(db, user, token_hash=hash_reset_token(token), expires_at=expires_at)

        logger.info("Issued %s reset token for %s", self.scope.name, user.email)
        return IssuedResetToken(
            email=user.email,
            token=token,
            reset_url=self.reset_url(token),
            expires_at=expires_at,
            expires_in_minutes=self.expire_minutes,
        )

    def _lookup(self, db: Session, token: str) -> tuple[User, str]:
        if not token:
            raise InvalidOrExpired()

        token_hash = hash_reset_token(token)
        # a hash owned by a user outside the scope looks exactly like an unknown token
        user = get_user_by_reset_hash(db, token_hash, self.scope.roles)
        if user is None or user.reset_token_expires_at is None:
            raise InvalidOrExpired()
        if as_utc(user.reset_token_expires_at) <= self.clock():
            raise InvalidOrExpired()
        return user, token_hash

    def verify_token(self, db: Session, token: str) -> str:
        user, _ = self._lookup(db, token)
        return user.email

    def reset_password(self, db: Session, token: str, new_password: str) -> User:
        check_password_policy(new_password)
        user, token_hash = self._lookup(db, token)

        if not consume_reset_token(db, user, token_hash=token_hash, new_password=new_password):
            # lost the race against another consume of the same token
            raise InvalidOrExpired()

        logger.info("Password reset via %s token for %s", self.scope.name, user.email)
        return user


def compose_reset_email(issued: IssuedResetToken) -> tuple[str, str, str]:
    subject = "Reset your password"
    body = (
        "You requested a password reset.\n\n"
        f"Click this link to set a new password:\n{issued.reset_url}\n\n"
        f"This link expires in {issued.expires_in_minutes} minutes.\n"
        "If you didn't request this, you can ignore this email."
    )
    html = (
        "<p>You requested a password reset.</p>"
        f'<p><a href="{issued.reset_url}">Set a new password</a></p>'
        f"<p>This link expires in {issued.expires_in_minutes} minutes.</p>"
        "<p>If you didn't request this, you can ignore this email.</p>"
    )
    return subject, body, html
