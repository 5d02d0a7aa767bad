from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Any
import hashlib

from jose import jwt, JWTError
from passlib.context import CryptContext

from shared.errors import ConfigError, InvalidToken, ValidationError

MAX_BCRYPT_BYTES = 72
BCRYPT_ROUNDS = 12

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=BCRYPT_ROUNDS,
)


def _password_bytes(password: str) -> bytes:
    if password is None:
        raise ValidationError("Password is required")

    raw = password.encode("utf-8")

    if len(raw) > MAX_BCRYPT_BYTES:
        raise ValidationError(
            "Password too long (max 72 bytes). "
            "Avoid emojis or shorten the password."
        )

    return raw


def hash_password(password: str) -> str:
    _password_bytes(password)
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        _password_bytes(password)
        return pwd_context.verify(password, hashed)
    except (ValidationError, ValueError, TypeError):
        return False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Normalize DB datetimes; SQLite hands back naive values."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def create_access_token(
    data: Dict[str, Any],
    secret: str,
    algorithm: str,
    expires_minutes: int,
    now: datetime | None = None,
) -> str:
    if not secret:
        raise ConfigError("JWT secret missing")

    issued = now or utcnow()
    payload = dict(data)
    payload["iat"] = issued
    payload["exp"] = issued + timedelta(minutes=expires_minutes)

    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(
    token: str,
    secret: str,
    algorithm: str,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Decode and verify a session token.

    ``exp`` is checked against ``now`` when given (an injected clock), and
    against the wall clock otherwise.
    """
    if not secret:
        raise ConfigError("JWT secret missing")
    try:
        if now is None:
            return jwt.decode(token, secret, algorithms=[algorithm])
        data = jwt.decode(token, secret, algorithms=[algorithm], options={"verify_exp": False})
    except JWTError as e:
        raise InvalidToken() from e

    exp = data.get("exp")
    if not isinstance(exp, (int, float)) or now.timestamp() >= exp:
        raise InvalidToken()
    return data


# -------------------------
# Reset Link Token Helpers (NOT OTP)
# -------------------------

def hash_reset_token(token: str) -> str:
    """
    Deterministic hash for reset-link tokens.
    Store this in DB instead of the raw token.
    """
    if not token:
        raise ValidationError("Reset token is required")
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# -------------------------
# Password policy
# -------------------------

MIN_PASSWORD_LENGTH = 8


def check_password_policy(password: str | None) -> str:
    if not password:
        raise ValidationError("Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    _password_bytes(password)
    return password
