"""One-time passcodes for e-mail verification and password reset.

Records live in an :class:`OTPStore` keyed by lowercased address. The default
store is process-local; anything with the same ``get``/``set``/``delete``
shape (a Redis wrapper, say) can be passed to :class:`OTPManager` instead.

Lifecycle per address::

    none -> issued -> verified (grace window) -> consumed by reset
    none -> issued -> expired (deleted on next check)

A ``password_reset`` code may be consumed by a reset directly; a
``verification`` code must be verified first.
"""

import enum
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from shared.errors import DeliveryError, InvalidOrExpired, NotFound, ValidationError
from shared.utils import check_password_policy, utcnow
from .config import Settings
from .crud import get_user_by_email, mark_email_verified, normalize_email, update_user_password
from .models import User
from .notifier import DeliveryReceipt, Notifier

__all__ = [
    "OTPPurpose",
    "OTPRecord",
    "OTPStore",
    "InMemoryOTPStore",
    "OTPIssue",
    "OTPManager",
    "OTPNotFound",
    "OTPExpired",
    "OTPPurposeMismatch",
    "OTPMismatch",
    "OTPNotUsable",
]

logger = logging.getLogger(__name__)


class OTPPurpose(str, enum.Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"


PURPOSE_VALUES = tuple(p.value for p in OTPPurpose)


# -------------------------
# Errors
# -------------------------

class OTPNotFound(InvalidOrExpired):
    default_message = "OTP not found or expired"


class OTPExpired(InvalidOrExpired):
    default_message = "OTP has expired"


class OTPPurposeMismatch(InvalidOrExpired):
    default_message = "Invalid OTP purpose"


class OTPMismatch(InvalidOrExpired):
    default_message = "Invalid OTP"


class OTPNotUsable(InvalidOrExpired):
    default_message = "This OTP cannot be used for password reset"


# -------------------------
# Storage
# -------------------------

@dataclass(frozen=True)
class OTPRecord:
    email: str
    # kept as a string so leading zeros and types never bite
    otp: str
    purpose: str
    created_at: datetime
    expires_at: datetime
    verified: bool = False
    verified_at: datetime | None = None


class OTPStore(Protocol):
    def get(self, email: str) -> OTPRecord | None: ...

    def set(self, email: str, record: OTPRecord) -> None: ...

    def delete(self, email: str) -> None: ...

    def pop_if(self, email: str, record: OTPRecord) -> bool:
        """Delete the entry only if it is still ``record``; report whether it was."""
        ...


class InMemoryOTPStore:
    """Dict behind a lock. Lost on restart and not shared between processes."""

    def __init__(self):
        self._records: dict[str, OTPRecord] = {}
        self._lock = threading.Lock()

    def get(self, email: str) -> OTPRecord | None:
        with self._lock:
            return self._records.get(email)

    def set(self, email: str, record: OTPRecord) -> None:
        with self._lock:
            self._records[email] = record

    def delete(self, email: str) -> None:
        with self._lock:
            self._records.pop(email, None)

    def pop_if(self, email: str, record: OTPRecord) -> bool:
        with self._lock:
            if self._records.get(email) != record:
                return False
            del self._records[email]
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# -------------------------
# Manager
# -------------------------

@dataclass(frozen=True)
class OTPIssue:
    email: str
    otp: str
    purpose: str
    expires_at: datetime
    receipt: DeliveryReceipt | None = None
    delivery_error: str | None = None


def _coerce_purpose(purpose) -> str:
    value = purpose.value if isinstance(purpose, OTPPurpose) else purpose
    if value not in PURPOSE_VALUES:
        raise ValidationError('Invalid purpose. Must be either "verification" or "password_reset"')
    return value


def compose_otp_email(otp: str, purpose: str, minutes: int) -> tuple[str, str, str]:
    if purpose == OTPPurpose.PASSWORD_RESET.value:
        subject, heading, purpose_text = "Password Reset Code", "Password Reset", "password reset"
    else:
        subject, heading, purpose_text = "Your Verification Code", "Email Verification", "verification"

    body = (
        f"Your {purpose_text} code is: {otp}. It will expire in {minutes} minutes.\n\n"
        "If you didn't request this code, please ignore this email."
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
        f"<h2>{heading}</h2>"
        f"<p>Please use the code below to complete your {purpose_text} request:</p>"
        f'<h1 style="letter-spacing: 5px; text-align: center;">{otp}</h1>'
        f"<p>This code will expire in {minutes} minutes.</p>"
        "<p>If you didn't request this code, please ignore this email.</p>"
        "</div>"
    )
    return subject, body, html


class OTPManager:
    def __init__(
        self,
        store: OTPStore,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        rng: secrets.SystemRandom | None = None,
    ):
        self.store = store
        self.notifier = notifier
        self.expire_minutes = settings.otp_expire_minutes
        self.grace = timedelta(minutes=settings.otp_grace_minutes)
        self.strict_delivery = settings.is_production
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()

    def generate_code(self) -> str:
        return str(self.rng.randint(100000, 999999))

    def request_otp(self, email: str, purpose=OTPPurpose.VERIFICATION) -> OTPIssue:
        address = normalize_email(email)
        if not address:
            raise ValidationError("Email is required")
        purpose = _coerce_purpose(purpose)

        code = self.generate_code()
        now = self.clock()
        expires_at = now + timedelta(minutes=self.expire_minutes)

        # last request wins, whatever the purpose of the previous one
        self.store.set(address, OTPRecord(
            email=address,
            otp=code,
            purpose=purpose,
            created_at=now,
            expires_at=expires_at,
        ))
        logger.info("Issued %s OTP for %s", purpose, address)

        subject, body, html = compose_otp_email(code, purpose, self.expire_minutes)
        try:
            receipt = self.notifier.send(address, subject, body, html)
        except DeliveryError as e:
            if self.strict_delivery:
                raise
            logger.warning("OTP for %s generated but not delivered: %s", address, e)
            return OTPIssue(address, code, purpose, expires_at, delivery_error=e.message)

        return OTPIssue(address, code, purpose, expires_at, receipt=receipt)

    def _check(self, address: str, otp: str, purpose=None) -> OTPRecord:
        record = self.store.get(address)
        if record is None:
            raise OTPNotFound()

        if self.clock() > record.expires_at:
            self.store.delete(address)
            raise OTPExpired()

        if purpose and record.purpose != _coerce_purpose(purpose):
            raise OTPPurposeMismatch()

        if not hmac.compare_digest(record.otp.encode("utf-8"), str(otp or "").encode("utf-8")):
            raise OTPMismatch()

        return record

    def verify_otp(self, email: str, otp: str, purpose=None) -> OTPRecord:
        address = normalize_email(email)
        record = self._check(address, otp, purpose)

        now = self.clock()
        verified = replace(
            record,
            verified=True,
            verified_at=now,
            expires_at=max(record.expires_at, now + self.grace),
        )
        self.store.set(address, verified)
        logger.info("OTP verified for %s", address)
        return verified

    def reset_password(self, db: Session, email: str, otp: str, new_password: str) -> User:
        check_password_policy(new_password)

        address = normalize_email(email)
        # re-checked here; a prior verify is not trusted blindly
        record = self._check(address, otp)
        if not (record.verified or record.purpose == OTPPurpose.PASSWORD_RESET.value):
            raise OTPNotUsable()

        user = get_user_by_email(db, address)
        if not user:
            raise NotFound("User not found")

        # claim the code before writing; a concurrent reset with it loses here
        if not self.store.pop_if(address, record):
            raise OTPNotFound()
        update_user_password(db, user, new_password)
        logger.info("Password reset via OTP for %s", address)
        return user

    def verify_email(self, db: Session, email: str, otp: str) -> User:
        address = normalize_email(email)
        record = self._check(address, otp)

        user = get_user_by_email(db, address)
        if not user:
            raise NotFound("User not found")

        if not self.store.pop_if(address, record):
            raise OTPNotFound()
        mark_email_verified(db, user)
        logger.info("Email verified for %s", address)
        return user
