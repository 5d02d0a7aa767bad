from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.errors import ValidationError
from shared.utils import hash_password, utcnow
from .models import User, Role


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# -------------------------
# Users
# -------------------------

def get_user_by_id(db: Session, user_id: int) -> User | None:
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def get_user_by_email_in_roles(db: Session, email: str, roles) -> User | None:
    return (
        db.query(User)
        .filter(User.email == normalize_email(email), User.role.in_(list(roles)))
        .first()
    )


def list_users(db: Session, role: str | None = None) -> list[User]:
    q = db.query(User)
    if role:
        q = q.filter(User.role == role)
    return q.order_by(User.id).all()


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: str = Role.STUDENT.value,
    phone_number: str | None = None,
    year: str | None = None,
    student_code: str | None = None,
) -> User:
    u = User(
        name=name.strip(),
        email=normalize_email(email),
        role=role,
        phone_number=phone_number,
        year=year,
        student_code=student_code,
        login_count=0,
        email_verified=False,
    )
    u.password = password
    db.add(u)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Email already registered") from e
    db.refresh(u)
    return u


def update_user_password(db: Session, user: User, new_password: str) -> User:
    user.password = new_password
    db.commit()
    db.refresh(user)
    return user


def update_user_role(db: Session, user: User, role: str) -> User:
    if user.role != role:
        # an outstanding reset token belongs to the old role's scope
        user.reset_token_hash = None
        user.reset_token_expires_at = None
    user.role = role
    db.commit()
    db.refresh(user)
    return user


def record_login(db: Session, user: User, now: datetime | None = None) -> User:
    user.login_count = (user.login_count or 0) + 1
    user.last_login_at = now or utcnow()
    db.commit()
    db.refresh(user)
    return user


def mark_email_verified(db: Session, user: User) -> User:
    user.email_verified = True
    db.commit()
    db.refresh(user)
    return user


# -------------------------
# Password Reset LINK (Token)
# -------------------------

def set_reset_token(
    db: Session,
    user: User,
    *,
    token_hash: str,
    expires_at: datetime,
) -> User:
    # overwrites any previous token: one outstanding token per user
    user.reset_token_hash = token_hash
    user.reset_token_expires_at = expires_at
    db.commit()
    db.refresh(user)
    return user


def get_user_by_reset_hash(db: Session, token_hash: str, roles) -> User | None:
    return (
        db.query(User)
        .filter(User.reset_token_hash == token_hash, User.role.in_(list(roles)))
        .first()
    )


def consume_reset_token(db: Session, user: User, *, token_hash: str, new_password: str) -> bool:
    """
    Writes the new password and clears both token fields in one UPDATE.
    The WHERE on the token hash makes a second consume a no-op.
    Returns False when the token was already used.
    """
    updated = (
        db.query(User)
        .filter(User.id == user.id, User.reset_token_hash == token_hash)
        .update(
            {
                User.password_hash: hash_password(new_password),
                User.reset_token_hash: None,
                User.reset_token_expires_at: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        db.refresh(user)
    return bool(updated)
