"""Request-scoped dependencies: the authorization guard and role gates."""

import logging

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from shared.errors import Forbidden, Unauthenticated
from .crud import get_user_by_id
from .models import User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "jwt"
TOKEN_QUERY_PARAM = "token"


def extract_token(request: Request) -> str | None:
    """Bearer header first, then the ``jwt`` cookie, then ``?token=``."""
    auth = request.headers.get("Authorization", "")
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()

    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return cookie

    query = request.query_params.get(TOKEN_QUERY_PARAM)
    if query:
        logger.debug("Using session token from query parameter")
        return query

    return None


def build_guard(get_db, sessions):
    """Return a ``get_current_user`` dependency bound to a DB and issuer."""

    def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
        token = extract_token(request)
        if not token:
            raise Unauthenticated()

        user_id = sessions.verify(token)

        user = get_user_by_id(db, user_id)
        if not user:
            raise Unauthenticated("The user belonging to this token no longer exists.")

        request.state.user = user
        return user

    return get_current_user


def require_role(get_current_user, *roles: str):
    allowed = frozenset(roles)

    def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise Forbidden()
        return user

    return _check
