import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from shared.errors import NotFound, Unauthenticated, ValidationError
from shared.utils import verify_password
from .config import Settings
from .crud import (
    create_user,
    get_user_by_email,
    get_user_by_id,
    list_users,
    record_login,
    update_user_password,
    update_user_role,
)
from .deps import SESSION_COOKIE, require_role
from .models import ROLE_VALUES, Role, User
from .schemas import (
    CreateUserIn,
    GenericMsgOut,
    LoginIn,
    RegisterIn,
    RoleUpdateIn,
    UpdatePasswordIn,
    UserOut,
)
from .sessions import SessionIssuer

logger = logging.getLogger(__name__)


def user_out(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(mode="json")


def build_router(get_db, settings: Settings, sessions: SessionIssuer, get_current_user) -> APIRouter:
    router = APIRouter()
    admin_only = require_role(get_current_user, Role.ADMIN.value)

    def _send_token(user: User, response: Response) -> dict:
        token = sessions.issue(user.id)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=token,
            max_age=settings.access_token_expire_minutes * 60,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
        )
        return {"success": True, "token": token, "data": {"user": user_out(user)}}

    # -------------------------
    # Register (students only)
    # -------------------------
    @router.post("/register", status_code=201)
    def register(payload: RegisterIn, response: Response, db: Session = Depends(get_db)):
        if payload.role and payload.role != Role.STUDENT.value:
            raise ValidationError(
                "Only students can register. Teachers and admins must be created by an admin."
            )

        if get_user_by_email(db, payload.email):
            raise ValidationError("Email already registered")

        u = create_user(
            db,
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=Role.STUDENT.value,
            phone_number=payload.phone_number,
            year=payload.year,
            student_code=payload.student_code,
        )
        logger.info("Registered student %s", u.email)
        return _send_token(u, response)

    # -------------------------
    # Login / Logout
    # -------------------------
    @router.post("/login")
    def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
        u = get_user_by_email(db, payload.email)
        if not u or not verify_password(payload.password, u.password_hash):
            raise Unauthenticated("Incorrect email or password")

        record_login(db, u)
        return _send_token(u, response)

    @router.post("/logout", response_model=GenericMsgOut)
    def logout(response: Response):
        response.delete_cookie(SESSION_COOKIE)
        return GenericMsgOut(message="User logged out successfully")

    # -------------------------
    # Current user
    # -------------------------
    @router.get("/me")
    def me(user: User = Depends(get_current_user)):
        return {"success": True, "data": {"user": user_out(user)}}

    @router.patch("/update-my-password")
    def update_my_password(
        payload: UpdatePasswordIn,
        response: Response,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ):
        # the guard's user came from the same request-scoped session
        if not verify_password(payload.current_password, user.password_hash):
            raise Unauthenticated("Your current password is wrong")

        update_user_password(db, user, payload.new_password)
        return _send_token(user, response)

    # -------------------------
    # Admin: user management
    # -------------------------
    @router.get("/users")
    def get_users(role: str | None = None, _: User = Depends(admin_only), db: Session = Depends(get_db)):
        if role and role not in ROLE_VALUES:
            raise ValidationError(f"Unknown role: {role}")
        users = list_users(db, role)
        return {"success": True, "results": len(users), "data": {"users": [user_out(u) for u in users]}}

    @router.post("/users", status_code=201)
    def create_staff_user(payload: CreateUserIn, admin: User = Depends(admin_only), db: Session = Depends(get_db)):
        if get_user_by_email(db, payload.email):
            raise ValidationError("Email already registered")

        u = create_user(
            db,
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role,
            phone_number=payload.phone_number,
            year=payload.year,
            student_code=payload.student_code,
        )
        logger.info("Admin %s created %s account %s", admin.email, u.role, u.email)
        return {"success": True, "data": {"user": user_out(u)}}

    @router.patch("/users/{user_id}/role")
    def change_role(
        user_id: int,
        payload: RoleUpdateIn,
        admin: User = Depends(admin_only),
        db: Session = Depends(get_db),
    ):
        u = get_user_by_id(db, user_id)
        if not u:
            raise NotFound("No user found with that ID")

        update_user_role(db, u, payload.role)
        logger.info("Admin %s changed role of %s to %s", admin.email, u.email, u.role)
        return {"success": True, "data": {"user": user_out(u)}}

    return router
