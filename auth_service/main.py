import logging
import traceback
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.database import db_dependency, init_db, make_engine, make_session_factory
from shared.errors import AuthError
from shared.utils import utcnow
from .config import Settings
from .deps import build_guard
from .notifier import Notifier, build_notifier
from .otp import InMemoryOTPStore, OTPManager, OTPStore
from .password_routes import build_password_router
from .recovery import ADMIN_SCOPE, STANDARD_SCOPE, RecoveryTokenManager
from .routes import build_router
from .sessions import SessionIssuer

logger = logging.getLogger(__name__)


def _error_body(settings: Settings, message: str, exc: BaseException | None = None) -> dict:
    body = {"success": False, "message": message}
    if exc is not None and not settings.is_production:
        body["stack"] = traceback.format_exception(exc)
    return body


def register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(settings, exc.message, exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:])
        message = first.get("msg", "Invalid input")
        if field:
            message = f"{field}: {message}"
        return JSONResponse(status_code=400, content={"success": False, "message": message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_body(settings, "Internal Server Error", exc))


def create_app(
    settings: Settings | None = None,
    *,
    session_factory=None,
    notifier: Notifier | None = None,
    otp_store: OTPStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the service.

    Run with ``uvicorn auth_service.main:create_app --factory``.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if session_factory is None:
        engine = make_engine(settings.database_url)
        session_factory = make_session_factory(engine)
        init_db(engine)
    get_db = db_dependency(session_factory)

    if notifier is None:
        notifier = build_notifier(settings)

    sessions = SessionIssuer(settings, clock)
    get_current_user = build_guard(get_db, sessions)
    standard = RecoveryTokenManager(STANDARD_SCOPE, settings, clock)
    admin = RecoveryTokenManager(ADMIN_SCOPE, settings, clock)
    otp = OTPManager(otp_store if otp_store is not None else InMemoryOTPStore(), notifier, settings, clock)

    app = FastAPI(title="Digital Library Auth Service", version="1.0.0")
    app.state.settings = settings
    app.state.notifier = notifier
    app.state.otp = otp

    register_error_handlers(app, settings)

    app.include_router(
        build_router(get_db, settings, sessions, get_current_user),
        prefix=settings.api_prefix,
        tags=["auth"],
    )
    app.include_router(
        build_password_router(get_db, settings, notifier, standard, admin, otp),
        prefix=settings.api_prefix,
        tags=["password"],
    )

    @app.get("/health")
    def health():
        return {
            "success": True,
            "service": "auth-service",
            "status": "ok",
            "environment": settings.app_env,
            "mail_channel": notifier.channel.name,
        }

    logger.info("Auth service ready (%s, mail via %s)", settings.app_env, notifier.channel.name)
    return app
