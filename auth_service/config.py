import os
from dataclasses import dataclass

from dotenv import load_dotenv

from shared.database import build_mysql_url
from shared.errors import ConfigError


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL", "")
    if url:
        return url
    host = os.getenv("MYSQL_PUBLIC_URL", "")
    if not host:
        raise ConfigError("Database not configured. Set DATABASE_URL or MYSQL_PUBLIC_URL/MYSQLPORT/...")
    return build_mysql_url(
        host=host,
        port=os.getenv("MYSQLPORT", "3306"),
        user=os.getenv("MYSQLUSER", ""),
        password=os.getenv("MYSQLPASSWORD", ""),
        db=os.getenv("MYSQLDATABASE", ""),
    )


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    app_env: str = "development"
    log_level: str = "INFO"
    api_prefix: str = "/api"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30 * 24 * 60
    cookie_secure: bool = False

    frontend_url: str = "http://localhost:5173"
    public_base_url: str = "http://localhost:8000"
    reset_token_expire_minutes: int = 30
    expose_reset_token: bool = False

    otp_expire_minutes: int = 10
    otp_grace_minutes: int = 5

    # mail channels, tried in this order: gmail, brevo, generic smtp
    gmail_user: str = ""
    gmail_app_password: str = ""
    brevo_smtp_user: str = ""
    brevo_smtp_pass: str = ""
    brevo_from_email: str = ""
    brevo_from_name: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    email_from_address: str = ""
    email_from_name: str = "Digital Library"
    notifier_sandbox: str = "outbox"
    fallback_to_sandbox: bool = False
    mail_timeout_seconds: float = 10.0
    mail_max_attempts: int = 3
    mail_backoff_seconds: float = 1.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def sandbox_allowed(self) -> bool:
        return not self.is_production or self.fallback_to_sandbox

    @property
    def echo_reset_token(self) -> bool:
        """Return plaintext reset tokens in the HTTP response as well as by mail."""
        return not self.is_production or self.expose_reset_token

    @property
    def sender_address(self) -> str:
        return (
            self.brevo_from_email
            or self.email_from_address
            or self.smtp_from
            or self.gmail_user
            or self.brevo_smtp_user
            or self.smtp_user
            or "noreply@example.com"
        )

    @property
    def sender_name(self) -> str:
        return self.brevo_from_name or self.email_from_name

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        jwt_secret = os.getenv("JWT_SECRET", "")
        if not jwt_secret:
            raise ConfigError("JWT_SECRET not configured")

        return cls(
            database_url=_database_url(),
            jwt_secret=jwt_secret,
            app_env=os.getenv("APP_ENV", "development").strip().lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_prefix=os.getenv("API_PREFIX", "/api").rstrip("/"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(30 * 24 * 60))),
            cookie_secure=_env_bool("COOKIE_SECURE"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
            reset_token_expire_minutes=int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "30")),
            expose_reset_token=_env_bool("EXPOSE_RESET_TOKEN"),
            otp_expire_minutes=int(os.getenv("OTP_EXPIRE_MINUTES", "10")),
            otp_grace_minutes=int(os.getenv("OTP_GRACE_MINUTES", "5")),
            gmail_user=os.getenv("GMAIL_USER", ""),
            gmail_app_password=os.getenv("GMAIL_APP_PASSWORD", ""),
            brevo_smtp_user=os.getenv("BREVO_SMTP_USER", ""),
            brevo_smtp_pass=os.getenv("BREVO_SMTP_PASS", ""),
            brevo_from_email=os.getenv("BREVO_FROM_EMAIL", ""),
            brevo_from_name=os.getenv("BREVO_FROM_NAME", ""),
            smtp_host=os.getenv("SMTP_HOST", ""),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_pass=os.getenv("SMTP_PASS", ""),
            smtp_from=os.getenv("SMTP_FROM", ""),
            email_from_address=os.getenv("EMAIL_FROM_ADDRESS", ""),
            email_from_name=os.getenv("EMAIL_FROM_NAME", "Digital Library"),
            notifier_sandbox=os.getenv("NOTIFIER_SANDBOX", "outbox").strip().lower(),
            fallback_to_sandbox=_env_bool("FALLBACK_TO_SANDBOX"),
            mail_timeout_seconds=float(os.getenv("MAIL_TIMEOUT_SECONDS", "10")),
            mail_max_attempts=int(os.getenv("MAIL_MAX_ATTEMPTS", "3")),
            mail_backoff_seconds=float(os.getenv("MAIL_BACKOFF_SECONDS", "1")),
        )
