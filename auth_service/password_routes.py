import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from shared.errors import DeliveryError, NotFound
from .config import Settings
from .crud import get_user_by_email
from .notifier import Notifier, OutboxChannel
from .otp import OTPIssue, OTPManager, OTPPurpose
from .recovery import RecoveryTokenManager, compose_reset_email
from .schemas import (
    ForgotPasswordIn,
    GenericMsgOut,
    NewPasswordIn,
    OTPRequestIn,
    OTPResetIn,
    OTPVerifyIn,
)

logger = logging.getLogger(__name__)


def build_password_router(
    get_db,
    settings: Settings,
    notifier: Notifier,
    standard: RecoveryTokenManager,
    admin: RecoveryTokenManager,
    otp: OTPManager,
) -> APIRouter:
    router = APIRouter()

    def _issue_reset(manager: RecoveryTokenManager, db: Session, email: str) -> dict:
        issued = manager.request_reset(db, email)
        subject, body, html = compose_reset_email(issued)

        result = {
            "success": True,
            "message": "Password reset link sent to email",
            "expiresIn": f"{issued.expires_in_minutes} minutes",
        }
        try:
            receipt = notifier.send(issued.email, subject, body, html)
            if receipt.preview_url and not settings.is_production:
                result["previewUrl"] = receipt.preview_url
        except DeliveryError:
            if settings.is_production:
                raise
            logger.warning("Reset link for %s not delivered; returning it in the response", issued.email)

        if settings.echo_reset_token:
            result["message"] = "Password reset token generated successfully"
            result["resetToken"] = issued.token
            result["resetURL"] = issued.reset_url
        return result

    # =====================================================
    # Reset link: students and teachers
    # =====================================================
    @router.post("/forgot-password")
    def forgot_password(payload: ForgotPasswordIn, db: Session = Depends(get_db)):
        return _issue_reset(standard, db, payload.email)

    @router.get("/resetpassword/{token}")
    def verify_reset_token(token: str, db: Session = Depends(get_db)):
        email = standard.verify_token(db, token)
        return {"success": True, "message": "Token is valid", "email": email}

    @router.post("/resetpassword/{token}", response_model=GenericMsgOut)
    def reset_password(token: str, payload: NewPasswordIn, db: Session = Depends(get_db)):
        standard.reset_password(db, token, payload.password)
        return GenericMsgOut(message="Password reset successful")

    # =====================================================
    # Reset link: admins
    # =====================================================
    @router.post("/admin/forgot-password")
    def admin_forgot_password(payload: ForgotPasswordIn, db: Session = Depends(get_db)):
        return _issue_reset(admin, db, payload.email)

    @router.get("/admin/verify-token/{token}")
    def admin_verify_token(token: str, db: Session = Depends(get_db)):
        email = admin.verify_token(db, token)
        return {"success": True, "message": "Admin token is valid", "email": email}

    @router.post("/admin/reset-password/{token}", response_model=GenericMsgOut)
    def admin_reset_password(token: str, payload: NewPasswordIn, db: Session = Depends(get_db)):
        admin.reset_password(db, token, payload.password)
        return GenericMsgOut(message="Admin password reset successful")

    # =====================================================
    # OTP
    # =====================================================
    def _otp_response(issue: OTPIssue) -> dict:
        if issue.purpose == OTPPurpose.PASSWORD_RESET.value:
            message = "Password reset code sent successfully"
        else:
            message = "Verification code sent successfully"

        result = {
            "success": True,
            "message": message,
            "expiresAt": issue.expires_at.isoformat(),
            "purpose": issue.purpose,
        }
        if settings.is_production:
            return result

        result["testOtp"] = issue.otp
        if issue.delivery_error:
            result["message"] = "Development mode: OTP generated but email sending failed"
            result["emailError"] = issue.delivery_error
        if issue.receipt:
            result["emailProvider"] = issue.receipt.channel
            if issue.receipt.preview_url:
                result["previewUrl"] = issue.receipt.preview_url
        return result

    @router.post("/otp/request")
    def request_otp(payload: OTPRequestIn):
        return _otp_response(otp.request_otp(payload.email, payload.purpose))

    @router.post("/otp/request-password-reset")
    def request_password_reset_otp(payload: ForgotPasswordIn, db: Session = Depends(get_db)):
        if not get_user_by_email(db, payload.email):
            raise NotFound("User with this email does not exist")
        return _otp_response(otp.request_otp(payload.email, OTPPurpose.PASSWORD_RESET))

    @router.post("/otp/verify")
    def verify_otp(payload: OTPVerifyIn):
        record = otp.verify_otp(payload.email, payload.otp, payload.purpose)
        return {"success": True, "message": "OTP verified successfully", "email": record.email}

    @router.post("/otp/verify-email", response_model=GenericMsgOut)
    def verify_email(payload: OTPVerifyIn, db: Session = Depends(get_db)):
        otp.verify_email(db, payload.email, payload.otp)
        return GenericMsgOut(message="Email verified successfully")

    @router.post("/otp/reset-password", response_model=GenericMsgOut)
    def otp_reset_password(payload: OTPResetIn, db: Session = Depends(get_db)):
        otp.reset_password(db, payload.email, payload.otp, payload.new_password)
        return GenericMsgOut(message="Password has been reset successfully")

    # =====================================================
    # Sandbox preview (never mounted in production)
    # =====================================================
    if not settings.is_production:
        @router.get("/dev/outbox/{message_id}", include_in_schema=False)
        def outbox_message(message_id: str):
            channel = notifier.channel
            message = channel.get(message_id) if isinstance(channel, OutboxChannel) else None
            if message is None:
                raise NotFound("No such message")
            return {
                "success": True,
                "message_id": message.message_id,
                "to": message.to,
                "from": message.sender,
                "subject": message.subject,
                "text": message.text,
                "html": message.html,
                "sent_at": message.sent_at.isoformat(),
            }

    return router
