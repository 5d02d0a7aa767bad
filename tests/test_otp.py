"""Tests for the one-time passcode manager."""

from datetime import timedelta

import pytest

from auth_service.notifier import Channel, Notifier
from auth_service.otp import (
    InMemoryOTPStore,
    OTPExpired,
    OTPManager,
    OTPMismatch,
    OTPNotFound,
    OTPNotUsable,
    OTPPurpose,
    OTPPurposeMismatch,
    OTPRecord,
)
from shared.errors import ChannelAuthError, DeliveryError, InvalidOrExpired, NotFound, ValidationError
from shared.utils import verify_password
from tests.conftest import make_settings


class SequenceRNG:
    """Hands out fixed codes in order."""

    def __init__(self, *codes: int):
        self.codes = list(codes)

    def randint(self, a: int, b: int) -> int:
        return self.codes.pop(0)


class BrokenChannel(Channel):
    name = "Broken"

    def deliver(self, msg):
        raise ChannelAuthError("Broken authentication failed")


@pytest.fixture
def manager(otp_store, notifier, settings, clock):
    return OTPManager(otp_store, notifier, settings, clock)


def _broken_notifier() -> Notifier:
    return Notifier(BrokenChannel(), sender_address="noreply@library.edu", sleep=lambda s: None)


class TestRequestOTP:
    def test_issues_six_digit_code_valid_for_ten_minutes(self, manager, otp_store, clock, outbox):
        issue = manager.request_otp("Stu@Library.edu")

        assert issue.email == "stu@library.edu"
        assert len(issue.otp) == 6 and issue.otp.isdigit()
        assert 100000 <= int(issue.otp) <= 999999
        assert issue.purpose == "verification"
        assert issue.expires_at == clock() + timedelta(minutes=10)

        record = otp_store.get("stu@library.edu")
        assert record.otp == issue.otp
        assert record.verified is False

    def test_code_is_mailed(self, manager, outbox):
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)

        [message] = outbox.messages
        assert message.to == "stu@library.edu"
        assert message.subject == "Password Reset Code"
        assert issue.otp in message.text
        assert issue.receipt.channel == "Outbox"
        assert issue.receipt.preview_url.endswith(f"/dev/outbox/{message.message_id}")

    def test_verification_subject(self, manager, outbox):
        manager.request_otp("stu@library.edu")
        assert outbox.messages[0].subject == "Your Verification Code"

    def test_invalid_purpose_rejected(self, manager, otp_store):
        with pytest.raises(ValidationError, match="Invalid purpose"):
            manager.request_otp("stu@library.edu", "login")
        assert len(otp_store) == 0

    def test_missing_email_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.request_otp("   ")

    def test_new_request_replaces_previous_code(self, otp_store, notifier, settings, clock):
        manager = OTPManager(otp_store, notifier, settings, clock, rng=SequenceRNG(111111, 222222))
        manager.request_otp("stu@library.edu")
        manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)

        with pytest.raises(OTPMismatch):
            manager.verify_otp("stu@library.edu", "111111")
        record = manager.verify_otp("stu@library.edu", "222222")
        assert record.purpose == "password_reset"

    def test_delivery_failure_tolerated_outside_production(self, otp_store, settings, clock):
        manager = OTPManager(otp_store, _broken_notifier(), settings, clock)

        issue = manager.request_otp("stu@library.edu")

        assert issue.receipt is None
        assert issue.delivery_error == "Broken authentication failed"
        assert otp_store.get("stu@library.edu") is not None

    def test_delivery_failure_raised_in_production(self, otp_store, clock):
        manager = OTPManager(otp_store, _broken_notifier(), make_settings(app_env="production"), clock)

        with pytest.raises(DeliveryError):
            manager.request_otp("stu@library.edu")


class TestVerifyOTP:
    def test_marks_verified_and_extends_into_grace_window(self, manager, clock):
        issue = manager.request_otp("stu@library.edu")
        clock.advance(minutes=9)

        record = manager.verify_otp("stu@library.edu", issue.otp)

        assert record.verified is True
        assert record.verified_at == clock()
        assert record.expires_at == clock() + timedelta(minutes=5)

    def test_early_verify_keeps_original_expiry(self, manager, clock):
        issue = manager.request_otp("stu@library.edu")
        record = manager.verify_otp("stu@library.edu", issue.otp)
        assert record.expires_at == issue.expires_at

    def test_wrong_code_keeps_record(self, manager, otp_store):
        issue = manager.request_otp("stu@library.edu")
        wrong = "000000" if issue.otp != "000000" else "111111"

        with pytest.raises(OTPMismatch):
            manager.verify_otp("stu@library.edu", wrong)
        assert otp_store.get("stu@library.edu").otp == issue.otp

    def test_purpose_must_match_when_given(self, manager):
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)
        with pytest.raises(OTPPurposeMismatch):
            manager.verify_otp("stu@library.edu", issue.otp, "verification")

    def test_unknown_address(self, manager):
        with pytest.raises(OTPNotFound):
            manager.verify_otp("nobody@library.edu", "123456")

    def test_expired_code_is_deleted(self, manager, otp_store, clock):
        issue = manager.request_otp("stu@library.edu")
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(OTPExpired):
            manager.verify_otp("stu@library.edu", issue.otp)
        assert otp_store.get("stu@library.edu") is None

        with pytest.raises(OTPNotFound):
            manager.verify_otp("stu@library.edu", issue.otp)

    def test_otp_errors_are_invalid_or_expired(self):
        for error in (OTPNotFound, OTPExpired, OTPPurposeMismatch, OTPMismatch, OTPNotUsable):
            assert issubclass(error, InvalidOrExpired)
            assert error().status_code == 400


class TestResetPassword:
    def test_verify_then_reset_inside_grace_window(self, manager, db, make_user, clock, otp_store):
        user = make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu")

        clock.advance(minutes=9)
        manager.verify_otp("stu@library.edu", issue.otp)
        # past the original ten minutes, inside the grace window
        clock.advance(minutes=4)
        manager.reset_password(db, "stu@library.edu", issue.otp, "BrandNew123")

        db.refresh(user)
        assert verify_password("BrandNew123", user.password_hash)
        assert otp_store.get("stu@library.edu") is None

    def test_grace_window_runs_out(self, manager, db, make_user, clock):
        make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu")

        clock.advance(minutes=9)
        manager.verify_otp("stu@library.edu", issue.otp)
        clock.advance(minutes=6)

        with pytest.raises(OTPExpired):
            manager.reset_password(db, "stu@library.edu", issue.otp, "BrandNew123")

    def test_unverified_verification_code_is_not_usable(self, manager, db, make_user, otp_store):
        make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu")

        with pytest.raises(OTPNotUsable):
            manager.reset_password(db, "stu@library.edu", issue.otp, "BrandNew123")
        assert otp_store.get("stu@library.edu") is not None

    def test_password_reset_code_works_without_verify_and_only_once(self, manager, db, make_user):
        user = make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)

        manager.reset_password(db, "stu@library.edu", issue.otp, "BrandNew123")
        db.refresh(user)
        assert verify_password("BrandNew123", user.password_hash)

        with pytest.raises(OTPNotFound):
            manager.reset_password(db, "stu@library.edu", issue.otp, "Another123")

    def test_concurrent_reset_with_same_code_loses(self, notifier, settings, clock, db, make_user):
        class RacingStore(InMemoryOTPStore):
            """Another reset claims the code between the check and the claim."""

            def pop_if(self, email, record):
                self.delete(email)
                return super().pop_if(email, record)

        user = make_user("stu@library.edu")
        manager = OTPManager(RacingStore(), notifier, settings, clock)
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)

        with pytest.raises(OTPNotFound):
            manager.reset_password(db, "stu@library.edu", issue.otp, "BrandNew123")
        db.refresh(user)
        assert verify_password("Password123", user.password_hash)

    def test_unknown_user(self, manager, db):
        issue = manager.request_otp("ghost@library.edu", OTPPurpose.PASSWORD_RESET)
        with pytest.raises(NotFound):
            manager.reset_password(db, "ghost@library.edu", issue.otp, "BrandNew123")

    def test_short_password_rejected_before_code_is_spent(self, manager, db, make_user, otp_store):
        make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)

        with pytest.raises(ValidationError):
            manager.reset_password(db, "stu@library.edu", issue.otp, "short")
        assert otp_store.get("stu@library.edu") is not None

    def test_wrong_code_does_not_reset(self, manager, db, make_user):
        user = make_user("stu@library.edu")
        issue = manager.request_otp("stu@library.edu", OTPPurpose.PASSWORD_RESET)
        wrong = "000000" if issue.otp != "000000" else "111111"

        with pytest.raises(OTPMismatch):
            manager.reset_password(db, "stu@library.edu", wrong, "BrandNew123")
        db.refresh(user)
        assert verify_password("Password123", user.password_hash)


class TestVerifyEmail:
    def test_marks_user_verified_and_consumes_code(self, manager, db, make_user, otp_store):
        user = make_user("stu@library.edu")
        assert user.email_verified is False
        issue = manager.request_otp("stu@library.edu")

        manager.verify_email(db, "stu@library.edu", issue.otp)

        db.refresh(user)
        assert user.email_verified is True
        assert otp_store.get("stu@library.edu") is None

    def test_unknown_user(self, manager, db):
        issue = manager.request_otp("ghost@library.edu")
        with pytest.raises(NotFound):
            manager.verify_email(db, "ghost@library.edu", issue.otp)


def test_in_memory_store_is_keyed_by_address():
    store = InMemoryOTPStore()
    assert store.get("a@library.edu") is None
    store.delete("a@library.edu")
    assert len(store) == 0


def test_pop_if_deletes_only_the_expected_record(clock):
    store = InMemoryOTPStore()
    old = OTPRecord("a@library.edu", "111111", "verification", clock(), clock())
    new = OTPRecord("a@library.edu", "222222", "verification", clock(), clock())
    store.set("a@library.edu", new)

    assert store.pop_if("a@library.edu", old) is False
    assert store.get("a@library.edu") == new

    assert store.pop_if("a@library.edu", new) is True
    assert store.pop_if("a@library.edu", new) is False
    assert store.get("a@library.edu") is None
