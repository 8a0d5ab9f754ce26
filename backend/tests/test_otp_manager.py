"""
OTP Manager tests.

Verifies:
- Codes are 4 digits over SMS and 6 over email
- A new code for the same target invalidates the previous one
- Verification is single-use
- Wrong and expired codes fail the same way
- The attempt cap locks the challenge
- Failed delivery leaves no usable code behind
"""

from datetime import timedelta

import pytest

from conftest import latest_code
from quickprint.extensions import db
from quickprint.models import OtpChallenge
from quickprint.models.otp import CHANNEL_EMAIL, CHANNEL_SMS
from quickprint.results import ErrorKind
from quickprint.services.delivery import DeliveryError
from quickprint.time_utils import utcnow


PHONE = "+911234567890"
EMAIL = "student@college.edu"


class FailingSmsChannel:
    def send_sms(self, to, body):
        raise DeliveryError("gateway down")


class TestIssue:
    def test_sms_code_is_four_digits_and_sent(self, services, sms):
        assert services.otp.issue(PHONE, CHANNEL_SMS).ok

        code = latest_code(PHONE)
        assert len(code) == 4 and code.isdigit()
        assert sms.sent[-1].to == PHONE
        assert code in sms.sent[-1].body

    def test_email_code_is_six_digits_and_sent(self, services, mailbox):
        assert services.otp.issue(EMAIL, CHANNEL_EMAIL).ok

        code = latest_code(EMAIL)
        assert len(code) == 6 and code.isdigit()
        assert mailbox.sent[-1].to == EMAIL
        assert code in mailbox.sent[-1].subject

    def test_reissue_keeps_one_row_per_target(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        services.otp.issue(PHONE, CHANNEL_SMS)

        assert db.session.query(OtpChallenge).filter_by(target=PHONE).count() == 1

    def test_reissue_invalidates_previous_code(self, services, monkeypatch):
        codes = iter(["1111", "2222"])
        monkeypatch.setattr("quickprint.services.otp_manager.generate_code", lambda length: next(codes))

        services.otp.issue(PHONE, CHANNEL_SMS)
        services.otp.issue(PHONE, CHANNEL_SMS)

        first = services.otp.verify(PHONE, "1111")
        assert not first.ok
        assert first.error is ErrorKind.INVALID_OR_EXPIRED_OTP
        assert services.otp.verify(PHONE, "2222").ok

    def test_reissue_resets_attempts(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        wrong = "0000" if latest_code(PHONE) != "0000" else "9999"
        for _ in range(3):
            services.otp.verify(PHONE, wrong)

        services.otp.issue(PHONE, CHANNEL_SMS)

        db.session.expire_all()
        assert db.session.query(OtpChallenge).filter_by(target=PHONE).one().attempts == 0

    def test_delivery_failure_removes_code(self, app, services):
        services.otp.sms_channel = FailingSmsChannel()

        result = services.otp.issue(PHONE, CHANNEL_SMS)

        assert result.error is ErrorKind.DELIVERY_FAILED
        assert db.session.query(OtpChallenge).filter_by(target=PHONE).count() == 0

    def test_missing_channel_is_not_configured(self, services):
        services.otp.sms_channel = None

        result = services.otp.issue(PHONE, CHANNEL_SMS)

        assert result.error is ErrorKind.NOT_CONFIGURED
        assert db.session.query(OtpChallenge).count() == 0


class TestVerify:
    def test_correct_code_verifies_once(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        code = latest_code(PHONE)

        assert services.otp.verify(PHONE, code).ok
        again = services.otp.verify(PHONE, code)
        assert again.error is ErrorKind.INVALID_OR_EXPIRED_OTP

    def test_wrong_code_fails(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        wrong = "0000" if latest_code(PHONE) != "0000" else "1111"

        result = services.otp.verify(PHONE, wrong)
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_OTP

    def test_expired_code_fails_like_wrong_code(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        code = latest_code(PHONE)
        challenge = db.session.query(OtpChallenge).filter_by(target=PHONE).one()
        challenge.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        expired = services.otp.verify(PHONE, code)
        wrong = services.otp.verify(PHONE, "not-it")

        assert expired.error is wrong.error is ErrorKind.INVALID_OR_EXPIRED_OTP
        assert expired.message == wrong.message

    def test_unknown_target_fails(self, services):
        result = services.otp.verify("+910000000000", "1234")
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_OTP

    def test_attempt_cap_locks_challenge(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        code = latest_code(PHONE)
        wrong = "0000" if code != "0000" else "1111"

        for _ in range(services.settings.otp.max_attempts):
            assert not services.otp.verify(PHONE, wrong).ok

        locked = services.otp.verify(PHONE, code)
        assert locked.error is ErrorKind.INVALID_OR_EXPIRED_OTP

    def test_attempts_below_cap_still_allow_correct_code(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        code = latest_code(PHONE)
        wrong = "0000" if code != "0000" else "1111"

        for _ in range(services.settings.otp.max_attempts - 1):
            services.otp.verify(PHONE, wrong)

        assert services.otp.verify(PHONE, code).ok


class TestPurge:
    def test_purge_removes_only_expired(self, services):
        services.otp.issue(PHONE, CHANNEL_SMS)
        services.otp.issue(EMAIL, CHANNEL_EMAIL)
        stale = db.session.query(OtpChallenge).filter_by(target=PHONE).one()
        stale.expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

        assert services.otp.purge_expired() == 1
        remaining = [c.target for c in db.session.query(OtpChallenge).all()]
        assert remaining == [EMAIL]


@pytest.mark.parametrize("length", [4, 6])
def test_generate_code_length(length):
    from quickprint.services.otp_manager import generate_code

    for _ in range(20):
        code = generate_code(length)
        assert len(code) == length and code.isdigit()
