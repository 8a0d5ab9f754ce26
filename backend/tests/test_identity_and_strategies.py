"""
Identity service and sign-in strategy tests.

Verifies:
- Email OTP keeps student and partner accounts on their own portals
- Password sign-in locks an identifier after repeated failures
- Google sign-in finds accounts by google id, then by an email the account has proven
- Backup codes are single-use, stored hashed, and sign in under the password lockout
- Magic links sign in once, only within their window
- OTP settings and password changes
"""

import re
from datetime import timedelta

import httpx
import pytest

from conftest import latest_code
from quickprint.extensions import db
from quickprint.models import EmailVerificationToken, SecurityEvent, User
from quickprint.models.identity import AUTH_GOOGLE, ROLE_SHOP, ROLE_STUDENT
from quickprint.models.otp import CHANNEL_EMAIL, CHANNEL_SMS, PURPOSE_PARTNER_REGISTRATION
from quickprint.results import ErrorKind
from quickprint.services import auth_service, identity_service, login_throttle_service, passwords
from quickprint.services.auth_service import MagicLinkStrategy
from quickprint.services.events import DomainEvent, EventBus
from quickprint.services.google_oauth import GoogleClaims, GoogleTokenVerifier
from quickprint.time_utils import utcnow


class TestPhoneOtpStrategy:
    def test_college_filled_on_later_login(self, services, make_user):
        user = make_user(phone="+911234567890")
        services.otp.issue(user.phone, CHANNEL_SMS)

        result = services.strategies.phone_otp.authenticate(user.phone, latest_code(user.phone), college="IIT Bombay")

        assert result.ok
        assert not result.value.created
        assert result.value.user.college == "IIT Bombay"


class TestEmailOtpStrategy:
    def test_partner_portal_creates_shop_role(self, services):
        services.otp.issue("owner@shop.in", CHANNEL_EMAIL)

        result = services.strategies.email_otp.authenticate("owner@shop.in", latest_code("owner@shop.in"), partner=True)

        assert result.ok
        assert result.value.created
        assert result.value.user.role == ROLE_SHOP
        assert result.value.user.email_verified is True

    def test_student_on_partner_portal_is_forbidden(self, services, make_user):
        make_user(email="kid@college.edu")
        services.otp.issue("kid@college.edu", CHANNEL_EMAIL)

        result = services.strategies.email_otp.authenticate(
            "kid@college.edu", latest_code("kid@college.edu"), partner=True
        )

        assert result.error is ErrorKind.FORBIDDEN
        assert "Student login" in result.message

    def test_wrong_code_creates_nothing(self, services):
        services.otp.issue("kid@college.edu", CHANNEL_EMAIL)
        wrong = "000000" if latest_code("kid@college.edu") != "000000" else "111111"

        result = services.strategies.email_otp.authenticate("kid@college.edu", wrong)

        assert not result.ok
        assert db.session.query(User).count() == 0


class TestPasswordStrategy:
    def test_success_records_event(self, services, student):
        result = services.strategies.password.authenticate(student.phone, "printer123")

        assert result.ok
        assert db.session.query(SecurityEvent).filter_by(success=True, user_id=student.id).count() == 1

    def test_unknown_identifier_reads_like_wrong_password(self, services, student):
        unknown = services.strategies.password.authenticate("+910000000000", "printer123")
        wrong = services.strategies.password.authenticate(student.phone, "wrong12345")

        assert unknown.error is wrong.error is ErrorKind.INVALID_CREDENTIALS
        assert unknown.message == wrong.message

    def test_warning_near_lockout(self, services, student):
        for _ in range(login_throttle_service.MAX_FAILED_ATTEMPTS - 3):
            result = services.strategies.password.authenticate(student.phone, "wrong12345")

        assert result.details == {"warning": "3 attempts remaining before account lockout"}

    def test_lockout_blocks_correct_password(self, services, student):
        for _ in range(login_throttle_service.MAX_FAILED_ATTEMPTS - 1):
            assert services.strategies.password.authenticate(student.phone, "wrong12345").error is ErrorKind.INVALID_CREDENTIALS

        last = services.strategies.password.authenticate(student.phone, "wrong12345")
        assert last.error is ErrorKind.LOCKED

        blocked = services.strategies.password.authenticate(student.phone, "printer123")
        assert blocked.error is ErrorKind.LOCKED
        assert blocked.details["retry_after_seconds"] > 0

    def test_wrong_role(self, services, student):
        result = services.strategies.password.authenticate(student.phone, "printer123", required_role=ROLE_SHOP)
        assert result.error is ErrorKind.INVALID_CREDENTIALS


class TestGoogle:
    def test_verified_email_is_linked(self, services, google, make_user):
        user = make_user(email="g@gmail.com", email_verified=True)
        google.add("token-1", sub="g-1", email="g@gmail.com", name="Gita")

        result = services.strategies.google.authenticate("token-1")

        assert result.value.user.id == user.id
        db.session.expire_all()
        assert user.google_id == "g-1"
        assert user.name == "Gita"

    def test_password_account_with_unproven_email_is_not_linked(self, services, google):
        squatter = auth_service.signup_with_password(
            services.tokens, "squat1234", "Mallory", email="victim@gmail.com"
        ).value.user
        google.add("token-1", sub="g-victim", email="victim@gmail.com", name="Vera")

        result = services.strategies.google.authenticate("token-1")

        assert result.error is ErrorKind.CONFLICT
        assert result.details == {"linkWith": "/api/auth/google/link"}
        db.session.expire_all()
        assert squatter.google_id is None
        assert squatter.name == "Mallory"
        assert db.session.query(User).count() == 1

    def test_email_otp_account_is_linked(self, services, google):
        services.otp.issue("g@gmail.com", CHANNEL_EMAIL)
        first = services.strategies.email_otp.authenticate("g@gmail.com", latest_code("g@gmail.com")).value.user
        google.add("token-1", sub="g-1", email="g@gmail.com")

        result = services.strategies.google.authenticate("token-1")

        assert result.value.user.id == first.id
        assert result.value.user.google_id == "g-1"

    def test_proving_email_later_allows_linking(self, services, google, make_user):
        user = make_user(email="g@gmail.com", password="printer123")
        google.add("token-1", sub="g-1", email="g@gmail.com")
        assert services.strategies.google.authenticate("token-1").error is ErrorKind.CONFLICT

        services.otp.issue("g@gmail.com", CHANNEL_EMAIL)
        assert services.strategies.email_otp.authenticate("g@gmail.com", latest_code("g@gmail.com")).ok

        assert services.strategies.google.authenticate("token-1").value.user.id == user.id

    def test_new_user(self, services, google):
        google.add("token-1", sub="g-1", email="g@gmail.com")

        user = services.strategies.google.authenticate("token-1").value.user

        assert user.auth_method == AUTH_GOOGLE
        assert user.role == ROLE_STUDENT
        assert user.email_verified is True

    def test_repeat_sign_in_finds_same_user(self, services, google):
        google.add("token-1", sub="g-1", email="g@gmail.com")

        first = services.strategies.google.authenticate("token-1").value.user.id
        second = services.strategies.google.authenticate("token-1").value.user.id

        assert first == second
        assert db.session.query(User).count() == 1

    def test_link_conflict(self, student, make_user):
        make_user(email="other@gmail.com", google_id="g-1")
        claims = GoogleClaims(sub="g-1", email="other@gmail.com", email_verified=True)

        result = identity_service.link_google(student, claims)
        assert result.error is ErrorKind.CONFLICT


class TestGoogleTokenVerifier:
    def _verifier(self, handler, client_id=""):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return GoogleTokenVerifier("https://oauth2.googleapis.com/tokeninfo", client_id, http_client=client)

    def test_valid_token(self):
        def handler(request):
            assert request.url.params["id_token"] == "abc"
            return httpx.Response(200, json={
                "sub": "123", "email": "G@Gmail.com", "email_verified": "true", "aud": "web-client",
            })

        result = self._verifier(handler, "web-client").verify("abc")

        assert result.ok
        assert result.value.email == "g@gmail.com"

    def test_wrong_audience(self):
        verifier = self._verifier(lambda request: httpx.Response(200, json={
            "sub": "123", "email": "g@gmail.com", "email_verified": "true", "aud": "someone-else",
        }), "web-client")

        assert verifier.verify("abc").error is ErrorKind.UNAUTHORIZED

    def test_unverified_email(self):
        verifier = self._verifier(lambda request: httpx.Response(200, json={
            "sub": "123", "email": "g@gmail.com", "email_verified": "false",
        }))

        assert verifier.verify("abc").error is ErrorKind.UNAUTHORIZED

    def test_rejected_token(self):
        verifier = self._verifier(lambda request: httpx.Response(400, json={"error": "invalid_token"}))
        assert verifier.verify("abc").error is ErrorKind.UNAUTHORIZED


class TestBackupCodes:
    def test_codes_are_hashed_and_single_use(self, student):
        codes = identity_service.generate_backup_codes(student)

        assert len(codes) == passwords.BACKUP_CODE_COUNT
        assert not set(codes) & set(student.backup_codes)

        assert identity_service.consume_backup_code(student, codes[0].lower().replace("-", ""))
        assert not identity_service.consume_backup_code(student, codes[0])
        assert identity_service.backup_code_status(student) == {
            "remaining": passwords.BACKUP_CODE_COUNT - 1,
            "hasBackupCodes": True,
        }

    def test_regenerate_replaces_old_codes(self, student):
        old = identity_service.generate_backup_codes(student)
        identity_service.generate_backup_codes(student)

        assert not identity_service.consume_backup_code(student, old[0])


class TestBackupCodeStrategy:
    def test_code_signs_in_once(self, services, student):
        codes = identity_service.generate_backup_codes(student)

        result = services.strategies.backup_code.authenticate(student.phone, codes[0])
        assert result.ok
        assert result.value.user.id == student.id

        again = services.strategies.backup_code.authenticate(student.phone, codes[0])
        assert again.error is ErrorKind.INVALID_CREDENTIALS
        assert identity_service.backup_code_status(student)["remaining"] == passwords.BACKUP_CODE_COUNT - 1

    def test_account_without_codes(self, services, student):
        result = services.strategies.backup_code.authenticate(student.phone, "ABCD-EFGH")
        assert result.error is ErrorKind.INVALID_CREDENTIALS

    def test_shares_lockout_with_password(self, services, student):
        for _ in range(login_throttle_service.MAX_FAILED_ATTEMPTS - 1):
            services.strategies.backup_code.authenticate(student.phone, "WRONG-CODE")
        codes = identity_service.generate_backup_codes(student)

        assert services.strategies.password.authenticate(student.phone, "wrong12345").error is ErrorKind.LOCKED
        assert services.strategies.backup_code.authenticate(student.phone, codes[0]).error is ErrorKind.LOCKED


def sign_in_token(mailbox):
    match = re.search(r"magic-link\?token=([A-Za-z0-9_\-]+)", mailbox.sent[-1].body)
    assert match, "sign-in link missing from email"
    return match.group(1)


class TestMagicLinkStrategy:
    def test_first_link_creates_student(self, services, mailbox):
        assert services.strategies.magic_link.send("new@college.edu").ok
        assert mailbox.sent[-1].to == "new@college.edu"
        assert mailbox.sent[-1].subject == "Sign in to QuickPrint"
        assert "http://localhost:5173/auth/magic-link?token=" in mailbox.sent[-1].body

        result = services.strategies.magic_link.authenticate(sign_in_token(mailbox))

        assert result.ok
        assert result.value.created
        assert result.value.user.role == ROLE_STUDENT
        assert result.value.user.email_verified is True

    def test_existing_user_is_greeted_and_signed_in(self, services, mailbox, make_user):
        user = make_user(email="asha@college.edu", name="Asha")

        services.strategies.magic_link.send("asha@college.edu")
        assert "Hi Asha," in mailbox.sent[-1].body

        result = services.strategies.magic_link.authenticate(sign_in_token(mailbox))
        assert result.value.user.id == user.id
        assert not result.value.created

    def test_link_is_single_use(self, services, mailbox):
        services.strategies.magic_link.send("new@college.edu")
        token = sign_in_token(mailbox)
        assert services.strategies.magic_link.authenticate(token).ok

        again = services.strategies.magic_link.authenticate(token)
        assert again.error is ErrorKind.INVALID_OR_EXPIRED_LINK

    def test_expired_link(self, services, mailbox):
        services.strategies.magic_link.send("new@college.edu")
        token = sign_in_token(mailbox)
        link = db.session.query(EmailVerificationToken).filter_by(token=token).one()
        link.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        result = services.strategies.magic_link.authenticate(token)

        assert result.error is ErrorKind.INVALID_OR_EXPIRED_LINK
        assert db.session.query(User).count() == 0

    def test_partner_registration_link_is_refused(self, services):
        db.session.add(EmailVerificationToken(
            token="partner-token",
            email="owner@shop.in",
            purpose=PURPOSE_PARTNER_REGISTRATION,
            verified=False,
            expires_at=utcnow() + timedelta(minutes=15),
        ))
        db.session.commit()

        result = services.strategies.magic_link.authenticate("partner-token")

        assert result.error is ErrorKind.INVALID_OR_EXPIRED_LINK
        db.session.expire_all()
        assert db.session.query(EmailVerificationToken).one().verified is False

    def test_without_email_channel(self, services):
        strategy = MagicLinkStrategy(services.tokens, None, services.settings.registration)
        assert strategy.send("new@college.edu").error is ErrorKind.NOT_CONFIGURED


class TestAccountSettings:
    def test_email_otp_needs_an_address(self, student):
        result = identity_service.update_otp_settings(student, True, "email")
        assert result.error is ErrorKind.VALIDATION

    def test_email_owned_by_someone_else(self, student, make_user):
        make_user(email="taken@college.edu")

        result = identity_service.update_otp_settings(student, True, "email", "taken@college.edu")
        assert result.error is ErrorKind.CONFLICT

    def test_new_email_is_unverified(self, make_user):
        user = make_user(email="old@college.edu", email_verified=True)

        assert identity_service.update_otp_settings(user, True, "email", "new@college.edu").ok
        assert user.email_verified is False

    def test_unknown_method(self, student):
        assert identity_service.update_otp_settings(student, True, "carrier-pigeon").error is ErrorKind.VALIDATION

    def test_set_password_replaces_hash(self, student):
        assert identity_service.set_password(student, "newPass123", "newPass123").ok
        assert passwords.verify_password("newPass123", student.password_hash)
        assert not passwords.verify_password("printer123", student.password_hash)

    def test_set_weak_password(self, student):
        result = identity_service.set_password(student, "abcdefgh", "abcdefgh")
        assert result.error is ErrorKind.VALIDATION


class TestPasswords:
    @pytest.mark.parametrize("weak", ["", "short1", "lettersonly", "12345678"])
    def test_weak_passwords(self, weak):
        with pytest.raises(passwords.PasswordValidationError):
            passwords.validate_password_strength(weak)

    def test_verify_never_raises(self):
        assert passwords.verify_password("printer123", "not-a-hash") is False
        assert passwords.verify_password("printer123", None) is False


class TestEventBus:
    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe("shop.registered", broken)
        bus.subscribe("shop.registered", seen.append)

        bus.publish(DomainEvent(name="shop.registered", payload={"shopId": 1}))

        assert [e.payload for e in seen] == [{"shopId": 1}]


class TestMaintenance:
    def test_purge_expired_command(self, app, services):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["maintenance", "purge-expired"])

        assert result.exit_code == 0
        assert "otp_challenges: 0 deleted" in result.output

    def test_create_admin_command(self, app):
        runner = app.test_cli_runner()

        result = runner.invoke(args=[
            "users", "create-admin", "--email", "Admin@QuickPrint.in", "--password", "adminPass1",
        ])

        assert result.exit_code == 0
        assert "OK Created admin" in result.output
        assert db.session.query(User).filter_by(email="admin@quickprint.in", role="ADMIN").count() == 1
