"""
Partner Registration tests.

Verifies:
- initiate -> confirm_phone -> complete creates exactly one user and one shop
- Taken contacts are refused before any SMS goes out
- The magic link only completes a phone-verified registration
- Expired registrations send the partner back to the start
- shop.registered is published once per completed registration
"""

import re
from datetime import timedelta

from conftest import latest_code
from quickprint.extensions import db
from quickprint.models import EmailVerificationToken, PendingPartnerRegistration, Shop, User
from quickprint.models.identity import AUTH_PASSWORD, ROLE_SHOP
from quickprint.results import ErrorKind
from quickprint.services.registration_service import PartnerDraft
from quickprint.time_utils import utcnow


PHONE = "+919999999999"
EMAIL = "a@b.com"


def draft(**overrides):
    fields = dict(
        email=EMAIL,
        phone=PHONE,
        name="Ravi",
        password="shopPass123",
        shop_name="Ravi Prints",
        address={"street": "12 MG Road", "city": "Pune", "state": "MH", "pincode": "411001"},
        location={"lat": 18.52, "lng": 73.85},
    )
    fields.update(overrides)
    return PartnerDraft(**fields)


def magic_token(mailbox):
    match = re.search(r"verify-email\?token=([A-Za-z0-9_\-]+)", mailbox.sent[-1].body)
    assert match, "magic link missing from email"
    return match.group(1)


class TestHappyPath:
    def test_full_registration(self, services, sms, mailbox, published):
        started = services.registration.initiate(draft())
        assert started.ok
        assert started.value["phone"] == PHONE
        assert sms.sent[-1].to == PHONE

        confirmed = services.registration.confirm_phone(PHONE, latest_code(PHONE))
        assert confirmed.ok
        assert mailbox.sent[-1].to == EMAIL
        assert "http://localhost:5173/partner/verify-email?token=" in mailbox.sent[-1].body

        completed = services.registration.complete_via_email_token(magic_token(mailbox))
        assert completed.ok
        session = completed.value
        assert session.created

        user = db.session.query(User).filter_by(email=EMAIL).one()
        assert user.phone == PHONE
        assert user.role == ROLE_SHOP
        assert user.auth_method == AUTH_PASSWORD
        assert user.email_verified is True
        shop = db.session.query(Shop).filter_by(owner_id=user.id).one()
        assert shop.business_name == "Ravi Prints"
        assert shop.address["pincode"] == "411001"
        assert db.session.query(PendingPartnerRegistration).count() == 0

        assert len(published) == 1
        assert published[0].payload == {"shopId": shop.id, "ownerId": user.id, "businessName": "Ravi Prints"}
        assert services.tokens.verify_access(session.tokens.access_token).value.id == user.id

    def test_password_works_for_partner_login(self, services, mailbox):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))
        services.registration.complete_via_email_token(magic_token(mailbox))

        result = services.strategies.password.authenticate(EMAIL, "shopPass123", required_role=ROLE_SHOP)
        assert result.ok

    def test_link_is_single_use(self, services, mailbox, published):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))
        token = magic_token(mailbox)
        assert services.registration.complete_via_email_token(token).ok

        again = services.registration.complete_via_email_token(token)

        assert again.error is ErrorKind.INVALID_OR_EXPIRED_LINK
        assert db.session.query(User).count() == 1
        assert len(published) == 1


class TestInitiate:
    def test_existing_email_conflicts_before_sms(self, services, sms, make_user):
        make_user(email=EMAIL)

        result = services.registration.initiate(draft())

        assert result.error is ErrorKind.CONFLICT
        assert len(sms.sent) == 0
        assert db.session.query(PendingPartnerRegistration).count() == 0

    def test_existing_phone_conflicts_before_sms(self, services, sms, make_user):
        make_user(phone=PHONE)

        assert services.registration.initiate(draft()).error is ErrorKind.CONFLICT
        assert len(sms.sent) == 0

    def test_weak_password(self, services, sms):
        result = services.registration.initiate(draft(password="onlyletters"))

        assert result.error is ErrorKind.VALIDATION
        assert len(sms.sent) == 0

    def test_restart_replaces_earlier_attempt(self, services):
        services.registration.initiate(draft())
        services.registration.initiate(draft(shop_name="Ravi Prints 2"))

        pending = db.session.query(PendingPartnerRegistration).all()
        assert [p.shop_name for p in pending] == ["Ravi Prints 2"]

    def test_password_is_stored_hashed(self, services):
        services.registration.initiate(draft())

        pending = db.session.query(PendingPartnerRegistration).one()
        assert pending.password_hash != "shopPass123"
        assert pending.password_hash.startswith("$argon2")


class TestConfirmPhone:
    def test_wrong_code(self, services, mailbox):
        services.registration.initiate(draft())
        wrong = "0000" if latest_code(PHONE) != "0000" else "1111"

        result = services.registration.confirm_phone(PHONE, wrong)

        assert result.error is ErrorKind.INVALID_OR_EXPIRED_OTP
        assert len(mailbox.sent) == 0

    def test_expired_registration(self, services, mailbox):
        services.registration.initiate(draft())
        pending = db.session.query(PendingPartnerRegistration).one()
        pending.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        result = services.registration.confirm_phone(PHONE, latest_code(PHONE))

        assert result.error is ErrorKind.REGISTRATION_EXPIRED
        assert result.error.status == 410
        assert len(mailbox.sent) == 0

    def test_code_without_registration(self, services):
        services.otp.issue(PHONE, "sms")

        result = services.registration.confirm_phone(PHONE, latest_code(PHONE))
        assert result.error is ErrorKind.REGISTRATION_EXPIRED

    def test_marks_phone_verified(self, services):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))

        db.session.expire_all()
        pending = db.session.query(PendingPartnerRegistration).one()
        assert pending.phone_verified is True
        assert pending.email_token

    def test_missing_email_channel_leaves_code_unspent(self, services):
        services.registration.initiate(draft())
        code = latest_code(PHONE)
        services.registration.email_channel = None

        result = services.registration.confirm_phone(PHONE, code)

        assert result.error is ErrorKind.NOT_CONFIGURED
        db.session.expire_all()
        assert db.session.query(PendingPartnerRegistration).one().phone_verified is False
        assert services.otp.verify(PHONE, code).ok


class TestComplete:
    def test_unknown_token(self, services):
        result = services.registration.complete_via_email_token("not-a-real-token")
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_LINK

    def test_requires_verified_phone(self, services, published):
        services.registration.initiate(draft())
        pending = db.session.query(PendingPartnerRegistration).one()
        pending.email_token = "forged-token"
        db.session.add(EmailVerificationToken(
            token="forged-token",
            email=EMAIL,
            purpose="partner_registration",
            verified=False,
            expires_at=utcnow() + timedelta(minutes=15),
        ))
        db.session.commit()

        result = services.registration.complete_via_email_token("forged-token")

        assert result.error is ErrorKind.INVALID_OR_EXPIRED_LINK
        assert db.session.query(User).count() == 0
        assert published == []

    def test_expired_link(self, services, mailbox):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))
        token = magic_token(mailbox)
        link = db.session.query(EmailVerificationToken).filter_by(token=token).one()
        link.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        result = services.registration.complete_via_email_token(token)
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_LINK

    def test_expired_registration(self, services, mailbox):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))
        token = magic_token(mailbox)
        db.session.expire_all()
        pending = db.session.query(PendingPartnerRegistration).one()
        pending.expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

        result = services.registration.complete_via_email_token(token)
        assert result.error is ErrorKind.REGISTRATION_EXPIRED

    def test_contact_taken_meanwhile(self, services, mailbox, make_user, published):
        services.registration.initiate(draft())
        services.registration.confirm_phone(PHONE, latest_code(PHONE))
        make_user(phone=PHONE)

        result = services.registration.complete_via_email_token(magic_token(mailbox))

        assert result.error is ErrorKind.CONFLICT
        assert db.session.query(Shop).count() == 0
        assert published == []


class TestResendAndPurge:
    def test_resend_issues_new_code(self, services, sms):
        services.registration.initiate(draft())

        assert services.registration.resend(PHONE).ok
        assert len(sms.sent) == 2
        assert services.registration.confirm_phone(PHONE, latest_code(PHONE)).ok

    def test_resend_without_registration(self, services, sms):
        result = services.registration.resend(PHONE)

        assert result.error is ErrorKind.REGISTRATION_EXPIRED
        assert len(sms.sent) == 0

    def test_purge_expired(self, services):
        services.registration.initiate(draft())
        services.registration.initiate(draft(email="c@d.com", phone="+918888888888"))
        stale = db.session.query(PendingPartnerRegistration).filter_by(phone=PHONE).one()
        stale.expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

        assert services.registration.purge_expired() == 1
        assert [p.phone for p in db.session.query(PendingPartnerRegistration).all()] == ["+918888888888"]
