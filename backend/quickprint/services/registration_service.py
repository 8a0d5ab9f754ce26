# Overview: Partner (shop owner) signup gated on phone OTP and an email magic link.

"""
Partner Registration

States of a PendingPartnerRegistration:

    Initiated      phone_verified = False, SMS code sent
    PhoneVerified  phone_verified = True, email_token set, magic link sent
    Completed      user + shop created, pending row deleted

Every transition is a conditional write on the pending row. Any expiry or
mismatch sends the partner back to initiate; nothing is repaired in place.

Windows: the pending record lives PARTNER_REGISTRATION_TTL_MINUTES (30),
the SMS code OTP_TTL_SECONDS (300), the email link EMAIL_TOKEN_TTL_MINUTES (15).
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from ..config import RegistrationSettings
from ..extensions import db
from ..models import EmailVerificationToken, PendingPartnerRegistration, Shop, User
from ..models.identity import AUTH_PASSWORD, ROLE_SHOP
from ..models.otp import CHANNEL_SMS, PURPOSE_PARTNER_REGISTRATION
from ..results import ErrorKind, Result
from ..time_utils import expires_in, is_expired, to_utc_z, utcnow
from . import identity_service, passwords
from .auth_service import AuthSession
from .concurrency import compare_and_set
from .delivery import DeliveryError, magic_link_html
from .events import SHOP_REGISTERED, DomainEvent

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Registration expired or not found. Please start again."
INVALID_LINK_MESSAGE = "Invalid or expired verification link"


@dataclass(frozen=True)
class PartnerDraft:
    email: str
    phone: str
    name: str
    password: str
    shop_name: str
    address: dict
    location: dict | None = None


class PartnerRegistration:
    def __init__(self, settings: RegistrationSettings, otp_manager, token_service,
                 email_channel, event_bus):
        self.settings = settings
        self.otp_manager = otp_manager
        self.token_service = token_service
        self.email_channel = email_channel
        self.event_bus = event_bus

    def _contact_taken(self, email: str, phone: str) -> bool:
        return (
            identity_service.find_by_email(email) is not None
            or identity_service.find_by_phone(phone) is not None
        )

    def initiate(self, draft: PartnerDraft) -> Result[dict]:
        """
        Start a registration and text a code to the partner's phone.

        Fails with CONFLICT before any code is sent when the email or phone
        already belongs to an account. Earlier pending registrations for
        either contact are discarded.
        """
        if self._contact_taken(draft.email, draft.phone):
            return Result.failure(ErrorKind.CONFLICT, "An account with this email or phone already exists")

        try:
            password_hash = passwords.hash_password(draft.password)
        except passwords.PasswordValidationError as e:
            return Result.failure(ErrorKind.VALIDATION, str(e))

        db.session.execute(
            delete(PendingPartnerRegistration)
            .where(or_(
                PendingPartnerRegistration.email == draft.email,
                PendingPartnerRegistration.phone == draft.phone,
            ))
            .execution_options(synchronize_session=False)
        )
        pending = PendingPartnerRegistration(
            email=draft.email,
            phone=draft.phone,
            name=draft.name,
            password_hash=password_hash,
            shop_name=draft.shop_name,
            address=draft.address,
            location=draft.location,
            phone_verified=False,
            expires_at=expires_in(self.settings.pending_ttl),
        )
        db.session.add(pending)
        db.session.commit()

        sent = self.otp_manager.issue(draft.phone, CHANNEL_SMS)
        if not sent.ok:
            return sent

        logger.info("Partner registration initiated for %s", draft.email)
        return Result.success({
            "message": "OTP sent to your phone",
            "phone": draft.phone,
            "expiresAt": to_utc_z(pending.expires_at),
        })

    def _live_unverified(self, phone: str) -> PendingPartnerRegistration | None:
        pending = (
            db.session.query(PendingPartnerRegistration)
            .filter_by(phone=phone, phone_verified=False)
            .order_by(PendingPartnerRegistration.id.desc())
            .first()
        )
        if pending is None or is_expired(pending.expires_at):
            return None
        return pending

    def confirm_phone(self, phone: str, code: str) -> Result[dict]:
        """
        Check the SMS code, then email the magic link.

        Without an email channel the code is left unspent so the partner
        can retry once delivery is configured.
        """
        if self.email_channel is None:
            return Result.failure(ErrorKind.NOT_CONFIGURED, "Email delivery is not configured")

        verified = self.otp_manager.verify(phone, code)
        if not verified.ok:
            return verified

        pending = self._live_unverified(phone)
        if pending is None:
            return Result.failure(ErrorKind.REGISTRATION_EXPIRED, EXPIRED_MESSAGE)

        email, name = pending.email, pending.name
        token = secrets.token_urlsafe(32)
        now = utcnow()
        advanced = compare_and_set(
            update(PendingPartnerRegistration)
            .where(
                PendingPartnerRegistration.id == pending.id,
                PendingPartnerRegistration.phone_verified.is_(False),
                PendingPartnerRegistration.expires_at > now,
            )
            .values(phone_verified=True, email_token=token)
        )
        if not advanced:
            db.session.rollback()
            return Result.failure(ErrorKind.REGISTRATION_EXPIRED, EXPIRED_MESSAGE)

        db.session.add(EmailVerificationToken(
            token=token,
            email=email,
            purpose=PURPOSE_PARTNER_REGISTRATION,
            verified=False,
            expires_at=now + self.settings.email_token_ttl,
        ))
        db.session.commit()

        link = f"{self.settings.frontend_url}/partner/verify-email?token={token}"
        ttl_minutes = int(self.settings.email_token_ttl.total_seconds() // 60)
        try:
            self.email_channel.send_email(
                email,
                "Verify your QuickPrint partner account",
                magic_link_html(link, name, ttl_minutes),
            )
        except DeliveryError:
            return Result.failure(ErrorKind.DELIVERY_FAILED, "Failed to send verification email")

        logger.info("Partner phone verified, magic link sent to %s", email)
        return Result.success({"message": "Phone verified. Check your email to finish registration.", "email": email})

    def complete_via_email_token(self, token: str) -> Result[AuthSession]:
        """
        Finish registration from the magic link.

        Only a pending record whose phone has been verified can complete.
        The user, the shop, the token and the pending row change in one
        transaction; shop.registered is published after it commits.
        """
        now = utcnow()
        link = db.session.query(EmailVerificationToken).filter_by(token=token).first()
        if link is None or link.verified or is_expired(link.expires_at, now):
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, INVALID_LINK_MESSAGE)

        pending = (
            db.session.query(PendingPartnerRegistration)
            .filter_by(email_token=token, phone_verified=True)
            .first()
        )
        if pending is None:
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, INVALID_LINK_MESSAGE)
        if is_expired(pending.expires_at, now):
            return Result.failure(ErrorKind.REGISTRATION_EXPIRED, EXPIRED_MESSAGE)
        if self._contact_taken(pending.email, pending.phone):
            return Result.failure(ErrorKind.CONFLICT, "An account with this email or phone already exists")

        consumed = compare_and_set(
            update(EmailVerificationToken)
            .where(
                EmailVerificationToken.id == link.id,
                EmailVerificationToken.verified.is_(False),
                EmailVerificationToken.expires_at > now,
            )
            .values(verified=True)
        )
        if not consumed:
            db.session.rollback()
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, INVALID_LINK_MESSAGE)

        user = User(
            email=pending.email,
            phone=pending.phone,
            email_verified=True,
            name=pending.name,
            password_hash=pending.password_hash,
            role=ROLE_SHOP,
            auth_method=AUTH_PASSWORD,
            last_login_at=now,
        )
        shop = Shop(
            owner=user,
            business_name=pending.shop_name,
            address=pending.address,
            location=pending.location,
        )
        db.session.add_all([user, shop])

        removed = compare_and_set(
            delete(PendingPartnerRegistration).where(
                PendingPartnerRegistration.id == pending.id,
                PendingPartnerRegistration.phone_verified.is_(True),
            )
        )
        if not removed:
            db.session.rollback()
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, INVALID_LINK_MESSAGE)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return Result.failure(ErrorKind.CONFLICT, "An account with this email or phone already exists")

        logger.info("Partner registered: user %s, shop %s", user.id, shop.id)
        self.event_bus.publish(DomainEvent(
            name=SHOP_REGISTERED,
            payload={"shopId": shop.id, "ownerId": user.id, "businessName": shop.business_name},
        ))
        return Result.success(AuthSession(user=user, tokens=self.token_service.issue_pair(user.id), created=True))

    def resend(self, phone: str) -> Result[dict]:
        pending = self._live_unverified(phone)
        if pending is None:
            return Result.failure(ErrorKind.REGISTRATION_EXPIRED, EXPIRED_MESSAGE)

        sent = self.otp_manager.issue(phone, CHANNEL_SMS)
        if not sent.ok:
            return sent
        return Result.success({"message": "OTP resent to your phone", "phone": phone})

    def purge_expired(self) -> int:
        now = utcnow()
        pending = db.session.execute(
            delete(PendingPartnerRegistration)
            .where(PendingPartnerRegistration.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        links = db.session.execute(
            delete(EmailVerificationToken)
            .where(EmailVerificationToken.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return pending.rowcount + links.rowcount
