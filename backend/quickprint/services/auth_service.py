# Overview: Sign-in strategies and password signups; every path ends in an AuthSession.

"""
Authentication Service

Sign-in variants are a fixed set of strategy classes:

    PhoneOtpStrategy     phone + SMS code          -> STUDENT (created on first login)
    EmailOtpStrategy     email + emailed code      -> STUDENT or SHOP by portal
    PasswordStrategy     phone/email + password    -> any role, throttled
    BackupCodeStrategy   phone/email + backup code -> any role, throttled, code burned
    MagicLinkStrategy    emailed sign-in link      -> STUDENT (created on first login)
    PasskeyStrategy      WebAuthn assertion        -> owner of the credential
    GoogleOAuthStrategy  Google ID token           -> STUDENT (created on first login)

The HTTP layer picks one strategy per endpoint. Each returns
Result[AuthSession]; business failures never raise.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..config import RegistrationSettings
from ..extensions import db
from ..models import EmailVerificationToken, User
from ..models.identity import (
    AUTH_PASSWORD,
    ROLE_SHOP,
    ROLE_STUDENT,
)
from ..models.otp import PURPOSE_SIGN_IN
from ..results import ErrorKind, Result
from ..time_utils import expires_in, is_expired, utcnow
from . import identity_service, login_throttle_service, passwords
from .concurrency import compare_and_set
from .delivery import APP_NAME, DeliveryError, sign_in_link_html
from .token_service import TokenPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    user: User
    tokens: TokenPair
    created: bool = False

    def to_dict(self) -> dict:
        body = self.tokens.to_dict()
        body["user"] = identity_service.profile(self.user)
        return body


@dataclass(frozen=True)
class RequestContext:
    """Client details recorded with login security events."""
    ip_address: str | None = None
    user_agent: str | None = None
    resource: str | None = None


class SignInStrategy:
    name = "base"

    def __init__(self, token_service):
        self.token_service = token_service

    def _open_session(self, user: User, created: bool = False) -> AuthSession:
        identity_service.mark_login(user)
        return AuthSession(user=user, tokens=self.token_service.issue_pair(user.id), created=created)


class PhoneOtpStrategy(SignInStrategy):
    name = "phone_otp"

    def __init__(self, token_service, otp_manager):
        super().__init__(token_service)
        self.otp_manager = otp_manager

    def authenticate(self, phone: str, code: str, college: str | None = None) -> Result[AuthSession]:
        verified = self.otp_manager.verify(phone, code)
        if not verified.ok:
            return verified

        user, created = identity_service.get_or_create_by_phone(phone, college)
        return Result.success(self._open_session(user, created))


class EmailOtpStrategy(SignInStrategy):
    name = "email_otp"

    def __init__(self, token_service, otp_manager):
        super().__init__(token_service)
        self.otp_manager = otp_manager

    def authenticate(self, email: str, code: str, partner: bool = False) -> Result[AuthSession]:
        """
        Students and partners share this flow but not their accounts: an
        existing account must belong to the portal it signs in through.
        """
        verified = self.otp_manager.verify(email, code)
        if not verified.ok:
            return verified

        expected_role = ROLE_SHOP if partner else ROLE_STUDENT
        user, created = identity_service.get_or_create_by_email(email, role=expected_role)
        if not created and user.role != expected_role:
            if user.role == ROLE_SHOP:
                message = "This email is registered as a Partner. Please use the Partner login."
            else:
                message = "This email is registered as a Student. Please use the Student login."
            return Result.failure(ErrorKind.FORBIDDEN, message)

        return Result.success(self._open_session(user, created))


class ThrottledStrategy(SignInStrategy):
    """
    Secret checks keyed by a phone or email identifier.

    Failures for an identifier are counted in the security event log no
    matter which secret was wrong, so password and backup code guesses share
    one lockout window.
    """

    @staticmethod
    def _find_user(identifier: str) -> User | None:
        if "@" in identifier:
            return identity_service.find_by_email(identifier)
        return identity_service.find_by_phone(identifier)

    @staticmethod
    def _lockout(identifier: str) -> Result | None:
        locked, seconds_remaining = login_throttle_service.is_account_locked(identifier)
        if not locked:
            return None
        return Result.failure(
            ErrorKind.LOCKED,
            "Account temporarily locked due to too many failed login attempts",
            {"locked": True, "retry_after_seconds": seconds_remaining},
        )

    @staticmethod
    def _reject(identifier: str, context: RequestContext) -> Result:
        failed_count = login_throttle_service.record_failed_attempt(
            identifier,
            resource=context.resource,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        remaining = login_throttle_service.MAX_FAILED_ATTEMPTS - failed_count
        if remaining <= 0:
            return Result.failure(
                ErrorKind.LOCKED,
                "Account locked due to too many failed login attempts",
                {"locked": True, "retry_after_minutes": 15},
            )
        details = {"warning": f"{remaining} attempts remaining before account lockout"} if remaining <= 3 else None
        return Result.failure(ErrorKind.INVALID_CREDENTIALS, "Invalid credentials", details)

    def _accept(self, user: User, identifier: str, context: RequestContext) -> Result[AuthSession]:
        login_throttle_service.record_successful_login(
            user.id,
            identifier,
            resource=context.resource,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        return Result.success(self._open_session(user))


class PasswordStrategy(ThrottledStrategy):
    name = "password"

    def authenticate(self, identifier: str, password: str, required_role: str | None = None,
                     context: RequestContext | None = None) -> Result[AuthSession]:
        """
        Throttled password check.

        Unknown identifiers, wrong passwords and wrong portals all count as
        failures and read the same to the caller.
        """
        context = context or RequestContext()
        locked = self._lockout(identifier)
        if locked is not None:
            return locked

        user = self._find_user(identifier)
        valid = (
            user is not None
            and passwords.verify_password(password, user.password_hash)
            and (required_role is None or user.role == required_role)
        )
        if not valid:
            return self._reject(identifier, context)
        return self._accept(user, identifier, context)


class BackupCodeStrategy(ThrottledStrategy):
    """Recovery sign-in with one of the user's backup codes; a matching code is burned."""
    name = "backup_code"

    def authenticate(self, identifier: str, code: str,
                     context: RequestContext | None = None) -> Result[AuthSession]:
        context = context or RequestContext()
        locked = self._lockout(identifier)
        if locked is not None:
            return locked

        user = self._find_user(identifier)
        if user is None or not identity_service.consume_backup_code(user, code):
            return self._reject(identifier, context)

        logger.info("Backup code used by user %s, %s left", user.id, len(user.backup_codes))
        return self._accept(user, identifier, context)


class PasskeyStrategy(SignInStrategy):
    name = "passkey"

    def __init__(self, credential_store):
        super().__init__(credential_store.token_service)
        self.credential_store = credential_store

    def authenticate(self, response: dict, user_id: int | None = None) -> Result[AuthSession]:
        result = self.credential_store.finish_authentication(response, user_id)
        if not result.ok:
            return result
        user, tokens = result.value
        return Result.success(AuthSession(user=user, tokens=tokens))


class GoogleOAuthStrategy(SignInStrategy):
    name = "google"

    def __init__(self, token_service, google_verifier):
        super().__init__(token_service)
        self.google_verifier = google_verifier

    def authenticate(self, id_token: str) -> Result[AuthSession]:
        claims = self.google_verifier.verify(id_token)
        if not claims.ok:
            return claims
        found = identity_service.find_or_create_from_google(claims.value)
        if not found.ok:
            return found
        return Result.success(self._open_session(found.value))


SIGN_IN_LINK_MESSAGE = "Sign-in link expired or invalid. Please request a new one."


class MagicLinkStrategy(SignInStrategy):
    """
    Passwordless sign-in through a single-use link emailed to the address.

    Links are EmailVerificationToken rows with purpose "sign_in" and live
    EMAIL_TOKEN_TTL_MINUTES. Partner registration links are never accepted
    here.
    """
    name = "magic_link"

    def __init__(self, token_service, email_channel, settings: RegistrationSettings):
        super().__init__(token_service)
        self.email_channel = email_channel
        self.settings = settings

    def send(self, email: str) -> Result[dict]:
        if self.email_channel is None:
            return Result.failure(ErrorKind.NOT_CONFIGURED, "Email delivery is not configured")

        token = secrets.token_urlsafe(32)
        db.session.add(EmailVerificationToken(
            token=token,
            email=email,
            purpose=PURPOSE_SIGN_IN,
            verified=False,
            expires_at=expires_in(self.settings.email_token_ttl),
        ))
        db.session.commit()

        user = identity_service.find_by_email(email)
        link = f"{self.settings.frontend_url}/auth/magic-link?token={token}"
        ttl_minutes = int(self.settings.email_token_ttl.total_seconds() // 60)
        try:
            self.email_channel.send_email(
                email,
                f"Sign in to {APP_NAME}",
                sign_in_link_html(link, user.name if user else None, ttl_minutes),
            )
        except DeliveryError:
            return Result.failure(ErrorKind.DELIVERY_FAILED, "Failed to send sign-in link")

        logger.info("Sign-in link sent to %s", email)
        return Result.success({"message": "Sign-in link sent to your email"})

    def authenticate(self, token: str) -> Result[AuthSession]:
        now = utcnow()
        link = (
            db.session.query(EmailVerificationToken)
            .filter_by(token=token, purpose=PURPOSE_SIGN_IN)
            .first()
        )
        if link is None or link.verified or is_expired(link.expires_at, now):
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, SIGN_IN_LINK_MESSAGE)

        email = link.email
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
            return Result.failure(ErrorKind.INVALID_OR_EXPIRED_LINK, SIGN_IN_LINK_MESSAGE)
        db.session.commit()

        user, created = identity_service.get_or_create_by_email(email)
        return Result.success(self._open_session(user, created))


@dataclass(frozen=True)
class SignInStrategies:
    phone_otp: PhoneOtpStrategy
    email_otp: EmailOtpStrategy
    password: PasswordStrategy
    backup_code: BackupCodeStrategy
    passkey: PasskeyStrategy
    google: GoogleOAuthStrategy
    magic_link: MagicLinkStrategy


def build_strategies(token_service, otp_manager, credential_store, google_verifier,
                     email_channel=None, registration_settings: RegistrationSettings | None = None) -> SignInStrategies:
    return SignInStrategies(
        phone_otp=PhoneOtpStrategy(token_service, otp_manager),
        email_otp=EmailOtpStrategy(token_service, otp_manager),
        password=PasswordStrategy(token_service),
        backup_code=BackupCodeStrategy(token_service),
        passkey=PasskeyStrategy(credential_store),
        google=GoogleOAuthStrategy(token_service, google_verifier),
        magic_link=MagicLinkStrategy(token_service, email_channel, registration_settings),
    )


def signup_with_password(token_service, password: str, name: str, phone: str | None = None,
                         email: str | None = None, college: str | None = None) -> Result[AuthSession]:
    """
    Create a STUDENT account keyed by phone or email and sign it in.

    Duplicates fail with CONFLICT before anything is written.
    """
    if phone and identity_service.find_by_phone(phone):
        return Result.failure(ErrorKind.CONFLICT, "Phone number already registered. Please login instead.")
    if email and identity_service.find_by_email(email):
        return Result.failure(ErrorKind.CONFLICT, "Email already registered. Please login instead.")

    try:
        password_hash = passwords.hash_password(password)
    except passwords.PasswordValidationError as e:
        return Result.failure(ErrorKind.VALIDATION, str(e))

    user = User(
        phone=phone,
        email=email,
        name=name,
        college=college,
        password_hash=password_hash,
        role=ROLE_STUDENT,
        auth_method=AUTH_PASSWORD,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Result.failure(ErrorKind.CONFLICT, "Account already exists. Please login instead.")

    logger.info("New user created with password: %s", user.id)
    identity_service.mark_login(user)
    return Result.success(AuthSession(user=user, tokens=token_service.issue_pair(user.id), created=True))
