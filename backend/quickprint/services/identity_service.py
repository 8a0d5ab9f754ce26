# Overview: Identity lookups and account settings (OTP preference, password, backup codes, Google link).

"""
Identity Service

Users are created on the first successful verification of any sign-in
strategy and are never deleted implicitly. Lookups take already normalized
values: phones in +91XXXXXXXXXX form, emails lower-cased.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User
from ..models.identity import (
    AUTH_EMAIL_OTP,
    AUTH_GOOGLE,
    AUTH_PHONE_OTP,
    OTP_METHOD_EMAIL,
    OTP_METHODS,
    ROLE_STUDENT,
)
from ..results import ErrorKind, Result
from ..time_utils import utcnow
from . import passwords
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)


def find_by_id(user_id: int) -> User | None:
    return db.session.get(User, user_id)


def find_by_phone(phone: str) -> User | None:
    return db.session.query(User).filter_by(phone=phone).first()


def find_by_email(email: str) -> User | None:
    return db.session.query(User).filter_by(email=email).first()


def find_by_google_id(google_id: str) -> User | None:
    return db.session.query(User).filter_by(google_id=google_id).first()


def _get_or_create(lookup, build) -> tuple[User, bool]:
    """
    Return (user, created).

    Two first-time verifications for the same contact can race; the loser's
    INSERT hits the unique index and the retry finds the winner's row.
    """
    def _op():
        user = lookup()
        if user is not None:
            return user, False
        user = build()
        db.session.add(user)
        db.session.commit()
        return user, True

    return run_with_retry(_op, retry_on=(IntegrityError,))


def get_or_create_by_phone(phone: str, college: str | None = None) -> tuple[User, bool]:
    user, created = _get_or_create(
        lambda: find_by_phone(phone),
        lambda: User(phone=phone, college=college, role=ROLE_STUDENT, auth_method=AUTH_PHONE_OTP),
    )
    if created:
        logger.info("New user created by phone: %s", user.id)
    elif college and not user.college:
        user.college = college
        db.session.commit()
    return user, created


def get_or_create_by_email(email: str, role: str = ROLE_STUDENT) -> tuple[User, bool]:
    """Only called once the caller has proven control of email, so the address is marked verified."""
    user, created = _get_or_create(
        lambda: find_by_email(email),
        lambda: User(
            email=email,
            email_verified=True,
            role=role,
            auth_method=AUTH_EMAIL_OTP,
            otp_method=OTP_METHOD_EMAIL,
        ),
    )
    if created:
        logger.info("New user created by email: %s (%s)", user.id, role)
    elif not user.email_verified:
        user.email_verified = True
        db.session.commit()
    return user, created


def mark_login(user: User) -> None:
    user.last_login_at = utcnow()
    db.session.commit()


def profile(user: User) -> dict:
    """Public view of a user as returned in auth responses."""
    return user.to_dict()


def update_otp_settings(user: User, enabled: bool, method: str | None = None,
                        email: str | None = None) -> Result[User]:
    """
    Turn second-factor OTP on or off and pick its channel.

    The email channel needs an address: the one on file, or one supplied
    here that nobody else owns.
    """
    method = method or user.otp_method
    if method not in OTP_METHODS:
        return Result.failure(ErrorKind.VALIDATION, f"Unsupported OTP method: {method}")

    if method == OTP_METHOD_EMAIL:
        if email and email != user.email:
            owner = find_by_email(email)
            if owner is not None and owner.id != user.id:
                return Result.failure(ErrorKind.CONFLICT, "Email already in use by another account")
            user.email = email
            user.email_verified = False
        if not user.email:
            return Result.failure(ErrorKind.VALIDATION, "An email address is required for email OTP")

    user.otp_enabled = bool(enabled)
    user.otp_method = method
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Result.failure(ErrorKind.CONFLICT, "Email already in use by another account")
    return Result.success(user)


def set_password(user: User, password: str, confirm: str, token_service=None,
                 keep_refresh_token: str | None = None) -> Result[User]:
    """
    Set or replace the account password.

    Other sessions are signed out by deleting their refresh tokens; the
    caller's own refresh token survives when passed as keep_refresh_token.
    """
    if password != confirm:
        return Result.failure(ErrorKind.VALIDATION, "Passwords do not match")
    try:
        user.password_hash = passwords.hash_password(password)
    except passwords.PasswordValidationError as e:
        return Result.failure(ErrorKind.VALIDATION, str(e))
    db.session.commit()

    if token_service is not None:
        token_service.revoke_all(user.id, keep=keep_refresh_token)
    logger.info("Password set for user %s", user.id)
    return Result.success(user)


def backup_code_status(user: User) -> dict:
    remaining = len(user.backup_codes or [])
    return {"remaining": remaining, "hasBackupCodes": remaining > 0}


def generate_backup_codes(user: User) -> list[str]:
    """Replace all backup codes. Returns the plaintext codes; only hashes are stored."""
    codes = passwords.generate_backup_codes()
    user.backup_codes = [passwords.hash_backup_code(c) for c in codes]
    db.session.commit()
    logger.info("Backup codes regenerated for user %s", user.id)
    return codes


def consume_backup_code(user: User, code: str) -> bool:
    """Burn one matching backup code. False when none matches."""
    hashes = list(user.backup_codes or [])
    for code_hash in hashes:
        if passwords.verify_backup_code(code, code_hash):
            hashes.remove(code_hash)
            # JSON column: assign a new list so the change is flushed
            user.backup_codes = hashes
            db.session.commit()
            return True
    return False


def link_google(user: User, claims) -> Result[User]:
    """Attach a verified Google account to user."""
    owner = find_by_google_id(claims.sub)
    if owner is not None and owner.id != user.id:
        return Result.failure(ErrorKind.CONFLICT, "This Google account is linked to another user")

    user.google_id = claims.sub
    if not user.email:
        email_owner = find_by_email(claims.email)
        if email_owner is None:
            user.email = claims.email
            user.email_verified = True
    if not user.name and claims.name:
        user.name = claims.name
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Result.failure(ErrorKind.CONFLICT, "This Google account is linked to another user")
    return Result.success(user)


GOOGLE_EMAIL_CONFLICT_MESSAGE = (
    "An account with this email already exists. "
    "Sign in to it and link Google from your account settings."
)


def find_or_create_from_google(claims) -> Result[User]:
    """
    Sign-in lookup order: google_id, then email, else a new STUDENT.

    An email match is linked only when that account has proven the address
    itself. Any other match is CONFLICT and can only be linked from a signed
    in session through link_google.
    """
    user = find_by_google_id(claims.sub)
    if user is not None:
        return Result.success(user)

    user = find_by_email(claims.email)
    if user is not None:
        if not user.email_verified:
            logger.warning("Google sign-in refused to auto-link unverified email for user %s", user.id)
            return Result.failure(ErrorKind.CONFLICT, GOOGLE_EMAIL_CONFLICT_MESSAGE, {"linkWith": "/api/auth/google/link"})
        user.google_id = claims.sub
        if not user.name and claims.name:
            user.name = claims.name
        db.session.commit()
        return Result.success(user)

    user, _ = _get_or_create(
        lambda: find_by_google_id(claims.sub),
        lambda: User(
            email=claims.email,
            email_verified=True,
            name=claims.name,
            google_id=claims.sub,
            role=ROLE_STUDENT,
            auth_method=AUTH_GOOGLE,
        ),
    )
    logger.info("New user created via Google: %s", user.id)
    return Result.success(user)
