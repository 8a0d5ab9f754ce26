# Overview: Passkey (WebAuthn) ceremonies; challenge storage, credential persistence, counter checks.

"""
Credential Store

Ceremony states:
    ChallengeIssued -> Verified -> Persisted
    ChallengeIssued -> Rejected

Challenges live in webauthn_challenges and are consumed by a conditional
DELETE: the request that removes the row owns the challenge, any concurrent
request using the same challenge loses.

Challenge keys:
- registration:<user_id>
- authentication:<user_id>       (phone supplied, allow-list scoped to the user)
- discoverable:<challenge>       (no phone, resolved from clientDataJSON)

Signature checks are delegated to WebAuthnVerifier (py_webauthn). The
sign counter check is done here so it can be reported as a replay rather than
a generic verification failure.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..config import RelyingPartySettings
from ..extensions import db
from ..models import PasskeyCredential, User, WebAuthnChallenge
from ..models.identity import AUTH_PASSKEY
from ..models.passkey import PURPOSE_AUTHENTICATION, PURPOSE_REGISTRATION
from ..results import ErrorKind, Result
from ..time_utils import expires_in, is_expired, utcnow
from .concurrency import compare_and_set, upsert

logger = logging.getLogger(__name__)


class CeremonyError(Exception):
    """The authenticator response did not verify."""


@dataclass(frozen=True)
class RegisteredCredential:
    credential_id: str
    public_key: bytes
    sign_count: int
    device_type: str | None
    backed_up: bool


def _transports(values) -> list[AuthenticatorTransport]:
    known = {t.value for t in AuthenticatorTransport}
    return [AuthenticatorTransport(v) for v in (values or []) if v in known]


class WebAuthnVerifier:
    """Thin wrapper over py_webauthn bound to one relying party."""

    def __init__(self, settings: RelyingPartySettings):
        self.settings = settings

    @property
    def timeout_ms(self) -> int:
        return int(self.settings.challenge_ttl.total_seconds() * 1000)

    def registration_options(self, user_id: int, user_name: str, display_name: str,
                             exclude: list[tuple[str, list]]) -> tuple[str, dict]:
        options = generate_registration_options(
            rp_id=self.settings.rp_id,
            rp_name=self.settings.rp_name,
            user_id=str(user_id).encode("utf-8"),
            user_name=user_name,
            user_display_name=display_name,
            timeout=self.timeout_ms,
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid), transports=_transports(tr))
                for cid, tr in exclude
            ],
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )
        return bytes_to_base64url(options.challenge), json.loads(options_to_json(options))

    def authentication_options(self, allow: list[tuple[str, list]]) -> tuple[str, dict]:
        options = generate_authentication_options(
            rp_id=self.settings.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid), transports=_transports(tr))
                for cid, tr in allow
            ],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return bytes_to_base64url(options.challenge), json.loads(options_to_json(options))

    def verify_registration(self, response: dict, challenge: str) -> RegisteredCredential:
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.settings.rp_id,
                expected_origin=self.settings.origin,
                require_user_verification=False,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            raise CeremonyError(str(e)) from e
        return RegisteredCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            device_type=verified.credential_device_type.value,
            backed_up=bool(verified.credential_backed_up),
        )

    def verify_authentication(self, response: dict, challenge: str, public_key: bytes) -> int:
        """Check the assertion signature; returns the counter the authenticator reported."""
        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.settings.rp_id,
                expected_origin=self.settings.origin,
                credential_public_key=public_key,
                # CredentialStore owns the counter rule
                credential_current_sign_count=0,
                require_user_verification=False,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            raise CeremonyError(str(e)) from e
        return verified.new_sign_count


def client_challenge(response: dict) -> str | None:
    """The challenge the browser signed, read from clientDataJSON."""
    try:
        client_data = json.loads(base64url_to_bytes(response["response"]["clientDataJSON"]))
        return client_data["challenge"]
    except (KeyError, TypeError, ValueError):
        return None


def counter_regressed(new_count: int, stored_count: int, allow_zero: bool = False) -> bool:
    """
    True when an assertion does not advance the sign counter (cloned key or replay).

    Authenticators without a counter, synced passkeys among them, report 0
    on every assertion. With allow_zero a counter that is 0 on both sides is
    accepted; once either side is non-zero the counter must strictly increase.
    """
    if allow_zero and new_count == 0 and stored_count == 0:
        return False
    return new_count <= stored_count


class CredentialStore:
    def __init__(self, settings: RelyingPartySettings, token_service, verifier=None):
        self.settings = settings
        self.token_service = token_service
        self.verifier = verifier or WebAuthnVerifier(settings)

    # Challenges

    def _store_challenge(self, key: str, purpose: str, challenge: str) -> None:
        expires_at = expires_in(self.settings.challenge_ttl)
        upsert(
            update(WebAuthnChallenge)
            .where(WebAuthnChallenge.key == key)
            .values(purpose=purpose, challenge=challenge, expires_at=expires_at),
            lambda: WebAuthnChallenge(key=key, purpose=purpose, challenge=challenge, expires_at=expires_at),
        )

    def _consume_challenge(self, key: str, purpose: str) -> str | None:
        """Take the challenge stored under key. None when missing, expired or taken by someone else."""
        row = db.session.query(WebAuthnChallenge).filter_by(key=key, purpose=purpose).first()
        if row is None:
            return None
        row_id, challenge, expires_at = row.id, row.challenge, row.expires_at

        taken = compare_and_set(
            delete(WebAuthnChallenge).where(
                WebAuthnChallenge.id == row_id,
                WebAuthnChallenge.challenge == challenge,
            )
        )
        db.session.commit()
        if not taken or is_expired(expires_at):
            return None
        return challenge

    # Registration

    def begin_registration(self, user_id: int) -> Result[dict]:
        user = db.session.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")

        existing = db.session.query(PasskeyCredential).filter_by(user_id=user_id).all()
        user_name = user.phone or user.email or f"user-{user.id}"
        challenge, options = self.verifier.registration_options(
            user_id=user.id,
            user_name=user_name,
            display_name=user.name or user_name,
            exclude=[(c.credential_id, c.transports) for c in existing],
        )
        self._store_challenge(f"registration:{user_id}", PURPOSE_REGISTRATION, challenge)
        return Result.success(options)

    def finish_registration(self, user_id: int, response: dict) -> Result[PasskeyCredential]:
        challenge = self._consume_challenge(f"registration:{user_id}", PURPOSE_REGISTRATION)
        if challenge is None:
            return Result.failure(ErrorKind.CHALLENGE_EXPIRED, "Registration challenge expired. Please try again.")

        try:
            registered = self.verifier.verify_registration(response, challenge)
        except CeremonyError as e:
            logger.warning("Passkey registration failed for user %s: %s", user_id, e)
            return Result.failure(ErrorKind.VERIFICATION_FAILED, "Passkey registration failed")

        user = db.session.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")

        is_first = db.session.query(PasskeyCredential).filter_by(user_id=user_id).count() == 0
        response_body = response.get("response") or {}
        credential = PasskeyCredential(
            credential_id=registered.credential_id,
            user_id=user_id,
            public_key=registered.public_key,
            sign_count=registered.sign_count,
            device_type=registered.device_type,
            backed_up=registered.backed_up,
            transports=list(response_body.get("transports") or []),
        )
        db.session.add(credential)
        if is_first:
            user.auth_method = AUTH_PASSKEY
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return Result.failure(ErrorKind.CONFLICT, "Passkey already registered")

        logger.info("Passkey registered for user %s", user_id)
        return Result.success(credential)

    # Authentication

    def begin_authentication(self, phone: str | None = None) -> Result[dict]:
        """
        Options for navigator.credentials.get().

        With a phone the allow-list is that user's credentials and the
        response carries userId for the verify call. Without one the browser
        picks a discoverable credential.
        """
        if phone:
            user = db.session.query(User).filter_by(phone=phone).first()
            credentials = (
                db.session.query(PasskeyCredential).filter_by(user_id=user.id).all() if user else []
            )
            if not credentials:
                return Result.failure(ErrorKind.CREDENTIAL_NOT_FOUND, "No passkeys registered for this account")

            challenge, options = self.verifier.authentication_options(
                [(c.credential_id, c.transports) for c in credentials]
            )
            self._store_challenge(f"authentication:{user.id}", PURPOSE_AUTHENTICATION, challenge)
            options["userId"] = user.id
            return Result.success(options)

        challenge, options = self.verifier.authentication_options([])
        self._store_challenge(f"discoverable:{challenge}", PURPOSE_AUTHENTICATION, challenge)
        return Result.success(options)

    def finish_authentication(self, response: dict, user_id: int | None = None) -> Result[tuple]:
        """
        Verify an assertion and open a session.

        Returns (user, TokenPair) on success.
        """
        credential_id = (response or {}).get("id") or (response or {}).get("rawId")
        credential = (
            db.session.query(PasskeyCredential).filter_by(credential_id=credential_id).first()
            if credential_id else None
        )
        if credential is None:
            return Result.failure(ErrorKind.CREDENTIAL_NOT_FOUND, "Passkey not found")
        if user_id is not None and credential.user_id != user_id:
            return Result.failure(ErrorKind.CREDENTIAL_NOT_FOUND, "Passkey not found")

        if user_id is not None:
            key = f"authentication:{user_id}"
        else:
            signed_challenge = client_challenge(response)
            key = f"discoverable:{signed_challenge}" if signed_challenge else None

        challenge = self._consume_challenge(key, PURPOSE_AUTHENTICATION) if key else None
        if challenge is None:
            return Result.failure(ErrorKind.CHALLENGE_EXPIRED, "Authentication challenge expired. Please try again.")

        try:
            new_count = self.verifier.verify_authentication(response, challenge, credential.public_key)
        except CeremonyError as e:
            logger.warning("Passkey assertion failed for credential %s: %s", credential.id, e)
            return Result.failure(ErrorKind.VERIFICATION_FAILED, "Passkey authentication failed")

        stored_count = credential.sign_count
        if counter_regressed(new_count, stored_count, self.settings.allow_zero_counter):
            logger.warning(
                "Passkey counter did not advance for credential %s (stored=%s, new=%s)",
                credential.id, stored_count, new_count,
            )
            return Result.failure(ErrorKind.REPLAY_DETECTED, "Passkey counter did not advance")

        now = utcnow()
        advanced = compare_and_set(
            update(PasskeyCredential)
            .where(PasskeyCredential.id == credential.id, PasskeyCredential.sign_count == stored_count)
            .values(sign_count=new_count, last_used_at=now)
        )
        if not advanced:
            db.session.rollback()
            return Result.failure(ErrorKind.REPLAY_DETECTED, "Passkey counter did not advance")

        user = db.session.get(User, credential.user_id)
        user.last_login_at = now
        db.session.commit()

        tokens = self.token_service.issue_pair(user.id)
        logger.info("User %s authenticated with passkey %s", user.id, credential.id)
        return Result.success((user, tokens))

    # Management

    def list_credentials(self, user_id: int) -> list[PasskeyCredential]:
        return (
            db.session.query(PasskeyCredential)
            .filter_by(user_id=user_id)
            .order_by(PasskeyCredential.created_at.asc(), PasskeyCredential.id.asc())
            .all()
        )

    def delete_credential(self, user_id: int, credential_pk: int) -> Result[None]:
        credential = db.session.query(PasskeyCredential).filter_by(id=credential_pk, user_id=user_id).first()
        if credential is None:
            return Result.failure(ErrorKind.CREDENTIAL_NOT_FOUND, "Passkey not found")

        remaining = db.session.query(PasskeyCredential).filter_by(user_id=user_id).count()
        user = db.session.get(User, user_id)
        if remaining == 1 and not user.password_hash:
            return Result.failure(ErrorKind.FORBIDDEN, "Cannot delete last passkey without a password set")

        db.session.delete(credential)
        db.session.commit()
        logger.info("Deleted passkey %s for user %s", credential_pk, user_id)
        return Result.success()

    def purge_expired_challenges(self) -> int:
        result = db.session.execute(
            delete(WebAuthnChallenge)
            .where(WebAuthnChallenge.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount
