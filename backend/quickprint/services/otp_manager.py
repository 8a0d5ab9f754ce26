# Overview: One-time codes over SMS and email; issue (last code wins) and single-use verify.

"""
OTP Manager

Lifecycle of an OtpChallenge row:
    issue   -> row upserted for the target (code, expiry, attempts reset)
    verify  -> conditional UPDATE flips verified once; wrong codes bump attempts
    expiry  -> row ignored by verify, removed by the maintenance purge

SECURITY NOTES:
- Codes come from `secrets`, never `random`
- Wrong and expired codes fail the same way (no oracle)
- A challenge stops accepting codes after OtpSettings.max_attempts failures
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import delete, update

from ..config import OtpSettings
from ..extensions import db
from ..models import OtpChallenge
from ..models.otp import CHANNEL_EMAIL, CHANNEL_SMS
from ..results import ErrorKind, Result
from ..time_utils import expires_in, utcnow
from .concurrency import compare_and_set, upsert
from .delivery import (
    DeliveryError,
    otp_email_html,
    otp_email_subject,
    otp_sms_body,
)

logger = logging.getLogger(__name__)

INVALID_OTP_MESSAGE = "Invalid or expired OTP"


def generate_code(length: int) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class OtpManager:
    def __init__(self, settings: OtpSettings, sms_channel=None, email_channel=None):
        self.settings = settings
        self.sms_channel = sms_channel
        self.email_channel = email_channel

    @property
    def ttl_minutes(self) -> int:
        return max(1, int(self.settings.ttl.total_seconds() // 60))

    def _channel_for(self, channel: str):
        if channel == CHANNEL_SMS:
            return self.sms_channel
        if channel == CHANNEL_EMAIL:
            return self.email_channel
        raise ValueError(f"Unknown OTP channel: {channel}")

    def issue(self, target: str, channel: str) -> Result[None]:
        """
        Create a fresh code for target and send it.

        Any earlier code for the same target stops working the moment this
        one is stored. When delivery fails the stored code is removed again so
        a code nobody received cannot be guessed.
        """
        sender = self._channel_for(channel)
        if sender is None:
            logger.error("OTP channel %s is not configured", channel)
            return Result.failure(ErrorKind.NOT_CONFIGURED, f"{channel.upper()} delivery is not configured")

        length = self.settings.sms_length if channel == CHANNEL_SMS else self.settings.email_length
        code = generate_code(length)
        expires_at = expires_in(self.settings.ttl)

        upsert(
            update(OtpChallenge)
            .where(OtpChallenge.target == target)
            .values(
                channel=channel,
                code=code,
                verified=False,
                attempts=0,
                expires_at=expires_at,
                created_at=utcnow(),
            ),
            lambda: OtpChallenge(
                target=target,
                channel=channel,
                code=code,
                verified=False,
                attempts=0,
                expires_at=expires_at,
            ),
        )

        try:
            if channel == CHANNEL_SMS:
                sender.send_sms(target, otp_sms_body(code, self.ttl_minutes))
            else:
                sender.send_email(target, otp_email_subject(code), otp_email_html(code, self.ttl_minutes))
        except DeliveryError:
            # Only drop our own code; a newer issue for the same target stays.
            db.session.execute(
                delete(OtpChallenge)
                .where(OtpChallenge.target == target, OtpChallenge.code == code)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            return Result.failure(ErrorKind.DELIVERY_FAILED, f"Failed to send OTP via {channel}")

        logger.info("OTP issued to %s via %s", target, channel)
        return Result.success()

    def verify(self, target: str, code: str) -> Result[None]:
        """
        Consume the live code for target.

        Succeeds at most once per issued code. Wrong, expired, already used
        and exhausted codes are indistinguishable to the caller.
        """
        now = utcnow()
        live = (
            OtpChallenge.target == target,
            OtpChallenge.verified.is_(False),
            OtpChallenge.expires_at > now,
            OtpChallenge.attempts < self.settings.max_attempts,
        )

        if compare_and_set(
            update(OtpChallenge).where(*live, OtpChallenge.code == code).values(verified=True)
        ):
            db.session.commit()
            return Result.success()

        db.session.execute(
            update(OtpChallenge)
            .where(*live)
            .values(attempts=OtpChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        logger.info("OTP verification failed for %s", target)
        return Result.failure(ErrorKind.INVALID_OR_EXPIRED_OTP, INVALID_OTP_MESSAGE)

    def purge_expired(self) -> int:
        result = db.session.execute(
            delete(OtpChallenge)
            .where(OtpChallenge.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount
