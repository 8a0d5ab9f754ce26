from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CHANNEL_SMS = "sms"
CHANNEL_EMAIL = "email"

PURPOSE_PARTNER_REGISTRATION = "partner_registration"
PURPOSE_SIGN_IN = "sign_in"


class OtpChallenge(db.Model):
    """
    One-time code sent to a phone number or an email address.

    At most one row per target: issuing a new code replaces the previous row.
    Verification flips `verified` exactly once through a conditional update.
    """
    __tablename__ = "otp_challenges"
    __table_args__ = (
        db.UniqueConstraint("target", name="uq_otp_challenges_target"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    target = db.Column(db.String(255), nullable=False)
    channel = db.Column(db.String(8), nullable=False)
    code = db.Column(db.String(8), nullable=False)

    verified = db.Column(db.Boolean, nullable=False, default=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        # code is never serialized
        return {
            "id": self.id,
            "target": self.target,
            "channel": self.channel,
            "verified": self.verified,
            "attempts": self.attempts,
            "expires_at": to_utc_z(self.expires_at),
        }


class EmailVerificationToken(db.Model):
    """Single-use magic-link token proving control of an email address."""
    __tablename__ = "email_verification_tokens"
    __table_args__ = (
        db.Index("ix_email_verification_tokens_email", "email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False)
    purpose = db.Column(db.String(32), nullable=False)

    verified = db.Column(db.Boolean, nullable=False, default=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
