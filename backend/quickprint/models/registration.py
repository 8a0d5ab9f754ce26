from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class PendingPartnerRegistration(db.Model):
    """
    Partner signup waiting for phone and email proof.

    Lifecycle: created by initiate (phone_verified False), flipped once by a
    phone OTP (phone_verified True, email_token set), deleted when the email
    link completes the signup or when the partner starts over.
    """
    __tablename__ = "pending_partner_registrations"
    __table_args__ = (
        db.Index("ix_pending_partner_registrations_email", "email"),
        db.Index("ix_pending_partner_registrations_phone", "phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    # Shop draft
    shop_name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.JSON, nullable=False)
    location = db.Column(db.JSON, nullable=True)

    phone_verified = db.Column(db.Boolean, nullable=False, default=False)
    email_token = db.Column(db.String(64), nullable=True, unique=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "shopName": self.shop_name,
            "phoneVerified": self.phone_verified,
            "expiresAt": to_utc_z(self.expires_at),
        }
