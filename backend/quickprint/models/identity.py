from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ROLE_STUDENT = "STUDENT"
ROLE_SHOP = "SHOP"
ROLE_ADMIN = "ADMIN"
ROLES = (ROLE_STUDENT, ROLE_SHOP, ROLE_ADMIN)

OTP_METHOD_SMS = "sms"
OTP_METHOD_EMAIL = "email"
OTP_METHODS = (OTP_METHOD_SMS, OTP_METHOD_EMAIL)

AUTH_PHONE_OTP = "PHONE_OTP"
AUTH_EMAIL_OTP = "EMAIL_OTP"
AUTH_PASSWORD = "PASSWORD"
AUTH_PASSKEY = "PASSKEY"
AUTH_GOOGLE = "GOOGLE"


class User(db.Model):
    """
    Identity record shared by students, shop partners and admins.

    A user is reachable by phone, by email, or both. Either contact is unique
    across the table. Created by the first successful verification of any
    sign-in strategy; never deleted implicitly.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    phone = db.Column(db.String(20), nullable=True, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True, unique=True, index=True)
    name = db.Column(db.String(120), nullable=True)
    college = db.Column(db.String(255), nullable=True)

    # set once the address has been proven by an emailed code or link
    email_verified = db.Column(db.Boolean, nullable=False, default=False)

    # Argon2 hash; null for OTP/passkey/Google-only accounts
    password_hash = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(16), nullable=False, default=ROLE_STUDENT)

    otp_enabled = db.Column(db.Boolean, nullable=False, default=False)
    otp_method = db.Column(db.String(8), nullable=False, default=OTP_METHOD_SMS)

    # bcrypt hashes of unused backup codes
    backup_codes = db.Column(db.JSON, nullable=False, default=list)

    auth_method = db.Column(db.String(16), nullable=False, default=AUTH_PHONE_OTP)
    google_id = db.Column(db.String(255), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "email": self.email,
            "emailVerified": self.email_verified,
            "name": self.name,
            "role": self.role,
            "college": self.college,
            "authMethod": self.auth_method,
            "otpEnabled": self.otp_enabled,
            "otpMethod": self.otp_method,
            "hasPassword": self.password_hash is not None,
            "hasGoogleLinked": self.google_id is not None,
            "shopName": self.shop.business_name if self.shop else None,
            "createdAt": to_utc_z(self.created_at),
        }


class Shop(db.Model):
    """Print shop owned by a SHOP user; only created by partner registration."""
    __tablename__ = "shops"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    business_name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.JSON, nullable=False)
    location = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    owner = db.relationship("User", backref=db.backref("shop", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "businessName": self.business_name,
            "address": self.address,
            "location": self.location,
            "createdAt": to_utc_z(self.created_at),
        }
