from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PURPOSE_REGISTRATION = "registration"
PURPOSE_AUTHENTICATION = "authentication"


class PasskeyCredential(db.Model):
    """
    Registered WebAuthn credential.

    sign_count only moves forward; an assertion that does not advance it is
    treated as a cloned authenticator or a replay.
    """
    __tablename__ = "passkey_credentials"
    __table_args__ = (
        db.Index("ix_passkey_credentials_user_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # base64url credential id as sent by the browser
    credential_id = db.Column(db.String(1024), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # COSE-encoded public key
    public_key = db.Column(db.LargeBinary, nullable=False)
    sign_count = db.Column(db.Integer, nullable=False, default=0)

    device_type = db.Column(db.String(32), nullable=True)
    backed_up = db.Column(db.Boolean, nullable=False, default=False)
    transports = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("passkeys", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceType": self.device_type,
            "backedUp": self.backed_up,
            "transports": self.transports or [],
            "createdAt": to_utc_z(self.created_at),
            "lastUsedAt": to_utc_z(self.last_used_at) if self.last_used_at else None,
        }


class WebAuthnChallenge(db.Model):
    """
    Outstanding ceremony challenge.

    Keys:
    - registration:<user_id>
    - authentication:<user_id>
    - discoverable:<challenge>
    A later challenge under the same key replaces the earlier one.
    """
    __tablename__ = "webauthn_challenges"
    __table_args__ = (
        db.UniqueConstraint("key", name="uq_webauthn_challenges_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False)
    purpose = db.Column(db.String(16), nullable=False)
    challenge = db.Column(db.String(255), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
