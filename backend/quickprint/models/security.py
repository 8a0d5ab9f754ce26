from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


EVENT_LOGIN_FAILED = "LOGIN_FAILED"
EVENT_LOGIN_SUCCESS = "LOGIN_SUCCESS"


class SecurityEvent(db.Model):
    """
    Security event audit log.

    WHY: Track failed and successful logins. The login throttle counts
    LOGIN_FAILED rows per identifier to lock out brute-force attempts.

    IMMUTABLE: Never update. Rows are only removed by the retention cleanup.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_identifier_type", "identifier", "event_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)  # Nullable for unknown accounts

    event_type = db.Column(db.String(64), nullable=False, index=True)  # LOGIN_FAILED, LOGIN_SUCCESS
    identifier = db.Column(db.String(255), nullable=True)  # phone or email used to sign in
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/api/auth/partner/login"

    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    user = db.relationship("User", backref=db.backref("security_events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "identifier": self.identifier,
            "resource": self.resource,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
