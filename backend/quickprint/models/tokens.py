from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class RefreshToken(db.Model):
    """
    Stored refresh token.

    Rotation overwrites `token` and `expires_at` in place, so a refresh token
    string can be exchanged at most once. Logout deletes the row.
    """
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        db.Index("ix_refresh_tokens_user_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    token = db.Column(db.String(512), nullable=False, unique=True, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    rotated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("refresh_tokens", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "rotated_at": to_utc_z(self.rotated_at) if self.rotated_at else None,
        }
