# Overview: Access/refresh token pairs; issue, single-use rotation, revocation.

"""
Token Service

Access tokens are short-lived JWTs checked by signature alone. Refresh
tokens are JWTs that must also exist in the refresh_tokens table; rotation
swaps the stored value in place, so each refresh token works exactly once.

Claims: sub (user id as string), type (access|refresh), jti, iat, exp.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import delete, update

from ..config import TokenSettings
from ..extensions import db
from ..models import RefreshToken, User
from ..results import ErrorKind, Result
from ..time_utils import is_expired, utcnow
from .concurrency import compare_and_set

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def to_dict(self) -> dict:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}


class TokenService:
    def __init__(self, settings: TokenSettings):
        self.settings = settings

    def _encode(self, user_id: int, token_type: str, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self.settings.secret, algorithm=self.settings.algorithm)

    def _decode(self, token: str) -> dict:
        return jwt.decode(token, self.settings.secret, algorithms=[self.settings.algorithm])

    def issue_pair(self, user_id: int) -> TokenPair:
        """Sign a new pair and store the refresh half. Commits."""
        access = self._encode(user_id, TOKEN_TYPE_ACCESS, self.settings.access_ttl)
        refresh = self._encode(user_id, TOKEN_TYPE_REFRESH, self.settings.refresh_ttl)
        db.session.add(RefreshToken(
            user_id=user_id,
            token=refresh,
            expires_at=utcnow() + self.settings.refresh_ttl,
        ))
        db.session.commit()
        return TokenPair(access_token=access, refresh_token=refresh)

    def rotate(self, old_refresh_token: str) -> Result[TokenPair]:
        """
        Exchange a refresh token for a new pair.

        The stored row is overwritten only if it still holds the presented
        value and has not expired, so two concurrent rotations of the same
        token cannot both win.
        """
        try:
            claims = self._decode(old_refresh_token)
        except jwt.ExpiredSignatureError:
            return Result.failure(ErrorKind.EXPIRED, "Refresh token expired")
        except jwt.InvalidTokenError:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid refresh token")

        if claims.get("type") != TOKEN_TYPE_REFRESH:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid refresh token")

        user_id = int(claims["sub"])
        now = utcnow()
        new_refresh = self._encode(user_id, TOKEN_TYPE_REFRESH, self.settings.refresh_ttl)

        swapped = compare_and_set(
            update(RefreshToken)
            .where(
                RefreshToken.token == old_refresh_token,
                RefreshToken.user_id == user_id,
                RefreshToken.expires_at > now,
            )
            .values(token=new_refresh, expires_at=now + self.settings.refresh_ttl, rotated_at=now)
        )
        db.session.commit()

        if not swapped:
            stored = db.session.query(RefreshToken).filter_by(token=old_refresh_token).first()
            if stored is not None and is_expired(stored.expires_at, now):
                return Result.failure(ErrorKind.EXPIRED, "Refresh token expired")
            logger.warning("Refresh token reuse or unknown token for user %s", user_id)
            return Result.failure(ErrorKind.REVOKED, "Refresh token revoked")

        access = self._encode(user_id, TOKEN_TYPE_ACCESS, self.settings.access_ttl)
        return Result.success(TokenPair(access_token=access, refresh_token=new_refresh))

    def revoke(self, refresh_token: str) -> bool:
        """Delete the stored refresh token. Returns whether a row was removed."""
        removed = compare_and_set(delete(RefreshToken).where(RefreshToken.token == refresh_token))
        db.session.commit()
        return removed

    def revoke_all(self, user_id: int, keep: str | None = None) -> int:
        stmt = delete(RefreshToken).where(RefreshToken.user_id == user_id)
        if keep:
            stmt = stmt.where(RefreshToken.token != keep)
        result = db.session.execute(stmt.execution_options(synchronize_session=False))
        db.session.commit()
        return result.rowcount

    def verify_access(self, token: str) -> Result[User]:
        """Resolve a bearer token to its user. Every failure is UNAUTHORIZED."""
        try:
            claims = self._decode(token)
        except jwt.InvalidTokenError:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid or expired token")

        if claims.get("type") != TOKEN_TYPE_ACCESS:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid or expired token")

        try:
            user_id = int(claims.get("sub"))
        except (TypeError, ValueError):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid or expired token")

        user = db.session.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid or expired token")
        return Result.success(user)

    def purge_expired(self) -> int:
        result = db.session.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount
