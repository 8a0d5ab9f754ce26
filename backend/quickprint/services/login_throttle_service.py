"""
Login Throttling Service

Limits password guessing per identifier (phone or email).

- Failed password logins are recorded as LOGIN_FAILED security events
- MAX_FAILED_ATTEMPTS failures inside LOCKOUT_WINDOW lock the identifier
- The lock lasts LOCKOUT_DURATION from the most recent failure
- Successful logins are recorded too, for the audit trail
"""

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent, User
from ..models.security import EVENT_LOGIN_FAILED, EVENT_LOGIN_SUCCESS
from ..time_utils import utcnow


MAX_FAILED_ATTEMPTS = 10  # Lock after 10 failed attempts
LOCKOUT_WINDOW = timedelta(minutes=15)  # Within 15 minutes
LOCKOUT_DURATION = timedelta(minutes=15)  # Lockout for 15 minutes


def get_recent_failed_attempts(identifier: str) -> int:
    """Count LOGIN_FAILED events for identifier inside LOCKOUT_WINDOW."""
    cutoff = utcnow() - LOCKOUT_WINDOW
    return db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == EVENT_LOGIN_FAILED,
        SecurityEvent.identifier == identifier,
        SecurityEvent.occurred_at >= cutoff,
    ).count()


def is_account_locked(identifier: str) -> tuple[bool, int | None]:
    """
    Check if an identifier is currently locked.

    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    if get_recent_failed_attempts(identifier) < MAX_FAILED_ATTEMPTS:
        return False, None

    most_recent = db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == EVENT_LOGIN_FAILED,
        SecurityEvent.identifier == identifier,
    ).order_by(SecurityEvent.occurred_at.desc()).first()

    if most_recent:
        lockout_end = most_recent.occurred_at.replace(tzinfo=None) + LOCKOUT_DURATION
        now = utcnow()
        if now < lockout_end:
            return True, int((lockout_end - now).total_seconds())

    return False, None


def _find_user(identifier: str) -> User | None:
    return db.session.query(User).filter(
        db.or_(User.phone == identifier, User.email == identifier)
    ).first()


def record_failed_attempt(
    identifier: str,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    reason: str = "Invalid credentials",
) -> int:
    """Record a failed login attempt. Returns the recent failure count."""
    user = _find_user(identifier)
    db.session.add(SecurityEvent(
        user_id=user.id if user else None,
        event_type=EVENT_LOGIN_FAILED,
        identifier=identifier,
        resource=resource,
        success=False,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    ))
    db.session.commit()
    return get_recent_failed_attempts(identifier)


def record_successful_login(
    user_id: int,
    identifier: str,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Record a successful login.

    Old failures are kept; they age out of LOCKOUT_WINDOW on their own.
    """
    db.session.add(SecurityEvent(
        user_id=user_id,
        event_type=EVENT_LOGIN_SUCCESS,
        identifier=identifier,
        resource=resource,
        success=True,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    ))
    db.session.commit()


def cleanup_old_events(older_than: timedelta) -> int:
    """Delete security events older than the retention period."""
    cutoff = utcnow() - older_than
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
