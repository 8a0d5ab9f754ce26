# Overview: Housekeeping for expired identity rows and old security events.

from __future__ import annotations

import logging
from datetime import timedelta

from . import login_throttle_service

logger = logging.getLogger(__name__)


def purge_expired(services) -> dict:
    """Delete expired OTPs, refresh tokens, passkey challenges and pending registrations."""
    counts = {
        "otp_challenges": services.otp.purge_expired(),
        "refresh_tokens": services.tokens.purge_expired(),
        "webauthn_challenges": services.credentials.purge_expired_challenges(),
        "pending_registrations": services.registration.purge_expired(),
    }
    logger.info("Purged expired rows: %s", counts)
    return counts


def cleanup_security_events(days: int) -> int:
    deleted = login_throttle_service.cleanup_old_events(timedelta(days=days))
    logger.info("Deleted %s security events older than %s days", deleted, days)
    return deleted
