# backend/quickprint/routes/system.py
"""
System health endpoint.

Reports database reachability and which delivery channels are wired, so a
deployment missing Twilio or SendGrid credentials shows up as degraded.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import RefreshToken, User
from ..services.container import get_services
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        expired_tokens = db.session.query(RefreshToken).filter(
            RefreshToken.expires_at <= utcnow()
        ).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "expired_refresh_tokens_pending_cleanup": expired_tokens,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_delivery_health() -> dict:
    services = get_services()
    details = {
        "sms": type(services.sms_channel).__name__ if services.sms_channel else None,
        "email": type(services.email_channel).__name__ if services.email_channel else None,
        "mock": services.settings.delivery.use_mock,
    }
    if services.sms_channel is None or services.email_channel is None:
        return {"status": "degraded", "warning": "Delivery channel not configured", "details": details}
    return {"status": "healthy", "details": details}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    delivery_health = check_delivery_health()

    all_checks = [database_health, delivery_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "delivery": delivery_health,
        },
    }, http_status
