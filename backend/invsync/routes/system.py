# backend/invsync/routes/system.py
"""
System health endpoint.

Checks the database and reports the state of the in-process change channel.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Product, ProductUnit
from ..channel import CHANGE_FEED_EXTENSION, CHANNEL_EXTENSION, SYNCHRONIZER_EXTENSION
from invsync.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        unit_count = db.session.query(ProductUnit).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "units": unit_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_change_feed_health() -> dict:
    channel = current_app.extensions.get(CHANNEL_EXTENSION)
    feed = current_app.extensions.get(CHANGE_FEED_EXTENSION)
    synchronizer = current_app.extensions.get(SYNCHRONIZER_EXTENSION)

    if feed is None:
        # disabled by configuration; sync endpoints still work
        return {"status": "disabled"}

    return {
        "status": "healthy" if feed.attached else "degraded",
        "details": {
            "subscriptions": channel.subscription_count if channel else 0,
            "pending_events": feed.pending,
            "synchronizer_running": synchronizer is not None,
        }
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    feed_health = check_change_feed_health()

    if database_health["status"] == "unhealthy":
        overall_status = "unhealthy"
        http_status = 503
    elif feed_health["status"] == "degraded":
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "ok"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "change_feed": feed_health,
        }
    }

    return response, http_status
