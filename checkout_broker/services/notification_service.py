"""Notification service — tells the main application about order outcomes.

Best-effort: failures are logged and reported as False, never raised.
Payment truth lives in the orders table, not in these notifications.
Skipped entirely when NOTIFIER_BASE_URL is not configured.
"""

import logging
import time

import requests
from flask import current_app

from checkout_broker.models.order import as_utc

logger = logging.getLogger(__name__)

SERVICE_NAME = "payment_service"

# Order status -> status reported downstream
NOTIFY_STATUS = {
    "active": "completed",
    "canceled": "cancelled",
    "expired": "expired",
}


def _post(path, event_name, payload):
    base_url = current_app.config.get("NOTIFIER_BASE_URL")
    if not base_url:
        logger.debug(f"Notifier not configured, skipping {event_name}")
        return False

    api_key = current_app.config.get("NOTIFIER_API_KEY") or ""
    timeout = current_app.config.get("NOTIFIER_TIMEOUT_SECONDS", 10)
    url = f"{base_url.rstrip('/')}{path}"

    try:
        resp = requests.post(
            url,
            json=payload,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Service": "payment-service",
                "X-Event": event_name,
            },
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.error(f"Failed to send {event_name} for order {payload['order_id']}: {e}")
        return False

    if resp.ok:
        logger.info(f"Sent {event_name} for order {payload['order_id']} ({resp.status_code})")
        return True

    logger.warning(
        f"{event_name} for order {payload['order_id']} rejected: "
        f"{resp.status_code} {resp.text[:200]}"
    )
    return False


def notify_order_status(order):
    """Send the downstream notification for an order's terminal status.

    active -> payment_completed; canceled / expired -> subscription_updated.
    """
    status = NOTIFY_STATUS.get(order.status)
    if status is None:
        return False

    payload = {
        "order_id": order.id,
        "user_id": order.subject_id,
        "status": status,
        "timestamp": int(time.time() * 1000),
        "amount": order.amount,
        "currency": order.currency,
        "plan": order.plan,
        "subscription_id": order.external_subscription_id,
        "service": SERVICE_NAME,
    }

    if order.status == "active":
        payload["event"] = "payment_completed"
        return _post("/api/webhooks/payment-status", "payment_completed", payload)

    payload["event"] = "subscription_updated"
    expires_at = as_utc(order.expires_at)
    payload["expires_at"] = int(expires_at.timestamp() * 1000) if expires_at else None
    return _post("/api/webhooks/subscription-status", "subscription_updated", payload)
