"""Product catalog and request whitelists.

Products live in app.config["PRODUCT_CATALOG"]; a product is purchasable
only once its Stripe price ID is configured.
"""

import re

from checkout_broker.errors import ValidationError

PAYMENT_METHODS = ("card", "alipay", "wechat", "paynow", "grabpay")
PLATFORMS = ("web", "ios", "android")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def get_product(product_id, app_config):
    """Return the catalog entry for ``product_id``.

    Raises ValidationError for unknown or unconfigured products.
    """
    catalog = app_config.get("PRODUCT_CATALOG", {})
    product = catalog.get(product_id)
    if product is None:
        raise ValidationError(
            f"Product '{product_id}' not found. "
            f"Available products: {', '.join(sorted(catalog))}"
        )
    if not product.get("price_id"):
        raise ValidationError(
            f"Product '{product_id}' is not configured (missing Stripe price ID)."
        )
    return product


def list_products(app_config):
    """All configured products as a list of dicts (id + public fields)."""
    catalog = app_config.get("PRODUCT_CATALOG", {})
    return [
        {
            "id": product_id,
            "name": product["name"],
            "amount": product["amount"],
            "currency": product["currency"],
            "type": product["type"],
        }
        for product_id, product in sorted(catalog.items())
        if product.get("price_id")
    ]


def validate_request_metadata(metadata):
    """Check optional checkout fields against their whitelists.

    Returns a cleaned dict containing only known keys.
    """
    metadata = metadata or {}
    for key in ("payment_method", "platform", "customer_email", "client_ref",
                "idempotency_key"):
        value = metadata.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")

    payment_method = metadata.get("payment_method")
    if payment_method and payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment_method: {payment_method}. "
            f"Allowed: {', '.join(PAYMENT_METHODS)}"
        )

    platform = metadata.get("platform")
    if platform and platform not in PLATFORMS:
        raise ValidationError(
            f"Invalid platform: {platform}. Allowed: {', '.join(PLATFORMS)}"
        )

    customer_email = metadata.get("customer_email")
    if customer_email and not _EMAIL_RE.match(customer_email):
        raise ValidationError(f"Invalid customer_email: {customer_email}")

    return {
        "payment_method": payment_method,
        "platform": platform,
        "customer_email": customer_email,
        "client_ref": metadata.get("client_ref"),
        "client_idempotency_key": metadata.get("idempotency_key"),
    }
