import os
import logging

import click
from flask import Flask, jsonify

from checkout_broker.config import config_by_name
from checkout_broker.errors import CheckoutBrokerError
from checkout_broker.extensions import db, migrate, limiter

logger = logging.getLogger(__name__)


def create_app(config_name=None, test_config=None):
    """Application factory.

    ``test_config`` overrides individual settings after the config class
    is loaded (used by tests that need a file-backed database).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if test_config:
        app.config.update(test_config)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from checkout_broker import models  # noqa: F401

    # --- Register blueprints ---
    from checkout_broker.blueprints.checkout import checkout_bp
    from checkout_broker.blueprints.webhooks import webhooks_bp

    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """Render every error as JSON; clients of this service are APIs."""

    @app.errorhandler(CheckoutBrokerError)
    def broker_error(e):
        if e.status_code >= 500:
            logger.error(f"{e.code}: {e.message}")
        response = jsonify(e.to_dict())
        response.status_code = e.status_code
        retry_after = e.details.get("retry_after")
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "method_not_allowed", "message": "Method not allowed",
        }), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({
            "error": "rate_limited",
            "message": f"Too many requests: {e.description}",
            "retryable": True,
        }), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({
            "error": "internal_error", "message": "Internal server error",
        }), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("sweep-claims")
    @click.option("--dry-run", is_flag=True, help="Count expired claims without deleting them.")
    def sweep_claims(dry_run):
        """Delete idempotency claims whose expiry has passed.

        Orders are kept; only the claim rows that block re-purchase go.

        Usage:
            flask sweep-claims
            flask sweep-claims --dry-run
        """
        from checkout_broker.services import order_store

        count = order_store.sweep_expired_claims(dry_run=dry_run)
        if dry_run:
            click.echo(f"{count} expired claim(s) would be deleted.")
            return
        order_store.commit()
        click.echo(f"Deleted {count} expired claim(s).")

    @app.cli.command("verify-products")
    def verify_products():
        """Verify configured Stripe price IDs exist and are usable (same mode as key).

        Uses STRIPE_SECRET_KEY and the price IDs in PRODUCT_CATALOG.
        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        import stripe as _stripe

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        _stripe.api_key = api_key

        for product_id, product in sorted(app.config["PRODUCT_CATALOG"].items()):
            price_id = product.get("price_id")
            if not price_id:
                click.echo(f"  {product_id}: (not set)")
                continue
            try:
                price = _stripe.Price.retrieve(price_id)
            except _stripe.StripeError as e:
                click.echo(f"  {product_id}: {price_id}")
                click.echo(f"    ERROR: {e}")
                continue

            livemode = getattr(price, "livemode", "?")
            click.echo(f"  {product_id}: {price_id}")
            click.echo(
                f"    exists=True, livemode={livemode}, "
                f"amount={price.unit_amount} {price.currency}"
            )
            if price.unit_amount != product["amount"]:
                click.echo(
                    f"    WARNING: catalog amount is {product['amount']}, "
                    f"Stripe has {price.unit_amount}."
                )
            if livemode is True and key_mode != "Live":
                click.echo("    WARNING: This price is Live but your key is Test.")
            elif livemode is False and key_mode == "Live":
                click.echo("    WARNING: This price is Test but your key is Live.")
