import os
import logging

import click
from flask import Flask, jsonify
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from commerce.config import config_by_name
from commerce.errors import AccessDenied
from commerce.extensions import db, migrate, login_manager, csrf, limiter
from commerce import reliability


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Bulkheads + feature flags, one set per app ---
    reliability.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from commerce import models  # noqa: F401

    # --- Register blueprints ---
    from commerce.blueprints.access import access_bp
    from commerce.blueprints.account import account_bp
    from commerce.blueprints.admin import admin_bp
    from commerce.blueprints.auth import auth_bp
    from commerce.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(access_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)
    # Exempt access links — public JSON API, the token is the credential
    csrf.exempt(access_bp)
    # Exempt JSON login — no session exists yet to bind a token to
    csrf.exempt(auth_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        """Liveness probe. The database ping is optional and fails open."""
        database = reliability.with_fallback(
            _ping_database, fallback="unavailable", service_name="database_ping"
        )
        return jsonify({"status": "ok", "database": database}), 200

    # --- Error handlers ---
    @app.errorhandler(AccessDenied)
    def access_denied(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description, "code": e.code}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error", "code": 500}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Access links carry the token in the query string
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def _ping_database():
    db.session.execute(text("SELECT 1"))
    return "ok"


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("create-admin")
    @click.option("--email", default="admin@commerce.local", help="Admin email")
    @click.option("--password", prompt=True, hide_input=True, help="Admin password")
    def create_admin(email, password):
        """Create (or promote) an admin user.

        Usage:
            flask create-admin --email admin@example.com
        """
        from commerce.models.user import User

        email = email.lower().strip()
        user = User.query.filter_by(email=email).first()
        if user:
            user.is_admin = True
            user.password_hash = generate_password_hash(password)
            click.echo(f"Promoted existing user to admin: {email}")
        else:
            user = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Admin",
                is_admin=True,
            )
            db.session.add(user)
            click.echo(f"Created admin user: {email}")
        db.session.commit()

    @app.cli.command("seed-product")
    @click.option("--slug", required=True, help="URL slug, e.g. intro-to-sql")
    @click.option("--title", required=True, help="Display title")
    @click.option("--price", "price_cents", type=int, required=True, help="Price in cents")
    @click.option("--currency", default="USD")
    @click.option("--format", "format_", default="PDF")
    @click.option("--file", "files", multiple=True, help="name=url, repeatable")
    def seed_product(slug, title, price_cents, currency, format_, files):
        """Create or update a product.

        Usage:
            flask seed-product --slug intro-to-sql --title "Intro to SQL" \\
                --price 5900 --file "intro.pdf=https://cdn.example.com/intro.pdf"
        """
        from commerce.models.product import Product

        manifest = []
        for entry in files:
            name, sep, url = entry.partition("=")
            if not sep or not name or not url:
                raise click.BadParameter(f"Expected name=url, got {entry!r}", param_hint="--file")
            manifest.append({"name": name.strip(), "url": url.strip()})

        product = Product.query.filter_by(slug=slug).first()
        if product is None:
            product = Product(slug=slug)
            db.session.add(product)
            click.echo(f"Created product: {slug}")
        else:
            click.echo(f"Updated product: {slug}")

        product.title = title
        product.price_cents = price_cents
        product.currency = currency.upper()
        product.format = format_
        if manifest:
            product.download_manifest = manifest
        db.session.commit()

        click.echo(f"  id:    {product.id}")
        click.echo(f"  price: {price_cents / 100:.2f} {product.currency}")
        click.echo(f"  files: {len(product.download_manifest or [])}")
        click.echo(f"  Use metadata product_id={product.id} in Stripe Checkout.")

    @app.cli.command("failed-events")
    @click.option("--limit", default=50, help="Maximum events to list")
    def failed_events(limit):
        """List webhook events that failed processing."""
        from commerce.services import ledger_service

        events = ledger_service.get_failed_events(limit=limit)
        if not events:
            click.echo("No failed events.")
            return

        for event in events:
            state = "DEAD" if event.is_dead_lettered else "RETRYING"
            click.echo(
                f"{event.stripe_event_id}  {event.event_type}  "
                f"attempts={event.attempts}  {state}"
            )
            click.echo(f"    {event.processing_error}")

    @app.cli.command("replay-event")
    @click.argument("event_id")
    def replay_event(event_id):
        """Re-run a failed event from its stored payload."""
        from commerce.services import stripe_service

        try:
            outcome = stripe_service.replay_event(event_id)
        except (LookupError, ValueError) as e:
            raise click.ClickException(str(e))
        click.echo(f"{event_id}: {outcome.status} — {outcome.message}")

    @app.cli.command("abandon-event")
    @click.argument("event_id")
    def abandon_event(event_id):
        """Dead-letter a failed event without replaying it."""
        from commerce.services import ledger_service

        try:
            ledger_service.abandon_event(event_id)
        except (LookupError, ValueError) as e:
            raise click.ClickException(str(e))
        click.echo(f"{event_id}: abandoned")
