import os
import logging

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from popstore.config import config_by_name
from popstore.errors import PopstoreError
from popstore.extensions import db, migrate, login_manager, csrf, limiter


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

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from popstore import models  # noqa: F401

    # --- Register blueprints ---
    from popstore.blueprints.checkout import checkout_bp
    from popstore.blueprints.commissions import commissions_bp
    from popstore.blueprints.plans import plans_bp
    from popstore.blueprints.webhooks import webhooks_bp

    app.register_blueprint(checkout_bp)
    app.register_blueprint(commissions_bp)
    app.register_blueprint(plans_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)
    # Exempt checkout from CSRF: public JSON API called by storefront clients
    csrf.exempt(checkout_bp)

    # --- Error handlers (JSON API: {success: false, message}) ---
    @app.errorhandler(PopstoreError)
    def handle_service_error(e):
        return jsonify(success=False, message=e.message), e.status_code

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return jsonify(success=False, message=e.description), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify(success=False, message=e.description), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(success=False, message="Internal server error"), 500

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
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only: nothing to load, nothing to frame
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("create-plan")
    @click.option("--title", required=True, help="Plan name shown to store owners")
    @click.option("--hours", type=int, required=True, help="Store duration in hours")
    @click.option("--base-price", type=int, required=True, help="Listing fee in cents")
    @click.option("--commission", required=True, help="Platform commission, 0-100")
    @click.option("--discount", default="0", help="Discount on the listing fee, 0-100")
    def create_plan_command(title, hours, base_price, commission, discount):
        """Create a store plan.

        Plans are immutable once a store uses them; create a new plan
        instead of editing one.

        Usage:
            flask create-plan --title "Weekend" --hours 48 --base-price 1500 --commission 10
        """
        from popstore.services.plan_service import create_plan

        try:
            plan = create_plan(
                db.session,
                title=title,
                duration_hours=hours,
                base_price=base_price,
                commission_percentage=commission,
                discount_percentage=discount,
            )
        except PopstoreError as e:
            db.session.rollback()
            raise click.ClickException(e.message)
        db.session.commit()

        click.echo(f"Created plan {plan.title} (id: {plan.id})")
        click.echo(f"  Duration:    {plan.duration_hours}h")
        click.echo(f"  Final price: {plan.final_price} cents")
        click.echo(f"  Commission:  {plan.commission_percentage}%")

    @app.cli.command("seed-demo")
    @click.option("--email", default="admin@popstore.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_demo(email, password):
        """Create admin + store owner + plan + store + product for local testing.

        Usage:
            flask seed-demo
            flask seed-demo --email admin@example.com --password s3cret
        """
        import secrets
        from datetime import datetime, timedelta, timezone

        from popstore.models.store import Product, Store
        from popstore.models.user import User
        from popstore.services.plan_service import create_plan

        # --- 1. Admin user ---
        admin = User.query.filter_by(email=email).first()
        if admin:
            click.echo(f"Admin user already exists: {email}")
        else:
            admin = User(
                email=email,
                username="admin",
                password_hash=generate_password_hash(password),
                role="admin",
            )
            db.session.add(admin)
            db.session.flush()
            click.echo(f"Created admin user: {email}")

        # --- 2. Store owner with a (test-mode) connected account ---
        owner = User(
            email=f"owner-{secrets.token_hex(4)}@popstore.local",
            username=f"owner-{secrets.token_hex(4)}",
            password_hash=generate_password_hash(password),
            stripe_account_id=f"acct_demo_{secrets.token_hex(6)}",
            stripe_account_status="active",
            stripe_onboarding_complete=True,
        )
        db.session.add(owner)
        db.session.flush()

        # --- 3. Plan ---
        plan = create_plan(
            db.session,
            title="Weekend Pop-up",
            duration_hours=48,
            base_price=1500,
            commission_percentage=10,
        )

        # --- 4. Store ---
        store = Store(
            owner_id=owner.id,
            plan_id=plan.id,
            name="Demo Pop-up",
            slug=f"demo-popup-{secrets.token_hex(3)}",
            is_active=True,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=plan.duration_hours),
        )
        db.session.add(store)
        db.session.flush()

        # --- 5. Product ---
        product = Product(store_id=store.id, name="Demo T-shirt", price=2500)
        db.session.add(product)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Admin:    {email} / {password}")
        click.echo(f"  Owner:    {owner.email} ({owner.stripe_account_id})")
        click.echo(f"  Plan:     {plan.title} (id: {plan.id})")
        click.echo(f"  Store:    {store.slug} (id: {store.id})")
        click.echo(f"  Product:  {product.name} (id: {product.id})")
        click.echo("=" * 60)

    @app.cli.command("settle-order")
    @click.argument("order_id")
    def settle_order_command(order_id):
        """Settle the commission for a paid order by hand.

        Safe to run more than once: an already-settled order is reported,
        not settled again. Use when webhook delivery gave up.

        Usage:
            flask settle-order <order_id>
        """
        from popstore.services.commission_service import settle_order

        try:
            commission = settle_order(db.session, order_id)
        except PopstoreError as e:
            db.session.rollback()
            raise click.ClickException(e.message)
        db.session.commit()

        click.echo(f"Order {order_id} settled (commission: {commission.id})")
        click.echo(f"  Gross:      {commission.gross_amount}")
        click.echo(f"  Commission: {commission.commission_amount}")
        click.echo(f"  Net:        {commission.net_amount}")
