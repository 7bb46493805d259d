import os
import logging

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.extensions import db, migrate


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

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Provider clients (built once, passed to handlers explicitly) ---
    from app.services.providers import init_provider_clients
    init_provider_clients(app)

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-demo")
    @click.option("--email", default="listener@example.com", help="Demo user email")
    @click.option("--provider", default="stripe",
                  type=click.Choice(["stripe", "razorpay", "paypal"]))
    def seed_demo(email, provider):
        """Create a demo user with one pending song purchase.

        Usage:
            flask seed-demo
            flask seed-demo --email me@example.com --provider razorpay
        """
        import secrets

        from app.models.user import User
        from app.models.transaction import PurchaseTransaction

        user = User.query.filter_by(email=email).first()
        if user:
            click.echo(f"User already exists: {email}")
        else:
            user = User(email=email, full_name="Demo Listener")
            db.session.add(user)
            db.session.flush()
            click.echo(f"Created user: {email}")

        keys = {
            "stripe": {"payment_intent_id": f"pi_demo_{secrets.token_hex(6)}"},
            "razorpay": {"order_id": f"order_demo_{secrets.token_hex(6)}"},
            "paypal": {"order_id": f"PAYPAL-DEMO-{secrets.token_hex(6).upper()}"},
        }[provider]

        tx = PurchaseTransaction(
            user_id=user.id,
            item_kind=PurchaseTransaction.SONG,
            item_id=f"song_{secrets.token_hex(4)}",
            provider=provider,
            amount_minor=199,
            currency="USD",
            **keys,
        )
        db.session.add(tx)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Demo data created!")
        click.echo("=" * 60)
        click.echo(f"  User:        {user.email} (id: {user.id})")
        click.echo(f"  Transaction: {tx.id} ({tx.status})")
        for field, value in keys.items():
            click.echo(f"  {field}: {value}")
        click.echo("=" * 60)

    @app.cli.command("list-flags")
    @click.option("--action", default=None,
                  help="Filter by action, e.g. payment.unmatched")
    @click.option("--limit", default=50, show_default=True)
    def list_flags(action, limit):
        """List reconciliation events flagged for operator attention.

        Usage:
            flask list-flags
            flask list-flags --action payment.unmatched --limit 20
        """
        from app.models.audit import AuditEvent

        query = AuditEvent.query
        if action:
            query = query.filter_by(action=action)
        flags = query.order_by(AuditEvent.created_at.desc()).limit(limit).all()

        if not flags:
            click.echo("No flagged events.")
            return

        for flag in flags:
            click.echo(
                f"{flag.created_at}  {flag.action:<28} "
                f"{flag.provider or '-'}:{flag.event_id or '-'}  "
                f"tx={flag.transaction_id or '-'}"
            )
