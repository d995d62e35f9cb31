import os
import logging

import click
from flask import Flask, jsonify

from payhook.config import config_by_name
from payhook.extensions import db, migrate, limiter


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
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from payhook import models  # noqa: F401

    # --- Register blueprints ---
    from payhook.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "server_error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("reconcile")
    @click.option("--once", is_flag=True, help="Run a single pass and exit.")
    @click.option("--interval", type=int, default=None,
                  help="Seconds between passes (default RECONCILE_INTERVAL_SECONDS).")
    @click.option("--window-hours", type=int, default=None,
                  help="With --once: only repair payments created this recently.")
    def reconcile(once, interval, window_hours):
        """Link completed payments that never got a subscription.

        Usage:
            flask reconcile --once
            flask reconcile --interval 60
        """
        from datetime import timedelta

        from payhook.services.reconciler import (
            reconcile_orphaned_payments,
            run_forever,
        )

        if once:
            window = timedelta(hours=window_hours) if window_hours else None
            report = reconcile_orphaned_payments(window=window)
            click.echo(
                f"scanned={report.scanned} repaired={report.repaired} "
                f"skipped={report.skipped} failed={report.failed}"
            )
            return

        click.echo("Reconciler running. Ctrl+C to stop.")
        try:
            run_forever(interval=interval)
        except KeyboardInterrupt:
            click.echo("Reconciler stopped.")

    @app.cli.command("retry-failed-events")
    @click.option("--limit", type=int, default=None, help="Max events to replay.")
    def retry_failed(limit):
        """Replay failed webhook events whose failure was transient.

        Terminal failures (amount mismatch, no user identifier) are never
        replayed.

        Usage:
            flask retry-failed-events
            flask retry-failed-events --limit 20
        """
        from payhook.services.reconciler import retry_failed_events

        report = retry_failed_events(limit=limit)
        click.echo(f"Replayed {report.scanned} failed event(s).")
        for event_id, result in report.outcomes.items():
            click.echo(f"  {event_id}: {result}")
