"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints, and attaches
the per-app webhook batch collector.
"""
import atexit
import os
from flask import Flask


def create_app(flush_handler=None):
    """
    Create and configure the Flask application.

    flush_handler overrides where collected webhook batches go (tests pass a
    recorder; production uses the RQ dispatcher).
    """
    from app.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    # Secret key for sessions
    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')

    # Register blueprints
    from app.routes.webhook import bp as webhook_bp
    from app.routes.queue import bp as queue_bp

    app.register_blueprint(webhook_bp)
    app.register_blueprint(queue_bp)

    # Initialize circuit breakers for external API services
    from app.extensions import redis_client
    from app.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # One collector per app instance; each process coalesces its own events
    from app.config import BATCH_SIZE, BATCH_TIMEOUT
    from app.pipeline.ingest import dispatch_flush
    from app.services.collector import BatchCollector
    collector = BatchCollector(
        flush_handler=flush_handler or dispatch_flush,
        batch_size=BATCH_SIZE,
        timeout=BATCH_TIMEOUT,
    )
    app.extensions['lead_collector'] = collector
    atexit.register(collector.close)

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic — no init_db() call.
    import importlib
    importlib.import_module('app.models.brand')
    importlib.import_module('app.models.lead')
    importlib.import_module('app.models.task')
    importlib.import_module('app.models.batch')

    return app
