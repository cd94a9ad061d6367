"""
Authorization Workflow Engine
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models                    # noqa: F401
    from app.models import authorization as _authorization_models  # noqa: F401
    from app.models import delegation as _delegation_models        # noqa: F401
    from app.models import escalation as _escalation_models        # noqa: F401
    from app.models import notification as _notification_models    # noqa: F401
    from app.models import scheduling as _scheduling_models        # noqa: F401

    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.authorization_bp import authorization_bp
    from app.blueprints.delegation_bp import delegation_bp
    from app.blueprints.escalation_bp import escalation_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.notification_bp import notification_bp

    app.register_blueprint(authorization_bp)
    app.register_blueprint(delegation_bp)
    app.register_blueprint(escalation_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(notification_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-matrix")
    def seed_matrix_cmd():
        """Seed the default authorization matrix."""
        from app.services.authorization_matrix import seed_default_matrix
        count = seed_default_matrix()
        db.session.commit()
        logger.info("Seeded %s matrix rules.", count)

    @app.cli.command("run-escalations")
    def run_escalations_cmd():
        """Run one escalation sweep now."""
        from app.services.escalation import EscalationService
        summary = EscalationService().process_escalations()
        logger.info("Escalation sweep: %s", summary)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    jobs = importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    _SchedulerSvc.schedule_interval(
        jobs.ESCALATION_SWEEP,
        app.config["ESCALATION_INTERVAL_SECONDS"],
        initial_delay=app.config["ESCALATION_INITIAL_DELAY_SECONDS"],
    )
    if app.config.get("ESCALATION_SCHEDULER_ENABLED"):
        _SchedulerSvc.start()

    return app
