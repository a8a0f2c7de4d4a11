import os
import subprocess
import click
from pathlib import Path
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from borrowpal.errors import OrderFlowError
from borrowpal.extensions import db, migrate, cors
from borrowpal.integrations.payments.factory import payment_health
from borrowpal.models import Listing, PriceType, User
from borrowpal.segments.segment_notifications import notifications_bp
from borrowpal.segments.segment_orders_api import orders_bp
from borrowpal.segments.segment_payment_webhooks import webhooks_bp
from borrowpal.utils.observability import init_sentry, install_request_observers


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _error_payload(code: str, message: str, status: int) -> dict:
    payload = {"ok": False, "error": code, "message": message, "status": int(status)}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("BORROWPAL_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["BORROWPAL_ENV"] = env

    # Payments and notifications
    app.config["PAYMENTS_ENABLED"] = _env_flag("PAYMENTS_ENABLED", True)
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    app.config["PAYMENTS_CURRENCY"] = (os.getenv("PAYMENTS_CURRENCY") or "usd").strip().lower()
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["STRIPE_WEBHOOK_SECRET"] = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    app.config["PUBLIC_BASE_URL"] = (os.getenv("PUBLIC_BASE_URL") or "").strip()
    app.config["NOTIFICATIONS_SINK"] = (os.getenv("NOTIFICATIONS_SINK") or "in_app").strip().lower()

    if env in ("prod", "production") and app.config["PAYMENTS_PROVIDER"] == "mock":
        app.logger.warning("payments_provider_mock_in_production")

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'borrowpal.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(OrderFlowError)
    def _order_flow_error(error: OrderFlowError):
        db.session.rollback()
        app.logger.info(
            "order_flow_rejected path=%s error=%s status=%s", request.path, error.code, int(error.http_status)
        )
        payload = error.to_dict()
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    # Register API routes
    app.register_blueprint(orders_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(webhooks_bp)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "borrowpal-orders",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "notifications_sink": app.config["NOTIFICATIONS_SINK"],
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({
            "ok": True,
            "service": "borrowpal-orders",
            "env": env,
        })

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("seed-dev")
    @click.option("--price", "price_minor", default=2500, show_default=True, help="Listing price in minor units")
    @click.option("--negotiable/--fixed", default=False, help="Create a negotiable listing")
    def seed_dev(price_minor: int, negotiable: bool):
        """Create a seller, a buyer and one listing for local testing."""
        if env not in ("dev", "development", "local", "test"):
            raise click.ClickException("seed-dev is only available with BORROWPAL_ENV=dev.")
        seller = User.query.filter_by(email="seller@borrowpal.local").first()
        if not seller:
            seller = User(name="Dev Seller", email="seller@borrowpal.local")
            db.session.add(seller)
        buyer = User.query.filter_by(email="buyer@borrowpal.local").first()
        if not buyer:
            buyer = User(name="Dev Buyer", email="buyer@borrowpal.local")
            db.session.add(buyer)
        db.session.flush()
        listing = Listing(
            seller_id=int(seller.id),
            title="Dev listing",
            price_minor=int(price_minor),
            price_type=PriceType.NEGOTIABLE if negotiable else PriceType.FIXED,
            currency=app.config["PAYMENTS_CURRENCY"],
        )
        db.session.add(listing)
        db.session.commit()
        click.echo(f"seed_dev_ok seller_id={seller.id} buyer_id={buyer.id} listing_id={listing.id}")

    return app
