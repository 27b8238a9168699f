import logging

from flask import Flask, request, g, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from routes import health_bp, auth_bp, admin_bp

from models import db
from security.bot_detector import BotConfig, BotScorer, RequestSnapshot
from security.errors import ConfigurationError
from security.events import LoggingEventSink, MultiEventSink
from security.fingerprint import FPID_COOKIE, FingerprintSigner, apply_fpid_cookie
from security.flask_session import GuardedSessionInterface
from security.auth_guard import AuthConfig
from security.rate_limit import bot_rate_limited
from security.session_guard import SessionConfig, SessionGuard
from utils.audit import AuditEventSink
from utils.auth_context import EXTENSION_KEY, SecurityComponents, load_current_user
from utils.stores import SqlRoleStore, SqlUserStore


def init_security(app, events=None, clock=None):
    """Build the security components from app.config and attach them to the app."""
    secret = app.config.get("FPID_SECRET_KEY") or app.config.get("SECRET_KEY")
    if not secret:
        raise ConfigurationError("FPID_SECRET_KEY (or SECRET_KEY) must be set")

    events = events or MultiEventSink([LoggingEventSink(), AuditEventSink()])
    signer = FingerprintSigner(secret, events=events)

    scorer = BotScorer(
        signer,
        BotConfig.from_mapping(app.config),
        rate_limited=bot_rate_limited if app.config.get("BOT_RATE_LIMIT_MAX_REQUESTS") else None,
        events=events,
    )

    if not app.config.get("PUBLIC_ROOT"):
        app.config["PUBLIC_ROOT"] = app.static_folder
    session_kwargs = {"clock": clock} if clock else {}
    session_guard = SessionGuard(SessionConfig.from_mapping(app.config), events=events, **session_kwargs)
    app.session_interface = GuardedSessionInterface(session_guard)

    app.extensions[EXTENSION_KEY] = SecurityComponents(
        signer=signer,
        scorer=scorer,
        session_guard=session_guard,
        auth_config=AuthConfig.from_mapping(app.config),
        events=events,
        users=SqlUserStore(),
        roles=SqlRoleStore(),
    )
    return app.extensions[EXTENSION_KEY]


def create_app(overrides=None, events=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))

    if app.config.get("PROXY_FIX_X_FOR"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config["PROXY_FIX_X_FOR"])

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)
    with app.app_context():
        db.create_all()

    security = init_security(app, events=events, clock=clock)

    @app.before_request
    def _score_request():
        g.bot_score = security.scorer.score(RequestSnapshot.from_request(request))
        if g.bot_score.is_likely_bot and app.config.get("BOT_BLOCK_LIKELY"):
            return jsonify(error="Forbidden"), 403

    @app.before_request
    def _load_user():
        load_current_user()

    @app.after_request
    def _reconcile_fpid(resp):
        return apply_fpid_cookie(resp, security.signer.reconcile(request.cookies.get(FPID_COOKIE, "")))

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
import click
from models.user import User, Role
from security.fingerprint import generate_secret_key
from security.password import hash_password

def register_cli(app):
    @app.cli.command("create-user")
    @click.argument("username")
    @click.password_option()
    def create_user(username, password):
        """Create a user with a bcrypt-hashed password."""
        username = username.strip()
        if User.query.filter_by(username=username).first():
            click.echo("User already exists")
            return
        db.session.add(User(username=username, password_hash=hash_password(password)))
        db.session.commit()
        click.echo(f"{username} created")

    @app.cli.command("grant-role")
    @click.argument("username")
    @click.argument("word")
    def grant_role(username, word):
        """Give a user an authorization word (e.g. admin)."""
        user = User.query.filter_by(username=username.strip()).first()
        if not user:
            click.echo("User not found")
            return

        word = word.strip().lower()
        role = Role.query.filter_by(name=word).first()
        if not role:
            role = Role(name=word)
            db.session.add(role)
            db.session.commit()

        if role not in user.roles:
            user.roles.append(role)
            db.session.commit()

        click.echo(f"{user.username} granted {word}")

    @app.cli.command("generate-secret-key")
    @click.option("--length", default=64, show_default=True)
    def generate_key(length):
        """Print a random key for FPID_SECRET_KEY."""
        click.echo(generate_secret_key(length))

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
