import io
import os
import logging

import click
from dotenv import load_dotenv
from flask import Flask, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from Controllers.errorController import error_bp
from Routes.adminRoutes import admin_routes
from Routes.authRoutes import auth_routes
from Routes.reportRoutes import report_routes
from Routes.userRoutes import user_routes
from Routes.verificationRoutes import verification_routes
from Services.auditTrail import AuditTrail
from Services.notificationService import NotificationDispatcher
from Services.reportRegistry import ReportRegistry
from Services.verificationEngine import VerificationEngine
from Utils.appError import NotFound
from Utils.email import EmailSender
from Utils.logger import setup_logging
from Utils.sms import SmsSender

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _default_config():
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY", "supersecretkey"),
        "JWT_SECRET": os.getenv("JWT_SECRET", "super_jwt_secret"),
        "JWT_EXPIRES_IN_MINUTES": int(os.getenv("JWT_EXPIRES_IN_MINUTES", 60 * 24 * 7)),
        "MONGODB_URI": os.getenv("MONGODB_URI", "mongodb://localhost:27017/pataid"),
        "NOTIFY_SECURITY": _env_flag("NOTIFY_SECURITY"),
        "RATELIMIT_ENABLED": True,
        "RATELIMIT_DEFAULT": "; ".join([
            os.getenv("LIMIT_DEFAULT_HOURLY", "200 per hour"),
            os.getenv("LIMIT_DEFAULT_SECONDLY", "10 per second"),
        ]),
        "MAX_CONTENT_LENGTH": 16 * 1024 * 1024,
        "SKIP_DB_INIT": False,
        "NOTIFIER": None,
    }


def _build_services(app):
    """Construct the collaborators once and share them by reference."""
    notifier = app.config["NOTIFIER"] or NotificationDispatcher(EmailSender(), SmsSender())
    audit = AuditTrail()
    registry = ReportRegistry(audit, notifier, notify_security=app.config["NOTIFY_SECURITY"])
    engine = VerificationEngine(registry, notifier, audit)
    app.extensions["pataid"] = {
        "notifier": notifier,
        "audit": audit,
        "registry": registry,
        "engine": engine,
    }


def create_app(config=None):
    app = Flask(__name__)
    app.config.update(_default_config())
    if config:
        app.config.update(config)

    setup_logging(app)

    # ----------------------------
    # Database
    # ----------------------------
    if not app.config["SKIP_DB_INIT"]:
        from Utils.db import init_db
        init_db(app.config["MONGODB_URI"])

    # ----------------------------
    # Rate Limiter
    # ----------------------------
    Limiter(get_remote_address, app=app)

    _build_services(app)

    # ----------------------------
    # Register blueprints
    # ----------------------------
    app.register_blueprint(error_bp)
    app.register_blueprint(auth_routes)
    app.register_blueprint(user_routes)
    app.register_blueprint(report_routes)
    app.register_blueprint(verification_routes)
    app.register_blueprint(admin_routes)

    @app.route("/uploads/<filename>")
    def get_uploaded_file(filename):
        from Models.storedFileModel import StoredFile

        stored = StoredFile.objects(filename=filename).first()
        if not stored:
            raise NotFound("File not found")

        gridout = stored.file.get()
        return send_file(
            io.BytesIO(gridout.read()),
            mimetype=stored.content_type or "image/jpeg"
        )

    @app.route("/health")
    def health():
        return {"success": True, "status": "ok"}

    register_cli(app)
    return app


# ----------------------------
# CLI
# ----------------------------
def register_cli(app):
    @app.cli.command("create-admin")
    @click.option("--email", default=lambda: os.getenv("DEFAULT_ADMIN_EMAIL", "admin@pataid.com"))
    @click.option("--password", default=lambda: os.getenv("DEFAULT_ADMIN_PASSWORD", "adminpassword"))
    def create_admin(email, password):
        """Create the default admin, or reset its password and role."""
        from Models.userModel import Campus, Role, User

        admin = User.objects(email=email.lower()).first()
        if admin:
            admin.password = password
            admin.role = Role.ADMIN
            admin.active = True
            admin.save()
            click.echo(f"Admin {email} already exists; password and role reset.")
            return

        User(
            first_name="System",
            last_name="Admin",
            email=email,
            phone="+254700000000",
            password=password,
            role=Role.ADMIN,
            campus=Campus.ALL.value,
            is_verified=True,
        ).save()
        click.echo(f"Admin {email} created.")


# ----------------------------
# Run the app
# ----------------------------
if __name__ == '__main__':
    port = int(os.getenv('PORT', 4000))
    print(f"App running on port {port}...")
    create_app().run(host='0.0.0.0', port=port, debug=False)
